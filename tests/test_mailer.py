import smtplib
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from ff_monitor import mailer
from ff_monitor.mailer import (
    EmailConfig,
    EmailSendError,
    OutgoingEmail,
    SmtpConfig,
    SmtpNotifier,
    build_notification,
    format_last_seen,
    render_node_block,
    render_node_list,
    render_template,
)
from ff_monitor.service import NodeInfo


def _email_config(**overrides) -> EmailConfig:
    values = {
        "smtp": SmtpConfig(host="mail.example.org", user="monitor"),
        "from_address": "monitor@example.org",
        "subject": "Router offline",
        "body": "Hallo,\n\n{{node-list}}\n\nGruss",
        "timezone": timezone.utc,
    }
    values.update(overrides)
    return EmailConfig(**values)


def _node(node_id: str, hostname: str, last_seen: datetime) -> NodeInfo:
    return NodeInfo(
        node_id=node_id,
        last_seen=last_seen,
        hostname=hostname,
        contact="owner@example.org",
        send_alerts=True,
    )


class FakeSMTP:
    instances: list["FakeSMTP"] = []
    fail_with: Exception | None = None

    def __init__(self, host: str, port: int, timeout: float | None = None, context=None) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.context = context
        self.started_tls = False
        self.logins: list[tuple[str, str]] = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self) -> "FakeSMTP":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def starttls(self, context=None) -> None:
        self.started_tls = True

    def login(self, user: str, password: str) -> None:
        self.logins.append((user, password))

    def send_message(self, message) -> None:
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.messages.append(message)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(mailer.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(mailer.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


def test_render_template_inserts_values_without_escaping() -> None:
    rendered = render_template(
        "A {{name}} B {{&name}} C {{ missing }} D",
        {"name": "<b>R&D</b>"},
    )
    assert rendered == "A <b>R&D</b> B <b>R&D</b> C  D"


def test_format_last_seen_uses_configured_zone() -> None:
    last_seen = datetime(2024, 3, 1, 10, 5, tzinfo=timezone.utc)
    assert format_last_seen(last_seen, timezone.utc) == ("1.3.2024", "10:05")
    assert format_last_seen(last_seen, ZoneInfo("Europe/Berlin")) == ("1.3.2024", "11:05")
    assert format_last_seen(datetime(2024, 12, 31, 23, 30, tzinfo=timezone.utc), ZoneInfo("Europe/Berlin")) == (
        "1.1.2025",
        "0:30",
    )


def test_render_node_block_contains_name_date_time_and_link() -> None:
    node = _node("abc123", "router-7", datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc))
    block = render_node_block(node, _email_config())

    assert block == (
        'Router "router-7", zuletzt gemeldet am 1.3.2024 um 10:15 Uhr.\n'
        "Zur Karte: <https://map.kbu.freifunk.net/#!v:m;n:abc123>"
    )


def test_render_node_block_uses_custom_templates() -> None:
    node = _node("abc123", "router-7", datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc))
    config = _email_config(
        node_template="{{node-name}} ({{node-id}}) {{last-seen-date}} {{last-seen-time}} {{map-url}}",
        map_url="https://map.example.org/#/n/{{node-id}}",
    )
    assert render_node_block(node, config) == "router-7 (abc123) 1.3.2024 10:15 https://map.example.org/#/n/abc123"


def test_render_node_list_separates_blocks_with_blank_line() -> None:
    last_seen = datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc)
    config = _email_config(node_template="{{node-name}}")
    nodes = [_node("a", "alpha", last_seen), _node("b", "beta", last_seen)]
    assert render_node_list(nodes, config) == "alpha\n\nbeta"


def test_build_notification_renders_body_and_copies_headers() -> None:
    node = _node("abc123", "router-7", datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc))
    message = build_notification("owner@example.org", [node], _email_config())

    assert message.to == "owner@example.org"
    assert message.from_address == "monitor@example.org"
    assert message.subject == "Router offline"
    assert message.body.startswith("Hallo,\n\nRouter \"router-7\"")
    assert "1.3.2024" in message.body
    assert "10:15" in message.body
    assert "n:abc123>" in message.body
    assert message.body.endswith("\n\nGruss")


def test_smtp_notifier_sends_to_contact(fake_smtp) -> None:
    notifier = SmtpNotifier(SmtpConfig(host="mail.example.org", user="monitor", password="s3cr3t", tls=True))
    notifier.send(
        OutgoingEmail(
            to="owner@example.org",
            from_address="monitor@example.org",
            subject="Router offline",
            body="Router weg",
        )
    )

    server = fake_smtp.instances[0]
    assert (server.host, server.port) == ("mail.example.org", 25)
    assert server.started_tls is True
    assert server.logins == [("monitor", "s3cr3t")]
    sent = server.messages[0]
    assert sent["To"] == "owner@example.org"
    assert sent["From"] == "monitor@example.org"
    assert sent["Subject"] == "Router offline"
    assert sent.get_content().strip() == "Router weg"


def test_smtp_notifier_uses_ssl_port_and_skips_login_without_password(fake_smtp) -> None:
    notifier = SmtpNotifier(SmtpConfig(host="mail.example.org", user="monitor", ssl=True), timeout_seconds=5.0)
    notifier.send(OutgoingEmail(to="a@example.org", from_address="m@example.org", subject="s", body="b"))

    server = fake_smtp.instances[0]
    assert server.port == 465
    assert server.timeout == 5.0
    assert server.context is not None
    assert server.started_tls is False
    assert server.logins == []


def test_smtp_notifier_debug_mode_redirects_every_message(fake_smtp) -> None:
    notifier = SmtpNotifier(SmtpConfig(host="mail.example.org", user="monitor"), debug_mode=True)
    for contact in ("one@example.org", "two@example.org", "three@example.org"):
        notifier.send(
            OutgoingEmail(
                to=contact,
                from_address="monitor@example.org",
                subject="Router offline",
                body=f"body for {contact}",
            )
        )

    sent = [message for server in fake_smtp.instances for message in server.messages]
    assert len(sent) == 3
    assert {message["To"] for message in sent} == {"monitor@example.org"}
    assert sent[1]["Subject"] == "Router offline"
    assert "body for two@example.org" in sent[1].get_content()


def test_smtp_notifier_wraps_transport_errors(fake_smtp) -> None:
    fake_smtp.fail_with = smtplib.SMTPRecipientsRefused({"owner@example.org": (550, b"unknown user")})
    notifier = SmtpNotifier(SmtpConfig(host="mail.example.org", user="monitor"))

    with pytest.raises(EmailSendError, match="owner@example.org"):
        notifier.send(OutgoingEmail(to="owner@example.org", from_address="m@example.org", subject="s", body="b"))
