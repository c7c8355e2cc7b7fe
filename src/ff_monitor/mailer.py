from __future__ import annotations

import logging
import re
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime, tzinfo
from email.message import EmailMessage
from typing import TYPE_CHECKING, Mapping, Sequence

if TYPE_CHECKING:
    from ff_monitor.service import NodeInfo


LOGGER = logging.getLogger("ff_monitor.mailer")
_PLACEHOLDER = re.compile(r"\{\{\s*&?\s*([A-Za-z0-9_.-]+)\s*\}\}")

DEFAULT_MAP_URL = "https://map.kbu.freifunk.net/#!v:m;n:{{node-id}}"
DEFAULT_NODE_TEMPLATE = (
    'Router "{{node-name}}", zuletzt gemeldet am {{last-seen-date}} um {{last-seen-time}} Uhr.\n'
    "Zur Karte: <{{map-url}}>"
)


class EmailSendError(Exception):
    pass


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    user: str
    password: str | None = None
    ssl: bool = False
    tls: bool = False
    port: int | None = None

    def resolved_port(self) -> int:
        if self.port is not None:
            return self.port
        return 465 if self.ssl else 25


@dataclass(frozen=True)
class EmailConfig:
    smtp: SmtpConfig
    from_address: str
    subject: str
    body: str
    node_template: str = DEFAULT_NODE_TEMPLATE
    map_url: str = DEFAULT_MAP_URL
    timezone: tzinfo | None = None


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    from_address: str
    subject: str
    body: str


def render_template(template: str, values: Mapping[str, object]) -> str:
    """Substitute ``{{key}}`` / ``{{&key}}`` placeholders.

    Values are inserted as-is without any escaping. Unknown keys render as
    an empty string.
    """

    def replace(match: re.Match[str]) -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(replace, template)


def format_last_seen(last_seen: datetime, zone: tzinfo | None = None) -> tuple[str, str]:
    local = last_seen.astimezone(zone)
    return f"{local.day}.{local.month}.{local.year}", f"{local.hour}:{local.minute:02d}"


def render_node_block(node: NodeInfo, email_config: EmailConfig) -> str:
    last_seen_date, last_seen_time = format_last_seen(node.last_seen, email_config.timezone)
    node_id = str(node.node_id)
    return render_template(
        email_config.node_template,
        {
            "node-name": node.hostname,
            "node-id": node_id,
            "last-seen-date": last_seen_date,
            "last-seen-time": last_seen_time,
            "map-url": render_template(email_config.map_url, {"node-id": node_id}),
        },
    )


def render_node_list(nodes: Sequence[NodeInfo], email_config: EmailConfig) -> str:
    return "\n\n".join(render_node_block(node, email_config) for node in nodes)


def build_notification(contact: str, nodes: Sequence[NodeInfo], email_config: EmailConfig) -> OutgoingEmail:
    # every node in the group shares this contact
    return OutgoingEmail(
        to=contact,
        from_address=email_config.from_address,
        subject=email_config.subject,
        body=render_template(email_config.body, {"node-list": render_node_list(nodes, email_config)}),
    )


class SmtpNotifier:
    def __init__(self, smtp: SmtpConfig, *, debug_mode: bool = False, timeout_seconds: float = 30.0) -> None:
        self.smtp = smtp
        self.debug_mode = debug_mode
        self.timeout_seconds = timeout_seconds

    def recipient_for(self, message: OutgoingEmail) -> str:
        if self.debug_mode:
            return message.from_address
        return message.to

    def _build_message(self, message: OutgoingEmail) -> EmailMessage:
        email_message = EmailMessage()
        email_message["From"] = message.from_address
        email_message["To"] = self.recipient_for(message)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)
        return email_message

    def _connect(self) -> smtplib.SMTP:
        port = self.smtp.resolved_port()
        if self.smtp.ssl:
            return smtplib.SMTP_SSL(
                self.smtp.host,
                port,
                timeout=self.timeout_seconds,
                context=ssl.create_default_context(),
            )
        return smtplib.SMTP(self.smtp.host, port, timeout=self.timeout_seconds)

    def send(self, message: OutgoingEmail) -> None:
        email_message = self._build_message(message)
        recipient = email_message["To"]
        try:
            with self._connect() as server:
                if self.smtp.tls and not self.smtp.ssl:
                    server.starttls(context=ssl.create_default_context())
                if self.smtp.password:
                    server.login(self.smtp.user, self.smtp.password)
                server.send_message(email_message)
        except (smtplib.SMTPException, OSError) as error:
            raise EmailSendError(f"sending to {recipient} via {self.smtp.host} failed: {error}") from error

        if self.debug_mode:
            LOGGER.info("debug mode: notification for %s redirected to %s", message.to, recipient)
        else:
            LOGGER.info("notification sent to %s", recipient)
