from __future__ import annotations

import json
import logging
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parseaddr
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Sequence
from urllib.parse import unquote, urlparse

import requests
from dateutil import parser as dt_parser

from ff_monitor.mailer import EmailSendError, build_notification

if TYPE_CHECKING:
    from ff_monitor.config import MonitorConfig
    from ff_monitor.mailer import SmtpNotifier


LOGGER = logging.getLogger("ff_monitor.service")
DEFAULT_INTERVAL_MINUTES = 20
TIMESTAMP_KEYS = frozenset({"lastseen", "firstseen", "timestamp"})
_EMAIL_ADDRESS = re.compile(
    r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@(?:[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?\.)+[A-Za-z]{2,}$"
)


class FeedFetchError(Exception):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class NodeParseError(FeedFetchError):
    pass


@dataclass(frozen=True)
class NodeInfo:
    node_id: str | int
    last_seen: datetime
    hostname: str = ""
    contact: str = ""
    send_alerts: bool = False
    online: bool = False
    first_seen: datetime | None = None
    timestamp: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class CheckResult:
    success: bool
    observed_at: float | None = None
    duration_seconds: float | None = None
    nodes_scanned: int = 0
    vanished_total: int = 0
    notified_nodes: int = 0
    emails_sent: int = 0
    email_failures: int = 0
    feed_node_counts: dict[str, int] = field(default_factory=dict)
    error: str | None = None


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as found in meshviewer feeds.

    Timestamps without an offset are taken as UTC.
    """
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    try:
        parsed = dt_parser.isoparse(value.strip())
    except (ValueError, OverflowError) as error:
        raise ValueError(f"unsupported timestamp format: {value!r}") from error
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def coerce_timestamps(payload: Any) -> Any:
    if isinstance(payload, dict):
        coerced: dict[str, Any] = {}
        for key, value in payload.items():
            if isinstance(key, str) and key.lower() in TIMESTAMP_KEYS and isinstance(value, str):
                coerced[key] = parse_timestamp(value)
            else:
                coerced[key] = coerce_timestamps(value)
        return coerced
    if isinstance(payload, list):
        return [coerce_timestamps(value) for value in payload]
    return payload


def _get_path(payload: dict[str, Any], *path: str) -> Any:
    value: Any = payload
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _get_timestamp(payload: dict[str, Any], name: str) -> datetime | None:
    for key, value in payload.items():
        if isinstance(key, str) and key.lower() == name and isinstance(value, datetime):
            return value
    return None


def _node_from_payload(payload: Any, *, url: str, key_hint: str) -> NodeInfo:
    if not isinstance(payload, dict):
        raise NodeParseError(url, f"node {key_hint} is not an object")

    node_id = _get_path(payload, "nodeinfo", "node_id")
    if node_id is None or isinstance(node_id, (bool, dict, list)):
        raise NodeParseError(url, f"node {key_hint} has no nodeinfo.node_id")
    last_seen = _get_timestamp(payload, "lastseen")
    if last_seen is None:
        raise NodeParseError(url, f"node {key_hint} has no lastseen timestamp")

    hostname = _get_path(payload, "nodeinfo", "hostname")
    contact = _get_path(payload, "nodeinfo", "owner", "contact")
    return NodeInfo(
        node_id=node_id,
        last_seen=last_seen,
        hostname=hostname if isinstance(hostname, str) else "",
        contact=contact if isinstance(contact, str) else "",
        send_alerts=_get_path(payload, "nodeinfo", "send_alerts") is True,
        online=_get_path(payload, "flags", "online") is True,
        first_seen=_get_timestamp(payload, "firstseen"),
        timestamp=_get_timestamp(payload, "timestamp"),
        raw=payload,
    )


def parse_feed_document(document: str, *, url: str = "<feed>") -> list[NodeInfo]:
    try:
        parsed = json.loads(document)
    except json.JSONDecodeError as error:
        raise NodeParseError(url, f"invalid JSON: {error}") from error

    try:
        parsed = coerce_timestamps(parsed)
    except ValueError as error:
        raise NodeParseError(url, str(error)) from error

    if not isinstance(parsed, dict):
        raise NodeParseError(url, "document is not a JSON object")
    nodes = parsed.get("nodes")
    if isinstance(nodes, dict):
        entries = [(str(key), value) for key, value in nodes.items()]
    elif isinstance(nodes, list):
        entries = [(f"#{index}", value) for index, value in enumerate(nodes)]
    else:
        raise NodeParseError(url, "document has no nodes collection")

    return [_node_from_payload(value, url=url, key_hint=key) for key, value in entries]


def _read_document(url: str, *, session: requests.Session, timeout_seconds: float) -> str:
    parsed_url = urlparse(url)
    if parsed_url.scheme == "file":
        try:
            return Path(unquote(parsed_url.path)).read_text(encoding="utf-8")
        except OSError as error:
            raise FeedFetchError(url, str(error)) from error

    try:
        response = session.get(url, timeout=timeout_seconds)
        response.raise_for_status()
    except requests.RequestException as error:
        raise FeedFetchError(url, str(error)) from error
    return response.text


def fetch_nodes(
    url: str,
    *,
    session: requests.Session | None = None,
    timeout_seconds: float = 30.0,
) -> list[NodeInfo]:
    if session is None:
        with requests.Session() as own_session:
            document = _read_document(url, session=own_session, timeout_seconds=timeout_seconds)
    else:
        document = _read_document(url, session=session, timeout_seconds=timeout_seconds)
    nodes = parse_feed_document(document, url=url)
    LOGGER.debug("fetched %d nodes from %s", len(nodes), url)
    return nodes


def fetch_all_nodes(
    urls: Sequence[str],
    *,
    session: requests.Session | None = None,
    timeout_seconds: float = 30.0,
) -> tuple[list[NodeInfo], dict[str, int]]:
    nodes: list[NodeInfo] = []
    per_feed: dict[str, int] = {}
    for url in urls:
        feed_nodes = fetch_nodes(url, session=session, timeout_seconds=timeout_seconds)
        per_feed[url] = per_feed.get(url, 0) + len(feed_nodes)
        nodes.extend(feed_nodes)
    return nodes, per_feed


def check_window(now: datetime, interval_minutes: float) -> tuple[datetime, datetime]:
    return now - timedelta(minutes=interval_minutes), now


def is_vanished(node: NodeInfo, window_start: datetime, window_end: datetime) -> bool:
    if not node.send_alerts or node.online:
        return False
    return window_start <= node.last_seen <= window_end


def vanished_nodes(
    nodes: Iterable[NodeInfo],
    window_start: datetime,
    window_end: datetime,
) -> list[NodeInfo]:
    return [node for node in nodes if is_vanished(node, window_start, window_end)]


def is_valid_email_address(value: str | None) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    _, address = parseaddr(value)
    if not address:
        return False
    # parseaddr is lenient; reject trailing garbage it silently dropped
    if address != value.strip() and not value.strip().endswith(f"<{address}>"):
        return False
    return _EMAIL_ADDRESS.match(address) is not None


def group_by_contact(nodes: Iterable[NodeInfo]) -> dict[str, list[NodeInfo]]:
    groups: dict[str, list[NodeInfo]] = defaultdict(list)
    for node in nodes:
        if not is_valid_email_address(node.contact):
            LOGGER.debug("skipping node %s: no valid contact address", node.node_id)
            continue
        groups[node.contact].append(node)
    return dict(groups)


def run_check(
    config: MonitorConfig,
    notifier: SmtpNotifier,
    *,
    interval_minutes: float = DEFAULT_INTERVAL_MINUTES,
    now: datetime | None = None,
    session: requests.Session | None = None,
) -> CheckResult:
    started_at = time.time()
    monotonic_start = time.monotonic()
    if now is None:
        now = datetime.now(timezone.utc)

    try:
        nodes, feed_node_counts = fetch_all_nodes(
            config.nodes_urls,
            session=session,
            timeout_seconds=config.fetch_timeout_seconds,
        )
    except FeedFetchError as error:
        return CheckResult(
            success=False,
            duration_seconds=time.monotonic() - monotonic_start,
            error=f"feed fetch failed: {error}",
        )

    LOGGER.info("checking %d nodes", len(nodes))
    window_start, window_end = check_window(now, interval_minutes)
    vanished = vanished_nodes(nodes, window_start, window_end)
    groups = group_by_contact(vanished)

    emails_sent = 0
    email_failures = 0
    for contact, group in groups.items():
        message = build_notification(contact, group, config.email)
        try:
            notifier.send(message)
        except EmailSendError as error:
            email_failures += 1
            LOGGER.warning("notification for %d node(s) not sent: %s", len(group), error)
            continue
        emails_sent += 1

    notified_nodes = sum(len(group) for group in groups.values())
    LOGGER.info(
        "sent %d notification email(s) for %d vanished node(s) (%d in window)",
        emails_sent,
        notified_nodes,
        len(vanished),
    )
    return CheckResult(
        success=True,
        observed_at=started_at,
        duration_seconds=time.monotonic() - monotonic_start,
        nodes_scanned=len(nodes),
        vanished_total=len(vanished),
        notified_nodes=notified_nodes,
        emails_sent=emails_sent,
        email_failures=email_failures,
        feed_node_counts=feed_node_counts,
    )
