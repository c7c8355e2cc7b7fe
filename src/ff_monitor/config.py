from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from ff_monitor.mailer import DEFAULT_MAP_URL, DEFAULT_NODE_TEMPLATE, EmailConfig, SmtpConfig
from ff_monitor.service import is_valid_email_address


LOGGER = logging.getLogger("ff_monitor.config")
DEFAULT_CONFIG_PATH = "/usr/local/etc/ff-monitor.yaml"


class ConfigValidationError(Exception):
    def __init__(self, source: str, problems: list[str]) -> None:
        explanation = "\n".join(f"  - {problem}" for problem in problems)
        super().__init__(f"Aborted. Invalid configuration file {source}:\n{explanation}")
        self.source = source
        self.problems = problems


@dataclass(frozen=True)
class MonitorConfig:
    nodes_urls: list[str]
    email: EmailConfig
    debug: bool = False
    fetch_timeout_seconds: float = 30.0
    smtp_timeout_seconds: float = 30.0


def _is_valid_url(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    parsed = urlparse(value)
    if parsed.scheme in {"http", "https"}:
        return bool(parsed.netloc)
    if parsed.scheme == "file":
        return bool(parsed.path)
    return False


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _optional_bool(section: dict[str, Any], key: str, label: str, problems: list[str]) -> bool:
    value = section.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        problems.append(f"{label} must be true or false")
        return False
    return value


def _positive_number(raw: dict[str, Any], key: str, default: float, problems: list[str]) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        problems.append(f"{key} must be a positive number")
        return default
    return float(value)


def _parse_smtp(raw: Any, problems: list[str]) -> SmtpConfig | None:
    if not isinstance(raw, dict):
        problems.append("email.smtp is required and must be a mapping")
        return None
    if not _non_empty_string(raw.get("host")):
        problems.append("email.smtp.host is required")
    if not _non_empty_string(raw.get("user")):
        problems.append("email.smtp.user is required")
    password = raw.get("pass")
    if password is not None and not isinstance(password, str):
        problems.append("email.smtp.pass must be a string")
        password = None
    port = raw.get("port")
    if port is not None and (isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536):
        problems.append("email.smtp.port must be an integer between 1 and 65535")
        port = None
    use_ssl = _optional_bool(raw, "ssl", "email.smtp.ssl", problems)
    use_tls = _optional_bool(raw, "tls", "email.smtp.tls", problems)
    return SmtpConfig(
        host=str(raw.get("host") or ""),
        user=str(raw.get("user") or ""),
        password=password,
        ssl=use_ssl,
        tls=use_tls,
        port=port,
    )


def _parse_timezone(raw: Any, problems: list[str]) -> ZoneInfo | None:
    if raw is None:
        return None
    if not _non_empty_string(raw):
        problems.append("timezone must be an IANA zone name")
        return None
    try:
        return ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        problems.append(f"timezone {raw!r} is unknown")
        return None


def _parse_email(raw: Any, zone: ZoneInfo | None, map_url: str, problems: list[str]) -> EmailConfig | None:
    if not isinstance(raw, dict):
        problems.append("email is required and must be a mapping")
        return None
    smtp = _parse_smtp(raw.get("smtp"), problems)
    from_address = raw.get("from")
    if not is_valid_email_address(from_address):
        problems.append(f"email.from must be a valid email address, got {from_address!r}")
    for key in ("subject", "body"):
        if not isinstance(raw.get(key, ""), str):
            problems.append(f"email.{key} must be a string")
    node_template = raw.get("nodeTemplate", DEFAULT_NODE_TEMPLATE)
    if not isinstance(node_template, str):
        problems.append("email.nodeTemplate must be a string")
        node_template = DEFAULT_NODE_TEMPLATE
    if smtp is None:
        return None
    return EmailConfig(
        smtp=smtp,
        from_address=str(from_address or ""),
        subject=str(raw.get("subject") or ""),
        body=str(raw.get("body") or "{{node-list}}"),
        node_template=node_template,
        map_url=map_url,
        timezone=zone,
    )


def parse_monitor_config(raw: Any, *, source: str = "<config>") -> MonitorConfig:
    if not isinstance(raw, dict):
        raise ConfigValidationError(source, ["top level must be a mapping"])

    problems: list[str] = []
    nodes_urls = raw.get("nodesUrls")
    if not isinstance(nodes_urls, list):
        problems.append("nodesUrls is required and must be a list of URLs")
        nodes_urls = []
    for index, url in enumerate(nodes_urls):
        if not _is_valid_url(url):
            problems.append(f"nodesUrls[{index}] is not a valid URL: {url!r}")

    map_url = raw.get("mapUrl", DEFAULT_MAP_URL)
    if not _non_empty_string(map_url):
        problems.append("mapUrl must be a non-empty string")
        map_url = DEFAULT_MAP_URL
    zone = _parse_timezone(raw.get("timezone"), problems)
    email = _parse_email(raw.get("email"), zone, map_url, problems)
    debug = _optional_bool(raw, "debug", "debug", problems)
    fetch_timeout = _positive_number(raw, "fetchTimeoutSeconds", 30.0, problems)
    smtp_timeout = _positive_number(raw, "smtpTimeoutSeconds", 30.0, problems)

    if problems or email is None:
        raise ConfigValidationError(source, problems)
    return MonitorConfig(
        nodes_urls=list(nodes_urls),
        email=email,
        debug=debug,
        fetch_timeout_seconds=fetch_timeout,
        smtp_timeout_seconds=smtp_timeout,
    )


def load_monitor_config(path: str | Path) -> MonitorConfig:
    config_path = Path(path)
    try:
        with config_path.open(encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except OSError as error:
        raise ConfigValidationError(str(config_path), [f"cannot read file: {error}"]) from error
    except yaml.YAMLError as error:
        raise ConfigValidationError(str(config_path), [f"invalid YAML: {error}"]) from error
    config = parse_monitor_config(raw, source=str(config_path))
    LOGGER.debug("loaded config from %s with %d feed(s)", config_path, len(config.nodes_urls))
    return config
