from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from prometheus_client import start_http_server

from ff_monitor.config import DEFAULT_CONFIG_PATH, ConfigValidationError, load_monitor_config
from ff_monitor.exporter import MonitorMetricsPublisher
from ff_monitor.mailer import SmtpNotifier
from ff_monitor.service import DEFAULT_INTERVAL_MINUTES, CheckResult, run_check


LOGGER = logging.getLogger("ff_monitor")
FATAL_EXIT_CODE = 2


@dataclass(frozen=True)
class AppConfig:
    config_path: Path
    interval_minutes: float
    run_once: bool
    debug_mail: bool
    log_level: str
    listen_address: str
    listen_port: int


_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _parse_flag(raw: str) -> bool:
    return raw.strip().lower() in _TRUTHY


def _env_default(name: str, default: object, convert: Callable[[str], object]) -> object:
    raw = os.getenv(name)
    return default if raw is None else convert(raw)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Email owners of alert-enabled mesh nodes that recently went offline",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("FF_MONITOR_CONFIG", DEFAULT_CONFIG_PATH),
        help="YAML config file with nodesUrls and email settings, re-read on every check",
    )
    parser.add_argument(
        "--interval-minutes",
        type=float,
        default=_env_default("FF_MONITOR_INTERVAL_MINUTES", float(DEFAULT_INTERVAL_MINUTES), float),
        help="minutes between checks; also the window in which a node must have vanished",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single check and exit",
    )
    parser.add_argument(
        "--debug-mail",
        action=argparse.BooleanOptionalAction,
        default=_env_default("FF_MONITOR_DEBUG_MAIL", False, _parse_flag),
        help="send every notification to the configured from address instead of node owners",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("FF_MONITOR_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("FF_MONITOR_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for /metrics endpoint",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_env_default("FF_MONITOR_LISTEN_PORT", 0, int),
        help="http bind port for /metrics endpoint (0 disables the endpoint)",
    )
    return parser


def load_config(argv: Sequence[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if args.interval_minutes <= 0:
        parser.error("--interval-minutes must be positive")
    return AppConfig(
        config_path=Path(args.config),
        interval_minutes=args.interval_minutes,
        run_once=bool(args.once),
        debug_mail=bool(args.debug_mail),
        log_level=args.log_level,
        listen_address=args.listen_address,
        listen_port=args.listen_port,
    )


class PeriodicRunner:
    """Runs ``task`` right away and then once per interval until stopped.

    Sleeping happens on ``stop_event`` so a signal handler or a test can
    cancel the loop between two cycles. Exceptions raised by the task end
    the loop.
    """

    def __init__(
        self,
        interval_seconds: float,
        task: Callable[[], object],
        stop_event: threading.Event | None = None,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.task = task
        self.stop_event = stop_event if stop_event is not None else threading.Event()

    def stop(self) -> None:
        self.stop_event.set()

    def run(self, max_cycles: int | None = None) -> int:
        cycles = 0
        next_run_at = time.monotonic()
        while not self.stop_event.is_set():
            self.task()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            next_run_at += self.interval_seconds
            if self.stop_event.wait(max(0.0, next_run_at - time.monotonic())):
                break
        return cycles


def _run_check_cycle(
    *,
    app_config: AppConfig,
    metrics: MonitorMetricsPublisher,
) -> CheckResult | None:
    try:
        monitor_config = load_monitor_config(app_config.config_path)
    except ConfigValidationError as error:
        LOGGER.error("%s", error)
        raise

    notifier = SmtpNotifier(
        monitor_config.email.smtp,
        debug_mode=app_config.debug_mail or monitor_config.debug,
        timeout_seconds=monitor_config.smtp_timeout_seconds,
    )
    try:
        result = run_check(monitor_config, notifier, interval_minutes=app_config.interval_minutes)
    except Exception:
        LOGGER.exception("check cycle aborted")
        metrics.apply_check_result(CheckResult(success=False, error="check cycle aborted"))
        return None

    metrics.apply_check_result(result)
    if result.success:
        LOGGER.info(
            "check finished: %d nodes, %d vanished, %d email(s) sent",
            result.nodes_scanned,
            result.vanished_total,
            result.emails_sent,
        )
    else:
        LOGGER.warning("check failed: %s", result.error)
    return result


def main(argv: Sequence[str] | None = None) -> None:
    config = load_config(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    metrics = MonitorMetricsPublisher()
    if config.listen_port:
        start_http_server(
            port=config.listen_port,
            addr=config.listen_address,
            registry=metrics.registry,
        )
        LOGGER.info("metrics server listening on http://%s:%d/metrics", config.listen_address, config.listen_port)

    runner = PeriodicRunner(
        config.interval_minutes * 60.0,
        lambda: _run_check_cycle(app_config=config, metrics=metrics),
    )
    signal.signal(signal.SIGTERM, lambda signum, frame: runner.stop())

    try:
        runner.run(max_cycles=1 if config.run_once else None)
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")
    except Exception:
        LOGGER.exception("scheduler failed, exiting")
        raise SystemExit(FATAL_EXIT_CODE)


if __name__ == "__main__":
    main()
