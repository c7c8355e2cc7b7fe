from __future__ import annotations

from prometheus_client import CollectorRegistry, Gauge

from ff_monitor.service import CheckResult


class MonitorMetricsPublisher:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry
        self._known_feeds: set[str] = set()

        self.check_success = Gauge(
            "ff_monitor_check_success",
            "Latest check cycle status (1=success, 0=failure)",
            registry=self.registry,
        )
        self.check_duration_seconds = Gauge(
            "ff_monitor_check_duration_seconds",
            "Duration of the last check cycle in seconds",
            registry=self.registry,
        )
        self.check_timestamp_seconds = Gauge(
            "ff_monitor_check_timestamp_seconds",
            "Unix timestamp of the last successful check cycle",
            registry=self.registry,
        )
        self.nodes_scanned = Gauge(
            "ff_monitor_nodes_scanned",
            "Nodes read from all feeds in the last successful check",
            registry=self.registry,
        )
        self.vanished_nodes = Gauge(
            "ff_monitor_vanished_nodes",
            "Alert-enabled nodes that went offline inside the last check window",
            registry=self.registry,
        )
        self.notified_nodes = Gauge(
            "ff_monitor_notified_nodes",
            "Vanished nodes with a valid contact address in the last check",
            registry=self.registry,
        )
        self.emails_sent = Gauge(
            "ff_monitor_emails_sent",
            "Notification emails sent in the last check",
            registry=self.registry,
        )
        self.email_failures = Gauge(
            "ff_monitor_email_failures",
            "Notification emails that could not be sent in the last check",
            registry=self.registry,
        )
        self.feed_nodes = Gauge(
            "ff_monitor_feed_nodes",
            "Nodes read from a single feed in the last successful check",
            ["url"],
            registry=self.registry,
        )

    def apply_check_result(self, result: CheckResult) -> None:
        self.check_success.set(1.0 if result.success else 0.0)
        if result.duration_seconds is not None:
            self.check_duration_seconds.set(result.duration_seconds)
        if not result.success:
            return
        if result.observed_at is not None:
            self.check_timestamp_seconds.set(result.observed_at)
        self.nodes_scanned.set(float(result.nodes_scanned))
        self.vanished_nodes.set(float(result.vanished_total))
        self.notified_nodes.set(float(result.notified_nodes))
        self.emails_sent.set(float(result.emails_sent))
        self.email_failures.set(float(result.email_failures))

        current_feeds = set(result.feed_node_counts)
        for url, count in result.feed_node_counts.items():
            self.feed_nodes.labels(url=url).set(float(count))
        for stale_url in self._known_feeds - current_feeds:
            self.feed_nodes.remove(stale_url)
        self._known_feeds = current_feeds
