"""Prometheus metrics collected during a sending run."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, write_to_textfile


class SenderMetrics:
    """Wrapper around the Prometheus registry used by the sender."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.deliveries = Counter(
            "dmarc_sender_deliveries_total", "Delivery attempts by outcome", ["outcome"], registry=self.registry
        )
        self.deleted = Counter(
            "dmarc_sender_reports_deleted_total", "Reports removed from the queue", ["reason"], registry=self.registry
        )
        self.timeouts = Counter(
            "dmarc_sender_report_timeouts_total", "Reports that exceeded the per-report timeout", registry=self.registry
        )
        self.report_errors = Counter(
            "dmarc_sender_report_errors_total", "Unexpected errors while sending a report", registry=self.registry
        )
        self.pending = Gauge("dmarc_sender_pending_reports", "Reports still queued", registry=self.registry)

    def inc_delivery(self, outcome: str):
        """Count one delivery with the given outcome."""
        self.deliveries.labels(outcome=outcome).inc()

    def inc_deleted(self, reason: str):
        """Count a report deletion (``delivered``, ``no_receivers``, ``permanent_failure``)."""
        self.deleted.labels(reason=reason).inc()

    def inc_timeout(self):
        self.timeouts.inc()

    def inc_report_error(self):
        self.report_errors.inc()

    def set_pending(self, value: int):
        """Update the gauge tracking queued reports."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)

    def write_textfile(self, path: str) -> None:
        """Write the snapshot for the node exporter textfile collector."""
        write_to_textfile(path, self.registry)
