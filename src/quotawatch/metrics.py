from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from quotawatch.models import UsageSnapshot


class MetricsUpdater:
    """
    records scheduler activity and the latest usage ratios as
    Prometheus metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._sweep_duration: "Histogram" = Histogram(
            "quotawatch_sweep_duration_seconds",
            "Duration of refresh sweeps over all enabled providers",
            registry=registry,
        )
        self._fetch_duration: "Histogram" = Histogram(
            "quotawatch_fetch_duration_seconds",
            "Duration of a single provider usage fetch",
            ["provider"],
            registry=registry,
        )
        self._fetch_errors: "Counter" = Counter(
            "quotawatch_fetch_errors_total",
            "Total number of usage fetch failures by provider and kind",
            ["provider", "kind"],
            registry=registry,
        )
        self._last_success: "Gauge" = Gauge(
            "quotawatch_last_fetch_success_timestamp_seconds",
            "Unix timestamp of the last successful fetch per provider",
            ["provider"],
            registry=registry,
        )
        self._usage_ratio: "Gauge" = Gauge(
            "quotawatch_usage_ratio",
            "Fraction of the quota used, per provider and window",
            ["provider", "window"],
            registry=registry,
        )
        self._alerts: "Counter" = Counter(
            "quotawatch_alerts_total",
            "Total number of usage alerts dispatched per provider",
            ["provider"],
            registry=registry,
        )

    def observe_sweep_duration(self, duration_seconds: "float") -> "None":
        self._sweep_duration.observe(duration_seconds)

    def observe_fetch_duration(self, provider: "str", duration_seconds: "float") -> "None":
        self._fetch_duration.labels(provider=provider).observe(duration_seconds)

    def inc_fetch_error(self, provider: "str", kind: "str") -> "None":
        self._fetch_errors.labels(provider=provider, kind=kind).inc()

    def inc_alerts(self, provider: "str", count: "int") -> "None":
        if count:
            self._alerts.labels(provider=provider).inc(count)

    def set_last_success(self, provider: "str", timestamp: "float") -> "None":
        self._last_success.labels(provider=provider).set(timestamp)

    def set_usage(self, provider: "str", snapshot: "UsageSnapshot") -> "None":
        """
        updates the ratio gauges. Windows with an unbounded (0) limit
        are skipped.
        """
        for window, percent in (
            ("session", snapshot.session_percent),
            ("periodic", snapshot.periodic_percent),
        ):
            if percent is not None:
                self._usage_ratio.labels(provider=provider, window=window).set(percent / 100.0)
