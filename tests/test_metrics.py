from prometheus_client import CollectorRegistry

from quotawatch.metrics import MetricsUpdater
from quotawatch.models import UsageSnapshot


class TestMetricsUpdater:
    def test_usage_ratios(self, registry: "CollectorRegistry") -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.set_usage("copilot", UsageSnapshot(used=50, limit=200, periodic_used=3, periodic_limit=4))

        assert registry.get_sample_value(
            "quotawatch_usage_ratio", {"provider": "copilot", "window": "session"}
        ) == 0.25
        assert registry.get_sample_value(
            "quotawatch_usage_ratio", {"provider": "copilot", "window": "periodic"}
        ) == 0.75

    def test_unbounded_windows_are_skipped(self, registry: "CollectorRegistry") -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.set_usage("gemini", UsageSnapshot(used=5, limit=0))
        assert registry.get_sample_value(
            "quotawatch_usage_ratio", {"provider": "gemini", "window": "session"}
        ) is None

    def test_fetch_errors(self, registry: "CollectorRegistry") -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.inc_fetch_error("claude", "token_expired")
        updater.inc_fetch_error("claude", "token_expired")
        assert registry.get_sample_value(
            "quotawatch_fetch_errors_total", {"provider": "claude", "kind": "token_expired"}
        ) == 2.0

    def test_sweep_and_success(self, registry: "CollectorRegistry") -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.observe_sweep_duration(0.5)
        updater.set_last_success("copilot", 1700000000.0)
        updater.inc_alerts("copilot", 0)
        updater.inc_alerts("copilot", 2)

        assert registry.get_sample_value("quotawatch_sweep_duration_seconds_count") == 1.0
        assert registry.get_sample_value(
            "quotawatch_last_fetch_success_timestamp_seconds", {"provider": "copilot"}
        ) == 1700000000.0
        assert registry.get_sample_value("quotawatch_alerts_total", {"provider": "copilot"}) == 2.0
