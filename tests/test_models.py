from datetime import datetime, timezone

from quotawatch.models import (
    Authenticated,
    Failed,
    PendingUserAction,
    QuotaBreakdown,
    Unauthenticated,
    UsageSnapshot,
    describe_state,
)


class TestUsageSnapshot:
    def test_percentages(self) -> "None":
        snap = UsageSnapshot(used=25, limit=100, periodic_used=1, periodic_limit=4)
        assert snap.session_percent == 25.0
        assert snap.periodic_percent == 25.0

    def test_zero_limit_is_unbounded(self) -> "None":
        snap = UsageSnapshot(used=10, limit=0, periodic_used=3, periodic_limit=0)
        assert snap.session_percent is None
        assert snap.periodic_percent is None

    def test_degraded_keeps_fields(self) -> "None":
        then = datetime(2025, 1, 1, tzinfo=timezone.utc)
        snap = UsageSnapshot(used=7, limit=10, credits_remaining=3, fetched_at=then)
        degraded = snap.degraded("Network error: boom")
        assert (degraded.used, degraded.limit, degraded.credits_remaining) == (7, 10, 3)
        assert degraded.error == "Network error: boom"
        assert degraded.fetched_at > then

    def test_from_dict_tolerates_missing_fields(self) -> "None":
        snap = UsageSnapshot.from_dict({"used": 1})
        assert snap.limit == 0
        assert snap.error is None
        assert snap.breakdown == ()
        assert snap.fetched_at.tzinfo is not None


class TestQuotaBreakdown:
    def test_fraction_is_clamped(self) -> "None":
        assert QuotaBreakdown("m", 1.5).remaining_fraction == 1.0
        assert QuotaBreakdown("m", -0.2).remaining_fraction == 0.0


class TestDescribeState:
    def test_states(self) -> "None":
        assert describe_state(Unauthenticated()) == {"status": "unauthenticated"}
        assert describe_state(Failed("nope")) == {"status": "failed", "reason": "nope"}
        pending = describe_state(PendingUserAction(prompt="go", user_code="AB-12"))
        assert pending["status"] == "pending"
        assert pending["user_code"] == "AB-12"

    def test_authenticated_never_exposes_secret_ref(self) -> "None":
        described = describe_state(Authenticated(secret_ref="copilot_token", account="me"))
        assert described == {"status": "authenticated", "account": "me", "expires_at": None}
