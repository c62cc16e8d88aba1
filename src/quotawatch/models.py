import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


def utcnow() -> "datetime":
    return datetime.now(timezone.utc)


def _dt_to_str(value: "datetime | None") -> "str | None":
    if value is None:
        return None
    return value.isoformat()


def _dt_from_str(value: "object") -> "datetime | None":
    if not isinstance(value, str) or not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _percent(used: "int", limit: "int") -> "float | None":
    # a limit of 0 means unbounded or unknown
    if limit <= 0:
        return None
    return used / limit * 100.0


@dataclass(frozen=True, slots=True)
class QuotaBreakdown:
    """
    QuotaBreakdown is a named sub-quota (for example one model) reported
    by providers with per-resource limits.
    """

    name: "str"
    # fraction of the quota still available, clamped to [0, 1]
    remaining_fraction: "float"
    reset_time: "datetime | None" = None

    def __post_init__(self) -> "None":
        clamped = min(1.0, max(0.0, float(self.remaining_fraction)))
        object.__setattr__(self, "remaining_fraction", clamped)

    def to_dict(self) -> "dict[str, object]":
        return {
            "name": self.name,
            "remaining_fraction": self.remaining_fraction,
            "reset_time": _dt_to_str(self.reset_time),
        }

    @classmethod
    def from_dict(cls, raw: "dict[str, object]") -> "QuotaBreakdown":
        return cls(
            name=str(raw["name"]),
            remaining_fraction=float(raw.get("remaining_fraction", 1.0)),
            reset_time=_dt_from_str(raw.get("reset_time")),
        )


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """
    UsageSnapshot is the last known usage of one provider account.

    used/limit describe the short session window and periodic_used/
    periodic_limit the longer (weekly or monthly) window. The two pairs
    are independent meters and a limit of 0 means unbounded.
    """

    used: "int" = 0
    limit: "int" = 0
    periodic_used: "int" = 0
    periodic_limit: "int" = 0
    credits_remaining: "int | None" = None
    reset_time: "datetime | None" = None
    periodic_reset_time: "datetime | None" = None
    fetched_at: "datetime" = field(default_factory=utcnow)
    error: "str | None" = None
    breakdown: "tuple[QuotaBreakdown, ...]" = ()

    @property
    def session_percent(self) -> "float | None":
        return _percent(self.used, self.limit)

    @property
    def periodic_percent(self) -> "float | None":
        return _percent(self.periodic_used, self.periodic_limit)

    def degraded(self, error: "str", fetched_at: "datetime | None" = None) -> "UsageSnapshot":
        """
        returns a copy that keeps the previous usage fields and records
        a fetch failure.
        """
        return replace(self, error=error, fetched_at=fetched_at or utcnow())

    def to_dict(self) -> "dict[str, object]":
        return {
            "used": self.used,
            "limit": self.limit,
            "periodic_used": self.periodic_used,
            "periodic_limit": self.periodic_limit,
            "credits_remaining": self.credits_remaining,
            "reset_time": _dt_to_str(self.reset_time),
            "periodic_reset_time": _dt_to_str(self.periodic_reset_time),
            "fetched_at": _dt_to_str(self.fetched_at),
            "error": self.error,
            "breakdown": [b.to_dict() for b in self.breakdown],
        }

    @classmethod
    def from_dict(cls, raw: "dict[str, object]") -> "UsageSnapshot":
        credits = raw.get("credits_remaining")
        return cls(
            used=int(raw.get("used", 0)),
            limit=int(raw.get("limit", 0)),
            periodic_used=int(raw.get("periodic_used", 0)),
            periodic_limit=int(raw.get("periodic_limit", 0)),
            credits_remaining=int(credits) if credits is not None else None,
            reset_time=_dt_from_str(raw.get("reset_time")),
            periodic_reset_time=_dt_from_str(raw.get("periodic_reset_time")),
            fetched_at=_dt_from_str(raw.get("fetched_at")) or utcnow(),
            error=raw.get("error") or None,
            breakdown=tuple(
                QuotaBreakdown.from_dict(b) for b in raw.get("breakdown") or []
            ),
        )


class AuthMethod(str, enum.Enum):
    DEVICE_FLOW = "device_flow"
    CLI = "cli"
    COOKIES = "cookies"
    LOCAL = "local"


@dataclass(frozen=True, slots=True)
class ProviderIdentity:
    # stable lowercase identifier, also used as the cache key
    id: "str"
    name: "str"
    website: "str"
    auth_methods: "tuple[AuthMethod, ...]"
    has_session: "bool" = True
    has_periodic: "bool" = False
    has_credits: "bool" = False


@dataclass(frozen=True, slots=True)
class AuthPrompt:
    """
    AuthPrompt describes what the user has to do to finish an auth flow.
    """

    instructions: "str"
    verification_url: "str | None" = None
    user_code: "str | None" = None
    # seconds between token endpoint polls (device flow only)
    poll_interval: "int | None" = None


@dataclass(frozen=True, slots=True)
class Unauthenticated:
    pass


@dataclass(frozen=True, slots=True)
class PendingUserAction:
    prompt: "str"
    verification_url: "str | None" = None
    user_code: "str | None" = None
    poll_interval: "int | None" = None


@dataclass(frozen=True, slots=True)
class Authenticated:
    # where the secret lives (secret store key, blob name or file path),
    # never the secret itself
    secret_ref: "str"
    expires_at: "datetime | None" = None
    account: "str | None" = None


@dataclass(frozen=True, slots=True)
class Failed:
    reason: "str"


CredentialState = Unauthenticated | PendingUserAction | Authenticated | Failed


def describe_state(state: "CredentialState") -> "dict[str, object]":
    """
    flattens a credential state into a JSON friendly mapping for the
    command layer.
    """
    if isinstance(state, PendingUserAction):
        return {
            "status": "pending",
            "prompt": state.prompt,
            "verification_url": state.verification_url,
            "user_code": state.user_code,
            "poll_interval": state.poll_interval,
        }
    if isinstance(state, Authenticated):
        return {
            "status": "authenticated",
            "account": state.account,
            "expires_at": _dt_to_str(state.expires_at),
        }
    if isinstance(state, Failed):
        return {"status": "failed", "reason": state.reason}
    return {"status": "unauthenticated"}
