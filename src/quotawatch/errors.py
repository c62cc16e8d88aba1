class QuotaWatchError(Exception):
    """
    QuotaWatchError is the root of every error raised by providers,
    storage and the command layer. Each subclass carries a stable
    `kind` string used for metrics labels and for rendering user
    facing messages.
    """

    kind: "str" = "error"
    # true when the user has never configured the provider
    needs_setup: "bool" = False
    # true when a credential existed but must be renewed
    needs_reauth: "bool" = False


class AuthRequired(QuotaWatchError):
    kind = "auth_required"
    needs_setup = True

    def __init__(self) -> "None":
        super().__init__("Authentication required")


class AuthFailed(QuotaWatchError):
    kind = "auth_failed"
    needs_reauth = True

    def __init__(self, reason: "str") -> "None":
        self.reason = reason
        super().__init__(f"Authentication failed: {reason}")


class AuthUnavailable(QuotaWatchError):
    """
    raised by begin_auth when the provider cannot start a flow at all.
    """

    kind = "auth_unavailable"
    needs_setup = True

    def __init__(self, reason: "str") -> "None":
        self.reason = reason
        super().__init__(f"Authentication unavailable: {reason}")


class TokenExpired(QuotaWatchError):
    kind = "token_expired"
    needs_reauth = True

    def __init__(self) -> "None":
        super().__init__("Token expired")


class RateLimited(QuotaWatchError):
    kind = "rate_limited"

    def __init__(self, retry_after: "int") -> "None":
        self.retry_after = retry_after
        super().__init__(f"Rate limited, retry after {retry_after} seconds")


class NetworkError(QuotaWatchError):
    kind = "network"

    def __init__(self, detail: "str") -> "None":
        self.detail = detail
        super().__init__(f"Network error: {detail}")


class ParseError(QuotaWatchError):
    kind = "parse"

    def __init__(self, detail: "str") -> "None":
        self.detail = detail
        super().__init__(f"Parse error: {detail}")


class NotConfigured(QuotaWatchError):
    kind = "not_configured"
    needs_setup = True

    def __init__(self, detail: "str" = "") -> "None":
        self.detail = detail
        super().__init__(f"Not configured: {detail}" if detail else "Not configured")


class DecryptionError(QuotaWatchError):
    """
    single opaque failure for every way an encrypted blob can fail to
    open. The cause is deliberately not carried.
    """

    kind = "decryption"

    def __init__(self) -> "None":
        super().__init__("Decryption error")


class StorageUnavailable(QuotaWatchError):
    kind = "storage_unavailable"

    def __init__(self, detail: "str") -> "None":
        self.detail = detail
        super().__init__(f"Secret storage unavailable: {detail}")


class ConfigurationError(QuotaWatchError):
    kind = "configuration"

    def __init__(self, detail: "str") -> "None":
        self.detail = detail
        super().__init__(f"Configuration error: {detail}")


class UnknownProvider(QuotaWatchError):
    kind = "unknown_provider"

    def __init__(self, provider_id: "str") -> "None":
        self.provider_id = provider_id
        super().__init__(f"Provider '{provider_id}' not found")


def user_message(error: "BaseException") -> "str":
    """
    renders an error into a message for the UI layer. "Needs setup"
    and "needs re-auth" produce different wording so the UI can offer
    the right action.
    """
    if not isinstance(error, QuotaWatchError):
        return f"Unexpected error: {error}"

    if isinstance(error, RateLimited):
        return f"Rate limited by the provider, retrying in {error.retry_after}s"
    if isinstance(error, DecryptionError):
        return "Stored credential could not be read. Sign in again."
    if isinstance(error, StorageUnavailable):
        return "System keychain is unavailable (is it locked?)"
    if error.needs_setup:
        return f"Setup required: {error}"
    if error.needs_reauth:
        return f"Sign in again: {error}"
    return str(error)
