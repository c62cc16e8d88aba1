from quotawatch.errors import (
    AuthFailed,
    AuthRequired,
    DecryptionError,
    NetworkError,
    NotConfigured,
    RateLimited,
    StorageUnavailable,
    TokenExpired,
    user_message,
)


class TestUserMessage:
    def test_setup_and_reauth_are_distinguished(self) -> "None":
        assert user_message(AuthRequired()).startswith("Setup required")
        assert user_message(NotConfigured("Antigravity is not running")).startswith("Setup required")
        assert user_message(TokenExpired()).startswith("Sign in again")
        assert user_message(AuthFailed("denied")).startswith("Sign in again")

    def test_specific_messages(self) -> "None":
        assert "30s" in user_message(RateLimited(30))
        assert "Sign in again" in user_message(DecryptionError())
        assert "keychain" in user_message(StorageUnavailable("locked"))

    def test_plain_errors(self) -> "None":
        assert user_message(NetworkError("timeout")) == "Network error: timeout"
        assert user_message(ValueError("x")) == "Unexpected error: x"

    def test_kinds(self) -> "None":
        assert TokenExpired().kind == "token_expired"
        assert TokenExpired().needs_reauth
        assert AuthRequired().needs_setup
        assert not NetworkError("x").needs_setup
