import asyncio
from urllib.parse import parse_qs

import httpx
import pytest
import respx

from quotawatch.errors import AuthFailed, AuthRequired, AuthUnavailable, ParseError, TokenExpired
from quotawatch.models import Authenticated, Failed, PendingUserAction, Unauthenticated
from quotawatch.provider.copilot import (
    CLIENT_ID,
    COPILOT_USAGE_URL,
    GITHUB_DEVICE_CODE_URL,
    GITHUB_TOKEN_URL,
    CopilotProvider,
)
from quotawatch.storage.secret_store import SecretStore

DEVICE_CODE_RESPONSE = {
    "device_code": "dev-123",
    "user_code": "ABCD-1234",
    "verification_uri": "https://github.com/login/device",
    "interval": 5,
    "expires_in": 900,
}


class RecordingSleep:
    """
    stands in for asyncio.sleep and records the requested delays.
    """

    def __init__(self) -> "None":
        self.calls: "list[float]" = []

    async def __call__(self, seconds: "float") -> "None":
        self.calls.append(seconds)


class TestCopilotDeviceFlow:
    @pytest.mark.asyncio
    @respx.mock
    async def test_begin_auth_returns_prompt(self, secret_store: "SecretStore") -> "None":
        route = respx.post(GITHUB_DEVICE_CODE_URL).mock(
            return_value=httpx.Response(200, json=DEVICE_CODE_RESPONSE)
        )
        provider = CopilotProvider(secret_store)

        prompt = await provider.begin_auth()

        assert prompt.user_code == "ABCD-1234"
        assert prompt.verification_url == "https://github.com/login/device"
        assert prompt.poll_interval == 5
        assert isinstance(provider.credential_state(), PendingUserAction)
        sent = parse_qs(route.calls.last.request.content.decode())
        assert sent["client_id"] == [CLIENT_ID]

    @pytest.mark.asyncio
    @respx.mock
    async def test_begin_auth_network_failure_is_unavailable(self, secret_store: "SecretStore") -> "None":
        respx.post(GITHUB_DEVICE_CODE_URL).mock(side_effect=httpx.ConnectError("down"))
        provider = CopilotProvider(secret_store)

        with pytest.raises(AuthUnavailable):
            await provider.begin_auth()
        assert isinstance(provider.credential_state(), Unauthenticated)

    @pytest.mark.asyncio
    @respx.mock
    async def test_polls_until_token(self, secret_store: "SecretStore") -> "None":
        respx.post(GITHUB_DEVICE_CODE_URL).mock(
            return_value=httpx.Response(200, json=DEVICE_CODE_RESPONSE)
        )
        token_route = respx.post(GITHUB_TOKEN_URL).mock(
            side_effect=[
                httpx.Response(200, json={"error": "authorization_pending"}),
                httpx.Response(200, json={"error": "slow_down"}),
                httpx.Response(200, json={"access_token": "gho_secret", "token_type": "bearer"}),
            ]
        )
        sleep = RecordingSleep()
        provider = CopilotProvider(secret_store, sleep=sleep)

        await provider.begin_auth()
        await provider.resume_auth()

        assert token_route.call_count == 3
        # slow_down adds five seconds to the interval
        assert sleep.calls == [5, 5, 10]
        assert isinstance(provider.credential_state(), Authenticated)
        assert secret_store.get("copilot_token") == "gho_secret"

    @pytest.mark.asyncio
    @respx.mock
    async def test_access_denied_fails(self, secret_store: "SecretStore") -> "None":
        respx.post(GITHUB_DEVICE_CODE_URL).mock(
            return_value=httpx.Response(200, json=DEVICE_CODE_RESPONSE)
        )
        respx.post(GITHUB_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"error": "access_denied"})
        )
        provider = CopilotProvider(secret_store, sleep=RecordingSleep())

        await provider.begin_auth()
        with pytest.raises(AuthFailed):
            await provider.resume_auth()
        assert isinstance(provider.credential_state(), Failed)
        assert secret_store.get("copilot_token") is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_expired_device_code(self, secret_store: "SecretStore") -> "None":
        respx.post(GITHUB_DEVICE_CODE_URL).mock(
            return_value=httpx.Response(200, json=DEVICE_CODE_RESPONSE)
        )
        token_route = respx.post(GITHUB_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"error": "authorization_pending"})
        )
        now = [0.0]
        provider = CopilotProvider(secret_store, sleep=RecordingSleep(), clock=lambda: now[0])

        await provider.begin_auth()
        now[0] = 1000.0
        with pytest.raises(AuthFailed):
            await provider.resume_auth()
        assert token_route.call_count == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_device_code_interval(self, secret_store: "SecretStore") -> "None":
        respx.post(GITHUB_DEVICE_CODE_URL).mock(
            return_value=httpx.Response(200, json={**DEVICE_CODE_RESPONSE, "interval": {"s": 5}})
        )
        provider = CopilotProvider(secret_store)

        with pytest.raises(ParseError):
            await provider.begin_auth()
        assert isinstance(provider.credential_state(), Unauthenticated)

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_slow_down_interval_ends_flow(self, secret_store: "SecretStore") -> "None":
        respx.post(GITHUB_DEVICE_CODE_URL).mock(
            return_value=httpx.Response(200, json=DEVICE_CODE_RESPONSE)
        )
        respx.post(GITHUB_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"error": "slow_down", "interval": "soon"})
        )
        provider = CopilotProvider(secret_store, sleep=RecordingSleep())

        await provider.begin_auth()
        with pytest.raises(ParseError):
            await provider.resume_auth()

        assert isinstance(provider.credential_state(), Failed)
        # the dead flow is dropped
        with pytest.raises(AuthFailed):
            await provider.resume_auth()

    @pytest.mark.asyncio
    async def test_resume_without_begin_fails(self, secret_store: "SecretStore") -> "None":
        provider = CopilotProvider(secret_store)
        with pytest.raises(AuthFailed):
            await provider.resume_auth()

    @pytest.mark.asyncio
    @respx.mock
    async def test_cancel_stops_polling(self, secret_store: "SecretStore") -> "None":
        respx.post(GITHUB_DEVICE_CODE_URL).mock(
            return_value=httpx.Response(200, json=DEVICE_CODE_RESPONSE)
        )
        token_route = respx.post(GITHUB_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"error": "authorization_pending"})
        )
        blocked = asyncio.Event()

        async def never(seconds: "float") -> "None":
            blocked.set()
            await asyncio.Event().wait()

        provider = CopilotProvider(secret_store, sleep=never)
        await provider.begin_auth()

        task = asyncio.create_task(provider.resume_auth())
        await blocked.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert token_route.call_count == 0
        assert isinstance(provider.credential_state(), Unauthenticated)
        # a new flow can start once the old one is gone
        await provider.begin_auth()


class TestCopilotFetchUsage:
    @pytest.mark.asyncio
    @respx.mock
    async def test_maps_usage(self, secret_store: "SecretStore") -> "None":
        secret_store.put("copilot_token", "gho_secret")
        route = respx.get(COPILOT_USAGE_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "chat_completions": 150,
                    "chat_completions_limit": 200,
                    "premium_requests": 10,
                    "premium_requests_limit": 300,
                    "resets_at": "2025-02-01T00:00:00Z",
                },
            )
        )
        provider = CopilotProvider(secret_store)
        await provider.load()
        assert provider.is_ready()

        snap = await provider.fetch_usage()

        assert (snap.used, snap.limit) == (150, 200)
        assert (snap.periodic_used, snap.periodic_limit) == (10, 300)
        assert snap.reset_time.isoformat() == "2025-02-01T00:00:00+00:00"
        assert route.calls.last.request.headers["Authorization"] == "Bearer gho_secret"

    @pytest.mark.asyncio
    async def test_no_token_is_auth_required(self, secret_store: "SecretStore") -> "None":
        provider = CopilotProvider(secret_store)
        await provider.load()
        with pytest.raises(AuthRequired):
            await provider.fetch_usage()

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_token_fails_state(self, secret_store: "SecretStore") -> "None":
        secret_store.put("copilot_token", "gho_old")
        route = respx.get(COPILOT_USAGE_URL).mock(return_value=httpx.Response(401))
        provider = CopilotProvider(secret_store)
        await provider.load()

        with pytest.raises(TokenExpired):
            await provider.fetch_usage()
        # no refresh for device flow tokens
        assert route.call_count == 1
        assert isinstance(provider.credential_state(), Failed)

    @pytest.mark.asyncio
    @respx.mock
    async def test_revoke_clears_secret(self, secret_store: "SecretStore") -> "None":
        secret_store.put("copilot_token", "gho_secret")
        provider = CopilotProvider(secret_store)
        await provider.load()

        await provider.revoke()
        await provider.revoke()

        assert secret_store.get("copilot_token") is None
        assert isinstance(provider.credential_state(), Unauthenticated)
