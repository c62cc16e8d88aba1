import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
import structlog

from quotawatch.errors import (
    AuthFailed,
    AuthRequired,
    AuthUnavailable,
    NetworkError,
    ParseError,
    QuotaWatchError,
)
from quotawatch.models import (
    Authenticated,
    AuthMethod,
    AuthPrompt,
    Failed,
    PendingUserAction,
    ProviderIdentity,
    Unauthenticated,
    UsageSnapshot,
)
from quotawatch.provider.base import BaseProvider
from quotawatch.provider.http import check_status, decode_json, send
from quotawatch.provider.timeutil import as_count, parse_timestamp
from quotawatch.storage.secret_store import SecretStore

logger = structlog.get_logger()

GITHUB_DEVICE_CODE_URL = "https://github.com/login/device/code"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
COPILOT_USAGE_URL = "https://api.github.com/copilot/usage"
CLIENT_ID = "Iv1.b507a08c87ecfe98"
DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

DEFAULT_POLL_INTERVAL = 5
# RFC 8628: slow_down adds 5 seconds to the polling interval
SLOW_DOWN_INCREMENT = 5


@dataclass(slots=True)
class _DeviceFlow:
    device_code: "str"
    user_code: "str"
    verification_uri: "str"
    interval: "int"
    # monotonic clock deadline after which the device code is dead
    deadline: "float"


def _seconds(value: "object", default: "int") -> "int":
    """
    reads a duration in seconds from a device flow response. Absent or
    zero values fall back to default.
    """
    if value is None or value == "" or value == 0:
        return default
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"expected a number of seconds, got {value!r}")
    if not 0 < value < 86400:
        raise ParseError(f"duration {value} is out of range")
    return int(value)


class CopilotProvider(BaseProvider):
    """
    CopilotProvider authenticates with the GitHub OAuth device flow and
    reads chat completion (session) and premium request (monthly)
    counters from the Copilot usage API.

    begin_auth() requests a device code. resume_auth() then polls the
    token endpoint at the server dictated interval until the user
    approves, denies or the code expires. The caller runs resume_auth()
    as its own task; cancelling that task stops polling immediately.
    """

    identity = ProviderIdentity(
        id="copilot",
        name="GitHub Copilot",
        website="https://github.com/features/copilot",
        auth_methods=(AuthMethod.DEVICE_FLOW,),
        has_session=True,
        has_periodic=True,
    )

    def __init__(
        self,
        secrets: "SecretStore",
        client: "httpx.AsyncClient | None" = None,
        sleep: "Callable[[float], Awaitable[None]]" = asyncio.sleep,
        clock: "Callable[[], float]" = time.monotonic,
    ) -> "None":
        super().__init__(client)
        self._secrets = secrets
        self._token_key = secrets.key(self.id, "token")
        self._token: "str | None" = None
        self._flow: "_DeviceFlow | None" = None
        self._sleep = sleep
        self._clock = clock

    async def load(self) -> "None":
        try:
            token = self._secrets.get(self._token_key)
        except QuotaWatchError as e:
            logger.warning("credential_load_failed", provider=self.id, error=str(e))
            self._set_state(Failed(str(e)))
            return
        if token:
            self._token = token
            self._set_state(Authenticated(secret_ref=self._token_key))

    async def begin_auth(self) -> "AuthPrompt":
        if self._auth_lock.locked():
            raise AuthUnavailable("an authorization is already in progress")

        async with self._auth_lock:
            try:
                resp = await send(
                    self._client,
                    "POST",
                    GITHUB_DEVICE_CODE_URL,
                    headers={"Accept": "application/json"},
                    data={"client_id": CLIENT_ID, "scope": "read:user"},
                )
            except NetworkError as e:
                raise AuthUnavailable(e.detail) from e
            if resp.is_error:
                raise AuthUnavailable(f"device code request failed (HTTP {resp.status_code})")

            data = decode_json(resp)
            try:
                interval = _seconds(data.get("interval"), DEFAULT_POLL_INTERVAL)
                flow = _DeviceFlow(
                    device_code=str(data["device_code"]),
                    user_code=str(data["user_code"]),
                    verification_uri=str(data["verification_uri"]),
                    interval=interval,
                    deadline=self._clock() + _seconds(data.get("expires_in"), 900),
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ParseError(f"device code response: {e}") from e

            self._flow = flow
            prompt = "Visit the URL and enter the code to authenticate with GitHub."
            self._set_state(
                PendingUserAction(
                    prompt=prompt,
                    verification_url=flow.verification_uri,
                    user_code=flow.user_code,
                    poll_interval=flow.interval,
                )
            )
            logger.info("device_flow_started", provider=self.id, interval=flow.interval)
            return AuthPrompt(
                instructions=prompt,
                verification_url=flow.verification_uri,
                user_code=flow.user_code,
                poll_interval=flow.interval,
            )

    async def resume_auth(self, user_input: "str | None" = None) -> "None":
        """
        polls until the pending device code yields a token, then stores
        the token in the secret store. user_input is ignored.
        """
        async with self._auth_lock:
            flow = self._flow
            if flow is None:
                raise AuthFailed("no pending authorization")

            try:
                token = await self._poll(flow)
                self._secrets.put(self._token_key, token)
            except asyncio.CancelledError:
                self._flow = None
                self._set_state(self._settled_state())
                logger.info("device_flow_cancelled", provider=self.id)
                raise
            except QuotaWatchError as e:
                self._flow = None
                self._set_state(Failed(str(e)))
                raise

            self._flow = None
            self._token = token
            self._set_state(Authenticated(secret_ref=self._token_key))
            logger.info("device_flow_completed", provider=self.id)

    def _settled_state(self) -> "Authenticated | Unauthenticated":
        if self._token:
            return Authenticated(secret_ref=self._token_key)
        return Unauthenticated()

    async def _poll(self, flow: "_DeviceFlow") -> "str":
        interval = flow.interval
        while True:
            if self._clock() >= flow.deadline:
                raise AuthFailed("device code expired")

            await self._sleep(interval)

            resp = await send(
                self._client,
                "POST",
                GITHUB_TOKEN_URL,
                headers={"Accept": "application/json"},
                data={
                    "client_id": CLIENT_ID,
                    "device_code": flow.device_code,
                    "grant_type": DEVICE_GRANT_TYPE,
                },
            )
            if resp.status_code >= 500:
                logger.debug("device_flow_poll_retry", status=resp.status_code)
                continue
            data = decode_json(resp)

            token = data.get("access_token")
            if token:
                return str(token)

            error = data.get("error")
            if error in (None, "authorization_pending"):
                continue
            if error == "slow_down":
                interval = _seconds(data.get("interval"), interval + SLOW_DOWN_INCREMENT)
                logger.debug("device_flow_slow_down", interval=interval)
                continue
            if error == "expired_token":
                raise AuthFailed("device code expired")
            if error == "access_denied":
                raise AuthFailed("authorization was denied")
            raise AuthFailed(str(data.get("error_description") or error))

    async def revoke(self) -> "None":
        async with self._auth_lock:
            self._token = None
            self._flow = None
            self._secrets.delete(self._token_key)
            self._set_state(Unauthenticated())

    async def _fetch(self) -> "UsageSnapshot":
        token = self._token
        if token is None:
            raise AuthRequired()

        resp = await send(
            self._client,
            "GET",
            COPILOT_USAGE_URL,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )
        check_status(resp, forbidden="Copilot is not enabled for this account")
        data = decode_json(resp)

        reset = parse_timestamp(data.get("resets_at"))
        return UsageSnapshot(
            used=as_count(data.get("chat_completions")),
            limit=as_count(data.get("chat_completions_limit")),
            periodic_used=as_count(data.get("premium_requests")),
            periodic_limit=as_count(data.get("premium_requests_limit")),
            reset_time=reset,
            periodic_reset_time=reset,
        )
