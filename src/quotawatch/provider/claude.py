import asyncio
import math

import httpx
import structlog

from quotawatch.errors import (
    AuthFailed,
    AuthRequired,
    DecryptionError,
    ParseError,
    QuotaWatchError,
    TokenExpired,
)
from quotawatch.models import (
    Authenticated,
    AuthMethod,
    AuthPrompt,
    Failed,
    PendingUserAction,
    ProviderIdentity,
    QuotaBreakdown,
    Unauthenticated,
    UsageSnapshot,
)
from quotawatch.provider.base import BaseProvider
from quotawatch.provider.http import check_status, decode_json, send
from quotawatch.provider.timeutil import parse_timestamp
from quotawatch.storage.blob_store import EncryptedBlobStore

logger = structlog.get_logger()

CLAUDE_BASE_URL = "https://claude.ai/api"
COOKIE_NAME = "sessionKey"
# utilization is reported in percent
PERCENT_LIMIT = 100

_EXTRA_WINDOWS = ("seven_day_opus", "seven_day_sonnet", "seven_day_oauth_apps")


def normalize_session_cookie(raw: "str | None") -> "str":
    """
    accepts the bare cookie value, a `sessionKey=...` pair or a whole
    Cookie header and returns just the session key.
    """
    text = (raw or "").strip()
    if text.lower().startswith("cookie:"):
        text = text.split(":", 1)[1].strip()
    if "=" in text:
        for part in text.split(";"):
            name, _, value = part.strip().partition("=")
            if name == COOKIE_NAME:
                text = value.strip()
                break
        else:
            raise AuthFailed(f"no {COOKIE_NAME} cookie found in the pasted text")
    if not text or any(c.isspace() for c in text):
        raise AuthFailed("session cookie is empty or malformed")
    return text


def _window(data: "dict", key: "str") -> "tuple[int, object] | None":
    window = data.get(key)
    if not isinstance(window, dict):
        return None
    utilization = window.get("utilization")
    if isinstance(utilization, bool) or not isinstance(utilization, (int, float)):
        return None
    if not math.isfinite(utilization):
        return None
    return max(0, round(utilization)), window.get("resets_at")


class ClaudeProvider(BaseProvider):
    """
    ClaudeProvider authenticates with a claude.ai browser session cookie
    that the user pastes in. The cookie is bulk, unstructured secret
    material, so it is kept in the encrypted blob store rather than the
    OS keychain.

    Extracting the cookie from a browser profile is not done here: any
    such mechanism feeds its result to resume_auth() like a paste would.
    """

    identity = ProviderIdentity(
        id="claude",
        name="Claude",
        website="https://claude.ai",
        auth_methods=(AuthMethod.COOKIES,),
        has_session=True,
        has_periodic=True,
    )
    blob_name = "claude_session"

    def __init__(
        self,
        blobs: "EncryptedBlobStore",
        client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        super().__init__(client)
        self._blobs = blobs
        self._session_key: "str | None" = None
        self._organization_id: "str | None" = None

    async def load(self) -> "None":
        if not self._blobs.exists(self.blob_name):
            return
        try:
            # key derivation is CPU bound and runs off the event loop
            stored = await asyncio.to_thread(self._blobs.open, self.blob_name)
            session_key = str(stored["session_key"])
            organization_id = str(stored["organization_id"])
        except (DecryptionError, KeyError, TypeError):
            # an unreadable secret means the user has to paste it again
            logger.warning("claude_session_unreadable", path=str(self._blobs.path_for(self.blob_name)))
            self._set_state(Unauthenticated())
            return
        self._session_key = session_key
        self._organization_id = organization_id
        self._set_state(Authenticated(secret_ref=self.blob_name))

    async def begin_auth(self) -> "AuthPrompt":
        prompt = (
            "Sign in at claude.ai, open the browser developer tools, copy the "
            f"value of the '{COOKIE_NAME}' cookie and paste it here."
        )
        async with self._auth_lock:
            self._set_state(PendingUserAction(prompt=prompt, verification_url="https://claude.ai"))
        return AuthPrompt(instructions=prompt, verification_url="https://claude.ai")

    async def resume_auth(self, user_input: "str | None" = None) -> "None":
        """
        validates a pasted session cookie against the organizations
        endpoint and seals it on success.
        """
        async with self._auth_lock:
            try:
                session_key = normalize_session_cookie(user_input)
                organization_id, organization_name = await self._resolve_organization(session_key)
            except TokenExpired as e:
                self._set_state(Failed("session cookie was rejected"))
                raise AuthFailed("session cookie was rejected") from e
            except AuthFailed as e:
                self._set_state(Failed(e.reason))
                raise
            except QuotaWatchError as e:
                self._set_state(Failed(str(e)))
                raise

            await asyncio.to_thread(
                self._blobs.seal,
                self.blob_name,
                {"session_key": session_key, "organization_id": organization_id},
            )
            self._session_key = session_key
            self._organization_id = organization_id
            self._set_state(Authenticated(secret_ref=self.blob_name, account=organization_name))
            logger.info("claude_session_stored", provider=self.id)

    async def revoke(self) -> "None":
        async with self._auth_lock:
            self._session_key = None
            self._organization_id = None
            self._blobs.delete(self.blob_name)
            self._set_state(Unauthenticated())

    def _headers(self, session_key: "str") -> "dict[str, str]":
        return {
            "Cookie": f"{COOKIE_NAME}={session_key}",
            "Accept": "application/json",
        }

    async def _resolve_organization(self, session_key: "str") -> "tuple[str, str | None]":
        resp = await send(
            self._client,
            "GET",
            f"{CLAUDE_BASE_URL}/organizations",
            headers=self._headers(session_key),
        )
        check_status(resp, forbidden="session cookie was rejected")
        try:
            organizations = resp.json()
        except ValueError as e:
            raise ParseError(f"organizations response: {e}") from e
        if not isinstance(organizations, list):
            raise ParseError("organizations response is not a list")
        for org in organizations:
            if isinstance(org, dict) and org.get("uuid"):
                return str(org["uuid"]), org.get("name")
        raise AuthFailed("no organization found for this session")

    async def _fetch(self) -> "UsageSnapshot":
        session_key, organization_id = self._session_key, self._organization_id
        if session_key is None or organization_id is None:
            raise AuthRequired()

        resp = await send(
            self._client,
            "GET",
            f"{CLAUDE_BASE_URL}/organizations/{organization_id}/usage",
            headers=self._headers(session_key),
        )
        # claude.ai answers 403 for a dead session
        if resp.status_code == 403:
            raise TokenExpired()
        check_status(resp)
        data = decode_json(resp)

        session = _window(data, "five_hour")
        weekly = _window(data, "seven_day")
        if session is None and weekly is None:
            raise ParseError("usage response has neither five_hour nor seven_day")

        breakdown = []
        for key in _EXTRA_WINDOWS:
            extra = _window(data, key)
            if extra is not None:
                breakdown.append(
                    QuotaBreakdown(
                        name=key,
                        remaining_fraction=1.0 - extra[0] / PERCENT_LIMIT,
                        reset_time=parse_timestamp(extra[1]),
                    )
                )

        missing = [name for name, w in (("five_hour", session), ("seven_day", weekly)) if w is None]
        return UsageSnapshot(
            used=session[0] if session else 0,
            limit=PERCENT_LIMIT if session else 0,
            periodic_used=weekly[0] if weekly else 0,
            periodic_limit=PERCENT_LIMIT if weekly else 0,
            reset_time=parse_timestamp(session[1]) if session else None,
            periodic_reset_time=parse_timestamp(weekly[1]) if weekly else None,
            breakdown=tuple(breakdown),
            error=f"missing {', '.join(missing)} window in response" if missing else None,
        )
