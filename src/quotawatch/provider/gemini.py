import base64
import json
import math
import re
import shutil
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path

import httpx
import structlog

from quotawatch.errors import (
    AuthFailed,
    AuthRequired,
    NetworkError,
    NotConfigured,
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
from quotawatch.storage.files import atomic_write_json, read_json

logger = structlog.get_logger()

CLOUD_CODE_QUOTA_URL = "https://cloudcode-pa.googleapis.com/v1internal:retrieveUserQuota"
CLOUD_CODE_ASSIST_URL = "https://cloudcode-pa.googleapis.com/v1internal:loadCodeAssist"
GCP_PROJECTS_URL = "https://cloudresourcemanager.googleapis.com/v1/projects"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
INSTALL_URL = "https://github.com/google-gemini/gemini-cli"

DEFAULT_CREDENTIALS_PATH = Path.home() / ".gemini" / "oauth_creds.json"
# the quota API reports fractions, scaled so percentages stay integral
QUOTA_SCALE = 10_000

_CLIENT_ID_RE = re.compile(r"""OAUTH_CLIENT_ID\s*=\s*['"]([^'"]+)['"]""")
_CLIENT_SECRET_RE = re.compile(r"""OAUTH_CLIENT_SECRET\s*=\s*['"]([^'"]+)['"]""")
_OAUTH2_JS = "gemini-cli-core/dist/src/code_assist/oauth2.js"

_TIER_PLANS = {
    "STANDARD": "Paid",
    "FREE": "Free",
    "LEGACY": "Legacy",
}


@dataclass(frozen=True, slots=True)
class GeminiCredentials:
    access_token: "str"
    refresh_token: "str"
    token_uri: "str" = DEFAULT_TOKEN_URI
    client_id: "str | None" = None
    client_secret: "str | None" = None
    # milliseconds since the epoch, as the CLI writes it
    expiry_date: "int | None" = None
    id_token: "str | None" = None

    @classmethod
    def from_dict(cls, raw: "dict") -> "GeminiCredentials":
        expiry = raw.get("expiry_date")
        if not isinstance(expiry, (int, float)) or not math.isfinite(expiry):
            expiry = None
        return cls(
            access_token=str(raw["access_token"]),
            refresh_token=str(raw["refresh_token"]),
            token_uri=str(raw.get("token_uri") or DEFAULT_TOKEN_URI),
            client_id=raw.get("client_id"),
            client_secret=raw.get("client_secret"),
            expiry_date=int(expiry) if expiry is not None else None,
            id_token=raw.get("id_token"),
        )

    def is_expired(self, now_ms: "int") -> "bool":
        return self.expiry_date is not None and self.expiry_date <= now_ms

    @property
    def expires_at(self) -> "datetime | None":
        if self.expiry_date is None:
            return None
        return datetime.fromtimestamp(self.expiry_date / 1000, tz=timezone.utc)


@dataclass(frozen=True, slots=True)
class AccountInfo:
    email: "str"
    hosted_domain: "str | None" = None


def decode_id_token(id_token: "str") -> "AccountInfo":
    """
    reads the email and hosted domain claims from a JWT id token. The
    signature is not verified; the claims are only used for display.
    """
    parts = id_token.split(".")
    if len(parts) != 3:
        raise ParseError("invalid JWT format")
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except ValueError as e:
        raise ParseError(f"JWT decode error: {e}") from e
    if not isinstance(claims, dict):
        raise ParseError("JWT payload is not an object")
    return AccountInfo(
        email=str(claims.get("email") or "unknown"),
        hosted_domain=claims.get("hd"),
    )


def parse_oauth_client(content: "str") -> "tuple[str, str]":
    client_id = _CLIENT_ID_RE.search(content)
    client_secret = _CLIENT_SECRET_RE.search(content)
    if client_id is None:
        raise ParseError("client ID not found")
    if client_secret is None:
        raise ParseError("client secret not found")
    return client_id.group(1), client_secret.group(1)


def aggregate_quotas(
    buckets: "list",
) -> "tuple[list[QuotaBreakdown], int]":
    """
    groups quota buckets per model, keeping the lowest remaining fraction
    (and its reset time) for each model. Returns the per-model breakdown
    sorted by model id and the number of malformed buckets skipped.
    """
    per_model: "dict[str, QuotaBreakdown]" = {}
    skipped = 0
    for bucket in buckets:
        try:
            model_id = str(bucket["modelId"])
            fraction = float(bucket["remainingFraction"])
        except (KeyError, TypeError, ValueError):
            skipped += 1
            continue
        current = per_model.get(model_id)
        if current is None or fraction < current.remaining_fraction:
            per_model[model_id] = QuotaBreakdown(
                name=model_id,
                remaining_fraction=fraction,
                reset_time=parse_timestamp(bucket.get("resetTime")),
            )
    return [per_model[k] for k in sorted(per_model)], skipped


class GeminiProvider(BaseProvider):
    """
    GeminiProvider reuses the OAuth credentials that the Gemini CLI keeps
    in ~/.gemini/oauth_creds.json and reads per-model quotas from the
    Cloud Code private API.

    When the access token has expired it is refreshed with the standard
    refresh-token grant and written back to the same file, so the CLI and
    this process keep seeing the same token.
    """

    identity = ProviderIdentity(
        id="gemini",
        name="Gemini",
        website="https://gemini.google.com",
        auth_methods=(AuthMethod.CLI,),
        has_session=True,
        has_periodic=False,
    )
    can_refresh = True

    def __init__(
        self,
        credentials_path: "Path | None" = None,
        client: "httpx.AsyncClient | None" = None,
        cli_binary: "str" = "gemini",
    ) -> "None":
        super().__init__(client)
        self._path = Path(credentials_path or DEFAULT_CREDENTIALS_PATH)
        self._cli_binary = cli_binary
        self._creds: "GeminiCredentials | None" = None
        # the file is rewritten as a whole, so unknown keys are kept
        self._raw: "dict" = {}
        self._account: "AccountInfo | None" = None
        self._tier: "str | None" = None
        self._project_id: "str | None" = None

    @property
    def credentials_path(self) -> "Path":
        return self._path

    def _read_credentials(self) -> "bool":
        try:
            raw = read_json(self._path)
        except FileNotFoundError:
            return False
        except (OSError, ValueError):
            logger.warning("gemini_credentials_unreadable", path=str(self._path))
            return False
        if not isinstance(raw, dict):
            return False
        try:
            creds = GeminiCredentials.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("gemini_credentials_incomplete", path=str(self._path))
            return False

        self._raw = raw
        self._creds = creds
        if creds.id_token:
            try:
                self._account = decode_id_token(creds.id_token)
            except ParseError:
                logger.debug("gemini_id_token_unreadable")
        self._set_state(self._authenticated_state())
        return True

    def _authenticated_state(self) -> "Authenticated":
        return Authenticated(
            secret_ref=str(self._path),
            expires_at=self._creds.expires_at if self._creds else None,
            account=self.account_display(),
        )

    def account_display(self) -> "str":
        if self._account is None:
            return "via Gemini CLI"
        if self._tier == "STANDARD":
            plan = "Paid"
        elif self._account.hosted_domain:
            plan = "Workspace"
        else:
            plan = _TIER_PLANS.get(self._tier or "", "Unknown")
        return f"{self._account.email} ({plan})"

    async def load(self) -> "None":
        self._read_credentials()

    async def begin_auth(self) -> "AuthPrompt":
        prompt = (
            "Gemini uses the Gemini CLI sign-in. Install the CLI, run "
            "'gemini' and complete the Google login, then check again."
        )
        async with self._auth_lock:
            self._set_state(PendingUserAction(prompt=prompt, verification_url=INSTALL_URL))
        return AuthPrompt(instructions=prompt, verification_url=INSTALL_URL)

    async def resume_auth(self, user_input: "str | None" = None) -> "None":
        """
        re-reads the CLI managed credential file.
        """
        async with self._auth_lock:
            self._project_id = None
            if not self._read_credentials():
                reason = "Gemini CLI is not signed in. Run 'gemini' in a terminal."
                self._set_state(Failed(reason))
                raise AuthFailed(reason)

    async def revoke(self) -> "None":
        """
        forgets the credential in memory. The file belongs to the Gemini
        CLI and is left in place.
        """
        async with self._auth_lock:
            self._creds = None
            self._raw = {}
            self._account = None
            self._tier = None
            self._project_id = None
            self._set_state(Unauthenticated())

    async def _refresh(self) -> "None":
        creds = self._creds
        if creds is None:
            raise AuthRequired()

        if creds.client_id and creds.client_secret:
            client_id, client_secret = creds.client_id, creds.client_secret
        else:
            client_id, client_secret = self._cli_oauth_client()

        resp = await send(
            self._client,
            "POST",
            creds.token_uri,
            data={
                "grant_type": "refresh_token",
                "refresh_token": creds.refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        if resp.is_error:
            raise AuthFailed("token refresh failed, run 'gemini' to sign in again")
        data = decode_json(resp)
        access_token = data.get("access_token")
        if not access_token:
            raise ParseError("refresh response has no access_token")

        expires_in = data.get("expires_in")
        expiry = (
            int(time.time() * 1000) + int(expires_in) * 1000
            if isinstance(expires_in, (int, float)) and math.isfinite(expires_in)
            else None
        )
        updated = replace(
            creds,
            access_token=str(access_token),
            expiry_date=expiry,
            id_token=data.get("id_token") or creds.id_token,
        )

        raw = dict(self._raw)
        raw["access_token"] = updated.access_token
        raw["expiry_date"] = updated.expiry_date
        if updated.id_token:
            raw["id_token"] = updated.id_token
        try:
            atomic_write_json(self._path, raw, mode=0o600)
        except OSError as e:
            raise AuthFailed(f"could not persist refreshed token: {e}") from e

        self._raw = raw
        self._creds = updated
        if data.get("id_token"):
            try:
                self._account = decode_id_token(str(data["id_token"]))
            except ParseError:
                logger.debug("gemini_id_token_unreadable")
        self._set_state(self._authenticated_state())
        logger.info("gemini_token_persisted", path=str(self._path))

    def _cli_oauth_client(self) -> "tuple[str, str]":
        """
        extracts the OAuth client id and secret that ship with the
        installed Gemini CLI.
        """
        binary = shutil.which(self._cli_binary)
        if binary is None:
            raise NotConfigured("Gemini CLI is not installed")
        real = Path(binary).resolve()

        candidates = [
            real.parent.parent
            / "libexec/lib/node_modules/@google/gemini-cli/node_modules/@google"
            / _OAUTH2_JS,
            real.parent.parent / "lib/node_modules/@google" / _OAUTH2_JS,
            real.parent / "node_modules/@google" / _OAUTH2_JS,
        ]
        for candidate in candidates:
            try:
                return parse_oauth_client(candidate.read_text(encoding="utf-8"))
            except (OSError, ParseError):
                continue
        raise NotConfigured("Gemini CLI OAuth client not found")

    async def _fetch(self) -> "UsageSnapshot":
        creds = self._creds
        if creds is None:
            raise AuthRequired()
        if creds.is_expired(int(time.time() * 1000)):
            raise TokenExpired()

        token = creds.access_token
        if self._project_id is None:
            self._project_id = await self._discover_project_id(token)

        resp = await send(
            self._client,
            "POST",
            CLOUD_CODE_QUOTA_URL,
            headers={"Authorization": f"Bearer {token}"},
            json={"project": self._project_id},
        )
        if resp.status_code == 404:
            raise NetworkError("quota endpoint not found, the Gemini CLI may be outdated")
        check_status(resp)
        data = decode_json(resp)

        buckets = data.get("buckets") or []
        if not isinstance(buckets, list):
            raise ParseError("buckets is not a list")
        breakdown, skipped = aggregate_quotas(buckets)
        if buckets and not breakdown:
            raise ParseError("no readable quota buckets")

        if breakdown:
            worst = min(b.remaining_fraction for b in breakdown)
            used = round((1.0 - worst) * QUOTA_SCALE)
            limit = QUOTA_SCALE
        else:
            used, limit = 0, 0
        resets = [b.reset_time for b in breakdown if b.reset_time is not None]

        return UsageSnapshot(
            used=used,
            limit=limit,
            reset_time=min(resets) if resets else None,
            breakdown=tuple(breakdown),
            error=f"skipped {skipped} malformed quota buckets" if skipped else None,
        )

    async def _discover_project_id(self, token: "str") -> "str":
        try:
            return await self._load_code_assist(token)
        except QuotaWatchError as e:
            if isinstance(e, TokenExpired):
                raise
            logger.debug("gemini_code_assist_unavailable", error=str(e))

        resp = await send(
            self._client,
            "GET",
            GCP_PROJECTS_URL,
            headers={"Authorization": f"Bearer {token}"},
        )
        check_status(resp)
        data = decode_json(resp)
        projects = data.get("projects") or []
        if not isinstance(projects, list):
            raise ParseError("projects is not a list")
        for project in projects:
            if not isinstance(project, dict):
                continue
            project_id = str(project.get("projectId") or "")
            if project_id.startswith("gen-lang-client"):
                return project_id
            labels = project.get("labels")
            if isinstance(labels, dict) and "generative-language" in labels:
                return project_id
        raise NotConfigured("no Gemini project found for this account")

    async def _load_code_assist(self, token: "str") -> "str":
        resp = await send(
            self._client,
            "POST",
            CLOUD_CODE_ASSIST_URL,
            headers={"Authorization": f"Bearer {token}"},
            json={},
        )
        check_status(resp)
        data = decode_json(resp)

        tier = data.get("currentTier") or {}
        if isinstance(tier, dict) and tier.get("id"):
            self._tier = str(tier["id"]).upper()
            if isinstance(self._state, Authenticated):
                self._set_state(self._authenticated_state())

        project_id = data.get("cloudaicompanionProject") or data.get("managedProjectId")
        if not project_id:
            raise NotConfigured("no managed project ID")
        if not isinstance(project_id, str):
            raise ParseError("managed project ID is not a string")
        return str(project_id)
