import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
import psutil
import structlog

from quotawatch.errors import NotConfigured, ParseError
from quotawatch.models import (
    Authenticated,
    AuthMethod,
    AuthPrompt,
    ProviderIdentity,
    QuotaBreakdown,
    Unauthenticated,
    UsageSnapshot,
)
from quotawatch.provider.base import BaseProvider
from quotawatch.provider.http import check_status, decode_json, send, sub_object
from quotawatch.provider.timeutil import as_count, parse_timestamp

logger = structlog.get_logger()

PROCESS_MARKER = "language_server"
APP_MARKER = "antigravity"
STATUS_PATH = "/exa.language_server_pb.LanguageServerService/GetUserStatus"
PORT_CHECK_TIMEOUT_SECONDS = 2.0
QUOTA_SCALE = 10_000


@dataclass(frozen=True, slots=True)
class LocalService:
    pid: "int"
    port: "int"
    csrf_token: "str | None" = None

    @property
    def base_url(self) -> "str":
        return f"http://127.0.0.1:{self.port}"


def _flag(cmdline: "list[str]", name: "str") -> "str | None":
    for i, arg in enumerate(cmdline):
        if arg == name and i + 1 < len(cmdline):
            return cmdline[i + 1]
        if arg.startswith(name + "="):
            return arg.split("=", 1)[1]
    return None


def find_language_server(port_override: "int | None" = None) -> "LocalService | None":
    """
    scans running processes for the Antigravity language server and reads
    its port and CSRF token from the command line.
    """
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            name = (proc.info.get("name") or "").lower()
            cmdline = proc.info.get("cmdline") or []
        except (psutil.Error, AttributeError):
            continue
        if PROCESS_MARKER not in name:
            continue
        if not any(APP_MARKER in arg.lower() for arg in cmdline):
            continue

        port = port_override
        if port is None:
            raw_port = _flag(cmdline, "--extension_server_port")
            if raw_port is None or not raw_port.isdigit():
                continue
            port = int(raw_port)
        return LocalService(
            pid=int(proc.info["pid"]),
            port=port,
            csrf_token=_flag(cmdline, "--csrf_token"),
        )
    return None


async def port_answers(port: "int", timeout: "float" = PORT_CHECK_TIMEOUT_SECONDS) -> "bool":
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection("127.0.0.1", port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class AntigravityProvider(BaseProvider):
    """
    AntigravityProvider has no credential at all. "Authenticated" means
    the local Antigravity language server is running and its port answers,
    and usage is read from that local service.

    begin_auth() runs detection synchronously and either reports success
    or raises NotConfigured; there is no user flow.
    """

    identity = ProviderIdentity(
        id="antigravity",
        name="Antigravity",
        website="https://antigravity.google",
        auth_methods=(AuthMethod.LOCAL,),
        has_session=True,
        has_periodic=True,
        has_credits=True,
    )

    def __init__(
        self,
        client: "httpx.AsyncClient | None" = None,
        port_override: "int | None" = None,
        finder: "Callable[[int | None], LocalService | None]" = find_language_server,
        port_check: "Callable[[int], Awaitable[bool]]" = port_answers,
    ) -> "None":
        super().__init__(client)
        self._port_override = port_override
        self._finder = finder
        self._port_check = port_check

    async def _detect(self) -> "LocalService":
        service = self._finder(self._port_override)
        if service is None:
            self._set_state(Unauthenticated())
            raise NotConfigured("Antigravity is not running")
        if not await self._port_check(service.port):
            self._set_state(Unauthenticated())
            raise NotConfigured(f"Antigravity port {service.port} is not answering")
        self._set_state(Authenticated(secret_ref=f"127.0.0.1:{service.port}"))
        return service

    async def load(self) -> "None":
        try:
            await self._detect()
        except NotConfigured as e:
            logger.debug("antigravity_not_detected", reason=str(e))

    async def check_ready(self) -> "bool":
        # the language server comes and goes with the editor
        try:
            await self._detect()
        except NotConfigured:
            return False
        return True

    async def begin_auth(self) -> "AuthPrompt":
        async with self._auth_lock:
            service = await self._detect()
        return AuthPrompt(instructions=f"Antigravity detected on port {service.port}.")

    async def resume_auth(self, user_input: "str | None" = None) -> "None":
        async with self._auth_lock:
            await self._detect()

    async def revoke(self) -> "None":
        async with self._auth_lock:
            self._set_state(Unauthenticated())

    async def _fetch(self) -> "UsageSnapshot":
        # process discovery happens before any network I/O
        service = await self._detect()

        headers = {"Content-Type": "application/json"}
        if service.csrf_token:
            headers["X-Codeium-Csrf-Token"] = service.csrf_token
        resp = await send(
            self._client,
            "POST",
            service.base_url + STATUS_PATH,
            headers=headers,
            json={"metadata": {"ideName": "antigravity"}},
        )
        check_status(resp)
        data = decode_json(resp)

        status = data.get("userStatus")
        if not isinstance(status, dict):
            raise ParseError("response has no userStatus")

        plan = sub_object(status, "planStatus")
        credits = plan.get("availablePromptCredits")
        monthly = as_count(sub_object(plan, "planInfo").get("monthlyPromptCredits"))

        breakdown = []
        configs = sub_object(status, "cascadeModelConfigData").get("clientModelConfigs") or []
        if not isinstance(configs, list):
            raise ParseError("clientModelConfigs is not a list")
        for config in configs:
            quota = config.get("quotaInfo") if isinstance(config, dict) else None
            if not isinstance(quota, dict) or "remainingFraction" not in quota:
                continue
            try:
                fraction = float(quota["remainingFraction"])
            except (TypeError, ValueError):
                continue
            breakdown.append(
                QuotaBreakdown(
                    name=str(config.get("label") or config.get("modelOrAlias") or "unknown"),
                    remaining_fraction=fraction,
                    reset_time=parse_timestamp(quota.get("resetTime")),
                )
            )

        if breakdown:
            worst = min(b.remaining_fraction for b in breakdown)
            used, limit = round((1.0 - worst) * QUOTA_SCALE), QUOTA_SCALE
        else:
            used, limit = 0, 0
        resets = [b.reset_time for b in breakdown if b.reset_time is not None]
        credits_remaining = as_count(credits) if credits is not None else None

        return UsageSnapshot(
            used=used,
            limit=limit,
            periodic_used=max(0, monthly - credits_remaining) if monthly and credits_remaining is not None else 0,
            periodic_limit=monthly,
            credits_remaining=credits_remaining,
            reset_time=min(resets) if resets else None,
            breakdown=tuple(breakdown),
        )
