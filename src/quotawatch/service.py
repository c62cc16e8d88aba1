import asyncio
from dataclasses import dataclass
from typing import Coroutine

import structlog

from quotawatch.errors import (
    AuthFailed,
    AuthUnavailable,
    QuotaWatchError,
    UnknownProvider,
    user_message,
)
from quotawatch.models import AuthMethod, describe_state
from quotawatch.notifications import NotificationGate
from quotawatch.provider.base import UsageProvider
from quotawatch.registry import ProviderRegistry
from quotawatch.scheduler import RefreshInterval, Scheduler
from quotawatch.storage.cache import UsageCache

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """
    CommandResult is what the command layer hands to a UI. A failure
    carries a user displayable message and keeps apart the two actions
    a user can take: set the provider up, or sign in again.
    """

    ok: "bool"
    value: "object" = None
    error: "str | None" = None
    kind: "str | None" = None
    needs_setup: "bool" = False
    needs_reauth: "bool" = False

    @classmethod
    def success(cls, value: "object" = None) -> "CommandResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: "BaseException") -> "CommandResult":
        if isinstance(error, QuotaWatchError):
            return cls(
                ok=False,
                error=user_message(error),
                kind=error.kind,
                needs_setup=error.needs_setup,
                needs_reauth=error.needs_reauth,
            )
        return cls(ok=False, error=user_message(error), kind="unexpected")


class QuotaService:
    """
    QuotaService is the boundary between a UI (or the CLI) and the core.
    Every operation returns a CommandResult; no error escapes it.

    Device flow sign-ins poll for minutes, so resume_auth() runs them as
    a task tracked per provider. cancel_auth(), revoke() and close()
    cancel that task, and a caller that stops awaiting resume_auth()
    cancels it as well.
    """

    def __init__(
        self,
        registry: "ProviderRegistry",
        cache: "UsageCache",
        scheduler: "Scheduler",
        gate: "NotificationGate",
    ) -> "None":
        self._registry = registry
        self._cache = cache
        self._scheduler = scheduler
        self._gate = gate
        self._auth_tasks: "dict[str, asyncio.Task[None]]" = {}

    def _provider(self, provider_id: "str") -> "UsageProvider":
        provider = self._registry.get(provider_id)
        if provider is None:
            raise UnknownProvider(provider_id)
        return provider

    def _status(self, provider_id: "str") -> "dict[str, object]":
        provider = self._provider(provider_id)
        snapshot = self._cache.get(provider_id)
        return {
            "provider": provider_id,
            "name": provider.identity.name,
            "enabled": self._registry.is_enabled(provider_id),
            "auth": describe_state(provider.credential_state()),
            "usage": snapshot.to_dict() if snapshot else None,
            "session_percent": snapshot.session_percent if snapshot else None,
            "periodic_percent": snapshot.periodic_percent if snapshot else None,
        }

    def list_usage(self) -> "CommandResult":
        """
        returns the cached usage of every provider in display order,
        enabled or not. Never touches the network.
        """
        return CommandResult.success([self._status(pid) for pid in self._registry.ids()])

    async def refresh(self, provider_id: "str | None" = None) -> "CommandResult":
        """
        refreshes one provider, or runs a full sweep when no id is given.
        """
        try:
            if provider_id is None:
                await self._scheduler.sweep()
                return self.list_usage()
            await self._scheduler.refresh_provider(provider_id)
            return CommandResult.success(self._status(provider_id))
        except Exception as e:
            return self._failed("refresh", provider_id, e)

    def set_enabled(self, provider_id: "str", enabled: "bool") -> "CommandResult":
        try:
            self._provider(provider_id)
            if self._registry.set_enabled(provider_id, enabled):
                self._registry.save_enablement()
        except OSError as e:
            logger.exception("enablement_save_failed", provider=provider_id)
            return CommandResult(ok=False, error=f"Could not save settings: {e}", kind="io")
        except QuotaWatchError as e:
            return CommandResult.failure(e)
        return CommandResult.success(self._status(provider_id))

    def set_interval(self, interval: "str") -> "CommandResult":
        try:
            parsed = RefreshInterval.parse(interval)
        except ValueError as e:
            return CommandResult(ok=False, error=str(e), kind="invalid_input")
        self._scheduler.set_interval(parsed)
        return CommandResult.success(parsed.value)

    async def begin_auth(self, provider_id: "str") -> "CommandResult":
        """
        starts a sign-in flow and returns what the user has to do. Any
        flow already polling for this provider is abandoned first.
        """
        try:
            provider = self._provider(provider_id)
            await self.cancel_auth(provider_id)
            prompt = await provider.begin_auth()
        except Exception as e:
            return self._failed("begin_auth", provider_id, e)
        return CommandResult.success(
            {
                "instructions": prompt.instructions,
                "verification_url": prompt.verification_url,
                "user_code": prompt.user_code,
                "poll_interval": prompt.poll_interval,
            }
        )

    async def resume_auth(self, provider_id: "str", user_input: "str | None" = None) -> "CommandResult":
        """
        completes a sign-in flow. For device flow providers this waits
        for the polling task, which dies with the caller's interest.
        """
        try:
            provider = self._provider(provider_id)
            if AuthMethod.DEVICE_FLOW in provider.identity.auth_methods:
                await self._track(provider_id, provider.resume_auth(user_input))
            else:
                await provider.resume_auth(user_input)
        except Exception as e:
            return self._failed("resume_auth", provider_id, e)
        return CommandResult.success(describe_state(provider.credential_state()))

    async def _track(self, provider_id: "str", coro: "Coroutine[object, object, None]") -> "None":
        task = self._auth_tasks.get(provider_id)
        if task is not None and not task.done():
            coro.close()
            raise AuthUnavailable("an authorization is already being completed")

        task = asyncio.create_task(coro, name=f"auth-{provider_id}")
        self._auth_tasks[provider_id] = task
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # cancelled through cancel_auth() rather than by our caller
            raise AuthFailed("authorization was cancelled") from None
        finally:
            if self._auth_tasks.get(provider_id) is task:
                del self._auth_tasks[provider_id]

    async def cancel_auth(self, provider_id: "str") -> "bool":
        """
        stops a device flow that is still polling. Returns True when a
        flow was cancelled.
        """
        task = self._auth_tasks.pop(provider_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("auth_task_failed_on_cancel", provider=provider_id, exc_info=True)
        logger.info("auth_cancelled", provider=provider_id)
        return True

    async def revoke(self, provider_id: "str") -> "CommandResult":
        try:
            provider = self._provider(provider_id)
            await self.cancel_auth(provider_id)
            await provider.revoke()
        except Exception as e:
            return self._failed("revoke", provider_id, e)
        logger.info("provider_revoked", provider=provider_id)
        return CommandResult.success(describe_state(provider.credential_state()))

    def auth_status(self, provider_id: "str") -> "CommandResult":
        try:
            provider = self._provider(provider_id)
        except QuotaWatchError as e:
            return CommandResult.failure(e)
        identity = provider.identity
        status = describe_state(provider.credential_state())
        status.update(
            {
                "provider": provider_id,
                "name": identity.name,
                "auth_methods": [m.value for m in identity.auth_methods],
                "polling": provider_id in self._auth_tasks,
            }
        )
        return CommandResult.success(status)

    def clear(self, provider_id: "str") -> "CommandResult":
        """
        drops the provider's cached usage.
        """
        try:
            self._provider(provider_id)
            self._cache.clear(provider_id)
            self._cache.save()
        except OSError as e:
            logger.exception("cache_save_failed", path=str(self._cache.path))
            return CommandResult(ok=False, error=f"Could not save cache: {e}", kind="io")
        except QuotaWatchError as e:
            return CommandResult.failure(e)
        return CommandResult.success()

    def reset_notifications(self) -> "CommandResult":
        self._gate.reset()
        logger.info("notifications_reset")
        return CommandResult.success()

    async def close(self) -> "None":
        for provider_id in list(self._auth_tasks):
            await self.cancel_auth(provider_id)

    def _failed(self, operation: "str", provider_id: "str | None", error: "Exception") -> "CommandResult":
        if isinstance(error, QuotaWatchError):
            logger.info("command_failed", op=operation, provider=provider_id, kind=error.kind)
        else:
            logger.exception("command_failed", op=operation, provider=provider_id)
        return CommandResult.failure(error)
