import asyncio
import enum
import time

import structlog

from quotawatch.errors import QuotaWatchError, UnknownProvider, user_message
from quotawatch.metrics import MetricsUpdater
from quotawatch.models import UsageSnapshot
from quotawatch.notifications import NotificationGate
from quotawatch.provider.base import UsageProvider
from quotawatch.registry import ProviderRegistry
from quotawatch.storage.cache import UsageCache

logger = structlog.get_logger()

# how often manual mode re-checks its configuration
MANUAL_TICK_SECONDS = 10


class RefreshInterval(str, enum.Enum):
    MANUAL = "manual"
    ONE_MINUTE = "1m"
    TWO_MINUTES = "2m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"

    @classmethod
    def parse(cls, value: "str") -> "RefreshInterval":
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(i.value for i in cls)
            raise ValueError(f"invalid refresh interval '{value}' (expected one of {choices})") from None

    @property
    def seconds(self) -> "int | None":
        return _INTERVAL_SECONDS[self]


_INTERVAL_SECONDS: "dict[RefreshInterval, int | None]" = {
    RefreshInterval.MANUAL: None,
    RefreshInterval.ONE_MINUTE: 60,
    RefreshInterval.TWO_MINUTES: 120,
    RefreshInterval.FIVE_MINUTES: 300,
    RefreshInterval.FIFTEEN_MINUTES: 900,
}


class Scheduler:
    """
    Scheduler is responsible for the periodic refresh of every enabled
    provider. Each sweep visits providers one at a time in registry
    order; a provider's cache write and notification evaluation both
    happen before the next provider is fetched.

    One provider failing never aborts a sweep: the failure is stored as
    a degraded snapshot that keeps the last good numbers. The loop waits
    the configured interval, then sweeps, until stop() is called. In
    manual mode it only wakes every few seconds to pick up a new
    interval.
    """

    def __init__(
        self,
        registry: "ProviderRegistry",
        cache: "UsageCache",
        gate: "NotificationGate",
        metrics: "MetricsUpdater",
        interval: "RefreshInterval" = RefreshInterval.FIVE_MINUTES,
        manual_tick_seconds: "float" = MANUAL_TICK_SECONDS,
    ) -> "None":
        self._registry = registry
        self._cache = cache
        self._gate = gate
        self._metrics = metrics
        self._interval = interval
        self._manual_tick = manual_tick_seconds
        self._stop_event: "asyncio.Event" = asyncio.Event()
        # serializes sweeps with single-provider refreshes
        self._sweep_lock: "asyncio.Lock" = asyncio.Lock()

    @property
    def interval(self) -> "RefreshInterval":
        return self._interval

    def set_interval(self, interval: "RefreshInterval") -> "None":
        """
        changes the interval. It is picked up at the start of the next
        wait, so leaving manual mode takes effect within one tick.
        """
        if interval is not self._interval:
            logger.info("refresh_interval_changed", old=self._interval.value, new=interval.value)
        self._interval = interval

    def stop(self) -> "None":
        """
        signals the loop to stop. A sweep in progress runs to completion.
        """
        self._stop_event.set()

    @property
    def stopped(self) -> "bool":
        return self._stop_event.is_set()

    async def run(self) -> "None":
        """
        runs the refresh loop until stop() is called.
        """
        logger.info("scheduler_started", interval=self._interval.value)
        while not self._stop_event.is_set():
            seconds = self._interval.seconds
            if seconds is None:
                await self._wait(self._manual_tick)
                continue

            if await self._wait(seconds):
                break
            await self.sweep()
        logger.info("scheduler_stopped")

    async def _wait(self, seconds: "float") -> "bool":
        """
        sleeps for the given time and returns True when woken by stop().
        """
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def sweep(self) -> "dict[str, UsageSnapshot]":
        """
        refreshes every enabled provider that is ready once and persists
        the cache. Providers that are not ready are skipped and keep
        their cached entry. Returns the snapshot stored for each provider
        visited.
        """
        providers = self._registry.enabled_providers()
        sweep_start = time.monotonic()
        logger.info("sweep_start", providers=len(providers))

        results: "dict[str, UsageSnapshot]" = {}
        async with self._sweep_lock:
            for provider_id, provider in providers:
                if not await provider.check_ready():
                    logger.debug("sweep_provider_skipped", provider=provider_id)
                    continue
                snapshot, _ = await self._refresh(provider_id, provider)
                results[provider_id] = snapshot
            await self._persist()

        duration = time.monotonic() - sweep_start
        self._metrics.observe_sweep_duration(duration)
        failed = sum(1 for snap in results.values() if snap.error)
        logger.info("sweep_end", providers=len(results), failed=failed, duration=round(duration, 3))
        return results

    async def refresh_provider(self, provider_id: "str") -> "UsageSnapshot":
        """
        refreshes one provider on demand, enabled or not, and persists
        the cache. A failed fetch still stores a degraded snapshot
        before the original error is raised to the caller.
        """
        provider = self._registry.get(provider_id)
        if provider is None:
            raise UnknownProvider(provider_id)

        async with self._sweep_lock:
            snapshot, error = await self._refresh(provider_id, provider)
            await self._persist()
        if error is not None:
            raise error
        return snapshot

    async def _refresh(
        self, provider_id: "str", provider: "UsageProvider"
    ) -> "tuple[UsageSnapshot, Exception | None]":
        fetch_start = time.monotonic()
        error: "Exception | None" = None
        try:
            snapshot = await provider.fetch_usage()
        except Exception as e:
            error = e
            snapshot = self._degraded(provider_id, e)
        else:
            self._metrics.set_last_success(provider_id, time.time())
            self._metrics.set_usage(provider_id, snapshot)
        finally:
            self._metrics.observe_fetch_duration(provider_id, time.monotonic() - fetch_start)

        stored = self._cache.set(provider_id, snapshot)
        alerts = self._gate.evaluate(provider.identity.name, stored)
        self._metrics.inc_alerts(provider_id, len(alerts))
        return stored, error

    def _degraded(self, provider_id: "str", error: "Exception") -> "UsageSnapshot":
        if isinstance(error, QuotaWatchError):
            logger.warning("usage_fetch_error", provider=provider_id, kind=error.kind, error=str(error))
            kind = error.kind
        else:
            logger.exception("usage_fetch_error", provider=provider_id)
            kind = "unexpected"
        self._metrics.inc_fetch_error(provider_id, kind)

        message = user_message(error)
        previous = self._cache.get(provider_id)
        if previous is None:
            return UsageSnapshot(error=message)
        return previous.degraded(message)

    async def _persist(self) -> "None":
        try:
            await asyncio.to_thread(self._cache.save)
        except OSError:
            # the in-memory cache stays authoritative; the next sweep retries
            logger.exception("cache_save_failed", path=str(self._cache.path))
