import threading
from pathlib import Path

import structlog

from quotawatch.config import Config
from quotawatch.models import ProviderIdentity
from quotawatch.provider.antigravity import AntigravityProvider
from quotawatch.provider.base import UsageProvider
from quotawatch.provider.claude import ClaudeProvider
from quotawatch.provider.copilot import CopilotProvider
from quotawatch.provider.gemini import GeminiProvider
from quotawatch.storage.blob_store import EncryptedBlobStore
from quotawatch.storage.files import atomic_write_json, read_json
from quotawatch.storage.secret_store import SecretStore

logger = structlog.get_logger()


class ProviderRegistry:
    """
    ProviderRegistry owns the fixed, insertion-ordered set of providers
    and the user's enablement toggles.

    Enablement is independent of credentials: a provider can be signed in
    but disabled, or enabled but not signed in. The toggles are shared
    with the command layer, so they sit behind a lock, and
    enabled_providers() hands out a snapshot list instead of a live view.
    """

    def __init__(self, enablement_path: "Path | None" = None) -> "None":
        self._providers: "dict[str, UsageProvider]" = {}
        self._enabled: "dict[str, bool]" = {}
        self._lock: "threading.Lock" = threading.Lock()
        self._enablement_path = enablement_path

    def register(self, provider: "UsageProvider") -> "None":
        """
        adds a provider, disabled by default. Registering the same id
        twice is a programming error.
        """
        provider_id = provider.id
        with self._lock:
            if provider_id in self._providers:
                raise ValueError(f"provider '{provider_id}' is already registered")
            self._providers[provider_id] = provider
            self._enabled.setdefault(provider_id, False)

    def get(self, provider_id: "str") -> "UsageProvider | None":
        with self._lock:
            return self._providers.get(provider_id)

    def ids(self) -> "list[str]":
        with self._lock:
            return list(self._providers)

    def identities(self) -> "list[tuple[ProviderIdentity, bool]]":
        with self._lock:
            return [(p.identity, self._enabled.get(pid, False)) for pid, p in self._providers.items()]

    def is_enabled(self, provider_id: "str") -> "bool":
        with self._lock:
            return self._enabled.get(provider_id, False)

    def set_enabled(self, provider_id: "str", enabled: "bool") -> "bool":
        """
        flips a provider's toggle. An unknown id is silently ignored,
        since the caller is usually a UI toggle holding a stale id.
        Returns True when the stored value changed.
        """
        with self._lock:
            if provider_id not in self._providers:
                logger.debug("set_enabled_unknown_provider", provider=provider_id)
                return False
            changed = self._enabled.get(provider_id) != enabled
            self._enabled[provider_id] = enabled
        if changed:
            logger.info("provider_toggled", provider=provider_id, enabled=enabled)
        return changed

    def enabled_providers(self) -> "list[tuple[str, UsageProvider]]":
        """
        returns the enabled providers in registration order, as a list
        that later toggles cannot mutate.
        """
        with self._lock:
            return [
                (pid, provider)
                for pid, provider in self._providers.items()
                if self._enabled.get(pid, False)
            ]

    def load_enablement(self) -> "None":
        if self._enablement_path is None:
            return
        try:
            raw = read_json(self._enablement_path)
        except FileNotFoundError:
            return
        except (OSError, ValueError):
            logger.warning("enablement_unreadable", path=str(self._enablement_path))
            return
        if not isinstance(raw, dict):
            return
        with self._lock:
            for provider_id, enabled in raw.items():
                # entries for providers that no longer exist are dropped
                if provider_id in self._providers:
                    self._enabled[provider_id] = bool(enabled)

    def save_enablement(self) -> "None":
        if self._enablement_path is None:
            return
        with self._lock:
            payload = dict(self._enabled)
        atomic_write_json(self._enablement_path, payload)

    async def load_credentials(self) -> "None":
        """
        restores every provider's stored credential. One provider failing
        to load never prevents the others from loading.
        """
        for provider_id, provider in list(self._providers.items()):
            try:
                await provider.load()
            except Exception:
                logger.exception("credential_restore_failed", provider=provider_id)

    async def close(self) -> "None":
        for provider in list(self._providers.values()):
            await provider.close()


def default_registry(
    config: "Config",
    secrets: "SecretStore",
    blobs: "EncryptedBlobStore",
) -> "ProviderRegistry":
    """
    builds the registry with the fixed provider set, in display order.
    """
    registry = ProviderRegistry(enablement_path=config.enablement_path)
    registry.register(CopilotProvider(secrets))
    registry.register(ClaudeProvider(blobs))
    registry.register(GeminiProvider(credentials_path=config.gemini_credentials_path))
    registry.register(AntigravityProvider(port_override=config.local_port))
    registry.load_enablement()
    return registry
