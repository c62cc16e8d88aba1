import threading
from dataclasses import replace
from pathlib import Path

import structlog

from quotawatch.models import UsageSnapshot
from quotawatch.storage.files import atomic_write_json, read_json

logger = structlog.get_logger()

CACHE_VERSION = 1


class UsageCache:
    """
    UsageCache: Is a thread-safe, last-known-good store of every
    provider's usage, persisted as a single versioned JSON document.

    It is loaded once at startup before any network call so the UI can
    display something while offline. The scheduler batches several set()
    calls and persists them with one save(). Writes never hold the lock
    across disk I/O: save() copies the mapping under the lock and writes
    the copy after releasing it.
    """

    def __init__(self, path: "Path") -> "None":
        self._path = Path(path)
        self._lock: "threading.Lock" = threading.Lock()
        self._entries: "dict[str, UsageSnapshot]" = {}
        # serializes whole-document writes so an older copy never
        # replaces a newer one on disk
        self._save_lock: "threading.Lock" = threading.Lock()

    @property
    def path(self) -> "Path":
        return self._path

    def load(self) -> "None":
        """
        loads the persisted document. A missing, corrupt or unknown
        version file leaves the cache empty instead of failing.
        """
        try:
            raw = read_json(self._path)
        except FileNotFoundError:
            logger.info("cache_missing", path=str(self._path))
            return
        except (OSError, ValueError):
            logger.warning("cache_unreadable", path=str(self._path), exc_info=True)
            return

        if not isinstance(raw, dict) or raw.get("version") != CACHE_VERSION:
            logger.warning("cache_version_mismatch", path=str(self._path))
            return

        providers = raw.get("providers") or {}
        if not isinstance(providers, dict):
            logger.warning("cache_unreadable", path=str(self._path))
            return

        entries: "dict[str, UsageSnapshot]" = {}
        for provider_id, item in providers.items():
            if not isinstance(item, dict):
                logger.warning("cache_entry_skipped", provider=provider_id)
                continue
            try:
                entries[provider_id] = UsageSnapshot.from_dict(item)
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.warning("cache_entry_skipped", provider=provider_id)

        with self._lock:
            self._entries = entries
        logger.info("cache_loaded", entries=len(entries))

    def get(self, provider_id: "str") -> "UsageSnapshot | None":
        with self._lock:
            return self._entries.get(provider_id)

    def set(self, provider_id: "str", snapshot: "UsageSnapshot") -> "UsageSnapshot":
        """
        replaces the provider's entry. fetched_at never moves backwards
        for a provider, so a late write carrying an older timestamp is
        stamped with the previous one. Returns the stored snapshot.
        """
        with self._lock:
            previous = self._entries.get(provider_id)
            if previous is not None and snapshot.fetched_at < previous.fetched_at:
                snapshot = replace(snapshot, fetched_at=previous.fetched_at)
            self._entries[provider_id] = snapshot
            return snapshot

    def all(self) -> "dict[str, UsageSnapshot]":
        with self._lock:
            return dict(self._entries)

    def clear(self, provider_id: "str") -> "None":
        with self._lock:
            self._entries.pop(provider_id, None)

    def clear_all(self) -> "None":
        with self._lock:
            self._entries.clear()

    def save(self) -> "None":
        """
        writes the full document. OSError propagates so the caller can
        log it and retry on the next sweep.
        """
        with self._save_lock:
            with self._lock:
                payload = {
                    "version": CACHE_VERSION,
                    "providers": {
                        pid: snap.to_dict() for pid, snap in self._entries.items()
                    },
                }
            atomic_write_json(self._path, payload)
        logger.debug("cache_saved", entries=len(payload["providers"]))
