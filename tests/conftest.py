import asyncio

import httpx
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import KeyringLocked, PasswordDeleteError
from prometheus_client import CollectorRegistry

from quotawatch.errors import AuthFailed
from quotawatch.metrics import MetricsUpdater
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
from quotawatch.storage.blob_store import EncryptedBlobStore, KdfParams
from quotawatch.storage.secret_store import SecretStore


class MemoryKeyring(KeyringBackend):
    """
    in-memory keyring backend so tests never touch the OS vault.
    """

    priority = 1

    def __init__(self) -> "None":
        super().__init__()
        self.entries: "dict[tuple[str, str], str]" = {}

    def get_password(self, service: "str", username: "str") -> "str | None":
        return self.entries.get((service, username))

    def set_password(self, service: "str", username: "str", password: "str") -> "None":
        self.entries[(service, username)] = password

    def delete_password(self, service: "str", username: "str") -> "None":
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise PasswordDeleteError("password not found") from None


class LockedKeyring(MemoryKeyring):
    """
    keyring backend that behaves like a locked platform vault.
    """

    def get_password(self, service: "str", username: "str") -> "str | None":
        raise KeyringLocked("vault is locked")

    def set_password(self, service: "str", username: "str", password: "str") -> "None":
        raise KeyringLocked("vault is locked")


# the cheapest parameters Argon2id accepts, to keep tests fast
FAST_KDF = KdfParams(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def metrics(registry: "CollectorRegistry") -> "MetricsUpdater":
    return MetricsUpdater(registry=registry)


@pytest.fixture()
def keyring_backend() -> "MemoryKeyring":
    return MemoryKeyring()


@pytest.fixture()
def secret_store(keyring_backend: "MemoryKeyring") -> "SecretStore":
    return SecretStore(service="quotawatch-test", backend=keyring_backend)


@pytest.fixture()
def blob_store(tmp_path: "object") -> "EncryptedBlobStore":
    return EncryptedBlobStore(tmp_path / "secrets", passphrase="test passphrase", kdf=FAST_KDF)


@pytest.fixture()
def fast_kdf() -> "KdfParams":
    return FAST_KDF


@pytest.fixture()
def locked_keyring() -> "LockedKeyring":
    return LockedKeyring()


class FakeProvider(BaseProvider):
    """
    provider double that returns (or raises) queued results.
    """

    def __init__(
        self,
        provider_id: "str",
        results: "list[UsageSnapshot | Exception] | None" = None,
        ready: "bool" = True,
        auth_methods: "tuple[AuthMethod, ...]" = (AuthMethod.CLI,),
    ) -> "None":
        super().__init__(httpx.AsyncClient())
        self.identity = ProviderIdentity(
            id=provider_id,
            name=provider_id.capitalize(),
            website="https://example.com",
            auth_methods=auth_methods,
            has_periodic=True,
        )
        self.results = list(results or [])
        self.fetch_count = 0
        self.resume_gate: "asyncio.Event | None" = None
        if ready:
            self._set_state(Authenticated(secret_ref=f"{provider_id}_token"))

    async def _fetch(self) -> "UsageSnapshot":
        self.fetch_count += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def begin_auth(self) -> "AuthPrompt":
        self._set_state(PendingUserAction(prompt="do the thing"))
        return AuthPrompt(instructions="do the thing", user_code="CODE-1")

    async def resume_auth(self, user_input: "str | None" = None) -> "None":
        if self.resume_gate is not None:
            await self.resume_gate.wait()
        if user_input == "bad":
            self._set_state(Failed("bad input"))
            raise AuthFailed("bad input")
        self._set_state(Authenticated(secret_ref=f"{self.id}_token"))

    async def revoke(self) -> "None":
        self._set_state(Unauthenticated())


@pytest.fixture()
def fake_provider() -> "type[FakeProvider]":
    return FakeProvider
