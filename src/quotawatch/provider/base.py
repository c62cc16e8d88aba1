import abc
import asyncio
from typing import ClassVar, Protocol

import httpx
import structlog

from quotawatch.errors import AuthFailed, TokenExpired
from quotawatch.models import (
    Authenticated,
    AuthPrompt,
    CredentialState,
    Failed,
    ProviderIdentity,
    Unauthenticated,
    UsageSnapshot,
)
from quotawatch.provider.http import new_client

logger = structlog.get_logger()


class UsageProvider(Protocol):
    """
    UsageProvider stands as the common protocol that every quota
    provider must satisfy, whatever its authentication mechanism.

    fetch_usage() looks like a read but may refresh and persist the
    provider's credential as a side effect. Implementations serialize
    that mutation with their auth transitions.
    """

    @property
    def identity(self) -> "ProviderIdentity": ...

    @property
    def id(self) -> "str": ...

    def credential_state(self) -> "CredentialState": ...

    def is_ready(self) -> "bool": ...

    async def check_ready(self) -> "bool": ...

    async def load(self) -> "None": ...

    async def begin_auth(self) -> "AuthPrompt": ...

    async def resume_auth(self, user_input: "str | None" = None) -> "None": ...

    async def revoke(self) -> "None": ...

    async def fetch_usage(self) -> "UsageSnapshot": ...

    async def close(self) -> "None": ...


class BaseProvider(abc.ABC):
    """
    BaseProvider holds the state every provider shares: exactly one
    CredentialState, a lock that serializes auth transitions and token
    refreshes, and the HTTP client.

    Subclasses implement _fetch() for the protocol specific usage query.
    Providers that set can_refresh get exactly one silent _refresh() when
    _fetch() raises TokenExpired, followed by a single retry.
    """

    identity: "ClassVar[ProviderIdentity]"
    can_refresh: "ClassVar[bool]" = False

    def __init__(self, client: "httpx.AsyncClient | None" = None) -> "None":
        self._client: "httpx.AsyncClient" = client or new_client()
        self._state: "CredentialState" = Unauthenticated()
        self._auth_lock: "asyncio.Lock" = asyncio.Lock()

    @property
    def id(self) -> "str":
        return self.identity.id

    @property
    def name(self) -> "str":
        return self.identity.name

    def credential_state(self) -> "CredentialState":
        return self._state

    def is_ready(self) -> "bool":
        return isinstance(self._state, Authenticated)

    async def check_ready(self) -> "bool":
        """
        decides whether a periodic sweep polls this provider. Providers
        whose availability changes without any user action override it
        to look again.
        """
        return self.is_ready()

    def _set_state(self, state: "CredentialState") -> "None":
        if type(state) is not type(self._state):
            logger.info(
                "credential_state_changed",
                provider=self.id,
                old=type(self._state).__name__,
                new=type(state).__name__,
            )
        self._state = state

    async def load(self) -> "None":
        """
        restores a previously stored credential at startup. Providers
        without stored state keep the default no-op.
        """

    async def fetch_usage(self) -> "UsageSnapshot":
        """
        queries the provider for current usage. On TokenExpired a
        refresh-capable provider refreshes once, persisting the new
        credential, and retries once. It never loops on refresh.

        A credential the provider keeps rejecting moves the state to
        Failed so the user is asked to sign in again.
        """
        try:
            try:
                return await self._fetch()
            except TokenExpired:
                if not self.can_refresh:
                    raise
                logger.info("token_refresh_attempt", provider=self.id)

            async with self._auth_lock:
                await self._refresh()
            logger.info("token_refreshed", provider=self.id)
            return await self._fetch()
        except (TokenExpired, AuthFailed) as e:
            self._set_state(Failed(str(e)))
            raise

    @abc.abstractmethod
    async def _fetch(self) -> "UsageSnapshot": ...

    async def _refresh(self) -> "None":
        raise TokenExpired()

    @abc.abstractmethod
    async def begin_auth(self) -> "AuthPrompt": ...

    @abc.abstractmethod
    async def resume_auth(self, user_input: "str | None" = None) -> "None": ...

    @abc.abstractmethod
    async def revoke(self) -> "None": ...

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()
