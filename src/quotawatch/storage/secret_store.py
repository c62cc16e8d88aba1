import threading

import keyring
import structlog
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError, PasswordDeleteError

from quotawatch.errors import StorageUnavailable

logger = structlog.get_logger()

SERVICE_NAME = "quotawatch"


class SecretStore:
    """
    SecretStore wraps the OS-native credential vault (Keychain, Windows
    Credential Manager, Secret Service) through the keyring library.

    Every entry lives under one fixed service name so keys from this
    application never collide with other applications that share the
    same OS account. Keys follow the `{provider_id}_{purpose}` form.
    """

    def __init__(
        self,
        service: "str" = SERVICE_NAME,
        backend: "KeyringBackend | None" = None,
    ) -> "None":
        self._service = service
        self._backend = backend
        # some keyring backends are not safe for concurrent use
        self._lock: "threading.Lock" = threading.Lock()

    @staticmethod
    def key(provider_id: "str", purpose: "str") -> "str":
        return f"{provider_id}_{purpose}"

    @property
    def backend(self) -> "KeyringBackend":
        if self._backend is None:
            self._backend = keyring.get_keyring()
        return self._backend

    def put(self, key: "str", value: "str") -> "None":
        try:
            with self._lock:
                self.backend.set_password(self._service, key, value)
        except KeyringError as e:
            raise StorageUnavailable(str(e)) from e
        logger.debug("secret_stored", key=key)

    def get(self, key: "str") -> "str | None":
        try:
            with self._lock:
                return self.backend.get_password(self._service, key)
        except KeyringError as e:
            raise StorageUnavailable(str(e)) from e

    def delete(self, key: "str") -> "None":
        """
        removes the entry. Deleting a key that was never stored succeeds.
        """
        try:
            with self._lock:
                self.backend.delete_password(self._service, key)
        except PasswordDeleteError:
            logger.debug("secret_delete_missing", key=key)
            return
        except KeyringError as e:
            raise StorageUnavailable(str(e)) from e
        logger.debug("secret_deleted", key=key)
