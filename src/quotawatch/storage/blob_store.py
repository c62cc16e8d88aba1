"""
Authenticated-encryption storage for secrets that do not belong in the OS
keychain, such as pasted browser session cookies.

Each blob is a small JSON envelope holding a format version, a random
salt, a random nonce and the AES-256-GCM ciphertext, all base64 encoded.
The key is derived with Argon2id from either a user passphrase or, when
none is configured, from `machine_identifier()`.

The machine identifier is NOT a secret: it is the local user and host
name. Without a passphrase the encryption only stops a blob from being
readable after a casual copy to another machine or account. It does not
protect against anyone who can run code as the same user.
"""

import base64
import binascii
import getpass
import json
import os
import socket
from dataclasses import dataclass
from pathlib import Path

import structlog
from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from quotawatch.errors import DecryptionError
from quotawatch.storage.files import atomic_write_text

logger = structlog.get_logger()

FORMAT_VERSION = 1
KEY_SIZE = 32
SALT_SIZE = 16
NONCE_SIZE = 12
BLOB_SUFFIX = ".blob"
# binds the ciphertext to the envelope format it was written with
_ASSOCIATED_DATA = f"quotawatch-blob-v{FORMAT_VERSION}".encode()


@dataclass(frozen=True, slots=True)
class KdfParams:
    """
    Argon2id cost parameters. The defaults follow the OWASP minimum
    recommendation (19 MiB, 2 passes, 1 lane).
    """

    time_cost: "int" = 2
    memory_cost: "int" = 19 * 1024
    parallelism: "int" = 1


def machine_identifier() -> "str":
    """
    returns a stable per machine and user identifier used as the key
    source when no passphrase is configured. Not secret.
    """
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    host = socket.gethostname() or "unknown"
    return f"{user}@{host}"


def derive_key(secret: "str", salt: "bytes", params: "KdfParams") -> "bytes":
    return hash_secret_raw(
        secret=secret.encode("utf-8"),
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def _b64(data: "bytes") -> "str":
    return base64.b64encode(data).decode("ascii")


class EncryptedBlobStore:
    """
    EncryptedBlobStore seals structured values into one file per secret
    under a directory. Every seal draws a fresh salt and nonce, so sealing
    the same value twice never produces the same bytes.
    """

    def __init__(
        self,
        directory: "Path",
        passphrase: "str | None" = None,
        kdf: "KdfParams | None" = None,
    ) -> "None":
        self._directory = Path(directory)
        self._passphrase = passphrase
        self._kdf = kdf or KdfParams()

    def path_for(self, name: "str | Path") -> "Path":
        if isinstance(name, Path):
            return name
        return self._directory / f"{name}{BLOB_SUFFIX}"

    def _key_source(self, passphrase: "str | None") -> "str":
        if passphrase is not None:
            return passphrase
        if self._passphrase is not None:
            return self._passphrase
        return machine_identifier()

    def seal(
        self,
        name: "str | Path",
        value: "object",
        passphrase: "str | None" = None,
    ) -> "Path":
        """
        serializes value as JSON, encrypts it and atomically replaces the
        blob file. Returns the written path.
        """
        path = self.path_for(name)
        plaintext = json.dumps(value).encode("utf-8")

        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        key = derive_key(self._key_source(passphrase), salt, self._kdf)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, _ASSOCIATED_DATA)

        envelope = {
            "version": FORMAT_VERSION,
            "kdf": "argon2id",
            "salt": _b64(salt),
            "nonce": _b64(nonce),
            "ciphertext": _b64(ciphertext),
        }
        atomic_write_text(path, json.dumps(envelope, indent=2), mode=0o600)
        logger.debug("blob_sealed", path=str(path))
        return path

    def open(self, name: "str | Path", passphrase: "str | None" = None) -> "object":
        """
        reads and decrypts a blob. A missing file, a malformed envelope,
        an unknown version, a wrong key and a failed tag check all raise
        the same DecryptionError.
        """
        path = self.path_for(name)
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(envelope, dict) or envelope.get("version") != FORMAT_VERSION:
                raise DecryptionError()
            salt = base64.b64decode(envelope["salt"], validate=True)
            nonce = base64.b64decode(envelope["nonce"], validate=True)
            ciphertext = base64.b64decode(envelope["ciphertext"], validate=True)
            if len(salt) != SALT_SIZE or len(nonce) != NONCE_SIZE:
                raise DecryptionError()

            key = derive_key(self._key_source(passphrase), salt, self._kdf)
            plaintext = AESGCM(key).decrypt(nonce, ciphertext, _ASSOCIATED_DATA)
            return json.loads(plaintext.decode("utf-8"))
        except DecryptionError:
            raise
        except (
            OSError,
            ValueError,
            KeyError,
            TypeError,
            binascii.Error,
            InvalidTag,
            HashingError,
        ):
            # the cause is dropped so callers cannot tell which check failed
            raise DecryptionError() from None

    def exists(self, name: "str | Path") -> "bool":
        return self.path_for(name).exists()

    def delete(self, name: "str | Path") -> "None":
        self.path_for(name).unlink(missing_ok=True)
