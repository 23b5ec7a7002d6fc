"""Encrypted keyring container stored as a single JSON file.

On-disk layout::

    {
        "version": 1,
        "kdf": "pbkdf2-sha256",
        "iterations": 600000,
        "salt": "<b64>",
        "nonce": "<b64>",
        "ciphertext": "<b64>"
    }

The ciphertext decrypts to ``{"username": {...}, "key": {...}}``: two
independent namespaces keyed by identifier.
"""

import json
import os
import tempfile
from pathlib import Path

from cryptography.exceptions import InvalidTag
from loguru import logger

from .crypto import (
    NONCE_SIZE,
    PBKDF2_ITERATIONS,
    b64d,
    b64e,
    decrypt,
    derive_keyring_key,
    encrypt,
    generate_salt,
)

FORMAT_VERSION = 1
KDF_NAME = "pbkdf2-sha256"


def _associated_data(iterations: int) -> bytes:
    # the plaintext header fields are bound into the GCM tag
    return f"keyserver/{FORMAT_VERSION}/{KDF_NAME}/{iterations}".encode("ascii")


class KeyringError(Exception):
    """Base class for keyring container failures."""


class KeyringOpenError(KeyringError):
    """The container could not be read, authenticated or decoded."""


class KeyringSyncError(KeyringError):
    """The container could not be written back to disk."""


def _is_credential(entry) -> bool:
    return (
        isinstance(entry, dict)
        and isinstance(entry.get("username"), str)
        and isinstance(entry.get("password"), str)
    )


class EncryptedKeyring:
    """An unlocked keyring: two plaintext namespaces plus the key to re-seal them.

    Instances are only produced by :meth:`open` and :meth:`create`. The
    master password itself is never kept, only the derived key.
    """

    def __init__(
        self,
        path: str | Path,
        key: bytes,
        salt: bytes,
        iterations: int,
        usernames: dict[str, dict[str, str]] | None = None,
        keys: dict[str, str] | None = None,
    ):
        self.path = Path(path)
        self._key = key
        self._salt = salt
        self._iterations = iterations
        self.usernames: dict[str, dict[str, str]] = usernames or {}
        self.keys: dict[str, str] = keys or {}

    # ── Construction ───────────────────────────────────────────────

    @classmethod
    def open(cls, path: str | Path, password: str) -> "EncryptedKeyring":
        """Authenticate and decrypt the container at ``path``.

        Raises:
            KeyringOpenError: Missing or unreadable file, malformed header,
                wrong password or tampered ciphertext.
        """
        path = Path(path)
        try:
            header = json.loads(path.read_text(encoding="utf-8"))
        except OSError as err:
            raise KeyringOpenError(f"Cannot read keyring {path}: {err}") from err
        except ValueError as err:
            raise KeyringOpenError(f"Keyring {path} is not valid JSON") from err

        if not isinstance(header, dict):
            raise KeyringOpenError(f"Keyring {path} has an invalid header")
        if header.get("version") != FORMAT_VERSION:
            raise KeyringOpenError(
                f"Unsupported keyring version: {header.get('version')!r}"
            )
        if header.get("kdf") != KDF_NAME:
            raise KeyringOpenError(f"Unsupported keyring KDF: {header.get('kdf')!r}")

        try:
            iterations = int(header["iterations"])
            fields = [header[name] for name in ("salt", "nonce", "ciphertext")]
            if not all(isinstance(field, str) for field in fields):
                raise TypeError("salt, nonce and ciphertext must be base64 strings")
            salt, nonce, ciphertext = (b64d(field) for field in fields)
            if iterations < 1:
                raise ValueError("iterations must be positive")
            if len(nonce) != NONCE_SIZE:
                raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
        except (KeyError, TypeError, ValueError) as err:
            raise KeyringOpenError(f"Keyring {path} has an invalid header") from err

        key = derive_keyring_key(password, salt, iterations)
        try:
            plaintext = decrypt(key, ciphertext, nonce, _associated_data(iterations))
        except (InvalidTag, ValueError) as err:
            raise KeyringOpenError(
                "Wrong password or corrupted keyring"
            ) from err

        try:
            body = json.loads(plaintext.decode("utf-8"))
        except ValueError as err:
            raise KeyringOpenError("Decrypted keyring body is not valid JSON") from err

        usernames = body.get("username", {}) if isinstance(body, dict) else None
        keys = body.get("key", {}) if isinstance(body, dict) else None
        if not isinstance(usernames, dict) or not isinstance(keys, dict):
            raise KeyringOpenError("Decrypted keyring body has an invalid layout")
        if not all(_is_credential(entry) for entry in usernames.values()):
            raise KeyringOpenError("Keyring contains a malformed credential entry")
        if not all(isinstance(value, str) for value in keys.values()):
            raise KeyringOpenError("Keyring contains a malformed key entry")

        logger.debug(
            f"Keyring opened: {path} "
            f"({len(usernames)} credential(s), {len(keys)} key(s))"
        )
        return cls(path, key, salt, iterations, usernames, keys)

    @classmethod
    def create(
        cls,
        path: str | Path,
        password: str,
        iterations: int = PBKDF2_ITERATIONS,
    ) -> "EncryptedKeyring":
        """Initialize a new, empty container at ``path`` and return it unlocked.

        Raises:
            KeyringError: If a file already exists at ``path``.
            KeyringSyncError: If the container cannot be written.
        """
        path = Path(path)
        if path.exists():
            raise KeyringError(f"Keyring already exists at {path}")
        salt = generate_salt()
        keyring = cls(path, derive_keyring_key(password, salt, iterations), salt, iterations)
        keyring.sync()
        logger.info(f"Keyring initialized at {path}")
        return keyring

    # ── Persistence ────────────────────────────────────────────────

    def sync(self) -> None:
        """Re-encrypt both namespaces and atomically replace the container.

        Raises:
            KeyringSyncError: If any step of the write fails. The previous
                container is left untouched in that case.
        """
        body = json.dumps(
            {"username": self.usernames, "key": self.keys},
            ensure_ascii=False,
            sort_keys=True,
        ).encode("utf-8")
        ciphertext, nonce = encrypt(self._key, body, _associated_data(self._iterations))
        header = {
            "version": FORMAT_VERSION,
            "kdf": KDF_NAME,
            "iterations": self._iterations,
            "salt": b64e(self._salt),
            "nonce": b64e(nonce),
            "ciphertext": b64e(ciphertext),
        }

        tmp_path = None
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                os.fchmod(handle.fileno(), 0o600)
                json.dump(header, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as err:
            raise KeyringSyncError(f"Cannot write keyring {self.path}: {err}") from err
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
