"""Cryptographic primitives for the keyring container.

Key hierarchy:
    Master password (typed by the user)
        └── derives the Keyring Key via PBKDF2-HMAC-SHA256 and a per-container salt
                └── encrypts the serialized keyring body

All encryption uses AES-256-GCM (authenticated encryption), so a wrong
password and a tampered container both fail the same way: InvalidTag.
"""

import base64
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

NONCE_SIZE = 12  # 96 bits, standard for AES-GCM
KEY_SIZE = 32  # 256 bits for AES-256
SALT_SIZE = 16  # 128 bits for PBKDF2
PBKDF2_ITERATIONS = 600_000  # OWASP 2023 recommendation for SHA-256


def generate_salt() -> bytes:
    """Generate a random PBKDF2 salt."""
    return os.urandom(SALT_SIZE)


def derive_keyring_key(
    password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS
) -> bytes:
    """Derive a 256-bit keyring key from the master password."""
    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt(key: bytes, plaintext: bytes, header: bytes | None = None) -> tuple[bytes, bytes]:
    """Seal ``plaintext`` under a fresh nonce.

    ``header`` is authenticated but not encrypted; the same bytes must be
    passed to :func:`decrypt`. Returns ``(ciphertext_with_tag, nonce)``.
    """
    nonce = os.urandom(NONCE_SIZE)
    return AESGCM(key).encrypt(nonce, plaintext, header), nonce


def decrypt(key: bytes, ciphertext: bytes, nonce: bytes, header: bytes | None = None) -> bytes:
    """Open a sealed body. Raises InvalidTag on any authentication failure."""
    return AESGCM(key).decrypt(nonce, ciphertext, header)


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)
