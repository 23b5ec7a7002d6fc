"""Local credential broker with a lazily unlocked, encrypted keyring."""

from .client import KeyClient, KeyServerError
from .connection import ConnectionHandler, ConnectionRegistry
from .keyring_file import EncryptedKeyring, KeyringError, KeyringOpenError, KeyringSyncError
from .server import KeyServer
from .session import KeyringSession

__all__ = [
    "ConnectionHandler",
    "ConnectionRegistry",
    "EncryptedKeyring",
    "KeyClient",
    "KeyServer",
    "KeyServerError",
    "KeyringError",
    "KeyringOpenError",
    "KeyringSession",
    "KeyringSyncError",
]
