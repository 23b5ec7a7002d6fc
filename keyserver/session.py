"""Process-wide keyring session: the unlock gate.

The session owns the only decrypted keyring in the process. Its state is
one of:

    Locked()            no keyring; the next acquire() prompts
    Unlocking(task)     one prompt + decrypt attempt in flight; callers join it
    Unlocked(keyring)   cached for the rest of the process lifetime

The unlock attempt runs as its own task and callers wait on it through
``asyncio.shield``, so a client that disconnects while the prompt is open
never cancels the attempt for everybody else.

Security Note:
    Never log passwords or key material. Only log identifiers and outcomes.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .keyring_file import EncryptedKeyring, KeyringError, KeyringSyncError
from .prompt import ErrorNotifier, LogNotifier, PasswordPrompt

UNLOCK_FAILED_MESSAGE = "Unable to access or decrypt keyring."

_MISSING = object()


@dataclass(frozen=True)
class Locked:
    pass


@dataclass(frozen=True)
class Unlocking:
    task: "asyncio.Task[EncryptedKeyring | None]"


@dataclass(frozen=True)
class Unlocked:
    keyring: EncryptedKeyring


UnlockState = Locked | Unlocking | Unlocked


class ReadWriteLock:
    """Many concurrent readers or one writer.

    A writer holds ``_write_lock`` while it waits for active readers to
    drain, which also stops new readers from entering. Releasing never
    awaits, so a cancelled holder cannot leak the lock.
    """

    def __init__(self):
        self._write_lock = asyncio.Lock()
        self._readers = 0
        self._no_readers = asyncio.Event()
        self._no_readers.set()

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._write_lock:
            self._readers += 1
            self._no_readers.clear()
        try:
            yield
        finally:
            self._readers -= 1
            if self._readers == 0:
                self._no_readers.set()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._write_lock:
            await self._no_readers.wait()
            yield


class KeyringSession:
    """Lazily unlocked, shared access to the keyring at ``path``.

    Every connection handler is given the same session. Reads take the
    shared lock; writes take the exclusive lock and persist the container
    before they release it, so readers never see an unsaved entry.
    """

    def __init__(
        self,
        path: str | Path,
        prompt: PasswordPrompt,
        notifier: ErrorNotifier | None = None,
        opener: Callable[[Path, str], EncryptedKeyring] = EncryptedKeyring.open,
    ):
        self.path = Path(path)
        self._prompt = prompt
        self._notifier = notifier or LogNotifier()
        self._opener = opener
        self._state: UnlockState = Locked()
        self._lock = ReadWriteLock()

    @property
    def state(self) -> UnlockState:
        return self._state

    @property
    def is_unlocked(self) -> bool:
        return isinstance(self._state, Unlocked)

    # ------------------------------------------------------------------
    # Unlock gate
    # ------------------------------------------------------------------

    async def acquire(self) -> EncryptedKeyring | None:
        """Return the unlocked keyring, prompting at most once process-wide.

        Returns None when the keyring stays locked: the prompt was cancelled
        or the password did not open the container. Callers that joined an
        in-flight attempt share its outcome and do not retry on their own.
        """
        match self._state:
            case Unlocked(keyring=keyring):
                return keyring
            case Unlocking(task=task):
                logger.debug("Joining in-flight keyring unlock")
            case Locked():
                task = asyncio.create_task(self._unlock(), name="keyring-unlock")
                self._state = Unlocking(task)
        return await asyncio.shield(task)

    async def _unlock(self) -> EncryptedKeyring | None:
        try:
            keyring = await self._attempt_unlock()
            if keyring is not None:
                self._state = Unlocked(keyring)
                logger.info(f"Keyring unlocked: {self.path}")
            return keyring
        except Exception:
            logger.exception("Keyring unlock attempt crashed")
            return None
        finally:
            if not isinstance(self._state, Unlocked):
                self._state = Locked()

    async def _attempt_unlock(self) -> EncryptedKeyring | None:
        logger.info("Keyring is locked, asking for the master password")
        password = await self._prompt.collect()
        if password is None:
            logger.info("Password prompt cancelled, keyring stays locked")
            return None

        try:
            # PBKDF2 is CPU bound, run it off the event loop
            return await asyncio.to_thread(self._opener, self.path, password)
        except KeyringError as err:
            logger.warning(f"Keyring unlock failed: {err}")
            await self._notifier.show_error(UNLOCK_FAILED_MESSAGE)
            return None

    # ------------------------------------------------------------------
    # Namespace access
    # ------------------------------------------------------------------

    async def get_username_password(
        self, keyring: EncryptedKeyring, identifier: str
    ) -> tuple[str, str] | None:
        async with self._lock.read():
            entry = keyring.usernames.get(identifier)
        if entry is None:
            return None
        return entry["username"], entry["password"]

    async def get_key(self, keyring: EncryptedKeyring, identifier: str) -> str | None:
        async with self._lock.read():
            return keyring.keys.get(identifier)

    async def add_username_password(
        self, keyring: EncryptedKeyring, identifier: str, username: str, password: str
    ) -> bool:
        entry = {"username": username, "password": password}
        return await asyncio.shield(
            self._upsert(keyring, keyring.usernames, "username", identifier, entry)
        )

    async def add_key(self, keyring: EncryptedKeyring, identifier: str, key: str) -> bool:
        return await asyncio.shield(
            self._upsert(keyring, keyring.keys, "key", identifier, key)
        )

    async def _upsert(
        self,
        keyring: EncryptedKeyring,
        namespace: dict,
        namespace_name: str,
        identifier: str,
        value,
    ) -> bool:
        """Set ``namespace[identifier]`` and persist; roll back if persisting fails."""
        async with self._lock.write():
            previous = namespace.get(identifier, _MISSING)
            namespace[identifier] = value
            try:
                await asyncio.to_thread(keyring.sync)
            except Exception as err:
                if previous is _MISSING:
                    del namespace[identifier]
                else:
                    namespace[identifier] = previous
                logger.error(
                    f"Persist failed, rolled back {namespace_name} entry "
                    f"id={identifier}: {err!r}"
                )
                if isinstance(err, KeyringSyncError):
                    return False
                raise

        logger.debug(f"Stored {namespace_name} entry id={identifier}")
        return True
