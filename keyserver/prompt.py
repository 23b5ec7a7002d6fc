"""Password prompts and user-facing error notification.

A prompt resolves to the typed password, or ``None`` when the user cancels.
Cancelling is a normal outcome, not an error, so prompts never raise for it.
"""

import asyncio
import getpass
import shlex
from abc import ABC, abstractmethod
from collections.abc import Iterable

from loguru import logger

PROMPT_TEXT = "Enter your keyring password"


class PasswordPrompt(ABC):
    """Collects the master password from a human."""

    @abstractmethod
    async def collect(self) -> str | None:
        """Return the password, or None if the user cancelled."""
        ...


class ErrorNotifier(ABC):
    """Fire-and-forget sink for errors the user should see."""

    @abstractmethod
    async def show_error(self, message: str) -> None: ...


class TerminalPrompt(PasswordPrompt):
    """Reads the password from the controlling terminal without echo."""

    def __init__(self, text: str = PROMPT_TEXT):
        self.text = text

    def _read(self) -> str | None:
        try:
            return getpass.getpass(f"{self.text}: ")
        except (EOFError, KeyboardInterrupt):
            return None

    async def collect(self) -> str | None:
        # getpass blocks, keep it off the event loop
        return await asyncio.to_thread(self._read)


class AskpassPrompt(PasswordPrompt):
    """Runs an askpass helper (ssh-askpass, zenity --password, ...).

    The helper gets the prompt text as its last argument and prints the
    password on stdout. A non-zero exit status means the user cancelled.
    """

    def __init__(self, command: str | list[str], text: str = PROMPT_TEXT):
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ValueError("askpass command cannot be empty")
        self.text = text

    async def collect(self) -> str | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                self.text,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as err:
            logger.error(f"Cannot run askpass helper {self.argv[0]}: {err}")
            return None

        stdout, _ = await proc.communicate()
        if proc.returncode != 0:
            logger.info(f"Askpass helper exited with status {proc.returncode}")
            return None
        return stdout.decode("utf-8").rstrip("\r\n")


class StaticPrompt(PasswordPrompt):
    """Answers from a fixed sequence; ``None`` entries act as a cancel.

    Used for unattended runs (``KEYSERVER_PASSWORD``) and in tests. Once the
    sequence is exhausted the last answer is repeated.
    """

    def __init__(self, answers: str | None | Iterable[str | None]):
        if answers is None or isinstance(answers, str):
            answers = [answers]
        self._answers = list(answers)
        if not self._answers:
            raise ValueError("StaticPrompt needs at least one answer")
        self.calls = 0

    async def collect(self) -> str | None:
        index = min(self.calls, len(self._answers) - 1)
        self.calls += 1
        return self._answers[index]


class LogNotifier(ErrorNotifier):
    async def show_error(self, message: str) -> None:
        logger.error(message)


class CommandNotifier(ErrorNotifier):
    """Shows errors through a desktop notification command such as notify-send."""

    def __init__(self, command: str | list[str]):
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ValueError("notify command cannot be empty")

    async def show_error(self, message: str) -> None:
        logger.error(message)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                message,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await proc.wait()
        except OSError as err:
            logger.warning(f"Cannot run notify command {self.argv[0]}: {err}")
