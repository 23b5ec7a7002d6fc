import asyncio

import pytest

from keyserver.keyring_file import EncryptedKeyring
from keyserver.prompt import PasswordPrompt

# Keeps PBKDF2 fast in tests; production containers use 600k iterations.
FAST_ITERATIONS = 1_000
PASSWORD = "correct horse battery staple"


class GatedPrompt(PasswordPrompt):
    """Prompt that blocks until the test releases it, like a human typing."""

    def __init__(self, answer: str | None = PASSWORD):
        self.answer = answer
        self.calls = 0
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def collect(self) -> str | None:
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return self.answer


@pytest.fixture
def master_password():
    return PASSWORD


@pytest.fixture
def keyring_path(tmp_path):
    """Path of a freshly initialized, empty keyring protected by PASSWORD."""
    path = tmp_path / "keyring.json"
    EncryptedKeyring.create(path, PASSWORD, iterations=FAST_ITERATIONS)
    return path


@pytest.fixture
def gated_prompt():
    return GatedPrompt()
