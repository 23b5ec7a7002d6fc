"""
Key Server - aiohttp WebSocket service on a unix domain socket.

Each client opens one WebSocket on ``/ws``. Every text frame is one
request and gets exactly one response frame, in order. All connections
share a single KeyringSession, so the master password is asked for at
most once per process.
"""

import asyncio
import errno
import itertools
import os
import signal
import socket
from pathlib import Path

from aiohttp import WSMsgType, web
from loguru import logger

from .config import Settings
from .connection import ConnectionHandler, ConnectionRegistry
from .prompt import (
    AskpassPrompt,
    CommandNotifier,
    ErrorNotifier,
    LogNotifier,
    PasswordPrompt,
    StaticPrompt,
    TerminalPrompt,
)
from .session import KeyringSession


def build_prompt(settings: Settings) -> PasswordPrompt:
    if settings.prompt == "askpass":
        return AskpassPrompt(settings.askpass_command)
    if settings.prompt == "env":
        password = os.environ.get("KEYSERVER_PASSWORD")
        if password is None:
            logger.warning("KEYSERVER_PASSWORD is not set, unlock requests will be refused")
        return StaticPrompt(password)
    return TerminalPrompt()


def build_notifier(settings: Settings) -> ErrorNotifier:
    if settings.notify_command:
        return CommandNotifier(settings.notify_command)
    return LogNotifier()


def build_session(settings: Settings) -> KeyringSession:
    return KeyringSession(
        settings.keyring_path,
        prompt=build_prompt(settings),
        notifier=build_notifier(settings),
    )


class KeyServer:
    """Owns the connection registry and routes WebSocket frames to handlers."""

    def __init__(self, session: KeyringSession, registry: ConnectionRegistry | None = None):
        self.session = session
        self.registry = registry if registry is not None else ConnectionRegistry()
        self._next_id = itertools.count(1)
        self._runner: web.AppRunner | None = None
        self.app = web.Application()
        self.app.router.add_get("/ws", self.websocket)
        self.app.router.add_get("/health", self.health)

    async def websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        handler = ConnectionHandler(next(self._next_id), self.session)
        self.registry.add(handler)
        logger.info(f"Client {handler.connection_id} connected")
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    reply = await handler.handle_frame(msg.data)
                    if ws.closed:
                        break
                    await ws.send_str(reply)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        f"Client {handler.connection_id} socket error: {ws.exception()}"
                    )
        except ConnectionResetError:
            logger.info(f"Client {handler.connection_id} went away before its reply")
        finally:
            self.registry.remove(handler.connection_id)
            logger.info(f"Client {handler.connection_id} disconnected")
        return ws

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "connections": len(self.registry),
                "unlocked": self.session.is_unlocked,
            }
        )

    async def start(self, socket_path: str | Path) -> None:
        """Listen on ``socket_path`` (created with mode 0600)."""
        socket_path = Path(socket_path)
        _remove_stale_socket(socket_path)
        socket_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        self._runner = web.AppRunner(self.app, handle_signals=False)
        await self._runner.setup()
        site = web.UnixSite(self._runner, str(socket_path))
        await site.start()
        os.chmod(socket_path, 0o600)
        logger.info(f"Key server listening on {socket_path}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Key server stopped")


def _remove_stale_socket(path: Path) -> None:
    """Unlink a socket left behind by a dead server; refuse if one is alive."""
    if not path.exists():
        return
    if not path.is_socket():
        raise RuntimeError(f"{path} exists and is not a socket")
    probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        probe.connect(str(path))
    except OSError as err:
        if err.errno not in (errno.ECONNREFUSED, errno.ENOENT):
            raise
        logger.info(f"Removing stale socket {path}")
        path.unlink(missing_ok=True)
        return
    finally:
        probe.close()
    raise RuntimeError(f"Another key server is already listening on {path}")


async def run(settings: Settings) -> None:
    """Serve until SIGINT or SIGTERM."""
    server = KeyServer(build_session(settings))
    await server.start(settings.socket_path)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        await server.stop()
        Path(settings.socket_path).unlink(missing_ok=True)
