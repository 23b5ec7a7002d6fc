"""Async client for the key server's unix-socket WebSocket channel."""

import asyncio
from pathlib import Path

import aiohttp
from loguru import logger
from pydantic import ValidationError

from .protocol import (
    RESPONSE_TYPES,
    AddKey,
    AddUsernamePassword,
    ErrorResponse,
    GetKey,
    GetKeyResponse,
    GetUsernamePassword,
    GetUsernamePasswordResponse,
    Greet,
    Message,
    decode_response,
    encode,
)


class KeyServerError(Exception):
    """The server could not be reached or answered with something unexpected."""


class KeyClient:
    """One connection to the key server.

    Usage::

        async with KeyClient(socket_path) as client:
            await client.greet()
            creds = await client.get_username_password("github")

    Requests on one client are sent one at a time, so replies always match
    the request that produced them. Unlocking may prompt the user, which is
    why there is no default timeout.
    """

    def __init__(self, socket_path: str | Path, timeout: float | None = None):
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        connector = aiohttp.UnixConnector(path=str(self.socket_path))
        self._session = aiohttp.ClientSession(connector=connector)
        try:
            # host is ignored on a unix socket
            self._ws = await self._session.ws_connect("http://keyserver/ws")
        except aiohttp.ClientError as err:
            await self._session.close()
            self._session = None
            raise KeyServerError(
                f"Cannot connect to key server at {self.socket_path}: {err}"
            ) from err
        logger.debug(f"Connected to key server at {self.socket_path}")

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "KeyClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def request(self, message: Message) -> Message:
        """Send one request and return its matching response.

        Raises:
            KeyServerError: Not connected, connection dropped, the server
                rejected the frame, or the reply kind does not match.
        """
        if self._ws is None:
            raise KeyServerError("Client is not connected")

        async with self._lock:
            try:
                await self._ws.send_str(encode(message))
                reply = await self._ws.receive(timeout=self.timeout)
            except (aiohttp.ClientError, ConnectionResetError) as err:
                raise KeyServerError(f"Connection to key server failed: {err}") from err
            except asyncio.TimeoutError as err:
                raise KeyServerError("Timed out waiting for the key server") from err

        if reply.type != aiohttp.WSMsgType.TEXT:
            raise KeyServerError(f"Key server closed the connection ({reply.type.name})")

        try:
            response = decode_response(reply.data)
        except ValidationError as err:
            raise KeyServerError("Key server sent a malformed response") from err
        if isinstance(response, ErrorResponse):
            raise KeyServerError(response.detail)

        expected = RESPONSE_TYPES[type(message)]
        if not isinstance(response, expected):
            raise KeyServerError(
                f"Expected {expected.__name__}, got {type(response).__name__}"
            )
        return response

    async def greet(self) -> None:
        await self.request(Greet())

    async def add_username_password(self, id: str, username: str, password: str) -> bool:
        response = await self.request(
            AddUsernamePassword(id=id, username=username, password=password)
        )
        return response.success

    async def get_username_password(self, id: str) -> GetUsernamePasswordResponse:
        return await self.request(GetUsernamePassword(id=id))

    async def add_key(self, id: str, key: str) -> bool:
        response = await self.request(AddKey(id=id, key=key))
        return response.success

    async def get_key(self, id: str) -> GetKeyResponse:
        return await self.request(GetKey(id=id))
