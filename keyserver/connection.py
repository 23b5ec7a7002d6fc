"""Per-client request handling and the table of live connections."""

from pathlib import Path
from typing import assert_never

from loguru import logger
from pydantic import ValidationError

from .protocol import (
    AddKey,
    AddKeyResponse,
    AddUsernamePassword,
    AddUsernamePasswordResponse,
    ErrorResponse,
    GetKey,
    GetKeyResponse,
    GetUsernamePassword,
    GetUsernamePasswordResponse,
    Greet,
    GreetResponse,
    Request,
    Response,
    decode_request,
    encode,
)
from .session import KeyringSession


class ConnectionHandler:
    """Translates one client's requests into keyring session operations.

    Holds nothing but its connection id and the shared session. Every
    request gets exactly one response; keyring trouble is reported through
    response fields, never raised to the transport.
    """

    def __init__(self, connection_id: int, session: KeyringSession):
        self.connection_id = connection_id
        self.session = session

    @property
    def path(self) -> Path:
        return self.session.path

    async def handle_frame(self, raw: str | bytes) -> str:
        """Decode one inbound frame, handle it, and encode the reply."""
        try:
            request = decode_request(raw)
        except ValidationError as err:
            # include_input=False: the rejected frame may carry a password
            detail = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'message'}: {error['msg']}"
                for error in err.errors(include_url=False, include_input=False)
            )
            logger.warning(
                f"Connection {self.connection_id}: rejected malformed request ({detail})"
            )
            return encode(ErrorResponse(detail=f"Invalid request: {detail}"))
        return encode(await self.handle(request))

    async def handle(self, request: Request) -> Response:
        match request:
            case Greet():
                return GreetResponse()
            case AddUsernamePassword():
                return await self._add_username_password(request)
            case GetUsernamePassword():
                return await self._get_username_password(request)
            case AddKey():
                return await self._add_key(request)
            case GetKey():
                return await self._get_key(request)
            case _:
                assert_never(request)

    async def _add_username_password(
        self, message: AddUsernamePassword
    ) -> AddUsernamePasswordResponse:
        keyring = await self.session.acquire()
        if keyring is None:
            return AddUsernamePasswordResponse(success=False)

        success = await self.session.add_username_password(
            keyring, message.id, message.username, message.password
        )
        return AddUsernamePasswordResponse(success=success)

    async def _get_username_password(
        self, message: GetUsernamePassword
    ) -> GetUsernamePasswordResponse:
        keyring = await self.session.acquire()
        if keyring is None:
            return GetUsernamePasswordResponse(found=False, has_value=False)

        entry = await self.session.get_username_password(keyring, message.id)
        if entry is None:
            return GetUsernamePasswordResponse(found=True, has_value=False)

        username, password = entry
        return GetUsernamePasswordResponse(
            found=True, has_value=True, username=username, password=password
        )

    async def _add_key(self, message: AddKey) -> AddKeyResponse:
        keyring = await self.session.acquire()
        if keyring is None:
            return AddKeyResponse(success=False)

        success = await self.session.add_key(keyring, message.id, message.key)
        return AddKeyResponse(success=success)

    async def _get_key(self, message: GetKey) -> GetKeyResponse:
        keyring = await self.session.acquire()
        if keyring is None:
            return GetKeyResponse(found=False, has_value=False)

        key = await self.session.get_key(keyring, message.id)
        if key is None:
            return GetKeyResponse(found=True, has_value=False)
        return GetKeyResponse(found=True, has_value=True, key=key)


class ConnectionRegistry:
    """Live connections keyed by connection id. Bookkeeping only."""

    def __init__(self):
        self._connections: dict[int, ConnectionHandler] = {}

    def add(self, handler: ConnectionHandler) -> None:
        if handler.connection_id in self._connections:
            raise ValueError(f"Connection id {handler.connection_id} is already registered")
        self._connections[handler.connection_id] = handler
        logger.debug(f"Connection {handler.connection_id} registered ({len(self)} live)")

    def remove(self, connection_id: int) -> bool:
        if self._connections.pop(connection_id, None) is None:
            logger.warning(f"Connection {connection_id} was not registered")
            return False
        logger.debug(f"Connection {connection_id} removed ({len(self)} live)")
        return True

    def ids(self) -> list[int]:
        return list(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)
