"""
Key Server Protocol Definitions

This module defines the request and response messages exchanged between
clients and the key server. Every message is a JSON object carrying a
``type`` discriminator, so each side can decode a frame into exactly one
of a closed set of models.

Each request kind has exactly one response kind; ``ErrorResponse`` is only
sent back for frames that could not be decoded at all.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Message(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# ── Requests ───────────────────────────────────────────────────────


class Greet(Message):
    """Handshake; always answered, never touches the keyring."""

    type: Literal["greet"] = "greet"


class AddUsernamePassword(Message):
    """
    Store a username/password pair under ``id``, replacing any existing entry.

    Attributes:
        id: Identifier in the credential namespace.
        username: Account name to store.
        password: Plaintext password to store.
    """

    type: Literal["add_username_password"] = "add_username_password"
    id: str
    username: str
    password: str


class GetUsernamePassword(Message):
    type: Literal["get_username_password"] = "get_username_password"
    id: str


class AddKey(Message):
    """
    Store opaque key material under ``id`` in the key namespace.

    The key namespace is independent of the credential namespace: the same
    identifier may exist in both.
    """

    type: Literal["add_key"] = "add_key"
    id: str
    key: str


class GetKey(Message):
    type: Literal["get_key"] = "get_key"
    id: str


# ── Responses ──────────────────────────────────────────────────────


class GreetResponse(Message):
    type: Literal["greet_response"] = "greet_response"


class AddUsernamePasswordResponse(Message):
    type: Literal["add_username_password_response"] = "add_username_password_response"
    success: bool


class GetUsernamePasswordResponse(Message):
    """
    Result of a credential lookup.

    Attributes:
        found: The keyring was available. False means it stayed locked.
        has_value: An entry exists for the identifier (only meaningful if found).
        username: Stored username, empty when there is no value.
        password: Stored password, empty when there is no value.
    """

    type: Literal["get_username_password_response"] = "get_username_password_response"
    found: bool
    has_value: bool
    username: str = ""
    password: str = ""


class AddKeyResponse(Message):
    type: Literal["add_key_response"] = "add_key_response"
    success: bool


class GetKeyResponse(Message):
    type: Literal["get_key_response"] = "get_key_response"
    found: bool
    has_value: bool
    key: str = ""


class ErrorResponse(Message):
    """Sent when an inbound frame is not a valid request."""

    type: Literal["error"] = "error"
    detail: str


Request = Annotated[
    Union[Greet, AddUsernamePassword, GetUsernamePassword, AddKey, GetKey],
    Field(discriminator="type"),
]

Response = Annotated[
    Union[
        GreetResponse,
        AddUsernamePasswordResponse,
        GetUsernamePasswordResponse,
        AddKeyResponse,
        GetKeyResponse,
        ErrorResponse,
    ],
    Field(discriminator="type"),
]

RESPONSE_TYPES: dict[type[Message], type[Message]] = {
    Greet: GreetResponse,
    AddUsernamePassword: AddUsernamePasswordResponse,
    GetUsernamePassword: GetUsernamePasswordResponse,
    AddKey: AddKeyResponse,
    GetKey: GetKeyResponse,
}

_request_adapter: TypeAdapter = TypeAdapter(Request)
_response_adapter: TypeAdapter = TypeAdapter(Response)


def decode_request(raw: str | bytes) -> Request:
    """Parse one JSON frame into a request model.

    Raises:
        pydantic.ValidationError: Invalid JSON, unknown ``type`` or bad fields.
    """
    return _request_adapter.validate_json(raw)


def decode_response(raw: str | bytes) -> Response:
    return _response_adapter.validate_json(raw)


def encode(message: Message) -> str:
    return message.model_dump_json()
