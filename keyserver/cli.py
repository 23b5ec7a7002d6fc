"""
keyserver command line.

    keyserver serve                     run the broker in the foreground
    keyserver init                      create a new encrypted keyring
    keyserver greet                     check that the broker answers
    keyserver get-password ID           print username and password
    keyserver add-password ID USERNAME  store a credential (password is prompted)
    keyserver get-key ID                print key material
    keyserver add-key ID [KEY]          store key material (prompted if omitted)

Exit status: 0 on success, 1 when the keyring is unavailable or the entry is
missing, 2 for usage and configuration errors.
"""

import argparse
import asyncio
import getpass
import sys
from pathlib import Path

from loguru import logger

from .client import KeyClient, KeyServerError
from .config import ConfigError, Settings, load_settings
from .keyring_file import EncryptedKeyring, KeyringError
from .log import setup_logging
from .server import run

EXIT_OK = 0
EXIT_UNAVAILABLE = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyserver", description="Local encrypted credential broker"
    )
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--socket", type=Path, help="Unix socket path")
    parser.add_argument("--keyring", type=Path, help="Keyring container path")
    parser.add_argument("--log-level", help="TRACE, DEBUG, INFO, WARNING, ERROR")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("serve", help="Run the key server")
    sub.add_parser("init", help="Create a new keyring")
    sub.add_parser("greet", help="Check that the key server answers")

    get_password = sub.add_parser("get-password", help="Print a stored credential")
    get_password.add_argument("id")

    add_password = sub.add_parser("add-password", help="Store a credential")
    add_password.add_argument("id")
    add_password.add_argument("username")

    get_key = sub.add_parser("get-key", help="Print stored key material")
    get_key.add_argument("id")

    add_key = sub.add_parser("add-key", help="Store key material")
    add_key.add_argument("id")
    add_key.add_argument("key", nargs="?")

    return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.config)
    updates = {}
    if args.socket:
        updates["socket_path"] = args.socket.expanduser()
    if args.keyring:
        updates["keyring_path"] = args.keyring.expanduser()
    if args.log_level:
        updates["log_level"] = args.log_level
    if not updates:
        return settings
    try:
        return Settings.model_validate({**settings.model_dump(), **updates})
    except ValueError as err:
        raise ConfigError(f"Invalid command line option: {err}") from err


def _read_secret(prompt: str) -> str | None:
    """getpass, with Ctrl-C or EOF treated as the user backing out."""
    try:
        return getpass.getpass(prompt)
    except (EOFError, KeyboardInterrupt):
        print(file=sys.stderr)
        return None


def _init_keyring(settings: Settings) -> int:
    password = _read_secret("New keyring password: ")
    if password is None:
        return EXIT_UNAVAILABLE
    if not password:
        print("Password cannot be empty", file=sys.stderr)
        return EXIT_USAGE
    confirmation = _read_secret("Confirm password: ")
    if confirmation is None:
        return EXIT_UNAVAILABLE
    if confirmation != password:
        print("Passwords do not match", file=sys.stderr)
        return EXIT_USAGE
    try:
        EncryptedKeyring.create(settings.keyring_path, password, settings.kdf_iterations)
    except KeyringError as err:
        print(f"Cannot create keyring: {err}", file=sys.stderr)
        return EXIT_UNAVAILABLE
    print(f"Keyring created at {settings.keyring_path}")
    return EXIT_OK


async def _client_command(args: argparse.Namespace, settings: Settings) -> int:
    async with KeyClient(settings.socket_path) as client:
        if args.command == "greet":
            await client.greet()
            print("ok")
            return EXIT_OK

        if args.command == "get-password":
            response = await client.get_username_password(args.id)
            if not response.found:
                print("Keyring is unavailable", file=sys.stderr)
                return EXIT_UNAVAILABLE
            if not response.has_value:
                print(f"No credential stored for {args.id!r}", file=sys.stderr)
                return EXIT_UNAVAILABLE
            print(response.username)
            print(response.password)
            return EXIT_OK

        if args.command == "add-password":
            password = _read_secret(f"Password for {args.username}: ")
            if password is None:
                print("Cancelled", file=sys.stderr)
                return EXIT_UNAVAILABLE
            ok = await client.add_username_password(args.id, args.username, password)
            return EXIT_OK if ok else EXIT_UNAVAILABLE

        if args.command == "get-key":
            response = await client.get_key(args.id)
            if not response.found:
                print("Keyring is unavailable", file=sys.stderr)
                return EXIT_UNAVAILABLE
            if not response.has_value:
                print(f"No key stored for {args.id!r}", file=sys.stderr)
                return EXIT_UNAVAILABLE
            print(response.key)
            return EXIT_OK

        if args.command == "add-key":
            key = args.key if args.key is not None else _read_secret(f"Key for {args.id}: ")
            if key is None:
                print("Cancelled", file=sys.stderr)
                return EXIT_UNAVAILABLE
            ok = await client.add_key(args.id, key)
            return EXIT_OK if ok else EXIT_UNAVAILABLE

    raise ValueError(f"Unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = _settings_from_args(args)
    except ConfigError as err:
        print(err, file=sys.stderr)
        return EXIT_USAGE
    setup_logging(settings.log_level)

    if args.command == "serve":
        try:
            asyncio.run(run(settings))
        except (RuntimeError, OSError) as err:
            logger.error(f"Cannot serve on {settings.socket_path}: {err}")
            return EXIT_UNAVAILABLE
        return EXIT_OK

    if args.command == "init":
        return _init_keyring(settings)

    try:
        return asyncio.run(_client_command(args, settings))
    except KeyServerError as err:
        print(err, file=sys.stderr)
        return EXIT_UNAVAILABLE


if __name__ == "__main__":
    sys.exit(main())
