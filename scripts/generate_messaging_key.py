#!/usr/bin/env python3
"""Generate a messaging key used by the chat server to sign realtime credentials."""

from __future__ import annotations

import argparse
import os
import re
import secrets
import sys
from pathlib import Path

DEFAULT_BYTE_LENGTH = 48
DEFAULT_KEY_NAME = "relaychat"
ENV_VAR_NAME = "MESSAGING_API_KEY"
_KEY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def generate_key(key_name: str, byte_length: int) -> str:
    """Return ``<keyName>:<secret>`` with a URL-safe secret."""
    if byte_length <= 0:
        raise ValueError(f"byte length must be positive (got {byte_length})")
    if not _KEY_NAME_PATTERN.match(key_name):
        raise ValueError(f"key name may only contain letters, digits, '.', '_' and '-' (got {key_name!r})")
    return f"{key_name}:{secrets.token_urlsafe(byte_length)}"


def update_env_file(path: Path, key: str) -> None:
    """Insert or replace the messaging key in an env-style file."""
    entry = f"{ENV_VAR_NAME}={key}"
    if path.exists():
        pattern = re.compile(rf"^{re.escape(ENV_VAR_NAME)}=")
        lines = [entry if pattern.match(line) else line for line in path.read_text(encoding="utf-8").splitlines()]
        if entry not in lines:
            lines.append(entry)
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [entry]

    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError:
        # chmod is unsupported on some platforms
        pass


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--name", default=DEFAULT_KEY_NAME, help="Public key name placed in the token header.")
    parser.add_argument(
        "--bytes",
        type=int,
        default=DEFAULT_BYTE_LENGTH,
        help="Number of random bytes behind the secret part of the key.",
    )
    parser.add_argument(
        "--update-env",
        type=Path,
        metavar="PATH",
        help="Update or create the specified env file with the generated key.",
    )
    parser.add_argument(
        "--silent",
        action="store_true",
        help="Do not print the key to stdout.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        key = generate_key(args.name, args.bytes)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    if args.update_env:
        update_env_file(args.update_env, key)
        print(f"Updated {args.update_env} with {ENV_VAR_NAME}.", file=sys.stderr)

    if not args.silent:
        print(key)

    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
