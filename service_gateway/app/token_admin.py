#!/usr/bin/env python3
"""
Manage the gateway's API keys from the command line.

Edits the credential file named by TOKEN_FILE (or --token-file). A running
gateway picks up changes after it receives SIGHUP.
"""

import argparse
import sys
from typing import List, Optional, TextIO

from shared.config import get_config
from shared.errors import CredentialStoreError
from shared.logging import configure_logging

from .auth.credential_store import Credential, CredentialStore


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="webplow-token", description="Manage gateway API keys.")
    parser.add_argument("--token-file", default=None, help="Credential file (defaults to TOKEN_FILE)")
    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Create a key for an account")
    add.add_argument("name", help="Account name the key identifies")

    commands.add_parser("list", help="List all keys")

    delete = commands.add_parser("delete", help="Revoke a key")
    delete.add_argument("key", help="Key to revoke")
    return parser.parse_args(argv)


def format_table(credentials: List[Credential]) -> str:
    rows = [("NAME", "KEY", "CREATED")]
    rows.extend(
        (c.name, c.key, c.created_at.strftime("%Y-%m-%d %H:%M"))
        for c in credentials
    )
    widths = [max(len(row[i]) for row in rows) for i in range(2)]
    return "\n".join(
        f"{name.ljust(widths[0])}  {key.ljust(widths[1])}  {created}"
        for name, key, created in rows
    )


def run(args: argparse.Namespace, out: TextIO = sys.stdout, err: TextIO = sys.stderr) -> int:
    path = args.token_file or get_config().token_file
    try:
        store = CredentialStore.load(path)

        if args.command == "add":
            credential = store.add(args.name)
            print(f"Token created for \"{credential.name}\":\n{credential.key}", file=out)

        elif args.command == "list":
            credentials = store.list()
            if not credentials:
                print("No tokens.", file=out)
            else:
                print(format_table(credentials), file=out)

        elif args.command == "delete":
            if not store.delete(args.key):
                print("No such token.", file=err)
                return 1
            print("Deleted.", file=out)

    except (CredentialStoreError, ValueError) as exc:
        print(f"error: {exc}", file=err)
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging("token_admin", "warning")
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
