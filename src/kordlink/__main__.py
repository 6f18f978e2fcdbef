"""Entry point for `python -m kordlink` / `kordlink`.

Subcommands:
    kordlink                  Run the bot (default)
    kordlink prune-session    Delete stale pre-key and session files
"""

from __future__ import annotations

import argparse
import asyncio
import sys


def _run() -> None:
    from kordlink.app import KordApp

    app = KordApp()
    sys.exit(asyncio.run(app.run()))


def _prune_session() -> None:
    from kordlink.config import get_settings
    from kordlink.credentials import CredentialStore

    s = get_settings()
    if not s.session_dir.is_dir():
        print(f"No session directory at {s.session_dir}", file=sys.stderr)
        sys.exit(1)

    removed = CredentialStore(s.session_dir).prune_stale_keys()
    print(f"Removed {len(removed)} stale key file(s) from {s.session_dir}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="kordlink",
        description="WhatsApp bot connection supervisor",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("prune-session", help="Delete stale pre-key and session files")

    args = parser.parse_args()

    match args.command:
        case "prune-session":
            _prune_session()
        case _:
            _run()


if __name__ == "__main__":
    main()
