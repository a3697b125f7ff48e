"""
Command-line interface for inspecting local session storage and
managing the remote sync account.

    python -m assistant_session_storage status
    python -m assistant_session_storage set-client --client-id ID --client-secret SECRET
    python -m assistant_session_storage sign-in
    python -m assistant_session_storage sync
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

from .config import StorageConfig
from .exceptions import SessionStorageError
from .history import HistoryManager
from .logging_utils import configure_structured_logging, get_storage_logger

logger = get_storage_logger("cli")


def _format_time(ms: int) -> str:
    if not ms:
        return "never"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


async def _status(manager: HistoryManager) -> None:
    status = await manager.get_auth_status()
    stats = await manager.get_storage_stats()

    print(f"Backend:   {manager.backend_name}")
    print(f"Location:  {manager.config.storage_dir}")
    print(f"Sessions:  {stats.session_count} ({stats.message_count} messages)")
    if stats.db_size_bytes:
        print(f"DB size:   {stats.db_size_bytes / 1024:.1f} KiB")
    print(f"Storage:   {status.storage_type}")
    if status.is_signed_in:
        print(f"Account:   {status.user_name} <{status.user_email}>")
        print(f"Last sync: {_format_time(manager.get_last_sync_time())}")


async def _list(manager: HistoryManager) -> None:
    await manager.wait_for_startup_pull()
    sessions = await manager.list_sessions()
    if not sessions:
        print("No sessions.")
        return
    for s in sessions:
        updated = _format_time(s.updated_at)
        print(f"{s.id}  {updated}  {s.mode.value:<16} {s.message_count:>4}  {s.title}")


async def _sign_in(manager: HistoryManager) -> None:
    print(f"Opening browser for authorization (callback port {manager.config.oauth_callback_port})...")
    status = await manager.sign_in()
    print(f"\nSigned in as: {status.user_name} <{status.user_email}>")


async def _sign_out(manager: HistoryManager) -> None:
    await manager.sign_out()
    print("Signed out. Sessions remain on this device.")


async def _sync(manager: HistoryManager) -> None:
    result = await manager.sync_now()
    print(f"Sync complete (pull: {result.value}).")


async def _set_client(manager: HistoryManager, client_id: str, client_secret: str) -> None:
    await manager.auth.set_client_credentials(client_id, client_secret)
    print("OAuth client credentials saved.")


async def run(args: argparse.Namespace) -> None:
    config = StorageConfig.load(args.settings)
    manager = HistoryManager(config)
    await manager.initialize()
    try:
        if args.command == "status":
            await _status(manager)
        elif args.command == "list":
            await _list(manager)
        elif args.command == "sign-in":
            await _sign_in(manager)
        elif args.command == "sign-out":
            await _sign_out(manager)
        elif args.command == "sync":
            await _sync(manager)
        elif args.command == "set-client":
            await _set_client(manager, args.client_id, args.client_secret)
    finally:
        await manager.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="assistant-sessions",
        description="Assistant Session Storage - local history and remote sync",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        default=None,
        help="YAML settings file with a 'storage' section",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Emit JSON debug logs on stderr",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Show backend, account and session counts")
    commands.add_parser("list", help="List sessions, most recent first")
    commands.add_parser("sign-in", help="Authorize remote sync in the browser")
    commands.add_parser("sign-out", help="Push once more, then forget the tokens")
    commands.add_parser("sync", help="Pull newer remote sessions, then push")

    set_client = commands.add_parser("set-client", help="Store the OAuth client id and secret")
    set_client.add_argument("--client-id", required=True)
    set_client.add_argument("--client-secret", required=True)

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_structured_logging(level="DEBUG" if args.verbose else "WARNING")

    try:
        asyncio.run(run(args))
    except SessionStorageError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nCancelled.")
        sys.exit(1)


if __name__ == "__main__":
    main()
