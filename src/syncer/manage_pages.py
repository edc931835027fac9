"""
Page manager — register pages for syncing and maintain their stored data.

Runnable as::

    python -m syncer.manage_pages add <page_id>     # prompts for the token
    python -m syncer.manage_pages list
    python -m syncer.manage_pages refresh-names
    python -m syncer.manage_pages recompute

``add`` resolves the page name from the Graph API with the given token,
then stores the token Fernet-encrypted.  ``refresh-names`` re-resolves
every stored page's display name.  ``recompute`` rebuilds conversation
counts from stored messages.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from shared.audit import DEFAULT_LOG_PATH, AuditLogger
from shared.db import get_connection_pool, init_database
from shared.secrets import TOKEN_KEY_NAME, encrypt_token, get_secret
from syncer.engine import refresh_page_names
from syncer.errors import SyncError
from syncer.fetchers import fetch_page_name
from syncer.main import build_graph_client, load_config
from syncer.sync_store import SyncStore

logger = logging.getLogger("syncer.manage_pages")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="msgstats-pages",
        description="Manage pages synced by msgstats.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to settings.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Register a page and store its access token")
    add.add_argument("page_id")
    add.add_argument(
        "--token-env",
        default=None,
        help="Read the page token from this environment variable instead of prompting",
    )

    sub.add_parser("list", help="List registered pages")
    sub.add_parser("refresh-names", help="Re-resolve page display names")
    sub.add_parser("recompute", help="Recompute conversation stats from stored messages")
    return parser


def _read_token(token_env: Optional[str]) -> str:
    if token_env:
        token = os.environ.get(token_env, "")
    else:
        token = getpass.getpass("Page access token: ")
    token = token.strip()
    if not token:
        raise SystemExit("No page access token provided.")
    return token


async def _add_page(
    config: Dict[str, Any],
    store: SyncStore,
    audit: AuditLogger,
    page_id: str,
    token: str,
) -> None:
    encryption_key = get_secret(TOKEN_KEY_NAME)
    async with build_graph_client(config) as client:
        name = await fetch_page_name(client, page_id, token)
    await store.upsert_page(page_id, name, encrypt_token(token, encryption_key))
    await audit.log("page_registered", {"page_id": page_id, "name": name})
    print(f"Registered page {page_id} ({name}).")


async def _list_pages(store: SyncStore) -> None:
    pages = await store.list_pages()
    if not pages:
        print("No pages registered.")
        return
    for page in pages:
        token_state = "token" if page.encrypted_access_token else "NO TOKEN"
        ig = f", ig={page.ig_business_id}" if page.ig_business_id else ""
        print(f"{page.id}  {page.name}  ({token_state}{ig})")


async def _refresh_names(config: Dict[str, Any], store: SyncStore) -> None:
    encryption_key = get_secret(TOKEN_KEY_NAME)
    async with build_graph_client(config) as client:
        names = await refresh_page_names(client, store, encryption_key)
    for page_id, name in sorted(names.items()):
        print(f"{page_id}  {name}")
    print(f"Refreshed {len(names)} page name(s).")


async def run_command(args: argparse.Namespace) -> int:
    config = load_config(args.config) if args.config else load_config()
    token = _read_token(args.token_env) if args.command == "add" else None

    db_config = dict(config["database"])
    if "password" not in db_config:
        db_config["password"] = get_secret("db-password")
    audit_path = Path(config.get("syncer", {}).get("audit_log_path") or DEFAULT_LOG_PATH)

    pool = await get_connection_pool(db_config)
    audit = AuditLogger(pool, service="manage_pages", log_path=audit_path)
    try:
        await init_database(pool)
        store = SyncStore(pool)
        if args.command == "add":
            await _add_page(config, store, audit, args.page_id, token)
        elif args.command == "list":
            await _list_pages(store)
        elif args.command == "refresh-names":
            await _refresh_names(config, store)
        elif args.command == "recompute":
            updated = await store.recompute_conversation_stats()
            await audit.log("recompute_conversation_stats", {"updated": updated})
            print(f"Recomputed stats for {updated} conversation(s).")
    except SyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await audit.close()
        await pool.close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Synchronous entry point."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    sys.exit(asyncio.run(run_command(args)))


if __name__ == "__main__":
    main()
