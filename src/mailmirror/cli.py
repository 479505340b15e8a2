"""Command-line interface for mailmirror.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import uuid
from pathlib import Path

import structlog

from mailmirror import __version__
from mailmirror.config import Settings, get_settings
from mailmirror.exceptions import ConfigurationError, MailMirrorError
from mailmirror.models import Account, ProviderKind
from mailmirror.runtime import MailMirror
from mailmirror.search import SearchMode, SearchQuery, build_filter

logger = structlog.get_logger()

IMAP_PASSWORD_ENV = "MAILMIRROR_IMAP_PASSWORD"


def env_credential_lookup(auth_ref: str) -> str:
    """Resolve an IMAP password from the environment.

    Raises:
        KeyError: If no password is configured.
    """
    return os.environ[IMAP_PASSWORD_ENV]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailmirror", description="Local-first email mirror")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite mirror database (default: settings db_path)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Account commands
    accounts_parser = subparsers.add_parser("accounts", help="Manage mirrored accounts")
    accounts_sub = accounts_parser.add_subparsers(dest="accounts_command", required=True)

    add_parser = accounts_sub.add_parser("add", help="Add an account to mirror")
    add_parser.add_argument("email", help="Mailbox address")
    add_parser.add_argument(
        "--provider",
        choices=[p.value for p in ProviderKind],
        default=ProviderKind.GMAIL.value,
        help="Remote backend (default: gmail)",
    )
    add_parser.add_argument(
        "--auth-ref",
        default=None,
        help=(
            "Gmail: OAuth token file path (default: token-<id>.json next to the database). "
            "IMAP: imap://user@host[:port]; the password is read from "
            f"{IMAP_PASSWORD_ENV}"
        ),
    )
    add_parser.add_argument("--id", dest="account_id", default=None, help="Local account id")
    add_parser.add_argument("--name", default=None, help="Display name")

    accounts_sub.add_parser("list", help="List accounts and their sync status")

    remove_parser = accounts_sub.add_parser("remove", help="Remove an account and its mirror")
    remove_parser.add_argument("account_id")

    resume_parser = accounts_sub.add_parser("resume", help="Resume an account paused on auth errors")
    resume_parser.add_argument("account_id")

    # Sync
    subparsers.add_parser("sync", help="Run one sync pass over all accounts and index the changes")

    # Local edits
    flag_parser = subparsers.add_parser(
        "flag", help="Set or clear a flag or label on a mirrored email; pushed on the next sync"
    )
    flag_parser.add_argument("email_id")
    flag_parser.add_argument("field", help="read, starred, archived, deleted or label:NAME")
    flag_parser.add_argument("state", choices=["on", "off"])

    # Search
    search_parser = subparsers.add_parser("search", help="Search the local mirror")
    search_parser.add_argument("query", help="Search text")
    search_parser.add_argument(
        "--mode",
        choices=[m.value for m in SearchMode],
        default=SearchMode.HYBRID.value,
        help="Search mode (default: hybrid)",
    )
    search_parser.add_argument("--account", action="append", default=None, help="Restrict to account")
    search_parser.add_argument("--folder", default=None, help="Virtual folder or label name")
    search_parser.add_argument("--unread", action="store_true", help="Only unread emails")
    search_parser.add_argument("--starred", action="store_true", help="Only starred emails")
    search_parser.add_argument("--limit", type=int, default=25, help="Max results")
    search_parser.add_argument("--offset", type=int, default=0, help="Results to skip")

    # Rebuild
    rebuild_parser = subparsers.add_parser(
        "rebuild",
        help="Drop an account's mirror and resync it, or rebuild the vector index",
    )
    rebuild_target = rebuild_parser.add_mutually_exclusive_group(required=True)
    rebuild_target.add_argument("--account", dest="account_id", default=None, help="Account to resync")
    rebuild_target.add_argument(
        "--index",
        action="store_true",
        help="Recreate the similarity index from stored vectors",
    )

    # Serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API with background sync")
    serve_parser.add_argument("--host", default=None, help="Bind host (default: settings api_host)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default: settings api_port)")

    return parser


def _open_mirror(settings: Settings) -> MailMirror:
    return MailMirror(settings, credential_lookup=env_credential_lookup)


def _cmd_accounts_add(mirror: MailMirror, args: argparse.Namespace) -> int:
    account_id = args.account_id or uuid.uuid4().hex[:12]
    provider = ProviderKind(args.provider)
    auth_ref = args.auth_ref
    if auth_ref is None:
        if provider == ProviderKind.IMAP:
            print("IMAP accounts need --auth-ref imap://user@host[:port]", file=sys.stderr)
            return 2
        auth_ref = str(mirror.settings.db_path.parent / f"token-{account_id}.json")

    account = Account(
        id=account_id,
        email_address=args.email,
        provider=provider,
        auth_ref=auth_ref,
        display_name=args.name,
    )
    mirror.add_account(account)
    print(f"Added {provider.value} account {account_id} ({args.email})")
    return 0


def _cmd_accounts_list(mirror: MailMirror) -> int:
    accounts = mirror.store.list_accounts()
    if not accounts:
        print("No accounts configured.")
        return 0
    for account in accounts:
        state = mirror.store.get_sync_state(account.id, mirror.settings.default_mailbox)
        synced = state.last_synced_at.isoformat() if state.last_synced_at else "never"
        detail = f"\t{account.status_detail}" if account.status_detail else ""
        print(
            f"{account.id}\t{account.provider.value}\t{account.email_address}\t"
            f"{account.status.value}\tsynced: {synced}{detail}"
        )
    return 0


async def _cmd_accounts_remove(mirror: MailMirror, args: argparse.Namespace) -> int:
    if not await mirror.remove_account(args.account_id):
        print(f"Unknown account: {args.account_id}", file=sys.stderr)
        return 1
    print(f"Removed account {args.account_id}")
    return 0


def _cmd_accounts_resume(mirror: MailMirror, args: argparse.Namespace) -> int:
    try:
        account = mirror.resume_account(args.account_id)
    except KeyError:
        print(f"Unknown account: {args.account_id}", file=sys.stderr)
        return 1
    print(f"{account.id}: {account.status.value}")
    return 0


async def _cmd_sync(mirror: MailMirror) -> int:
    reports = await mirror.sync_once()
    exit_code = 0
    for r in reports:
        outcome = "ok" if r.ok else (r.error or "cancelled")
        print(
            f"{r.account_id}\t{r.status.value}\t{outcome}\tfetched={r.fetched} applied={r.applied} "
            f"deleted={r.deleted} pushed={r.pushed} deferred={r.deferred} rejected={r.rejected}"
        )
        if not r.ok:
            exit_code = 1
    return exit_code


def _cmd_flag(mirror: MailMirror, args: argparse.Namespace) -> int:
    try:
        edit = mirror.set_flag(args.email_id, args.field, args.state == "on")
    except KeyError:
        print(f"Unknown email: {args.email_id}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    print(f"{edit.email_id}: {edit.description} (pushed on the next sync)")
    return 0


async def _cmd_search(mirror: MailMirror, args: argparse.Namespace) -> int:
    email_filter = build_filter(
        accounts=args.account,
        folder=args.folder,
        unread=True if args.unread else None,
        starred=True if args.starred else None,
    )
    results = await mirror.search.search(
        SearchQuery(
            text=args.query,
            mode=SearchMode(args.mode),
            filter=email_filter,
            limit=args.limit,
            offset=args.offset,
        )
    )
    for h in results.hits:
        email = h.email
        subject = email.content.subject if email else "(missing)"
        sender = email.content.sender if email else ""
        date_part = email.content.sent_at.isoformat() if email else ""
        print(f"{h.score:.4f}\t{h.source.value}\t{date_part}\t{sender}\t{subject}")
    suffix = "" if results.used_semantic else " (keyword only)"
    print(f"{len(results.hits)} of {results.total} results in {results.took_ms:.1f} ms{suffix}")
    return 0


async def _cmd_rebuild(mirror: MailMirror, args: argparse.Namespace) -> int:
    if args.index:
        if mirror.index is None:
            print("Embeddings are not configured; nothing to rebuild.", file=sys.stderr)
            return 1
        written = mirror.index.rebuild_from_store(mirror.store)
        print(f"Rebuilt similarity index with {written} vectors")
        return 0
    try:
        removed = await mirror.rebuild_account(args.account_id)
    except KeyError:
        print(f"Unknown account: {args.account_id}", file=sys.stderr)
        return 1
    print(f"Dropped {removed} mirrored emails of {args.account_id}; the next sync refetches them")
    return 0


def _cmd_serve(mirror: MailMirror, args: argparse.Namespace) -> int:
    import uvicorn

    from mailmirror.api import create_app

    app = create_app(mirror, run_background=True)
    uvicorn.run(
        app,
        host=args.host or mirror.settings.api_host,
        port=args.port or mirror.settings.api_port,
        log_level=mirror.settings.log_level.lower(),
    )
    return 0


async def _dispatch_async(mirror: MailMirror, parsed: argparse.Namespace) -> int:
    if parsed.command == "accounts" and parsed.accounts_command == "remove":
        return await _cmd_accounts_remove(mirror, parsed)
    if parsed.command == "sync":
        return await _cmd_sync(mirror)
    if parsed.command == "search":
        return await _cmd_search(mirror, parsed)
    if parsed.command == "rebuild":
        return await _cmd_rebuild(mirror, parsed)
    logger.error("unknown_command", command=parsed.command)
    return 2


def main(args: list[str] | None = None) -> int:
    """Main entry point for the mailmirror CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()

    # Configure logging
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
    )

    logger.info("mailmirror_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)
    if parsed.db is not None:
        settings = settings.model_copy(update={"db_path": parsed.db})

    try:
        mirror = _open_mirror(settings)
        if parsed.command == "accounts":
            if parsed.accounts_command == "add":
                return _cmd_accounts_add(mirror, parsed)
            if parsed.accounts_command == "list":
                return _cmd_accounts_list(mirror)
            if parsed.accounts_command == "resume":
                return _cmd_accounts_resume(mirror, parsed)
        if parsed.command == "flag":
            return _cmd_flag(mirror, parsed)
        if parsed.command == "serve":
            return _cmd_serve(mirror, parsed)
        return asyncio.run(_dispatch_async(mirror, parsed))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    except MailMirrorError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
