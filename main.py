"""CLI entry point for the bookmark sync core.

Offers the URL helpers (canonical form, dedupe key, category), link previews,
and the local-first bookmark flow (add, sync, share-inbox import, status,
sign-out) against a state file on disk.
"""

from __future__ import annotations

# Standard library imports (alphabetical within groups)
import argparse
import json
import logging
import os
from dataclasses import asdict, dataclass

# Third-party imports
from dotenv import load_dotenv

# Internal imports
from bookmark_sync.config import SyncSettings
from bookmark_sync.metadata import fetch_preview
from bookmark_sync.orchestrator import DuplicateBookmarkError, SyncOrchestrator
from bookmark_sync.pending_queue import PendingOperationQueue
from bookmark_sync.remote import OfflineSyncClient, RemoteSyncError, SupabaseSyncClient
from bookmark_sync.storage import JsonFileStorage
from bookmark_sync.store import PersistentBookmarkStore
from bookmark_sync.urls import canonicalize, dedupe_key, suggest_category

URL_MODES = {"canonicalize", "dedupe", "category", "preview", "add"}

LOGGER = logging.getLogger("bookmark_sync")


def configure_logging(*, verbose: bool) -> None:
    """Configure root logging (debug when verbose)."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


@dataclass(slots=True)
class Runtime:
    """Objects wired together for one CLI invocation."""

    storage: JsonFileStorage
    orchestrator: SyncOrchestrator
    queue: PendingOperationQueue
    client: SupabaseSyncClient | OfflineSyncClient


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Offline-first bookmark sync tools")
    parser.add_argument(
        "--mode",
        choices=(
            "canonicalize",
            "dedupe",
            "category",
            "preview",
            "add",
            "sync",
            "import-shared",
            "status",
            "sign-out",
        ),
        default="status",
        help=(
            "'canonicalize'/'dedupe'/'category'→inspect --url; 'preview'→fetch page preview;"
            " 'add'→save --url; 'sync'→replay queued changes; 'import-shared'→drain share inbox;"
            " 'status'→show queue; 'sign-out'→discard queued changes."
        ),
    )
    parser.add_argument("--url", help="Link to inspect or save")
    parser.add_argument("--title", default="", help="Title for --mode add")
    parser.add_argument(
        "--state-file",
        help="JSON state file (defaults to MINDSHELF_STATE_FILE or ~/.mindshelf/state.json)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()
    if args.mode in URL_MODES and not args.url:
        parser.error(f"--url is required with mode={args.mode}")
    return args


def _build_runtime(settings: SyncSettings) -> Runtime:
    storage = JsonFileStorage(settings.state_file)
    queue = PendingOperationQueue(storage)
    client: SupabaseSyncClient | OfflineSyncClient = OfflineSyncClient()
    if settings.has_backend:
        backend = SupabaseSyncClient(
            str(settings.supabase_url), str(settings.supabase_key), timeout=settings.request_timeout,
        )
        _maybe_sign_in(backend)
        client = backend
    orchestrator = SyncOrchestrator(
        PersistentBookmarkStore(storage),
        client,
        queue,
        max_drain_failures=settings.max_drain_failures,
    )
    return Runtime(storage=storage, orchestrator=orchestrator, queue=queue, client=client)


def _maybe_sign_in(client: SupabaseSyncClient) -> None:
    email = os.getenv("MINDSHELF_EMAIL")
    password = os.getenv("MINDSHELF_PASSWORD")
    if not (email and password):
        LOGGER.info("No credentials in environment; running signed out")
        return
    try:
        client.sign_in(email, password)
    except RemoteSyncError as exc:
        LOGGER.warning("Sign-in failed (%s); changes will be queued", exc)


def _handle_url_helper(mode: str, url: str) -> None:
    if mode == "canonicalize":
        print(canonicalize(url))
    elif mode == "dedupe":
        print(dedupe_key(url))
    elif mode == "category":
        print(suggest_category(url) or "general")
    elif mode == "preview":
        preview = fetch_preview(url)
        print(json.dumps(asdict(preview) if preview else None, indent=2, ensure_ascii=False))


def _handle_add(runtime: Runtime, url: str, title: str) -> None:
    try:
        bookmark, outcome = runtime.orchestrator.add_link(url, title=title)
    except DuplicateBookmarkError as exc:
        LOGGER.info("Not saved: %s", exc)
        return
    LOGGER.info("Saved %s (%s): %s", bookmark.url, bookmark.category, outcome.value)


def _handle_sync(runtime: Runtime) -> None:
    report = runtime.orchestrator.on_sign_in()
    client = runtime.client
    if isinstance(client, SupabaseSyncClient) and client.user_id:
        runtime.orchestrator.refresh_from_remote(client.user_id)
    LOGGER.info(
        "Delivered %d change(s); %d still queued", report.succeeded, len(report.remaining),
    )


def _handle_status(runtime: Runtime) -> None:
    status = runtime.orchestrator.status
    print(
        json.dumps(
            {
                "pending": status.pending_count,
                "failing": status.failing_operations,
                "last_sync_error": status.last_sync_error,
                "operations": [
                    {"type": op.type.value, "bookmark": str(op.bookmark_id), "attempts": op.attempts}
                    for op in runtime.queue.operations
                ],
            },
            indent=2,
        ),
    )


def _handle_sign_out(runtime: Runtime) -> None:
    runtime.orchestrator.sign_out()
    LOGGER.info("Signed out; pending changes discarded")


def main() -> None:
    """Entry point for the bookmark sync CLI."""
    load_dotenv()
    args = _parse_args()
    configure_logging(verbose=args.verbose)

    if args.mode in URL_MODES - {"add"}:  # Early dispatch: no state needed
        _handle_url_helper(args.mode, args.url)
        return

    runtime = _build_runtime(SyncSettings.from_env(args.state_file))
    if args.mode == "add":
        _handle_add(runtime, args.url, args.title)
    elif args.mode == "sync":
        _handle_sync(runtime)
    elif args.mode == "import-shared":
        imported = runtime.orchestrator.import_shared_bookmarks(runtime.storage)
        LOGGER.info("Imported %d shared bookmark(s)", len(imported))
    elif args.mode == "sign-out":
        _handle_sign_out(runtime)
    else:
        _handle_status(runtime)


if __name__ == "__main__":
    main()
