"""Global configuration constants for the bookmark sync core."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# Fixed storage key of the persisted pending-operation queue.
QUEUE_STORAGE_KEY: str = "pendingBookmarkOperations"

# Storage key of the local bookmark snapshot used by the persistent store.
BOOKMARKS_STORAGE_KEY: str = "bookmarks"

# Inbox written by the share extension, drained on the next app launch.
SHARED_BOOKMARKS_KEY: str = "pendingBookmarks"

# Map of dedupe key -> saved timestamp published for duplicate checks elsewhere.
SAVED_URLS_KEY: str = "savedBookmarkURLs"

DEFAULT_REQUEST_TIMEOUT: float = 8.0

# Failed replays per operation before the status reports a sync failure.
# Operations stay queued past this point; only the advisory changes.
MAX_DRAIN_FAILURES: int = 5

PREVIEW_WORKERS: int = 8

DEFAULT_STATE_FILE: str = "~/.mindshelf/state.json"


@dataclass(slots=True, frozen=True)
class SyncSettings:
    """Runtime settings resolved from the environment."""

    supabase_url: str | None
    supabase_key: str | None
    state_file: Path
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_drain_failures: int = MAX_DRAIN_FAILURES

    @property
    def has_backend(self) -> bool:
        """Whether credentials for the hosted backend are configured."""
        return bool(self.supabase_url and self.supabase_key)

    @classmethod
    def from_env(cls, state_file: str | None = None) -> SyncSettings:
        """Build settings from environment variables.

        ``state_file`` overrides ``MINDSHELF_STATE_FILE`` when given.
        """
        raw_state = state_file or os.getenv("MINDSHELF_STATE_FILE") or DEFAULT_STATE_FILE
        return cls(
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_key=os.getenv("SUPABASE_ANON_KEY") or None,
            state_file=Path(raw_state).expanduser(),
            request_timeout=float(
                os.getenv("MINDSHELF_REQUEST_TIMEOUT", str(DEFAULT_REQUEST_TIMEOUT)),
            ),
            max_drain_failures=int(
                os.getenv("MINDSHELF_MAX_DRAIN_FAILURES", str(MAX_DRAIN_FAILURES)),
            ),
        )
