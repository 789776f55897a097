"""Remote sync client contract and its hosted-backend implementation.

The sync core only relies on :class:`RemoteSyncClient`. Clients never retry;
they raise a :class:`RemoteSyncError` subclass and leave retry policy to the
queue and orchestrator.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Protocol

import requests
from pydantic import ValidationError

from .config import DEFAULT_REQUEST_TIMEOUT
from .models import Bookmark, BookmarkPayloadModel

if TYPE_CHECKING:  # pragma: no cover
    from uuid import UUID

LOGGER = logging.getLogger(__name__)

BOOKMARKS_PATH = "/rest/v1/bookmarks"

# Seconds of slack before token expiry at which the session counts as gone.
_EXPIRY_MARGIN = 30.0

_NO_BACKEND = "No backend configured"


class RemoteSyncError(RuntimeError):
    """Base class for failures reported by a remote sync client."""

    retryable: bool = True


class TransientRemoteError(RemoteSyncError):
    """Network failure, timeout, server error or missing session."""


class PermanentRemoteError(RemoteSyncError):
    """The backend refused the request in a way retrying will not fix."""

    retryable = False


class RemoteNotFoundError(RemoteSyncError):
    """The targeted bookmark does not exist remotely."""

    retryable = False


class RemoteConflictError(RemoteSyncError):
    """The bookmark being created already exists remotely."""

    retryable = False


class RemoteSyncClient(Protocol):
    """Request/response interface to the hosted bookmark store."""

    def has_active_session(self) -> bool: ...

    def sign_out(self) -> None: ...

    def create_bookmark(self, bookmark: Bookmark) -> None: ...

    def update_bookmark(self, bookmark_id: UUID, bookmark: Bookmark) -> None: ...

    def delete_bookmark(self, bookmark_id: UUID) -> None: ...

    def list_bookmarks(self, user_id: str) -> list[Bookmark]: ...


class OfflineSyncClient:
    """Client used when no backend is configured; it never has a session."""

    def has_active_session(self) -> bool:
        return False

    def sign_out(self) -> None:
        """Nothing to revoke without a backend."""

    def create_bookmark(self, bookmark: Bookmark) -> None:
        raise TransientRemoteError(_NO_BACKEND)

    def update_bookmark(self, bookmark_id: UUID, bookmark: Bookmark) -> None:
        raise TransientRemoteError(_NO_BACKEND)

    def delete_bookmark(self, bookmark_id: UUID) -> None:
        raise TransientRemoteError(_NO_BACKEND)

    def list_bookmarks(self, user_id: str) -> list[Bookmark]:
        raise TransientRemoteError(_NO_BACKEND)


class SupabaseSyncClient:
    """Hosted backend client speaking the auth and REST endpoints over requests."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialise the client.

        Args:
            base_url: Project URL, e.g. ``https://xyz.supabase.co``.
            api_key: Public (anon) API key sent with every request.
            session: Optional pre-configured session (tests inject fakes here).
            timeout: Per-request timeout in seconds.

        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session or requests.Session()
        self._session.headers.update({"apikey": api_key, "Accept": "application/json"})
        self._timeout = timeout
        self._access_token: str | None = None
        self._expires_at: float | None = None
        self.user_id: str | None = None

    # Auth --------------------------------------------------------------------------------

    def sign_in(self, email: str, password: str) -> str:
        """Exchange credentials for an access token and return the user id."""
        data = self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            authorised=False,
        )
        if not isinstance(data, dict) or "access_token" not in data:
            msg = "Sign-in response did not include an access token"
            raise PermanentRemoteError(msg)
        self._access_token = str(data["access_token"])
        expires_in = data.get("expires_in")
        self._expires_at = time.time() + float(expires_in) if expires_in else None
        user = data.get("user") or {}
        self.user_id = str(user.get("id")) if user.get("id") else None
        LOGGER.info("Signed in as %s", self.user_id or email)
        return self.user_id or ""

    def sign_out(self) -> None:
        """Revoke the current token; local session state is dropped regardless."""
        if self._access_token is None:
            return
        try:
            self._request("POST", "/auth/v1/logout")
        except RemoteSyncError as exc:
            LOGGER.warning("Remote sign-out failed (%s); dropping local session anyway", exc)
        finally:
            self._access_token = None
            self._expires_at = None
            self.user_id = None

    def has_active_session(self) -> bool:
        if self._access_token is None or self.user_id is None:
            return False
        if self._expires_at is None:
            return True
        return time.time() < self._expires_at - _EXPIRY_MARGIN

    # Bookmarks ---------------------------------------------------------------------------

    def create_bookmark(self, bookmark: Bookmark) -> None:
        row = bookmark.to_model().to_remote_row(self._require_user())
        self._request("POST", BOOKMARKS_PATH, json=row, headers={"Prefer": "return=minimal"})

    def update_bookmark(self, bookmark_id: UUID, bookmark: Bookmark) -> None:
        row = bookmark.to_model().to_remote_row(self._require_user())
        row.pop("id", None)
        rows = self._request(
            "PATCH",
            BOOKMARKS_PATH,
            params={"id": f"eq.{bookmark_id}"},
            json=row,
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            msg = f"Bookmark {bookmark_id} not found remotely"
            raise RemoteNotFoundError(msg)

    def delete_bookmark(self, bookmark_id: UUID) -> None:
        self._require_user()
        rows = self._request(
            "DELETE",
            BOOKMARKS_PATH,
            params={"id": f"eq.{bookmark_id}"},
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            msg = f"Bookmark {bookmark_id} not found remotely"
            raise RemoteNotFoundError(msg)

    def list_bookmarks(self, user_id: str) -> list[Bookmark]:
        rows = self._request(
            "GET",
            BOOKMARKS_PATH,
            params={"select": "*", "user_id": f"eq.{user_id}", "order": "created_at.desc"},
        )
        bookmarks: list[Bookmark] = []
        for row in rows or []:
            try:
                bookmarks.append(Bookmark.from_model(BookmarkPayloadModel.from_remote_row(row)))
            except (ValidationError, ValueError) as exc:
                LOGGER.warning("Skipping malformed remote bookmark row %r: %s", row.get("id"), exc)
        return bookmarks

    # Transport ---------------------------------------------------------------------------

    def _require_user(self) -> str:
        if not self.has_active_session() or self.user_id is None:
            msg = "No authenticated session"
            raise TransientRemoteError(msg)
        return self.user_id

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: object | None = None,
        headers: dict[str, str] | None = None,
        authorised: bool = True,
    ) -> Any:
        request_headers = dict(headers or {})
        if authorised and self._access_token:
            request_headers["Authorization"] = f"Bearer {self._access_token}"
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json,
                headers=request_headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            msg = f"{method} {path} failed: {exc}"
            raise TransientRemoteError(msg) from exc

        _raise_for_status(method, path, response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            LOGGER.debug("Non-JSON response body for %s %s", method, path)
            return None


def _raise_for_status(method: str, path: str, response: requests.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    msg = f"{method} {path} returned HTTP {status}"
    if status == 404:
        raise RemoteNotFoundError(msg)
    if status == 409:
        raise RemoteConflictError(msg)
    if status == 429 or status >= 500:
        raise TransientRemoteError(msg)
    raise PermanentRemoteError(msg)
