"""Data models for the offline-first bookmark sync core."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Category(str, Enum):
    """Canonical category storage keys."""

    GENERAL = "general"
    X = "x"
    INSTAGRAM = "instagram"
    YOUTUBE = "youtube"
    ARTICLE = "article"
    VIDEO = "video"


# Display names stored by older releases, keyed by their lowercased form.
LEGACY_CATEGORY_ALIASES: dict[str, Category] = {
    "x (twitter)": Category.X,
    "twitter": Category.X,
}


def normalize_category(value: str | None) -> str:
    """Map a stored category value to its canonical key.

    Matching is case-insensitive; legacy display names ("X (Twitter)", "Twitter")
    map to the same key as the storage key. Unknown values fall back to
    ``general`` so a bookmark always carries one of the fixed keys.
    """
    normalized = (value or "").strip().lower()
    for category in Category:
        if normalized == category.value:
            return category.value
    legacy = LEGACY_CATEGORY_ALIASES.get(normalized)
    if legacy is not None:
        return legacy.value
    for category in Category:
        if normalized.startswith(category.value) and category is not Category.X:
            return category.value
    return Category.GENERAL.value


def normalize_tags(tags: Any) -> list[str]:
    """Lowercase and strip tags, dropping blanks and repeats while keeping order."""
    if not tags:
        return []
    seen: set[str] = set()
    cleaned: list[str] = []
    for raw in tags:
        tag = str(raw).strip().lower()
        if tag and tag not in seen:
            seen.add(tag)
            cleaned.append(tag)
    return cleaned


def _empty_str_list() -> list[str]:
    return []


@dataclass(slots=True)
class Bookmark:
    """A saved link as held by the local bookmark store."""

    title: str
    url: str
    notes: str = ""
    category: str = Category.GENERAL.value
    tags: list[str] = field(default_factory=_empty_str_list)
    is_read: bool = False
    is_favorite: bool = False
    thumbnail_url: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        self.url = self.url.strip()
        if not self.url:
            msg = "Bookmark url must be a non-empty string"
            raise ValueError(msg)
        self.category = normalize_category(self.category)
        self.tags = normalize_tags(self.tags)

    def snapshot(self) -> Bookmark:
        """Return a detached copy suitable for queuing."""
        return replace(self, tags=list(self.tags))

    def to_model(self) -> BookmarkPayloadModel:
        """Convert the bookmark into a serialisable pydantic model."""
        return BookmarkPayloadModel(
            id=self.id,
            title=self.title,
            url=self.url,
            notes=self.notes,
            category=self.category,
            tags=list(self.tags),
            is_read=self.is_read,
            is_favorite=self.is_favorite,
            thumbnail_url=self.thumbnail_url,
            created_at=self.created_at,
        )

    @classmethod
    def from_model(cls, model: BookmarkPayloadModel) -> Bookmark:
        """Create a bookmark from a validated pydantic model."""
        return cls(
            id=model.id,
            title=model.title,
            url=model.url,
            notes=model.notes,
            category=model.category,
            tags=list(model.tags),
            is_read=model.is_read,
            is_favorite=model.is_favorite,
            thumbnail_url=model.thumbnail_url,
            created_at=model.created_at,
        )


class BookmarkPayloadModel(BaseModel):
    """Pydantic model for a full bookmark snapshot."""

    id: UUID
    title: str = ""
    url: str
    notes: str = ""
    category: str = Category.GENERAL.value
    tags: list[str] = Field(default_factory=list)
    is_read: bool = False
    is_favorite: bool = False
    thumbnail_url: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("url")
    @classmethod
    def _require_url(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            msg = "url must not be empty"
            raise ValueError(msg)
        return stripped

    @field_validator("notes", "title", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("category", mode="before")
    @classmethod
    def _normalise_category(cls, value: object) -> str:
        return normalize_category(value if isinstance(value, str) else None)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalise_tags(cls, value: object) -> list[str]:
        return normalize_tags(value)

    @field_validator("created_at", mode="before")
    @classmethod
    def _default_created_at(cls, value: object) -> object:
        return utcnow() if value is None else value

    def to_remote_row(self, user_id: str) -> dict[str, object]:
        """Row shape of the hosted ``bookmarks`` table."""
        row = self.model_dump(mode="json")
        row["user_id"] = user_id
        return row

    @classmethod
    def from_remote_row(cls, row: dict[str, Any]) -> BookmarkPayloadModel:
        """Parse a ``bookmarks`` table row, ignoring columns the core does not track."""
        return cls.model_validate({k: v for k, v in row.items() if k in cls.model_fields})


class OperationType(str, Enum):
    """Kinds of mutation delivered to the remote store."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(slots=True)
class PendingOperation:
    """A queued mutation awaiting remote delivery.

    ``operation_id`` is the affected bookmark's id; the queue coalesces on it.
    Delete operations carry no payload.
    """

    type: OperationType
    operation_id: UUID
    payload: Bookmark | None = None
    enqueued_at: datetime = field(default_factory=utcnow)
    attempts: int = 0

    def __post_init__(self) -> None:
        if self.type is not OperationType.DELETE and self.payload is None:
            msg = f"{self.type.value} operation requires a bookmark payload"
            raise ValueError(msg)
        if self.type is OperationType.DELETE:
            self.payload = None

    @property
    def bookmark_id(self) -> UUID:
        return self.operation_id

    @classmethod
    def create(cls, bookmark: Bookmark) -> PendingOperation:
        return cls(OperationType.CREATE, bookmark.id, bookmark.snapshot())

    @classmethod
    def update(cls, bookmark: Bookmark) -> PendingOperation:
        return cls(OperationType.UPDATE, bookmark.id, bookmark.snapshot())

    @classmethod
    def delete(cls, bookmark_id: UUID) -> PendingOperation:
        return cls(OperationType.DELETE, bookmark_id)

    def to_model(self) -> PendingOperationModel:
        """Convert the operation into its persisted pydantic form."""
        return PendingOperationModel(
            operation_id=self.operation_id,
            type=self.type,
            payload=self.payload.to_model() if self.payload is not None else None,
            enqueued_at=self.enqueued_at,
            attempts=self.attempts,
        )

    @classmethod
    def from_model(cls, model: PendingOperationModel) -> PendingOperation:
        """Create an operation from a validated pydantic model."""
        payload = Bookmark.from_model(model.payload) if model.payload is not None else None
        return cls(
            type=model.type,
            operation_id=model.operation_id,
            payload=payload,
            enqueued_at=model.enqueued_at,
            attempts=model.attempts,
        )


class PendingOperationModel(BaseModel):
    """Persisted record of a pending operation."""

    model_config = ConfigDict(populate_by_name=True)

    operation_id: UUID = Field(alias="operationId")
    type: OperationType
    payload: BookmarkPayloadModel | None = None
    enqueued_at: datetime = Field(alias="enqueuedAt")
    attempts: int = 0

    @model_validator(mode="after")
    def _payload_matches_type(self) -> PendingOperationModel:
        if self.type is not OperationType.DELETE and self.payload is None:
            msg = f"{self.type.value} operation is missing its payload"
            raise ValueError(msg)
        return self


class PendingOperationListModel(RootModel[list[PendingOperationModel]]):
    """Root list model for the persisted queue (strict all-or-nothing validation)."""

    def to_operations(self) -> list[PendingOperation]:
        """Convert the root list of models into dataclass operations."""
        return [PendingOperation.from_model(m) for m in self.root]

    @classmethod
    def from_operations(cls, operations: list[PendingOperation]) -> PendingOperationListModel:
        return cls([op.to_model() for op in operations])


class BookmarkListModel(RootModel[list[BookmarkPayloadModel]]):
    """Root list model for a persisted bookmark collection."""

    def to_bookmarks(self) -> list[Bookmark]:
        return [Bookmark.from_model(m) for m in self.root]
