"""Data model shared by the batch upload pipeline."""

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from dealdocs.services.utils import format_file_size, guess_mime_type

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ItemStatus(Enum):
    """Status of a single item in an upload batch."""

    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"


# success is terminal; error may only go back to uploading on retry
_ALLOWED_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.UPLOADING}),
    ItemStatus.UPLOADING: frozenset({ItemStatus.SUCCESS, ItemStatus.ERROR}),
    ItemStatus.ERROR: frozenset({ItemStatus.UPLOADING}),
    ItemStatus.SUCCESS: frozenset(),
}


class InvalidStatusTransition(ValueError):
    """Raised when an item status change skips or reverses a step."""

    def __init__(self, current: ItemStatus, target: ItemStatus) -> None:
        super().__init__(f"Cannot move upload item from {current.value} to {target.value}")
        self.current = current
        self.target = target


def can_transition(current: ItemStatus, target: ItemStatus) -> bool:
    """Check whether an item may move from one status to another."""
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class SourceFile:
    """A file on local disk waiting to be uploaded."""

    path: str
    name: str
    size: int
    mime_type: str = ""

    @classmethod
    def from_path(cls, path: str | Path, name: str | None = None) -> "SourceFile":
        """Build a SourceFile by stat-ing a local path."""
        file_path = Path(path)
        display_name = name or file_path.name
        return cls(
            path=str(file_path.absolute()),
            name=display_name,
            size=file_path.stat().st_size,
            mime_type=guess_mime_type(display_name),
        )

    @property
    def content_type(self) -> str:
        """MIME type to send on the wire."""
        return self.mime_type or DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class PendingUploadItem:
    """One admitted file in a batch.

    Items are immutable; the batch replaces its whole item list whenever one
    of them changes.
    """

    source: SourceFile
    relative_path: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: ItemStatus = ItemStatus.PENDING
    progress: int = 0
    error: str | None = None
    remote_object_path: str | None = None

    @property
    def filename(self) -> str:
        return self.source.name

    def with_status(self, status: ItemStatus, **changes: Any) -> "PendingUploadItem":
        """Return a copy moved to a new status.

        Raises:
            InvalidStatusTransition: If the move is not allowed
        """
        if status != self.status and not can_transition(self.status, status):
            raise InvalidStatusTransition(self.status, status)
        return replace(self, status=status, **changes)

    def with_progress(self, progress: int) -> "PendingUploadItem":
        return replace(self, progress=max(0, min(100, progress)))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "filename": self.source.name,
            "relative_path": self.relative_path,
            "size": self.source.size,
            "size_formatted": format_file_size(self.source.size),
            "mime_type": self.source.mime_type,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "remote_object_path": self.remote_object_path,
        }


@dataclass(frozen=True)
class UploadedFileRecord:
    """Durable result of one successful upload, handed to the caller."""

    id: str
    filename: str
    object_path: str
    size: int
    mime_type: str
    relative_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "objectPath": self.object_path,
            "size": self.size,
            "type": self.mime_type,
            "relativePath": self.relative_path,
        }
