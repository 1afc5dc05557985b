"""Turns a finished batch run into an outcome the caller can act on."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dealdocs.services.models import ItemStatus, PendingUploadItem, UploadedFileRecord


class OutcomeKind(Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL = "partial"
    ALL_FAILED = "all_failed"
    NOTHING_UPLOADED = "nothing_uploaded"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


@dataclass(frozen=True)
class UploadOutcome:
    """Result of one batch run.

    ``success_count`` covers this run only; ``error_count`` covers every item
    still in error across the whole batch, including earlier runs.
    """

    kind: OutcomeKind
    success_count: int
    error_count: int
    records: tuple[UploadedFileRecord, ...] = field(default_factory=tuple)

    @property
    def should_close(self) -> bool:
        return self.kind == OutcomeKind.ALL_SUCCEEDED

    @property
    def message(self) -> str:
        if self.kind == OutcomeKind.ALL_SUCCEEDED:
            return f"Uploaded {_plural(self.success_count, 'file')}"
        if self.kind == OutcomeKind.PARTIAL:
            return (
                f"Uploaded {_plural(self.success_count, 'file')}, "
                f"{self.error_count} failed"
            )
        if self.kind == OutcomeKind.ALL_FAILED:
            return f"Failed to upload {_plural(self.error_count, 'file')}"
        return "No files to upload"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "should_close": self.should_close,
            "message": self.message,
            "records": [r.to_dict() for r in self.records],
        }


def summarize(
    run_records: Sequence[UploadedFileRecord],
    batch_items: Sequence[PendingUploadItem],
) -> UploadOutcome:
    """Classify a run from its records and the batch's current items."""
    error_count = sum(1 for item in batch_items if item.status == ItemStatus.ERROR)
    success_count = len(run_records)

    if success_count and not error_count:
        kind = OutcomeKind.ALL_SUCCEEDED
    elif success_count:
        kind = OutcomeKind.PARTIAL
    elif error_count:
        kind = OutcomeKind.ALL_FAILED
    else:
        kind = OutcomeKind.NOTHING_UPLOADED

    return UploadOutcome(
        kind=kind,
        success_count=success_count,
        error_count=error_count,
        records=tuple(run_records),
    )
