"""Batch controller for resumable, concurrency-bounded uploads."""

import logging
import shutil
import tempfile
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dealdocs.config import get_settings
from dealdocs.services import s3_service
from dealdocs.services.admission import AdmissionPolicy, AdmissionResult, admit
from dealdocs.services.aggregator import UploadOutcome, summarize
from dealdocs.services.backend_client import BackendClient, create_backend_client
from dealdocs.services.collector import FileCandidate
from dealdocs.services.executor import BoundedExecutor
from dealdocs.services.log_service import get_log_service
from dealdocs.services.models import ItemStatus, PendingUploadItem, UploadedFileRecord
from dealdocs.services.session_events import SessionExpiredSignal, get_session_signal
from dealdocs.services.upload_strategy import FileUploader
from dealdocs.services.utils import format_file_size

logger = logging.getLogger(__name__)

RecordsCallback = Callable[[list[UploadedFileRecord]], None]
ErrorCallback = Callable[["UploadBatchError"], None]
ProgressCallback = Callable[["UploadBatch"], None]


class BatchBusyError(Exception):
    """The batch is already uploading and refuses changes until it finishes."""


class UploadBatchError(Exception):
    """Every file attempted in a run failed."""

    def __init__(self, outcome: UploadOutcome) -> None:
        super().__init__(outcome.message)
        self.outcome = outcome


def default_policy() -> AdmissionPolicy:
    """Admission limits from application settings."""
    settings = get_settings()
    return AdmissionPolicy(
        max_number_of_files=settings.max_number_of_files,
        max_file_size=settings.max_file_size,
        allowed_file_types=tuple(settings.allowed_file_types),
    )


@dataclass
class UploadBatch:
    """One upload dialog's worth of files.

    ``items`` is never mutated in place: every change builds a new tuple and
    swaps it in under ``lock``.
    """

    batch_id: str
    policy: AdmissionPolicy = field(default_factory=AdmissionPolicy)
    items: tuple[PendingUploadItem, ...] = ()
    is_uploading: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    temp_dir: str | None = None
    uploaded: list[UploadedFileRecord] = field(default_factory=list)
    last_outcome: UploadOutcome | None = None
    dismissed: bool = False
    close_timer: threading.Timer | None = field(default=None, repr=False)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def _count(self, status: ItemStatus) -> int:
        return sum(1 for item in self.items if item.status == status)

    @property
    def pending_count(self) -> int:
        return self._count(ItemStatus.PENDING)

    @property
    def uploading_count(self) -> int:
        return self._count(ItemStatus.UPLOADING)

    @property
    def success_count(self) -> int:
        return self._count(ItemStatus.SUCCESS)

    @property
    def error_count(self) -> int:
        return self._count(ItemStatus.ERROR)

    @property
    def total_bytes(self) -> int:
        return sum(item.source.size for item in self.items)

    @property
    def progress_percent(self) -> float:
        """Overall progress, weighted by file size."""
        total = self.total_bytes
        if total == 0:
            return 0.0
        done = sum(item.source.size * item.progress / 100 for item in self.items)
        return round(done / total * 100, 1)

    def get_item(self, item_id: str) -> PendingUploadItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def to_progress_dict(self) -> dict[str, Any]:
        """Lightweight dict for SSE progress events."""
        return {
            "batch_id": self.batch_id,
            "is_uploading": self.is_uploading,
            "progress_percent": self.progress_percent,
            "total_files": len(self.items),
            "files_pending": self.pending_count,
            "files_uploading": self.uploading_count,
            "files_succeeded": self.success_count,
            "files_failed": self.error_count,
            "items": [item.to_dict() for item in self.items],
            "outcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            **self.to_progress_dict(),
            "policy": self.policy.to_dict(),
            "total_bytes": self.total_bytes,
            "total_bytes_formatted": format_file_size(self.total_bytes),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "uploaded": [record.to_dict() for record in self.uploaded],
            "dismissed": self.dismissed,
        }


class UploadManager:
    """Owns upload batches and runs their uploads."""

    def __init__(
        self,
        max_workers: int = 4,
        client_factory: Callable[[], BackendClient] | None = None,
        session_signal: SessionExpiredSignal | None = None,
        auto_close_delay: float | None = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.batches: dict[str, UploadBatch] = {}
        self.max_workers = max_workers
        self.client_factory = client_factory or (lambda: create_backend_client(get_settings()))
        self.session_signal = session_signal or get_session_signal()
        self.auto_close_delay = auto_close_delay
        self.sleep = sleep
        self._lock = threading.Lock()

    def create_batch(
        self, policy: AdmissionPolicy | None = None, temp_dir: str | None = None
    ) -> UploadBatch:
        """Create an empty batch with the given admission limits."""
        batch = UploadBatch(
            batch_id=str(uuid.uuid4()),
            policy=policy or default_policy(),
            temp_dir=temp_dir,
        )
        with self._lock:
            self.batches[batch.batch_id] = batch

        get_log_service().info(
            "batch",
            "batch_created",
            "Created upload batch",
            {"batch_id": batch.batch_id, "policy": batch.policy.to_dict()},
        )
        return batch

    def get_batch(self, batch_id: str) -> UploadBatch | None:
        """Get a batch by ID."""
        return self.batches.get(batch_id)

    def ensure_temp_dir(self, batch: UploadBatch) -> str:
        """Return the batch's spool directory, creating it on first use."""
        with batch.lock:
            if not batch.temp_dir:
                batch.temp_dir = tempfile.mkdtemp(prefix="dealdocs_upload_")
            return batch.temp_dir

    def add_files(self, batch_id: str, candidates: Sequence[FileCandidate]) -> AdmissionResult | None:
        """Run candidates through admission and append the admitted items.

        Returns:
            The admission result, or None if the batch does not exist

        Raises:
            BatchBusyError: If the batch is uploading
        """
        batch = self.get_batch(batch_id)
        if not batch:
            return None

        with batch.lock:
            if batch.is_uploading:
                raise BatchBusyError("Cannot add files while an upload is in progress")
            if batch.close_timer:
                batch.close_timer.cancel()
                batch.close_timer = None
            result = admit(candidates, len(batch.items), batch.policy)
            batch.items = batch.items + tuple(result.admitted)

        log = get_log_service()
        log.info(
            "batch",
            "files_admitted",
            f"Admitted {len(result.admitted)} of {len(candidates)} files",
            {
                "batch_id": batch_id,
                "admitted": len(result.admitted),
                "offered": len(candidates),
                "notices": [notice.message for notice in result.notices],
            },
        )
        return result

    def remove_item(self, batch_id: str, item_id: str) -> bool:
        """Remove a pending or failed item.

        Returns:
            True if the item was removed

        Raises:
            BatchBusyError: If the batch is uploading
        """
        batch = self.get_batch(batch_id)
        if not batch:
            return False

        with batch.lock:
            if batch.is_uploading:
                raise BatchBusyError("Cannot remove files while an upload is in progress")
            item = batch.get_item(item_id)
            if not item or item.status not in (ItemStatus.PENDING, ItemStatus.ERROR):
                return False
            batch.items = tuple(i for i in batch.items if i.id != item_id)
        return True

    def dismiss_batch(self, batch_id: str) -> bool:
        """Close a batch and drop its spooled files.

        Does nothing while the batch is uploading.

        Returns:
            True if the batch was dismissed
        """
        batch = self.get_batch(batch_id)
        if not batch:
            return False

        with batch.lock:
            if batch.is_uploading:
                return False
            batch.dismissed = True
            if batch.close_timer:
                batch.close_timer.cancel()
                batch.close_timer = None

        with self._lock:
            self.batches.pop(batch_id, None)
        self.cleanup_temp_dir(batch)

        get_log_service().info(
            "batch",
            "batch_dismissed",
            "Upload batch dismissed",
            {"batch_id": batch_id, "uploaded": len(batch.uploaded)},
        )
        return True

    def cleanup_temp_dir(self, batch: UploadBatch) -> bool:
        """Remove the batch's spool directory if it has one."""
        if not batch.temp_dir:
            return False

        temp_path = Path(batch.temp_dir)
        if temp_path.exists() and temp_path.is_dir():
            try:
                shutil.rmtree(temp_path)
                batch.temp_dir = None
                return True
            except OSError:
                logger.warning("Failed to clean up temp dir: %s", temp_path, exc_info=True)
        return False

    def _update_item(
        self,
        batch: UploadBatch,
        item_id: str,
        change: Callable[[PendingUploadItem], PendingUploadItem],
    ) -> PendingUploadItem | None:
        """Replace one item via ``change``, swapping in a whole new item tuple."""
        with batch.lock:
            updated: PendingUploadItem | None = None
            items: list[PendingUploadItem] = []
            for item in batch.items:
                if item.id == item_id:
                    updated = change(item)
                    items.append(updated)
                else:
                    items.append(item)
            batch.items = tuple(items)
        return updated

    def _claim(
        self, batch_id: str, statuses: set[ItemStatus], item_id: str | None
    ) -> tuple[UploadBatch, list[str]] | None:
        """Mark the batch as uploading and pick the items this run will handle."""
        batch = self.get_batch(batch_id)
        if not batch:
            return None

        with batch.lock:
            if batch.is_uploading:
                raise BatchBusyError("An upload is already in progress for this batch")
            if item_id is not None:
                item = batch.get_item(item_id)
                if not item:
                    return None
                if item.status not in statuses:
                    raise ValueError(f"Item is {item.status.value}, only failed items can be retried")
                item_ids = [item_id]
            else:
                item_ids = [item.id for item in batch.items if item.status in statuses]
            batch.is_uploading = True
            batch.started_at = datetime.now(UTC)
            batch.completed_at = None
            if batch.close_timer:
                batch.close_timer.cancel()
                batch.close_timer = None
        return batch, item_ids

    def _dispatch(
        self,
        claimed: tuple[UploadBatch, list[str]] | None,
        on_complete: RecordsCallback | None,
        on_error: ErrorCallback | None,
        progress_callback: ProgressCallback | None,
        background: bool,
    ) -> UploadOutcome | None:
        if claimed is None:
            return None
        batch, item_ids = claimed
        if not background:
            return self._run(batch, item_ids, on_complete, on_error, progress_callback)

        def runner() -> None:
            try:
                self._run(batch, item_ids, on_complete, on_error, progress_callback)
            except Exception:
                logger.exception("Batch run %s failed", batch.batch_id)

        threading.Thread(target=runner, daemon=True).start()
        return None

    def start_upload(
        self,
        batch_id: str,
        on_complete: RecordsCallback | None = None,
        on_error: ErrorCallback | None = None,
        progress_callback: ProgressCallback | None = None,
        background: bool = False,
    ) -> UploadOutcome | None:
        """Upload every pending item in a batch.

        Args:
            batch_id: The batch to upload
            on_complete: Called with this run's records when at least one succeeded
            on_error: Called when nothing in this run succeeded and items failed
            progress_callback: Called after every item state change
            background: Claim the batch now and run in a daemon thread

        Returns:
            The run outcome, None if the batch was not found or running in background

        Raises:
            BatchBusyError: If the batch is already uploading
        """
        claimed = self._claim(batch_id, {ItemStatus.PENDING}, None)
        return self._dispatch(claimed, on_complete, on_error, progress_callback, background)

    def retry_failed(
        self,
        batch_id: str,
        on_complete: RecordsCallback | None = None,
        on_error: ErrorCallback | None = None,
        progress_callback: ProgressCallback | None = None,
        background: bool = False,
    ) -> UploadOutcome | None:
        """Re-run every failed item; succeeded items are left alone."""
        claimed = self._claim(batch_id, {ItemStatus.ERROR}, None)
        return self._dispatch(claimed, on_complete, on_error, progress_callback, background)

    def retry_item(
        self,
        batch_id: str,
        item_id: str,
        on_complete: RecordsCallback | None = None,
        on_error: ErrorCallback | None = None,
        progress_callback: ProgressCallback | None = None,
        background: bool = False,
    ) -> UploadOutcome | None:
        """Re-run a single failed item.

        Raises:
            BatchBusyError: If the batch is already uploading
            ValueError: If the item is not in error
        """
        claimed = self._claim(batch_id, {ItemStatus.ERROR}, item_id)
        return self._dispatch(claimed, on_complete, on_error, progress_callback, background)

    def _upload_item(
        self,
        batch: UploadBatch,
        item_id: str,
        uploader: FileUploader,
        notify: Callable[[], None],
    ) -> UploadedFileRecord | None:
        log = get_log_service()
        item = self._update_item(
            batch,
            item_id,
            lambda i: i.with_status(
                ItemStatus.UPLOADING, progress=0, error=None, remote_object_path=None
            ),
        )
        if item is None:
            return None
        notify()

        log.info(
            "upload",
            "file_upload_started",
            f"Uploading {item.filename}",
            {
                "batch_id": batch.batch_id,
                "item_id": item_id,
                "relative_path": item.relative_path,
                "size": item.source.size,
            },
        )

        def on_progress(percent: int) -> None:
            self._update_item(batch, item_id, lambda i: i.with_progress(percent))
            notify()

        result = uploader.upload(item, on_progress)

        if result.succeeded and result.record:
            self._update_item(
                batch,
                item_id,
                lambda i: i.with_status(
                    ItemStatus.SUCCESS, progress=100, remote_object_path=result.object_path
                ),
            )
            log.info(
                "upload",
                "file_upload_completed",
                f"Uploaded {item.filename}",
                {
                    "batch_id": batch.batch_id,
                    "item_id": item_id,
                    "relative_path": item.relative_path,
                    "object_path": result.object_path,
                    "path": [state.value for state in result.trail],
                },
            )
            notify()
            return result.record

        self._update_item(
            batch,
            item_id,
            lambda i: i.with_status(
                ItemStatus.ERROR, error=result.error, remote_object_path=result.object_path
            ),
        )
        log.error(
            "upload",
            "file_upload_failed",
            f"Failed to upload {item.filename}: {result.detail or result.error}",
            {
                "batch_id": batch.batch_id,
                "item_id": item_id,
                "relative_path": item.relative_path,
                "error": result.error,
                "detail": result.detail,
                "path": [state.value for state in result.trail],
            },
        )
        notify()
        return None

    def _run(
        self,
        batch: UploadBatch,
        item_ids: list[str],
        on_complete: RecordsCallback | None,
        on_error: ErrorCallback | None,
        progress_callback: ProgressCallback | None,
    ) -> UploadOutcome:
        log = get_log_service()
        batch_id = batch.batch_id

        def notify() -> None:
            if progress_callback:
                progress_callback(batch)

        log.info(
            "batch",
            "batch_upload_started",
            f"Uploading {len(item_ids)} files",
            {"batch_id": batch_id, "files": len(item_ids), "concurrency": self.max_workers},
        )

        try:
            uploader = FileUploader(self.client_factory(), self.session_signal, sleep=self.sleep)
            executor: BoundedExecutor[str, UploadedFileRecord] = BoundedExecutor(self.max_workers)
            records = executor.run(
                item_ids, lambda item_id: self._upload_item(batch, item_id, uploader, notify)
            )
            outcome = summarize(records, batch.items)
            with batch.lock:
                batch.uploaded.extend(records)
                batch.last_outcome = outcome
        finally:
            with batch.lock:
                batch.is_uploading = False
                batch.completed_at = datetime.now(UTC)

        # Terminal event first so listeners unblock before summary I/O
        notify()

        log.info(
            "batch",
            "batch_upload_completed",
            outcome.message,
            {
                "batch_id": batch_id,
                "outcome": outcome.kind.value,
                "succeeded": outcome.success_count,
                "failed": outcome.error_count,
            },
        )
        self._save_summaries(batch, outcome)

        if records and on_complete:
            try:
                on_complete(list(records))
            except Exception:
                logger.exception("on_complete callback failed for batch %s", batch_id)
        elif not records and outcome.error_count and on_error:
            try:
                on_error(UploadBatchError(outcome))
            except Exception:
                logger.exception("on_error callback failed for batch %s", batch_id)

        if outcome.should_close:
            self._schedule_close(batch)

        return outcome

    def _schedule_close(self, batch: UploadBatch) -> None:
        if self.auto_close_delay is None:
            return
        timer = threading.Timer(self.auto_close_delay, self.dismiss_batch, args=(batch.batch_id,))
        timer.daemon = True
        with batch.lock:
            batch.close_timer = timer
        timer.start()

    def _save_summaries(self, batch: UploadBatch, outcome: UploadOutcome) -> None:
        log = get_log_service()
        completed_at = batch.completed_at or datetime.now(UTC)
        items = [item.to_dict() for item in batch.items]

        try:
            log.save_batch_jsonl(
                batch.batch_id,
                {
                    "timestamp": completed_at.isoformat(),
                    "event": "batch_upload_completed",
                    "batch_id": batch.batch_id,
                    **outcome.to_dict(),
                    "items": items,
                },
                completed_at,
            )
        except OSError:
            logger.warning("Failed to save batch JSONL summary", exc_info=True)

        try:
            log.save_batch_csv(batch.batch_id, items, completed_at)
        except OSError:
            logger.warning("Failed to save batch CSV summary", exc_info=True)

        settings = get_settings()
        if settings.s3_bucket:
            try:
                s3_client = s3_service.create_s3_client(settings.aws_profile, settings.aws_region)
                log.sync_logs_to_s3(s3_client, settings.s3_bucket)
            except Exception:
                logger.debug("Log sync to S3 failed", exc_info=True)

    def upload_batch(
        self,
        candidates: Sequence[FileCandidate],
        policy: AdmissionPolicy | None = None,
        on_complete: RecordsCallback | None = None,
        on_error: ErrorCallback | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> UploadBatch:
        """Create a batch, admit the candidates and upload them, waiting for the result."""
        batch = self.create_batch(policy)
        self.add_files(batch.batch_id, candidates)
        self.start_upload(batch.batch_id, on_complete, on_error, progress_callback)
        return batch

    def get_active_batches(self) -> list[UploadBatch]:
        """Batches that are uploading or still hold unfinished items."""
        with self._lock:
            batches = list(self.batches.values())
        return [
            b for b in batches if b.is_uploading or b.pending_count or b.error_count
        ]

    def cleanup_old_batches(self, max_age_seconds: int = 3600) -> int:
        """Dismiss idle batches whose last run finished more than max_age_seconds ago.

        Returns:
            Number of batches removed
        """
        now = datetime.now(UTC)
        with self._lock:
            stale = [
                batch_id
                for batch_id, batch in self.batches.items()
                if batch.completed_at
                and not batch.is_uploading
                and (now - batch.completed_at).total_seconds() > max_age_seconds
            ]

        return sum(1 for batch_id in stale if self.dismiss_batch(batch_id))


_upload_manager: UploadManager | None = None


def get_upload_manager() -> UploadManager:
    """Get the global upload manager instance."""
    global _upload_manager
    if _upload_manager is None:
        settings = get_settings()
        _upload_manager = UploadManager(
            max_workers=settings.upload_concurrency,
            auto_close_delay=settings.auto_close_delay,
        )
    return _upload_manager
