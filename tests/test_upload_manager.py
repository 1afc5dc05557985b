"""Tests for the batch upload manager."""

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from dealdocs.services.admission import AdmissionPolicy
from dealdocs.services.aggregator import OutcomeKind
from dealdocs.services.backend_client import BackendError, ErrorKind, SessionExpiredError
from dealdocs.services.collector import from_file_selection
from dealdocs.services.log_service import get_log_service
from dealdocs.services.models import ItemStatus
from dealdocs.services.session_events import SessionExpiredSignal
from dealdocs.services.upload_manager import (
    BatchBusyError,
    UploadBatch,
    UploadBatchError,
    UploadManager,
    get_upload_manager,
)
from dealdocs.services.upload_strategy import SESSION_EXPIRED_MESSAGE


STORAGE_REFUSED = "The upload link was refused by storage. Retry to get a new one."


def _forbidden() -> BackendError:
    return BackendError("Upload failed with status 403", 403, ErrorKind.TRANSPORT)


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def signal() -> SessionExpiredSignal:
    return SessionExpiredSignal()


@pytest.fixture
def manager(fake_backend: Any, signal: SessionExpiredSignal) -> UploadManager:
    """Manager wired to the fake backend, with no sleeping and no auto-close."""
    return UploadManager(
        max_workers=4,
        client_factory=lambda: fake_backend,
        session_signal=signal,
        auto_close_delay=None,
        sleep=lambda seconds: None,
    )


def _batch_with_files(manager: UploadManager, paths: list[Path], **policy: Any) -> UploadBatch:
    batch = manager.create_batch(AdmissionPolicy(**policy))
    manager.add_files(batch.batch_id, from_file_selection(paths))
    return batch


class TestBatchEditing:
    """Tests for adding and removing items."""

    def test_add_files_appends_pending_items(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(3))

        assert len(batch.items) == 3
        assert batch.pending_count == 3

    def test_add_files_respects_capacity(self, manager: UploadManager, make_files) -> None:
        batch = manager.create_batch(AdmissionPolicy(max_number_of_files=2))
        result = manager.add_files(batch.batch_id, from_file_selection(make_files(3)))

        assert result is not None
        assert len(result.admitted) == 2
        assert len(batch.items) == 2
        assert [n.kind for n in result.notices] == ["capacity"]

    def test_add_files_unknown_batch(self, manager: UploadManager) -> None:
        assert manager.add_files("missing", []) is None

    def test_items_replaced_not_mutated(self, manager: UploadManager, make_files) -> None:
        paths = make_files(2)
        batch = _batch_with_files(manager, paths[:1])
        before = batch.items
        manager.add_files(batch.batch_id, from_file_selection(paths[1:]))

        assert len(before) == 1
        assert len(batch.items) == 2

    def test_remove_pending_item(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(2))
        item_id = batch.items[0].id

        assert manager.remove_item(batch.batch_id, item_id) is True
        assert batch.get_item(item_id) is None

    def test_succeeded_item_not_removable(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(1))
        manager.start_upload(batch.batch_id)

        assert manager.remove_item(batch.batch_id, batch.items[0].id) is False


class TestStartUpload:
    """Tests for running a batch."""

    def test_all_files_succeed(self, manager: UploadManager, make_files) -> None:
        on_complete = MagicMock()
        on_error = MagicMock()
        batch = _batch_with_files(manager, make_files(5))

        outcome = manager.start_upload(batch.batch_id, on_complete, on_error)

        assert outcome is not None
        assert outcome.kind == OutcomeKind.ALL_SUCCEEDED
        assert batch.success_count == 5
        assert all(item.progress == 100 for item in batch.items)
        assert all(item.remote_object_path for item in batch.items)
        assert not batch.is_uploading
        assert len(on_complete.call_args[0][0]) == 5
        on_error.assert_not_called()

    def test_concurrency_bound(self, manager: UploadManager, fake_backend: Any, make_files) -> None:
        """Five 10MB-style files with four workers never have five in flight."""
        fake_backend.put_delay = 0.05
        max_uploading = 0

        def on_progress(batch: UploadBatch) -> None:
            nonlocal max_uploading
            max_uploading = max(max_uploading, batch.uploading_count)

        batch = _batch_with_files(manager, make_files(5))
        manager.start_upload(batch.batch_id, progress_callback=on_progress)

        assert fake_backend.max_active <= 4
        assert max_uploading <= 4
        assert batch.success_count == 5

    def test_partial_failure_keeps_dialog_open(
        self, manager: UploadManager, fake_backend: Any, make_files
    ) -> None:
        """Seven successes and three terminal failures: on_complete gets the seven."""
        paths = make_files(10)
        for path in paths[7:]:
            fake_backend.put_errors[path.name] = _forbidden()
        on_complete = MagicMock()
        on_error = MagicMock()
        batch = _batch_with_files(manager, paths)

        outcome = manager.start_upload(batch.batch_id, on_complete, on_error)

        assert outcome is not None
        assert outcome.kind == OutcomeKind.PARTIAL
        assert not outcome.should_close
        assert outcome.message == "Uploaded 7 files, 3 failed"
        records = on_complete.call_args[0][0]
        assert sorted(r.filename for r in records) == sorted(p.name for p in paths[:7])
        on_error.assert_not_called()
        assert batch.error_count == 3
        assert all(
            item.error == STORAGE_REFUSED
            for item in batch.items
            if item.status == ItemStatus.ERROR
        )
        # The raw status text is kept for the log only
        failures = get_log_service().read_log_entries(level="error", search="file_upload_failed")
        details = {entry["metadata"]["detail"] for entry in failures["entries"]}
        assert details == {"Upload failed with status 403"}

    def test_all_failed_calls_on_error(
        self, manager: UploadManager, fake_backend: Any, make_files
    ) -> None:
        paths = make_files(2)
        for path in paths:
            fake_backend.put_errors[path.name] = _forbidden()
        on_complete = MagicMock()
        on_error = MagicMock()
        batch = _batch_with_files(manager, paths)

        manager.start_upload(batch.batch_id, on_complete, on_error)

        on_complete.assert_not_called()
        error = on_error.call_args[0][0]
        assert isinstance(error, UploadBatchError)
        assert error.outcome.kind == OutcomeKind.ALL_FAILED
        assert str(error) == "Failed to upload 2 files"

    def test_callback_failure_does_not_break_run(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(1))
        outcome = manager.start_upload(batch.batch_id, on_complete=MagicMock(side_effect=RuntimeError))

        assert outcome is not None
        assert outcome.kind == OutcomeKind.ALL_SUCCEEDED

    def test_session_expiry_fires_once_for_batch(
        self, manager: UploadManager, fake_backend: Any, signal: SessionExpiredSignal, make_files
    ) -> None:
        paths = make_files(3)
        for path in paths:
            fake_backend.slot_errors[path.name] = [SessionExpiredError()]
        listener = MagicMock()
        signal.subscribe(listener)
        batch = _batch_with_files(manager, paths)

        manager.start_upload(batch.batch_id)

        listener.assert_called_once()
        assert fake_backend.count("slot") == 3
        assert fake_backend.count("multipart") == 0
        assert all(item.error == SESSION_EXPIRED_MESSAGE for item in batch.items)

    def test_unavailable_storage_uses_fallback(
        self, manager: UploadManager, fake_backend: Any, make_files
    ) -> None:
        paths = make_files(1)
        fake_backend.slot_errors[paths[0].name] = [
            BackendError("503", 503, ErrorKind.INFRA_UNAVAILABLE) for _ in range(3)
        ]
        batch = _batch_with_files(manager, paths)

        outcome = manager.start_upload(batch.batch_id)

        assert outcome is not None
        assert outcome.kind == OutcomeKind.ALL_SUCCEEDED
        assert batch.items[0].remote_object_path == f"/uploads/0000-{paths[0].name}"
        assert batch.uploaded[0].id == f"srv-{paths[0].name}"

    def test_run_writes_summaries(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(2))
        manager.start_upload(batch.batch_id)

        files = get_log_service().list_log_files()
        assert any(f["type"] == "csv" for f in files)
        assert any(f["filename"] == f"batch-{batch.batch_id}.jsonl" for f in files)
        events = get_log_service().read_log_entries(category="upload")["entries"]
        assert sum(1 for e in events if e["event"] == "file_upload_completed") == 2

    def test_unknown_batch(self, manager: UploadManager) -> None:
        assert manager.start_upload("missing") is None


class TestRetry:
    """Tests for retrying failed items."""

    def test_retry_failed_only_touches_errors(
        self, manager: UploadManager, fake_backend: Any, make_files
    ) -> None:
        paths = make_files(4)
        fake_backend.put_errors[paths[3].name] = _forbidden()
        batch = _batch_with_files(manager, paths)
        manager.start_upload(batch.batch_id)

        fake_backend.put_errors.clear()
        on_complete = MagicMock()
        outcome = manager.retry_failed(batch.batch_id, on_complete)

        assert outcome is not None
        assert outcome.kind == OutcomeKind.ALL_SUCCEEDED
        assert outcome.success_count == 1
        assert batch.success_count == 4
        assert fake_backend.count("slot", paths[0].name) == 1
        assert fake_backend.count("slot", paths[3].name) == 2
        assert [r.filename for r in on_complete.call_args[0][0]] == [paths[3].name]

    def test_retry_with_nothing_failed_is_noop(
        self, manager: UploadManager, fake_backend: Any, make_files
    ) -> None:
        batch = _batch_with_files(manager, make_files(2))
        manager.start_upload(batch.batch_id)
        calls_before = len(fake_backend.calls)
        on_complete = MagicMock()
        on_error = MagicMock()

        outcome = manager.retry_failed(batch.batch_id, on_complete, on_error)

        assert outcome is not None
        assert outcome.kind == OutcomeKind.NOTHING_UPLOADED
        assert len(fake_backend.calls) == calls_before
        on_complete.assert_not_called()
        on_error.assert_not_called()

    def test_retry_item(self, manager: UploadManager, fake_backend: Any, make_files) -> None:
        paths = make_files(2)
        for path in paths:
            fake_backend.put_errors[path.name] = _forbidden()
        batch = _batch_with_files(manager, paths)
        manager.start_upload(batch.batch_id)

        fake_backend.put_errors.clear()
        target = batch.items[0]
        outcome = manager.retry_item(batch.batch_id, target.id)

        assert outcome is not None
        assert outcome.kind == OutcomeKind.PARTIAL
        assert batch.get_item(target.id).status == ItemStatus.SUCCESS
        assert batch.items[1].status == ItemStatus.ERROR

    def test_retry_item_requires_error_status(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(1))

        with pytest.raises(ValueError):
            manager.retry_item(batch.batch_id, batch.items[0].id)
        assert not batch.is_uploading


class TestBusyBatch:
    """Tests for the uploading lock-out."""

    def test_busy_batch_refuses_changes(
        self, manager: UploadManager, fake_backend: Any, make_files
    ) -> None:
        fake_backend.put_delay = 0.3
        paths = make_files(3)
        batch = _batch_with_files(manager, paths[:2])

        manager.start_upload(batch.batch_id, background=True)

        assert batch.is_uploading
        with pytest.raises(BatchBusyError):
            manager.start_upload(batch.batch_id)
        with pytest.raises(BatchBusyError):
            manager.add_files(batch.batch_id, from_file_selection(paths[2:]))
        with pytest.raises(BatchBusyError):
            manager.remove_item(batch.batch_id, batch.items[0].id)
        assert manager.dismiss_batch(batch.batch_id) is False
        assert manager.get_batch(batch.batch_id) is batch

        assert _wait_until(lambda: not batch.is_uploading)
        assert batch.success_count == 2


class TestDismissAndClose:
    """Tests for dismissing batches."""

    def test_dismiss_removes_batch_and_temp_dir(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(1))
        temp_dir = Path(manager.ensure_temp_dir(batch))
        (temp_dir / "spooled.txt").write_text("x")

        assert manager.dismiss_batch(batch.batch_id) is True
        assert manager.get_batch(batch.batch_id) is None
        assert batch.dismissed
        assert not temp_dir.exists()

    def test_auto_close_after_full_success(self, fake_backend: Any, make_files) -> None:
        manager = UploadManager(client_factory=lambda: fake_backend, auto_close_delay=0)
        batch = _batch_with_files(manager, make_files(2))

        manager.start_upload(batch.batch_id)

        assert _wait_until(lambda: manager.get_batch(batch.batch_id) is None)

    def test_no_auto_close_after_partial(
        self, fake_backend: Any, make_files
    ) -> None:
        paths = make_files(2)
        fake_backend.put_errors[paths[0].name] = _forbidden()
        manager = UploadManager(client_factory=lambda: fake_backend, auto_close_delay=0)
        batch = _batch_with_files(manager, paths)

        manager.start_upload(batch.batch_id)
        time.sleep(0.1)

        assert manager.get_batch(batch.batch_id) is batch

    def test_auto_close_disabled(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(1))
        manager.start_upload(batch.batch_id)

        assert batch.close_timer is None
        assert manager.get_batch(batch.batch_id) is batch


class TestBatchQueries:
    """Tests for listing and cleanup."""

    def test_active_batches(self, manager: UploadManager, fake_backend: Any, make_files) -> None:
        paths = make_files(2)
        pending = _batch_with_files(manager, paths[:1])
        done = _batch_with_files(manager, paths[1:])
        manager.start_upload(done.batch_id)

        active = manager.get_active_batches()

        assert pending in active
        assert done not in active

    def test_cleanup_old_batches(self, manager: UploadManager, make_files) -> None:
        from datetime import UTC, datetime, timedelta

        batch = _batch_with_files(manager, make_files(1))
        manager.start_upload(batch.batch_id)
        batch.completed_at = datetime.now(UTC) - timedelta(hours=2)
        fresh = manager.create_batch()

        assert manager.cleanup_old_batches(max_age_seconds=3600) == 1
        assert manager.get_batch(batch.batch_id) is None
        assert manager.get_batch(fresh.batch_id) is fresh

    def test_progress_percent_weighted_by_size(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(2, size=100))
        assert batch.progress_percent == 0.0
        manager.start_upload(batch.batch_id)
        assert batch.progress_percent == 100.0

    def test_to_dict(self, manager: UploadManager, make_files) -> None:
        batch = _batch_with_files(manager, make_files(1))
        manager.start_upload(batch.batch_id)
        data = batch.to_dict()

        assert data["files_succeeded"] == 1
        assert data["outcome"]["kind"] == "all_succeeded"
        assert data["uploaded"][0]["relativePath"] == "doc_0.txt"
        assert data["policy"]["maxNumberOfFiles"] == 10


def test_global_manager_uses_settings(isolated_settings) -> None:
    manager = get_upload_manager()

    assert manager.max_workers == isolated_settings.upload_concurrency
    assert manager.auto_close_delay is None
    assert get_upload_manager() is manager
