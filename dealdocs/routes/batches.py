"""Batch upload API routes: the upload dialog as JSON and SSE."""

import json
import threading
import time
import uuid
from collections import deque
from collections.abc import Generator
from pathlib import Path
from typing import Any

from flask import Blueprint, Response, jsonify, request

from dealdocs.services import collector
from dealdocs.services.admission import AdmissionPolicy
from dealdocs.services.collector import FileCandidate
from dealdocs.services.session_events import get_session_signal
from dealdocs.services.upload_manager import (
    BatchBusyError,
    UploadBatch,
    UploadManager,
    default_policy,
    get_upload_manager,
)

batches_bp = Blueprint("batches", __name__)

# Store for SSE clients per batch
_sse_queues: dict[str, list[deque[dict[str, Any]]]] = {}
_sse_lock = threading.Lock()


def send_sse_event(batch_id: str, data: dict[str, Any]) -> None:
    """Send an SSE event to all clients listening for a batch."""
    with _sse_lock:
        queues = _sse_queues.get(batch_id, [])
        for q in queues:
            q.append(data)


def broadcast_session_expired(reason: str) -> None:
    """Push a session_expired event to every open progress stream."""
    event = {"type": "session_expired", "message": reason}
    with _sse_lock:
        for queues in _sse_queues.values():
            for q in queues:
                q.append(event)


def _progress_callback(batch: UploadBatch) -> None:
    event_type = "progress" if batch.is_uploading else "complete"
    send_sse_event(batch.batch_id, {"type": event_type, **batch.to_progress_dict()})


def _not_found() -> tuple[Response, int]:
    return jsonify({"error": "Batch not found"}), 404


def _collect_candidates(manager: UploadManager, batch: UploadBatch) -> list[FileCandidate]:
    """Pull file candidates out of the request in whichever shape it came.

    Raises:
        OSError: If a referenced local path cannot be read
        ValueError: If the JSON body is malformed
    """
    if request.files:
        storages = request.files.getlist("files")
        relative_paths = request.form.getlist("relativePaths")
        # A fresh subdirectory per request keeps repeated adds from colliding
        spool_dir = Path(manager.ensure_temp_dir(batch)) / uuid.uuid4().hex[:8]
        return collector.save_uploaded_files(storages, spool_dir, relative_paths)

    if request.is_json:
        data = request.get_json(silent=True) or {}
        if "paths" in data:
            return collector.from_drop([str(p) for p in data["paths"]])
        if "files" in data:
            entries = []
            for entry in data["files"]:
                if "path" not in entry:
                    raise ValueError("Each file needs a path")
                path = str(entry["path"])
                entries.append((path, str(entry.get("relativePath") or Path(path).name)))
            return collector.from_folder_selection(entries)

    return []


@batches_bp.route("", methods=["POST"])
def create_batch() -> tuple[Response, int]:
    """Create an empty batch.

    Request body (optional):
        maxNumberOfFiles, maxFileSize, allowedFileTypes overriding the defaults

    Returns:
        JSON response with the new batch (201 Created)
    """
    data = request.get_json(silent=True) if request.is_json else None
    try:
        policy = AdmissionPolicy.from_dict(data, default_policy())
    except (TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400

    batch = get_upload_manager().create_batch(policy)
    return jsonify(batch.to_dict()), 201


@batches_bp.route("/<batch_id>/files", methods=["POST"])
def add_files(batch_id: str) -> tuple[Response, int]:
    """Add files to a batch.

    Accepts multipart/form-data with ``files`` (plus optional parallel
    ``relativePaths``), JSON ``{"paths": [...]}`` for a drop of files and
    folders, or JSON ``{"files": [{"path", "relativePath"}]}`` for a folder
    selection.

    Returns:
        JSON response with admitted items and rejection notices
    """
    manager = get_upload_manager()
    batch = manager.get_batch(batch_id)
    if not batch:
        return _not_found()
    if batch.is_uploading:
        return jsonify({"error": "Upload in progress"}), 409

    try:
        candidates = _collect_candidates(manager, batch)
    except (OSError, ValueError, TypeError) as e:
        return jsonify({"error": f"Could not read files: {e}"}), 400

    if not candidates:
        return jsonify({"error": "No files found"}), 400

    try:
        result = manager.add_files(batch_id, candidates)
    except BatchBusyError as e:
        return jsonify({"error": str(e)}), 409
    if result is None:
        return _not_found()

    return jsonify({**result.to_dict(), "batch": batch.to_dict()}), 200


@batches_bp.route("/<batch_id>/items/<item_id>", methods=["DELETE"])
def remove_item(batch_id: str, item_id: str) -> tuple[Response, int]:
    """Remove a pending or failed item from a batch."""
    manager = get_upload_manager()
    batch = manager.get_batch(batch_id)
    if not batch:
        return _not_found()

    try:
        removed = manager.remove_item(batch_id, item_id)
    except BatchBusyError as e:
        return jsonify({"error": str(e)}), 409

    if not removed:
        return jsonify({"error": "Item not found or not removable"}), 404
    return jsonify(batch.to_dict()), 200


@batches_bp.route("/<batch_id>/start", methods=["POST"])
def start_upload(batch_id: str) -> tuple[Response, int]:
    """Start uploading a batch's pending items in the background.

    Progress is streamed on /api/batches/<batch_id>/progress.
    """
    manager = get_upload_manager()
    if not manager.get_batch(batch_id):
        return _not_found()

    try:
        manager.start_upload(batch_id, progress_callback=_progress_callback, background=True)
    except BatchBusyError as e:
        return jsonify({"error": str(e)}), 409

    return jsonify({"batch_id": batch_id, "status": "started"}), 202


@batches_bp.route("/<batch_id>/retry", methods=["POST"])
def retry_failed(batch_id: str) -> tuple[Response, int]:
    """Retry every failed item in a batch."""
    manager = get_upload_manager()
    if not manager.get_batch(batch_id):
        return _not_found()

    try:
        manager.retry_failed(batch_id, progress_callback=_progress_callback, background=True)
    except BatchBusyError as e:
        return jsonify({"error": str(e)}), 409

    return jsonify({"batch_id": batch_id, "status": "retrying"}), 202


@batches_bp.route("/<batch_id>/items/<item_id>/retry", methods=["POST"])
def retry_item(batch_id: str, item_id: str) -> tuple[Response, int]:
    """Retry one failed item."""
    manager = get_upload_manager()
    batch = manager.get_batch(batch_id)
    if not batch:
        return _not_found()
    if not batch.get_item(item_id):
        return jsonify({"error": "Item not found"}), 404

    try:
        manager.retry_item(
            batch_id, item_id, progress_callback=_progress_callback, background=True
        )
    except BatchBusyError as e:
        return jsonify({"error": str(e)}), 409
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({"batch_id": batch_id, "item_id": item_id, "status": "retrying"}), 202


@batches_bp.route("/<batch_id>", methods=["GET"])
def get_batch(batch_id: str) -> tuple[Response, int]:
    """Get current state of a batch (non-streaming)."""
    batch = get_upload_manager().get_batch(batch_id)
    if not batch:
        return _not_found()
    return jsonify(batch.to_dict()), 200


@batches_bp.route("/<batch_id>", methods=["DELETE"])
def dismiss_batch(batch_id: str) -> tuple[Response, int]:
    """Close a batch. Refused while it is uploading."""
    manager = get_upload_manager()
    batch = manager.get_batch(batch_id)
    if not batch:
        return _not_found()

    if not manager.dismiss_batch(batch_id):
        return jsonify({"error": "Upload in progress"}), 409

    send_sse_event(batch_id, {"type": "dismissed", "batch_id": batch_id})
    return jsonify({"success": True, "batch_id": batch_id}), 200


@batches_bp.route("/<batch_id>/progress", methods=["GET"])
def get_progress(batch_id: str) -> Response:
    """Stream progress updates for a batch via Server-Sent Events.

    The stream ends after the run's ``complete`` event or when the batch
    is dismissed.
    """
    manager = get_upload_manager()

    def generate() -> Generator[str, None, None]:
        queue: deque[dict[str, Any]] = deque()
        with _sse_lock:
            _sse_queues.setdefault(batch_id, []).append(queue)

        try:
            batch = manager.get_batch(batch_id)
            if not batch:
                yield 'data: {"error": "Batch not found"}\n\n'
                return
            yield f"data: {json.dumps({'type': 'state', **batch.to_progress_dict()})}\n\n"

            while True:
                while queue:
                    data = queue.popleft()
                    yield f"data: {json.dumps(data)}\n\n"
                    if data.get("type") in ("complete", "dismissed"):
                        return

                time.sleep(0.1)

                if not manager.get_batch(batch_id):
                    yield f"data: {json.dumps({'type': 'dismissed', 'batch_id': batch_id})}\n\n"
                    return

        finally:
            with _sse_lock:
                if batch_id in _sse_queues and queue in _sse_queues[batch_id]:
                    _sse_queues[batch_id].remove(queue)
                    if not _sse_queues[batch_id]:
                        del _sse_queues[batch_id]

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@batches_bp.route("/active", methods=["GET"])
def get_active_batches() -> tuple[Response, int]:
    """List batches that are uploading or still hold unfinished items.

    Used to restore the dialog after a page refresh.
    """
    batches = get_upload_manager().get_active_batches()
    batches.sort(key=lambda b: b.created_at, reverse=True)
    return jsonify({"batches": [b.to_dict() for b in batches]}), 200


@batches_bp.route("/session/reset", methods=["POST"])
def reset_session_signal() -> tuple[Response, int]:
    """Re-arm the session-expired signal after the user signs in again."""
    get_session_signal().reset()
    return jsonify({"success": True}), 200
