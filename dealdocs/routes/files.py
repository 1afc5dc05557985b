"""Server-side upload fallback: multipart uploads stored on local disk."""

import uuid
from datetime import UTC, datetime
from pathlib import Path

from flask import Blueprint, Response, jsonify, request, send_file

from dealdocs.config import get_settings
from dealdocs.routes.objects import token_rejected
from dealdocs.services.log_service import get_log_service
from dealdocs.services.object_registry import get_object_registry
from dealdocs.services.utils import format_file_size, normalize_relative_path, sanitize_filename

files_bp = Blueprint("files", __name__)

ALLOWED_EXTENSIONS = {
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".txt", ".csv",
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".mp4", ".mp3",
    ".zip", ".rar", ".7z",
}


def _upload_dir() -> Path:
    upload_dir = get_settings().upload_directory
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def _resolve_upload_path(filename: str) -> Path | None:
    """Resolve a stored file name safely within the upload directory.

    Returns None if the path escapes the upload directory.
    """
    upload_dir = _upload_dir().resolve()
    resolved = (upload_dir / filename).resolve()
    try:
        resolved.relative_to(upload_dir)
    except ValueError:
        return None
    return resolved


@files_bp.route("/api/upload", methods=["POST"])
def upload_file() -> tuple[Response, int]:
    """Store one file sent as multipart form data.

    Form fields:
        file: The file
        relativePath: Path of the file inside its batch (optional)

    Returns:
        JSON with id, filename, url, size, type, relativePath, uploadedAt
    """
    denied = token_rejected()
    if denied:
        return denied

    storage = request.files.get("file")
    if not storage or not storage.filename:
        return jsonify({"error": "No file uploaded"}), 400

    original_name = storage.filename.replace("\\", "/").rsplit("/", 1)[-1]
    ext = Path(original_name).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        return jsonify({"error": "Invalid file type"}), 400

    settings = get_settings()
    stored_name = f"{uuid.uuid4()}-{sanitize_filename(original_name)}"
    target = _upload_dir() / stored_name
    storage.save(target)

    size = target.stat().st_size
    if size > settings.fallback_max_file_size:
        target.unlink()
        limit = format_file_size(settings.fallback_max_file_size)
        return jsonify({"error": f"File exceeds {limit} limit"}), 413

    url = f"/uploads/{stored_name}"
    relative_path = (
        normalize_relative_path(request.form.get("relativePath", "")) or original_name
    )
    mime_type = storage.mimetype or ""

    get_object_registry().register_object(
        url, original_name, size=size, mime_type=mime_type,
        relative_path=relative_path, storage="local",
    )
    get_log_service().info(
        "storage",
        "fallback_upload_stored",
        f"Stored {relative_path} on local disk",
        {"url": url, "size": size, "relative_path": relative_path},
    )

    return jsonify(
        {
            "id": str(uuid.uuid4()),
            "filename": original_name,
            "url": url,
            "size": size,
            "type": mime_type,
            "relativePath": relative_path,
            "uploadedAt": datetime.now(UTC).isoformat(),
        }
    ), 200


@files_bp.route("/api/upload/<path:filename>", methods=["DELETE"])
def delete_file(filename: str) -> tuple[Response, int]:
    """Delete a file from the local upload store."""
    denied = token_rejected()
    if denied:
        return denied

    path = _resolve_upload_path(filename)
    if path is None:
        return jsonify({"error": "Access denied"}), 403
    if not path.is_file():
        return jsonify({"error": "File not found"}), 404

    path.unlink()
    get_object_registry().delete_object(f"/uploads/{path.name}")
    get_log_service().info(
        "storage", "fallback_upload_deleted", f"Deleted {path.name}", {"filename": path.name}
    )
    return jsonify({"message": "File deleted successfully"}), 200


@files_bp.route("/uploads/<path:filename>", methods=["GET"])
def serve_upload(filename: str) -> tuple[Response, int] | Response:
    """Serve a stored file."""
    path = _resolve_upload_path(filename)
    if path is None:
        return jsonify({"error": "Access denied"}), 403
    if not path.is_file():
        return jsonify({"error": "File not found"}), 404
    return send_file(path)
