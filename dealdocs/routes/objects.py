"""Object storage API routes: signed direct uploads and their confirmation."""

import hmac
import uuid

from botocore.exceptions import BotoCoreError, ClientError
from flask import Blueprint, Response, jsonify, request

from dealdocs.config import get_settings
from dealdocs.services import s3_service
from dealdocs.services.log_service import get_log_service
from dealdocs.services.object_registry import get_object_registry
from dealdocs.services.utils import normalize_relative_path, sanitize_filename

objects_bp = Blueprint("objects", __name__)


def token_rejected() -> tuple[Response, int] | None:
    """Return a 401 response when an API token is configured and not presented."""
    expected = get_settings().api_token
    if not expected:
        return None
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and hmac.compare_digest(token.strip(), expected):
        return None
    return jsonify({"error": "Authentication required"}), 401


def _storage_unavailable(message: str) -> tuple[Response, int]:
    return jsonify({"error": message, "code": "storage_unavailable"}), 503


@objects_bp.route("/upload", methods=["POST"])
def request_upload_url() -> tuple[Response, int]:
    """Issue a presigned PUT URL for one file.

    Request body:
        filename: Original file name
        relativePath: Path of the file inside its batch (optional)

    Returns:
        JSON with uploadURL and objectPath, or 503 with a ``code`` when
        storage cannot take direct uploads
    """
    denied = token_rejected()
    if denied:
        return denied

    data = request.get_json(silent=True) or {}
    filename = str(data.get("filename") or "").strip()
    if not filename:
        return jsonify({"error": "filename is required"}), 400

    settings = get_settings()
    if not settings.s3_bucket:
        return _storage_unavailable("Object storage is not configured")

    relative_path = normalize_relative_path(str(data.get("relativePath") or "")) or filename
    key = s3_service.build_object_key(
        settings.object_prefix, uuid.uuid4().hex, sanitize_filename(filename)
    )

    log = get_log_service()
    try:
        client = s3_service.create_s3_client(settings.aws_profile, settings.aws_region)
    except BotoCoreError as e:
        log.error(
            "storage",
            "storage_unavailable",
            f"Could not create S3 client: {e}",
            {"profile": settings.aws_profile, "error": str(e)},
        )
        return _storage_unavailable("Object storage is temporarily unavailable")

    result = s3_service.generate_upload_url(
        client, settings.s3_bucket, key, settings.upload_url_expiry
    )
    if not result["success"]:
        log.error(
            "storage",
            "signing_failed",
            f"Failed to sign upload URL for {filename}: {result['error']}",
            {"key": key, "error": result["error"]},
        )
        return jsonify({"error": "Could not create upload URL", "code": "signing_failed"}), 503

    log.info(
        "storage",
        "upload_url_issued",
        f"Issued upload URL for {relative_path}",
        {"key": key, "relative_path": relative_path, "expires_in": settings.upload_url_expiry},
    )
    return jsonify({"uploadURL": result["url"], "objectPath": key}), 200


@objects_bp.route("/confirm", methods=["PUT"])
def confirm_upload() -> tuple[Response, int]:
    """Register an object that was uploaded directly to storage.

    Request body:
        objectPath, filename, size, type, relativePath

    Returns:
        JSON with the registered object, 409 if storage does not have it
    """
    denied = token_rejected()
    if denied:
        return denied

    data = request.get_json(silent=True) or {}
    object_path = str(data.get("objectPath") or "")
    filename = str(data.get("filename") or "")
    if not object_path or not filename:
        return jsonify({"error": "objectPath and filename are required"}), 400

    settings = get_settings()
    if not settings.s3_bucket:
        return _storage_unavailable("Object storage is not configured")

    try:
        client = s3_service.create_s3_client(settings.aws_profile, settings.aws_region)
        if not s3_service.check_file_exists(client, settings.s3_bucket, object_path):
            return jsonify({"error": "Object not found in storage"}), 409
        metadata = s3_service.get_object_metadata(client, settings.s3_bucket, object_path)
    except (BotoCoreError, ClientError) as e:
        get_log_service().error(
            "storage",
            "confirm_failed",
            f"Could not verify {object_path}: {e}",
            {"object_path": object_path, "error": str(e)},
        )
        return _storage_unavailable("Object storage is temporarily unavailable")

    size = metadata.get("size") if metadata["success"] else None
    entry = get_object_registry().register_object(
        object_path,
        filename,
        size=int(size if size is not None else data.get("size") or 0),
        mime_type=str(data.get("type") or ""),
        relative_path=normalize_relative_path(str(data.get("relativePath") or "")),
        storage="s3",
    )

    get_log_service().info(
        "storage",
        "upload_confirmed",
        f"Confirmed upload of {entry['relativePath']}",
        {"object_path": object_path, "size": entry["size"]},
    )
    return jsonify(entry), 200


@objects_bp.route("", methods=["GET"])
def list_objects() -> tuple[Response, int]:
    """List registered objects, newest first.

    Query params:
        offset: Pagination offset (default 0)
        limit: Pagination limit (default 100)
    """
    denied = token_rejected()
    if denied:
        return denied

    try:
        offset = max(0, int(request.args.get("offset", "0")))
        limit = max(1, min(1000, int(request.args.get("limit", "100"))))
    except ValueError:
        offset = 0
        limit = 100

    registry = get_object_registry()
    return jsonify(
        {
            "objects": registry.list_objects(limit=limit, offset=offset),
            "stats": registry.get_stats(),
            "offset": offset,
            "limit": limit,
        }
    ), 200
