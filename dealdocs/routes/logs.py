"""Logs API routes for dealdocs"""

import csv
from pathlib import Path

from botocore.exceptions import BotoCoreError
from flask import Blueprint, Response, jsonify, request, send_file

from dealdocs.config import get_settings
from dealdocs.services import s3_service
from dealdocs.services.log_service import get_log_service

logs_bp = Blueprint("logs", __name__)


@logs_bp.route("/entries", methods=["GET"])
def get_log_entries() -> tuple[Response, int]:
    """Query log entries with filtering and pagination.

    Query params:
        date: Filter by date (YYYY-MM-DD)
        level: Filter by level (INFO/WARNING/ERROR)
        category: Filter by category (batch/upload/storage/settings/session/app/sync)
        search: Full-text search in message and event
        offset: Pagination offset (default 0)
        limit: Pagination limit (default 100)
    """
    try:
        offset = max(0, int(request.args.get("offset", "0")))
        limit = max(1, min(1000, int(request.args.get("limit", "100"))))
    except ValueError:
        offset = 0
        limit = 100

    result = get_log_service().read_log_entries(
        date=request.args.get("date"),
        level=request.args.get("level"),
        category=request.args.get("category"),
        search=request.args.get("search"),
        offset=offset,
        limit=limit,
    )
    return jsonify(result), 200


@logs_bp.route("/files", methods=["GET"])
def get_log_files() -> tuple[Response, int]:
    """List all log files with metadata."""
    return jsonify({"files": get_log_service().list_log_files()}), 200


@logs_bp.route("/stats", methods=["GET"])
def get_log_stats() -> tuple[Response, int]:
    """Get aggregate log statistics."""
    return jsonify(get_log_service().get_log_stats()), 200


@logs_bp.route("/sync", methods=["POST"])
def sync_logs() -> tuple[Response, int]:
    """Trigger S3 sync of log files.

    Returns:
        JSON with sync results (synced, skipped, errors)
    """
    settings = get_settings()
    if not settings.s3_bucket:
        return jsonify({"success": False, "error": "S3 bucket not configured"}), 400

    log = get_log_service()
    log.info("sync", "log_sync_started", "Starting log sync to S3")

    try:
        client = s3_service.create_s3_client(settings.aws_profile, settings.aws_region)
        result = log.sync_logs_to_s3(client, settings.s3_bucket)
    except BotoCoreError as e:
        log.error("sync", "log_sync_failed", f"Log sync failed: {e}", {"error": str(e)})
        return jsonify({"success": False, "error": str(e)}), 200
    return jsonify(result), 200


def _resolve_csv_path(relative_path: str) -> Path | None:
    """Resolve a relative CSV path safely within the log directory.

    Returns None if the path is invalid or escapes the log directory.
    """
    log_dir = get_settings().log_directory.resolve()
    resolved = (log_dir / relative_path).resolve()
    try:
        resolved.relative_to(log_dir)
    except ValueError:
        return None
    if not resolved.is_file() or resolved.suffix != ".csv":
        return None
    return resolved


@logs_bp.route("/csv-download", methods=["GET"])
def csv_download() -> tuple[Response, int] | Response:
    """Serve a batch summary CSV for download.

    Query params:
        path: Relative path within the log directory
              (e.g. csv/year=2026/month=02/day=08/batch-summary-143022-abcd1234.csv)
    """
    relative_path = request.args.get("path", "")
    if not relative_path:
        return jsonify({"error": "Missing path parameter"}), 400

    resolved = _resolve_csv_path(relative_path)
    if resolved is None:
        return jsonify({"error": "Invalid path"}), 400

    return send_file(resolved, as_attachment=True, download_name=resolved.name)


@logs_bp.route("/csv-preview", methods=["GET"])
def csv_preview() -> tuple[Response, int]:
    """Parse a batch summary CSV and return it as JSON."""
    relative_path = request.args.get("path", "")
    if not relative_path:
        return jsonify({"error": "Missing path parameter"}), 400

    resolved = _resolve_csv_path(relative_path)
    if resolved is None:
        return jsonify({"error": "Invalid path"}), 400

    try:
        with open(resolved, encoding="utf-8", newline="") as f:
            reader = csv.DictReader(f)
            columns = reader.fieldnames or []
            rows = list(reader)
    except (OSError, csv.Error) as e:
        return jsonify({"error": f"Failed to read CSV: {e}"}), 500
    return jsonify({"columns": columns, "rows": rows}), 200
