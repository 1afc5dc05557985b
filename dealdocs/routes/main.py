"""Health and index routes for dealdocs."""

from flask import Blueprint, Response, jsonify

from dealdocs.config import get_package_version, get_settings

main_bp = Blueprint("main", __name__)


@main_bp.route("/")
def index() -> tuple[Response, int]:
    """Describe the service."""
    return jsonify(
        {
            "name": get_settings().display_name,
            "version": get_package_version(),
            "endpoints": ["/api/batches", "/api/objects", "/api/upload", "/api/settings", "/api/logs"],
        }
    ), 200


@main_bp.route("/health")
def health() -> tuple[Response, int]:
    """Liveness probe used by the launcher."""
    return jsonify({"status": "ok", "version": get_package_version()}), 200
