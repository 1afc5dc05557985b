"""Settings API routes for dealdocs"""

from botocore.exceptions import BotoCoreError
from flask import Blueprint, Response, jsonify, request

from dealdocs.config import MASKED_TOKEN, get_package_name, get_package_version, get_settings
from dealdocs.services import s3_service
from dealdocs.services.log_service import get_log_service

settings_bp = Blueprint("settings", __name__)

ALLOWED_KEYS = {
    "backend_url",
    "api_token",
    "aws_profile",
    "aws_region",
    "s3_bucket",
    "object_prefix",
    "upload_directory",
    "log_directory",
    "display_name",
    "max_number_of_files",
    "max_file_size",
    "allowed_file_types",
    "fallback_max_file_size",
    "upload_concurrency",
    "upload_url_expiry",
    "request_timeout",
    "transfer_timeout",
    "auto_close_delay",
}

POSITIVE_INT_KEYS = {
    "max_number_of_files",
    "max_file_size",
    "fallback_max_file_size",
    "upload_concurrency",
    "upload_url_expiry",
}


@settings_bp.route("", methods=["GET"])
def get_all_settings() -> tuple[Response, int]:
    """Get all current settings, with the API token masked."""
    return jsonify(get_settings().all()), 200


@settings_bp.route("", methods=["PUT"])
def update_settings() -> tuple[Response, int]:
    """Update settings.

    Request body:
        JSON object with settings to update; unknown keys are ignored

    Returns:
        JSON response with updated settings
    """
    if not request.is_json:
        return jsonify({"error": "JSON body required"}), 400

    data = request.get_json()
    if not data:
        return jsonify({"error": "Empty body"}), 400

    filtered_data = {k: v for k, v in data.items() if k in ALLOWED_KEYS}
    # The masked token from GET is echoed back by forms; keep the stored one
    if filtered_data.get("api_token") == MASKED_TOKEN:
        del filtered_data["api_token"]
    if not filtered_data:
        return jsonify({"error": "No valid settings provided"}), 400

    for key in POSITIVE_INT_KEYS & filtered_data.keys():
        value = filtered_data[key]
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            return jsonify({"error": f"{key} must be a positive integer"}), 400

    if "allowed_file_types" in filtered_data and not isinstance(
        filtered_data["allowed_file_types"], list
    ):
        return jsonify({"error": "allowed_file_types must be a list"}), 400

    settings = get_settings()
    settings.update(filtered_data)

    get_log_service().info(
        "settings",
        "settings_updated",
        f"Updated settings: {', '.join(sorted(filtered_data))}",
        {"changed_keys": sorted(filtered_data)},
    )

    return jsonify(settings.all()), 200


@settings_bp.route("/profiles", methods=["GET"])
def get_profiles() -> tuple[Response, int]:
    """Get list of available AWS profiles."""
    return jsonify({"profiles": s3_service.get_available_profiles()}), 200


@settings_bp.route("/validate", methods=["POST"])
def validate_connection() -> tuple[Response, int]:
    """Validate S3 connection with current or provided settings.

    Request body (optional):
        aws_profile: AWS profile to test
        aws_region: AWS region to test
        s3_bucket: S3 bucket to test

    Returns:
        JSON response with validation result
    """
    settings = get_settings()
    data = request.get_json(silent=True) or {}
    profile = data.get("aws_profile", settings.aws_profile)
    region = data.get("aws_region", settings.aws_region)
    bucket = data.get("s3_bucket", settings.s3_bucket)

    if not bucket:
        return jsonify({"error": "S3 bucket not specified"}), 400

    log = get_log_service()
    try:
        client = s3_service.create_s3_client(profile, region)
        result = s3_service.validate_bucket_access(client, bucket)
    except BotoCoreError as e:
        log.error(
            "settings",
            "connection_test",
            f"Connection test error for bucket '{bucket}': {e}",
            {"bucket": bucket, "profile": profile, "region": region, "error": str(e)},
        )
        return jsonify({"success": False, "error": str(e)}), 200

    if result["success"]:
        log.info(
            "settings",
            "connection_test",
            f"Connection test succeeded for bucket '{bucket}'",
            {"bucket": bucket, "profile": profile, "region": region, "success": True},
        )
        return jsonify(
            {"success": True, "message": f"Successfully connected to bucket '{bucket}'"}
        ), 200

    log.warning(
        "settings",
        "connection_test",
        f"Connection test failed for bucket '{bucket}': {result['error']}",
        {"bucket": bucket, "profile": profile, "region": region, "error": result["error"]},
    )
    return jsonify({"success": False, "error": result["error"]}), 200


@settings_bp.route("/version", methods=["GET"])
def get_version() -> tuple[Response, int]:
    """Get current application version information."""
    return jsonify({"name": get_package_name(), "version": get_package_version()}), 200
