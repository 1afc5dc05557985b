"""Flask application factory for the deal documents uploader."""

import os

from flask import Flask

from dealdocs.config import get_package_version, get_settings


def create_app() -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    settings = get_settings()
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
    # Batch spooling accepts up to max_number_of_files at max_file_size each
    app.config["MAX_CONTENT_LENGTH"] = settings.max_number_of_files * settings.max_file_size

    app.config["SETTINGS"] = settings

    from dealdocs.routes.batches import batches_bp, broadcast_session_expired
    from dealdocs.routes.files import files_bp
    from dealdocs.routes.logs import logs_bp
    from dealdocs.routes.main import main_bp
    from dealdocs.routes.objects import objects_bp
    from dealdocs.routes.settings import settings_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(files_bp)
    app.register_blueprint(batches_bp, url_prefix="/api/batches")
    app.register_blueprint(objects_bp, url_prefix="/api/objects")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")
    app.register_blueprint(logs_bp, url_prefix="/api/logs")

    from dealdocs.services.log_service import get_log_service
    from dealdocs.services.session_events import get_session_signal

    get_session_signal().subscribe(broadcast_session_expired)

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"Application started (v{get_package_version()})",
        {"version": get_package_version()},
    )

    return app
