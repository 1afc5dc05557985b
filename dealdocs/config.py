"""Configuration management for dealdocs"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_FILE = BASE_DIR / "settings.json"
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variable names for configuration
ENV_BACKEND_URL = "DEALDOCS_BACKEND_URL"
ENV_API_TOKEN = "DEALDOCS_API_TOKEN"
ENV_AWS_PROFILE = "DEALDOCS_AWS_PROFILE"
ENV_AWS_REGION = "DEALDOCS_AWS_REGION"
ENV_S3_BUCKET = "DEALDOCS_S3_BUCKET"

MASKED_TOKEN = "********"

DEFAULTS: dict[str, Any] = {
    "backend_url": "http://127.0.0.1:5000",
    "api_token": "",
    "aws_profile": "default",
    "aws_region": "us-west-2",
    "s3_bucket": "",
    "object_prefix": "uploads/",
    "upload_directory": "uploads",
    "log_directory": "logs",
    "display_name": "Deal Documents",
    "max_number_of_files": 10,
    "max_file_size": 500 * 1024 * 1024,
    "allowed_file_types": [],
    "fallback_max_file_size": 10 * 1024 * 1024,
    "upload_concurrency": 4,
    "upload_url_expiry": 900,
    "request_timeout": 30,
    "transfer_timeout": 600,
    "auto_close_delay": 1.0,
}


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


def get_package_name() -> str:
    """Get the package name from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("name", "dealdocs-uploader"))
    except Exception:
        return "dealdocs-uploader"


def _resolve_dir(value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = BASE_DIR / path
    return path


class Settings:
    """Manages application settings stored in JSON format."""

    _instance: "Settings | None" = None
    _settings: dict[str, Any]

    def __new__(cls) -> "Settings":
        """Singleton pattern to ensure only one settings instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_settings()
        return cls._instance

    def _load_settings(self) -> None:
        """Load settings from file, with environment variables taking precedence.

        Priority order (highest to lowest):
        1. Environment variables (from .env file or system)
        2. settings.json (user-saved settings)
        3. settings.default.json (template defaults)
        4. Hardcoded defaults
        """
        defaults = dict(DEFAULTS)

        if SETTINGS_DEFAULT_FILE.exists():
            with open(SETTINGS_DEFAULT_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        if SETTINGS_FILE.exists():
            with open(SETTINGS_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        env_overrides = {
            "backend_url": os.environ.get(ENV_BACKEND_URL),
            "api_token": os.environ.get(ENV_API_TOKEN),
            "aws_profile": os.environ.get(ENV_AWS_PROFILE),
            "aws_region": os.environ.get(ENV_AWS_REGION),
            "s3_bucket": os.environ.get(ENV_S3_BUCKET),
        }

        # Only apply non-None environment values
        for key, value in env_overrides.items():
            if value is not None:
                defaults[key] = value

        self._settings = defaults

        if not SETTINGS_FILE.exists():
            self._save_settings()

    def _save_settings(self) -> None:
        """Save current settings to file."""
        with open(SETTINGS_FILE, "w", encoding="utf-8") as f:
            json.dump(self._settings, f, indent=4)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key."""
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a setting value and save to file."""
        self._settings[key] = value
        self._save_settings()

    def update(self, data: dict[str, Any]) -> None:
        """Update multiple settings at once."""
        self._settings.update(data)
        self._save_settings()

    def all(self) -> dict[str, Any]:
        """Get all settings as a dictionary.

        The API token is masked; it is write-only through the settings API.
        """
        data = self._settings.copy()
        if data.get("api_token"):
            data["api_token"] = MASKED_TOKEN
        return data

    @property
    def backend_url(self) -> str:
        """Base URL of the backend the upload pipeline talks to."""
        return str(self._settings.get("backend_url", DEFAULTS["backend_url"])).rstrip("/")

    @property
    def api_token(self) -> str:
        """Bearer token sent to (and required by) the object endpoints."""
        return str(self._settings.get("api_token", ""))

    @property
    def aws_profile(self) -> str:
        """Get the AWS profile name."""
        return str(self._settings.get("aws_profile", "default"))

    @property
    def aws_region(self) -> str:
        """Get the AWS region."""
        return str(self._settings.get("aws_region", "us-west-2"))

    @property
    def s3_bucket(self) -> str:
        """Get the S3 bucket name."""
        return str(self._settings.get("s3_bucket", ""))

    @property
    def object_prefix(self) -> str:
        """Key prefix for directly uploaded objects."""
        return str(self._settings.get("object_prefix", DEFAULTS["object_prefix"]))

    @property
    def upload_directory(self) -> Path:
        """Local directory used by the multipart fallback store."""
        return _resolve_dir(str(self._settings.get("upload_directory", "uploads")))

    @property
    def log_directory(self) -> Path:
        """Directory for JSONL/CSV logs."""
        return _resolve_dir(str(self._settings.get("log_directory", "logs")))

    @property
    def display_name(self) -> str:
        return str(self._settings.get("display_name", DEFAULTS["display_name"]))

    @property
    def max_number_of_files(self) -> int:
        return int(self._settings.get("max_number_of_files", DEFAULTS["max_number_of_files"]))

    @property
    def max_file_size(self) -> int:
        return int(self._settings.get("max_file_size", DEFAULTS["max_file_size"]))

    @property
    def allowed_file_types(self) -> list[str]:
        return list(self._settings.get("allowed_file_types") or [])

    @property
    def fallback_max_file_size(self) -> int:
        return int(
            self._settings.get("fallback_max_file_size", DEFAULTS["fallback_max_file_size"])
        )

    @property
    def upload_concurrency(self) -> int:
        return int(self._settings.get("upload_concurrency", DEFAULTS["upload_concurrency"]))

    @property
    def upload_url_expiry(self) -> int:
        """Lifetime of presigned upload URLs in seconds."""
        return int(self._settings.get("upload_url_expiry", DEFAULTS["upload_url_expiry"]))

    @property
    def request_timeout(self) -> float:
        return float(self._settings.get("request_timeout", DEFAULTS["request_timeout"]))

    @property
    def transfer_timeout(self) -> float:
        """Client-side ceiling for a single file transfer in seconds."""
        return float(self._settings.get("transfer_timeout", DEFAULTS["transfer_timeout"]))

    @property
    def auto_close_delay(self) -> float | None:
        value = self._settings.get("auto_close_delay", DEFAULTS["auto_close_delay"])
        return None if value is None else float(value)


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
