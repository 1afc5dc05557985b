"""Pytest configuration and fixtures for the dealdocs tests."""

import json
import threading
import time
import uuid
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from flask import Flask
from flask.testing import FlaskClient

from dealdocs import config, create_app
from dealdocs.services import log_service, object_registry, session_events, upload_manager
from dealdocs.services.backend_client import BackendError, UploadSlot
from dealdocs.services.models import SourceFile
from dealdocs.services.object_registry import ObjectRegistry


@pytest.fixture(autouse=True)
def isolated_settings(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Generator[config.Settings, None, None]:
    """Point settings, logs, uploads and the registry at a temp directory."""
    settings_file = tmp_path / "settings.json"
    settings_file.write_text(
        json.dumps(
            {
                "backend_url": "http://backend.test",
                "api_token": "",
                "s3_bucket": "",
                "log_directory": str(tmp_path / "logs"),
                "upload_directory": str(tmp_path / "uploads"),
                "auto_close_delay": None,
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config, "SETTINGS_FILE", settings_file)
    monkeypatch.setattr(config, "SETTINGS_DEFAULT_FILE", tmp_path / "settings.default.json")
    for env_var in (
        config.ENV_BACKEND_URL,
        config.ENV_API_TOKEN,
        config.ENV_AWS_PROFILE,
        config.ENV_AWS_REGION,
        config.ENV_S3_BUCKET,
    ):
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setattr(config.Settings, "_instance", None)

    monkeypatch.setattr(log_service, "_log_service", None)
    monkeypatch.setattr(ObjectRegistry, "DB_FILE", str(tmp_path / "objects.db"))
    monkeypatch.setattr(object_registry, "_object_registry", None)
    monkeypatch.setattr(upload_manager, "_upload_manager", None)
    monkeypatch.setattr(session_events, "_session_signal", None)

    yield config.get_settings()


class FakeBackend:
    """In-memory stand-in for BackendClient with scriptable failures.

    Failures are keyed by file name. ``slot_errors`` holds a list that is
    consumed one error per slot request, so a file can fail a few times
    and then succeed.
    """

    def __init__(self) -> None:
        self.slot_errors: dict[str, list[BackendError]] = {}
        self.put_errors: dict[str, BackendError] = {}
        self.confirm_errors: dict[str, BackendError] = {}
        self.multipart_errors: dict[str, BackendError] = {}
        self.calls: list[tuple[str, str]] = []
        self.put_delay = 0.0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _record(self, call: str, name: str) -> None:
        with self._lock:
            self.calls.append((call, name))

    def count(self, call: str, name: str | None = None) -> int:
        return sum(1 for c, n in self.calls if c == call and (name is None or n == name))

    def request_upload_slot(self, filename: str, relative_path: str) -> UploadSlot:
        self._record("slot", filename)
        with self._lock:
            queued = self.slot_errors.get(filename)
            error = queued.pop(0) if queued else None
        if error:
            raise error
        object_path = f"uploads/{uuid.uuid4().hex}/{filename}"
        return UploadSlot(f"https://storage.test/{object_path}?sig=abc", object_path)

    def put_object(
        self,
        upload_url: str,
        source: SourceFile,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> None:
        self._record("put", source.name)
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.put_delay:
                time.sleep(self.put_delay)
            if source.name in self.put_errors:
                raise self.put_errors[source.name]
            if on_progress:
                on_progress(source.size // 2, source.size)
                on_progress(source.size, source.size)
        finally:
            with self._lock:
                self.active -= 1

    def confirm_upload(
        self, object_path: str, source: SourceFile, relative_path: str
    ) -> dict[str, Any]:
        self._record("confirm", source.name)
        if source.name in self.confirm_errors:
            raise self.confirm_errors[source.name]
        return {"objectPath": object_path, "filename": source.name}

    def upload_multipart(
        self,
        source: SourceFile,
        relative_path: str,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> dict[str, Any]:
        self._record("multipart", source.name)
        if source.name in self.multipart_errors:
            raise self.multipart_errors[source.name]
        if on_progress:
            on_progress(source.size, source.size)
        return {
            "id": f"srv-{source.name}",
            "filename": source.name,
            "url": f"/uploads/0000-{source.name}",
            "size": source.size,
            "type": source.mime_type,
            "relativePath": relative_path,
        }


@pytest.fixture
def fake_backend() -> FakeBackend:
    """A fresh scriptable backend."""
    return FakeBackend()


@pytest.fixture
def make_files(tmp_path: Path) -> Callable[..., list[Path]]:
    """Factory writing ``count`` small text files into a temp directory."""

    def _make(count: int, size: int = 64, prefix: str = "doc", ext: str = ".txt") -> list[Path]:
        src_dir = tmp_path / "src"
        src_dir.mkdir(exist_ok=True)
        paths = []
        for i in range(count):
            path = src_dir / f"{prefix}_{i}{ext}"
            path.write_bytes(b"x" * size)
            paths.append(path)
        return paths

    return _make


@pytest.fixture
def app() -> Flask:
    """Create application for testing."""
    app = create_app()
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def temp_files(tmp_path: Path) -> list[Path]:
    """Create multiple temporary files for testing."""
    files: list[Path] = []
    for i in range(3):
        path = tmp_path / f"test_file_{i}.pdf"
        path.write_bytes(b"%PDF-1.4" + b"\x00" * (100 * (i + 1)))
        files.append(path)
    return files
