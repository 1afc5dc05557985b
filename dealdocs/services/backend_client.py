"""HTTP client for the object endpoints the upload pipeline consumes.

Endpoints:
    POST <base>/api/objects/upload   -> {uploadURL, objectPath}
    PUT  <uploadURL>                 raw bytes, straight to storage
    PUT  <base>/api/objects/confirm  registers a finished direct upload
    POST <base>/api/upload           multipart fallback through the server

Failures are raised as ``BackendError`` carrying an ``ErrorKind`` so callers
decide on retry/fallback from structured data rather than message text.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO
from urllib.parse import urljoin

import requests

from dealdocs.services.models import SourceFile

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_TRANSFER_TIMEOUT = 600.0

RETRYABLE_STATUS_CODES = {408, 429}
INFRA_ERROR_CODES = {"storage_unavailable", "signing_failed"}

ProgressCallback = Callable[[int, int], None]


class ErrorKind(Enum):
    """How a failed backend call should be treated."""

    RETRYABLE = "retryable"
    INFRA_UNAVAILABLE = "infra_unavailable"
    SESSION_EXPIRED = "session_expired"
    REJECTED = "rejected"
    TRANSPORT = "transport"


class BackendError(Exception):
    """A backend call failed."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        kind: ErrorKind = ErrorKind.REJECTED,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.kind = kind
        # The backend's own explanation, when it sent one
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.RETRYABLE, ErrorKind.INFRA_UNAVAILABLE)


class SessionExpiredError(BackendError):
    """The backend answered 401."""

    def __init__(self, message: str = "Session expired") -> None:
        super().__init__(message, 401, ErrorKind.SESSION_EXPIRED)


class InvalidResponseError(BackendError):
    """The backend answered 2xx with a body missing required fields."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, status_code, ErrorKind.REJECTED)


class TransferTimeoutError(BackendError):
    """A transfer ran past its overall time limit."""

    def __init__(self, seconds: float) -> None:
        super().__init__(
            f"Upload timed out after {int(seconds)} seconds", None, ErrorKind.TRANSPORT
        )
        self.seconds = seconds


class TransferDeadline:
    """Wall-clock limit on one whole transfer, request body and response included."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def expire(self) -> None:
        self._expires_at = self._clock()

    def check(self) -> None:
        """Raise TransferTimeoutError once the limit has passed."""
        if self.expired:
            raise TransferTimeoutError(self.seconds)


def classify_status(status_code: int, payload: dict[str, Any] | None = None) -> ErrorKind:
    """Map an HTTP error response to an ErrorKind.

    A structured ``code`` from the backend marks infrastructure failures
    even when the status alone would not.
    """
    if status_code == 401:
        return ErrorKind.SESSION_EXPIRED
    if status_code in RETRYABLE_STATUS_CODES:
        return ErrorKind.RETRYABLE
    if status_code >= 500:
        return ErrorKind.INFRA_UNAVAILABLE
    if payload and payload.get("code") in INFRA_ERROR_CODES:
        return ErrorKind.INFRA_UNAVAILABLE
    return ErrorKind.REJECTED


def progress_percent(loaded: int, total: int) -> int | None:
    """Whole-number percentage, rounded half up; None when total is unknown."""
    if total <= 0:
        return None
    return max(0, min(100, int(loaded * 100 / total + 0.5)))


@dataclass(frozen=True)
class UploadSlot:
    """A signed destination for one direct upload."""

    upload_url: str
    object_path: str


class ProgressReader:
    """File wrapper that reports bytes as the HTTP layer reads them.

    Exposes ``__len__`` so requests sends a Content-Length and streams the
    body instead of using chunked encoding.
    """

    def __init__(
        self,
        fh: BinaryIO,
        total: int,
        callback: ProgressCallback | None,
        deadline: TransferDeadline | None = None,
    ) -> None:
        self._fh = fh
        self._total = total
        self._loaded = 0
        self._callback = callback
        self._deadline = deadline

    def __len__(self) -> int:
        return self._total

    def read(self, size: int = -1) -> bytes:
        if self._deadline:
            self._deadline.check()
        chunk = self._fh.read(size)
        if chunk:
            self._loaded += len(chunk)
            if self._callback:
                self._callback(self._loaded, self._total)
        return chunk


def _payload(response: requests.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _raise_for_response(response: requests.Response, action: str) -> None:
    """Turn a non-2xx response into the matching BackendError."""
    if 200 <= response.status_code < 300:
        return
    payload = _payload(response)
    kind = classify_status(response.status_code, payload)
    if kind == ErrorKind.SESSION_EXPIRED:
        raise SessionExpiredError()
    detail = payload.get("error")
    raise BackendError(
        f"{action} failed with status {response.status_code}: "
        f"{detail or response.reason or 'error'}",
        response.status_code,
        kind,
        detail=str(detail) if detail else None,
    )


class BackendClient:
    """Client for the object upload endpoints."""

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transfer_timeout: float = DEFAULT_TRANSFER_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.api_token = api_token
        self.request_timeout = request_timeout
        self.transfer_timeout = transfer_timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    def _auth_headers(self) -> dict[str, str]:
        if self.api_token:
            return {"Authorization": f"Bearer {self.api_token}"}
        return {}

    def request_upload_slot(self, filename: str, relative_path: str) -> UploadSlot:
        """Ask the backend for a signed upload URL and canonical object path.

        Raises:
            SessionExpiredError: On 401
            BackendError: On any other failure, classified by ErrorKind
        """
        try:
            response = self.session.post(
                self._url("/api/objects/upload"),
                json={"filename": filename, "relativePath": relative_path},
                headers=self._auth_headers(),
                timeout=self.request_timeout,
            )
        except requests.RequestException as e:
            # Unreachable backend counts as unavailable infrastructure
            raise BackendError(
                f"Could not reach upload service: {e}", None, ErrorKind.INFRA_UNAVAILABLE
            ) from e

        _raise_for_response(response, "Requesting upload URL")

        data = _payload(response)
        upload_url = data.get("uploadURL")
        object_path = data.get("objectPath")
        if not upload_url or not object_path:
            raise InvalidResponseError(
                "Upload service returned an invalid upload URL", response.status_code
            )
        return UploadSlot(upload_url=self._url(upload_url), object_path=object_path)

    def _send_with_deadline(
        self, send: Callable[[], requests.Response], deadline: TransferDeadline
    ) -> requests.Response:
        """Run a blocking transfer on a helper thread and stop waiting at the deadline.

        requests applies its timeout to each socket read, so a peer that keeps
        trickling bytes would otherwise hold the transfer open indefinitely.
        The abandoned thread ends on its own once the peer closes or a read
        times out; the expired deadline stops it sending any more of the body.
        """
        outcome: dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["response"] = send()
            except Exception as e:
                outcome["error"] = e

        worker = threading.Thread(target=target, name="dealdocs-transfer", daemon=True)
        worker.start()
        worker.join(deadline.remaining())
        if worker.is_alive():
            deadline.expire()
            logger.warning("Transfer abandoned after %s seconds", deadline.seconds)
            raise TransferTimeoutError(deadline.seconds)
        if "error" in outcome:
            raise outcome["error"]
        return outcome["response"]

    def put_object(
        self,
        upload_url: str,
        source: SourceFile,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Stream a file's bytes to a signed URL.

        No application credentials are sent; the URL carries its own signature.
        The whole exchange, response included, must finish within
        ``transfer_timeout`` seconds.
        """
        deadline = TransferDeadline(self.transfer_timeout)
        try:
            with open(source.path, "rb") as fh:
                body = ProgressReader(fh, source.size, on_progress, deadline)
                response = self._send_with_deadline(
                    lambda: self.session.put(
                        upload_url,
                        data=body,
                        headers={"Content-Type": source.content_type},
                        timeout=self.transfer_timeout,
                    ),
                    deadline,
                )
        except requests.Timeout as e:
            raise TransferTimeoutError(self.transfer_timeout) from e
        except (requests.RequestException, OSError) as e:
            raise BackendError(f"Upload failed: {e}", None, ErrorKind.TRANSPORT) from e

        if not 200 <= response.status_code < 300:
            if response.status_code == 401:
                raise SessionExpiredError()
            raise BackendError(
                f"Upload failed with status {response.status_code}",
                response.status_code,
                ErrorKind.TRANSPORT,
            )

    def confirm_upload(
        self, object_path: str, source: SourceFile, relative_path: str
    ) -> dict[str, Any]:
        """Register a finished direct upload with the backend."""
        try:
            response = self.session.put(
                self._url("/api/objects/confirm"),
                json={
                    "objectPath": object_path,
                    "filename": source.name,
                    "size": source.size,
                    "type": source.mime_type,
                    "relativePath": relative_path,
                },
                headers=self._auth_headers(),
                timeout=self.request_timeout,
            )
        except requests.RequestException as e:
            raise BackendError(f"Failed to confirm upload: {e}", None, ErrorKind.TRANSPORT) from e

        _raise_for_response(response, "Confirming upload")
        return _payload(response)

    def upload_multipart(
        self,
        source: SourceFile,
        relative_path: str,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Send a file through the application server as multipart form data.

        Progress is reported while the form body is assembled, so it may jump
        straight to 100 before the request goes out. Like ``put_object`` the
        whole exchange is bounded by ``transfer_timeout``.
        """
        deadline = TransferDeadline(self.transfer_timeout)
        try:
            with open(source.path, "rb") as fh:
                body = ProgressReader(fh, source.size, on_progress, deadline)
                response = self._send_with_deadline(
                    lambda: self.session.post(
                        self._url("/api/upload"),
                        files={"file": (source.name, body, source.content_type)},
                        data={"relativePath": relative_path},
                        headers=self._auth_headers(),
                        timeout=self.transfer_timeout,
                    ),
                    deadline,
                )
        except requests.Timeout as e:
            raise TransferTimeoutError(self.transfer_timeout) from e
        except (requests.RequestException, OSError) as e:
            raise BackendError(f"Upload failed: {e}", None, ErrorKind.TRANSPORT) from e

        _raise_for_response(response, "Upload")

        data = _payload(response)
        if not data.get("id") or not (data.get("url") or data.get("objectPath")):
            raise InvalidResponseError(
                "Upload service returned an invalid response", response.status_code
            )
        return data


def create_backend_client(settings: Any) -> BackendClient:
    """Build a client from application settings."""
    return BackendClient(
        settings.backend_url,
        api_token=settings.api_token,
        request_timeout=settings.request_timeout,
        transfer_timeout=settings.transfer_timeout,
    )
