"""Per-file upload strategy.

A file goes through these states:

    not_started -> requesting_slot -> direct_upload -> confirming -> succeeded
                        |
                        +-- (infrastructure unavailable) -> fallback_upload -> succeeded

and any non-terminal state can end in ``failed``. ``advance`` holds the
transition table and has no side effects; ``FileUploader`` performs the
network calls and walks the table.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from dealdocs.services.backend_client import (
    BackendClient,
    BackendError,
    ErrorKind,
    InvalidResponseError,
    SessionExpiredError,
    TransferTimeoutError,
    UploadSlot,
    progress_percent,
)
from dealdocs.services.models import PendingUploadItem, UploadedFileRecord
from dealdocs.services.session_events import SessionExpiredSignal

logger = logging.getLogger(__name__)

MAX_SLOT_ATTEMPTS = 3

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please sign in again."
SERVER_BUSY_MESSAGE = "The upload service is busy. Please retry in a moment."
CONFIRM_FAILED_MESSAGE = "The file reached storage but could not be registered. Please retry."


class StrategyState(Enum):
    NOT_STARTED = "not_started"
    REQUESTING_SLOT = "requesting_slot"
    DIRECT_UPLOAD = "direct_upload"
    CONFIRMING = "confirming"
    FALLBACK_UPLOAD = "fallback_upload"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepOutcome(Enum):
    OK = "ok"
    ERROR = "error"
    INFRA_UNAVAILABLE = "infra_unavailable"


class InvalidTransition(ValueError):
    """Raised for a (state, outcome) pair the strategy never produces."""


_S = StrategyState
_O = StepOutcome

_TRANSITIONS: dict[tuple[StrategyState, StepOutcome], StrategyState] = {
    (_S.NOT_STARTED, _O.OK): _S.REQUESTING_SLOT,
    (_S.REQUESTING_SLOT, _O.OK): _S.DIRECT_UPLOAD,
    (_S.REQUESTING_SLOT, _O.INFRA_UNAVAILABLE): _S.FALLBACK_UPLOAD,
    (_S.REQUESTING_SLOT, _O.ERROR): _S.FAILED,
    (_S.DIRECT_UPLOAD, _O.OK): _S.CONFIRMING,
    (_S.DIRECT_UPLOAD, _O.ERROR): _S.FAILED,
    (_S.CONFIRMING, _O.OK): _S.SUCCEEDED,
    (_S.CONFIRMING, _O.ERROR): _S.FAILED,
    (_S.FALLBACK_UPLOAD, _O.OK): _S.SUCCEEDED,
    (_S.FALLBACK_UPLOAD, _O.ERROR): _S.FAILED,
}

TERMINAL_STATES = frozenset({_S.SUCCEEDED, _S.FAILED})


def advance(state: StrategyState, outcome: StepOutcome) -> StrategyState:
    """Return the state that follows ``state`` after a step ends in ``outcome``.

    Raises:
        InvalidTransition: If the pair is not in the transition table
    """
    try:
        return _TRANSITIONS[(state, outcome)]
    except KeyError:
        raise InvalidTransition(f"No transition from {state.value} on {outcome.value}") from None


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after a failed slot request (attempt is 0-based)."""
    return float(2**attempt)


def describe_failure(error: BackendError, storage: bool = False) -> str:
    """Turn a failed backend call into text the user can act on.

    ``storage`` marks errors from the signed PUT, which goes straight to the
    object store rather than the application server. The raw status text
    stays in ``error.message`` for the logs.
    """
    status = error.status_code
    if isinstance(error, TransferTimeoutError):
        return (
            f"The upload did not finish within {int(error.seconds)} seconds. "
            "Check your connection and retry."
        )
    if isinstance(error, InvalidResponseError):
        return "The upload service sent an unexpected response. Please retry."
    if error.kind == ErrorKind.SESSION_EXPIRED:
        return SESSION_EXPIRED_MESSAGE
    if status is None:
        if storage:
            return "The connection to storage was lost. Check your connection and retry."
        return "Could not reach the upload service. Check your connection and retry."
    if status in (408, 429):
        return SERVER_BUSY_MESSAGE
    if storage:
        if status == 403:
            return "The upload link was refused by storage. Retry to get a new one."
        if status == 413:
            return "This file is too large for storage."
        if status >= 500:
            return "Storage could not accept the file right now. Please retry."
        return "Storage refused this file. Retry to get a new upload link."
    if status == 413:
        return "This file is too large for the server."
    if status == 415:
        return "The server does not accept this type of file."
    if status == 403:
        return "You do not have permission to upload this file."
    if status >= 500:
        return "The upload service ran into a problem. Please retry."
    if error.detail:
        return f"The server refused this file: {error.detail}"
    return "The server refused this file."


class SlotRequestExhausted(Exception):
    """Every slot request attempt failed with a retryable error."""

    def __init__(self, last_error: BackendError, attempts: int) -> None:
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts

    @property
    def infrastructure_unavailable(self) -> bool:
        return self.last_error.kind == ErrorKind.INFRA_UNAVAILABLE


@dataclass
class UploadResult:
    """Where one file's upload ended and how it got there."""

    state: StrategyState
    record: UploadedFileRecord | None = None
    error: str | None = None
    # Raw failure text for the logs; never shown to the user
    detail: str | None = None
    object_path: str | None = None
    trail: list[StrategyState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == StrategyState.SUCCEEDED


class FileUploader:
    """Uploads single files: signed direct upload first, multipart fallback second."""

    def __init__(
        self,
        client: BackendClient,
        session_signal: SessionExpiredSignal,
        max_attempts: int = MAX_SLOT_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.session_signal = session_signal
        self.max_attempts = max_attempts
        self.sleep = sleep

    def request_slot(self, filename: str, relative_path: str) -> UploadSlot:
        """Request a signed destination, retrying retryable failures with backoff.

        Raises:
            SessionExpiredError: On 401, immediately
            BackendError: On a non-retryable failure, immediately
            SlotRequestExhausted: When every attempt failed retryably
        """
        attempt = 0
        while True:
            try:
                return self.client.request_upload_slot(filename, relative_path)
            except BackendError as e:
                if not e.retryable:
                    raise
                logger.info(
                    "Slot request for %s failed (attempt %d/%d): %s",
                    relative_path, attempt + 1, self.max_attempts, e,
                )
                if attempt + 1 >= self.max_attempts:
                    raise SlotRequestExhausted(e, self.max_attempts) from e
            self.sleep(backoff_delay(attempt))
            attempt += 1

    def upload(
        self,
        item: PendingUploadItem,
        on_progress: Callable[[int], None] | None = None,
    ) -> UploadResult:
        """Run one item through the strategy. Never raises for upload failures."""
        result = UploadResult(state=StrategyState.NOT_STARTED)

        def step(outcome: StepOutcome) -> None:
            result.trail.append(result.state)
            result.state = advance(result.state, outcome)

        def fail(message: str, detail: str | None = None) -> UploadResult:
            step(StepOutcome.ERROR)
            result.trail.append(result.state)
            result.error = message
            result.detail = detail or message
            return result

        def report(loaded: int, total: int) -> None:
            percent = progress_percent(loaded, total)
            if percent is not None and on_progress:
                on_progress(percent)

        source = item.source
        step(StepOutcome.OK)

        try:
            slot = self.request_slot(source.name, item.relative_path)
        except SessionExpiredError:
            self.session_signal.fire(f"Upload of {item.relative_path} was rejected with 401")
            return fail(SESSION_EXPIRED_MESSAGE)
        except SlotRequestExhausted as e:
            if not e.infrastructure_unavailable:
                return fail(SERVER_BUSY_MESSAGE, e.last_error.message)
            logger.warning(
                "Direct upload unavailable for %s, using server upload: %s",
                item.relative_path, e.last_error,
            )
            step(StepOutcome.INFRA_UNAVAILABLE)
            return self._fallback(item, result, report, fail)
        except BackendError as e:
            return fail(describe_failure(e), e.message)

        step(StepOutcome.OK)
        result.object_path = slot.object_path
        try:
            self.client.put_object(slot.upload_url, source, report)
        except SessionExpiredError:
            self.session_signal.fire(f"Upload of {item.relative_path} was rejected with 401")
            return fail(SESSION_EXPIRED_MESSAGE)
        except BackendError as e:
            return fail(describe_failure(e, storage=True), e.message)

        step(StepOutcome.OK)
        try:
            self.client.confirm_upload(slot.object_path, source, item.relative_path)
        except SessionExpiredError:
            self.session_signal.fire(f"Confirming {item.relative_path} was rejected with 401")
            return fail(SESSION_EXPIRED_MESSAGE)
        except BackendError as e:
            logger.warning("Object %s stored but not confirmed: %s", slot.object_path, e)
            return fail(CONFIRM_FAILED_MESSAGE, e.message)

        step(StepOutcome.OK)
        result.trail.append(result.state)
        result.record = UploadedFileRecord(
            id=item.id,
            filename=source.name,
            object_path=slot.object_path,
            size=source.size,
            mime_type=source.mime_type,
            relative_path=item.relative_path,
        )
        return result

    def _fallback(
        self,
        item: PendingUploadItem,
        result: UploadResult,
        report: Callable[[int, int], None],
        fail: Callable[[str, str | None], UploadResult],
    ) -> UploadResult:
        source = item.source
        try:
            data = self.client.upload_multipart(source, item.relative_path, report)
        except SessionExpiredError:
            self.session_signal.fire(f"Server upload of {item.relative_path} was rejected with 401")
            return fail(SESSION_EXPIRED_MESSAGE, None)
        except BackendError as e:
            return fail(describe_failure(e), e.message)

        object_path = str(data.get("url") or data.get("objectPath"))
        result.state = advance(result.state, StepOutcome.OK)
        result.trail.extend([StrategyState.FALLBACK_UPLOAD, result.state])
        result.object_path = object_path
        result.record = UploadedFileRecord(
            id=str(data["id"]),
            filename=str(data.get("filename") or source.name),
            object_path=object_path,
            size=int(data.get("size") or source.size),
            mime_type=str(data.get("type") or source.mime_type),
            relative_path=item.relative_path,
        )
        return result
