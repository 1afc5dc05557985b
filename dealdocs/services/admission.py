"""Admission filter deciding which collected files may join a batch."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from dealdocs.services.collector import FileCandidate
from dealdocs.services.models import PendingUploadItem
from dealdocs.services.utils import format_file_size

DEFAULT_MAX_NUMBER_OF_FILES = 10
DEFAULT_MAX_FILE_SIZE = 500 * 1024 * 1024  # 500 MB


@dataclass(frozen=True)
class AdmissionPolicy:
    """Limits applied to every file offered to a batch."""

    max_number_of_files: int = DEFAULT_MAX_NUMBER_OF_FILES
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    allowed_file_types: tuple[str, ...] = ()

    @classmethod
    def from_dict(
        cls, data: dict[str, Any] | None, defaults: "AdmissionPolicy | None" = None
    ) -> "AdmissionPolicy":
        """Build a policy from the camelCase JSON used by the batch API.

        Raises:
            ValueError: If a limit is not a positive integer
        """
        base = defaults or cls()
        data = data or {}
        max_files = int(data.get("maxNumberOfFiles", base.max_number_of_files))
        max_size = int(data.get("maxFileSize", base.max_file_size))
        if max_files < 1 or max_size < 1:
            raise ValueError("maxNumberOfFiles and maxFileSize must be positive")
        allowed = data.get("allowedFileTypes", base.allowed_file_types) or ()
        return cls(
            max_number_of_files=max_files,
            max_file_size=max_size,
            allowed_file_types=tuple(str(t) for t in allowed),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxNumberOfFiles": self.max_number_of_files,
            "maxFileSize": self.max_file_size,
            "maxFileSizeFormatted": format_file_size(self.max_file_size),
            "allowedFileTypes": list(self.allowed_file_types),
        }


@dataclass(frozen=True)
class AdmissionNotice:
    """A user-facing reason a file (or files) did not join the batch."""

    kind: str  # capacity | size | type
    message: str
    filename: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "filename": self.filename}


@dataclass
class AdmissionResult:
    """Items admitted into the batch plus notices for everything rejected."""

    admitted: list[PendingUploadItem] = field(default_factory=list)
    notices: list[AdmissionNotice] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "admitted": [item.to_dict() for item in self.admitted],
            "notices": [notice.to_dict() for notice in self.notices],
        }


def is_allowed_type(filename: str, mime_type: str, allowed_file_types: Iterable[str]) -> bool:
    """Check a file against an allow-list of MIME types and extensions.

    Entries like "image/*" match any MIME type starting with "image/". Other
    entries match the MIME type exactly or, failing that, the filename's
    extension (".pdf" and "pdf" both match "a.PDF").
    An empty allow-list admits everything.
    """
    allowed = list(allowed_file_types)
    if not allowed:
        return True

    lower_name = filename.lower()
    for entry in allowed:
        if entry.endswith("/*"):
            if mime_type.startswith(entry[:-1]):
                return True
            continue
        if mime_type and mime_type == entry:
            return True
        if "/" not in entry and lower_name.endswith("." + entry.lstrip(".").lower()):
            return True
    return False


def admit(
    candidates: Sequence[FileCandidate],
    current_count: int,
    policy: AdmissionPolicy,
) -> AdmissionResult:
    """Filter candidates against a batch's policy and remaining capacity.

    Only the first ``capacity`` candidates are considered; the rest are
    dropped with a single capacity notice. Oversized and disallowed files
    are rejected one by one with their own notice.
    """
    result = AdmissionResult()
    capacity_message = f"Maximum of {policy.max_number_of_files} files allowed"
    available_slots = policy.max_number_of_files - current_count

    if available_slots <= 0:
        result.notices.append(AdmissionNotice("capacity", capacity_message))
        return result

    considered = candidates[:available_slots]
    if len(candidates) > available_slots:
        result.notices.append(AdmissionNotice("capacity", capacity_message))

    for candidate in considered:
        source = candidate.source
        if source.size > policy.max_file_size:
            result.notices.append(
                AdmissionNotice(
                    "size",
                    f"{source.name} exceeds {format_file_size(policy.max_file_size)} limit",
                    source.name,
                )
            )
            continue

        if not is_allowed_type(source.name, source.mime_type, policy.allowed_file_types):
            result.notices.append(
                AdmissionNotice("type", f"{source.name} is not an allowed file type", source.name)
            )
            continue

        result.admitted.append(
            PendingUploadItem(source=source, relative_path=candidate.relative_path)
        )

    return result
