"""Path-aware file collection for the three ways files reach a batch.

Every source is normalised into a list of ``FileCandidate`` objects, each a
local file plus the posix-style path it should keep inside the batch:

- a plain file selection keeps only the file name,
- a folder selection already knows each file's path and passes it through,
- a drop may mix files and folders; folders are walked recursively.
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from werkzeug.datastructures import FileStorage

from dealdocs.services.models import SourceFile
from dealdocs.services.utils import normalize_relative_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileCandidate:
    """A collected file that has not been through admission yet."""

    source: SourceFile
    relative_path: str


def from_file_selection(paths: Iterable[str | Path]) -> list[FileCandidate]:
    """Collect files picked one by one; the relative path is the bare name."""
    candidates = []
    for path in paths:
        source = SourceFile.from_path(path)
        candidates.append(FileCandidate(source=source, relative_path=source.name))
    return candidates


def from_folder_selection(entries: Iterable[tuple[str | Path, str]]) -> list[FileCandidate]:
    """Collect files from a directory picker that reports each file's path.

    Args:
        entries: (local path, relative path) pairs, e.g. "docs/q3/model.xlsx"
    """
    candidates = []
    for path, relative_path in entries:
        cleaned = normalize_relative_path(relative_path)
        source = SourceFile.from_path(path, name=cleaned.rsplit("/", 1)[-1] or None)
        candidates.append(FileCandidate(source=source, relative_path=cleaned or source.name))
    return candidates


def _walk_directory(directory: Path, prefix: str) -> list[FileCandidate]:
    """Recursively list every file under a directory, depth first."""
    found: list[FileCandidate] = []
    for child in sorted(directory.iterdir(), key=lambda p: p.name):
        child_path = f"{prefix}/{child.name}" if prefix else child.name
        if child.is_dir():
            found.extend(_walk_directory(child, child_path))
        elif child.is_file():
            found.append(FileCandidate(SourceFile.from_path(child), child_path))
    return found


def from_drop(paths: Sequence[str | Path]) -> list[FileCandidate]:
    """Collect a dropped mix of files and folders.

    Folders are flattened in one pass before anything is returned, keeping
    the dropped folder's own name as the first path segment. If the walk
    fails, only the top-level plain files are kept, without folder structure.
    An empty result is not an error; callers report "no files found".
    """
    entries = [Path(p) for p in paths]
    try:
        candidates: list[FileCandidate] = []
        for entry in entries:
            if entry.is_dir():
                candidates.extend(_walk_directory(entry, entry.name))
            elif entry.is_file():
                candidates.append(FileCandidate(SourceFile.from_path(entry), entry.name))
        return candidates
    except OSError as e:
        logger.warning("Folder walk failed, falling back to top-level files: %s", e)

    fallback: list[FileCandidate] = []
    for entry in entries:
        try:
            if entry.is_file():
                fallback.append(FileCandidate(SourceFile.from_path(entry), entry.name))
        except OSError:
            logger.warning("Skipping unreadable dropped entry: %s", entry, exc_info=True)
    return fallback


def save_uploaded_files(
    storages: Sequence[FileStorage],
    temp_dir: str | Path,
    relative_paths: Sequence[str] | None = None,
) -> list[FileCandidate]:
    """Spool browser-uploaded files to a temp dir and collect them.

    The folder path comes from the parallel ``relative_paths`` list when
    given, otherwise from the submitted filename, which carries subdirectory
    segments when the browser was in directory-selection mode.
    """
    candidates: list[FileCandidate] = []
    root = Path(temp_dir)
    for index, storage in enumerate(storages):
        if not storage.filename:
            continue
        supplied = None
        if relative_paths and index < len(relative_paths):
            supplied = relative_paths[index]
        relative_path = normalize_relative_path(supplied or storage.filename)
        if not relative_path:
            continue

        # Each file gets its own slot so identical relative paths cannot collide
        target = root / str(index) / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        storage.save(target)

        name = relative_path.rsplit("/", 1)[-1]
        source = SourceFile.from_path(target, name=name)
        if storage.mimetype and storage.mimetype != "application/octet-stream":
            source = SourceFile(source.path, source.name, source.size, storage.mimetype)
        candidates.append(FileCandidate(source=source, relative_path=relative_path))
    return candidates
