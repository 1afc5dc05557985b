"""JSONL event log for batch uploads and the object backend.

Events go to hive-partitioned daily files, one JSON object per line:
logs/json/year=YYYY/month=MM/day=DD/events.jsonl. Every finished batch run
also leaves a per-batch JSONL summary and a CSV with one row per item.
"""

import csv
import io
import json
import re
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dealdocs.config import get_settings

_HIVE_DATE = re.compile(r"year=(\d{4})/month=(\d{2})/day=(\d{2})")

CSV_COLUMNS = [
    "batch_id",
    "item_id",
    "filename",
    "relative_path",
    "size_bytes",
    "size_formatted",
    "mime_type",
    "status",
    "progress",
    "remote_object_path",
    "error",
]


class LogService:
    """JSONL log service with thread-safe file writes."""

    def __init__(self) -> None:
        self._write_lock = threading.Lock()

    def _get_log_dir(self) -> Path:
        """Get the configured log directory, creating it if needed."""
        log_dir = get_settings().log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir

    def _get_hive_dir(self, subdir: str, dt: datetime) -> Path:
        """Build (and create) logs/<subdir>/year=YYYY/month=MM/day=DD/."""
        hive_dir = (
            self._get_log_dir()
            / subdir
            / f"year={dt.year:04d}"
            / f"month={dt.month:02d}"
            / f"day={dt.day:02d}"
        )
        hive_dir.mkdir(parents=True, exist_ok=True)
        return hive_dir

    @staticmethod
    def _extract_date_from_hive_path(path: Path) -> str | None:
        """Return the YYYY-MM-DD encoded in a hive-partitioned path, if any."""
        match = _HIVE_DATE.search(path.as_posix())
        if match:
            return f"{match.group(1)}-{match.group(2)}-{match.group(3)}"
        return None

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append a log entry to the current day's JSONL file.

        Args:
            level: Log level (INFO, WARNING, ERROR)
            category: Event category (app, batch, upload, storage, settings, session, sync)
            event: Machine-readable event name (snake_case)
            message: Human-readable message
            metadata: Optional additional data
        """
        now = datetime.now(UTC)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": level.upper(),
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata

        line = json.dumps(entry, default=str)

        with self._write_lock:
            log_file = self._get_hive_dir("json", now) / "events.jsonl"
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def info(
        self, category: str, event: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        """Log an INFO-level event."""
        self.log("INFO", category, event, message, metadata)

    def warning(
        self, category: str, event: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        """Log a WARNING-level event."""
        self.log("WARNING", category, event, message, metadata)

    def error(
        self, category: str, event: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        """Log an ERROR-level event."""
        self.log("ERROR", category, event, message, metadata)

    def save_batch_jsonl(
        self, batch_id: str, summary: dict[str, Any], completed_at: datetime
    ) -> Path:
        """Write the per-batch JSONL summary next to the day's events."""
        out_path = self._get_hive_dir("json", completed_at) / f"batch-{batch_id}.jsonl"
        line = json.dumps(summary, default=str)
        with self._write_lock:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(line + "\n")
        return out_path

    def save_batch_csv(self, batch_id: str, items: list[dict[str, Any]], completed_at: datetime) -> Path:
        """Write a CSV with one row per batch item.

        Args:
            batch_id: The batch ID
            items: Item dicts as produced by PendingUploadItem.to_dict()
            completed_at: When the batch run finished

        Returns:
            Path to the written CSV file
        """
        hive_dir = self._get_hive_dir("csv", completed_at)
        out_path = hive_dir / f"batch-summary-{completed_at:%H%M%S}-{batch_id[:8]}.csv"

        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(CSV_COLUMNS)
        for item in items:
            writer.writerow([
                batch_id,
                item["id"],
                item["filename"],
                item["relative_path"],
                item["size"],
                item["size_formatted"],
                item["mime_type"],
                item["status"],
                item["progress"],
                item["remote_object_path"] or "",
                item["error"] or "",
            ])

        with self._write_lock:
            with open(out_path, "w", encoding="utf-8", newline="") as fh:
                fh.write(buf.getvalue())
        return out_path

    def _describe_file(self, path: Path, log_dir: Path, file_type: str) -> dict[str, Any]:
        return {
            "date": self._extract_date_from_hive_path(path),
            "filename": path.name,
            "path": str(path),
            "relative_path": path.relative_to(log_dir).as_posix(),
            "size_bytes": path.stat().st_size,
            "type": file_type,
        }

    def list_log_files(self) -> list[dict[str, Any]]:
        """List all JSONL and CSV log files, newest first within each type."""
        log_dir = self._get_log_dir()
        result: list[dict[str, Any]] = []
        for subdir, pattern, file_type in (("json", "*.jsonl", "jsonl"), ("csv", "*.csv", "csv")):
            root = log_dir / subdir
            if root.exists():
                for path in sorted(root.rglob(pattern), reverse=True):
                    result.append(self._describe_file(path, log_dir, file_type))
        return result

    def _event_files(self, date: str | None = None) -> list[Path]:
        json_dir = self._get_log_dir() / "json"
        if date:
            try:
                dt = datetime.strptime(date, "%Y-%m-%d")
            except ValueError:
                return []
            path = (
                json_dir
                / f"year={dt.year:04d}"
                / f"month={dt.month:02d}"
                / f"day={dt.day:02d}"
                / "events.jsonl"
            )
            return [path] if path.exists() else []
        if not json_dir.exists():
            return []
        return sorted(json_dir.rglob("events.jsonl"), reverse=True)

    @staticmethod
    def _iter_entries(log_file: Path) -> Iterator[dict[str, Any]]:
        """Yield parsed entries from one file, skipping blank or corrupt lines."""
        try:
            with open(log_file, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError:
                        continue
        except OSError:
            return

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Read and filter log entries with pagination, newest first."""
        search_lower = search.lower() if search else None
        entries: list[dict[str, Any]] = []
        for log_file in self._event_files(date):
            for entry in self._iter_entries(log_file):
                if level and entry.get("level", "").upper() != level.upper():
                    continue
                if category and entry.get("category") != category:
                    continue
                if search_lower and not (
                    search_lower in entry.get("message", "").lower()
                    or search_lower in entry.get("event", "").lower()
                ):
                    continue
                entries.append(entry)

        entries.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        return {
            "entries": entries[offset : offset + limit],
            "total": len(entries),
            "offset": offset,
            "limit": limit,
        }

    def get_log_stats(self) -> dict[str, Any]:
        """Get counts by level and category plus date range and file totals."""
        level_counts: dict[str, int] = {}
        category_counts: dict[str, int] = {}
        total_entries = 0
        today_count = 0
        total_size = 0
        today_str = datetime.now(UTC).strftime("%Y-%m-%d")
        dates: set[str] = set()

        event_files = self._event_files()
        for log_file in event_files:
            total_size += log_file.stat().st_size
            date_str = self._extract_date_from_hive_path(log_file)
            if date_str:
                dates.add(date_str)
            for entry in self._iter_entries(log_file):
                total_entries += 1
                if date_str == today_str:
                    today_count += 1
                lvl = entry.get("level", "UNKNOWN")
                level_counts[lvl] = level_counts.get(lvl, 0) + 1
                cat = entry.get("category", "unknown")
                category_counts[cat] = category_counts.get(cat, 0) + 1

        csv_dir = self._get_log_dir() / "csv"
        ordered = sorted(dates)
        return {
            "total_entries": total_entries,
            "today_entries": today_count,
            "total_size_bytes": total_size,
            "level_counts": level_counts,
            "category_counts": category_counts,
            "date_range": {
                "earliest": ordered[0] if ordered else None,
                "latest": ordered[-1] if ordered else None,
            },
            "file_count": len(event_files),
            "csv_count": len(list(csv_dir.rglob("*.csv"))) if csv_dir.exists() else 0,
        }

    def sync_logs_to_s3(self, s3_client: Any, bucket: str, prefix: str = "logs/") -> dict[str, Any]:
        """Upload new or grown log files to S3.

        Sizes of already-synced files are kept in .sync_state.json so a file
        is only re-sent when it changed.
        """
        log_dir = self._get_log_dir()
        sync_state_file = log_dir / ".sync_state.json"

        sync_state: dict[str, int] = {}
        if sync_state_file.exists():
            try:
                with open(sync_state_file, encoding="utf-8") as f:
                    sync_state = json.load(f)
            except (json.JSONDecodeError, OSError):
                sync_state = {}

        files = [Path(f["path"]) for f in self.list_log_files()]
        synced = 0
        skipped = 0
        errors: list[str] = []

        for log_file in files:
            rel_path = log_file.relative_to(log_dir).as_posix()
            current_size = log_file.stat().st_size
            if current_size == sync_state.get(rel_path, 0):
                skipped += 1
                continue
            try:
                s3_client.upload_file(str(log_file), bucket, f"{prefix}{rel_path}")
                sync_state[rel_path] = current_size
                synced += 1
            except Exception as e:
                errors.append(f"{rel_path}: {e}")

        try:
            with open(sync_state_file, "w", encoding="utf-8") as f:
                json.dump(sync_state, f, indent=2)
        except OSError:
            errors.append(".sync_state.json: could not be written")

        self.info(
            "sync",
            "log_sync_completed",
            f"Synced {synced} log files to S3",
            {"synced": synced, "skipped": skipped, "errors": len(errors)},
        )

        return {
            "success": len(errors) == 0,
            "synced": synced,
            "skipped": skipped,
            "errors": errors,
            "total_files": len(files),
        }


_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Get the singleton LogService instance."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
