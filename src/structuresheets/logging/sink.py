"""Filesystem NDJSON event sink with concurrency-safe appends.

Events are appended as one JSON line per event to
``logs/events.ndjson`` under the project directory.  Writes use
``json.dumps(sort_keys=True)`` for deterministic output.

Each append holds an exclusive ``fcntl.flock`` on the file and reads
hold a shared lock.  On platforms without ``fcntl`` (Windows), locking
is skipped with a stderr warning.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

from structuresheets.logging.events import SheetEvent

# Try to import fcntl for file locking (Unix only)
try:
    import fcntl

    _HAS_FCNTL = True
except ImportError:
    _HAS_FCNTL = False
    print(
        "[structuresheets] fcntl not available; log file locking disabled",
        file=sys.stderr,
    )

# Default tail-read size (2 MB)
_DEFAULT_TAIL_BYTES = 2 * 1024 * 1024

_MAX_READ_LIMIT = 2000


class EventSink:
    """Append-only NDJSON log writer with file locking."""

    def __init__(self, project_dir: Path, *, fsync: bool = False, tail_bytes: int | None = None) -> None:
        self.logs_dir = Path(project_dir) / "logs"
        self._fsync = fsync
        self._tail_bytes = tail_bytes if tail_bytes is not None else _DEFAULT_TAIL_BYTES
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def global_path(self) -> Path:
        return self.logs_dir / "events.ndjson"

    def write(self, event: SheetEvent) -> None:
        """Append *event* to the global log."""
        line = json.dumps(event.model_dump(mode="json"), sort_keys=True, default=str) + "\n"
        self._append(self.global_path, line)

    def read_global(
        self,
        *,
        level: str | None = None,
        event_type: str | None = None,
        structure_id: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Read events from the global log, most-recent-first, with filters.

        Uses tail-style reading to bound memory usage on large log files.
        """
        limit = min(limit, _MAX_READ_LIMIT)
        events = self._read_ndjson(self.global_path)

        if level:
            events = [e for e in events if e.get("level") == level]
        if event_type:
            events = [e for e in events if e.get("event_type") == event_type]
        if structure_id:
            events = [
                e for e in events
                if e.get("context", {}).get("structure_id") == structure_id
            ]

        events.reverse()
        return events[:limit]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _append(self, path: Path, line: str) -> None:
        """Append a single line to *path* under exclusive file lock."""
        path.parent.mkdir(parents=True, exist_ok=True)

        if _HAS_FCNTL:
            fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_APPEND)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                os.write(fd, line.encode("utf-8"))
                if self._fsync:
                    os.fsync(fd)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
        else:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
                if self._fsync:
                    f.flush()
                    os.fsync(f.fileno())

    def _read_ndjson(self, path: Path) -> list[dict[str, Any]]:
        """Parse the tail of an NDJSON file, skipping malformed lines."""
        if not path.exists():
            return []

        events: list[dict[str, Any]] = []
        for line in self._read_tail(path).splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return events

    def _read_tail(self, path: Path) -> str:
        """Read up to the last ``self._tail_bytes`` of a file under shared lock."""
        if _HAS_FCNTL:
            fd = os.open(str(path), os.O_RDONLY)
            try:
                fcntl.flock(fd, fcntl.LOCK_SH)
                file_size = os.fstat(fd).st_size
                if file_size <= self._tail_bytes:
                    data = os.read(fd, file_size)
                else:
                    os.lseek(fd, file_size - self._tail_bytes, os.SEEK_SET)
                    data = _drop_partial_line(os.read(fd, self._tail_bytes))
                return data.decode("utf-8", errors="replace")
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)

        try:
            file_size = path.stat().st_size
        except OSError:
            return ""
        with open(path, "rb") as f:
            if file_size > self._tail_bytes:
                f.seek(file_size - self._tail_bytes)
                return _drop_partial_line(f.read()).decode("utf-8", errors="replace")
            return f.read().decode("utf-8", errors="replace")


def _drop_partial_line(data: bytes) -> bytes:
    idx = data.find(b"\n")
    return data[idx + 1:] if idx >= 0 else data
