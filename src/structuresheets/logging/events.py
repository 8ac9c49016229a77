"""Structured event schema and module-level emit helpers.

All timestamps use UTC ISO-8601 with ``Z`` suffix.  The ``emit()``
family of functions is safe to call from any context -- failures are
swallowed and printed to stderr.
"""

from __future__ import annotations

import sys
import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # Structure lifecycle
    structure_created = "structure_created"
    structure_deleted = "structure_deleted"
    structure_moved = "structure_moved"
    structure_expanded = "structure_expanded"
    expansion_rejected = "expansion_rejected"

    # Formulas and recalculation
    formula_error = "formula_error"
    recalc_completed = "recalc_completed"
    recalc_iteration_cap = "recalc_iteration_cap"

    # Templates
    template_instantiated = "template_instantiated"


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

INVALID_ARRAY_DIMENSIONS = "invalid_array_dimensions"
PUSH_OUT_OF_BOUNDS = "push_out_of_bounds"
EXPANSION_NOT_ALLOWED = "expansion_not_allowed"
STRUCTURE_NOT_FOUND = "structure_not_found"
RECALC_CAP_REACHED = "recalc_cap_reached"


# ---------------------------------------------------------------------------
# Context sanitizing
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 256


def sanitize_context(context: dict[str, Any]) -> dict[str, Any]:
    """Return a JSON-friendly copy of *context* with long strings truncated.

    Formula text and cell values are user content and can be arbitrarily
    long; anything over 256 characters is cut and marked.
    """
    return _sanitize_dict(context)


def _sanitize_dict(d: dict[str, Any]) -> dict[str, Any]:
    return {str(k): _sanitize_value(v) for k, v in d.items()}


def _sanitize_value(v: Any) -> Any:
    if isinstance(v, dict):
        return _sanitize_dict(v)
    if isinstance(v, (list, tuple, set, frozenset)):
        return [_sanitize_value(item) for item in v]
    if isinstance(v, str) and len(v) > _MAX_VALUE_LEN:
        return v[:_MAX_VALUE_LEN] + "...[truncated]"
    return v


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    """Return current UTC timestamp in ISO-8601 with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SheetEvent(BaseModel):
    """A single structured log event."""

    schema_version: int = 1
    ts: str = Field(default_factory=_utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


# ---------------------------------------------------------------------------
# Module-level sink reference
# ---------------------------------------------------------------------------

# Lazily initialised when ``set_project_dir`` is called.
_sink: Any = None  # EventSink | None
_project_dir: Any = None


def set_project_dir(project_dir: Any) -> None:
    """Configure the module-level event sink for a project directory.

    If it is never called, ``emit()`` silently discards events.

    Reads ``logging_fsync`` and ``logging_tail_bytes`` from the project
    config (``structuresheets.yaml``) to configure the sink.
    """
    global _sink, _project_dir
    from pathlib import Path

    from structuresheets.logging.sink import EventSink
    from structuresheets.project import load_project_config

    _project_dir = Path(project_dir)

    fsync = False
    tail_bytes = None
    try:
        cfg = load_project_config(_project_dir)
        fsync = bool(cfg.get("logging_fsync", False))
        tb = cfg.get("logging_tail_bytes")
        if tb is not None:
            tail_bytes = int(tb)
    except (OSError, ValueError):
        _stderr_warning("could not read logging options; using defaults")

    _sink = EventSink(_project_dir, fsync=fsync, tail_bytes=tail_bytes)


def clear_project_dir() -> None:
    """Detach the module-level sink; later events are discarded."""
    global _sink, _project_dir
    _sink = None
    _project_dir = None


def _get_sink() -> Any:
    """Return the module-level sink, or None."""
    return _sink


# ---------------------------------------------------------------------------
# Rate-limited stderr warnings
# ---------------------------------------------------------------------------

_last_stderr_ts: float = 0.0
_STDERR_INTERVAL_SECS = 60.0


def _stderr_warning(msg: str) -> None:
    """Print a warning to stderr, rate-limited to one per 60 seconds."""
    global _last_stderr_ts
    now = time.monotonic()
    if now - _last_stderr_ts < _STDERR_INTERVAL_SECS:
        return
    _last_stderr_ts = now
    try:
        print(f"[structuresheets] {msg}", file=sys.stderr)
    except Exception:
        pass


# ---------------------------------------------------------------------------
# Safe emit helpers
# ---------------------------------------------------------------------------


def emit(event: SheetEvent) -> None:
    """Write an event to the global log.

    **Never raises.**  On failure, prints a rate-limited warning to stderr.
    """
    try:
        sink = _get_sink()
        if sink is None:
            return
        event = event.model_copy(update={"context": sanitize_context(event.context)})
        sink.write(event)
    except Exception:
        _stderr_warning(f"logging failed: {traceback.format_exc()}")


def emit_info(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
) -> None:
    """Convenience: emit an info-level event."""
    emit(
        SheetEvent(
            level=EventLevel.info,
            event_type=event_type,
            message=message,
            context=context or {},
        )
    )


def emit_warning(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
) -> None:
    """Convenience: emit a warning-level event."""
    emit(
        SheetEvent(
            level=EventLevel.warning,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        )
    )


def emit_error(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
) -> None:
    """Convenience: emit an error-level event."""
    emit(
        SheetEvent(
            level=EventLevel.error,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        )
    )
