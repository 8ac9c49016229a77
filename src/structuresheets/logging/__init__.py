"""Structured event logging for structuresheets.

Provides an event schema, a filesystem NDJSON sink, and safe emit
helpers that never raise uncaught exceptions.
"""

from structuresheets.logging.events import (
    EventLevel,
    EventType,
    SheetEvent,
    clear_project_dir,
    emit,
    emit_error,
    emit_info,
    emit_warning,
    sanitize_context,
    set_project_dir,
)
from structuresheets.logging.sink import EventSink

__all__ = [
    "EventLevel",
    "EventSink",
    "EventType",
    "SheetEvent",
    "clear_project_dir",
    "emit",
    "emit_error",
    "emit_info",
    "emit_warning",
    "sanitize_context",
    "set_project_dir",
]
