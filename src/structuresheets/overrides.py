"""Per-instance override bookkeeping for template instances.

All helpers return a new ``TemplateStructure``; the instance passed in
is never modified.  Cell overrides are keyed by the ``"row-col"``
position relative to the instance's top-left corner.
"""

from __future__ import annotations

from typing import Any

from structuresheets.models import Position, TemplateOverrides, TemplateStructure


def _overrides_of(instance: TemplateStructure) -> TemplateOverrides:
    return instance.overrides or TemplateOverrides()


def _with_overrides(instance: TemplateStructure, **changes: Any) -> TemplateStructure:
    overrides = _overrides_of(instance).model_copy(update=changes)
    return instance.model_copy(update={"overrides": overrides})


def mark_structure_override(
    instance: TemplateStructure, structure_id: str, changes: dict[str, Any]
) -> TemplateStructure:
    """Merge *changes* into the partial override recorded for *structure_id*."""
    current = _overrides_of(instance).structures
    merged = {**current.get(structure_id, {}), **changes}
    return _with_overrides(instance, structures={**current, structure_id: merged})


def mark_cell_override(instance: TemplateStructure, position: str, value: str) -> TemplateStructure:
    current = _overrides_of(instance).cell_data
    return _with_overrides(instance, cell_data={**current, position: value})


def mark_structure_deleted(instance: TemplateStructure, structure_id: str) -> TemplateStructure:
    """Record *structure_id* as removed from this instance (drops its override)."""
    overrides = _overrides_of(instance)
    structures = {k: v for k, v in overrides.structures.items() if k != structure_id}
    deleted = tuple(i for i in overrides.deleted_structures if i != structure_id) + (structure_id,)
    return _with_overrides(instance, structures=structures, deleted_structures=deleted)


def mark_structure_added(instance: TemplateStructure, structure_id: str) -> TemplateStructure:
    overrides = _overrides_of(instance)
    added = tuple(i for i in overrides.added_structures if i != structure_id) + (structure_id,)
    return _with_overrides(instance, added_structures=added)


def is_structure_overridden(instance: TemplateStructure, structure_id: str) -> bool:
    return instance.overrides is not None and structure_id in instance.overrides.structures


def is_cell_overridden(instance: TemplateStructure, position: str) -> bool:
    return instance.overrides is not None and position in instance.overrides.cell_data


def is_structure_deleted(instance: TemplateStructure, structure_id: str) -> bool:
    return instance.overrides is not None and structure_id in instance.overrides.deleted_structures


def is_structure_added(instance: TemplateStructure, structure_id: str) -> bool:
    return instance.overrides is not None and structure_id in instance.overrides.added_structures


def get_structure_override(instance: TemplateStructure, structure_id: str) -> dict[str, Any] | None:
    if instance.overrides is None:
        return None
    return instance.overrides.structures.get(structure_id)


def get_cell_override(instance: TemplateStructure, position: str) -> str | None:
    if instance.overrides is None:
        return None
    return instance.overrides.cell_data.get(position)


def clear_all_overrides(instance: TemplateStructure) -> TemplateStructure:
    """Reset an instance to its template's content."""
    return instance.model_copy(update={"overrides": TemplateOverrides()})


def clear_structure_override(instance: TemplateStructure, structure_id: str) -> TemplateStructure:
    current = _overrides_of(instance).structures
    return _with_overrides(
        instance, structures={k: v for k, v in current.items() if k != structure_id}
    )


def clear_cell_override(instance: TemplateStructure, position: str) -> TemplateStructure:
    current = _overrides_of(instance).cell_data
    return _with_overrides(
        instance, cell_data={k: v for k, v in current.items() if k != position}
    )


def convert_to_absolute_position(relative: Position, template_position: Position) -> Position:
    return Position(row=template_position.row + relative.row, col=template_position.col + relative.col)


def convert_to_relative_position(absolute: Position, template_position: Position) -> Position:
    return Position(row=absolute.row - template_position.row, col=absolute.col - template_position.col)


def relative_key(instance: TemplateStructure, row: int, col: int) -> str:
    """Override key for the absolute coordinate ``(row, col)``."""
    relative = convert_to_relative_position(Position(row=row, col=col), instance.start_position)
    return f"{relative.row}-{relative.col}"
