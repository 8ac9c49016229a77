"""Stored templates and their instances on the grid.

A template is a saved group of structures plus loose cell values, with
positions relative to the template's top-left corner.  Instantiating it
copies everything to a target position under fresh ids and wraps the
copies in a ``TemplateStructure`` that later records per-instance
overrides (see :mod:`structuresheets.overrides`).

The serialized form, keyed by template id, is::

    {"structures": [[id, structure], ...], "cellData": {"row-col": value, ...}}
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator, Mapping
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from structuresheets.logging.events import EventType, emit_info
from structuresheets.models import (
    ArrayStructure,
    Dimensions,
    Direction,
    Position,
    Structure,
    TemplateOverrides,
    TemplateStructure,
    get_end_position,
    parse_position_key,
    parse_structure,
    position_key,
)
from structuresheets.positions import PositionIndex
from structuresheets.store import MutationResult, StructureStore
from structuresheets.structures import make_cell, set_cell_value

DEFAULT_TEMPLATE_DIMENSIONS = Dimensions(rows=2, cols=2)


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------


class StoredTemplate(BaseModel):
    """One template's saved content, positions relative to its origin."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    structures: dict[str, Any] = Field(default_factory=dict)
    cell_data: dict[str, str] = Field(default_factory=dict, alias="cellData")
    version: int = 1

    @field_validator("structures", mode="before")
    @classmethod
    def _pairs_to_mapping(cls, v: Any) -> Any:
        # Stored as a list of [id, structure] pairs
        if isinstance(v, list):
            out = {}
            for pair in v:
                if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                    raise ValueError("structures must be a list of [id, structure] pairs")
                out[pair[0]] = pair[1]
            return out
        return v

    @field_validator("structures", mode="after")
    @classmethod
    def _parse_structures(cls, v: dict[str, Any]) -> dict[str, Any]:
        return {
            sid: s if isinstance(s, BaseModel) else parse_structure(s)
            for sid, s in v.items()
        }

    def dimensions(self) -> Dimensions:
        return get_template_dimensions_from_structures(self.structures)


class TemplateLibrary(Mapping[str, StoredTemplate]):
    """Read-only collection of stored templates keyed by template id."""

    def __init__(self, templates: Mapping[str, StoredTemplate] | None = None) -> None:
        self._templates = dict(templates or {})

    def __getitem__(self, template_id: str) -> StoredTemplate:
        return self._templates[template_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TemplateLibrary:
        """Build a library from the serialized ``{template_id: {...}}`` form.

        Raises:
            ValueError: If *data* is not a mapping.
            pydantic.ValidationError: If a template's content is malformed.
        """
        if not isinstance(data, Mapping):
            raise ValueError("templates must be a mapping of template id to template data")
        return cls({tid: StoredTemplate.model_validate(entry) for tid, entry in data.items()})

    def to_dict(self) -> dict[str, Any]:
        return {
            tid: {
                "structures": [
                    [sid, s.model_dump(by_alias=True, exclude_none=True, mode="json")]
                    for sid, s in t.structures.items()
                ],
                "cellData": dict(t.cell_data),
            }
            for tid, t in self._templates.items()
        }


# ---------------------------------------------------------------------------
# Instantiation
# ---------------------------------------------------------------------------


class TemplateInstantiation(NamedTuple):
    template_structure: TemplateStructure
    nested_structures: list[Structure]
    # Absolute "row-col" -> value
    cell_data: dict[str, str]


def _remap_item_ids(structure: Structure, id_map: dict[str, str]) -> Structure:
    if structure.type == "array":
        ids = tuple(id_map.get(i, i) if i else None for i in structure.item_ids)
        return structure.model_copy(update={"item_ids": ids})
    if structure.type == "table":
        ids = tuple(tuple(id_map.get(i, i) if i else None for i in row) for row in structure.item_ids)
        return structure.model_copy(update={"item_ids": ids})
    return structure


def instantiate_template(
    library: Mapping[str, StoredTemplate],
    template_id: str,
    target: Position,
    dimensions: Dimensions | None = None,
    template_version: int | None = None,
) -> TemplateInstantiation:
    """Copy a stored template to *target* under fresh ids.

    Args:
        library: Where the template is stored.
        template_id: Template to copy.
        target: Top-left coordinate of the new instance.
        dimensions: Instance size; defaults to the bounding box of the
            template's structures.
        template_version: Version recorded on the instance; defaults to
            the stored template's version.

    Returns:
        The instance wrapper, the copied structures and the template's
        loose cell values at absolute coordinates.

    Raises:
        KeyError: If *template_id* is not in *library*.
    """
    stored = library[template_id]
    dimensions = dimensions or stored.dimensions()

    instance = TemplateStructure(
        id=f"template-instance-{uuid.uuid4().hex[:12]}",
        start_position=target,
        dimensions=dimensions,
        template_id=template_id,
        source_template_version=template_version or stored.version,
        overrides=TemplateOverrides(),
    )

    id_map = {old_id: f"{s.type}-{uuid.uuid4().hex[:12]}" for old_id, s in stored.structures.items()}
    nested: list[Structure] = []
    for old_id, original in stored.structures.items():
        moved = Position(
            row=target.row + original.start_position.row,
            col=target.col + original.start_position.col,
        )
        copy = original.model_copy(update={"id": id_map[old_id], "start_position": moved})
        nested.append(_remap_item_ids(copy, id_map))

    cell_data: dict[str, str] = {}
    for key, value in stored.cell_data.items():
        row, col = parse_position_key(key)
        cell_data[position_key(target.row + row, target.col + col)] = value

    return TemplateInstantiation(instance, nested, cell_data)


def validate_template_instantiation(
    target: Position,
    dimensions: Dimensions,
    store: StructureStore,
    index: PositionIndex,
) -> list[Position]:
    """Coordinates in the target rectangle that are already occupied.

    Templates only go on empty ground; an empty list means the
    instantiation is allowed.
    """
    conflicts: list[Position] = []
    for row in range(target.row, target.row + dimensions.rows):
        for col in range(target.col, target.col + dimensions.cols):
            if any(sid in store for sid in index.ids_at(row, col)):
                conflicts.append(Position(row=row, col=col))
    return conflicts


def add_instantiated_template(
    result: TemplateInstantiation,
    store: StructureStore,
    index: PositionIndex,
) -> MutationResult:
    """Insert an instantiation into the grid and write its cell values.

    A value landing on one of the copied structures goes into it; a value
    with nothing but the instance under it becomes a standalone cell.
    """
    new_store = store.set(result.template_structure).set_many(result.nested_structures)
    new_index = index.add(result.template_structure).add_many(result.nested_structures)

    for key, value in result.cell_data.items():
        if not value:
            continue
        row, col = parse_position_key(key)
        covered = [s for s in new_index.structures_at(row, col, new_store) if s.type != "template"]
        if covered:
            write = set_cell_value(row, col, value, new_store, new_index)
            new_store, new_index = write.store, write.index
        else:
            cell = make_cell(row, col, value)
            new_store, new_index = new_store.set(cell), new_index.add(cell)

    instance = result.template_structure
    emit_info(
        EventType.template_instantiated,
        f"Instantiated template '{instance.template_id}'",
        {
            "template_id": instance.template_id,
            "structure_id": instance.id,
            "row": instance.start_position.row,
            "col": instance.start_position.col,
            "nested": len(result.nested_structures),
        },
    )
    return MutationResult(new_store, new_index)


# ---------------------------------------------------------------------------
# Arrays of template instances
# ---------------------------------------------------------------------------


def is_template_array(array: ArrayStructure) -> bool:
    return array.content_type != "cells" and array.template_dimensions is not None


def calculate_array_dimensions_with_template(
    array: ArrayStructure, template_dimensions: Dimensions, instance_count: int = 1
) -> Dimensions:
    """Size of *array* holding *instance_count* instances side by side."""
    if array.direction == "horizontal":
        return Dimensions(rows=template_dimensions.rows, cols=template_dimensions.cols * instance_count)
    return Dimensions(rows=template_dimensions.rows * instance_count, cols=template_dimensions.cols)


def calculate_template_instance_position(
    array_start: Position,
    direction: str,
    template_dimensions: Dimensions,
    instance_index: int,
) -> Position:
    """Top-left of the *instance_index*-th instance within an array."""
    if direction == "horizontal":
        return Position(row=array_start.row, col=array_start.col + template_dimensions.cols * instance_index)
    return Position(row=array_start.row + template_dimensions.rows * instance_index, col=array_start.col)


def get_template_instance_count(array: ArrayStructure, template_dimensions: Dimensions) -> int:
    """How many whole instances fit in *array*'s current size."""
    if array.direction == "horizontal":
        return array.dimensions.cols // template_dimensions.cols
    return array.dimensions.rows // template_dimensions.rows


def calculate_template_array_expansion(
    array: ArrayStructure, template_dimensions: Dimensions
) -> tuple[Direction, int]:
    """Direction and amount to grow *array* by one more instance."""
    if array.direction == "horizontal":
        return "right", template_dimensions.cols
    return "down", template_dimensions.rows


def get_template_dimensions_from_structures(structures: Mapping[str, Structure]) -> Dimensions:
    """Bounding box of a template's structures (2x2 when it has none)."""
    if not structures:
        return DEFAULT_TEMPLATE_DIMENSIONS
    min_row = min(s.start_position.row for s in structures.values())
    min_col = min(s.start_position.col for s in structures.values())
    max_row = max(get_end_position(s.start_position, s.dimensions).row for s in structures.values())
    max_col = max(get_end_position(s.start_position, s.dimensions).col for s in structures.values())
    return Dimensions(rows=max_row - min_row + 1, cols=max_col - min_col + 1)
