"""Structure creation, lookup and occupancy rules.

Everything here is a pure function over a ``StructureStore`` /
``PositionIndex`` pair.  Functions that change the grid return a new
snapshot; the inputs are never modified.
"""

from __future__ import annotations

import logging
import uuid
from typing import NamedTuple

from structuresheets.logging.events import (
    INVALID_ARRAY_DIMENSIONS,
    EventType,
    emit_warning,
)
from structuresheets.models import (
    ArrayStructure,
    CellStructure,
    Dimensions,
    Position,
    Structure,
    TableStructure,
    TemplateStructure,
)
from structuresheets.overrides import get_cell_override, mark_cell_override, relative_key
from structuresheets.positions import PositionIndex, get_structure_at_position
from structuresheets.store import MutationResult, StructureStore

logger = logging.getLogger(__name__)


class GridValue(NamedTuple):
    row: int
    col: int
    value: str


class Conflict(NamedTuple):
    row: int
    col: int
    existing_value: str
    new_value: str


class CellWrite(NamedTuple):
    """Result of a direct cell write.

    ``structure_id`` is the cell that now holds the value, or ``None``
    when the value was recorded as a template override.
    """

    store: StructureStore
    index: PositionIndex
    structure_id: str | None


def new_structure_id() -> str:
    return str(uuid.uuid4())


def new_cell_id(row: int, col: int) -> str:
    """Mint an id for a cell created at ``(row, col)``."""
    return f"cell-{row}-{col}-{uuid.uuid4().hex[:12]}"


def make_cell(row: int, col: int, value: str = "", *, cell_id: str | None = None) -> CellStructure:
    return CellStructure(
        id=cell_id or new_cell_id(row, col),
        start_position=Position(row=row, col=col),
        dimensions=Dimensions(rows=1, cols=1),
        value=value,
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def create_structure(
    structure_type: str,
    name: str | None,
    position: Position,
    dimensions: Dimensions,
    store: StructureStore | None = None,
    index: PositionIndex | None = None,
) -> Structure | None:
    """Build a new cell, array or table (not yet placed on the grid).

    An array's direction follows its shape: a single column is vertical,
    otherwise a single row is horizontal.  When *store* and *index* are
    given, arrays and tables adopt the cells already inside their
    rectangle as children.

    Returns:
        The new structure, or ``None`` for an array that is neither one
        row nor one column wide, or for an unsupported type.
    """
    name = name or None

    if structure_type == "cell":
        return CellStructure(
            id=new_structure_id(),
            start_position=position,
            dimensions=dimensions,
            name=name,
        )

    if structure_type == "array":
        if dimensions.cols == 1:
            direction = "vertical"
        elif dimensions.rows == 1:
            direction = "horizontal"
        else:
            logger.warning("Invalid array dimensions: %sx%s", dimensions.rows, dimensions.cols)
            emit_warning(
                EventType.structure_created,
                f"Invalid array dimensions: {dimensions.rows}x{dimensions.cols}",
                {"rows": dimensions.rows, "cols": dimensions.cols, "name": name},
                error_code=INVALID_ARRAY_DIMENSIONS,
            )
            return None
        if store is not None and index is not None:
            item_ids = initialize_item_ids_from_range(position, dimensions, store, index, "array")
        else:
            item_ids = (None,) * (dimensions.cols if direction == "horizontal" else dimensions.rows)
        return ArrayStructure(
            id=new_structure_id(),
            start_position=position,
            dimensions=dimensions,
            name=name,
            direction=direction,
            item_ids=item_ids,
        )

    if structure_type == "table":
        if store is not None and index is not None:
            table_ids = initialize_item_ids_from_range(position, dimensions, store, index, "table")
        else:
            table_ids = tuple((None,) * dimensions.cols for _ in range(dimensions.rows))
        return TableStructure(
            id=new_structure_id(),
            start_position=position,
            dimensions=dimensions,
            name=name,
            item_ids=table_ids,
            col_header_levels=1,
            row_header_levels=0,
        )

    logger.debug("create_structure: unsupported type %r", structure_type)
    return None


def initialize_item_ids_from_range(
    start: Position,
    dimensions: Dimensions,
    store: StructureStore,
    index: PositionIndex,
    structure_type: str,
) -> tuple:
    """Collect the ids of cells already sitting in a rectangle.

    Arrays get one slot per unit along their long axis (a single row is
    read across, anything else down); tables get a row-major grid.
    Coordinates without a cell yield ``None``.
    """

    def cell_id_at(row: int, col: int) -> str | None:
        found = get_structure_at_position(row, col, store, index)
        if found is not None and found.type == "cell":
            return found.id
        return None

    if structure_type == "array":
        if dimensions.rows == 1:
            return tuple(cell_id_at(start.row, start.col + i) for i in range(dimensions.cols))
        return tuple(cell_id_at(start.row + i, start.col) for i in range(dimensions.rows))

    return tuple(
        tuple(cell_id_at(start.row + r, start.col + c) for c in range(dimensions.cols))
        for r in range(dimensions.rows)
    )


# ---------------------------------------------------------------------------
# Container helpers
# ---------------------------------------------------------------------------


def get_table_cells(table_id: str, store: StructureStore) -> list[CellStructure]:
    table = store.get(table_id)
    if table is None or table.type != "table":
        return []
    cells = []
    for row_ids in table.item_ids:
        for item_id in row_ids:
            cell = store.get(item_id) if item_id else None
            if cell is not None and cell.type == "cell":
                cells.append(cell)
    return cells


def get_array_cells(array_id: str, store: StructureStore) -> list[CellStructure]:
    array = store.get(array_id)
    if array is None or array.type != "array":
        return []
    cells = []
    for item_id in array.item_ids:
        cell = store.get(item_id) if item_id else None
        if cell is not None and cell.type == "cell":
            cells.append(cell)
    return cells


def get_cell_from_table(
    table_id: str, row: int, col: int, store: StructureStore
) -> CellStructure | None:
    """Return the child cell at table-relative ``(row, col)``, if any."""
    table = store.get(table_id)
    if table is None or table.type != "table":
        return None
    if row < 0 or row >= len(table.item_ids) or col < 0 or col >= len(table.item_ids[row]):
        return None
    item_id = table.item_ids[row][col]
    cell = store.get(item_id) if item_id else None
    if cell is None or cell.type != "cell":
        return None
    return cell


def array_slot_index(array: ArrayStructure, row: int, col: int) -> int:
    """Slot index of grid coordinate ``(row, col)`` along *array*'s axis."""
    if array.direction == "horizontal":
        return col - array.start_position.col
    return row - array.start_position.row


def slot_item_id(container: Structure, row: int, col: int) -> str | None:
    """Id held by the container slot covering ``(row, col)``, if any."""
    if container.type == "table":
        r = row - container.start_position.row
        c = col - container.start_position.col
        if 0 <= r < len(container.item_ids) and 0 <= c < len(container.item_ids[r]):
            return container.item_ids[r][c]
        return None
    if container.type == "array":
        i = array_slot_index(container, row, col)
        if 0 <= i < len(container.item_ids):
            return container.item_ids[i]
    return None


def with_slot(container: Structure, row: int, col: int, item_id: str | None) -> Structure:
    """Return *container* with the slot covering ``(row, col)`` set to *item_id*."""
    if container.type == "table":
        r = row - container.start_position.row
        c = col - container.start_position.col
        rows = [list(ids) for ids in container.item_ids]
        while len(rows) < container.dimensions.rows:
            rows.append([])
        for ids in rows:
            ids.extend([None] * (container.dimensions.cols - len(ids)))
        rows[r][c] = item_id
        return container.model_copy(update={"item_ids": tuple(tuple(ids) for ids in rows)})

    i = array_slot_index(container, row, col)
    ids = list(container.item_ids)
    ids.extend([None] * (container.length - len(ids)))
    ids[i] = item_id
    return container.model_copy(update={"item_ids": tuple(ids)})


def is_table_header(row: int, col: int, store: StructureStore, index: PositionIndex) -> bool:
    """Return True if ``(row, col)`` is a header cell of the table exposed there."""
    table = get_structure_at_position(row, col, store, index)
    if table is None or table.type != "table":
        return False
    start = table.start_position
    header_rows = table.col_header_levels or 0
    header_cols = table.row_header_levels or 0
    in_header_rows = header_rows > 0 and start.row <= row < start.row + header_rows
    in_header_cols = header_cols > 0 and start.col <= col < start.col + header_cols
    return in_header_rows or in_header_cols


def get_header_level(row: int, table: TableStructure) -> int:
    """Header level of *row* within *table*, or -1 outside the header rows."""
    header_rows = table.col_header_levels or 1
    relative = row - table.start_position.row
    if relative < 0 or relative >= header_rows:
        return -1
    return relative


# ---------------------------------------------------------------------------
# Cell values
# ---------------------------------------------------------------------------


def _template_instance_at(
    row: int, col: int, store: StructureStore, index: PositionIndex
) -> TemplateStructure | None:
    for structure in index.structures_at(row, col, store):
        if structure.type == "template":
            return structure
    return None


def get_cell_value(row: int, col: int, store: StructureStore, index: PositionIndex) -> str:
    """Return the display value at a grid coordinate.

    A template instance's cell override wins first.  Otherwise the
    structures at the coordinate are walked outermost first: a cell
    answers directly (a merged cell only at its top-left corner), a
    table or array answers through its slot's child cell, and an array
    of templates answers with the nested instance's override.  Returns
    ``""`` when nothing holds a value.
    """
    instance = _template_instance_at(row, col, store, index)
    if instance is not None:
        override = get_cell_override(instance, relative_key(instance, row, col))
        if override is not None:
            return override

    for structure in index.structures_at(row, col, store):
        if structure.type == "cell":
            if structure.area > 1:
                start = structure.start_position
                if row == start.row and col == start.col:
                    return structure.value or ""
                return ""
            return structure.value or ""

        if structure.type == "table":
            item_id = slot_item_id(structure, row, col)
            cell = store.get(item_id) if item_id else None
            if cell is not None and cell.type == "cell":
                return cell.value or ""

        elif structure.type == "array":
            item_id = slot_item_id(structure, row, col)
            nested = store.get(item_id) if item_id else None
            if nested is None:
                continue
            if structure.content_type == "cells":
                if nested.type == "cell":
                    return nested.value or ""
            elif nested.type == "template" and nested.contains(row, col):
                override = get_cell_override(nested, relative_key(nested, row, col))
                return override if override is not None else ""

    return ""


# ---------------------------------------------------------------------------
# Occupancy rules
# ---------------------------------------------------------------------------


def _blocks(source_type: str, target_type: str) -> bool:
    """Return True if a *source_type* structure may not sit on a *target_type* one."""
    # Cells cannot be placed on top of existing cells
    if source_type == "cell" and target_type == "cell":
        return True
    # Tables and arrays cannot be placed on tables, arrays or cells
    if source_type in ("table", "array") and target_type in ("table", "array", "cell"):
        return True
    # Templates go on empty ground only, and nothing goes on a template
    if source_type == "template" or target_type == "template":
        return True
    return False


def is_valid_move_target(
    source: Structure,
    target: Position,
    store: StructureStore,
    index: PositionIndex,
) -> bool:
    """Check the occupancy rules for moving *source* to *target*.

    Coordinates the source already covers are ignored, so a structure
    may always be shifted within its own footprint.  A cell may land
    inside a table or array; it is absorbed as a child.
    """
    end_row = target.row + source.dimensions.rows - 1
    end_col = target.col + source.dimensions.cols - 1
    for row in range(target.row, end_row + 1):
        for col in range(target.col, end_col + 1):
            if source.contains(row, col):
                continue
            for existing in index.structures_at(row, col, store):
                if _blocks(source.type, existing.type):
                    return False
    return True


def _child_ids(structure: Structure) -> set[str]:
    if structure.type == "table":
        return {i for ids in structure.item_ids for i in ids if i}
    if structure.type == "array":
        return {i for i in structure.item_ids if i}
    return set()


def can_place_structure(structure: Structure, store: StructureStore, index: PositionIndex) -> bool:
    """Check the occupancy rules for adding *structure* at its own position.

    Children the new structure adopts through ``item_ids`` do not count
    as obstacles.
    """
    adopted = _child_ids(structure)
    for row, col in structure.iter_cells():
        for existing in index.structures_at(row, col, store):
            if existing.id == structure.id or existing.id in adopted:
                continue
            if _blocks(structure.type, existing.type):
                return False
    return True


def place_structure(structure: Structure, store: StructureStore, index: PositionIndex) -> MutationResult:
    """Add *structure* to the grid if the occupancy rules allow it.

    A 1x1 cell dropped into an empty slot of a table or array becomes
    that container's child.
    """
    if structure.id in store:
        return MutationResult(store, index, False, f"Structure '{structure.id}' already exists")
    if not can_place_structure(structure, store, index):
        return MutationResult(store, index, False, "Target area is occupied")

    row, col = structure.start_position.row, structure.start_position.col
    new_store = store.set(structure)
    if structure.type == "cell" and structure.area == 1:
        for container in index.structures_at(row, col, store):
            if container.type == "table" or (
                container.type == "array" and container.content_type == "cells"
            ):
                if slot_item_id(container, row, col) is None:
                    new_store = new_store.set(with_slot(container, row, col, structure.id))
    return MutationResult(new_store, index.add(structure))


def delete_structure(structure_id: str, store: StructureStore, index: PositionIndex) -> MutationResult:
    """Remove a structure and clear any container slot that referenced it.

    Children of a deleted container stay in place; the parent only held
    references to them.
    """
    structure = store.get(structure_id)
    if structure is None:
        return MutationResult(store, index, False, "Structure not found")

    new_store = store.delete(structure_id)
    updated = []
    for other in new_store.values():
        if other.type == "table" and structure_id in _child_ids(other):
            ids = tuple(tuple(None if i == structure_id else i for i in row) for row in other.item_ids)
            updated.append(other.model_copy(update={"item_ids": ids}))
        elif other.type == "array" and structure_id in _child_ids(other):
            ids = tuple(None if i == structure_id else i for i in other.item_ids)
            updated.append(other.model_copy(update={"item_ids": ids}))
    if updated:
        new_store = new_store.set_many(updated)
    return MutationResult(new_store, index.remove(structure))


def set_cell_value(
    row: int, col: int, value: str, store: StructureStore, index: PositionIndex
) -> CellWrite:
    """Write a literal value at a grid coordinate.

    The value lands, in order of preference, in an existing template
    override, the child cell of a table or cell array covering the
    coordinate (creating and linking one if the slot is empty), an
    existing cell, a new override on a template instance, or a new
    standalone cell.
    """
    instance = _template_instance_at(row, col, store, index)
    if instance is not None and get_cell_override(instance, relative_key(instance, row, col)) is not None:
        updated = mark_cell_override(instance, relative_key(instance, row, col), value)
        return CellWrite(store.set(updated), index, None)

    structures = index.structures_at(row, col, store)
    containers = [s for s in structures if s.type == "table"] + [
        s for s in structures if s.type == "array" and s.content_type == "cells"
    ]
    for container in containers:
        item_id = slot_item_id(container, row, col)
        existing = store.get(item_id) if item_id else None
        if existing is not None and existing.type == "cell":
            return CellWrite(store.set(existing.model_copy(update={"value": value})), index, existing.id)
        if item_id is None:
            cell = _cell_at(structures, row, col) or make_cell(row, col, value)
            cell = cell.model_copy(update={"value": value})
            new_index = index if cell.id in store else index.add(cell)
            new_store = store.set_many([cell, with_slot(container, row, col, cell.id)])
            return CellWrite(new_store, new_index, cell.id)

    cell = _cell_at(structures, row, col)
    if cell is not None:
        return CellWrite(store.set(cell.model_copy(update={"value": value})), index, cell.id)

    if instance is not None:
        updated = mark_cell_override(instance, relative_key(instance, row, col), value)
        return CellWrite(store.set(updated), index, None)

    cell = make_cell(row, col, value)
    return CellWrite(store.set(cell), index.add(cell), cell.id)


def _cell_at(structures: list[Structure], row: int, col: int) -> CellStructure | None:
    # Innermost cell wins
    for structure in reversed(structures):
        if structure.type == "cell":
            return structure
    return None


# ---------------------------------------------------------------------------
# Move conflicts
# ---------------------------------------------------------------------------


def get_cells_in_structure(
    structure: Structure, store: StructureStore, index: PositionIndex
) -> list[GridValue]:
    """Values covered by *structure*; a merged cell reports only its top-left."""
    start = structure.start_position
    if structure.type == "cell" and structure.area > 1:
        return [GridValue(start.row, start.col, structure.value or "")]
    return [
        GridValue(row, col, get_cell_value(row, col, store, index))
        for row, col in structure.iter_cells()
    ]


def detect_conflicts(
    target: Position,
    structure_cells: list[GridValue],
    store: StructureStore,
    index: PositionIndex,
    source: Structure | None = None,
) -> list[Conflict]:
    """List target coordinates whose non-empty value would be overwritten.

    A conflict needs both values to be non-empty and different.  Target
    coordinates inside *source*'s own footprint are skipped.
    """
    conflicts: list[Conflict] = []

    if source is not None and source.type == "cell" and source.area > 1:
        new_value = source.value or ""
        for r in range(source.dimensions.rows):
            for c in range(source.dimensions.cols):
                row, col = target.row + r, target.col + c
                if source.contains(row, col):
                    continue
                existing = get_cell_value(row, col, store, index)
                if existing and new_value and existing != new_value:
                    conflicts.append(Conflict(row, col, existing, new_value))
        return conflicts

    if not structure_cells:
        return conflicts
    origin = structure_cells[0]
    for cell in structure_cells:
        row = target.row + (cell.row - origin.row)
        col = target.col + (cell.col - origin.col)
        if source is not None and source.contains(row, col):
            continue
        existing = get_cell_value(row, col, store, index)
        if existing and cell.value and existing != cell.value:
            conflicts.append(Conflict(row, col, existing, cell.value))
    return conflicts
