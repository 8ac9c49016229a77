"""Moving structures and growing them into occupied space.

A move carries everything nested inside the structure and every child
it references through ``item_ids``.  Child cells of arrays and tables
are re-created under fresh ids at their new coordinates; the rest keep
their ids.

Expansion claims a strip next to the structure.  Whatever sits in that
strip is pushed the same distance in the same direction, together with
everything those pushed structures would land on, transitively.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from typing import NamedTuple

from structuresheets.logging.events import (
    EXPANSION_NOT_ALLOWED,
    PUSH_OUT_OF_BOUNDS,
    STRUCTURE_NOT_FOUND,
    EventType,
    emit_warning,
)
from structuresheets.models import (
    MAX_COLS,
    MAX_ROWS,
    CellStructure,
    Dimensions,
    Direction,
    Position,
    Structure,
    is_valid_position,
)
from structuresheets.positions import PositionIndex, is_structure_contained_in
from structuresheets.store import MutationResult, StructureStore
from structuresheets.structures import new_cell_id

logger = logging.getLogger(__name__)

OUT_OF_BOUNDS_REASON = "Push operation would move structures out of bounds"
NOT_FOUND_REASON = "Structure not found"


class PositionDelta(NamedTuple):
    delta_row: int
    delta_col: int


# ---------------------------------------------------------------------------
# Move
# ---------------------------------------------------------------------------


def get_all_nested_structures(
    parent: Structure, store: StructureStore, index: PositionIndex
) -> list[Structure]:
    """Every structure lying entirely inside *parent*'s rectangle, at any depth.

    Discovery order follows a breadth-first walk; each structure is
    visited once.
    """
    nested: list[Structure] = []
    seen = {parent.id}
    visited: set[str] = set()
    queue = deque([parent])

    while queue:
        current = queue.popleft()
        if current.id in visited:
            continue
        visited.add(current.id)
        for row, col in current.iter_cells():
            for candidate in index.structures_at(row, col, store):
                if candidate.id in seen:
                    continue
                if _within(candidate, current):
                    seen.add(candidate.id)
                    nested.append(candidate)
                    queue.append(candidate)
    return nested


def _within(inner: Structure, outer: Structure) -> bool:
    inner_end = inner.end_position
    outer_end = outer.end_position
    return (
        inner.start_position.row >= outer.start_position.row
        and inner.start_position.col >= outer.start_position.col
        and inner_end.row <= outer_end.row
        and inner_end.col <= outer_end.col
    )


def get_directly_referenced_structures(parent: Structure, store: StructureStore) -> list[Structure]:
    """Structures named in *parent*'s ``item_ids`` (arrays and tables only)."""
    if parent.type == "table":
        ids: Iterable[str | None] = (i for row in parent.item_ids for i in row)
    elif parent.type == "array":
        ids = parent.item_ids
    else:
        return []

    found: list[Structure] = []
    seen: set[str] = set()
    for item_id in ids:
        if item_id and item_id not in seen and item_id in store:
            seen.add(item_id)
            found.append(store[item_id])
    return found


def calculate_position_delta(old: Position, new: Position) -> PositionDelta:
    return PositionDelta(new.row - old.row, new.col - old.col)


def apply_position_delta(structure: Structure, delta_row: int, delta_col: int) -> Structure:
    start = structure.start_position
    return structure.model_copy(
        update={"start_position": Position(row=start.row + delta_row, col=start.col + delta_col)}
    )


def _fresh_child(original: Structure, row: int, col: int) -> CellStructure:
    return CellStructure(
        id=new_cell_id(row, col),
        start_position=Position(row=row, col=col),
        dimensions=Dimensions(rows=1, cols=1),
        value=getattr(original, "value", "") or "",
        name=original.name,
        formula=original.formula,
    )


def move_structure_recursively(
    structure: Structure,
    target: Position,
    store: StructureStore,
    index: PositionIndex,
    overwrite_existing: bool = False,
    *,
    keep_ids: Iterable[str] = (),
    max_rows: int = MAX_ROWS,
    max_cols: int = MAX_COLS,
) -> MutationResult:
    """Move *structure* and everything it carries so its top-left is *target*.

    Steps: collect the structure, its nested structures and its
    referenced children; take them all off the grid; with
    *overwrite_existing*, delete whatever else sits in the destination
    rectangle (except ids in *keep_ids*); translate the movers; rebuild
    each cell array's and table's ``item_ids`` with fresh child cells
    carrying the old values; put everything back.

    An array of templates keeps referencing its instances when they
    moved along with it.
    """
    delta_row, delta_col = calculate_position_delta(structure.start_position, target)

    nested = get_all_nested_structures(structure, store, index)
    nested_ids = {s.id for s in nested}
    referenced = [
        s for s in get_directly_referenced_structures(structure, store) if s.id not in nested_ids
    ]
    movers = [structure, *nested, *referenced]
    mover_ids = {s.id for s in movers}

    new_store = store.delete_many(mover_ids)
    new_index = index.remove_many([store.get(s.id, s) for s in movers])

    if overwrite_existing:
        protected = mover_ids | set(keep_ids)
        doomed: dict[str, Structure] = {}
        end_row = target.row + structure.dimensions.rows - 1
        end_col = target.col + structure.dimensions.cols - 1
        for row in range(target.row, end_row + 1):
            for col in range(target.col, end_col + 1):
                for existing in new_index.structures_at(row, col, new_store):
                    if existing.id not in protected:
                        doomed[existing.id] = existing
        if doomed:
            logger.debug("move %s overwrites %s", structure.id, sorted(doomed))
            new_store = new_store.delete_many(doomed)
            new_index = new_index.remove_many(doomed.values())

    moved: dict[str, Structure] = {
        s.id: apply_position_delta(s, delta_row, delta_col) for s in movers
    }

    replacements: dict[str, CellStructure] = {}
    replaced: set[str] = set()

    def remap(original_id: str | None, row: int, col: int) -> str | None:
        if not is_valid_position(row, col, max_rows, max_cols):
            return None
        original = store.get(original_id) if original_id else None
        if original is None:
            return None
        fresh = replacements.get(original.id)
        if fresh is None:
            fresh = _fresh_child(original, row, col)
            replacements[original.id] = fresh
        replaced.add(original.id)
        return fresh.id

    for mover in movers:
        current = moved[mover.id]
        start = current.start_position
        if current.type == "table":
            item_ids = tuple(
                tuple(
                    remap(_table_slot(mover, r, c), start.row + r, start.col + c)
                    for c in range(current.dimensions.cols)
                )
                for r in range(current.dimensions.rows)
            )
            moved[mover.id] = current.model_copy(update={"item_ids": item_ids})
        elif current.type == "array" and current.content_type == "cells":
            item_ids = []
            for i in range(current.length):
                original_id = mover.item_ids[i] if i < len(mover.item_ids) else None
                if current.direction == "horizontal":
                    item_ids.append(remap(original_id, start.row, start.col + i))
                else:
                    item_ids.append(remap(original_id, start.row + i, start.col))
            moved[mover.id] = current.model_copy(update={"item_ids": tuple(item_ids)})
        elif current.type == "array":
            item_ids = tuple(i if i and i in moved else None for i in current.item_ids)
            moved[mover.id] = current.model_copy(update={"item_ids": item_ids})

    final = [s for sid, s in moved.items() if sid not in replaced]
    final.extend(replacements.values())

    new_store = new_store.set_many(final)
    new_index = new_index.add_many(final)
    return MutationResult(new_store, new_index)


def _table_slot(table: Structure, row: int, col: int) -> str | None:
    if row < len(table.item_ids) and col < len(table.item_ids[row]):
        return table.item_ids[row][col]
    return None


def move_structure(
    structure: Structure,
    target: Position,
    store: StructureStore,
    index: PositionIndex,
    overwrite_existing: bool = False,
    *,
    max_rows: int = MAX_ROWS,
    max_cols: int = MAX_COLS,
) -> MutationResult:
    """Move a structure already on the grid (see :func:`move_structure_recursively`).

    Fails without changing anything when the structure is unknown or the
    destination rectangle leaves the grid.
    """
    current = store.get(structure.id)
    if current is None:
        return MutationResult(store, index, False, NOT_FOUND_REASON)
    end_row = target.row + current.dimensions.rows - 1
    end_col = target.col + current.dimensions.cols - 1
    if not (
        is_valid_position(target.row, target.col, max_rows, max_cols)
        and is_valid_position(end_row, end_col, max_rows, max_cols)
    ):
        return MutationResult(store, index, False, "Target position is out of bounds")
    return move_structure_recursively(
        current, target, store, index, overwrite_existing, max_rows=max_rows, max_cols=max_cols
    )


# ---------------------------------------------------------------------------
# Collision detection
# ---------------------------------------------------------------------------


def expansion_area(structure: Structure, direction: Direction, amount: int) -> tuple[int, int, int, int]:
    """Inclusive ``(start_row, start_col, end_row, end_col)`` claimed by an expansion."""
    start = structure.start_position
    end = structure.end_position
    if direction == "left":
        return start.row, start.col - amount, end.row, start.col - 1
    if direction == "right":
        return start.row, end.col + 1, end.row, end.col + amount
    if direction == "up":
        return start.row - amount, start.col, start.row - 1, end.col
    return end.row + 1, start.col, end.row + amount, end.col


def _collect(
    area: tuple[int, int, int, int],
    store: StructureStore,
    index: PositionIndex,
    exclude_ids: set[str],
) -> list[Structure]:
    start_row, start_col, end_row, end_col = area
    found: list[Structure] = []
    seen = set(exclude_ids)
    for row in range(max(start_row, 0), end_row + 1):
        for col in range(max(start_col, 0), end_col + 1):
            for structure in index.structures_at(row, col, store):
                if structure.id not in seen:
                    seen.add(structure.id)
                    found.append(structure)
    return found


def detect_expansion_collisions(
    structure: Structure,
    direction: Direction,
    amount: int,
    store: StructureStore,
    index: PositionIndex,
) -> list[Structure]:
    """Structures overlapping the strip an expansion would claim."""
    return _collect(expansion_area(structure, direction, amount), store, index, {structure.id})


def calculate_push_direction(expansion_direction: Direction) -> Direction:
    # Structures are pushed the way the expansion grows
    return expansion_direction


def calculate_pushed_position(position: Position, direction: Direction, amount: int) -> Position:
    if direction == "left":
        return Position(row=position.row, col=position.col - amount)
    if direction == "right":
        return Position(row=position.row, col=position.col + amount)
    if direction == "up":
        return Position(row=position.row - amount, col=position.col)
    return Position(row=position.row + amount, col=position.col)


def detect_structure_collisions(
    structure: Structure,
    new_position: Position,
    store: StructureStore,
    index: PositionIndex,
    exclude_ids: Iterable[str] = (),
) -> list[Structure]:
    """Structures *structure* would overlap if its top-left were *new_position*."""
    area = (
        new_position.row,
        new_position.col,
        new_position.row + structure.dimensions.rows - 1,
        new_position.col + structure.dimensions.cols - 1,
    )
    return _collect(area, store, index, set(exclude_ids))


def find_structures_in_push_chain(
    initial: list[Structure],
    direction: Direction,
    amount: int,
    store: StructureStore,
    index: PositionIndex,
    exclude_ids: Iterable[str] = (),
) -> list[Structure]:
    """Close *initial* under the "would land on" relation.

    Each structure in the set is shifted by *amount* towards *direction*;
    anything it would then overlap joins the set.  Structures are
    returned in discovery order, each once.  Ids in *exclude_ids* (the
    expanding structure) never join.
    """
    to_push: list[Structure] = []
    pushed_ids: set[str] = set(exclude_ids)
    for structure in initial:
        if structure.id not in pushed_ids:
            pushed_ids.add(structure.id)
            to_push.append(structure)

    visited: set[str] = set()
    queue = deque(to_push)
    while queue:
        structure = queue.popleft()
        if structure.id in visited:
            continue
        visited.add(structure.id)
        landing = calculate_pushed_position(structure.start_position, direction, amount)
        for hit in detect_structure_collisions(structure, landing, store, index, pushed_ids):
            pushed_ids.add(hit.id)
            to_push.append(hit)
            queue.append(hit)
    return to_push


def validate_push_operation(
    structures: list[Structure],
    direction: Direction,
    amount: int,
    max_rows: int = MAX_ROWS,
    max_cols: int = MAX_COLS,
) -> bool:
    """Return False if any pushed structure would leave the grid."""
    for structure in structures:
        start = calculate_pushed_position(structure.start_position, direction, amount)
        end_row = start.row + structure.dimensions.rows - 1
        end_col = start.col + structure.dimensions.cols - 1
        if start.row < 0 or start.col < 0 or end_row >= max_rows or end_col >= max_cols:
            return False
    return True


def push_structures(
    structures: list[Structure],
    direction: Direction,
    amount: int,
    store: StructureStore,
    index: PositionIndex,
    *,
    keep_ids: Iterable[str] = (),
    max_rows: int = MAX_ROWS,
    max_cols: int = MAX_COLS,
) -> MutationResult:
    """Move every structure in *structures* by *amount* towards *direction*.

    A structure that already travelled as part of an earlier move (it
    was nested in, or a child of, a pushed structure) or was replaced by
    a fresh child cell is skipped.
    """
    protected = {s.id for s in structures} | set(keep_ids)
    for original in structures:
        current = store.get(original.id)
        if current is None or current.start_position != original.start_position:
            continue
        landing = calculate_pushed_position(current.start_position, direction, amount)
        store, index, _, _ = move_structure_recursively(
            current,
            landing,
            store,
            index,
            True,
            keep_ids=protected,
            max_rows=max_rows,
            max_cols=max_cols,
        )
    return MutationResult(store, index)


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------


def _expansion_problem(
    structure: Structure, direction: Direction, amount: int, max_rows: int, max_cols: int
) -> str | None:
    if amount < 1:
        return "Expansion amount must be at least 1"
    if structure.type == "array":
        if structure.direction == "horizontal" and direction in ("up", "down"):
            return "Horizontal arrays can only expand left or right"
        if structure.direction == "vertical" and direction in ("left", "right"):
            return "Vertical arrays can only expand up or down"
    start_row, start_col, end_row, end_col = expansion_area(structure, direction, amount)
    if start_row < 0 or start_col < 0 or end_row >= max_rows or end_col >= max_cols:
        return "Expansion would extend beyond the grid"
    return None


def _reject(structure_id: str, direction: str, reason: str, error_code: str) -> None:
    logger.warning("expansion of %s %s rejected: %s", structure_id, direction, reason)
    emit_warning(
        EventType.expansion_rejected,
        reason,
        {"structure_id": structure_id, "direction": direction},
        error_code=error_code,
    )


def expand_structure_normally(
    structure_id: str,
    direction: Direction,
    amount: int,
    store: StructureStore,
    index: PositionIndex,
    max_rows: int = MAX_ROWS,
    max_cols: int = MAX_COLS,
) -> MutationResult:
    """Grow a structure without looking at what it grows into.

    ``item_ids`` keep pointing at the same children: growing left or up
    shifts existing slots along and new slots are ``None``.
    """
    structure = store.get(structure_id)
    if structure is None:
        return MutationResult(store, index, False, NOT_FOUND_REASON)
    problem = _expansion_problem(structure, direction, amount, max_rows, max_cols)
    if problem:
        return MutationResult(store, index, False, problem)

    start = structure.start_position
    dims = structure.dimensions
    new_row, new_col, rows, cols = start.row, start.col, dims.rows, dims.cols
    if direction == "left":
        new_col -= amount
        cols += amount
    elif direction == "right":
        cols += amount
    elif direction == "up":
        new_row -= amount
        rows += amount
    else:
        rows += amount

    update: dict = {
        "start_position": Position(row=new_row, col=new_col),
        "dimensions": Dimensions(rows=rows, cols=cols),
    }

    if structure.type == "table":
        row_shift = amount if direction == "up" else 0
        col_shift = amount if direction == "left" else 0
        update["item_ids"] = tuple(
            tuple(_table_slot(structure, r - row_shift, c - col_shift)
                  if r - row_shift >= 0 and c - col_shift >= 0 else None
                  for c in range(cols))
            for r in range(rows)
        )
    elif structure.type == "array":
        size = cols if structure.direction == "horizontal" else rows
        shift = amount if direction in ("left", "up") else 0
        old = structure.item_ids
        update["item_ids"] = tuple(
            old[i - shift] if 0 <= i - shift < len(old) else None for i in range(size)
        )

    updated = structure.model_copy(update=update)
    new_index = index.remove(structure).add(updated)
    return MutationResult(store.set(updated), new_index)


def expand_structure_with_pushing(
    structure_id: str,
    direction: Direction,
    amount: int,
    store: StructureStore,
    index: PositionIndex,
    max_rows: int = MAX_ROWS,
    max_cols: int = MAX_COLS,
) -> MutationResult:
    """Grow a structure, pushing whatever is in the way.

    With nothing in the claimed strip this is exactly
    :func:`expand_structure_normally`.  Otherwise the push chain is
    computed, checked against the grid bounds, moved, and the structure
    then grows into the vacated strip.  Nothing changes on failure.
    """
    structure = store.get(structure_id)
    if structure is None:
        _reject(structure_id, direction, NOT_FOUND_REASON, STRUCTURE_NOT_FOUND)
        return MutationResult(store, index, False, NOT_FOUND_REASON)

    problem = _expansion_problem(structure, direction, amount, max_rows, max_cols)
    if problem:
        _reject(structure_id, direction, problem, EXPANSION_NOT_ALLOWED)
        return MutationResult(store, index, False, problem)

    # Containers of the growing structure stay put
    start = structure.start_position
    excluded = {structure_id} | {
        s.id
        for s in index.structures_at(start.row, start.col, store)
        if is_structure_contained_in(structure, s)
    }
    collisions = [
        s
        for s in detect_expansion_collisions(structure, direction, amount, store, index)
        if s.id not in excluded
    ]
    if not collisions:
        return expand_structure_normally(
            structure_id, direction, amount, store, index, max_rows, max_cols
        )

    push_direction = calculate_push_direction(direction)
    chain = find_structures_in_push_chain(
        collisions, push_direction, amount, store, index, exclude_ids=excluded
    )
    if not validate_push_operation(chain, push_direction, amount, max_rows, max_cols):
        _reject(structure_id, direction, OUT_OF_BOUNDS_REASON, PUSH_OUT_OF_BOUNDS)
        return MutationResult(store, index, False, OUT_OF_BOUNDS_REASON)

    logger.debug("expanding %s pushes %d structure(s)", structure_id, len(chain))
    pushed = push_structures(
        chain,
        push_direction,
        amount,
        store,
        index,
        keep_ids=excluded,
        max_rows=max_rows,
        max_cols=max_cols,
    )
    result = expand_structure_normally(
        structure_id, direction, amount, pushed.store, pushed.index, max_rows, max_cols
    )
    if not result.success:
        _reject(structure_id, direction, result.reason, EXPANSION_NOT_ALLOWED)
        return MutationResult(store, index, False, result.reason)
    return result
