"""Document session: the current snapshot plus its formula bookkeeping.

A :class:`Document` owns one ``StructureStore``/``PositionIndex`` pair
and the :class:`~structuresheets.formulas.graph.DependencyManager` for
it.  Every mutating method runs the pure operation from
:mod:`structuresheets.structures` or :mod:`structuresheets.mutation`,
adopts the new snapshot only when the operation succeeded, then
recalculates whatever the change touched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from structuresheets import mutation, structures
from structuresheets.formulas.engine import evaluate
from structuresheets.formulas.graph import CellCoord, DependencyManager
from structuresheets.formulas.refs import Dependency
from structuresheets.formulas.values import FormulaValue
from structuresheets.logging.events import EventType, emit_info
from structuresheets.models import Dimensions, Direction, Position, Structure, parse_structure
from structuresheets.positions import PositionIndex, build_position_index, get_structure_at_position
from structuresheets.project import DEFAULT_CONFIG
from structuresheets.recalc import RecalculationEngine
from structuresheets.store import MutationResult, Snapshot, StructureStore
from structuresheets.templates import (
    TemplateLibrary,
    add_instantiated_template,
    instantiate_template,
    validate_template_instantiation,
)

logger = logging.getLogger(__name__)


def _changed_cells(before: StructureStore, after: StructureStore) -> list[CellCoord]:
    """Coordinates covered, before or after, by any structure that differs."""
    cells: dict[CellCoord, None] = {}
    for sid in set(before) | set(after):
        old, new = before.get(sid), after.get(sid)
        if old == new:
            continue
        for s in (old, new):
            if s is not None:
                cells.update(dict.fromkeys(s.iter_cells()))
    return sorted(cells)


class Document:
    """One editable sheet.

    Args:
        store: Initial structures (empty by default).
        index: Position index for *store*; rebuilt from it when omitted.
        templates: Stored templates available to :meth:`instantiate_template`.
        config: Settings merged over ``DEFAULT_CONFIG`` (grid bounds and
            the recalculation iteration cap are read from here).
    """

    def __init__(
        self,
        store: StructureStore | None = None,
        index: PositionIndex | None = None,
        templates: TemplateLibrary | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.store = store if store is not None else StructureStore()
        self.index = index if index is not None else build_position_index(self.store.values())
        self.templates = templates if templates is not None else TemplateLibrary()
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.dependencies = DependencyManager()

    @classmethod
    def from_data(
        cls,
        structure_data: Iterable[dict[str, Any]],
        formulas: dict[str, str] | None = None,
        *,
        templates: TemplateLibrary | None = None,
        config: dict[str, Any] | None = None,
    ) -> Document:
        """Build a document from serialized structures and recalculate it.

        Raises:
            ValueError: On a duplicate structure id, or a formula for an
                unknown id.
            pydantic.ValidationError: If a structure fails validation.
        """
        parsed: list[Structure] = []
        seen: set[str] = set()
        for data in structure_data:
            structure = parse_structure(data)
            if structure.id in seen:
                raise ValueError(f"Duplicate structure id: {structure.id!r}")
            seen.add(structure.id)
            parsed.append(structure)

        store = StructureStore(parsed)
        for sid, formula in (formulas or {}).items():
            if sid not in store:
                raise ValueError(f"Formula given for unknown structure {sid!r}")
            store = store.set(store[sid].model_copy(update={"formula": formula}))

        doc = cls(store, build_position_index(parsed), templates=templates, config=config)
        doc.recalculate_all()
        return doc

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def max_rows(self) -> int:
        return self.config["max_rows"]

    @property
    def max_cols(self) -> int:
        return self.config["max_cols"]

    @property
    def snapshot(self) -> Snapshot:
        return Snapshot(self.store, self.index)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _recalc_engine(self) -> RecalculationEngine:
        return RecalculationEngine(
            self.store,
            self.index,
            self.dependencies,
            max_iterations=self.config["max_recalc_iterations"],
        )

    def _cascade(self, cells: Iterable[CellCoord]) -> None:
        cells = list(cells)
        if cells:
            self.store = self._recalc_engine().trigger_recalculation(cells)

    def _sync_formulas(self) -> None:
        """Bring the dependency graph in line with the formulas in the store."""
        for sid in self.dependencies.formula_ids():
            structure = self.store.get(sid)
            if structure is None or not structure.formula:
                self.dependencies.remove_formula(sid)
        unregistered = [s.id for s in self.store.with_formulas() if s.id not in self.dependencies]
        if unregistered:
            engine = self._recalc_engine()
            for sid in unregistered:
                engine.recalculate_structure(sid)
            self.store = engine.store

    def _adopt(self, result: MutationResult) -> list[CellCoord]:
        """Take the result's snapshot if it succeeded; return the cells it touched."""
        if not result.success:
            return []
        changed = _changed_cells(self.store, result.store)
        self.store, self.index = result.store, result.index
        self._sync_formulas()
        return changed

    def _require(self, structure_id: str) -> Structure:
        structure = self.store.get(structure_id)
        if structure is None:
            raise KeyError(f"Structure {structure_id!r} not found")
        return structure

    # ------------------------------------------------------------------
    # Structures
    # ------------------------------------------------------------------

    def create_structure(
        self,
        structure_type: str,
        name: str | None,
        position: Position,
        dimensions: Dimensions,
    ) -> Structure | None:
        """Create a structure and place it on the grid.

        Arrays and tables adopt the cells already in their rectangle.

        Returns:
            The placed structure, or ``None`` if it could not be built or
            its rectangle is occupied.
        """
        structure = structures.create_structure(
            structure_type, name, position, dimensions, self.store, self.index
        )
        if structure is None:
            return None
        result = self.place_structure(structure)
        return structure if result.success else None

    def place_structure(self, structure: Structure) -> MutationResult:
        result = structures.place_structure(structure, self.store, self.index)
        if not result.success:
            logger.debug("placing %s failed: %s", structure.id, result.reason)
            return result
        changed = self._adopt(result)
        emit_info(
            EventType.structure_created,
            f"Created {structure.type} '{structure.name or structure.id}'",
            {
                "structure_id": structure.id,
                "type": structure.type,
                "row": structure.start_position.row,
                "col": structure.start_position.col,
                "rows": structure.dimensions.rows,
                "cols": structure.dimensions.cols,
            },
        )
        self._cascade(changed)
        return result

    def delete_structure(self, structure_id: str) -> MutationResult:
        result = structures.delete_structure(structure_id, self.store, self.index)
        if not result.success:
            return result
        changed = self._adopt(result)
        emit_info(
            EventType.structure_deleted,
            f"Deleted structure '{structure_id}'",
            {"structure_id": structure_id},
        )
        self._cascade(changed)
        return result

    def set_structure_name(self, structure_id: str, name: str | None) -> Structure:
        """Rename a structure; formulas naming it (old or new name) are re-evaluated.

        Raises:
            KeyError: If *structure_id* is unknown.
        """
        structure = self._require(structure_id)
        renamed = structure.model_copy(update={"name": name or None})
        self.store = self.store.set(renamed)
        self.recalculate_all()
        return renamed

    rename_structure = set_structure_name

    def move_structure(
        self,
        structure_id: str,
        target: Position,
        overwrite_existing: bool = False,
    ) -> MutationResult:
        """Move a structure (and everything nested in it) to *target*.

        Child cells of arrays and tables are recreated under new ids.
        """
        structure = self.store.get(structure_id)
        if structure is None:
            return MutationResult(self.store, self.index, False, mutation.NOT_FOUND_REASON)
        result = mutation.move_structure(
            structure,
            target,
            self.store,
            self.index,
            overwrite_existing,
            max_rows=self.max_rows,
            max_cols=self.max_cols,
        )
        if not result.success:
            logger.debug("moving %s failed: %s", structure_id, result.reason)
            return result
        changed = self._adopt(result)
        emit_info(
            EventType.structure_moved,
            f"Moved '{structure_id}' to ({target.row}, {target.col})",
            {
                "structure_id": structure_id,
                "from_row": structure.start_position.row,
                "from_col": structure.start_position.col,
                "row": target.row,
                "col": target.col,
            },
        )
        self._cascade(changed)
        return result

    def expand_structure(self, structure_id: str, direction: Direction, amount: int = 1) -> MutationResult:
        """Grow a structure, pushing neighbours out of the way."""
        result = mutation.expand_structure_with_pushing(
            structure_id,
            direction,
            amount,
            self.store,
            self.index,
            max_rows=self.max_rows,
            max_cols=self.max_cols,
        )
        if not result.success:
            return result
        changed = self._adopt(result)
        emit_info(
            EventType.structure_expanded,
            f"Expanded '{structure_id}' {direction} by {amount}",
            {"structure_id": structure_id, "direction": direction, "amount": amount},
        )
        self._cascade(changed)
        return result

    def instantiate_template(
        self,
        template_id: str,
        target: Position,
        dimensions: Dimensions | None = None,
    ) -> MutationResult:
        """Copy a stored template onto empty ground at *target*.

        Raises:
            KeyError: If *template_id* is not in the document's library.
        """
        result = instantiate_template(self.templates, template_id, target, dimensions)
        instance = result.template_structure
        end = instance.end_position
        if not (
            0 <= target.row and end.row < self.max_rows and 0 <= target.col and end.col < self.max_cols
        ):
            return MutationResult(self.store, self.index, False, "Template would extend beyond the grid")
        conflicts = validate_template_instantiation(target, instance.dimensions, self.store, self.index)
        if conflicts:
            return MutationResult(self.store, self.index, False, "Template area is occupied")
        added = add_instantiated_template(result, self.store, self.index)
        self._cascade(self._adopt(added))
        return added

    # ------------------------------------------------------------------
    # Values and formulas
    # ------------------------------------------------------------------

    def get_cell_value(self, row: int, col: int) -> str:
        return structures.get_cell_value(row, col, self.store, self.index)

    def get_structure_at(self, row: int, col: int) -> Structure | None:
        return get_structure_at_position(row, col, self.store, self.index)

    def set_cell_value(self, row: int, col: int, value: str) -> str | None:
        """Type *value* into a grid coordinate.

        Text starting with ``=`` becomes the formula of the cell there;
        anything else is a literal that replaces the cell's formula.

        Returns:
            Id of the cell written, or ``None`` when the value was stored
            as a template override.
        """
        if value.startswith("="):
            write = structures.set_cell_value(row, col, self.get_cell_value(row, col), self.store, self.index)
            self.store, self.index = write.store, write.index
            if write.structure_id is None:
                # Overrides hold text only
                return None
            self.set_formula(write.structure_id, value)
            return write.structure_id

        write = structures.set_cell_value(row, col, value, self.store, self.index)
        self.store, self.index = write.store, write.index
        if write.structure_id is not None and self.store[write.structure_id].formula:
            self.clear_formula(write.structure_id)
        self._cascade([(row, col)])
        return write.structure_id

    def set_formula(self, structure_id: str, formula: str) -> Structure:
        """Attach *formula* to a structure, evaluate it and cascade.

        Raises:
            KeyError: If *structure_id* is unknown.
        """
        structure = self._require(structure_id)
        self.store = self.store.set(structure.model_copy(update={"formula": formula, "formula_error": None}))
        engine = self._recalc_engine()
        changed = engine.recalculate_structure(structure_id)
        self.store = engine.store
        if changed:
            self._cascade(self.store[structure_id].iter_cells())
        return self.store[structure_id]

    def clear_formula(self, structure_id: str) -> Structure:
        """Detach the formula from a structure, keeping its current value.

        Raises:
            KeyError: If *structure_id* is unknown.
        """
        structure = self._require(structure_id)
        cleared = structure.model_copy(update={"formula": None, "formula_error": None})
        self.store = self.store.set(cleared)
        self.dependencies.remove_formula(structure_id)
        return cleared

    def evaluate(self, formula: str) -> tuple[FormulaValue, list[Dependency]]:
        """Evaluate *formula* against the current snapshot without storing it."""
        return evaluate(formula, self.store, self.index)

    def recalculate_all(self) -> None:
        self.store = self._recalc_engine().recalculate_all()

    def grid_values(self, rows: int, cols: int) -> list[list[str]]:
        """Display values for the top-left ``rows`` x ``cols`` block."""
        return [[self.get_cell_value(r, c) for c in range(cols)] for r in range(rows)]
