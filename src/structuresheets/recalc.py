"""Formula recalculation over a document snapshot.

:class:`RecalculationEngine` re-evaluates formulas and writes the results
back into the structures that own them.  A change to some cells is
propagated by :meth:`RecalculationEngine.trigger_recalculation`, a
bounded fixed-point loop: each pass recalculates the dependents of the
currently dirty cells, and every structure whose visible value changed
dirties its own cells (and those of its dependents) for the next pass.

The iteration cap is the only protection against dependency cycles.
Hitting it is logged and emitted as a warning event; values are left as
the last pass computed them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from structuresheets.formulas.engine import FormulaEngine
from structuresheets.formulas.graph import CellCoord, DependencyManager
from structuresheets.formulas.values import FormulaValue, ValueKind, format_scalar, format_value
from structuresheets.logging.events import (
    RECALC_CAP_REACHED,
    EventType,
    emit_info,
    emit_warning,
)
from structuresheets.models import Structure
from structuresheets.positions import PositionIndex
from structuresheets.store import StructureStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 50


def _child_ids(structure: Structure) -> list[str]:
    """Populated ``item_ids`` slots, row-major for tables."""
    if structure.type == "array":
        return [i for i in structure.item_ids if i]
    if structure.type == "table":
        return [i for row in structure.item_ids for i in row if i]
    return []


class RecalculationEngine:
    """Recalculate formulas and write their results into a store.

    The engine keeps its own current ``store``; read it back after
    :meth:`trigger_recalculation` or :meth:`recalculate_all`.  The
    position index is never changed by recalculation.
    """

    def __init__(
        self,
        store: StructureStore,
        index: PositionIndex,
        dependency_manager: DependencyManager,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self.store = store
        self.index = index
        self.dependency_manager = dependency_manager
        self.max_iterations = max_iterations
        self.iterations = 0

    # ------------------------------------------------------------------
    # Single structure
    # ------------------------------------------------------------------

    def recalculate_structure(self, structure_id: str) -> bool:
        """Re-evaluate one structure's formula and store the result.

        Returns:
            True if the visible value of the structure (or of any child
            cell it writes) changed.  An ERROR result only sets
            ``formula_error`` and counts as unchanged.
        """
        structure = self.store.get(structure_id)
        if structure is None or not structure.formula:
            return False

        engine = FormulaEngine(self.store, self.index)
        value = engine.evaluate_formula(structure.formula)
        self.dependency_manager.add_formula(structure_id, structure.formula, engine.get_dependencies())

        if value.is_error:
            if structure.formula_error != value.value:
                logger.debug("formula error in %s: %s", structure_id, value.value)
                emit_warning(
                    EventType.formula_error,
                    str(value.value),
                    {"structure_id": structure_id, "formula": structure.formula},
                )
            self.store = self.store.set(structure.model_copy(update={"formula_error": value.value}))
            return False

        if structure.type == "cell":
            text = format_value(value)
            changed = text != (structure.value or "")
            self.store = self.store.set(
                structure.model_copy(update={"value": text, "formula_error": None})
            )
            return changed

        if structure.formula_error is not None:
            structure = structure.model_copy(update={"formula_error": None})
            self.store = self.store.set(structure)

        if structure.type in ("array", "table"):
            return self._write_children(structure, value)

        # Template instances hold no value of their own
        return False

    def _write_children(self, container: Structure, value: FormulaValue) -> bool:
        child_ids = _child_ids(container)
        if value.kind == ValueKind.RANGE:
            texts = [format_scalar(v) for v in value.value]
        else:
            texts = [format_value(value)] * len(child_ids)

        changed = False
        updates = []
        for child_id, text in zip(child_ids, texts):
            child = self.store.get(child_id)
            if child is None or child.type != "cell":
                continue
            if (child.value or "") != text:
                changed = True
                updates.append(child.model_copy(update={"value": text}))
        if updates:
            self.store = self.store.set_many(updates)
        return changed

    # ------------------------------------------------------------------
    # Cascades
    # ------------------------------------------------------------------

    def _cells_to_dirty(self, structure_id: str) -> list[CellCoord]:
        cells: list[CellCoord] = []
        ids = [structure_id, *self.dependency_manager.get_dependents_of_structure(structure_id)]
        for sid in ids:
            structure = self.store.get(sid)
            if structure is not None:
                cells.extend(structure.iter_cells())
        return cells

    def trigger_recalculation(self, changed_cells: Iterable[CellCoord]) -> StructureStore:
        """Propagate a change to *changed_cells* through every dependent formula.

        Returns:
            The updated store (also available as ``self.store``).
        """
        dirty: list[CellCoord] = list(dict.fromkeys(changed_cells))
        recalculated = 0
        self.iterations = 0

        while dirty and self.iterations < self.max_iterations:
            self.iterations += 1
            order = self.dependency_manager.get_enhanced_calculation_order(dirty, self.store, self.index)
            processed: set[str] = set()
            next_dirty: dict[CellCoord, None] = {}
            for structure_id in order:
                if structure_id in processed:
                    continue
                processed.add(structure_id)
                recalculated += 1
                if self.recalculate_structure(structure_id):
                    next_dirty.update(dict.fromkeys(self._cells_to_dirty(structure_id)))
            dirty = list(next_dirty)

        if dirty:
            logger.warning(
                "Recalculation stopped after %d iterations; a dependency cycle is likely",
                self.iterations,
            )
            emit_warning(
                EventType.recalc_iteration_cap,
                f"Recalculation stopped after {self.iterations} iterations",
                {"iterations": self.iterations, "pending_cells": len(dirty)},
                error_code=RECALC_CAP_REACHED,
            )
        else:
            emit_info(
                EventType.recalc_completed,
                f"Recalculated {recalculated} formula(s) in {self.iterations} pass(es)",
                {"iterations": self.iterations, "recalculated": recalculated},
            )
        return self.store

    def recalculate_all(self) -> StructureStore:
        """Evaluate every formula once, then cascade whatever changed.

        Also (re)registers every formula's dependencies, so this is the
        way to bring a freshly loaded document up to date.
        """
        formula_ids = [s.id for s in self.store.with_formulas()]
        changed: dict[CellCoord, None] = {}
        for structure_id in self.dependency_manager.topological_sort(formula_ids):
            if self.recalculate_structure(structure_id):
                changed.update(dict.fromkeys(self._cells_to_dirty(structure_id)))
        return self.trigger_recalculation(changed)
