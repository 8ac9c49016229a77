"""Dependency graph between formula-bearing structures and what they read.

Each formula is registered under the id of the structure that owns it,
together with the dependencies the engine recorded while evaluating it.
A reverse index maps every dependency key (see
:func:`~structuresheets.formulas.refs.dependency_key`) to the ids that
read it, which is what recalculation walks when something changes.

Cycles are not an error here.  :meth:`DependencyManager.topological_sort`
treats a back edge as already satisfied, so a cyclic candidate set still
comes back as a permutation, just not a meaningful one.  The
recalculation loop bounds the damage with its iteration cap.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, NamedTuple

from structuresheets.formulas.refs import (
    Dependency,
    StructureDependency,
    dependency_key,
    range_from_key,
)
from structuresheets.positions import PositionIndex, get_structures_at_position
from structuresheets.store import StructureStore


class DependencyNode(NamedTuple):
    structure_id: str
    formula: str
    dependencies: tuple[Dependency, ...]


CellCoord = tuple[int, int]


class DependencyManager:
    """Forward and reverse dependency maps for one document.

    Not a singleton: every ``Document`` owns its own instance and hands it
    to the recalculation engine.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, DependencyNode] = {}
        self._reverse: dict[str, set[str]] = {}

    def __contains__(self, structure_id: object) -> bool:
        return structure_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def add_formula(self, structure_id: str, formula: str, dependencies: Iterable[Dependency]) -> None:
        """Register (or replace) the formula owned by *structure_id*."""
        self.remove_formula(structure_id)
        node = DependencyNode(structure_id, formula, tuple(dependencies))
        self._nodes[structure_id] = node
        for dep in node.dependencies:
            self._reverse.setdefault(dependency_key(dep), set()).add(structure_id)

    def remove_formula(self, structure_id: str) -> None:
        node = self._nodes.pop(structure_id, None)
        if node is None:
            return
        for dep in node.dependencies:
            key = dependency_key(dep)
            dependents = self._reverse.get(key)
            if dependents is None:
                continue
            dependents.discard(structure_id)
            if not dependents:
                del self._reverse[key]

    def get_node(self, structure_id: str) -> DependencyNode | None:
        return self._nodes.get(structure_id)

    def formula_ids(self) -> list[str]:
        return list(self._nodes)

    def clear(self) -> None:
        self._nodes.clear()
        self._reverse.clear()

    # ------------------------------------------------------------------
    # Reverse lookups
    # ------------------------------------------------------------------

    def _dependents(self, key: str) -> list[str]:
        return sorted(self._reverse.get(key, ()))

    def get_dependents_of_cell(self, row: int, col: int) -> list[str]:
        return self._dependents(f"cell:{row}:{col}")

    def get_dependents_of_structure(self, structure_id: str) -> list[str]:
        return self._dependents(f"structure:{structure_id}")

    def get_dependents_of_table_column(self, table_name: str, column_name: str) -> list[str]:
        return self._dependents(f"tableColumn:{table_name}:{column_name}")

    def get_dependents_of_range(self, start_row: int, start_col: int, end_row: int, end_col: int) -> set[str]:
        """Dependents of any cell in the rectangle, plus every range dependency overlapping it.

        Range keys are scanned linearly; there is no spatial index.
        """
        dependents: set[str] = set()
        for row in range(start_row, end_row + 1):
            for col in range(start_col, end_col + 1):
                dependents.update(self._reverse.get(f"cell:{row}:{col}", ()))
        for key, ids in self._reverse.items():
            rng = range_from_key(key)
            if rng is not None and rng.overlaps(start_row, start_col, end_row, end_col):
                dependents.update(ids)
        return dependents

    # ------------------------------------------------------------------
    # Calculation order
    # ------------------------------------------------------------------

    def get_calculation_order(self, changed_cells: Iterable[CellCoord]) -> list[str]:
        """Structures reading any of *changed_cells* directly, in dependency order."""
        candidates: set[str] = set()
        for row, col in changed_cells:
            candidates.update(self.get_dependents_of_cell(row, col))
        return self.topological_sort(sorted(candidates))

    def get_enhanced_calculation_order(
        self,
        changed_cells: Iterable[CellCoord],
        store: StructureStore,
        index: PositionIndex,
    ) -> list[str]:
        """Like :meth:`get_calculation_order`, widened by what contains each cell.

        A changed cell also dirties formulas that read it through a range,
        through a named structure covering it, or through the table column
        it sits in.
        """
        candidates: set[str] = set()
        for row, col in changed_cells:
            candidates.update(self.get_dependents_of_range(row, col, row, col))
            for structure in get_structures_at_position(row, col, store, index):
                if structure.name:
                    candidates.update(self.get_dependents_of_structure(structure.id))
                if structure.type == "table" and structure.name and structure.col_names:
                    column = col - structure.start_position.col
                    for column_name, column_index in structure.col_names.items():
                        if column_index == column:
                            candidates.update(
                                self.get_dependents_of_table_column(structure.name, column_name)
                            )
        return self.topological_sort(sorted(candidates))

    def get_calculation_order_for_structure(self, structure_id: str) -> list[str]:
        return self.topological_sort(self.get_dependents_of_structure(structure_id))

    def topological_sort(self, structure_ids: list[str]) -> list[str]:
        """Order *structure_ids* so referenced structures come first.

        Only ``structure`` dependencies between members of *structure_ids*
        count as edges.  A back edge is ignored, so cycles yield some order
        rather than an error.
        """
        candidates = set(structure_ids)
        visited: set[str] = set()
        on_stack: set[str] = set()
        result: list[str] = []

        for root in structure_ids:
            if root in visited:
                continue
            on_stack.add(root)
            stack: list[tuple[str, list[str]]] = [(root, self._edges(root, candidates))]
            while stack:
                current, pending = stack[-1]
                advanced = False
                while pending:
                    nxt = pending.pop(0)
                    if nxt in visited or nxt in on_stack:
                        continue
                    on_stack.add(nxt)
                    stack.append((nxt, self._edges(nxt, candidates)))
                    advanced = True
                    break
                if advanced:
                    continue
                stack.pop()
                on_stack.discard(current)
                visited.add(current)
                result.append(current)
        return result

    def _edges(self, structure_id: str, candidates: set[str]) -> list[str]:
        node = self._nodes.get(structure_id)
        if node is None:
            return []
        return [
            dep.structure_id
            for dep in node.dependencies
            if isinstance(dep, StructureDependency) and dep.structure_id in candidates
        ]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_debug_info(self) -> dict[str, Any]:
        """Plain-dict dump of both maps, for the CLI and tests."""
        return {
            "nodes": [
                {
                    "structure_id": node.structure_id,
                    "formula": node.formula,
                    "dependencies": [dep.model_dump() for dep in node.dependencies],
                }
                for node in self._nodes.values()
            ],
            "reverse_deps": [
                {"key": key, "dependents": sorted(ids)}
                for key, ids in sorted(self._reverse.items())
            ],
        }
