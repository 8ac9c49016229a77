"""Tests for the formula dependency graph."""

from __future__ import annotations

import pytest

from structuresheets.formulas import (
    CellDependency,
    DependencyManager,
    RangeDependency,
    StructureDependency,
    TableColumnDependency,
)
from structuresheets.models import ArrayStructure, Dimensions, Position, TableStructure
from structuresheets.positions import build_position_index
from structuresheets.store import StructureStore
from structuresheets.structures import make_cell


@pytest.fixture
def manager():
    return DependencyManager()


class TestMaintenance:
    def test_add_and_lookup(self, manager):
        manager.add_formula("f", "=A1+B2", [CellDependency(row=0, col=0), CellDependency(row=1, col=1)])
        assert "f" in manager
        assert len(manager) == 1
        assert manager.get_node("f").formula == "=A1+B2"
        assert manager.get_dependents_of_cell(0, 0) == ["f"]
        assert manager.get_dependents_of_cell(1, 1) == ["f"]
        assert manager.get_dependents_of_cell(5, 5) == []

    def test_replacing_drops_old_dependencies(self, manager):
        manager.add_formula("f", "=A1", [CellDependency(row=0, col=0)])
        manager.add_formula("f", "=B1", [CellDependency(row=0, col=1)])
        assert manager.get_dependents_of_cell(0, 0) == []
        assert manager.get_dependents_of_cell(0, 1) == ["f"]
        assert len(manager) == 1

    def test_remove(self, manager):
        manager.add_formula("f", "=A1", [CellDependency(row=0, col=0)])
        manager.add_formula("g", "=A1", [CellDependency(row=0, col=0)])
        manager.remove_formula("f")
        manager.remove_formula("missing")
        assert manager.get_dependents_of_cell(0, 0) == ["g"]
        assert manager.formula_ids() == ["g"]

    def test_clear(self, manager):
        manager.add_formula("f", "=A1", [CellDependency(row=0, col=0)])
        manager.clear()
        assert len(manager) == 0
        assert manager.get_debug_info() == {"nodes": [], "reverse_deps": []}


class TestReverseLookups:
    def test_structure_and_column_dependents(self, manager):
        manager.add_formula("f", "=SUM(nums)", [StructureDependency(structure_id="arr")])
        manager.add_formula(
            "g", "=SUM(sales[amount])", [TableColumnDependency(table_name="sales", column_name="amount")]
        )
        assert manager.get_dependents_of_structure("arr") == ["f"]
        assert manager.get_dependents_of_table_column("sales", "amount") == ["g"]
        assert manager.get_dependents_of_table_column("sales", "qty") == []

    def test_range_overlap(self, manager):
        manager.add_formula(
            "total", "=SUM(A1:A10)", [RangeDependency(start_row=0, start_col=0, end_row=9, end_col=0)]
        )
        manager.add_formula("cell", "=C3", [CellDependency(row=2, col=2)])

        assert manager.get_dependents_of_range(4, 0, 4, 0) == {"total"}
        assert manager.get_dependents_of_range(2, 0, 2, 2) == {"total", "cell"}
        assert manager.get_dependents_of_range(20, 0, 20, 0) == set()

    def test_plain_order_ignores_ranges(self, manager):
        manager.add_formula(
            "total", "=SUM(A1:A10)", [RangeDependency(start_row=0, start_col=0, end_row=9, end_col=0)]
        )
        assert manager.get_calculation_order([(4, 0)]) == []


class TestOrdering:
    def test_referenced_structures_first(self, manager):
        manager.add_formula("a", "=SUM(b)", [StructureDependency(structure_id="b")])
        manager.add_formula("b", "=SUM(c)", [StructureDependency(structure_id="c")])
        manager.add_formula("c", "=1", [])
        assert manager.topological_sort(["a", "b", "c"]) == ["c", "b", "a"]

    def test_edges_outside_candidates_ignored(self, manager):
        manager.add_formula("a", "=SUM(b)", [StructureDependency(structure_id="b")])
        assert manager.topological_sort(["a"]) == ["a"]

    def test_cycle_still_returns_permutation(self, manager):
        manager.add_formula("x", "=SUM(y)", [StructureDependency(structure_id="y")])
        manager.add_formula("y", "=SUM(x)", [StructureDependency(structure_id="x")])
        order = manager.topological_sort(["x", "y"])
        assert sorted(order) == ["x", "y"]

    def test_calculation_order_with_cycle(self, manager):
        manager.add_formula(
            "x", "=SUM(y)+A1", [StructureDependency(structure_id="y"), CellDependency(row=0, col=0)]
        )
        manager.add_formula(
            "y", "=SUM(x)+A1", [StructureDependency(structure_id="x"), CellDependency(row=0, col=0)]
        )
        assert sorted(manager.get_calculation_order([(0, 0)])) == ["x", "y"]

    def test_order_for_structure(self, manager):
        manager.add_formula("f", "=SUM(nums)", [StructureDependency(structure_id="arr")])
        assert manager.get_calculation_order_for_structure("arr") == ["f"]

    def test_enhanced_order_widens_by_containers(self, manager):
        array = ArrayStructure(
            id="arr",
            name="nums",
            start_position=Position(row=0, col=0),
            dimensions=Dimensions(rows=2, cols=1),
            direction="vertical",
            item_ids=("c0", "c1"),
        )
        table = TableStructure(
            id="tbl",
            name="sales",
            start_position=Position(row=0, col=3),
            dimensions=Dimensions(rows=2, cols=2),
            item_ids=((None, None), (None, "t")),
            col_names={"amount": 1},
        )
        store = StructureStore(
            [array, make_cell(0, 0, "1", cell_id="c0"), make_cell(1, 0, "2", cell_id="c1"), table,
             make_cell(1, 4, "9", cell_id="t")]
        )
        index = build_position_index(store.values())

        manager.add_formula("by_name", "=SUM(nums)", [StructureDependency(structure_id="arr")])
        manager.add_formula(
            "by_range", "=SUM(A1:A2)", [RangeDependency(start_row=0, start_col=0, end_row=1, end_col=0)]
        )
        manager.add_formula(
            "by_column", "=SUM(sales[amount])", [TableColumnDependency(table_name="sales", column_name="amount")]
        )

        assert manager.get_enhanced_calculation_order([(1, 0)], store, index) == ["by_name", "by_range"]
        assert manager.get_enhanced_calculation_order([(1, 4)], store, index) == ["by_column"]
        assert manager.get_enhanced_calculation_order([(1, 3)], store, index) == []


class TestDebugInfo:
    def test_dump(self, manager):
        manager.add_formula("f", "=A1", [CellDependency(row=0, col=0)])
        info = manager.get_debug_info()
        assert info["nodes"] == [
            {"structure_id": "f", "formula": "=A1", "dependencies": [{"type": "cell", "row": 0, "col": 0}]}
        ]
        assert info["reverse_deps"] == [{"key": "cell:0:0", "dependents": ["f"]}]
