"""Tests for structure creation, cell values and occupancy rules."""

from __future__ import annotations

import logging

from structuresheets.models import (
    ArrayStructure,
    CellStructure,
    Dimensions,
    Position,
    TableStructure,
    TemplateOverrides,
    TemplateStructure,
)
from structuresheets.positions import build_position_index
from structuresheets.store import StructureStore
from structuresheets.structures import (
    create_structure,
    delete_structure,
    detect_conflicts,
    get_array_cells,
    get_cell_from_table,
    get_cell_value,
    get_cells_in_structure,
    get_header_level,
    get_table_cells,
    initialize_item_ids_from_range,
    is_table_header,
    is_valid_move_target,
    make_cell,
    new_cell_id,
    place_structure,
    set_cell_value,
)


def _snapshot(*structures):
    store = StructureStore(structures)
    return store, build_position_index(store.values())


def _pos(row, col):
    return Position(row=row, col=col)


def _dims(rows, cols):
    return Dimensions(rows=rows, cols=cols)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreateStructure:
    def test_cell(self):
        cell = create_structure("cell", "price", _pos(0, 0), _dims(1, 1))
        assert cell.type == "cell"
        assert cell.name == "price"
        assert cell.value == ""

    def test_empty_name_becomes_none(self):
        assert create_structure("cell", "", _pos(0, 0), _dims(1, 1)).name is None

    def test_array_direction_follows_shape(self):
        vertical = create_structure("array", None, _pos(0, 0), _dims(3, 1))
        horizontal = create_structure("array", None, _pos(0, 0), _dims(1, 4))
        assert vertical.direction == "vertical"
        assert vertical.item_ids == (None, None, None)
        assert horizontal.direction == "horizontal"
        assert horizontal.item_ids == (None,) * 4

    def test_invalid_array_dimensions(self, caplog):
        with caplog.at_level(logging.WARNING, logger="structuresheets.structures"):
            result = create_structure("array", "bad", _pos(0, 0), _dims(2, 2))
        assert result is None
        assert "Invalid array dimensions" in caplog.text

    def test_table_defaults(self):
        table = create_structure("table", "t", _pos(1, 1), _dims(2, 3))
        assert table.item_ids == ((None, None, None), (None, None, None))
        assert table.col_header_levels == 1
        assert table.row_header_levels == 0

    def test_unknown_type(self):
        assert create_structure("chart", None, _pos(0, 0), _dims(1, 1)) is None

    def test_array_adopts_existing_cells(self):
        store, index = _snapshot(make_cell(0, 0, "a", cell_id="a"), make_cell(2, 0, "c", cell_id="c"))
        array = create_structure("array", None, _pos(0, 0), _dims(3, 1), store, index)
        assert array.item_ids == ("a", None, "c")

    def test_table_adopts_existing_cells(self):
        store, index = _snapshot(make_cell(1, 2, "x", cell_id="x"))
        ids = initialize_item_ids_from_range(_pos(0, 1), _dims(2, 2), store, index, "table")
        assert ids == ((None, None), (None, "x"))

    def test_new_cell_id_format(self):
        cid = new_cell_id(3, 4)
        assert cid.startswith("cell-3-4-")
        assert new_cell_id(3, 4) != cid


# ---------------------------------------------------------------------------
# Cell values
# ---------------------------------------------------------------------------


class TestGetCellValue:
    def test_plain_cell(self):
        store, index = _snapshot(make_cell(0, 0, "5", cell_id="a"))
        assert get_cell_value(0, 0, store, index) == "5"
        assert get_cell_value(0, 1, store, index) == ""

    def test_merged_cell_only_at_top_left(self):
        merged = CellStructure(id="m", start_position=_pos(0, 0), dimensions=_dims(2, 2), value="big")
        store, index = _snapshot(merged)
        assert get_cell_value(0, 0, store, index) == "big"
        assert get_cell_value(1, 1, store, index) == ""

    def test_table_slot(self):
        table = TableStructure(
            id="t", start_position=_pos(0, 0), dimensions=_dims(2, 2), item_ids=((None, None), (None, "c"))
        )
        store, index = _snapshot(table, make_cell(1, 1, "v", cell_id="c"))
        assert get_cell_value(1, 1, store, index) == "v"
        assert get_cell_value(0, 0, store, index) == ""

    def test_array_slot(self):
        array = ArrayStructure(
            id="arr", start_position=_pos(0, 2), dimensions=_dims(1, 2), direction="horizontal", item_ids=(None, "c")
        )
        store, index = _snapshot(array, make_cell(0, 3, "7", cell_id="c"))
        assert get_cell_value(0, 3, store, index) == "7"

    def test_template_override_wins(self):
        instance = TemplateStructure(
            id="i",
            start_position=_pos(2, 2),
            dimensions=_dims(2, 2),
            template_id="t",
            overrides=TemplateOverrides(cell_data={"0-1": "over"}),
        )
        store, index = _snapshot(instance, make_cell(2, 3, "under", cell_id="c"))
        assert get_cell_value(2, 3, store, index) == "over"

    def test_template_array_reads_instance_override(self):
        instance = TemplateStructure(
            id="i",
            start_position=_pos(0, 0),
            dimensions=_dims(1, 2),
            template_id="t",
            overrides=TemplateOverrides(cell_data={"0-1": "nested"}),
        )
        array = ArrayStructure(
            id="arr",
            start_position=_pos(0, 0),
            dimensions=_dims(1, 2),
            direction="horizontal",
            content_type="t",
            item_ids=("i", "i"),
        )
        store = StructureStore([array, instance])
        index = build_position_index([array])
        assert get_cell_value(0, 1, store, index) == "nested"
        assert get_cell_value(0, 0, store, index) == ""


class TestTableHelpers:
    def test_table_and_array_cells(self):
        table = TableStructure(
            id="t", start_position=_pos(0, 0), dimensions=_dims(1, 2), item_ids=(("a", "b"),)
        )
        array = ArrayStructure(
            id="arr", start_position=_pos(3, 0), dimensions=_dims(2, 1), direction="vertical", item_ids=("c", None)
        )
        store, _ = _snapshot(
            table, array, make_cell(0, 0, cell_id="a"), make_cell(0, 1, cell_id="b"), make_cell(3, 0, cell_id="c")
        )
        assert [c.id for c in get_table_cells("t", store)] == ["a", "b"]
        assert [c.id for c in get_array_cells("arr", store)] == ["c"]
        assert get_cell_from_table("t", 0, 1, store).id == "b"
        assert get_cell_from_table("t", 5, 0, store) is None
        assert get_table_cells("arr", store) == []

    def test_headers(self):
        table = TableStructure(
            id="t", start_position=_pos(2, 2), dimensions=_dims(3, 3), col_header_levels=1, row_header_levels=1
        )
        store, index = _snapshot(table)
        assert is_table_header(2, 3, store, index)
        assert is_table_header(4, 2, store, index)
        assert not is_table_header(3, 3, store, index)
        assert get_header_level(2, table) == 0
        assert get_header_level(3, table) == -1


# ---------------------------------------------------------------------------
# Occupancy
# ---------------------------------------------------------------------------


class TestOccupancy:
    def test_cell_on_cell_blocked(self):
        store, index = _snapshot(make_cell(0, 0, cell_id="a"), make_cell(5, 5, cell_id="b"))
        assert not is_valid_move_target(store["b"], _pos(0, 0), store, index)
        assert is_valid_move_target(store["b"], _pos(1, 1), store, index)

    def test_cell_into_table_allowed(self):
        table = TableStructure(id="t", start_position=_pos(0, 0), dimensions=_dims(2, 2))
        store, index = _snapshot(table, make_cell(5, 5, cell_id="b"))
        assert is_valid_move_target(store["b"], _pos(1, 1), store, index)

    def test_table_on_cell_blocked(self):
        table = TableStructure(id="t", start_position=_pos(4, 4), dimensions=_dims(2, 2))
        store, index = _snapshot(table, make_cell(0, 1, cell_id="a"))
        assert not is_valid_move_target(table, _pos(0, 0), store, index)

    def test_nothing_on_template(self):
        instance = TemplateStructure(id="i", start_position=_pos(0, 0), dimensions=_dims(2, 2), template_id="t")
        store, index = _snapshot(instance, make_cell(5, 5, cell_id="b"))
        assert not is_valid_move_target(store["b"], _pos(1, 1), store, index)

    def test_own_footprint_ignored(self):
        merged = CellStructure(id="m", start_position=_pos(0, 0), dimensions=_dims(2, 2))
        store, index = _snapshot(merged)
        assert is_valid_move_target(merged, _pos(1, 1), store, index)

    def test_place_cell_fills_empty_table_slot(self):
        table = TableStructure(
            id="t", start_position=_pos(0, 0), dimensions=_dims(2, 2), item_ids=((None, None), (None, None))
        )
        store, index = _snapshot(table)
        result = place_structure(make_cell(1, 0, "v", cell_id="new"), store, index)
        assert result.success
        assert result.store["t"].item_ids == ((None, None), ("new", None))
        assert get_cell_value(1, 0, result.store, result.index) == "v"

    def test_place_refuses_occupied(self):
        store, index = _snapshot(make_cell(0, 0, cell_id="a"))
        result = place_structure(make_cell(0, 0, cell_id="b"), store, index)
        assert not result.success
        assert result.store is store

    def test_place_array_over_adopted_cells(self):
        store, index = _snapshot(make_cell(0, 0, "1", cell_id="a"), make_cell(1, 0, "2", cell_id="b"))
        array = create_structure("array", "nums", _pos(0, 0), _dims(2, 1), store, index)
        result = place_structure(array, store, index)
        assert result.success
        assert result.store[array.id].item_ids == ("a", "b")

    def test_delete_clears_parent_slot(self):
        array = ArrayStructure(
            id="arr", start_position=_pos(0, 0), dimensions=_dims(2, 1), direction="vertical", item_ids=("a", None)
        )
        store, index = _snapshot(array, make_cell(0, 0, cell_id="a"))
        result = delete_structure("a", store, index)
        assert result.success
        assert "a" not in result.store
        assert result.store["arr"].item_ids == (None, None)
        assert result.index.ids_at(0, 0) == ("arr",)

    def test_delete_missing(self):
        store, index = _snapshot()
        result = delete_structure("nope", store, index)
        assert not result.success
        assert result.reason == "Structure not found"


# ---------------------------------------------------------------------------
# Writes and conflicts
# ---------------------------------------------------------------------------


class TestSetCellValue:
    def test_creates_standalone_cell(self):
        store, index = _snapshot()
        write = set_cell_value(2, 3, "hi", store, index)
        assert write.structure_id is not None
        assert get_cell_value(2, 3, write.store, write.index) == "hi"

    def test_updates_existing_cell(self):
        store, index = _snapshot(make_cell(0, 0, "old", cell_id="a"))
        write = set_cell_value(0, 0, "new", store, index)
        assert write.structure_id == "a"
        assert write.store["a"].value == "new"
        assert write.index is index

    def test_links_new_cell_into_array_slot(self):
        array = ArrayStructure(
            id="arr", start_position=_pos(0, 0), dimensions=_dims(3, 1), direction="vertical", item_ids=(None, None, None)
        )
        store, index = _snapshot(array)
        write = set_cell_value(1, 0, "9", store, index)
        assert write.store["arr"].item_ids[1] == write.structure_id
        assert get_cell_value(1, 0, write.store, write.index) == "9"

    def test_template_override_for_bare_instance(self):
        instance = TemplateStructure(
            id="i", start_position=_pos(1, 1), dimensions=_dims(2, 2), template_id="t", overrides=TemplateOverrides()
        )
        store, index = _snapshot(instance)
        write = set_cell_value(2, 2, "o", store, index)
        assert write.structure_id is None
        assert write.store["i"].overrides.cell_data == {"1-1": "o"}


class TestConflicts:
    def test_detect_conflicts(self):
        source = make_cell(0, 0, "src", cell_id="s")
        store, index = _snapshot(source, make_cell(3, 3, "dst", cell_id="d"), make_cell(4, 4, "src", cell_id="e"))
        cells = get_cells_in_structure(source, store, index)

        conflicts = detect_conflicts(_pos(3, 3), cells, store, index, source)
        assert [(c.row, c.col, c.existing_value, c.new_value) for c in conflicts] == [(3, 3, "dst", "src")]
        # Same value is not a conflict
        assert detect_conflicts(_pos(4, 4), cells, store, index, source) == []

    def test_merged_source(self):
        merged = CellStructure(id="m", start_position=_pos(0, 0), dimensions=_dims(2, 2), value="M")
        store, index = _snapshot(merged, make_cell(2, 2, "x", cell_id="x"))
        conflicts = detect_conflicts(_pos(1, 1), [], store, index, merged)
        assert [(c.row, c.col) for c in conflicts] == [(2, 2)]
