"""Tests for cascading recalculation."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from structuresheets.formulas import DependencyManager
from structuresheets.models import ArrayStructure, Dimensions, Position, TemplateStructure
from structuresheets.positions import build_position_index
from structuresheets.recalc import RecalculationEngine
from structuresheets.store import StructureStore
from structuresheets.structures import make_cell


@pytest.fixture(autouse=True)
def _detach_sink():
    from structuresheets.logging.events import clear_project_dir

    clear_project_dir()
    yield
    clear_project_dir()


def _formula_cell(row, col, formula, value="", cell_id=None):
    return make_cell(row, col, value, cell_id=cell_id).model_copy(update={"formula": formula})


def _engine(*structures, max_iterations=50):
    store = StructureStore(structures)
    return RecalculationEngine(
        store, build_position_index(store.values()), DependencyManager(), max_iterations=max_iterations
    )


class TestRecalculateStructure:
    def test_cell_result_written_as_text(self):
        engine = _engine(make_cell(0, 0, "4", cell_id="a"), _formula_cell(0, 1, "=A1*2.5", cell_id="b"))
        assert engine.recalculate_structure("b")
        assert engine.store["b"].value == "10"
        assert engine.dependency_manager.get_dependents_of_cell(0, 0) == ["b"]

    def test_unchanged_value_reports_false(self):
        engine = _engine(_formula_cell(0, 0, "=2", value="2", cell_id="a"))
        assert not engine.recalculate_structure("a")

    def test_error_keeps_previous_value(self):
        engine = _engine(_formula_cell(0, 0, "=1/0", value="7", cell_id="a"))
        assert not engine.recalculate_structure("a")
        assert engine.store["a"].value == "7"
        assert engine.store["a"].formula_error == "Division by zero"

    def test_error_cleared_on_success(self):
        cell = _formula_cell(0, 0, "=3", cell_id="a").model_copy(update={"formula_error": "old"})
        engine = _engine(cell)
        engine.recalculate_structure("a")
        assert engine.store["a"].formula_error is None

    def test_missing_or_plain_structure(self):
        engine = _engine(make_cell(0, 0, "1", cell_id="a"))
        assert not engine.recalculate_structure("a")
        assert not engine.recalculate_structure("ghost")


class TestContainerResults:
    @pytest.fixture
    def setup(self):
        sources = [make_cell(r, 0, str(r + 1), cell_id=f"s{r}") for r in range(3)]
        children = [make_cell(r, 1, cell_id=f"o{r}") for r in range(2)]
        out = ArrayStructure(
            id="out",
            start_position=Position(row=0, col=1),
            dimensions=Dimensions(rows=3, cols=1),
            direction="vertical",
            item_ids=("o0", "o1", None),
        )
        return [*sources, *children, out]

    def test_range_distributed_to_populated_slots(self, setup):
        out = setup[-1].model_copy(update={"formula": "=A1:A3"})
        engine = _engine(*setup[:-1], out)
        assert engine.recalculate_structure("out")
        assert engine.store["o0"].value == "1"
        assert engine.store["o1"].value == "2"

    def test_scalar_broadcast(self, setup):
        out = setup[-1].model_copy(update={"formula": "=SUM(A1:A3)"})
        engine = _engine(*setup[:-1], out)
        engine.recalculate_structure("out")
        assert [engine.store[i].value for i in ("o0", "o1")] == ["6", "6"]

    def test_template_instance_holds_nothing(self):
        instance = TemplateStructure(
            id="tpl",
            start_position=Position(row=0, col=0),
            dimensions=Dimensions(rows=1, cols=1),
            template_id="t",
            formula="=1",
        )
        engine = _engine(instance)
        assert not engine.recalculate_structure("tpl")


class TestCascade:
    def test_chain_follows_changes(self):
        engine = _engine(
            make_cell(0, 0, "5", cell_id="a"),
            _formula_cell(0, 1, "=A1", cell_id="b"),
            _formula_cell(0, 2, "=B1+1", cell_id="c"),
        )
        store = engine.recalculate_all()
        assert (store["b"].value, store["c"].value) == ("5", "6")

        engine.store = store.set(store["a"].model_copy(update={"value": "10"}))
        store = engine.trigger_recalculation([(0, 0)])
        assert (store["b"].value, store["c"].value) == ("10", "11")

    def test_edit_propagates_two_hops(self):
        engine = _engine(
            make_cell(0, 0, "5", cell_id="a"),
            _formula_cell(0, 1, "=A1+1", cell_id="b"),
            _formula_cell(0, 2, "=B1+1", cell_id="c"),
        )
        engine.recalculate_all()
        engine.store = engine.store.set(engine.store["a"].model_copy(update={"value": "10"}))
        store = engine.trigger_recalculation([(0, 0)])
        assert (store["b"].value, store["c"].value) == ("11", "12")
        assert engine.iterations < engine.max_iterations

    def test_named_structure_dependents(self):
        array = ArrayStructure(
            id="arr",
            name="nums",
            start_position=Position(row=0, col=0),
            dimensions=Dimensions(rows=2, cols=1),
            direction="vertical",
            item_ids=("n0", "n1"),
        )
        engine = _engine(
            array,
            make_cell(0, 0, "1", cell_id="n0"),
            make_cell(1, 0, "2", cell_id="n1"),
            _formula_cell(0, 3, "=SUM(nums)", cell_id="total"),
        )
        engine.recalculate_all()
        assert engine.store["total"].value == "3"

        engine.store = engine.store.set(engine.store["n1"].model_copy(update={"value": "5"}))
        engine.trigger_recalculation([(1, 0)])
        assert engine.store["total"].value == "6"

    def test_mutual_reference_settles(self):
        engine = _engine(_formula_cell(0, 0, "=B1", cell_id="a"), _formula_cell(0, 1, "=A1", cell_id="b"))
        engine.recalculate_all()
        assert engine.iterations < engine.max_iterations
        assert engine.store["a"].value == ""

    def test_divergent_cycle_hits_cap(self, tmp_path: Path, caplog):
        from structuresheets.logging.events import set_project_dir
        from structuresheets.logging.sink import EventSink

        set_project_dir(tmp_path)
        engine = _engine(
            _formula_cell(0, 0, "=B1+1", value="0", cell_id="a"),
            _formula_cell(0, 1, "=A1+1", value="0", cell_id="b"),
            max_iterations=5,
        )
        with caplog.at_level(logging.WARNING, logger="structuresheets.recalc"):
            engine.recalculate_all()

        assert engine.iterations == 5
        assert "stopped after 5 iterations" in caplog.text
        events = EventSink(tmp_path).read_global(event_type="recalc_iteration_cap")
        assert len(events) == 1
        assert events[0]["error_code"] == "recalc_cap_reached"
        assert events[0]["context"]["iterations"] == 5

    def test_completion_event(self, tmp_path: Path):
        from structuresheets.logging.events import set_project_dir
        from structuresheets.logging.sink import EventSink

        set_project_dir(tmp_path)
        engine = _engine(make_cell(0, 0, "1", cell_id="a"), _formula_cell(0, 1, "=A1", cell_id="b"))
        engine.recalculate_all()
        events = EventSink(tmp_path).read_global(event_type="recalc_completed")
        assert events
        assert events[0]["level"] == "info"

    def test_formula_error_event(self, tmp_path: Path):
        from structuresheets.logging.events import set_project_dir
        from structuresheets.logging.sink import EventSink

        set_project_dir(tmp_path)
        engine = _engine(_formula_cell(0, 0, "=FOO(1)", cell_id="a"))
        engine.recalculate_structure("a")
        engine.recalculate_structure("a")
        events = EventSink(tmp_path).read_global(event_type="formula_error", structure_id="a")
        assert len(events) == 1
        assert events[0]["message"] == "Unknown function: FOO"
