"""Tests for project config, scaffolding and document loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from structuresheets.project import (
    CONFIG_FILENAME,
    DEFAULT_CONFIG,
    DOCUMENT_FILENAME,
    load_document,
    load_project_config,
    read_document_data,
    scaffold_project,
)


@pytest.fixture(autouse=True)
def _detach_sink():
    from structuresheets.logging.events import clear_project_dir

    clear_project_dir()
    yield
    clear_project_dir()


def _cell(sid: str, row: int, col: int, value: str = "") -> dict:
    return {
        "type": "cell",
        "id": sid,
        "startPosition": {"row": row, "col": col},
        "dimensions": {"rows": 1, "cols": 1},
        "value": value,
    }


class TestConfig:
    def test_defaults_without_file(self, tmp_path: Path) -> None:
        assert load_project_config(tmp_path) == DEFAULT_CONFIG

    def test_overlay(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text(yaml.dump({"max_rows": 20, "extra": "kept"}))
        cfg = load_project_config(tmp_path)
        assert cfg["max_rows"] == 20
        assert cfg["max_cols"] == 26
        assert cfg["extra"] == "kept"

    def test_empty_file(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text("")
        assert load_project_config(tmp_path) == DEFAULT_CONFIG

    @pytest.mark.parametrize(
        "content",
        ["max_rows: 0\n", "max_cols: -3\n", "max_recalc_iterations: true\n", "max_rows: many\n", "- a\n- b\n"],
    )
    def test_invalid(self, tmp_path: Path, content: str) -> None:
        (tmp_path / CONFIG_FILENAME).write_text(content)
        with pytest.raises(ValueError):
            load_project_config(tmp_path)


class TestScaffold:
    def test_creates_files(self, tmp_path: Path) -> None:
        project = scaffold_project(tmp_path / "demo")
        assert (project / CONFIG_FILENAME).exists()
        assert (project / DOCUMENT_FILENAME).exists()
        assert (project / "logs").is_dir()

    def test_refuses_existing_document(self, tmp_path: Path) -> None:
        scaffold_project(tmp_path)
        with pytest.raises(FileExistsError):
            scaffold_project(tmp_path)

    def test_demo_document_loads(self, tmp_path: Path) -> None:
        project = scaffold_project(tmp_path)
        doc = load_document(project / DOCUMENT_FILENAME)
        assert doc.get_cell_value(0, 2) == "360"
        assert doc.get_cell_value(3, 2) == "60"
        assert doc.store["total-units"].formula == "=SUM(units)"
        assert not [s for s in doc.store.values() if s.formula_error]


class TestLoadDocument:
    def test_json_document(self, tmp_path: Path) -> None:
        path = tmp_path / "sheet.json"
        path.write_text(json.dumps({"structures": [_cell("a", 0, 0, "4"), _cell("b", 0, 1)], "formulas": {"b": "=A1*A1"}}))
        doc = load_document(path)
        assert doc.get_cell_value(0, 1) == "16"

    def test_config_next_to_document(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text("max_recalc_iterations: 3\n")
        path = tmp_path / DOCUMENT_FILENAME
        path.write_text(yaml.dump({"structures": []}))
        assert load_document(path).config["max_recalc_iterations"] == 3

    def test_explicit_config_wins(self, tmp_path: Path) -> None:
        path = tmp_path / DOCUMENT_FILENAME
        path.write_text("structures: []\n")
        doc = load_document(path, config={"max_rows": 5})
        assert doc.max_rows == 5

    def test_templates_section(self, tmp_path: Path) -> None:
        path = tmp_path / DOCUMENT_FILENAME
        path.write_text(
            yaml.dump(
                {
                    "structures": [],
                    "templates": {"t": {"structures": [["x", _cell("x", 0, 0, "hi")]], "cellData": {}}},
                }
            )
        )
        doc = load_document(path)
        assert list(doc.templates) == ["t"]

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / DOCUMENT_FILENAME
        path.write_text("")
        assert read_document_data(path) == {}
        assert len(load_document(path).store) == 0

    @pytest.mark.parametrize(
        "content",
        ["- a\n", "structures: {a: 1}\n", "structures: []\nformulas: [1]\n"],
    )
    def test_malformed(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / DOCUMENT_FILENAME
        path.write_text(content)
        with pytest.raises(ValueError):
            load_document(path)
