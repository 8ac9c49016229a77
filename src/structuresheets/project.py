"""Project-level configuration, scaffolding and document loading."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

if TYPE_CHECKING:
    from structuresheets.document import Document


CONFIG_FILENAME = "structuresheets.yaml"
DOCUMENT_FILENAME = "document.yaml"

DEFAULT_CONFIG = {
    "max_rows": 1000,
    "max_cols": 26,
    "max_recalc_iterations": 50,
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}

# Keys that must hold positive integers
_POSITIVE_INT_KEYS = ("max_rows", "max_cols", "max_recalc_iterations", "logging_tail_bytes")

DEMO_CONFIG = """\
# structuresheets project config
max_rows: 1000
max_cols: 26
max_recalc_iterations: 50
logging_fsync: false
"""

DEMO_DOCUMENT = """\
# structuresheets document v1
version: 1

structures:
  - type: cell
    id: price
    name: price
    startPosition: {row: 0, col: 0}
    dimensions: {rows: 1, cols: 1}
    value: "120"

  - type: cell
    id: quantity
    name: quantity
    startPosition: {row: 0, col: 1}
    dimensions: {rows: 1, cols: 1}
    value: "3"

  - type: cell
    id: revenue
    name: revenue
    startPosition: {row: 0, col: 2}
    dimensions: {rows: 1, cols: 1}

  - type: cell
    id: units-1
    startPosition: {row: 3, col: 0}
    dimensions: {rows: 1, cols: 1}
    value: "10"

  - type: cell
    id: units-2
    startPosition: {row: 4, col: 0}
    dimensions: {rows: 1, cols: 1}
    value: "20"

  - type: cell
    id: units-3
    startPosition: {row: 5, col: 0}
    dimensions: {rows: 1, cols: 1}
    value: "30"

  - type: array
    id: units
    name: units
    direction: vertical
    startPosition: {row: 3, col: 0}
    dimensions: {rows: 3, cols: 1}
    itemIds: [units-1, units-2, units-3]

  - type: cell
    id: total-units
    startPosition: {row: 3, col: 2}
    dimensions: {rows: 1, cols: 1}

formulas:
  revenue: "=A1*B1"
  total-units: "=SUM(units)"
"""


def load_project_config(project_dir: Path) -> dict[str, Any]:
    """Load project configuration from ``structuresheets.yaml``, with defaults.

    Args:
        project_dir: Root of the project.

    Returns:
        Merged configuration dict.

    Raises:
        ValueError: If the file is not a mapping or a size limit is not a
            positive integer.
    """
    config = dict(DEFAULT_CONFIG)
    config_path = Path(project_dir) / CONFIG_FILENAME
    if config_path.exists():
        user_config = yaml.safe_load(config_path.read_text()) or {}
        if not isinstance(user_config, dict):
            raise ValueError(f"{CONFIG_FILENAME} must contain a mapping")
        config.update(user_config)

    for key in _POSITIVE_INT_KEYS:
        value = config.get(key)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"Config key {key!r} must be a positive integer, got {value!r}")

    return config


def scaffold_project(target_dir: Path) -> Path:
    """Create a new demo project at the target directory.

    Args:
        target_dir: Directory to create (must not already contain document.yaml).

    Returns:
        Path to the created project directory.
    """
    target_dir = Path(target_dir).resolve()
    target_dir.mkdir(parents=True, exist_ok=True)

    if (target_dir / DOCUMENT_FILENAME).exists():
        raise FileExistsError(f"{DOCUMENT_FILENAME} already exists in {target_dir}")

    (target_dir / CONFIG_FILENAME).write_text(DEMO_CONFIG)
    (target_dir / DOCUMENT_FILENAME).write_text(DEMO_DOCUMENT)
    (target_dir / "logs").mkdir(exist_ok=True)

    return target_dir


def read_document_data(path: Path) -> dict[str, Any]:
    """Read a ``.json`` or YAML document file into a plain dict."""
    path = Path(path)
    text = path.read_text()
    if path.suffix == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must contain a mapping")
    return data


def load_document(path: Path, config: dict[str, Any] | None = None) -> Document:
    """Load a document file into a fresh :class:`Document`.

    The file lists ``structures`` (serialized with camelCase field names)
    and optionally ``formulas`` (structure id -> formula text) and
    ``templates`` (template id -> stored template content).  When no
    *config* is passed, the project config next to the file is used.

    Raises:
        ValueError: If the document is malformed.
        pydantic.ValidationError: If a structure or template fails validation.
    """
    from structuresheets.document import Document
    from structuresheets.templates import TemplateLibrary

    path = Path(path)
    data = read_document_data(path)
    if config is None:
        config = load_project_config(path.parent)

    structures = data.get("structures") or []
    formulas = data.get("formulas") or {}
    if not isinstance(structures, list):
        raise ValueError("'structures' must be a list")
    if not isinstance(formulas, dict):
        raise ValueError("'formulas' must be a mapping of structure id to formula")

    templates = TemplateLibrary.from_dict(data.get("templates") or {})
    return Document.from_data(structures, formulas, templates=templates, config=config)
