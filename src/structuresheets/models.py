"""Structure data model: grid coordinates and the four structure kinds.

Structures are immutable.  Every edit produces a new model via
``model_copy(update=...)`` that is re-inserted under the same id.

Field names are snake_case; the camelCase aliases (``startPosition``,
``itemIds``, ...) match the serialized template format so stored data
validates directly.
"""

from __future__ import annotations

from typing import Annotated, Any, Iterator, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# Grid limits
MAX_ROWS = 1000
MAX_COLS = 26

StructureType = Literal["cell", "array", "table", "template"]
ArrayDirection = Literal["horizontal", "vertical"]
Direction = Literal["left", "right", "up", "down"]

# Containment tie-break rank: template > array > table > cell
TYPE_RANK: dict[str, int] = {"template": 0, "array": 1, "table": 2, "cell": 3}


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Coordinates
# ---------------------------------------------------------------------------


class Position(_Frozen):
    row: int
    col: int


class Dimensions(_Frozen):
    rows: int = Field(ge=1)
    cols: int = Field(ge=1)


def get_end_position(start: Position, dimensions: Dimensions) -> Position:
    """Return the inclusive bottom-right coordinate of a rectangle."""
    return Position(
        row=start.row + dimensions.rows - 1,
        col=start.col + dimensions.cols - 1,
    )


def get_dimensions(start: Position, end: Position) -> Dimensions:
    """Return the dimensions of the inclusive rectangle ``start..end``."""
    return Dimensions(rows=end.row - start.row + 1, cols=end.col - start.col + 1)


def is_valid_position(
    row: int, col: int, max_rows: int = MAX_ROWS, max_cols: int = MAX_COLS
) -> bool:
    return 0 <= row < max_rows and 0 <= col < max_cols


def position_key(row: int, col: int) -> str:
    """Build the ``"row-col"`` key used by the position index and overrides."""
    return f"{row}-{col}"


def parse_position_key(key: str) -> tuple[int, int]:
    """Parse a ``"row-col"`` key back into ``(row, col)``."""
    row_str, col_str = key.split("-", 1)
    return int(row_str), int(col_str)


# ---------------------------------------------------------------------------
# Structures
# ---------------------------------------------------------------------------


class BaseStructure(_Frozen):
    """Fields shared by every structure kind."""

    id: str
    start_position: Position = Field(alias="startPosition")
    dimensions: Dimensions
    name: str | None = None
    formula: str | None = None
    formula_error: str | None = Field(default=None, alias="formulaError")

    @property
    def end_position(self) -> Position:
        return get_end_position(self.start_position, self.dimensions)

    @property
    def area(self) -> int:
        return self.dimensions.rows * self.dimensions.cols

    def contains(self, row: int, col: int) -> bool:
        """Return True if ``(row, col)`` lies inside this structure's rectangle."""
        start = self.start_position
        return (
            start.row <= row < start.row + self.dimensions.rows
            and start.col <= col < start.col + self.dimensions.cols
        )

    def iter_cells(self) -> Iterator[tuple[int, int]]:
        """Yield every ``(row, col)`` covered by this structure, row-major."""
        start = self.start_position
        for row in range(start.row, start.row + self.dimensions.rows):
            for col in range(start.col, start.col + self.dimensions.cols):
                yield row, col


class CellStructure(BaseStructure):
    type: Literal["cell"] = "cell"
    value: str = ""


class ArrayStructure(BaseStructure):
    type: Literal["array"] = "array"
    direction: ArrayDirection
    # "cells" or the id of the template repeated along the array
    content_type: str = Field(default="cells", alias="contentType")
    item_ids: tuple[str | None, ...] = Field(default=(), alias="itemIds")
    template_dimensions: Dimensions | None = Field(default=None, alias="templateDimensions")
    instance_count: int | None = Field(default=None, alias="instanceCount")

    @property
    def length(self) -> int:
        """Number of slots along the array's long axis."""
        if self.direction == "horizontal":
            return self.dimensions.cols
        return self.dimensions.rows


class TableStructure(BaseStructure):
    type: Literal["table"] = "table"
    item_ids: tuple[tuple[str | None, ...], ...] = Field(default=(), alias="itemIds")
    col_header_levels: int = Field(default=1, alias="colHeaderLevels")
    row_header_levels: int = Field(default=0, alias="rowHeaderLevels")
    col_names: dict[str, int] | None = Field(default=None, alias="colNames")
    col_groups: dict[str, list[int]] | None = Field(default=None, alias="colGroups")
    row_names: dict[str, int] | None = Field(default=None, alias="rowNames")
    row_groups: dict[str, list[int]] | None = Field(default=None, alias="rowGroups")


class TemplateOverrides(_Frozen):
    """Instance-specific changes layered over a template's stored content."""

    structures: dict[str, dict[str, Any]] = Field(default_factory=dict)
    # Relative "row-col" -> value
    cell_data: dict[str, str] = Field(default_factory=dict, alias="cellData")
    deleted_structures: tuple[str, ...] = Field(default=(), alias="deletedStructures")
    added_structures: tuple[str, ...] = Field(default=(), alias="addedStructures")


class TemplateStructure(BaseStructure):
    type: Literal["template"] = "template"
    template_id: str = Field(alias="templateId")
    source_template_version: int | None = Field(default=None, alias="sourceTemplateVersion")
    overrides: TemplateOverrides | None = None


Structure = Annotated[
    Union[CellStructure, ArrayStructure, TableStructure, TemplateStructure],
    Field(discriminator="type"),
]

_structure_adapter: TypeAdapter[Any] = TypeAdapter(Structure)


def parse_structure(data: dict[str, Any]) -> Structure:
    """Validate a serialized structure dict into the matching model.

    Raises:
        pydantic.ValidationError: If the data does not describe a structure.
    """
    return _structure_adapter.validate_python(data)


def dump_structure(structure: Structure) -> dict[str, Any]:
    """Serialize a structure using the camelCase field names."""
    return structure.model_dump(by_alias=True, exclude_none=True, mode="json")
