"""A1-style addresses and the dependency records a formula produces."""

from __future__ import annotations

import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

_ADDR_RE = re.compile(r"^([A-Z]+)(\d+)$")
_RANGE_RE = re.compile(r"^([A-Z]+\d+):([A-Z]+\d+)$")


def col_letter_to_index(letters: str) -> int:
    """Convert column letter(s) to 0-based index.  A=0, B=1, ..., Z=25, AA=26."""
    idx = 0
    for ch in letters:
        idx = idx * 26 + (ord(ch) - ord("A") + 1)
    return idx - 1


def index_to_col_letter(idx: int) -> str:
    """Convert 0-based column index to letter(s).  0=A, 25=Z, 26=AA."""
    result = ""
    n = idx + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        result = chr(65 + rem) + result
    return result


def parse_addr(addr: str) -> tuple[int, int]:
    """Parse 'A1' -> (row_0based, col_0based).

    Column letters must be uppercase.  Raises ValueError on bad address.
    """
    m = _ADDR_RE.match(addr)
    if not m:
        raise ValueError(f"Invalid cell address: {addr!r}")
    return int(m.group(2)) - 1, col_letter_to_index(m.group(1))


def make_addr(row: int, col: int) -> str:
    """Build cell address from 0-based row/col."""
    return f"{index_to_col_letter(col)}{row + 1}"


def parse_range(text: str) -> tuple[int, int, int, int]:
    """Parse 'A1:B2' -> (start_row, start_col, end_row, end_col), 0-based.

    The corners are kept as written; a reversed range stays reversed
    and covers nothing.
    """
    m = _RANGE_RE.match(text)
    if not m:
        raise ValueError(f"Invalid range: {text!r}")
    start_row, start_col = parse_addr(m.group(1))
    end_row, end_col = parse_addr(m.group(2))
    return start_row, start_col, end_row, end_col


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


class _Dep(BaseModel):
    model_config = ConfigDict(frozen=True)


class CellDependency(_Dep):
    type: Literal["cell"] = "cell"
    row: int
    col: int


class RangeDependency(_Dep):
    type: Literal["range"] = "range"
    start_row: int
    start_col: int
    end_row: int
    end_col: int

    def overlaps(self, start_row: int, start_col: int, end_row: int, end_col: int) -> bool:
        return not (
            self.end_row < start_row
            or self.start_row > end_row
            or self.end_col < start_col
            or self.start_col > end_col
        )

    def contains(self, row: int, col: int) -> bool:
        return self.start_row <= row <= self.end_row and self.start_col <= col <= self.end_col


class StructureDependency(_Dep):
    type: Literal["structure"] = "structure"
    structure_id: str


class TableColumnDependency(_Dep):
    type: Literal["tableColumn"] = "tableColumn"
    table_name: str
    column_name: str


Dependency = Annotated[
    Union[CellDependency, RangeDependency, StructureDependency, TableColumnDependency],
    Field(discriminator="type"),
]


def dependency_key(dep: Dependency) -> str:
    """Reverse-index key for a dependency.

    ``cell:r:c``, ``range:r1:c1:r2:c2``, ``structure:id`` or
    ``tableColumn:table:column``.
    """
    if isinstance(dep, CellDependency):
        return f"cell:{dep.row}:{dep.col}"
    if isinstance(dep, RangeDependency):
        return f"range:{dep.start_row}:{dep.start_col}:{dep.end_row}:{dep.end_col}"
    if isinstance(dep, StructureDependency):
        return f"structure:{dep.structure_id}"
    return f"tableColumn:{dep.table_name}:{dep.column_name}"


def range_from_key(key: str) -> RangeDependency | None:
    """Inverse of :func:`dependency_key` for ``range:`` keys."""
    parts = key.split(":")
    if len(parts) != 5 or parts[0] != "range":
        return None
    try:
        r1, c1, r2, c2 = (int(p) for p in parts[1:])
    except ValueError:
        return None
    return RangeDependency(start_row=r1, start_col=c1, end_row=r2, end_col=c2)
