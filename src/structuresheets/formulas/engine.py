"""Formula evaluation against a structure snapshot.

An expression is tried against these forms, in order, after stripping
a leading ``=`` and surrounding whitespace:

1. number literal            ``42``, ``-1.5``
2. string literal            ``"text"``
3. function call             ``SUM(A1, B1:B4)``
4. cell reference            ``A1``
5. range reference           ``A1:B3``
6. table column reference    ``sales[amount]``, ``sales["unit price"]``
7. name of a structure       ``revenue``
8. arithmetic                ``A1+1``

Arithmetic has no precedence and no grouping: the expression is split
at the first ``+``, else the first ``-``, ``*`` or ``/``, both halves
are evaluated as expressions, and the operator applies only when both
are numbers.
"""

from __future__ import annotations

import logging
from typing import Callable

from lark import Tree

from structuresheets.formulas.errors import FormulaError, FormulaFunctionError, FormulaRefError
from structuresheets.formulas.parser import match_function, match_term, split_arguments, strip_formula
from structuresheets.formulas.refs import (
    CellDependency,
    Dependency,
    RangeDependency,
    StructureDependency,
    TableColumnDependency,
    parse_addr,
    parse_range,
)
from structuresheets.formulas.values import (
    EMPTY_VALUE,
    FormulaValue,
    ValueKind,
    extract_numbers,
    formula_error,
    formula_number,
    formula_range,
    formula_string,
    is_truthy,
    scalar_from_text,
    value_from_text,
)
from structuresheets.models import Structure
from structuresheets.positions import PositionIndex
from structuresheets.store import StructureStore
from structuresheets.structures import get_cell_value

logger = logging.getLogger(__name__)

_OPERATORS = ("+", "-", "*", "/")


class FormulaEngine:
    """Evaluates formulas against one ``StructureStore``/``PositionIndex`` pair.

    The dependencies recorded by the most recent :meth:`evaluate_formula`
    call are available from :meth:`get_dependencies`.
    """

    def __init__(self, store: StructureStore, index: PositionIndex) -> None:
        self.store = store
        self.index = index
        self._dependencies: list[Dependency] = []

    def get_dependencies(self) -> list[Dependency]:
        """Dependencies identified during the last evaluation."""
        return list(self._dependencies)

    def evaluate_formula(self, formula: str) -> FormulaValue:
        """Evaluate *formula* (optionally prefixed with ``=``).

        Never raises: any failure comes back as an ``ERROR`` value.
        """
        self._dependencies = []
        try:
            return self._evaluate(strip_formula(formula))
        except Exception as exc:
            logger.debug("formula %r failed", formula, exc_info=True)
            return formula_error(f"Formula error: {exc}")

    # ------------------------------------------------------------------
    # Expression forms
    # ------------------------------------------------------------------

    def _evaluate(self, expr: str) -> FormulaValue:
        if not expr:
            return EMPTY_VALUE

        term = match_term(expr)
        if term is not None and term.data == "number":
            return formula_number(float(term.children[0]))
        if term is not None and term.data == "string":
            return formula_string(str(term.children[0])[1:-1])

        call = match_function(expr)
        if call is not None:
            return self._call(*call)

        if term is not None:
            if term.data == "cell_ref":
                return self._cell_reference(str(term.children[0]))
            if term.data == "range_ref":
                return self._range_reference(str(term.children[0]))
            if term.data == "table_column":
                return self._table_column_reference(term)

        structure = self.store.find_by_name(expr)
        if structure is not None:
            return self._structure_reference(structure)

        return self._arithmetic(expr)

    def _cell_reference(self, addr: str) -> FormulaValue:
        row, col = parse_addr(addr)
        self._dependencies.append(CellDependency(row=row, col=col))
        return value_from_text(get_cell_value(row, col, self.store, self.index))

    def _collect_rect(self, start_row: int, start_col: int, end_row: int, end_col: int) -> FormulaValue:
        values: list[float | str] = []
        for row in range(start_row, end_row + 1):
            for col in range(start_col, end_col + 1):
                text = get_cell_value(row, col, self.store, self.index)
                if text:
                    values.append(scalar_from_text(text))
        return formula_range(values)

    def _range_reference(self, text: str) -> FormulaValue:
        start_row, start_col, end_row, end_col = parse_range(text)
        self._dependencies.append(
            RangeDependency(start_row=start_row, start_col=start_col, end_row=end_row, end_col=end_col)
        )
        return self._collect_rect(start_row, start_col, end_row, end_col)

    def _structure_reference(self, structure: Structure) -> FormulaValue:
        self._dependencies.append(StructureDependency(structure_id=structure.id))
        end = structure.end_position
        start = structure.start_position
        return self._collect_rect(start.row, start.col, end.row, end.col)

    def _table_column_reference(self, term: Tree) -> FormulaValue:
        table_name = str(term.children[0])
        column_name = str(term.children[1])
        if column_name.startswith('"'):
            column_name = column_name[1:-1]
        try:
            return self._table_column(table_name, column_name)
        except FormulaRefError as exc:
            return formula_error(str(exc))

    def _table_column(self, table_name: str, column_name: str) -> FormulaValue:
        table = self.store.find_by_name(table_name)
        if table is None:
            raise FormulaRefError(table_name, f"Table '{table_name}' not found")
        if table.type != "table":
            raise FormulaRefError(table_name, f"'{table_name}' is not a table")

        self._dependencies.append(
            TableColumnDependency(table_name=table_name, column_name=column_name)
        )

        if table.col_names is None:
            raise FormulaRefError(table_name, f"Table '{table_name}' has no column definitions")
        column = table.col_names.get(column_name)
        if column is None:
            raise FormulaRefError(
                column_name,
                f"Column '{column_name}' not found in table '{table_name}'",
                available=sorted(table.col_names),
            )

        values: list[float | str] = []
        for row_ids in table.item_ids[table.col_header_levels or 0:]:
            if column >= len(row_ids) or not row_ids[column]:
                continue
            cell = self.store.get(row_ids[column])
            if cell is not None and cell.type == "cell" and cell.value:
                values.append(scalar_from_text(cell.value))
        return formula_range(values)

    def _arithmetic(self, expr: str) -> FormulaValue:
        for op in _OPERATORS:
            # Only an operator that occurs exactly once splits
            if expr.count(op) != 1:
                continue
            left_text, _, right_text = expr.partition(op)
            left = self._evaluate(left_text.strip())
            right = self._evaluate(right_text.strip())
            if left.kind != ValueKind.NUMBER or right.kind != ValueKind.NUMBER:
                continue
            if op == "+":
                return formula_number(left.value + right.value)
            if op == "-":
                return formula_number(left.value - right.value)
            if op == "*":
                return formula_number(left.value * right.value)
            if right.value == 0:
                return formula_error("Division by zero")
            return formula_number(left.value / right.value)
        return formula_error(f"Cannot evaluate expression: {expr}")

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def _call(self, name: str, args_text: str) -> FormulaValue:
        handler = _FUNC_TABLE.get(name)
        try:
            args = self._parse_arguments(args_text)
            if handler is None:
                raise FormulaFunctionError(name)
            return handler(args)
        except FormulaError as exc:
            return formula_error(str(exc))

    def _parse_arguments(self, args_text: str) -> list[FormulaValue]:
        if not args_text.strip():
            return []
        return [self._evaluate(arg.strip()) for arg in split_arguments(args_text)]


def _numbers(args: list[FormulaValue]) -> list[float]:
    out: list[float] = []
    for arg in args:
        out.extend(extract_numbers(arg))
    return out


def _fn_sum(args: list[FormulaValue]) -> FormulaValue:
    return formula_number(sum(_numbers(args)))


def _fn_average(args: list[FormulaValue]) -> FormulaValue:
    numbers = _numbers(args)
    if not numbers:
        raise FormulaFunctionError("AVERAGE", "No numbers to average")
    return formula_number(sum(numbers) / len(numbers))


def _fn_count(args: list[FormulaValue]) -> FormulaValue:
    return formula_number(len(_numbers(args)))


def _fn_max(args: list[FormulaValue]) -> FormulaValue:
    numbers = _numbers(args)
    if not numbers:
        raise FormulaFunctionError("MAX", "No numbers for MAX")
    return formula_number(max(numbers))


def _fn_min(args: list[FormulaValue]) -> FormulaValue:
    numbers = _numbers(args)
    if not numbers:
        raise FormulaFunctionError("MIN", "No numbers for MIN")
    return formula_number(min(numbers))


def _fn_if(args: list[FormulaValue]) -> FormulaValue:
    if len(args) < 2 or len(args) > 3:
        raise FormulaFunctionError("IF", "IF function requires 2 or 3 arguments")
    otherwise = args[2] if len(args) > 2 else EMPTY_VALUE
    return args[1] if is_truthy(args[0]) else otherwise


_FUNC_TABLE: dict[str, Callable[[list[FormulaValue]], FormulaValue]] = {
    "SUM": _fn_sum,
    "AVERAGE": _fn_average,
    "COUNT": _fn_count,
    "MAX": _fn_max,
    "MIN": _fn_min,
    "IF": _fn_if,
}

SUPPORTED_FUNCTIONS: tuple[str, ...] = tuple(_FUNC_TABLE)


def evaluate(formula: str, store: StructureStore, index: PositionIndex) -> tuple[FormulaValue, list[Dependency]]:
    """One-shot helper: evaluate *formula* and return the value with its dependencies."""
    engine = FormulaEngine(store, index)
    value = engine.evaluate_formula(formula)
    return value, engine.get_dependencies()
