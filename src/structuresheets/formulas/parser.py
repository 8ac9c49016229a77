"""Recognizers for the pieces of a formula expression.

Formulas are not parsed into a full expression tree.  An expression is
matched, in a fixed order, against a handful of single-term forms
(literal, function call, cell, range, table column); anything else is
left to the engine's name lookup and arithmetic fallback.

Single terms are recognized with a small Lark grammar:

- Numbers: ``42``, ``-3.5``
- Strings: ``"text"``
- Cell references: ``A1``, ``AA10`` (uppercase column letters only)
- Ranges: ``A1:B2``
- Table columns: ``sales[amount]`` or ``sales["unit price"]``
"""

from __future__ import annotations

import re

from lark import Lark, Tree
from lark.exceptions import LarkError

from structuresheets.formulas.errors import FormulaParseError

# LALR(1) grammar for a single formula term.  Whitespace is significant:
# callers strip the expression first, and inner blanks are not a term.
GRAMMAR = r"""
?start: term

?term: NUMBER         -> number
    | STRING          -> string
    | RANGE_REF       -> range_ref
    | CELL_REF        -> cell_ref
    | table_column

table_column: TABLE_NAME "[" (COLUMN_STRING | COLUMN_NAME) "]"

NUMBER: /-?\d+(\.\d+)?/
STRING: /"[^"]*"/
COLUMN_STRING: /"[^"]+"/

// A1:B2 (uppercase only)
RANGE_REF.3: /[A-Z]+\d+:[A-Z]+\d+/

// A1, F2, AA10 (uppercase only)
CELL_REF.2: /[A-Z]+\d+/

// Identifiers only count when a bracket follows (or closes), so names
// such as Q1sales are not split into a cell address and a word
TABLE_NAME.4: /[A-Za-z_][A-Za-z0-9_]*(?=\[)/
COLUMN_NAME.4: /[A-Za-z_][A-Za-z0-9_]*(?=\])/
"""

_parser = Lark(GRAMMAR, parser="lalr", start="start")

# FUNC(args...): name is letters only, matched case-insensitively
FUNCTION_RE = re.compile(r"^([A-Z]+)\s*\(\s*(.*)\s*\)$", re.IGNORECASE)


def strip_formula(text: str) -> str:
    """Drop one leading ``=`` and surrounding whitespace."""
    if text.startswith("="):
        text = text[1:]
    return text.strip()


def match_term(expr: str) -> Tree | None:
    """Parse *expr* as a single term, or return ``None`` if it is not one.

    The returned tree's ``data`` is one of ``number``, ``string``,
    ``cell_ref``, ``range_ref`` or ``table_column``.
    """
    if not expr:
        return None
    try:
        return _parser.parse(expr)
    except LarkError:
        return None


def match_function(expr: str) -> tuple[str, str] | None:
    """Split ``NAME(args)`` into the upper-cased name and the raw argument text."""
    m = FUNCTION_RE.match(expr)
    if not m:
        return None
    return m.group(1).upper(), m.group(2)


def split_arguments(args: str) -> list[str]:
    """Split a function's argument text on top-level commas.

    Commas inside double quotes or nested parentheses do not split.  A
    trailing empty argument is dropped.

    Raises:
        FormulaParseError: If parentheses or quotes are unbalanced.
    """
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    in_quotes = False
    quote_at = -1
    unbalanced_at: int | None = None
    prev = ""

    for pos, ch in enumerate(args):
        if ch == '"' and prev != "\\":
            in_quotes = not in_quotes
            quote_at = pos
        if not in_quotes:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth < 0 and unbalanced_at is None:
                    unbalanced_at = pos
            elif ch == "," and depth == 0:
                parts.append("".join(current))
                current = []
                prev = ch
                continue
        current.append(ch)
        prev = ch

    if in_quotes:
        raise FormulaParseError("Unterminated string in arguments", quote_at)
    if depth != 0:
        raise FormulaParseError(
            "Unbalanced parentheses in arguments",
            len(args) if unbalanced_at is None else unbalanced_at,
        )
    if current:
        parts.append("".join(current))
    return parts
