"""Error types raised while evaluating a formula.

They never leave the engine: ``FormulaEngine.evaluate_formula`` turns
them into ``ERROR`` values.
"""

from __future__ import annotations


class FormulaError(Exception):
    """Base class for all formula-related errors."""


class FormulaParseError(FormulaError):
    """An expression that matches none of the recognized forms.

    Attributes:
        position: Character position where the error was detected.
    """

    def __init__(self, message: str, position: int | None = None) -> None:
        self.position = position
        full = message
        if position is not None:
            full += f" (at position {position})"
        super().__init__(full)


class FormulaRefError(FormulaError):
    """Reference to a table or column that does not resolve.

    Attributes:
        ref_name: The unresolved reference.
        available: Names that are currently available.
    """

    def __init__(self, ref_name: str, message: str | None = None, available: list[str] | None = None) -> None:
        self.ref_name = ref_name
        self.available = available or []
        msg = message or f"Unknown reference: {ref_name!r}"
        if self.available:
            msg += f". Available: {self.available}"
        super().__init__(msg)


class FormulaFunctionError(FormulaError):
    """Unknown function, wrong number of arguments, or nothing to aggregate.

    Attributes:
        func_name: The function that caused the error.
    """

    def __init__(self, func_name: str, message: str | None = None) -> None:
        self.func_name = func_name
        msg = message or f"Unknown function: {func_name}"
        super().__init__(msg)
