"""Formula evaluation and dependency tracking.

Public API::

    from structuresheets.formulas import FormulaEngine, DependencyManager
"""

from structuresheets.formulas.engine import SUPPORTED_FUNCTIONS, FormulaEngine, evaluate
from structuresheets.formulas.errors import (
    FormulaError,
    FormulaFunctionError,
    FormulaParseError,
    FormulaRefError,
)
from structuresheets.formulas.graph import DependencyManager, DependencyNode
from structuresheets.formulas.refs import (
    CellDependency,
    Dependency,
    RangeDependency,
    StructureDependency,
    TableColumnDependency,
    dependency_key,
)
from structuresheets.formulas.values import FormulaValue, ValueKind, format_value

__all__ = [
    "CellDependency",
    "Dependency",
    "DependencyManager",
    "DependencyNode",
    "FormulaEngine",
    "FormulaError",
    "FormulaFunctionError",
    "FormulaParseError",
    "FormulaRefError",
    "FormulaValue",
    "RangeDependency",
    "SUPPORTED_FUNCTIONS",
    "StructureDependency",
    "TableColumnDependency",
    "ValueKind",
    "dependency_key",
    "evaluate",
    "format_value",
]
