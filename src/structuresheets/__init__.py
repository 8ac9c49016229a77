"""structuresheets -- overlapping grid structures with formula recalculation."""

__version__ = "0.1.0"
