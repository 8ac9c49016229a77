"""Spatial index from grid coordinate to the structures occupying it.

A structure's id appears under every ``"row-col"`` key of its rectangle
and nowhere else.  Several structures may share a coordinate (a cell
inside a table inside a template instance); lookups resolve them into a
containment hierarchy, outermost first.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping

from structuresheets.models import TYPE_RANK, Structure, position_key
from structuresheets.store import StructureStore


class PositionIndex(Mapping[str, tuple[str, ...]]):
    """Immutable ``"row-col"`` -> ordered structure ids mapping.

    ``add``/``remove`` return a new index; ids under a key keep the order
    in which structures were added.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, tuple[str, ...]] | None = None) -> None:
        self._entries: dict[str, tuple[str, ...]] = dict(entries) if entries else {}

    def __getitem__(self, key: str) -> tuple[str, ...]:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"PositionIndex({len(self._entries)} occupied coordinates)"

    def add(self, structure: Structure) -> PositionIndex:
        """Return a new index with *structure* registered over its rectangle."""
        return self.add_many([structure])

    def add_many(self, structures: Iterable[Structure]) -> PositionIndex:
        entries = dict(self._entries)
        for structure in structures:
            for row, col in structure.iter_cells():
                key = position_key(row, col)
                ids = entries.get(key, ())
                if structure.id not in ids:
                    entries[key] = ids + (structure.id,)
        return PositionIndex(entries)

    def remove(self, structure: Structure) -> PositionIndex:
        """Return a new index with *structure* dropped from its rectangle."""
        return self.remove_many([structure])

    def remove_many(self, structures: Iterable[Structure]) -> PositionIndex:
        entries = dict(self._entries)
        for structure in structures:
            for row, col in structure.iter_cells():
                key = position_key(row, col)
                ids = entries.get(key)
                if not ids:
                    continue
                remaining = tuple(i for i in ids if i != structure.id)
                if remaining:
                    entries[key] = remaining
                else:
                    del entries[key]
        return PositionIndex(entries)

    def ids_at(self, row: int, col: int) -> tuple[str, ...]:
        """Raw ids at a coordinate, in insertion order."""
        return self._entries.get(position_key(row, col), ())

    def structures_at(self, row: int, col: int, store: Mapping[str, Structure]) -> list[Structure]:
        """Resolve the structures at a coordinate, outermost first."""
        found = [store[i] for i in self.ids_at(row, col) if i in store]
        if len(found) <= 1:
            return found
        return sort_structures_by_containment(found)


def build_position_index(structures: Iterable[Structure]) -> PositionIndex:
    """Build an index from scratch for every structure in *structures*."""
    return PositionIndex().add_many(structures)


# ---------------------------------------------------------------------------
# Hierarchy resolution
# ---------------------------------------------------------------------------


def _containment_key(structure: Structure) -> tuple[int, int, int, int]:
    return (
        -structure.area,
        structure.start_position.row,
        structure.start_position.col,
        TYPE_RANK.get(structure.type, len(TYPE_RANK)),
    )


def sort_structures_by_containment(structures: Iterable[Structure]) -> list[Structure]:
    """Order structures outermost to innermost.

    Larger area first, then top-left position, then type rank
    (template > array > table > cell).
    """
    return sorted(structures, key=_containment_key)


def get_structures_at_position(
    row: int, col: int, store: StructureStore, index: PositionIndex
) -> list[Structure]:
    return index.structures_at(row, col, store)


def get_structure_at_position(
    row: int, col: int, store: StructureStore, index: PositionIndex
) -> Structure | None:
    """Return the structure to expose at a coordinate.

    When several structures overlap, the first non-template one wins so
    nested content is reachable through its template instance.
    """
    found = index.structures_at(row, col, store)
    if not found:
        return None
    if len(found) > 1:
        for structure in found:
            if structure.type != "template":
                return structure
    return found[0]


def get_structure_hierarchy(
    row: int, col: int, store: StructureStore, index: PositionIndex
) -> list[Structure]:
    """All structures at a coordinate, outermost to innermost."""
    return index.structures_at(row, col, store)


def is_structure_contained_in(inner: Structure, outer: Structure) -> bool:
    """Return True if *inner* lies entirely within *outer* (and is not it)."""
    inner_end = inner.end_position
    outer_end = outer.end_position
    return (
        inner.id != outer.id
        and inner.start_position.row >= outer.start_position.row
        and inner.start_position.col >= outer.start_position.col
        and inner_end.row <= outer_end.row
        and inner_end.col <= outer_end.col
    )


def get_next_structure_in_hierarchy(
    current: Structure | None,
    hierarchy: list[Structure],
    current_level: int,
) -> tuple[Structure | None, int]:
    """Step one level deeper on repeated selection, wrapping to the outermost.

    Returns:
        ``(structure, level)``; ``(None, 0)`` for an empty hierarchy.
    """
    if not hierarchy:
        return None, 0
    if current is None or all(s.id != current.id for s in hierarchy):
        return hierarchy[0], 0
    next_level = current_level + 1
    if next_level >= len(hierarchy):
        return hierarchy[0], 0
    return hierarchy[next_level], next_level
