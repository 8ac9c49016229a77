"""Copy-on-write table of structure id -> structure.

``StructureStore`` never changes in place: ``set``/``delete`` return a new
store and leave the receiver untouched, so any snapshot handed out stays
valid for as long as the caller holds it.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from typing import TYPE_CHECKING, NamedTuple

from structuresheets.models import Structure

if TYPE_CHECKING:
    from structuresheets.positions import PositionIndex


class StructureStore(Mapping[str, Structure]):
    """Immutable mapping of structure ids to structures (insertion ordered)."""

    __slots__ = ("_items",)

    def __init__(self, items: Mapping[str, Structure] | Iterable[Structure] | None = None) -> None:
        if items is None:
            self._items: dict[str, Structure] = {}
        elif isinstance(items, Mapping):
            self._items = dict(items)
        else:
            self._items = {s.id: s for s in items}

    def __getitem__(self, structure_id: str) -> Structure:
        return self._items[structure_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"StructureStore({len(self._items)} structures)"

    def set(self, structure: Structure) -> StructureStore:
        """Return a new store with *structure* inserted under its id."""
        return self.set_many([structure])

    def set_many(self, structures: Iterable[Structure]) -> StructureStore:
        items = dict(self._items)
        for structure in structures:
            items[structure.id] = structure
        return StructureStore(items)

    def delete(self, structure_id: str) -> StructureStore:
        """Return a new store without *structure_id* (no-op if absent)."""
        return self.delete_many([structure_id])

    def delete_many(self, structure_ids: Iterable[str]) -> StructureStore:
        items = dict(self._items)
        for structure_id in structure_ids:
            items.pop(structure_id, None)
        return StructureStore(items)

    def find_by_name(self, name: str) -> Structure | None:
        """Return the first structure (insertion order) carrying *name*."""
        for structure in self._items.values():
            if structure.name == name:
                return structure
        return None

    def with_formulas(self) -> list[Structure]:
        """Return every structure that carries a formula."""
        return [s for s in self._items.values() if s.formula]


class Snapshot(NamedTuple):
    """A store/index pair that callers adopt together."""

    store: StructureStore
    index: PositionIndex


class MutationResult(NamedTuple):
    """Outcome of a mutation: the new snapshot plus a success flag.

    On failure ``store``/``index`` are the unchanged inputs and ``reason``
    says why.
    """

    store: StructureStore
    index: PositionIndex
    success: bool = True
    reason: str | None = None
