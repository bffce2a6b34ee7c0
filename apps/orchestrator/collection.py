"""Keyed collections and the single mutation primitive used by every pipeline."""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, Iterable, List, Mapping, Sequence, Tuple, TypeVar

from pydantic import BaseModel

from .models import AnalysisState, build_item

LOGGER = logging.getLogger(__name__)

ItemT = TypeVar("ItemT", bound=BaseModel)
KeyFn = Callable[[Any], str]
Listener = Callable[[Tuple[Any, ...]], None]


def question_key(item: Any) -> str:
    return item.id


def answer_key(item: Any) -> str:
    return item.question_id


def merge_by_key(
    collection: Tuple[ItemT, ...],
    key: str,
    updates: Mapping[str, Any],
    *,
    key_of: KeyFn,
) -> Tuple[ItemT, ...]:
    """Return ``collection`` with the item identified by ``key`` shallow-updated.

    Only the matching item is rebuilt (and re-validated); every other element is
    the same object as before. An unknown key returns ``collection`` itself.
    Raises ``ItemValidationError`` when the merged item is invalid, in which
    case nothing changes.
    """
    for index, item in enumerate(collection):
        if key_of(item) != key:
            continue
        merged = build_item(type(item), {**dict(item), **dict(updates)})
        return collection[:index] + (merged,) + collection[index + 1 :]
    return collection


def is_complete(collection: Iterable[Any]) -> bool:
    """True once no item is still pending (an empty collection is complete)."""
    return all(item.analysis_state is not AnalysisState.PENDING for item in collection)


def count_states(collection: Iterable[Any]) -> dict[AnalysisState, int]:
    counts = {state: 0 for state in AnalysisState}
    for item in collection:
        counts[item.analysis_state] += 1
    return counts


class CollectionStore(Generic[ItemT]):
    """Owns one target's collection and swaps it wholesale on reset.

    Every ``install`` bumps ``generation``; merges started against an older
    generation are dropped, so results that arrive after a reset never touch
    the new collection.
    """

    def __init__(self, key_of: KeyFn, *, name: str = "collection") -> None:
        self._key_of = key_of
        self._items: Tuple[ItemT, ...] = ()
        self._generation = 0
        self._listeners: List[Listener] = []
        self.name = name

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def key_of(self) -> KeyFn:
        return self._key_of

    def snapshot(self) -> Tuple[ItemT, ...]:
        return self._items

    def keys(self) -> List[str]:
        return [self._key_of(item) for item in self._items]

    def get(self, key: str) -> ItemT | None:
        for item in self._items:
            if self._key_of(item) == key:
                return item
        return None

    def install(self, items: Sequence[ItemT]) -> int:
        """Replace the whole collection and return the new generation."""
        self._generation += 1
        self._items = tuple(items)
        LOGGER.debug("%s: installed %d items (generation %d)", self.name, len(self._items), self._generation)
        self._notify()
        return self._generation

    def clear(self) -> int:
        return self.install(())

    def merge(self, key: str, updates: Mapping[str, Any], *, generation: int | None = None) -> bool:
        """Apply ``merge_by_key`` to the current collection.

        Returns True when an item changed. Stale generations and unknown keys
        are silent no-ops.
        """
        if generation is not None and generation != self._generation:
            LOGGER.debug(
                "%s: dropping late merge for %s (generation %d, current %d)",
                self.name,
                key,
                generation,
                self._generation,
            )
            return False
        merged = merge_by_key(self._items, key, updates, key_of=self._key_of)
        if merged is self._items:
            return False
        self._items = merged
        self._notify()
        return True

    def is_complete(self) -> bool:
        return is_complete(self._items)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with the new snapshot after every change."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._items)
            except Exception:  # pragma: no cover
                LOGGER.exception("%s: listener %r failed", self.name, listener)

    def __len__(self) -> int:
        return len(self._items)


__all__ = [
    "CollectionStore",
    "answer_key",
    "count_states",
    "is_complete",
    "merge_by_key",
    "question_key",
]
