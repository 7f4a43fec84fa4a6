"""Selector resolution for interactive account and profile commands.

A selector is resolved in order, first match wins:

1. a 1-based position within bounds
2. a case-insensitive exact match on the label or an identity key
3. a case-insensitive substring match on the label or an identity key, but
   only when exactly one item matches; ambiguous input resolves to nothing
"""

from collections.abc import Sequence
from typing import Protocol, TypeVar


class Selectable(Protocol):
    """Anything with a label and identity keys (accounts, profiles)."""

    label: str | None

    def match_keys(self) -> tuple[str, ...]: ...


T = TypeVar("T", bound=Selectable)


def _keys(item: Selectable) -> list[str]:
    keys = [k.lower() for k in item.match_keys()]
    if item.label:
        keys.insert(0, item.label.lower())
    return keys


def resolve_index(items: Sequence[Selectable], selector: str) -> int | None:
    """Resolve a selector to an index into `items`, or None."""
    target = selector.strip()
    if not target:
        return None

    if target.isdigit():
        position = int(target)
        if 1 <= position <= len(items):
            return position - 1

    lower = target.lower()
    for index, item in enumerate(items):
        if lower in _keys(item):
            return index

    fuzzy = [
        index
        for index, item in enumerate(items)
        if any(lower in key for key in _keys(item))
    ]
    if len(fuzzy) == 1:
        return fuzzy[0]

    return None


def resolve(items: Sequence[T], selector: str) -> T | None:
    """Resolve a selector to the matching item, or None."""
    index = resolve_index(items, selector)
    return None if index is None else items[index]
