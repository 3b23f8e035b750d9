"""Dyadic range-cover codec.

Maps 64-bit timestamps onto nodes of a depth-64 binary trie. A record is
tagged with every ancestor of its leaf (``insertion_labels``); a query range
is decomposed into the minimal set of aligned power-of-two blocks
(``range_cover``). A value lies in the range exactly when one of its ancestor
labels is in the cover, so matching opaque per-label tokens answers the range
query.
"""

from __future__ import annotations

from dataclasses import dataclass

TRIE_DEPTH = 64
MAX_LEVEL = TRIE_DEPTH - 1
MAX_VALUE = (1 << TRIE_DEPTH) - 1


@dataclass(frozen=True, slots=True)
class IndexLabel:
    """A trie node: the block of ``2**level`` leaves starting at ``prefix << level``."""

    level: int
    prefix: int

    @property
    def low(self) -> int:
        return self.prefix << self.level

    @property
    def high(self) -> int:
        return ((self.prefix + 1) << self.level) - 1


def _check_value(value: int, name: str) -> None:
    if not 0 <= value <= MAX_VALUE:
        raise ValueError(f"{name} must be in [0, 2**64), got {value}")


def insertion_labels(value: int) -> list[IndexLabel]:
    """Return the 64 ancestors of ``value``'s leaf, from the leaf (level 0) upward."""
    _check_value(value, "value")
    return [IndexLabel(level=i, prefix=value >> i) for i in range(TRIE_DEPTH)]


def range_cover(a: int, b: int) -> list[IndexLabel]:
    """Minimal canonical dyadic cover of the inclusive range [a, b].

    Walks from the lower bound, each time peeling off the largest aligned
    block that still fits. Levels are capped at 63 because insertion labels
    stop there; the whole 64-bit space therefore takes two labels.
    """
    _check_value(a, "a")
    _check_value(b, "b")
    if a > b:
        raise ValueError(f"Empty range: a={a} > b={b}")

    labels: list[IndexLabel] = []
    lo = a
    while lo <= b:
        align = (lo & -lo).bit_length() - 1 if lo else MAX_LEVEL
        fit = (b - lo + 1).bit_length() - 1
        level = min(align, fit, MAX_LEVEL)
        labels.append(IndexLabel(level=level, prefix=lo >> level))
        lo += 1 << level
    return labels


def label_keyword(label: IndexLabel) -> str:
    """Level-qualified keyword fragment, e.g. ``"12:401"``."""
    return f"{label.level}:{label.prefix}"
