"""Baggage container: a case-insensitive key/value map with merge semantics.

A Context is plain data. It knows nothing about requests, responses or
wire formats; the propagation rules live in ``carryon.shared.exchange``.

Keys are canonicalized by lowercasing. Values are opaque to the container.
``join_with`` copies entries from another Context into this one, letting the
incoming value win unless a merge function is supplied for that key.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from typing import Any

MergeFunction = Callable[[Any, Any], Any]
"""``(existing, incoming) -> merged``. ``existing`` is None when the key is absent."""


class JoinError(Exception):
    """A merge function failed while joining one Context into another."""

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"Merge function for '{key}' failed: {cause}")
        self.key = key


def canonicalize(key: str) -> str:
    return key.lower()


class Context:
    """Ordered mapping from case-insensitive string keys to arbitrary values."""

    __slots__ = ("_entries",)

    def __init__(self) -> None:
        self._entries: dict[str, Any] = {}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> Context:
        ctx = cls()
        for key, value in mapping.items():
            ctx.set(key, value)
        return ctx

    def set(self, key: str, value: Any) -> None:
        self._entries[canonicalize(key)] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self._entries.get(canonicalize(key), default)

    def keys(self) -> list[str]:
        """Canonical keys in first-set order."""
        return list(self._entries)

    def items(self) -> list[tuple[str, Any]]:
        return list(self._entries.items())

    def to_dict(self) -> dict[str, Any]:
        return dict(self._entries)

    def join_with(
        self,
        other: Context,
        merge_functions: Mapping[str, MergeFunction] | None = None,
    ) -> Context:
        """Merge every entry of *other* into this Context and return self.

        Keys without a merge function take the incoming value. Keys with one
        take ``merge_functions[key](self.get(key), other.get(key))``.

        All merged values are computed before any is stored, so a raising
        merge function leaves this Context unchanged and surfaces as
        ``JoinError``.
        """
        merges = _canonical_merge_table(merge_functions)
        staged: list[tuple[str, Any]] = []
        for key, incoming in other.items():
            fn = merges.get(key)
            if fn is None:
                staged.append((key, incoming))
                continue
            try:
                staged.append((key, fn(self.get(key), incoming)))
            except Exception as e:
                raise JoinError(key, e) from e
        for key, value in staged:
            self.set(key, value)
        return self

    def create_child(self) -> Context:
        """Return an independent copy of this Context."""
        return Context().join_with(self)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and canonicalize(key) in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Context):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Context({self._entries!r})"


def _canonical_merge_table(
    merge_functions: Mapping[str, MergeFunction] | None,
) -> dict[str, MergeFunction]:
    if not merge_functions:
        return {}
    table: dict[str, MergeFunction] = {}
    for key, fn in merge_functions.items():
        if not callable(fn):
            raise TypeError(f"Merge function for '{key}' is not callable: {fn!r}")
        table[canonicalize(key)] = fn
    return table
