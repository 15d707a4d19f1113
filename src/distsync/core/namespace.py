"""Resource-key namespacing."""

from __future__ import annotations


class Namespace:
    """Prefix applied to every key before it reaches the backing store."""

    def __init__(self, root: str, *, delimiter: str = ":") -> None:
        if not root:
            raise ValueError("Namespace root must be a non-empty string")
        self._root = root
        self._delimiter = delimiter

    @property
    def root(self) -> str:
        return self._root

    def key(self, key: str) -> str:
        return f"{self._root}{self._delimiter}{key}"

    def __str__(self) -> str:
        return self._root

    def __repr__(self) -> str:
        return f"Namespace({self._root!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Namespace):
            return NotImplemented
        return (self._root, self._delimiter) == (other._root, other._delimiter)

    def __hash__(self) -> int:
        return hash((self._root, self._delimiter))
