"""
Generic tree model shared by the stores and the encryption engine

A document is a TreeBranch: an ordered list of TreeItem(key, value). A value is
either a scalar leaf, a nested TreeBranch, or a list of values. Order matters
everywhere: it is kept for diffing and it is the order the MAC is computed in.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, List, Tuple, Union

from .exceptions import ParseError


class ScalarType(Enum):
    # Closed set of leaf types. The value is the tag written into envelopes.
    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    NULL = "null"

    @classmethod
    def of(cls, value: Any) -> "ScalarType":
        """Classify a native scalar, raising ParseError for anything else."""
        # bool is a subclass of int, so it has to be checked first
        if isinstance(value, bool):
            return cls.BOOLEAN
        if isinstance(value, int):
            return cls.INTEGER
        if isinstance(value, float):
            return cls.FLOAT
        if isinstance(value, str):
            return cls.STRING
        if value is None:
            return cls.NULL
        raise ParseError(f"unsupported scalar type: {type(value).__name__}")


@dataclass
class TreeItem:
    key: str
    value: Any


class TreeBranch(list):
    """Ordered mapping stored as a list of TreeItem."""

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, Any]]) -> "TreeBranch":
        branch = cls()
        for key, value in pairs:
            branch.append(TreeItem(key, value))
        return branch

    def keys(self) -> List[str]:
        return [item.key for item in self]

    def get(self, key: str, default: Any = None) -> Any:
        for item in self:
            if item.key == key:
                return item.value
        return default

    def set(self, key: str, value: Any) -> None:
        for item in self:
            if item.key == key:
                item.value = value
                return
        self.append(TreeItem(key, value))

    def remove_key(self, key: str) -> None:
        self[:] = [item for item in self if item.key != key]

    def to_dict(self) -> dict:
        """Plain nested dict/list view, mainly for tests and debugging."""
        return {item.key: _to_plain(item.value) for item in self}

    def __repr__(self):
        return f"TreeBranch({[(i.key, i.value) for i in self]!r})"


def _to_plain(value):
    if isinstance(value, TreeBranch):
        return value.to_dict()
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    return value


# A path segment is a mapping key (str) or a sequence index (int)
PathSegment = Union[str, int]
TreePath = Tuple[PathSegment, ...]

_QUOTE_CHARS = set('.[]"')


def render_path(path: TreePath) -> str:
    """Render a path as a deterministic string, e.g. ``db.hosts[0]``.

    Keys containing separator characters are rendered bracketed and quoted
    (``["a.b"]``) so two different paths never produce the same string.
    """
    parts = []
    for segment in path:
        if isinstance(segment, int):
            parts.append(f"[{segment}]")
        elif not segment or _QUOTE_CHARS.intersection(segment):
            escaped = segment.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'["{escaped}"]')
        elif parts:
            parts.append(f".{segment}")
        else:
            parts.append(segment)
    return "".join(parts)


def last_key(path: TreePath) -> str | None:
    """The closest mapping key on the path (list indices are skipped)."""
    for segment in reversed(path):
        if isinstance(segment, str):
            return segment
    return None


def walk_leaves(tree: TreeBranch, prefix: TreePath = ()) -> Iterator[Tuple[TreePath, Any]]:
    """Yield (path, value) for every leaf in document order."""
    for item in tree:
        yield from _walk_value(item.value, prefix + (item.key,))


def _walk_value(value: Any, path: TreePath) -> Iterator[Tuple[TreePath, Any]]:
    if isinstance(value, TreeBranch):
        yield from walk_leaves(value, path)
    elif isinstance(value, list):
        for index, element in enumerate(value):
            yield from _walk_value(element, path + (index,))
    else:
        yield path, value


def map_leaves(tree: TreeBranch, fn: Callable[[TreePath, Any], Any], prefix: TreePath = ()) -> TreeBranch:
    """Return a new tree with every leaf replaced by fn(path, value).

    The result shares no branch or list objects with the input.
    """
    out = TreeBranch()
    for item in tree:
        out.append(TreeItem(item.key, _map_value(item.value, fn, prefix + (item.key,))))
    return out


def _map_value(value: Any, fn: Callable[[TreePath, Any], Any], path: TreePath) -> Any:
    if isinstance(value, TreeBranch):
        return map_leaves(value, fn, path)
    if isinstance(value, list):
        return [_map_value(v, fn, path + (i,)) for i, v in enumerate(value)]
    return fn(path, value)


def validate_tree(tree: TreeBranch) -> None:
    """Check keys are unique strings per branch and every leaf is a supported scalar."""
    _check_keys(tree)
    for path, value in walk_leaves(tree):
        try:
            ScalarType.of(value)
        except ParseError as e:
            raise ParseError(f"{render_path(path)}: {e}") from e


def _check_keys(value: Any) -> None:
    if isinstance(value, TreeBranch):
        seen = set()
        for item in value:
            if not isinstance(item.key, str):
                raise ParseError(f"mapping keys must be strings, got {item.key!r}")
            if item.key in seen:
                raise ParseError(f"duplicate key {item.key!r}")
            seen.add(item.key)
            _check_keys(item.value)
    elif isinstance(value, list):
        for element in value:
            _check_keys(element)
