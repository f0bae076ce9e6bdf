"""JSON store built on the standard json module."""
from __future__ import annotations

import json

from treecrypt.core.exceptions import ParseError
from treecrypt.core.tree import TreeBranch
from .base import Store, ensure_branch


def _plain(value):
    # TreeBranch is a list subclass, json has to see it as an object
    if isinstance(value, TreeBranch):
        return {item.key: _plain(item.value) for item in value}
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class JSONStore(Store):
    extensions = (".json",)

    def __init__(self, indent: int = 2):
        self.indent = indent

    def parse(self, text: str) -> TreeBranch:
        try:
            data = json.loads(text, object_pairs_hook=TreeBranch.from_pairs)
        except json.JSONDecodeError as e:
            raise ParseError(f"error unmarshalling input JSON: {e}") from e
        return ensure_branch(data, "JSON")

    def serialize(self, tree: TreeBranch) -> str:
        return json.dumps(_plain(tree), indent=self.indent, ensure_ascii=False) + "\n"
