"""Format store contract.

A store converts one native document syntax to and from the generic tree.
The metadata envelope lives under the reserved top-level key METADATA_KEY and
is never part of the tree returned by load().
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from treecrypt.core.exceptions import MalformedMetadataError, ParseError
from treecrypt.core.metadata import METADATA_KEY, Metadata
from treecrypt.core.tree import TreeBranch, TreeItem, validate_tree


class Store(ABC):
    """Base class for format stores; subclasses only parse and serialize."""

    extensions: tuple = ()

    @abstractmethod
    def parse(self, text: str) -> TreeBranch:
        """Parse native text into a tree, metadata block included. ParseError on failure."""

    @abstractmethod
    def serialize(self, tree: TreeBranch) -> str:
        """Render a tree (whose values may include plain metadata maps) as native text."""

    def load(self, text: str) -> TreeBranch:
        tree = self.parse(text)
        tree.remove_key(METADATA_KEY)
        validate_tree(tree)
        return tree

    def dump(self, tree: TreeBranch) -> str:
        return self.serialize(tree)

    def load_metadata(self, text: str) -> Metadata:
        tree = self.parse(text)
        block = tree.get(METADATA_KEY)
        if not isinstance(block, TreeBranch):
            raise MalformedMetadataError(f"document has no {METADATA_KEY!r} metadata block")
        return Metadata.from_map(block.to_dict())

    def dump_with_metadata(self, tree: TreeBranch, metadata: Metadata) -> str:
        out = TreeBranch(item for item in tree if item.key != METADATA_KEY)
        out.append(TreeItem(METADATA_KEY, metadata.to_map()))
        return self.serialize(out)


def ensure_branch(value, syntax: str) -> TreeBranch:
    if value is None:
        return TreeBranch()
    if not isinstance(value, TreeBranch):
        raise ParseError(f"top level of a {syntax} document must be a mapping")
    return value
