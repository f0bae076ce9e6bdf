"""YAML store built on PyYAML's safe loader and dumper."""
from __future__ import annotations

import yaml

from treecrypt.core.exceptions import ParseError
from treecrypt.core.tree import TreeBranch
from .base import Store, ensure_branch


class _TreeLoader(yaml.SafeLoader):
    """SafeLoader producing ordered TreeBranch mappings.

    Timestamps are not resolved: dates stay strings, so every scalar maps onto
    one of the tree's scalar types.
    """


_TreeLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_branch(loader, node):
    loader.flatten_mapping(node)
    return TreeBranch.from_pairs(loader.construct_pairs(node, deep=True))


_TreeLoader.add_constructor("tag:yaml.org,2002:map", _construct_branch)


class _TreeDumper(yaml.SafeDumper):
    def ignore_aliases(self, data):
        return True


def _represent_branch(dumper, branch):
    return dumper.represent_mapping("tag:yaml.org,2002:map", [(i.key, i.value) for i in branch])


_TreeDumper.add_representer(TreeBranch, _represent_branch)


class YAMLStore(Store):
    extensions = (".yaml", ".yml")

    def parse(self, text: str) -> TreeBranch:
        try:
            data = yaml.load(text, Loader=_TreeLoader)
        except yaml.YAMLError as e:
            raise ParseError(f"error unmarshalling input YAML: {e}") from e
        return ensure_branch(data, "YAML")

    def serialize(self, tree: TreeBranch) -> str:
        try:
            return yaml.dump(
                tree,
                Dumper=_TreeDumper,
                default_flow_style=False,
                allow_unicode=True,
                sort_keys=False,
            )
        except yaml.YAMLError as e:
            raise ParseError(f"error marshalling to YAML: {e}") from e
