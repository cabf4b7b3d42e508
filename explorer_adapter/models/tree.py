"""Models for the hierarchical test tree produced by a load cycle."""

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import Field

from explorer_adapter.models.base import Model


class TestInfo(Model):
    """A leaf test."""

    __test__ = False

    kind: Literal["test"] = "test"
    id: str
    label: str
    file: Path | None = None
    line: int | None = None
    error: str | None = Field(
        default=None, description="Set on synthetic nodes standing in for a load error"
    )


class SuiteInfo(Model):
    """A named group of tests and nested suites."""

    kind: Literal["suite"] = "suite"
    id: str
    label: str
    file: Path | None = None
    line: int | None = None
    children: Sequence[
        Annotated[Union["SuiteInfo", TestInfo], Field(discriminator="kind")]
    ] = ()


type TestNode = SuiteInfo | TestInfo


def iter_nodes(node: TestNode) -> Iterator[TestNode]:
    """Yield the node and all its descendants in declaration order."""
    yield node
    if isinstance(node, SuiteInfo):
        for child in node.children:
            yield from iter_nodes(child)


@dataclass(frozen=True, kw_only=True)
class TreeIndex:
    """Lookup tables over a loaded tree.

    The tree is always shaped root -> file suites -> declared suites/tests, so
    the file suite of a node is the second entry of its ancestor chain.
    """

    root: SuiteInfo
    nodes: Mapping[str, TestNode]
    parents: Mapping[str, str]

    @classmethod
    def build(cls, root: SuiteInfo) -> "TreeIndex":
        nodes: dict[str, TestNode] = {}
        parents: dict[str, str] = {}
        for node in iter_nodes(root):
            nodes[node.id] = node
            if isinstance(node, SuiteInfo):
                for child in node.children:
                    parents[child.id] = node.id
        return cls(root=root, nodes=nodes, parents=parents)

    def ancestors(self, node_id: str) -> Sequence[SuiteInfo]:
        """Return the suites above a node, root first."""
        chain: list[SuiteInfo] = []
        current = self.parents.get(node_id)
        while current is not None:
            node = self.nodes[current]
            if isinstance(node, SuiteInfo):
                chain.append(node)
            current = self.parents.get(current)
        chain.reverse()
        return chain

    def file_suite(self, node_id: str) -> SuiteInfo | None:
        """Return the synthetic per-file suite containing a node."""
        if node_id == self.root.id:
            return None
        chain = [*self.ancestors(node_id), self.nodes[node_id]]
        suite = chain[1]
        return suite if isinstance(suite, SuiteInfo) else None

    def declared_ancestors(self, node_id: str) -> Sequence[SuiteInfo]:
        """Return ancestor suites below the file level, outermost first."""
        return self.ancestors(node_id)[2:]

    def leaves(self, node_id: str) -> Sequence[TestInfo]:
        """Return all tests under a node (the node itself if it is a test)."""
        return [
            node for node in iter_nodes(self.nodes[node_id]) if isinstance(node, TestInfo)
        ]
