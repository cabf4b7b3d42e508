"""Tests for test tree models."""

from pathlib import Path

from explorer_adapter.models.tree import SuiteInfo, TestInfo, TreeIndex, iter_nodes

FILE = Path("/w/test_a.py")


def make_tree() -> SuiteInfo:
    return SuiteInfo(
        id="root",
        label="Python Tests",
        children=[
            SuiteInfo(
                id="/w/test_a.py",
                label="test_a.py",
                file=FILE,
                children=[
                    SuiteInfo(
                        id="/w/test_a.py::A",
                        label="A",
                        file=FILE,
                        children=[
                            TestInfo(id="/w/test_a.py::A::t1", label="t1", file=FILE),
                            TestInfo(id="/w/test_a.py::A::t2", label="t2", file=FILE),
                        ],
                    ),
                    TestInfo(id="/w/test_a.py::top", label="top", file=FILE),
                ],
            )
        ],
    )


def test_iter_nodes_walks_in_declaration_order() -> None:
    """Yields the node itself, then its descendants depth first."""
    assert [node.id for node in iter_nodes(make_tree())] == [
        "root",
        "/w/test_a.py",
        "/w/test_a.py::A",
        "/w/test_a.py::A::t1",
        "/w/test_a.py::A::t2",
        "/w/test_a.py::top",
    ]


def test_index_ancestors_and_file_suite() -> None:
    """Resolves ancestor chains, file suites and declared suites."""
    index = TreeIndex.build(make_tree())

    assert [s.id for s in index.ancestors("/w/test_a.py::A::t1")] == [
        "root",
        "/w/test_a.py",
        "/w/test_a.py::A",
    ]
    file_suite = index.file_suite("/w/test_a.py::A::t1")
    assert file_suite is not None
    assert file_suite.id == "/w/test_a.py"
    assert [s.id for s in index.declared_ancestors("/w/test_a.py::A::t1")] == [
        "/w/test_a.py::A"
    ]
    assert index.declared_ancestors("/w/test_a.py::top") == []
    assert index.file_suite("root") is None


def test_index_leaves() -> None:
    """Collects the tests below a node, or the node itself for a test."""
    index = TreeIndex.build(make_tree())

    assert [t.id for t in index.leaves("root")] == [
        "/w/test_a.py::A::t1",
        "/w/test_a.py::A::t2",
        "/w/test_a.py::top",
    ]
    assert [t.id for t in index.leaves("/w/test_a.py::top")] == ["/w/test_a.py::top"]


def test_tree_round_trips_through_json() -> None:
    """Suites and tests are told apart by their kind when parsed."""
    tree = make_tree()

    assert SuiteInfo.model_validate_json(tree.model_dump_json()) == tree
