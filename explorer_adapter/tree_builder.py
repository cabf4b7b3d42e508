"""Build the canonical test tree from a configuration snapshot."""

import logging
import re
from collections import defaultdict, deque
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from explorer_adapter import ids
from explorer_adapter.errors import EnumerationError, LoadError
from explorer_adapter.frameworks.base import (
    DiscoveredFile,
    DiscoveredNode,
    FrameworkError,
    TestFramework,
)
from explorer_adapter.models.config import AdapterConfig
from explorer_adapter.models.tree import SuiteInfo, TestInfo, TestNode

log = logging.getLogger(__name__)

ROOT_LABEL = "Python Tests"
ERROR_NODE_NAME = "<load error>"

TEST_MODULE_PATTERN = re.compile(
    r"^\s*(?:async\s+)?def\s+test|^\s*class\s+\w*Test|\bunittest\b|\bTestCase\b",
    re.MULTILINE,
)


def prune_files(files: Sequence[Path]) -> Sequence[Path]:
    """Drop files that do not look like test modules.

    Unreadable files are dropped as well, with a warning.
    """
    kept: list[Path] = []
    for file in files:
        try:
            text = file.read_text(errors="replace")
        except OSError as e:
            log.warning("Excluding unreadable test file %s: %s", file, e)
            continue
        if TEST_MODULE_PATTERN.search(text):
            kept.append(file)
        else:
            log.debug("Pruned %s: no tests found in source", file)
    return kept


@dataclass(frozen=True, kw_only=True)
class TestTreeBuilder:
    """Turns the configured file list into a tree with stable ids."""

    __test__ = False

    framework: TestFramework

    async def build(self, config: AdapterConfig) -> SuiteInfo:
        """Enumerate all configured files and assemble the tree.

        Args:
            config: Configuration snapshot for this load cycle

        Returns:
            Root suite holding one suite per file

        Raises:
            LoadError: If the framework or a required module cannot be loaded

        """
        files = prune_files(config.files) if config.prune_files else config.files
        if not files:
            log.info("No test files configured")
            return SuiteInfo(id=ids.ROOT_ID, label=ROOT_LABEL)

        log.info("Enumerating tests in %d file(s)...", len(files))
        try:
            discovered = await self.framework.discover(config, files)
        except FrameworkError as e:
            raise LoadError(str(e)) from e

        results: defaultdict[Path, deque[DiscoveredFile]] = defaultdict(deque)
        for result in discovered:
            results[result.file].append(result)

        allocator = ids.IdAllocator({ids.ROOT_ID})
        children: list[TestNode] = []
        for file in files:
            if results[file]:
                result = results[file].popleft()
            else:
                result = DiscoveredFile(
                    file=file, error="The test framework did not report this file"
                )
            children.append(self._file_suite(result, config.cwd, allocator))

        return SuiteInfo(id=ids.ROOT_ID, label=ROOT_LABEL, children=children)

    def _file_suite(
        self, result: DiscoveredFile, cwd: Path, allocator: ids.IdAllocator
    ) -> SuiteInfo:
        suite_id = allocator.allocate(ids.file_id(result.file))
        label = _relative_label(result.file, cwd)

        if result.error is not None:
            error = EnumerationError(result.file, result.error)
            log.warning("%s", error)
            node = TestInfo(
                id=allocator.allocate(ids.child_id(suite_id, ERROR_NODE_NAME)),
                label=ERROR_NODE_NAME,
                file=result.file,
                error=str(error),
            )
            return SuiteInfo(id=suite_id, label=label, file=result.file, children=[node])

        return SuiteInfo(
            id=suite_id,
            label=label,
            file=result.file,
            children=[
                self._node(node, suite_id, result.file, allocator)
                for node in result.nodes
            ],
        )

    def _node(
        self,
        node: DiscoveredNode,
        parent_id: str,
        file: Path,
        allocator: ids.IdAllocator,
    ) -> TestNode:
        node_id = allocator.allocate(ids.child_id(parent_id, node.name))
        if node.children is None:
            return TestInfo(id=node_id, label=node.name, file=file, line=node.line)
        return SuiteInfo(
            id=node_id,
            label=node.name,
            file=file,
            line=node.line,
            children=[
                self._node(child, node_id, file, allocator) for child in node.children
            ],
        )


def _relative_label(file: Path, cwd: Path) -> str:
    try:
        return file.relative_to(cwd).as_posix()
    except ValueError:
        return str(file)
