"""Fixtures for integration tests."""

import textwrap
from pathlib import Path
from typing import Protocol

import pytest


class WriteModuleFn(Protocol):
    """Protocol for test module creation function."""

    def __call__(self, name: str, source: str) -> Path:
        """Write a module below the workspace and return its resolved path."""


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create an empty workspace folder."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path.resolve()


@pytest.fixture
def write_module(workspace: Path) -> WriteModuleFn:
    """Return a function to write test modules into the workspace."""

    def _write(name: str, source: str) -> Path:
        path = workspace / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(source))
        return path

    return _write
