"""Tests for resolving test frameworks from entry points."""

from importlib.metadata import EntryPoint, EntryPoints
from unittest.mock import patch

import pytest

from explorer_adapter.errors import LoadError
from explorer_adapter.frameworks.loading import (
    ENTRY_POINT_GROUP,
    FrameworkNotFoundError,
    installed_frameworks,
    load_framework,
)
from explorer_adapter.frameworks.pyunit import unittest_framework


def registered(**targets: str) -> EntryPoints:
    return EntryPoints(
        EntryPoint(name=name, value=value, group=ENTRY_POINT_GROUP)
        for name, value in targets.items()
    )


def test_load_framework_returns_registered_instance() -> None:
    """The unittest framework is registered by the package itself."""
    assert load_framework("unittest") is unittest_framework


def test_installed_frameworks_lists_unittest() -> None:
    """Lists the keys of the registered frameworks."""
    assert "unittest" in installed_frameworks()


def test_load_framework_names_installed_frameworks_when_missing() -> None:
    """An unknown key reports which frameworks are installed."""
    with pytest.raises(FrameworkNotFoundError, match=r"'nose'.*installed: .*unittest"):
        load_framework("nose")


def test_load_framework_wraps_import_errors() -> None:
    """An entry point whose module cannot be imported is a load error."""
    entries = registered(broken="does_not_exist_anywhere.frameworks:framework")

    with (
        patch("explorer_adapter.frameworks.loading.entry_points", return_value=entries),
        pytest.raises(LoadError, match="Cannot import test framework 'broken'"),
    ):
        load_framework("broken")


def test_load_framework_rejects_objects_that_are_not_frameworks() -> None:
    """An entry point must refer to a test framework instance."""
    entries = registered(odd="explorer_adapter.frameworks.loading:ENTRY_POINT_GROUP")

    with (
        patch("explorer_adapter.frameworks.loading.entry_points", return_value=entries),
        pytest.raises(LoadError, match="is not a test framework: str"),
    ):
        load_framework("odd")
