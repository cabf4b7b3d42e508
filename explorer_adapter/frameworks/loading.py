"""Test framework plug-ins registered under an entry point group."""

import logging
from collections.abc import Sequence
from importlib.metadata import entry_points

from explorer_adapter.errors import LoadError
from explorer_adapter.frameworks.base import TestFramework

log = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "explorer_adapter.frameworks"


class FrameworkNotFoundError(LoadError):
    """No test framework is registered under the requested key."""


def installed_frameworks() -> Sequence[str]:
    """Keys of every registered test framework, sorted."""
    return sorted({entry.name for entry in entry_points(group=ENTRY_POINT_GROUP)})


def load_framework(key: str) -> TestFramework:
    """Resolve the framework instance registered under ``key``.

    Args:
        key: Entry point name, e.g. "unittest"

    Raises:
        FrameworkNotFoundError: If nothing is registered under ``key``
        LoadError: If the entry point cannot be imported or does not refer to
            a test framework

    """
    entry = next(iter(entry_points(group=ENTRY_POINT_GROUP).select(name=key)), None)
    if entry is None:
        installed = ", ".join(installed_frameworks()) or "none"
        raise FrameworkNotFoundError(
            f"No test framework named {key!r} (installed: {installed})"
        )

    try:
        framework = entry.load()
    except Exception as e:
        raise LoadError(
            f"Cannot import test framework {key!r} from {entry.value}: {e}"
        ) from e

    if not isinstance(framework, TestFramework):
        raise LoadError(
            f"Entry point {entry.value} for {key!r} is not a test framework: "
            f"{type(framework).__name__}"
        )
    log.debug("Using test framework %r from %s", key, entry.value)
    return framework
