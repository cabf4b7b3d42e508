"""Framework running unittest-style tests in a worker process."""

from explorer_adapter.frameworks.pyunit.framework import UnittestFramework

unittest_framework = UnittestFramework()

__all__ = ["UnittestFramework", "unittest_framework"]
