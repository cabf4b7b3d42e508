"""Events published to the host while loading and running tests."""

from collections.abc import Sequence
from typing import Literal

from explorer_adapter.models.base import Model
from explorer_adapter.models.tree import SuiteInfo

type SuiteState = Literal["running", "completed"]
type TerminalState = Literal["passed", "failed", "skipped", "errored"]
type TestState = Literal["running"] | TerminalState

TERMINAL_STATES: frozenset[str] = frozenset({"passed", "failed", "skipped", "errored"})
FAILING_STATES: frozenset[str] = frozenset({"failed", "errored"})


class LoadStarted(Model):
    """Discovery has started."""

    type: Literal["started"] = "started"


class LoadFinished(Model):
    """Discovery finished with either a tree or an error message."""

    type: Literal["finished"] = "finished"
    suite: SuiteInfo | None = None
    error_message: str | None = None


type LoadEvent = LoadStarted | LoadFinished


class RunStarted(Model):
    """A run has started for the requested node ids."""

    type: Literal["started"] = "started"
    tests: Literal["all"] | Sequence[str]


class SuiteEvent(Model):
    """State change of a declared suite."""

    type: Literal["suite"] = "suite"
    suite: str
    state: SuiteState


class TestEvent(Model):
    """State change of a single test."""

    __test__ = False

    type: Literal["test"] = "test"
    test: str
    state: TestState
    message: str | None = None


class RunFinished(Model):
    """The run is over; no further events follow for it."""

    type: Literal["finished"] = "finished"


type RunEvent = RunStarted | SuiteEvent | TestEvent | RunFinished
