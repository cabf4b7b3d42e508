"""Abstract base class for test frameworks driven by the adapter."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter

from explorer_adapter.models.base import Model
from explorer_adapter.models.config import AdapterConfig
from explorer_adapter.models.events import TerminalState


class FrameworkError(Exception):
    """Raised when the framework cannot be started or stops reporting."""


class DiscoveredNode(Model):
    """A suite (``children`` set) or test (``children`` is None) found in a file."""

    name: str
    line: int | None = None
    children: Sequence["DiscoveredNode"] | None = None


class DiscoveredFile(Model):
    """Enumeration result for one file."""

    type: Literal["file"] = "file"
    file: Path
    nodes: Sequence[DiscoveredNode] = ()
    error: str | None = None


class DiscoveryFailed(Model):
    """The framework could not enumerate anything at all."""

    type: Literal["fatal"] = "fatal"
    message: str


class FilePlan(Model):
    """Tests to execute from one file; ``tests`` of None means all of them."""

    file: Path
    tests: Sequence[Sequence[str]] | None = None


class AttemptStarted(Model):
    """One attempt of a test started."""

    type: Literal["start"] = "start"
    file: Path
    path: Sequence[str]
    attempt: int = 1


class AttemptFinished(Model):
    """One attempt of a test reached a terminal state."""

    type: Literal["end"] = "end"
    file: Path
    path: Sequence[str]
    attempt: int = 1
    state: TerminalState
    message: str | None = None
    duration: float = 0.0


class FileFailed(Model):
    """A test file could not be loaded for execution."""

    type: Literal["file_error"] = "file_error"
    file: Path
    message: str


class WorkerDone(Model):
    """The worker has reported everything it is going to report."""

    type: Literal["done"] = "done"


type NativeEvent = AttemptStarted | AttemptFinished | FileFailed | WorkerDone

DISCOVERY_MESSAGE: TypeAdapter[DiscoveredFile | DiscoveryFailed] = TypeAdapter(
    Annotated[Union[DiscoveredFile, DiscoveryFailed], Field(discriminator="type")]
)
NATIVE_EVENT: TypeAdapter[NativeEvent] = TypeAdapter(
    Annotated[
        Union[AttemptStarted, AttemptFinished, FileFailed, WorkerDone],
        Field(discriminator="type"),
    ]
)


class EventStream:
    """Bounded, ordered queue of native events; ``None`` marks the end."""

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[NativeEvent | None] = asyncio.Queue(maxsize)

    async def put(self, event: NativeEvent) -> None:
        await self._queue.put(event)

    async def close(self) -> None:
        await self._queue.put(None)

    async def receive(self) -> NativeEvent | None:
        return await self._queue.get()


@dataclass(frozen=True, kw_only=True)
class TestFramework(ABC):
    """Abstract base for frameworks that enumerate and execute test files."""

    __test__ = False

    @abstractmethod
    async def discover(
        self,
        config: AdapterConfig,
        files: Sequence[Path],
    ) -> Sequence[DiscoveredFile]:
        """Enumerate the tests in the given files without running them.

        Args:
            config: Configuration snapshot for this load cycle
            files: Files to enumerate, in order

        Returns:
            One result per file, in the order given

        Raises:
            FrameworkError: If the framework or a required module cannot be loaded

        """

    @abstractmethod
    def execute(
        self,
        config: AdapterConfig,
        plans: Sequence[FilePlan],
        *,
        debug: bool = False,
        on_output: Callable[[str], None] | None = None,
    ) -> AbstractAsyncContextManager[EventStream]:
        """Start executing tests and expose their progress as an event stream.

        Leaving the context stops the execution, killing it if necessary.

        Args:
            config: Configuration snapshot for this run
            plans: Files and tests to execute
            debug: Whether the execution should connect to a debugger
            on_output: Receives any text the tests print

        Raises:
            FrameworkError: If the execution cannot be started

        """
