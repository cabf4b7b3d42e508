"""Debug coordinator running a test run inside an attached debug session."""

import asyncio
import logging
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from explorer_adapter.channel import Disposable
from explorer_adapter.errors import DebugStartError
from explorer_adapter.models.config import AdapterConfig
from explorer_adapter.models.events import RunFinished, RunStarted
from explorer_adapter.models.tree import SuiteInfo
from explorer_adapter.orchestrator import (
    CancellationToken,
    Emit,
    Requested,
    RunOrchestrator,
)

log = logging.getLogger(__name__)

TERMINATION_GRACE = 5.0


class DebugSubsystem(Protocol):
    """The host's debugging facility."""

    async def start_debugging(self, config: AdapterConfig) -> bool:
        """Ask the host to start a debug session; True once it is attached."""

    def on_session_terminated(self, callback: Callable[[Any], None]) -> Disposable:
        """Register a callback receiving the session handle when a session ends."""


class DebugState(StrEnum):
    """States of a debug-enabled run."""

    IDLE = "idle"
    REQUESTING = "requesting"
    ATTACHED = "attached"
    RUNNING = "running"
    FINISHED = "finished"
    ABORTED = "aborted"


@dataclass(kw_only=True)
class DebugCoordinator:
    """Wraps one orchestrated run in a debug session.

    RunFinished is only emitted once both the tests and the debug session have
    ended. A session that ends before the tests do cancels the run.
    """

    orchestrator: RunOrchestrator
    subsystem: DebugSubsystem
    termination_grace: float = TERMINATION_GRACE
    state: DebugState = field(default=DebugState.IDLE, init=False)

    def _transition(self, state: DebugState) -> None:
        log.debug("Debug coordinator: %s -> %s", self.state, state)
        self.state = state

    async def run(
        self,
        tree: SuiteInfo,
        requested: Requested,
        config: AdapterConfig,
        emit: Emit,
        *,
        token: CancellationToken,
        on_output: Callable[[str], None] | None = None,
    ) -> None:
        """Start a debug session and run the requested tests inside it.

        Raises:
            DebugStartError: If the session could not be started; RunStarted and
                RunFinished have been emitted, without any test events

        """
        terminated = asyncio.Event()
        tests_done = False

        def on_terminated(session: Any) -> None:
            log.info("Debug session ended: %s", session)
            terminated.set()
            if not tests_done and self.state is not DebugState.ABORTED:
                log.warning("Debug session ended before the tests finished")
                self._transition(DebugState.ABORTED)
                token.cancel()

        async def wait_for_session_end() -> None:
            nonlocal tests_done
            tests_done = True
            await self._wait_for_termination(terminated, token)

        with ExitStack() as stack:
            subscription = self.subsystem.on_session_terminated(on_terminated)
            stack.callback(subscription.dispose)

            self._transition(DebugState.REQUESTING)
            log.info("Starting the debug session")
            try:
                started = await self.subsystem.start_debugging(config)
            except Exception as e:
                log.error("Failed starting the debug session: %s", e, exc_info=e)
                started = False

            if not started or self.state is DebugState.ABORTED:
                self._transition(DebugState.ABORTED)
                emit(RunStarted(tests="all" if requested == "all" else tuple(requested)))
                emit(RunFinished())
                raise DebugStartError("Failed starting the debug session")

            self._transition(DebugState.ATTACHED)
            await asyncio.sleep(config.debugger_ready_delay)

            if self.state is not DebugState.ABORTED:
                self._transition(DebugState.RUNNING)
            await self.orchestrator.run(
                tree,
                requested,
                config,
                emit,
                token=token,
                debug=True,
                on_output=on_output,
                before_finish=wait_for_session_end,
            )

            if self.state is DebugState.RUNNING:
                self._transition(DebugState.FINISHED)

    async def _wait_for_termination(
        self, terminated: asyncio.Event, token: CancellationToken
    ) -> None:
        """Wait for the session to end; after a cancel, only for a grace period."""
        if terminated.is_set():
            return
        session_end = asyncio.ensure_future(terminated.wait())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait(
                {session_end, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            if terminated.is_set():
                return
            try:
                await asyncio.wait_for(session_end, self.termination_grace)
            except TimeoutError:
                log.warning(
                    "Debug session did not end within %gs after cancellation",
                    self.termination_grace,
                )
        finally:
            session_end.cancel()
            cancelled.cancel()
