"""Run orchestrator executing part of a loaded test tree."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Collection, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, assert_never

from explorer_adapter.frameworks.base import (
    AttemptFinished,
    AttemptStarted,
    EventStream,
    FileFailed,
    FilePlan,
    FrameworkError,
    NativeEvent,
    TestFramework,
    WorkerDone,
)
from explorer_adapter.models.config import AdapterConfig
from explorer_adapter.models.events import (
    FAILING_STATES,
    RunEvent,
    RunFinished,
    RunStarted,
    SuiteEvent,
    TerminalState,
    TestEvent,
)
from explorer_adapter.models.tree import SuiteInfo, TestInfo, TreeIndex

log = logging.getLogger(__name__)

WATCHDOG_OVERHEAD = 5.0

TIMEOUT_MESSAGE = "Test timed out after {seconds:g}s"
LOAD_TIMEOUT_MESSAGE = "Timed out loading the test file: no response within {seconds:g}s"
CANCELLED_MESSAGE = "Run cancelled"
NOT_RUN_MESSAGE = "Test was not run"
LOST_MESSAGE = "The test process exited before the test finished"

type Requested = Literal["all"] | Collection[str]
type Emit = Callable[[RunEvent], None]
type Outcome = Literal["done", "timeout", "cancelled"]


class CancellationToken:
    """Cooperative cancellation flag shared by everything working on one run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(kw_only=True)
class RetryRecord:
    """Attempts made for one test within one run."""

    attempts: int = 0
    last_state: TerminalState | None = None
    last_message: str | None = None


@dataclass(frozen=True, kw_only=True)
class FileRun:
    """Requested tests of one file, in tree order."""

    suite: SuiteInfo
    file: Path
    tests: Sequence[TestInfo]
    whole_file: bool
    paths: Mapping[tuple[str, ...], str] = field(repr=False)

    @classmethod
    def create(
        cls,
        index: TreeIndex,
        suite: SuiteInfo,
        tests: Sequence[TestInfo],
        *,
        whole_file: bool,
    ) -> "FileRun":
        """Map the declared name path of every test to its id.

        Names come from the tree labels, so ids never have to be parsed back.
        """
        if suite.file is None:
            raise ValueError(f"Suite {suite.id} does not belong to a file")
        paths: dict[tuple[str, ...], str] = {}
        for test in tests:
            names = [parent.label for parent in index.declared_ancestors(test.id)]
            paths[(*names, test.label)] = test.id
        return cls(
            suite=suite,
            file=suite.file,
            tests=tests,
            whole_file=whole_file,
            paths=paths,
        )

    def plan(self, only: Collection[str] | None = None) -> FilePlan:
        """Build the framework plan, optionally restricted to some test ids."""
        if only is None and self.whole_file:
            return FilePlan(file=self.file)
        return FilePlan(
            file=self.file,
            tests=[
                path
                for path, test_id in self.paths.items()
                if only is None or test_id in only
            ],
        )

    def test_id(self, path: Sequence[str]) -> str | None:
        return self.paths.get(tuple(path))


class RunSession:
    """Mutable bookkeeping for one run.

    Every requested test goes from pending to exactly one terminal event. Suite
    events are derived from the tree: the declared ancestors of a test are
    opened before its first event and closed once a test outside them starts
    or the file is complete.
    """

    def __init__(
        self,
        *,
        index: TreeIndex,
        tests: Sequence[TestInfo],
        emit: Emit,
        max_attempts: int,
    ) -> None:
        self._index = index
        self._emit = emit
        self._max_attempts = max_attempts
        self._pending: dict[str, TestInfo] = {test.id: test for test in tests}
        self._running: dict[str, None] = {}
        self._records: dict[str, RetryRecord] = {}
        self._open_suites: list[str] = []

    def is_pending(self, test_id: str) -> bool:
        return test_id in self._pending

    def is_running(self, test_id: str) -> bool:
        return test_id in self._running

    @property
    def has_running(self) -> bool:
        return bool(self._running)

    def record(self, test_id: str) -> RetryRecord | None:
        return self._records.get(test_id)

    def test_started(self, test_id: str, attempt: int = 1) -> None:
        if test_id not in self._pending:
            log.debug("Ignoring start of %s: not pending in this run", test_id)
            return
        self._records.setdefault(test_id, RetryRecord())
        if test_id in self._running:
            log.info(
                "Retrying %s (attempt %d/%d)", test_id, attempt, self._max_attempts
            )
            return
        self._enter_suites(test_id)
        self._running[test_id] = None
        self._emit(TestEvent(test=test_id, state="running"))

    def test_finished(
        self,
        test_id: str,
        attempt: int,
        state: TerminalState,
        message: str | None = None,
    ) -> None:
        if test_id not in self._pending:
            log.debug("Ignoring result of %s: not pending in this run", test_id)
            return
        if test_id not in self._running:
            self.test_started(test_id, attempt)

        record = self._records[test_id]
        record.attempts = attempt
        record.last_state = state
        record.last_message = message
        log.info("Attempt %d/%d of %s: %s", attempt, self._max_attempts, test_id, state)

        if state in FAILING_STATES and attempt < self._max_attempts:
            return
        self._conclude(test_id, state, message)

    def fail_running(self, message: str) -> None:
        """Report every running test as failed, e.g. after a watchdog expiry."""
        for test_id in list(self._running):
            self._conclude(test_id, "failed", message)

    def fail_tests(self, tests: Sequence[TestInfo], message: str) -> None:
        """Report every pending test of a file as errored."""
        for test in tests:
            if test.id not in self._pending:
                continue
            if test.id not in self._running:
                self.test_started(test.id)
            self._conclude(test.id, "errored", message)

    def complete_tests(self, tests: Sequence[TestInfo], *, cancelled: bool) -> None:
        """Settle every test the framework left without a terminal state.

        Tests that never started are marked running first, so every test
        reports ``running`` followed by exactly one terminal state.
        """
        for test in tests:
            if test.id not in self._pending:
                continue
            if test.id not in self._running:
                self.test_started(test.id)
                message = CANCELLED_MESSAGE if cancelled else NOT_RUN_MESSAGE
                self._conclude(test.id, "skipped", message)
            elif cancelled:
                self._conclude(test.id, "skipped", CANCELLED_MESSAGE)
            elif (record := self._records[test.id]).last_state is not None:
                self._conclude(test.id, record.last_state, record.last_message)
            else:
                self._conclude(test.id, "errored", LOST_MESSAGE)
        self._close_suites()

    def finish(self, *, cancelled: bool) -> None:
        self.complete_tests(list(self._pending.values()), cancelled=cancelled)
        self._records.clear()

    def _conclude(self, test_id: str, state: TerminalState, message: str | None) -> None:
        self._running.pop(test_id, None)
        del self._pending[test_id]
        self._emit(TestEvent(test=test_id, state=state, message=message))

    def _enter_suites(self, test_id: str) -> None:
        targets = [suite.id for suite in self._index.declared_ancestors(test_id)]
        while self._open_suites != targets[: len(self._open_suites)]:
            self._emit(SuiteEvent(suite=self._open_suites.pop(), state="completed"))
        for suite_id in targets[len(self._open_suites) :]:
            self._open_suites.append(suite_id)
            self._emit(SuiteEvent(suite=suite_id, state="running"))

    def _close_suites(self) -> None:
        while self._open_suites:
            self._emit(SuiteEvent(suite=self._open_suites.pop(), state="completed"))


@dataclass(frozen=True, kw_only=True)
class RunOrchestrator:
    """Runs requested tests file by file and publishes well-ordered run events."""

    framework: TestFramework
    watchdog_overhead: float = WATCHDOG_OVERHEAD

    def watchdog(self, config: AdapterConfig, *, debug: bool) -> float | None:
        """Seconds to wait for the next worker message, or None for no limit."""
        timeout = config.options.timeout
        if debug or timeout == 0:
            return None
        return timeout * (config.options.retries + 1) + self.watchdog_overhead

    def select(self, index: TreeIndex, requested: Requested) -> Sequence[FileRun]:
        """Resolve requested node ids to the files and tests that must run.

        A file is always re-enumerated as a whole by the framework; only the
        tests listed here are reported back to the host.
        """
        node_ids = [index.root.id] if requested == "all" else list(requested)
        selected: set[str] = set()
        for node_id in node_ids:
            if node_id not in index.nodes:
                log.warning("Ignoring unknown test id %s", node_id)
                continue
            selected.update(leaf.id for leaf in index.leaves(node_id))

        runs: list[FileRun] = []
        for suite in index.root.children:
            if not isinstance(suite, SuiteInfo):
                continue
            leaves = index.leaves(suite.id)
            tests = [leaf for leaf in leaves if leaf.id in selected]
            if tests:
                whole_file = len(tests) == len(leaves)
                runs.append(FileRun.create(index, suite, tests, whole_file=whole_file))
        return runs

    async def run(
        self,
        tree: SuiteInfo,
        requested: Requested,
        config: AdapterConfig,
        emit: Emit,
        *,
        token: CancellationToken | None = None,
        debug: bool = False,
        on_output: Callable[[str], None] | None = None,
        before_finish: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Run the requested tests, emitting RunStarted first and RunFinished last.

        Args:
            tree: Tree from the last load cycle
            requested: Node ids to run, or "all"
            config: Configuration snapshot for this run
            emit: Receives every run event, in order
            token: Cancels the run when triggered
            debug: Whether the tests run attached to a debugger
            on_output: Receives any text the tests print
            before_finish: Awaited after the last test event, before RunFinished

        """
        token = token or CancellationToken()
        index = TreeIndex.build(tree)
        runs = self.select(index, requested)

        emit(RunStarted(tests="all" if requested == "all" else tuple(requested)))
        session = RunSession(
            index=index,
            tests=[test for file_run in runs for test in file_run.tests],
            emit=emit,
            max_attempts=config.options.retries + 1,
        )
        log.info(
            "Running %d test(s) from %d file(s)...",
            sum(len(file_run.tests) for file_run in runs),
            len(runs),
        )

        try:
            for file_run in runs:
                if token.cancelled:
                    break
                await self._run_file(
                    file_run, session, config, token, debug=debug, on_output=on_output
                )
        finally:
            if token.cancelled:
                log.info("Run cancelled")
            session.finish(cancelled=token.cancelled)
            if before_finish is not None:
                await before_finish()
            emit(RunFinished())
            log.info("Test run completed")

    async def _run_file(
        self,
        file_run: FileRun,
        session: RunSession,
        config: AdapterConfig,
        token: CancellationToken,
        *,
        debug: bool,
        on_output: Callable[[str], None] | None,
    ) -> None:
        limit = self.watchdog(config, debug=debug)
        plan = file_run.plan()

        while True:
            log.debug("Executing %s", file_run.suite.label)
            try:
                async with self.framework.execute(
                    config, [plan], debug=debug, on_output=on_output
                ) as stream:
                    outcome = await self._consume(stream, file_run, session, token, limit)
            except FrameworkError as e:
                log.error("Failed to run tests in %s: %s", file_run.suite.label, e)
                session.fail_tests(file_run.tests, str(e))
                break

            if outcome != "timeout" or limit is None:
                break

            log.warning(
                "No response from %s within %gs, stopping the worker",
                file_run.suite.label,
                limit,
            )
            if not session.has_running:
                session.fail_tests(
                    file_run.tests, LOAD_TIMEOUT_MESSAGE.format(seconds=limit)
                )
                break
            session.fail_running(TIMEOUT_MESSAGE.format(seconds=limit))

            remaining = [
                test.id for test in file_run.tests if session.is_pending(test.id)
            ]
            if not remaining:
                break
            plan = file_run.plan(only=remaining)

        session.complete_tests(file_run.tests, cancelled=token.cancelled)

    async def _consume(
        self,
        stream: EventStream,
        file_run: FileRun,
        session: RunSession,
        token: CancellationToken,
        limit: float | None,
    ) -> Outcome:
        """Drain the stream until the worker is done, silent too long, or cancelled."""
        cancelled = asyncio.ensure_future(token.wait())
        try:
            while True:
                receive = asyncio.ensure_future(stream.receive())
                done, _ = await asyncio.wait(
                    {receive, cancelled},
                    timeout=limit,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if receive not in done:
                    receive.cancel()
                    return "cancelled" if cancelled in done else "timeout"

                event = receive.result()
                if event is None or self._dispatch(event, file_run, session):
                    return "done"
                if token.cancelled:
                    return "cancelled"
        finally:
            cancelled.cancel()

    def _dispatch(
        self, event: NativeEvent, file_run: FileRun, session: RunSession
    ) -> bool:
        """Translate one native event; return True once the worker is done."""
        match event:
            case AttemptStarted():
                if (test_id := file_run.test_id(event.path)) is not None:
                    session.test_started(test_id, event.attempt)
                else:
                    log.debug("Dropping start of unrequested test %s", event.path)
            case AttemptFinished():
                if (test_id := file_run.test_id(event.path)) is not None:
                    session.test_finished(
                        test_id, event.attempt, event.state, event.message
                    )
                else:
                    log.debug("Dropping result of unrequested test %s", event.path)
            case FileFailed():
                log.warning("Failed to load %s for execution", event.file)
                session.fail_tests(file_run.tests, event.message)
            case WorkerDone():
                return True
            case _:
                assert_never(event)
        return False
