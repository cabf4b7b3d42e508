"""Adapter core exposing load/run entry points and event channels to a host."""

import logging
from collections.abc import Callable, Collection, Iterable
from pathlib import Path
from typing import Literal

from explorer_adapter.channel import EventChannel
from explorer_adapter.config_reader import ConfigProvider
from explorer_adapter.debug import DebugCoordinator, DebugSubsystem
from explorer_adapter.errors import BusyError, ConfigError, DebugStartError, LoadError
from explorer_adapter.frameworks.base import TestFramework
from explorer_adapter.frameworks.loading import load_framework
from explorer_adapter.models.config import AdapterConfig
from explorer_adapter.models.events import (
    LoadEvent,
    LoadFinished,
    LoadStarted,
    RunEvent,
    RunFinished,
    RunStarted,
)
from explorer_adapter.models.tree import SuiteInfo
from explorer_adapter.orchestrator import (
    WATCHDOG_OVERHEAD,
    CancellationToken,
    Requested,
    RunOrchestrator,
)
from explorer_adapter.output import LogOutputChannel, OutputChannel
from explorer_adapter.tree_builder import TestTreeBuilder

log = logging.getLogger(__name__)


class ExplorerAdapter:
    """Discovers and runs tests for one workspace, one operation at a time."""

    def __init__(
        self,
        config_provider: ConfigProvider,
        *,
        framework_loader: Callable[[str], TestFramework] = load_framework,
        debug_subsystem: DebugSubsystem | None = None,
        output: OutputChannel | None = None,
        watchdog_overhead: float = WATCHDOG_OVERHEAD,
    ) -> None:
        self.config_provider = config_provider
        self.framework_loader = framework_loader
        self.debug_subsystem = debug_subsystem
        self.output = output or LogOutputChannel()
        self.watchdog_overhead = watchdog_overhead

        self.load_events: EventChannel[LoadEvent] = EventChannel()
        self.run_events: EventChannel[RunEvent] = EventChannel()
        self.autorun: EventChannel[None] = EventChannel()

        self._busy: Literal["load", "run"] | None = None
        self._token: CancellationToken | None = None
        self._tree: SuiteInfo | None = None
        self._config: AdapterConfig | None = None

    @property
    def tree(self) -> SuiteInfo | None:
        """Tree published by the last successful load."""
        return self._tree

    def _acquire(self, operation: Literal["load", "run"]) -> None:
        if self._busy is not None:
            raise BusyError(f"Cannot {operation}: a {self._busy} is already in progress")
        self._busy = operation

    async def _current_config(self) -> AdapterConfig:
        try:
            return await self.config_provider.current_config()
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Failed to read the configuration: {e}") from e

    async def load(self) -> None:
        """Discover tests and publish the tree; errors end up in LoadFinished.

        Raises:
            BusyError: If a load or run is already in progress

        """
        self._acquire("load")
        try:
            self.load_events.fire(LoadStarted())
            log.info("Loading test files")
            try:
                config = await self._current_config()
                self._config = config
                builder = TestTreeBuilder(framework=self.framework_loader(config.framework))
                tree = await builder.build(config)
            except (ConfigError, LoadError) as e:
                log.error("Failed to load tests: %s", e)
                self._tree = None
                self.load_events.fire(LoadFinished(error_message=str(e)))
                return
            except Exception as e:
                log.error("Unexpected error while loading tests: %s", e, exc_info=e)
                self._tree = None
                self.load_events.fire(LoadFinished(error_message=repr(e)))
                return

            self._tree = tree
            log.info("Loaded %d test file(s)", len(tree.children))
            self.load_events.fire(LoadFinished(suite=tree))
        finally:
            self._busy = None

    async def run(self, test_ids: Requested, *, debug: bool = False) -> None:
        """Run the given node ids (or "all"), publishing run events.

        Raises:
            BusyError: If a load or run is already in progress
            DebugStartError: If ``debug`` is set and no debug session could be
                started

        """
        self._acquire("run")
        token = self._token = CancellationToken()
        requested = test_ids if test_ids == "all" else tuple(test_ids)
        try:
            try:
                config = await self._current_config()
            except ConfigError as e:
                log.error("Cannot run tests: %s", e)
                self._empty_run(requested)
                return

            tree = self._tree
            if tree is None:
                log.warning("Cannot run tests: no tests have been loaded")
                self._empty_run(requested)
                return

            try:
                framework = self.framework_loader(config.framework)
            except LoadError as e:
                log.error("Cannot run tests: %s", e)
                self._empty_run(requested)
                return

            orchestrator = RunOrchestrator(
                framework=framework, watchdog_overhead=self.watchdog_overhead
            )
            if debug:
                await self._debug(orchestrator, tree, requested, config, token)
            else:
                await orchestrator.run(
                    tree,
                    requested,
                    config,
                    self.run_events.fire,
                    token=token,
                    on_output=self.output.append,
                )
        finally:
            self._token = None
            self._busy = None

    async def _debug(
        self,
        orchestrator: RunOrchestrator,
        tree: SuiteInfo,
        requested: Requested,
        config: AdapterConfig,
        token: CancellationToken,
    ) -> None:
        if self.debug_subsystem is None:
            self._empty_run(requested)
            raise DebugStartError("No debugging subsystem is available")

        coordinator = DebugCoordinator(
            orchestrator=orchestrator, subsystem=self.debug_subsystem
        )
        await coordinator.run(
            tree,
            requested,
            config,
            self.run_events.fire,
            token=token,
            on_output=self.output.append,
        )

    def _empty_run(self, requested: Requested) -> None:
        self.run_events.fire(
            RunStarted(tests="all" if requested == "all" else tuple(requested))
        )
        self.run_events.fire(RunFinished())

    def cancel(self) -> None:
        """Cancel the current run; does nothing when no run is in progress."""
        if self._token is not None and not self._token.cancelled:
            log.info("Cancelling the test run")
            self._token.cancel()

    async def on_files_changed(self, paths: Iterable[Path]) -> None:
        """React to changed files reported by the host's file watcher.

        A changed options file triggers a reload; a changed test file triggers
        a reload followed by an autorun signal.
        """
        config = self._config
        if config is None:
            return
        changed = {Path(path).resolve() for path in paths}

        if config.options_file is not None and config.options_file in changed:
            log.info("Options file changed, reloading")
            await self._reload()
            return

        if changed & self._test_files(config):
            log.info("Test files changed, reloading")
            if await self._reload():
                self.autorun.fire(None)

    def _test_files(self, config: AdapterConfig) -> Collection[Path]:
        return {file.resolve() for file in config.files}

    async def _reload(self) -> bool:
        try:
            await self.load()
        except BusyError as e:
            log.info("Skipping reload: %s", e)
            return False
        return True

    def dispose(self) -> None:
        self.cancel()
        self.load_events.dispose()
        self.run_events.dispose()
        self.autorun.dispose()
