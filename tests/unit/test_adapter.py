"""Tests for the adapter core."""

import asyncio
from pathlib import Path

import pytest

from explorer_adapter.adapter import ExplorerAdapter
from explorer_adapter.config_reader import StaticConfigProvider
from explorer_adapter.errors import BusyError, ConfigError, DebugStartError
from explorer_adapter.frameworks.loading import FrameworkNotFoundError
from explorer_adapter.models.config import AdapterConfig
from explorer_adapter.models.events import (
    LoadEvent,
    LoadFinished,
    LoadStarted,
    RunEvent,
    RunFinished,
    RunStarted,
    TestEvent,
)
from explorer_adapter.orchestrator import CANCELLED_MESSAGE
from explorer_adapter.testing.factories import AdapterConfigFactory
from explorer_adapter.testing.fakes import (
    EventCollector,
    FakeDebugSubsystem,
    RecordingOutputChannel,
    ScriptedFile,
    ScriptedFramework,
    ScriptedTest,
)


class GatedConfigProvider:
    """Config provider blocking until released."""

    def __init__(self, config: AdapterConfig) -> None:
        self.config = config
        self.gate = asyncio.Event()

    async def current_config(self) -> AdapterConfig:
        await self.gate.wait()
        return self.config


class FailingConfigProvider:
    """Config provider that cannot produce a snapshot."""

    async def current_config(self) -> AdapterConfig:
        raise ConfigError("Invalid YAML in .explorer.yaml")


@pytest.fixture
def test_file(tmp_path: Path) -> Path:
    return tmp_path / "test_a.py"


@pytest.fixture
def config(tmp_path: Path, test_file: Path) -> AdapterConfig:
    return AdapterConfigFactory.build(
        files=[test_file], cwd=tmp_path, options_file=tmp_path / ".explorer.yaml"
    )


@pytest.fixture
def framework(test_file: Path) -> ScriptedFramework:
    return ScriptedFramework(
        files=[
            ScriptedFile(
                path=test_file,
                tests=[
                    ScriptedTest(path=("t1",), outcomes=("failed",), message="boom"),
                    ScriptedTest(path=("t2",)),
                ],
            )
        ]
    )


@pytest.fixture
def output() -> RecordingOutputChannel:
    return RecordingOutputChannel()


@pytest.fixture
def adapter(
    config: AdapterConfig, framework: ScriptedFramework, output: RecordingOutputChannel
) -> ExplorerAdapter:
    return ExplorerAdapter(
        StaticConfigProvider(config=config),
        framework_loader=lambda _: framework,
        output=output,
    )


async def test_load_publishes_tree(adapter: ExplorerAdapter, test_file: Path) -> None:
    """A successful load publishes the tree between LoadStarted/LoadFinished."""
    collector: EventCollector[LoadEvent] = EventCollector(adapter.load_events)

    await adapter.load()

    assert len(collector.events) == 2
    started, finished = collector.events
    assert started == LoadStarted()
    assert isinstance(finished, LoadFinished)
    assert finished.error_message is None
    assert finished.suite is not None
    assert finished.suite == adapter.tree
    assert [child.id for child in finished.suite.children] == [str(test_file)]


async def test_load_reports_framework_failure(
    config: AdapterConfig,
) -> None:
    """A framework failure ends the load cycle with an error message."""
    adapter = ExplorerAdapter(
        StaticConfigProvider(config=config),
        framework_loader=lambda _: ScriptedFramework(fatal_error="No module named 'x'"),
    )
    collector: EventCollector[LoadEvent] = EventCollector(adapter.load_events)

    await adapter.load()

    assert collector.events == [
        LoadStarted(),
        LoadFinished(error_message="No module named 'x'"),
    ]
    assert adapter.tree is None


async def test_load_reports_config_error() -> None:
    """An unusable configuration ends the load cycle with an error message."""
    adapter = ExplorerAdapter(FailingConfigProvider())
    collector: EventCollector[LoadEvent] = EventCollector(adapter.load_events)

    await adapter.load()

    assert collector.events[-1] == LoadFinished(
        error_message="Invalid YAML in .explorer.yaml"
    )


async def test_load_reports_unknown_framework(config: AdapterConfig) -> None:
    """An unknown framework key ends the load cycle with an error message."""

    def loader(key: str) -> ScriptedFramework:
        raise FrameworkNotFoundError(f"Test framework '{key}' not found")

    adapter = ExplorerAdapter(StaticConfigProvider(config=config), framework_loader=loader)
    collector: EventCollector[LoadEvent] = EventCollector(adapter.load_events)

    await adapter.load()

    finished = collector.events[-1]
    assert isinstance(finished, LoadFinished)
    assert finished.error_message == "Test framework 'scripted' not found"


async def test_load_reports_unexpected_errors(config: AdapterConfig) -> None:
    """Unexpected exceptions still end the load cycle."""

    def loader(key: str) -> ScriptedFramework:
        raise RuntimeError("kaput")

    adapter = ExplorerAdapter(StaticConfigProvider(config=config), framework_loader=loader)
    collector: EventCollector[LoadEvent] = EventCollector(adapter.load_events)

    await adapter.load()

    finished = collector.events[-1]
    assert isinstance(finished, LoadFinished)
    assert finished.error_message is not None
    assert "kaput" in finished.error_message


async def test_operations_are_rejected_while_busy(
    config: AdapterConfig, framework: ScriptedFramework
) -> None:
    """A second load or run is rejected while one is in flight."""
    provider = GatedConfigProvider(config)
    adapter = ExplorerAdapter(provider, framework_loader=lambda _: framework)
    collector: EventCollector[LoadEvent] = EventCollector(adapter.load_events)

    task = asyncio.create_task(adapter.load())
    await collector.wait_for(lambda event: event == LoadStarted())

    with pytest.raises(BusyError):
        await adapter.load()
    with pytest.raises(BusyError):
        await adapter.run("all")

    provider.gate.set()
    await task

    assert isinstance(collector.events[-1], LoadFinished)
    assert adapter.tree is not None
    await adapter.run("all")


async def test_run_before_load_is_empty(adapter: ExplorerAdapter) -> None:
    """Running without a loaded tree yields an empty run."""
    collector: EventCollector[RunEvent] = EventCollector(adapter.run_events)

    await adapter.run("all")

    assert collector.events == [RunStarted(tests="all"), RunFinished()]


async def test_run_publishes_results_and_output(
    adapter: ExplorerAdapter, test_file: Path, output: RecordingOutputChannel
) -> None:
    """Run events reach the run channel and test output the output channel."""
    await adapter.load()
    collector: EventCollector[RunEvent] = EventCollector(adapter.run_events)

    await adapter.run([f"{test_file}::t1", f"{test_file}::t2"])

    assert collector.events[0] == RunStarted(
        tests=(f"{test_file}::t1", f"{test_file}::t2")
    )
    assert TestEvent(test=f"{test_file}::t1", state="failed", message="boom") in (
        collector.events
    )
    assert TestEvent(test=f"{test_file}::t2", state="passed") in collector.events
    assert collector.events[-1] == RunFinished()
    assert output.messages == ["running t1\n", "running t2\n"]


async def test_cancel_during_run_skips_remaining_tests(
    adapter: ExplorerAdapter, test_file: Path
) -> None:
    """Cancelling from a listener stops the run."""
    await adapter.load()
    collector: EventCollector[RunEvent] = EventCollector(adapter.run_events)

    def cancel_on_first_start(event: RunEvent) -> None:
        if event == TestEvent(test=f"{test_file}::t1", state="running"):
            adapter.cancel()

    adapter.run_events.subscribe(cancel_on_first_start)
    await adapter.run("all")

    assert TestEvent(
        test=f"{test_file}::t2", state="skipped", message=CANCELLED_MESSAGE
    ) in collector.events
    assert collector.events[-1] == RunFinished()


def test_cancel_without_run_does_nothing(adapter: ExplorerAdapter) -> None:
    """Cancelling while idle is a no-op."""
    adapter.cancel()
    adapter.cancel()


async def test_debug_run_without_subsystem_fails(adapter: ExplorerAdapter) -> None:
    """Debugging is rejected when the host offers no debug subsystem."""
    await adapter.load()
    collector: EventCollector[RunEvent] = EventCollector(adapter.run_events)

    with pytest.raises(DebugStartError):
        await adapter.run("all", debug=True)

    assert collector.events == [RunStarted(tests="all"), RunFinished()]
    await adapter.run("all")


async def test_debug_run_declined(
    config: AdapterConfig, framework: ScriptedFramework
) -> None:
    """A declined debug session raises after an empty run."""
    subsystem = FakeDebugSubsystem(accept=False)
    adapter = ExplorerAdapter(
        StaticConfigProvider(config=config),
        framework_loader=lambda _: framework,
        debug_subsystem=subsystem,
    )
    await adapter.load()
    collector: EventCollector[RunEvent] = EventCollector(adapter.run_events)

    with pytest.raises(DebugStartError):
        await adapter.run("all", debug=True)

    assert collector.events == [RunStarted(tests="all"), RunFinished()]
    assert framework.plans == []
    assert subsystem.started == [config]


async def test_changed_test_file_reloads_and_autoruns(
    adapter: ExplorerAdapter, test_file: Path
) -> None:
    """A changed test file triggers a reload and an autorun signal."""
    await adapter.load()
    loads: EventCollector[LoadEvent] = EventCollector(adapter.load_events)
    autoruns: EventCollector[None] = EventCollector(adapter.autorun)

    await adapter.on_files_changed([test_file])

    assert loads.events[0] == LoadStarted()
    assert autoruns.events == [None]


async def test_changed_options_file_reloads_without_autorun(
    adapter: ExplorerAdapter, config: AdapterConfig
) -> None:
    """A changed options file only triggers a reload."""
    await adapter.load()
    loads: EventCollector[LoadEvent] = EventCollector(adapter.load_events)
    autoruns: EventCollector[None] = EventCollector(adapter.autorun)

    assert config.options_file is not None
    await adapter.on_files_changed([config.options_file])

    assert len(loads.events) == 2
    assert autoruns.events == []


async def test_unrelated_change_is_ignored(
    adapter: ExplorerAdapter, tmp_path: Path
) -> None:
    """Changes to files the adapter does not track are ignored."""
    await adapter.load()
    loads: EventCollector[LoadEvent] = EventCollector(adapter.load_events)

    await adapter.on_files_changed([tmp_path / "README.md"])

    assert loads.events == []


async def test_dispose_stops_delivery(adapter: ExplorerAdapter) -> None:
    """No events are delivered after disposal."""
    collector: EventCollector[LoadEvent] = EventCollector(adapter.load_events)

    adapter.dispose()
    await adapter.load()

    assert collector.events == []
