"""CLI entry point loading and running tests through the adapter."""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any, assert_never

from explorer_adapter.adapter import ExplorerAdapter
from explorer_adapter.config_reader import AdapterSettings, WorkspaceConfigProvider
from explorer_adapter.frameworks.loading import load_framework
from explorer_adapter.models.events import (
    LoadEvent,
    LoadFinished,
    LoadStarted,
    RunEvent,
    RunFinished,
    RunStarted,
    SuiteEvent,
    TestEvent,
)

STATUS_SYMBOLS = {
    "passed": "✓",
    "failed": "✗",
    "errored": "!",
    "skipped": "-",
}


def print_event(event: LoadEvent | RunEvent) -> None:
    """Write one event as a JSON line on stdout."""
    print(event.to_json(), flush=True)


def log_results_summary(log: logging.Logger, events: Sequence[RunEvent]) -> None:
    """Log a formatted summary of the terminal test states of a run."""
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for event in events:
        match event:
            case TestEvent(state="running"):
                pass
            case TestEvent():
                symbol = STATUS_SYMBOLS.get(event.state, "?")
                log.info("%s %s: %s", symbol, event.test, event.state)
                if event.message and event.state != "passed":
                    log.info("  Message: %s", event.message.strip().splitlines()[-1])
            case RunStarted() | SuiteEvent() | RunFinished():
                pass
            case _:
                assert_never(event)


def format_output(events: Sequence[RunEvent]) -> dict[str, Any]:
    """Count terminal test states of a run."""
    states = [
        event.state
        for event in events
        if isinstance(event, TestEvent) and event.state != "running"
    ]
    return {
        "total": len(states),
        "passed": states.count("passed"),
        "failed": states.count("failed"),
        "errored": states.count("errored"),
        "skipped": states.count("skipped"),
    }


async def run(
    command: str,
    workspace: Path,
    settings_json: str,
    test_ids: Sequence[str] = (),
) -> int:
    """Load (and for ``run``, execute) tests and return the exit code."""
    log = logging.getLogger("explorer_adapter")

    settings = AdapterSettings.model_validate_json(settings_json)
    adapter = ExplorerAdapter(
        WorkspaceConfigProvider(workspace=workspace, settings=settings),
        framework_loader=load_framework,
    )

    load_error: str | None = None

    def on_load_event(event: LoadEvent) -> None:
        nonlocal load_error
        print_event(event)
        match event:
            case LoadFinished(error_message=str(message)):
                load_error = message
            case LoadStarted() | LoadFinished():
                pass
            case _:
                assert_never(event)

    run_events: list[RunEvent] = []

    def on_run_event(event: RunEvent) -> None:
        run_events.append(event)
        print_event(event)

    adapter.load_events.subscribe(on_load_event)
    adapter.run_events.subscribe(on_run_event)

    await adapter.load()
    if load_error is not None:
        log.error("Loading tests failed: %s", load_error)
        return 1
    if command == "load":
        return 0

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, adapter.cancel)

    try:
        await adapter.run(list(test_ids) if test_ids else "all")
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
    log_results_summary(log, run_events)

    output = format_output(run_events)
    log.info(
        "%d passed, %d failed, %d errored, %d skipped",
        output["passed"],
        output["failed"],
        output["errored"],
        output["skipped"],
    )
    return 1 if output["failed"] or output["errored"] else 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Discover and run unittest-style tests, streaming explorer events"
    )
    parser.add_argument(
        "command",
        choices=["load", "run"],
        help="Only discover tests, or discover and run them",
    )
    parser.add_argument(
        "test_ids",
        nargs="*",
        help="Node ids to run (default: all tests)",
    )
    parser.add_argument(
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="Workspace folder containing the tests",
    )
    parser.add_argument(
        "--settings",
        default="{}",
        help="JSON adapter settings",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    exit_code = asyncio.run(
        run(
            command=args.command,
            workspace=args.workspace,
            settings_json=args.settings,
            test_ids=args.test_ids,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
