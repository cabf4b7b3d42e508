"""Tests for the unittest framework's worker command and request."""

import json
import sys
from pathlib import Path

from explorer_adapter.frameworks.base import FilePlan
from explorer_adapter.frameworks.pyunit.framework import WORKER_SCRIPT, UnittestFramework
from explorer_adapter.models.config import FrameworkOptions
from explorer_adapter.testing.factories import AdapterConfigFactory


def test_command_uses_configured_interpreter() -> None:
    """Runs the worker script under the configured interpreter."""
    config = AdapterConfigFactory.build(python_path=Path("/opt/py/bin/python"))

    command = UnittestFramework().command(config, "discover", debug=False)

    assert command == ["/opt/py/bin/python", str(WORKER_SCRIPT), "discover"]


def test_command_defaults_to_current_interpreter() -> None:
    """Falls back to the interpreter running the adapter."""
    config = AdapterConfigFactory.build()

    command = UnittestFramework().command(config, "run", debug=False)

    assert command[0] == sys.executable


def test_debug_command_connects_to_debugger() -> None:
    """A debug run starts the worker under debugpy, connecting to the port."""
    config = AdapterConfigFactory.build(
        python_path=Path("/opt/py/bin/python"), debugger_port=9229
    )

    command = UnittestFramework().command(config, "run", debug=True)

    assert command == [
        "/opt/py/bin/python",
        "-m",
        "debugpy",
        "--connect",
        "127.0.0.1:9229",
        str(WORKER_SCRIPT),
        "run",
    ]


def test_request_carries_options_and_plans(tmp_path: Path) -> None:
    """Serializes framework options and plans for the worker."""
    file = tmp_path / "test_a.py"
    config = AdapterConfigFactory.build(
        cwd=tmp_path,
        monkey_patch=False,
        options=FrameworkOptions(
            ui="functions", retries=2, requires=["boot.py"], exit=True
        ),
    )

    request = json.loads(
        UnittestFramework().request(
            config, plans=[FilePlan(file=file, tests=[["A", "t1"]])]
        )
    )

    assert request == {
        "cwd": str(tmp_path),
        "files": [],
        "plans": [{"file": str(file), "tests": [["A", "t1"]]}],
        "ui": "functions",
        "requires": ["boot.py"],
        "retries": 2,
        "timeout": 2.0,
        "exit": True,
        "monkey_patch": False,
    }


async def test_discover_without_files_returns_nothing() -> None:
    """No worker is started when there is nothing to enumerate."""
    config = AdapterConfigFactory.build(python_path=Path("/does/not/exist"))

    assert await UnittestFramework().discover(config, []) == []


def test_request_disables_timeout_for_debug_runs(tmp_path: Path) -> None:
    """Tests paused at a breakpoint are never timed out."""
    config = AdapterConfigFactory.build(
        cwd=tmp_path, options=FrameworkOptions(timeout=3.0)
    )

    request = json.loads(UnittestFramework().request(config, debug=True))

    assert request["timeout"] == 0
