"""Configuration snapshot consumed by the tree builder and run orchestrator."""

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Literal

from pydantic import Field

from explorer_adapter.models.base import Model

type UiStyle = Literal["unittest", "functions"]


class FrameworkOptions(Model):
    """Options understood by the test framework."""

    ui: UiStyle = Field(
        default="unittest",
        description="How tests are declared: TestCase classes or plain test functions",
    )
    timeout: float = Field(
        default=2.0, ge=0, description="Per-test timeout in seconds (0 disables it)"
    )
    retries: int = Field(
        default=0, ge=0, description="How often a failing test is re-run"
    )
    requires: Sequence[str] = Field(
        default=(), description="Modules imported before any test file"
    )
    exit: bool = Field(
        default=False,
        description="Exit the worker right after reporting, ignoring lingering threads",
    )


class AdapterConfig(Model):
    """Resolved configuration for one load or run cycle."""

    files: Sequence[Path] = Field(..., description="Absolute test file paths, in order")
    options: FrameworkOptions = Field(default_factory=FrameworkOptions)
    env: Mapping[str, str] = Field(
        default_factory=dict, description="Environment overrides for the worker"
    )
    cwd: Path = Field(..., description="Working directory of the worker")

    framework: str = Field(
        default="unittest", description="Entry point key of the test framework"
    )
    python_path: Path | None = Field(
        default=None, description="Python interpreter (None means the current one)"
    )

    debugger_port: int = Field(default=5678, ge=1, le=65535)
    debugger_config: str | None = Field(
        default=None, description="Name of the host's debug configuration"
    )
    debugger_ready_delay: float = Field(
        default=1.0,
        ge=0,
        description="Seconds to wait after the debugger attached before starting tests",
    )

    monkey_patch: bool = Field(
        default=True, description="Use live introspection to locate tests"
    )
    prune_files: bool = Field(
        default=False, description="Drop files that do not look like test modules"
    )

    options_file: Path | None = None
    globs: Sequence[str] = ()
