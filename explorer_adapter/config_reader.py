"""Config providers resolving host settings and options files into snapshots."""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import Field, ValidationError

from explorer_adapter.errors import ConfigError
from explorer_adapter.models.base import Model
from explorer_adapter.models.config import AdapterConfig, FrameworkOptions, UiStyle

log = logging.getLogger(__name__)

DEFAULT_OPTIONS_FILE = ".explorer.yaml"
DEFAULT_GLOBS: Sequence[str] = ("test/**/test*.py", "tests/**/test*.py")


class ConfigProvider(Protocol):
    """Yields the configuration snapshot for the next load or run cycle."""

    async def current_config(self) -> AdapterConfig:
        """Return the current configuration.

        Raises:
            ConfigError: If no usable configuration can be produced

        """


@dataclass(frozen=True, kw_only=True)
class StaticConfigProvider:
    """Provider always returning the same snapshot."""

    config: AdapterConfig

    async def current_config(self) -> AdapterConfig:
        return self.config


class OptionsFile(Model):
    """Contents of a YAML options file."""

    ui: UiStyle | None = None
    timeout: float | None = None
    retries: int | None = None
    require: Sequence[str] = ()
    exit: bool | None = None
    spec: Sequence[str] = Field(default=(), description="Globs locating test files")


class AdapterSettings(Model):
    """Host-level settings; anything set here wins over the options file."""

    options_file: str = DEFAULT_OPTIONS_FILE
    files: Sequence[str] | None = Field(
        default=None, description="Globs overriding the options file's spec"
    )
    cwd: str | None = None
    env: Mapping[str, str] = Field(default_factory=dict)

    ui: UiStyle | None = None
    timeout: float | None = None
    retries: int | None = None
    requires: Sequence[str] | None = None
    exit: bool | None = None

    framework: str = "unittest"
    python_path: str | None = None
    debugger_port: int = 5678
    debugger_config: str | None = None
    debugger_ready_delay: float = 1.0
    monkey_patch: bool = True
    prune_files: bool = False


async def read_options_file(path: Path) -> OptionsFile:
    """Load an options file; a missing file means framework defaults.

    Raises:
        ConfigError: If the file is not valid YAML or does not match the schema

    """
    try:
        content = await asyncio.to_thread(path.read_text)
    except FileNotFoundError:
        log.debug("No options file at %s, using defaults", path)
        return OptionsFile()
    except OSError as e:
        log.warning("Cannot read options file %s: %s", path, e)
        return OptionsFile()

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return OptionsFile()

    try:
        return OptionsFile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid options file {path}: {e}") from e


def find_files(cwd: Path, globs: Sequence[str]) -> Sequence[Path]:
    """Expand globs relative to ``cwd`` into an ordered list of absolute files."""
    files: list[Path] = []
    seen: set[Path] = set()
    for pattern in globs:
        if Path(pattern).is_absolute():
            anchor = Path(Path(pattern).anchor)
            pattern = str(Path(pattern).relative_to(anchor))
        else:
            anchor = cwd
        for file in sorted(anchor.glob(pattern)):
            resolved = file.resolve()
            if resolved.is_file() and resolved not in seen:
                seen.add(resolved)
                files.append(resolved)
    return files


def _first[T](*values: T | None) -> T | None:
    return next((value for value in values if value is not None), None)


@dataclass(frozen=True, kw_only=True)
class WorkspaceConfigProvider:
    """Resolves host settings and the workspace's options file on every poll."""

    workspace: Path
    settings: AdapterSettings = field(default_factory=AdapterSettings)

    async def current_config(self) -> AdapterConfig:
        settings = self.settings
        cwd = (self.workspace / settings.cwd) if settings.cwd else self.workspace
        cwd = cwd.resolve()
        options_file = (cwd / settings.options_file).resolve()

        options = await read_options_file(options_file)
        globs = _first(settings.files, options.spec or None) or DEFAULT_GLOBS
        files = await asyncio.to_thread(find_files, cwd, globs)
        log.debug("Resolved %d test file(s) from %s", len(files), list(globs))

        framework_options: dict[str, Any] = {
            "ui": _first(settings.ui, options.ui),
            "timeout": _first(settings.timeout, options.timeout),
            "retries": _first(settings.retries, options.retries),
            "requires": _first(settings.requires, options.require or None),
            "exit": _first(settings.exit, options.exit),
        }

        try:
            return AdapterConfig(
                files=files,
                options=FrameworkOptions.model_validate(
                    {k: v for k, v in framework_options.items() if v is not None}
                ),
                env=settings.env,
                cwd=cwd,
                framework=settings.framework,
                python_path=Path(settings.python_path) if settings.python_path else None,
                debugger_port=settings.debugger_port,
                debugger_config=settings.debugger_config,
                debugger_ready_delay=settings.debugger_ready_delay,
                monkey_patch=settings.monkey_patch,
                prune_files=settings.prune_files,
                options_file=options_file,
                globs=globs,
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
