"""Framework implementation running unittest-style tests in a worker process."""

import asyncio
import json
import logging
import os
import sys
from collections.abc import AsyncGenerator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError

from explorer_adapter.frameworks.base import (
    DISCOVERY_MESSAGE,
    NATIVE_EVENT,
    DiscoveredFile,
    DiscoveryFailed,
    EventStream,
    FilePlan,
    FrameworkError,
    TestFramework,
)
from explorer_adapter.models.config import AdapterConfig

log = logging.getLogger(__name__)

WORKER_SCRIPT = Path(__file__).with_name("worker.py")
STREAM_LIMIT = 2**20


@dataclass(frozen=True, kw_only=True)
class UnittestFramework(TestFramework):
    """Runs the stdlib-only worker script under the configured interpreter."""

    discovery_timeout: float = 120.0
    queue_size: int = 256

    def command(
        self, config: AdapterConfig, mode: Literal["discover", "run"], *, debug: bool
    ) -> Sequence[str]:
        """Build the worker command line, connecting to a debugger if requested."""
        python = str(config.python_path or sys.executable)
        if debug:
            return [
                python,
                "-m",
                "debugpy",
                "--connect",
                f"127.0.0.1:{config.debugger_port}",
                str(WORKER_SCRIPT),
                mode,
            ]
        return [python, str(WORKER_SCRIPT), mode]

    def request(
        self,
        config: AdapterConfig,
        *,
        files: Sequence[Path] = (),
        plans: Sequence[FilePlan] = (),
        debug: bool = False,
    ) -> bytes:
        """Serialize the worker request for one load or run cycle.

        Tests are never timed out while a debugger is attached.
        """
        payload: dict[str, Any] = {
            "cwd": str(config.cwd),
            "files": [str(file) for file in files],
            "plans": [plan.model_dump(mode="json") for plan in plans],
            "ui": config.options.ui,
            "requires": list(config.options.requires),
            "retries": config.options.retries,
            "timeout": 0 if debug else config.options.timeout,
            "exit": config.options.exit,
            "monkey_patch": config.monkey_patch,
        }
        return json.dumps(payload).encode()

    async def _spawn(
        self, config: AdapterConfig, mode: Literal["discover", "run"], *, debug: bool
    ) -> asyncio.subprocess.Process:
        command = self.command(config, mode, debug=debug)
        log.debug("Starting worker: %s (cwd=%s)", " ".join(command), config.cwd)
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=config.cwd,
                env={**os.environ, **config.env},
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise FrameworkError(f"Cannot start Python worker: {e}") from e

    async def discover(
        self,
        config: AdapterConfig,
        files: Sequence[Path],
    ) -> Sequence[DiscoveredFile]:
        """Enumerate tests by importing every file in a fresh worker."""
        if not files:
            return []

        process = await self._spawn(config, "discover", debug=False)
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(self.request(config, files=files)),
                timeout=self.discovery_timeout,
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise FrameworkError(
                f"Test discovery did not complete within {self.discovery_timeout} seconds"
            ) from e

        results: list[DiscoveredFile] = []
        for line in stdout.decode(errors="replace").splitlines():
            if not line.strip():
                continue
            try:
                message = DISCOVERY_MESSAGE.validate_json(line)
            except ValidationError:
                log.warning("Ignoring unexpected worker output: %s", line)
                continue
            match message:
                case DiscoveredFile():
                    results.append(message)
                case DiscoveryFailed():
                    raise FrameworkError(message.message)

        if process.returncode != 0 and not results:
            raise FrameworkError(
                f"Worker exited with code {process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return results

    @asynccontextmanager
    async def execute(
        self,
        config: AdapterConfig,
        plans: Sequence[FilePlan],
        *,
        debug: bool = False,
        on_output: Callable[[str], None] | None = None,
    ) -> AsyncGenerator[EventStream, None]:
        """Run the plans in one worker, streaming its messages."""
        process = await self._spawn(config, "run", debug=debug)
        stream = EventStream(self.queue_size)
        pump = asyncio.create_task(self._pump(process, stream, on_output))
        try:
            if process.stdin is None:
                raise FrameworkError("Worker was started without an input pipe")
            process.stdin.write(self.request(config, plans=plans, debug=debug))
            try:
                await process.stdin.drain()
            except ConnectionError:
                log.warning("Worker closed its input before reading the request")
            process.stdin.close()
            yield stream
        finally:
            if process.returncode is None:
                process.kill()
            await process.wait()
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _pump(
        self,
        process: asyncio.subprocess.Process,
        stream: EventStream,
        on_output: Callable[[str], None] | None,
    ) -> None:
        """Translate worker stdout lines into native events, in order."""
        stdout, stderr = process.stdout, process.stderr
        if stdout is None or stderr is None:
            await stream.close()
            return

        def forward(text: str) -> None:
            if on_output is not None:
                on_output(text)

        async def read_stderr() -> None:
            async for raw in stderr:
                forward(raw.decode(errors="replace"))

        stderr_task = asyncio.create_task(read_stderr())
        try:
            async for raw in stdout:
                line = raw.decode(errors="replace")
                if not line.strip():
                    continue
                try:
                    event = NATIVE_EVENT.validate_json(line)
                except ValidationError:
                    forward(line)
                    continue
                await stream.put(event)
            await stderr_task
            await stream.close()
        finally:
            stderr_task.cancel()
