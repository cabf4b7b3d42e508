"""Worker process that enumerates and executes unittest-style tests.

Started as a script with ``discover`` or ``run`` as its only argument. It
reads a JSON request from stdin and writes one JSON message per line to
stdout; anything the tests themselves print is redirected to stderr. Only
the standard library is used so the worker runs under any interpreter the
user points the adapter at.
"""

from __future__ import annotations

import asyncio
import importlib
import importlib.util
import inspect
import json
import os
import re
import sys
import time
import traceback
import unittest
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any

FAILING_STATES = ("failed", "errored")
TIMEOUT_MESSAGE = "Test timed out after {seconds:g}s"

_protocol = sys.stdout


def emit(message: dict[str, Any]) -> None:
    _protocol.write(json.dumps(message) + "\n")
    _protocol.flush()


def format_error(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


@dataclass
class Entry:
    """A suite (``children`` set) or test found in a module."""

    name: str
    line: int | None
    target: Any
    children: list[Entry] | None = None

    def serialize(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "line": self.line}
        if self.children is not None:
            data["children"] = [child.serialize() for child in self.children]
        return data


def module_name(path: Path, cwd: Path) -> str:
    try:
        relative = path.relative_to(cwd)
    except ValueError:
        return path.stem
    return ".".join(relative.with_suffix("").parts)


def import_file(path: Path, cwd: Path) -> ModuleType:
    name = module_name(path, cwd)
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot import {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(name, None)
        raise
    return module


def load_requires(requires: list[str], cwd: Path) -> None:
    for required in requires:
        if required.endswith(".py"):
            import_file((cwd / required).resolve(), cwd)
        else:
            importlib.import_module(required)


class Locator:
    """Finds the source line of a class or function."""

    def __init__(self, path: Path, monkey_patch: bool) -> None:
        self.monkey_patch = monkey_patch
        try:
            self.lines = path.read_text(errors="replace").splitlines()
        except OSError:
            self.lines = []

    def locate(self, obj: Any, name: str, keyword: str, start: int | None) -> int | None:
        if self.monkey_patch:
            try:
                return inspect.getsourcelines(inspect.unwrap(obj))[1]
            except (OSError, TypeError):
                pass
        # Static fallback: first matching statement at or after the parent's line.
        pattern = re.compile(rf"^\s*(?:async\s+)?{keyword}\s+{re.escape(name)}\b")
        for number in range((start or 1) - 1, len(self.lines)):
            if pattern.match(self.lines[number]):
                return number + 1
        return None


def declared_test_methods(cls: type, prefix: str = "test") -> list[str]:
    """Test method names in declaration order, base classes first."""
    names: list[str] = []
    for klass in reversed(cls.__mro__):
        for name, value in vars(klass).items():
            if name.startswith(prefix) and callable(value) and name not in names:
                names.append(name)
    return names


def collect_class(cls: type, locator: Locator, nested: bool) -> Entry:
    line = locator.locate(cls, cls.__name__, "class", None)
    children = [
        Entry(
            name,
            locator.locate(getattr(cls, name), name, "def", line),
            getattr(cls, name),
        )
        for name in declared_test_methods(cls)
    ]
    if nested:
        for name, value in vars(cls).items():
            if isinstance(value, type) and name.startswith("Test"):
                children.append(collect_class(value, locator, nested))
    return Entry(cls.__name__, line, cls, children)


def collect(module: ModuleType, ui: str, locator: Locator) -> list[Entry]:
    entries: list[Entry] = []
    for name, value in vars(module).items():
        if getattr(value, "__module__", None) != module.__name__:
            continue
        if isinstance(value, type) and issubclass(value, unittest.TestCase):
            entry = collect_class(value, locator, nested=False)
            if entry.children:
                entries.append(entry)
        elif ui != "functions":
            continue
        elif isinstance(value, type) and name.startswith("Test"):
            entries.append(collect_class(value, locator, nested=True))
        elif inspect.isfunction(value) and name.startswith("test"):
            entries.append(Entry(name, locator.locate(value, name, "def", None), value))
    return entries


def call(function: Callable[..., Any], *args: Any) -> None:
    if inspect.iscoroutinefunction(function):
        asyncio.run(function(*args))
    else:
        function(*args)


def run_case(case: unittest.TestCase) -> tuple[str, str | None]:
    result = unittest.TestResult()
    case.run(result)
    if result.errors:
        return "errored", "\n".join(text for _, text in result.errors)
    if result.failures:
        return "failed", "\n".join(text for _, text in result.failures)
    if result.unexpectedSuccesses:
        return "failed", "Unexpected success"
    if result.skipped:
        return "skipped", result.skipped[0][1] or None
    return "passed", None


class Runner:
    """Runs the selected tests of one module, retrying failing tests."""

    def __init__(
        self,
        file: str,
        retries: int,
        selected: set[tuple[str, ...]] | None,
        timeout: float = 0,
    ) -> None:
        self.file = file
        self.retries = retries
        self.selected = selected
        self.timeout = timeout

    def wanted(self, entry: Entry, path: tuple[str, ...]) -> bool:
        if entry.children is None:
            return self.selected is None or path in self.selected
        return any(self.wanted(child, (*path, child.name)) for child in entry.children)

    def leaves(
        self, entries: list[Entry], prefix: tuple[str, ...]
    ) -> list[tuple[str, ...]]:
        paths: list[tuple[str, ...]] = []
        for entry in entries:
            path = (*prefix, entry.name)
            if entry.children is None:
                if self.wanted(entry, path):
                    paths.append(path)
            else:
                paths.extend(self.leaves(entry.children, path))
        return paths

    def report(self, path: tuple[str, ...], state: str, message: str | None) -> None:
        emit({"type": "start", "file": self.file, "path": list(path), "attempt": 1})
        emit(
            {
                "type": "end",
                "file": self.file,
                "path": list(path),
                "attempt": 1,
                "state": state,
                "message": message,
            }
        )

    def report_all(
        self, entries: list[Entry], prefix: tuple[str, ...], error: BaseException
    ) -> None:
        state = "skipped" if isinstance(error, unittest.SkipTest) else "errored"
        message = str(error) if state == "skipped" else format_error(error)
        for path in self.leaves(entries, prefix):
            self.report(path, state, message)

    def run_module(self, module: ModuleType, entries: list[Entry]) -> None:
        if not self.leaves(entries, ()):
            return
        setup = getattr(module, "setUpModule", None) or getattr(
            module, "setup_module", None
        )
        teardown = getattr(module, "tearDownModule", None) or getattr(
            module, "teardown_module", None
        )
        if setup is not None:
            try:
                setup()
            except Exception as error:
                self.report_all(entries, (), error)
                return
        try:
            self.run_entries(entries, (), None)
        finally:
            if teardown is not None:
                try:
                    teardown()
                except Exception:
                    traceback.print_exc()

    def run_entries(
        self, entries: list[Entry], prefix: tuple[str, ...], owner: type | None
    ) -> None:
        for entry in entries:
            path = (*prefix, entry.name)
            if not self.wanted(entry, path):
                continue
            if entry.children is None:
                self.run_test(entry, path, owner)
            else:
                self.run_class(entry, path)

    def run_class(self, entry: Entry, path: tuple[str, ...]) -> None:
        cls = entry.target
        children = entry.children or []
        is_case = issubclass(cls, unittest.TestCase)
        if is_case and getattr(cls, "__unittest_skip__", False):
            self.run_entries(children, path, cls)
            return
        setup = getattr(cls, "setUpClass" if is_case else "setup_class", None)
        teardown = getattr(cls, "tearDownClass" if is_case else "teardown_class", None)
        if setup is not None:
            try:
                setup()
            except Exception as error:
                self.report_all(children, path, error)
                return
        try:
            self.run_entries(children, path, cls)
        finally:
            if teardown is not None:
                try:
                    teardown()
                except Exception:
                    traceback.print_exc()

    def run_test(self, entry: Entry, path: tuple[str, ...], owner: type | None) -> None:
        attempt = 0
        while True:
            attempt += 1
            emit(
                {
                    "type": "start",
                    "file": self.file,
                    "path": list(path),
                    "attempt": attempt,
                }
            )
            started = time.perf_counter()
            state, message = self.invoke(entry, owner)
            duration = time.perf_counter() - started
            # A test outliving its timeout fails even if it finished on its own.
            if self.timeout > 0 and duration > self.timeout and state != "skipped":
                state, message = "failed", TIMEOUT_MESSAGE.format(seconds=self.timeout)
            emit(
                {
                    "type": "end",
                    "file": self.file,
                    "path": list(path),
                    "attempt": attempt,
                    "state": state,
                    "message": message,
                    "duration": duration,
                }
            )
            if state not in FAILING_STATES or attempt > self.retries:
                return

    def invoke(self, entry: Entry, owner: type | None) -> tuple[str, str | None]:
        if owner is not None and issubclass(owner, unittest.TestCase):
            return run_case(owner(entry.name))
        try:
            if owner is None:
                call(entry.target)
            else:
                instance = owner()
                method = getattr(instance, entry.name)
                if hasattr(instance, "setup_method"):
                    instance.setup_method(method)
                try:
                    call(method)
                finally:
                    if hasattr(instance, "teardown_method"):
                        instance.teardown_method(method)
        except unittest.SkipTest as error:
            return "skipped", str(error) or None
        except AssertionError as error:
            return "failed", format_error(error)
        except Exception as error:
            return "errored", format_error(error)
        return "passed", None


def discover(request: dict[str, Any], cwd: Path) -> None:
    for file in request["files"]:
        path = Path(file)
        try:
            module = import_file(path, cwd)
            locator = Locator(path, request["monkey_patch"])
            entries = collect(module, request["ui"], locator)
        except (Exception, SystemExit) as error:
            emit({"type": "file", "file": file, "error": format_error(error)})
            continue
        nodes = [entry.serialize() for entry in entries]
        emit({"type": "file", "file": file, "nodes": nodes})


def run(request: dict[str, Any], cwd: Path) -> None:
    for plan in request["plans"]:
        path = Path(plan["file"])
        try:
            module = import_file(path, cwd)
            locator = Locator(path, request["monkey_patch"])
            entries = collect(module, request["ui"], locator)
        except (Exception, SystemExit) as error:
            message = format_error(error)
            emit({"type": "file_error", "file": plan["file"], "message": message})
            continue
        selected = None
        if plan["tests"] is not None:
            selected = {tuple(test) for test in plan["tests"]}
        runner = Runner(plan["file"], request["retries"], selected, request["timeout"])
        runner.run_module(module, entries)


def main(argv: list[str]) -> int:
    global _protocol
    _protocol = sys.stdout
    sys.stdout = sys.stderr

    mode = argv[1]
    request = json.load(sys.stdin)
    cwd = Path(request["cwd"])

    if sys.path and Path(sys.path[0]).resolve() == Path(__file__).parent.resolve():
        del sys.path[0]
    sys.path.insert(0, str(cwd))

    try:
        load_requires(request["requires"], cwd)
    except (Exception, SystemExit) as error:
        message = f"Failed to load required module: {format_error(error)}"
        if mode == "discover":
            emit({"type": "fatal", "message": message})
            return 1
        for plan in request["plans"]:
            emit({"type": "file_error", "file": plan["file"], "message": message})
        emit({"type": "done"})
        return 1

    if mode == "discover":
        discover(request, cwd)
    else:
        run(request, cwd)
        emit({"type": "done"})

    if request["exit"]:
        _protocol.flush()
        sys.stderr.flush()
        os._exit(0)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
