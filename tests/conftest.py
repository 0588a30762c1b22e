"""
buildline — shared test fixtures

File: tests/conftest.py

Purpose
- Provide a scripted, recording command runner so no test spawns cargo, make,
  apt-get, rustup, pip, or a container engine.
- Provide a recording structlog-compatible logger for asserting on events.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from buildline.observability.logging import shutdown_logging
from buildline.toolchain import DownloadedInstaller
from buildline.utils.process import CommandExecutionResult

Effect = Callable[[tuple[str, ...], Path, Mapping[str, str] | None], None]


@dataclass(frozen=True, slots=True)
class RecordedCall:
    command: tuple[str, ...]
    cwd: Path
    env: Mapping[str, str] | None

    @property
    def program(self) -> str:
        return Path(self.command[0]).name if self.command else ""

    @property
    def argv(self) -> tuple[str, ...]:
        """Command with the program reduced to its basename."""

        return (self.program, *self.command[1:])


@dataclass(slots=True)
class _Rule:
    prefix: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    effect: Effect | None


@dataclass(slots=True)
class FakeCommandRunner:
    """Command runner that matches argv prefixes against scripted rules.

    The program is matched by basename so absolute tool paths under a
    toolchain root match rules like ``("rustup", "toolchain", "list")``.
    Later rules win. Unmatched commands succeed with empty output.
    """

    calls: list[RecordedCall] = field(default_factory=list)
    _rules: list[_Rule] = field(default_factory=list)

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        effect: Effect | None = None,
    ) -> FakeCommandRunner:
        self._rules.append(_Rule(tuple(prefix), returncode, stdout, stderr, effect))
        return self

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float,
        env: Mapping[str, str] | None = None,
    ) -> CommandExecutionResult:
        call = RecordedCall(command=tuple(command), cwd=Path(cwd), env=env)
        self.calls.append(call)
        rule = self._match(call.argv)
        if rule is None:
            return CommandExecutionResult(
                command=call.command, cwd=call.cwd, returncode=0, stdout="", stderr=""
            )
        if rule.effect is not None and rule.returncode == 0:
            rule.effect(call.command, call.cwd, env)
        return CommandExecutionResult(
            command=call.command,
            cwd=call.cwd,
            returncode=rule.returncode,
            stdout=rule.stdout,
            stderr=rule.stderr,
        )

    def invoked(self, *prefix: str) -> list[RecordedCall]:
        return [call for call in self.calls if call.argv[: len(prefix)] == prefix]

    def _match(self, argv: tuple[str, ...]) -> _Rule | None:
        for rule in reversed(self._rules):
            if argv[: len(rule.prefix)] == rule.prefix:
                return rule
        return None


@dataclass(slots=True)
class RecordingLogger:
    """Stand-in for a structlog bound logger that keeps every event."""

    events: list[tuple[str, str, dict[str, object]]] = field(default_factory=list)

    def _record(self, level: str, event: str, **fields: object) -> None:
        self.events.append((level, event, fields))

    def debug(self, event: str, **fields: object) -> None:
        self._record("debug", event, **fields)

    def info(self, event: str, **fields: object) -> None:
        self._record("info", event, **fields)

    def warning(self, event: str, **fields: object) -> None:
        self._record("warning", event, **fields)

    def error(self, event: str, **fields: object) -> None:
        self._record("error", event, **fields)

    def named(self, event: str) -> list[dict[str, object]]:
        return [fields for _, name, fields in self.events if name == event]

    def levels(self, level: str) -> list[str]:
        return [name for recorded, name, _ in self.events if recorded == level]


@dataclass(slots=True)
class FakeDownloader:
    """Writes a fixed installer script instead of fetching it."""

    content: bytes = b"#!/bin/sh\nexit 0\n"
    fail: bool = False
    urls: list[str] = field(default_factory=list)

    def download(self, *, url: str, destination: Path) -> DownloadedInstaller:
        self.urls.append(url)
        if self.fail:
            raise OSError("connection refused")
        destination.write_bytes(self.content)
        return DownloadedInstaller(path=destination, source_url=url)


def write_file(path: Path, content: str = "binary\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture(autouse=True)
def _shutdown_logging_after_test() -> object:
    yield
    shutdown_logging()
