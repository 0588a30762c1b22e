"""Injectable subprocess execution used by every build stage."""

from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

TIMEOUT_EXIT_CODE: Final[int] = 124
SPAWN_FAILURE_EXIT_CODE: Final[int] = 127
_DEFAULT_TAIL_CHARS: Final[int] = 4000


@dataclass(frozen=True, slots=True)
class CommandExecutionResult:
    """Normalized subprocess execution result."""

    command: tuple[str, ...]
    cwd: Path
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def command_line(self) -> str:
        return " ".join(self.command)

    def detail(self, *, limit: int = _DEFAULT_TAIL_CHARS) -> str:
        """Return the most useful captured output for error reports."""

        text = self.stderr.strip() or self.stdout.strip()
        return tail(text, limit=limit)


class CommandRunner(Protocol):
    """Injectable command runner used for deterministic/offline testing."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float,
        env: Mapping[str, str] | None = None,
    ) -> CommandExecutionResult: ...


class SubprocessCommandRunner:
    """Default command runner backed by ``subprocess.run``.

    Spawn failures and timeouts are reported as non-zero results rather than
    raised, so every stage maps them through its own error type.
    """

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float,
        env: Mapping[str, str] | None = None,
    ) -> CommandExecutionResult:
        argv = tuple(command)
        started = time.monotonic()
        try:
            completed = subprocess.run(
                list(argv),
                cwd=cwd,
                env=dict(env) if env is not None else None,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            return CommandExecutionResult(
                command=argv,
                cwd=cwd,
                returncode=TIMEOUT_EXIT_CODE,
                stdout=_decode(exc.stdout),
                stderr=f"command timed out after {timeout_seconds} seconds: {' '.join(argv)}",
                duration_ms=_elapsed_ms(started),
                timed_out=True,
            )
        except OSError as exc:
            return CommandExecutionResult(
                command=argv,
                cwd=cwd,
                returncode=SPAWN_FAILURE_EXIT_CODE,
                stdout="",
                stderr=str(exc),
                duration_ms=_elapsed_ms(started),
            )

        return CommandExecutionResult(
            command=argv,
            cwd=cwd,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            duration_ms=_elapsed_ms(started),
        )


def merged_environment(
    overrides: Mapping[str, str],
    *,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Overlay ``overrides`` onto ``base`` (``os.environ`` when omitted)."""

    env = dict(os.environ if base is None else base)
    env.update(overrides)
    return env


def tail(text: str, *, limit: int = _DEFAULT_TAIL_CHARS) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return "..." + text[-limit:]


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


__all__ = [
    "SPAWN_FAILURE_EXIT_CODE",
    "TIMEOUT_EXIT_CODE",
    "CommandExecutionResult",
    "CommandRunner",
    "SubprocessCommandRunner",
    "merged_environment",
    "tail",
]
