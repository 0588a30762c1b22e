"""Executable CLI entrypoint for ``buildline``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Process exit codes shared by every subcommand."""

    SUCCESS = 0
    PIPELINE_FAILED = 1
    CONFIG_ERROR = 2
    PROVISION_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and turn whatever escapes it into an :class:`ExitCode`."""

    try:
        from buildline.ui.cli import run_cli

        return _coerce_exit(run_cli(argv))
    except SystemExit as exc:
        return _coerce_exit(exc.code)
    except KeyboardInterrupt:
        _stderr("interrupted")
        return ExitCode.PIPELINE_FAILED.value
    except Exception as exc:  # noqa: BLE001 - top-level boundary
        code = exit_code_for(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            _stderr(str(exc).strip() or type(exc).__name__)
        return code.value


def exit_code_for(exc: BaseException) -> ExitCode:
    """Map an exception (or anything in its cause chain) to an exit code."""

    from buildline.errors import PipelineError, ProvisionError

    # Config, graph cycles and manifest collisions all surface as ValueError.
    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ProvisionError,), ExitCode.PROVISION_ERROR),
        ((PipelineError,), ExitCode.PIPELINE_FAILED),
        (
            (ValueError, FileNotFoundError, NotADirectoryError, PermissionError),
            ExitCode.CONFIG_ERROR,
        ),
    )
    for link in _cause_chain(exc):
        for types, code in routes:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    visited: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in visited:
        visited.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _coerce_exit(code: object) -> int:
    if code is None:
        return ExitCode.SUCCESS.value
    if isinstance(code, int) and code in {member.value for member in ExitCode}:
        return code
    if isinstance(code, str) and code.strip():
        _stderr(code.strip())
    return ExitCode.INTERNAL_ERROR.value


def _stderr(message: str) -> None:
    print(message.rstrip("\n"), file=sys.stderr)


__all__ = ["ExitCode", "cli_entrypoint", "exit_code_for"]
