"""Builder for native subprojects that carry their own build description."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import structlog

from buildline.domain.models import (
    BuildEnvironment,
    ExternalModule,
    FailurePolicy,
    StepKind,
    StepOutcome,
    StepResult,
)
from buildline.errors import ExternalBuildError
from buildline.utils.process import CommandRunner, SubprocessCommandRunner, tail

if TYPE_CHECKING:
    from collections.abc import Mapping


class ExternalModuleBuilder:
    """Run an external module's build command and classify the outcome by policy.

    A non-zero exit never raises here. Fatal-policy failures come back as
    ``failed-fatal`` and the pipeline converts them with ``to_error``;
    best-effort failures come back as ``failed-tolerated``.
    """

    def __init__(
        self,
        *,
        command_runner: CommandRunner | None = None,
        timeout_seconds: float = 3600.0,
        base_env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._command_runner = command_runner or SubprocessCommandRunner()
        self._timeout_seconds = timeout_seconds
        self._base_env = dict(os.environ if base_env is None else base_env)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def build(self, module: ExternalModule, environment: BuildEnvironment) -> StepResult:
        if not module.source_dir.is_dir():
            return self._failed(
                module,
                returncode=None,
                stdout="",
                stderr=f"source directory does not exist: {module.source_dir}",
                duration_ms=0,
            )

        self._logger.info(
            "external_build_started",
            external_module=module.name,
            command=list(module.command),
            policy=module.policy.value,
        )
        result = self._command_runner.run(
            module.command,
            cwd=module.source_dir,
            timeout_seconds=self._timeout_seconds,
            env=environment.process_env(self._base_env),
        )
        if not result.ok:
            return self._failed(
                module,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr or result.detail(),
                duration_ms=result.duration_ms,
            )
        if not module.expected_artifact.is_file():
            return self._failed(
                module,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=f"build succeeded but did not produce {module.expected_artifact}",
                duration_ms=result.duration_ms,
            )

        self._logger.info(
            "external_build_succeeded",
            external_module=module.name,
            artifact=module.artifact,
            duration_ms=result.duration_ms,
        )
        return StepResult(
            step=module.name,
            kind=StepKind.EXTERNAL,
            outcome=StepOutcome.SUCCESS,
            policy=module.policy,
            artifacts={module.artifact: module.expected_artifact},
            returncode=result.returncode,
            stdout=tail(result.stdout),
            stderr=tail(result.stderr),
            duration_ms=result.duration_ms,
        )

    @staticmethod
    def to_error(result: StepResult) -> ExternalBuildError:
        return ExternalBuildError(
            result.step,
            result.stderr or result.error or "",
            returncode=result.returncode,
            policy=result.policy,
        )

    def _failed(
        self,
        module: ExternalModule,
        *,
        returncode: int | None,
        stdout: str,
        stderr: str,
        duration_ms: int,
    ) -> StepResult:
        tolerated = module.policy is FailurePolicy.BEST_EFFORT
        if tolerated:
            self._logger.warning(
                "external_build_failure_tolerated",
                external_module=module.name,
                returncode=returncode,
                stderr=tail(stderr, limit=2000),
            )
        else:
            self._logger.error(
                "external_build_failed",
                external_module=module.name,
                returncode=returncode,
                stderr=tail(stderr, limit=2000),
            )
        return StepResult(
            step=module.name,
            kind=StepKind.EXTERNAL,
            outcome=StepOutcome.FAILED_TOLERATED if tolerated else StepOutcome.FAILED_FATAL,
            policy=module.policy,
            returncode=returncode,
            stdout=tail(stdout),
            stderr=tail(stderr),
            duration_ms=duration_ms,
            error=tail(stderr.strip(), limit=2000) or f"exit {returncode}",
        )


__all__ = ["ExternalModuleBuilder"]
