"""
buildline — pipeline runner

File: src/buildline/pipeline/runner.py

Purpose
- Order the stages: provision, build (workspace and external modules, joined),
  collect, assemble.
- Produce a ``PipelineReport`` with every step outcome and the exit status.

Functional requirements
- No build step starts before provisioning has returned.
- Any fatal failure skips the collector and the assembler; nothing already
  produced is rolled back.
- Best-effort failures are recorded but never abort the run.
- Configuration problems (cycles, unknown dependencies, duplicate artifact
  names) are raised before any work starts.
"""

from __future__ import annotations

import json
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from buildline.artifacts.collector import ArtifactCollector
from buildline.artifacts.manifest import ArtifactManifest, build_manifest
from buildline.build.external import ExternalModuleBuilder
from buildline.build.workspace import WorkspaceBuildReport, WorkspaceCompiler
from buildline.constants import PIPELINE_REPORT_FILENAME
from buildline.domain.models import (
    ArtifactSet,
    AssembledImage,
    BindingPackage,
    BuildEnvironment,
    PipelineConfig,
    StepKind,
    StepOutcome,
    StepResult,
)
from buildline.errors import (
    AssembleError,
    CollectError,
    PipelineError,
    ProvisionError,
)
from buildline.images.assembler import ToolImageAssembler, WorkstationImageAssembler
from buildline.toolchain.provisioner import ToolchainProvisioner
from buildline.utils.fs import atomic_write
from buildline.utils.process import CommandRunner, SubprocessCommandRunner

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

COLLECT_STEP = "collect"


@dataclass(frozen=True, slots=True)
class PipelineReport:
    """Ordered step results plus the terminal products of one run."""

    pipeline: str
    steps: tuple[StepResult, ...] = ()
    errors: tuple[PipelineError, ...] = ()
    artifact_set: ArtifactSet | None = None
    image: AssembledImage | None = None
    toolchains: Mapping[str, str] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    @property
    def error(self) -> PipelineError | None:
        return self.errors[0] if self.errors else None

    def step(self, name: str) -> StepResult:
        for result in self.steps:
            if result.step == name:
                return result
        raise KeyError(f"no step named {name!r}")

    def outcomes(self) -> dict[str, StepOutcome]:
        return {result.step: result.outcome for result in self.steps}

    def to_dict(self) -> dict[str, object]:
        return {
            "pipeline": self.pipeline,
            "ok": self.ok,
            "exit_code": self.exit_code,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "toolchains": dict(self.toolchains),
            "steps": [result.to_dict() for result in self.steps],
            "errors": [
                {"stage": error.stage, "step": error.step, "message": str(error)}
                for error in self.errors
            ],
            "artifacts": self.artifact_set.to_dict() if self.artifact_set is not None else None,
            "image": self.image.to_dict() if self.image is not None else None,
        }


class _RunState:
    def __init__(self) -> None:
        self.steps: list[StepResult] = []
        self.errors: list[PipelineError] = []
        self.artifact_set: ArtifactSet | None = None
        self.image: AssembledImage | None = None
        self.toolchains: dict[str, str] = {}
        self.started_at = datetime.now(tz=UTC)

    def record(self, result: StepResult) -> None:
        self.steps.append(result)

    def fail(self, error: PipelineError, result: StepResult) -> None:
        self.errors.append(error)
        self.steps.append(result)

    def skip(self, steps: Iterable[tuple[str, StepKind]], *, reason: str) -> None:
        for name, kind in steps:
            self.steps.append(
                StepResult(step=name, kind=kind, outcome=StepOutcome.SKIPPED, error=reason)
            )

    def report(self, pipeline: str) -> PipelineReport:
        return PipelineReport(
            pipeline=pipeline,
            steps=tuple(self.steps),
            errors=tuple(self.errors),
            artifact_set=self.artifact_set,
            image=self.image,
            toolchains=self.toolchains,
            started_at=self.started_at,
            finished_at=datetime.now(tz=UTC),
        )


class ToolImagePipeline:
    """Provision, build, collect, and assemble the headless tool image."""

    name = "tool-image"

    def __init__(
        self,
        config: PipelineConfig,
        *,
        command_runner: CommandRunner | None = None,
        provisioner: ToolchainProvisioner | None = None,
        compiler: WorkspaceCompiler | None = None,
        external_builder: ExternalModuleBuilder | None = None,
        collector: ArtifactCollector | None = None,
        assembler: ToolImageAssembler | None = None,
        base_env: Mapping[str, str] | None = None,
        write_report: bool = True,
        logger: Any | None = None,
    ) -> None:
        runner = command_runner or SubprocessCommandRunner()
        env = dict(os.environ if base_env is None else base_env)
        timeout = config.command_timeout_seconds
        self._config = config
        self._provisioner = provisioner or ToolchainProvisioner(
            command_runner=runner, timeout_seconds=timeout, base_env=env
        )
        self._compiler = compiler or WorkspaceCompiler(
            workspace_root=config.workspace_root,
            profile=config.profile,
            command_runner=runner,
            jobs=config.jobs,
            locked=config.locked,
            timeout_seconds=timeout,
            base_env=env,
        )
        self._external_builder = external_builder or ExternalModuleBuilder(
            command_runner=runner, timeout_seconds=timeout, base_env=env
        )
        self._collector = collector or ArtifactCollector(config.artifact_dir)
        self._assembler = assembler or ToolImageAssembler(
            context_root=config.image_context_dir,
            engine=config.engine,
            command_runner=runner,
            timeout_seconds=timeout,
        )
        self._write_report = write_report
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def plan(self) -> tuple[tuple[str, ...], ArtifactManifest]:
        """Validate the package graph and the artifact manifest without running anything."""

        order = self._compiler.plan(self._config.packages)
        manifest = build_manifest(
            packages=self._config.packages,
            modules=self._config.external_modules,
            workspace_root=self._config.workspace_root,
            profile=self._config.profile,
        )
        return order, manifest

    def run(self) -> PipelineReport:
        order, manifest = self.plan()
        state = _RunState()
        downstream = self._downstream_steps(order)
        self._logger.info(
            "pipeline_started",
            pipeline=self.name,
            packages=list(order),
            external_modules=[module.name for module in self._config.external_modules],
        )

        environment = self._provision(state)
        if environment is None:
            state.skip(downstream, reason="toolchain provisioning failed")
            return self._finish(state)

        workspace_report, module_results = self._build_all(environment)
        outcomes: dict[str, StepResult] = dict(workspace_report.results)
        state.steps.extend(workspace_report.steps)
        compile_error = workspace_report.first_error()
        if compile_error is not None:
            state.errors.append(compile_error)
        for module in self._config.external_modules:
            result = module_results[module.name]
            outcomes[module.name] = result
            state.record(result)
            if result.outcome.is_fatal:
                state.errors.append(ExternalModuleBuilder.to_error(result))

        if state.errors:
            self._logger.error(
                "pipeline_halted",
                pipeline=self.name,
                failed=[error.step for error in state.errors],
            )
            state.skip(downstream[-2:], reason="a fatal build step failed")
            return self._finish(state)

        try:
            state.artifact_set = self._collector.collect(manifest, outcomes)
        except CollectError as exc:
            state.fail(exc, _failed_step(COLLECT_STEP, StepKind.COLLECT, exc))
            state.skip(downstream[-1:], reason="artifact collection failed")
            return self._finish(state)
        state.record(
            StepResult(
                step=COLLECT_STEP,
                kind=StepKind.COLLECT,
                outcome=StepOutcome.SUCCESS,
                artifacts={
                    name: state.artifact_set.path_for(name) for name in state.artifact_set.names
                },
            )
        )

        self._assemble(state)
        return self._finish(state)

    def _provision(self, state: _RunState) -> BuildEnvironment | None:
        try:
            environment = self._provisioner.provision_all(self._config.toolchains)
        except ProvisionError as exc:
            state.fail(exc, _failed_step(exc.step, StepKind.TOOLCHAIN, exc))
            return None
        for toolchain in environment.toolchains:
            state.record(
                StepResult(
                    step=toolchain.name,
                    kind=StepKind.TOOLCHAIN,
                    outcome=StepOutcome.SUCCESS,
                )
            )
        state.toolchains = environment.versions()
        return environment

    def _build_all(
        self, environment: BuildEnvironment
    ) -> tuple[WorkspaceBuildReport, dict[str, StepResult]]:
        modules = self._config.external_modules
        if not self._config.parallel_builders or not modules:
            workspace_report = self._compiler.build(self._config.packages, environment)
            module_results = {
                module.name: self._external_builder.build(module, environment) for module in modules
            }
            return workspace_report, module_results

        with ThreadPoolExecutor(max_workers=1 + len(modules), thread_name_prefix="builder") as pool:
            workspace_future = pool.submit(self._compiler.build, self._config.packages, environment)
            module_futures = {
                module.name: pool.submit(self._external_builder.build, module, environment)
                for module in modules
            }
            # Join point: the collector only runs once every builder has returned.
            workspace_report = workspace_future.result()
            module_results = {name: future.result() for name, future in module_futures.items()}
        return workspace_report, module_results

    def _assemble(self, state: _RunState) -> None:
        descriptor = self._config.tool_image
        if descriptor is None:
            self._logger.info("tool_image_not_configured", pipeline=self.name)
            return
        assert state.artifact_set is not None
        try:
            state.image = self._assembler.assemble(descriptor, state.artifact_set)
        except AssembleError as exc:
            state.fail(exc, _failed_step(descriptor.name, StepKind.ASSEMBLE, exc))
            return
        state.record(
            StepResult(
                step=descriptor.name,
                kind=StepKind.ASSEMBLE,
                outcome=StepOutcome.SUCCESS,
                artifacts={"Dockerfile": state.image.dockerfile},
            )
        )

    def _downstream_steps(self, order: tuple[str, ...]) -> list[tuple[str, StepKind]]:
        steps: list[tuple[str, StepKind]] = [(name, StepKind.PACKAGE) for name in order]
        steps.extend((module.name, StepKind.EXTERNAL) for module in self._config.external_modules)
        steps.append((COLLECT_STEP, StepKind.COLLECT))
        image = self._config.tool_image
        steps.append((image.name if image is not None else "tool", StepKind.ASSEMBLE))
        return steps

    def _finish(self, state: _RunState) -> PipelineReport:
        report = state.report(self.name)
        _log_finish(self._logger, report)
        if self._write_report:
            write_report(report, self._config.image_context_dir)
        return report


class WorkstationPipeline:
    """Assemble the workstation image from an opaque binding wheel."""

    name = "workstation-image"

    def __init__(
        self,
        config: PipelineConfig,
        *,
        command_runner: CommandRunner | None = None,
        assembler: WorkstationImageAssembler | None = None,
        write_report: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._assembler = assembler or WorkstationImageAssembler(
            context_root=config.image_context_dir,
            engine=config.engine,
            command_runner=command_runner or SubprocessCommandRunner(),
            timeout_seconds=config.command_timeout_seconds,
        )
        self._write_report = write_report
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def run(self, binding: BindingPackage, launch_script: Path) -> PipelineReport:
        descriptor = self._config.workstation_image
        if descriptor is None:
            raise ValueError("no workstation image is configured under [images.workstation]")

        state = _RunState()
        self._logger.info(
            "pipeline_started",
            pipeline=self.name,
            wheel=binding.filename,
            launch_script=str(launch_script),
        )
        try:
            state.image = self._assembler.assemble(descriptor, binding, Path(launch_script))
        except AssembleError as exc:
            state.fail(exc, _failed_step(descriptor.name, StepKind.ASSEMBLE, exc))
        else:
            state.record(
                StepResult(
                    step=descriptor.name,
                    kind=StepKind.ASSEMBLE,
                    outcome=StepOutcome.SUCCESS,
                    artifacts={"Dockerfile": state.image.dockerfile},
                )
            )

        report = state.report(self.name)
        _log_finish(self._logger, report)
        if self._write_report:
            write_report(report, self._config.image_context_dir)
        return report


def write_report(report: PipelineReport, directory: Path) -> Path:
    path = Path(directory) / PIPELINE_REPORT_FILENAME
    atomic_write(path, json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n")
    return path


def _failed_step(step: str, kind: StepKind, error: PipelineError) -> StepResult:
    returncode = getattr(error, "returncode", None)
    return StepResult(
        step=step,
        kind=kind,
        outcome=StepOutcome.FAILED_FATAL,
        returncode=returncode if isinstance(returncode, int) else None,
        error=str(error),
    )


def _log_finish(logger: Any, report: PipelineReport) -> None:
    tolerated = [
        result.step for result in report.steps if result.outcome is StepOutcome.FAILED_TOLERATED
    ]
    if report.ok:
        logger.info(
            "pipeline_succeeded",
            pipeline=report.pipeline,
            tolerated=tolerated,
            image=report.image.tag if report.image is not None else None,
        )
    else:
        logger.error(
            "pipeline_failed",
            pipeline=report.pipeline,
            errors=[str(error) for error in report.errors],
        )


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


__all__ = [
    "COLLECT_STEP",
    "PipelineReport",
    "ToolImagePipeline",
    "WorkstationPipeline",
    "write_report",
]
