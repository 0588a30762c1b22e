"""
buildline — workspace compiler

File: src/buildline/build/workspace.py

Purpose
- Build every package of a cargo workspace in dependency order.

Functional requirements
- A package starts only after all of its dependencies reported success.
- A failed package's transitive dependents are skipped and never invoked.
- Independent packages still build; partial success is reported, not hidden.
- ``jobs > 1`` builds the packages of one runnable wave concurrently.

Non-functional requirements
- Deterministic ordering (topological, ties broken by name).
- Tool roots come only from the explicit ``BuildEnvironment``.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import structlog

from buildline.build.graph import PackageGraph
from buildline.domain.models import (
    BuildEnvironment,
    BuildProfile,
    FailurePolicy,
    StepKind,
    StepOutcome,
    StepResult,
    WorkspacePackage,
)
from buildline.errors import CompileError
from buildline.utils.process import CommandRunner, SubprocessCommandRunner, tail

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


@dataclass(frozen=True, slots=True)
class WorkspaceBuildReport:
    """Per-package results in build order."""

    order: tuple[str, ...]
    results: Mapping[str, StepResult] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "results", MappingProxyType(dict(self.results)))

    @property
    def steps(self) -> tuple[StepResult, ...]:
        return tuple(self.results[name] for name in self.order if name in self.results)

    @property
    def succeeded(self) -> tuple[str, ...]:
        return self._names_with(StepOutcome.SUCCESS)

    @property
    def failed(self) -> tuple[str, ...]:
        return self._names_with(StepOutcome.FAILED_FATAL)

    @property
    def skipped(self) -> tuple[str, ...]:
        return self._names_with(StepOutcome.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    def first_error(self) -> CompileError | None:
        for name in self.failed:
            result = self.results[name]
            return CompileError(
                name, result.stderr or result.error or "", returncode=result.returncode
            )
        return None

    def raise_for_failure(self) -> None:
        error = self.first_error()
        if error is not None:
            raise error

    def _names_with(self, outcome: StepOutcome) -> tuple[str, ...]:
        return tuple(step.step for step in self.steps if step.outcome is outcome)


class WorkspaceCompiler:
    """Invoke ``cargo build -p <package>`` per package in dependency order."""

    def __init__(
        self,
        *,
        workspace_root: Path,
        profile: BuildProfile = BuildProfile.RELEASE,
        command_runner: CommandRunner | None = None,
        jobs: int = 1,
        locked: bool = True,
        timeout_seconds: float = 3600.0,
        cargo: str = "cargo",
        base_env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        if jobs <= 0:
            raise ValueError("jobs must be > 0")
        self._workspace_root = Path(workspace_root)
        self._profile = profile
        self._command_runner = command_runner or SubprocessCommandRunner()
        self._jobs = jobs
        self._locked = locked
        self._timeout_seconds = timeout_seconds
        self._cargo = cargo
        self._base_env = dict(os.environ if base_env is None else base_env)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def output_dir(self) -> Path:
        return self._workspace_root / "target" / self._profile.target_subdir

    def plan(self, packages: Iterable[WorkspacePackage]) -> tuple[str, ...]:
        """Return the deterministic build order; raises on cycles or unknown deps."""

        return PackageGraph.from_packages(packages).topological_sort()

    def artifact_names(self, package: WorkspacePackage) -> tuple[str, ...]:
        names: list[str] = list(package.artifacts)
        if package.discover_bins:
            names.extend(discover_binaries(self._workspace_root / package.path))
        return tuple(dict.fromkeys(names))

    def artifact_paths(self, package: WorkspacePackage) -> dict[str, Path]:
        return {name: self.output_dir / name for name in self.artifact_names(package)}

    def build(
        self,
        packages: Iterable[WorkspacePackage],
        environment: BuildEnvironment,
    ) -> WorkspaceBuildReport:
        materialized = tuple(packages)
        graph = PackageGraph.from_packages(materialized)
        order = graph.topological_sort()
        by_name = {package.name: package for package in materialized}

        results: dict[str, StepResult] = {}
        succeeded: set[str] = set()

        with ThreadPoolExecutor(max_workers=self._jobs, thread_name_prefix="cargo") as pool:
            while len(results) < len(order):
                self._skip_blocked(graph, order, results, succeeded)
                wave = graph.runnable(succeeded, exclude=set(results))
                if not wave:
                    break
                if self._jobs == 1:
                    wave = wave[:1]
                futures = [
                    (name, pool.submit(self._build_package, by_name[name], environment))
                    for name in wave
                ]
                for name, future in futures:
                    result = future.result()
                    results[name] = result
                    if result.succeeded:
                        succeeded.add(name)

        return WorkspaceBuildReport(order=order, results=results)

    def _skip_blocked(
        self,
        graph: PackageGraph,
        order: tuple[str, ...],
        results: dict[str, StepResult],
        succeeded: set[str],
    ) -> None:
        for name in order:
            if name in results:
                continue
            blocked_by = [
                dependency
                for dependency in graph.dependencies_of(name)
                if dependency in results and dependency not in succeeded
            ]
            if not blocked_by:
                continue
            reason = f"dependency failed: {', '.join(blocked_by)}"
            results[name] = StepResult(
                step=name,
                kind=StepKind.PACKAGE,
                outcome=StepOutcome.SKIPPED,
                error=reason,
            )
            self._logger.warning("package_build_skipped", package=name, blocked_by=blocked_by)

    def _build_package(
        self, package: WorkspacePackage, environment: BuildEnvironment
    ) -> StepResult:
        command = [self._cargo, "build", "-p", package.name]
        if self._profile is BuildProfile.RELEASE:
            command.append("--release")
        if self._locked:
            command.append("--locked")

        self._logger.info("package_build_started", package=package.name, command=command)
        result = self._command_runner.run(
            command,
            cwd=self._workspace_root,
            timeout_seconds=self._timeout_seconds,
            env=environment.process_env(self._base_env),
        )
        if not result.ok:
            self._logger.error(
                "package_build_failed",
                package=package.name,
                returncode=result.returncode,
                stderr=tail(result.stderr, limit=2000),
            )
            return StepResult(
                step=package.name,
                kind=StepKind.PACKAGE,
                outcome=StepOutcome.FAILED_FATAL,
                policy=FailurePolicy.FATAL,
                returncode=result.returncode,
                stdout=tail(result.stdout),
                stderr=tail(result.stderr),
                duration_ms=result.duration_ms,
                error=result.detail(),
            )

        artifacts = self.artifact_paths(package)
        self._logger.info(
            "package_build_succeeded",
            package=package.name,
            duration_ms=result.duration_ms,
            artifacts=sorted(artifacts),
        )
        return StepResult(
            step=package.name,
            kind=StepKind.PACKAGE,
            outcome=StepOutcome.SUCCESS,
            policy=FailurePolicy.FATAL,
            artifacts=artifacts,
            returncode=result.returncode,
            stdout=tail(result.stdout),
            stderr=tail(result.stderr),
            duration_ms=result.duration_ms,
        )


def discover_binaries(package_dir: Path) -> tuple[str, ...]:
    """Binary target names under ``src/bin``: ``<name>.rs`` files and ``<name>/main.rs`` dirs."""

    bin_dir = package_dir / "src" / "bin"
    if not bin_dir.is_dir():
        return ()
    names: set[str] = set()
    for entry in bin_dir.iterdir():
        if entry.is_file() and entry.suffix == ".rs":
            names.add(entry.stem)
        elif entry.is_dir() and (entry / "main.rs").is_file():
            names.add(entry.name)
    return tuple(sorted(names))


__all__ = ["WorkspaceBuildReport", "WorkspaceCompiler", "discover_binaries"]
