"""
buildline — unit tests for the workspace compiler

File: tests/unit/build/test_workspace.py

Purpose
- Validate dependency-ordered cargo builds and failure containment.

What this test file should cover
- A package is invoked only after its dependencies succeeded.
- Dependents of a failed package are skipped and never invoked.
- Independent packages still build after an unrelated failure.
- Profile, lock, and environment flags reach the cargo invocation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from buildline.build import WorkspaceCompiler, discover_binaries
from buildline.build.graph import CycleError
from buildline.domain.models import (
    BuildEnvironment,
    BuildProfile,
    StepOutcome,
    ToolchainEnvironment,
    WorkspacePackage,
)
from buildline.errors import CompileError
from tests.conftest import write_file

if TYPE_CHECKING:
    from pathlib import Path

    from tests.conftest import FakeCommandRunner, RecordingLogger

PGR_DB = WorkspacePackage(name="pgr-db", path="pgr-db", artifacts=("libpgr_db.rlib",))
PGR_BIN = WorkspacePackage(
    name="pgr-bin", path="pgr-bin", depends_on=("pgr-db",), discover_bins=True
)
PGR_UTILS = WorkspacePackage(name="pgr-utils", path="pgr-utils", artifacts=("pgr-utils",))


def _environment(tmp_path: Path) -> BuildEnvironment:
    return BuildEnvironment(
        toolchains=(
            ToolchainEnvironment(
                name="rust",
                version="stable",
                root=tmp_path / "rust",
                path_entries=(tmp_path / "rust" / "cargo" / "bin",),
                variables={"CARGO_HOME": str(tmp_path / "rust" / "cargo")},
            ),
        )
    )


def _compiler(
    workspace: Path,
    runner: FakeCommandRunner,
    *,
    logger: RecordingLogger | None = None,
    **kwargs: object,
) -> WorkspaceCompiler:
    return WorkspaceCompiler(
        workspace_root=workspace,
        command_runner=runner,
        base_env={"PATH": "/usr/bin", "HOME": "/root"},
        logger=logger,
        **kwargs,  # type: ignore[arg-type]
    )


def _built_packages(runner: FakeCommandRunner) -> list[str]:
    return [call.command[3] for call in runner.invoked("cargo", "build")]


def test_packages_build_in_dependency_order(tmp_path: Path, runner: FakeCommandRunner) -> None:
    write_file(tmp_path / "pgr-bin" / "src" / "bin" / "pgr-query.rs", "fn main() {}\n")

    report = _compiler(tmp_path, runner).build([PGR_BIN, PGR_DB], _environment(tmp_path))

    assert report.order == ("pgr-db", "pgr-bin")
    assert _built_packages(runner) == ["pgr-db", "pgr-bin"]
    assert report.ok
    assert report.succeeded == ("pgr-db", "pgr-bin")
    bin_result = report.results["pgr-bin"]
    assert dict(bin_result.artifacts) == {
        "pgr-query": tmp_path / "target" / "release" / "pgr-query"
    }


def test_failed_dependency_skips_dependents_without_invoking_them(
    tmp_path: Path, runner: FakeCommandRunner, recording_logger: RecordingLogger
) -> None:
    runner.on("cargo", "build", "-p", "pgr-db", returncode=101, stderr="error[E0425]: oops")

    report = _compiler(tmp_path, runner, logger=recording_logger).build(
        [PGR_DB, PGR_BIN, PGR_UTILS], _environment(tmp_path)
    )

    assert _built_packages(runner) == ["pgr-db", "pgr-utils"]
    assert report.failed == ("pgr-db",)
    assert report.skipped == ("pgr-bin",)
    assert report.succeeded == ("pgr-utils",)
    assert report.results["pgr-bin"].error == "dependency failed: pgr-db"
    assert not report.ok
    assert recording_logger.named("package_build_skipped") == [
        {"package": "pgr-bin", "blocked_by": ["pgr-db"]}
    ]

    error = report.first_error()
    assert isinstance(error, CompileError)
    assert error.package == "pgr-db"
    assert error.returncode == 101
    assert "E0425" in error.stderr
    with pytest.raises(CompileError):
        report.raise_for_failure()


def test_skips_propagate_through_transitive_dependents(
    tmp_path: Path, runner: FakeCommandRunner
) -> None:
    plugin = WorkspacePackage(name="pgr-plugin", path="pgr-plugin", depends_on=("pgr-bin",))
    runner.on("cargo", "build", "-p", "pgr-db", returncode=1)

    report = _compiler(tmp_path, runner).build([PGR_DB, PGR_BIN, plugin], _environment(tmp_path))

    assert report.skipped == ("pgr-bin", "pgr-plugin")
    assert _built_packages(runner) == ["pgr-db"]
    assert report.results["pgr-plugin"].outcome is StepOutcome.SKIPPED


def test_release_profile_and_lock_flags(tmp_path: Path, runner: FakeCommandRunner) -> None:
    _compiler(tmp_path, runner).build([PGR_DB], _environment(tmp_path))

    (call,) = runner.invoked("cargo", "build")
    assert call.command == ("cargo", "build", "-p", "pgr-db", "--release", "--locked")
    assert call.cwd == tmp_path


def test_debug_profile_without_lock(tmp_path: Path, runner: FakeCommandRunner) -> None:
    compiler = _compiler(tmp_path, runner, profile=BuildProfile.DEBUG, locked=False)

    report = compiler.build([PGR_DB], _environment(tmp_path))

    (call,) = runner.invoked("cargo", "build")
    assert call.command == ("cargo", "build", "-p", "pgr-db")
    assert compiler.output_dir == tmp_path / "target" / "debug"
    assert dict(report.results["pgr-db"].artifacts) == {
        "libpgr_db.rlib": tmp_path / "target" / "debug" / "libpgr_db.rlib"
    }


def test_cargo_receives_only_the_explicit_build_environment(
    tmp_path: Path, runner: FakeCommandRunner
) -> None:
    _compiler(tmp_path, runner).build([PGR_DB], _environment(tmp_path))

    (call,) = runner.invoked("cargo", "build")
    assert call.env is not None
    assert call.env["PATH"] == f"{tmp_path / 'rust' / 'cargo' / 'bin'}:/usr/bin"
    assert call.env["CARGO_HOME"] == str(tmp_path / "rust" / "cargo")
    assert call.env["HOME"] == "/root"


def test_parallel_jobs_build_a_whole_wave(tmp_path: Path, runner: FakeCommandRunner) -> None:
    report = _compiler(tmp_path, runner, jobs=4).build(
        [PGR_BIN, PGR_DB, PGR_UTILS], _environment(tmp_path)
    )

    built = _built_packages(runner)
    assert sorted(built[:2]) == ["pgr-db", "pgr-utils"]
    assert built[2] == "pgr-bin"
    assert report.order == ("pgr-db", "pgr-bin", "pgr-utils")
    assert report.ok


def test_plan_rejects_cycles_before_building(tmp_path: Path, runner: FakeCommandRunner) -> None:
    first = WorkspacePackage(name="a", path="a", depends_on=("b",))
    second = WorkspacePackage(name="b", path="b", depends_on=("a",))

    with pytest.raises(CycleError):
        _compiler(tmp_path, runner).build([first, second], _environment(tmp_path))

    assert runner.calls == []


def test_jobs_must_be_positive(tmp_path: Path, runner: FakeCommandRunner) -> None:
    with pytest.raises(ValueError, match="jobs"):
        _compiler(tmp_path, runner, jobs=0)


def test_discover_binaries_reads_src_bin(tmp_path: Path) -> None:
    package_dir = tmp_path / "pgr-bin"
    write_file(package_dir / "src" / "bin" / "pgr-merge-svcnd-bed.rs")
    write_file(package_dir / "src" / "bin" / "pgr-generate-chr-aln-plot.rs")
    write_file(package_dir / "src" / "bin" / "pgr-fetch" / "main.rs")
    write_file(package_dir / "src" / "bin" / "helpers" / "mod.rs")
    write_file(package_dir / "src" / "bin" / "README.md")

    assert discover_binaries(package_dir) == (
        "pgr-fetch",
        "pgr-generate-chr-aln-plot",
        "pgr-merge-svcnd-bed",
    )
    assert discover_binaries(tmp_path / "missing") == ()
