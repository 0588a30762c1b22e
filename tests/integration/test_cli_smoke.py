"""
buildline — CLI smoke tests

File: tests/integration/test_cli_smoke.py

Purpose
- Drive ``buildline`` through ``run_cli`` and ``cli_entrypoint`` against a
  config written to a temp directory.
- Replace the subprocess runner so no external tool is spawned.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from buildline.main import ExitCode, cli_entrypoint
from buildline.pipeline import ToolImagePipeline
from buildline.ui import cli
from buildline.ui.cli import run_cli
from tests.conftest import write_file

if TYPE_CHECKING:
    from buildline.domain.models import PipelineConfig
    from tests.conftest import FakeCommandRunner

pytestmark = pytest.mark.integration

_CONFIG = """
[paths]
workspace_root = "ws"

[toolchains.native]
kind = "system"
version = "ubuntu-22.04"
packages = ["cmake"]

[workspace.packages.pgr-db]
path = "pgr-db"

[workspace.packages.pgr-bin]
path = "pgr-bin"
depends_on = ["pgr-db"]
discover_bins = true

[images]
engine = "none"

[images.tool]
tag = "pgr-tk:smoke"
"""


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("BUILDLINE_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("NO_COLOR", "1")


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    write_file(tmp_path / "ws" / "pgr-db" / "src" / "lib.rs")
    write_file(tmp_path / "ws" / "pgr-bin" / "src" / "bin" / "pgr-query.rs")
    return write_file(tmp_path / "buildline.toml", _CONFIG)


@pytest.fixture
def fake_pipeline(
    monkeypatch: pytest.MonkeyPatch, runner: FakeCommandRunner, tmp_path: Path
) -> FakeCommandRunner:
    release = tmp_path / "ws" / "target" / "release"

    def _cargo_bin(command: tuple[str, ...], cwd: Path, env: object) -> None:
        write_file(release / "pgr-query")

    runner.on("cargo", "build", "-p", "pgr-bin", effect=_cargo_bin)

    def _factory(config: PipelineConfig) -> ToolImagePipeline:
        return ToolImagePipeline(config, command_runner=runner, base_env={"PATH": "/usr/bin"})

    monkeypatch.setattr(cli, "ToolImagePipeline", _factory)
    return runner


def test_plan_json_lists_order_and_manifest(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(["plan", "--config", str(config_path), "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert code == 0
    assert payload["command"] == "plan"
    assert payload["order"] == ["pgr-db", "pgr-bin"]
    assert set(payload["manifest"]) == {"pgr-query"}
    assert payload["manifest"]["pgr-query"]["producer"] == "pgr-bin"


def test_plan_text_output(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["plan", "--config", str(config_path)])

    out = capsys.readouterr().out
    assert code == 0
    assert "Build plan" in out
    assert "1. pgr-db" in out
    assert "2. pgr-bin" in out


def test_config_json_applies_profile_and_overrides(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(
        [
            "config",
            "--config",
            str(config_path),
            "--profile",
            "forgiving",
            "--set",
            "build.jobs=6",
            "--json",
        ]
    )

    payload = json.loads(capsys.readouterr().out)
    assert code == 0
    assert payload["active_profile"] == "forgiving"
    assert payload["config"]["build"]["default_external_policy"] == "best-effort"
    assert payload["config"]["build"]["jobs"] == 6


def test_env_override_is_visible_in_config(
    config_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("BUILDLINE_BUILD_JOBS", "3")

    run_cli(["config", "--config", str(config_path), "--json"])

    assert json.loads(capsys.readouterr().out)["config"]["build"]["jobs"] == 3


def test_invalid_config_exits_with_config_error(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(["plan", "--config", str(config_path), "--set", "build.jobs=0"])

    err = capsys.readouterr().err
    assert code == ExitCode.CONFIG_ERROR
    assert "error: invalid config" in err
    assert "build.jobs: must be >= 1" in err


def test_dependency_cycle_exits_with_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = write_file(
        tmp_path / "buildline.toml",
        """
[workspace.packages.a]
path = "a"
depends_on = ["b"]

[workspace.packages.b]
path = "b"
depends_on = ["a"]
""",
    )

    code = run_cli(["plan", "--config", str(path)])

    assert code == ExitCode.CONFIG_ERROR
    assert "cycle" in capsys.readouterr().err


def test_build_succeeds_and_writes_run_log(
    config_path: Path,
    fake_pipeline: FakeCommandRunner,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    code = run_cli(["build", "--config", str(config_path), "--json"])

    payload = json.loads(capsys.readouterr().out)
    report = payload["report"]
    assert code == ExitCode.SUCCESS
    assert report["ok"] is True
    assert report["image"]["built"] is False
    assert report["image"]["artifacts"] == ["pgr-query"]
    assert fake_pipeline.invoked("docker") == []

    (log_path,) = (tmp_path / ".buildline" / "logs").glob("*/buildline.jsonl")
    messages = [
        json.loads(line)["message"] for line in log_path.read_text(encoding="utf-8").splitlines()
    ]
    assert "command_started" in messages
    assert "pipeline_started" in messages
    assert "pipeline_succeeded" in messages


def test_build_compile_failure_exits_with_pipeline_failure(
    config_path: Path,
    fake_pipeline: FakeCommandRunner,
    capsys: pytest.CaptureFixture[str],
) -> None:
    fake_pipeline.on("cargo", "build", "-p", "pgr-db", returncode=101, stderr="missing symbol")

    code = run_cli(["build", "--config", str(config_path), "--verbose"])

    out = capsys.readouterr().out
    assert code == ExitCode.PIPELINE_FAILED
    assert "Status: failed" in out
    assert "[compile] package 'pgr-db' failed to compile (exit 101): missing symbol" in out
    assert fake_pipeline.invoked("cargo", "build", "-p", "pgr-bin") == []


def test_build_provision_failure_exits_with_provision_error(
    config_path: Path,
    fake_pipeline: FakeCommandRunner,
    capsys: pytest.CaptureFixture[str],
) -> None:
    fake_pipeline.on("apt-get", "install", returncode=100, stderr="E: broken packages")

    code = run_cli(["build", "--config", str(config_path)])

    assert code == ExitCode.PROVISION_ERROR
    assert fake_pipeline.invoked("cargo") == []
    assert "toolchain 'native' could not be provisioned" in capsys.readouterr().out


def test_workstation_without_descriptor_is_a_config_error(
    config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(
        [
            "workstation",
            "--config",
            str(config_path),
            "--wheel",
            str(tmp_path / "pgrtk-0.6.0-cp311-cp311-linux_x86_64.whl"),
            "--launch-script",
            str(tmp_path / "start.sh"),
        ]
    )

    assert code == ExitCode.CONFIG_ERROR
    assert "no workstation image is configured" in capsys.readouterr().err


def test_entrypoint_maps_missing_config_file(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = cli_entrypoint(["plan", "--config", str(tmp_path / "absent.toml")])

    assert code == ExitCode.CONFIG_ERROR
    assert "config file not found" in capsys.readouterr().err


def test_entrypoint_reports_usage_errors(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli_entrypoint(["frobnicate"])

    assert code == 2
    assert "invalid choice" in capsys.readouterr().err


def test_entrypoint_routes_unexpected_exceptions(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def _boom(argv: object) -> int:
        raise RuntimeError("unexpected state")

    monkeypatch.setattr(cli, "run_cli", _boom)

    code = cli_entrypoint(["plan"])

    assert code == ExitCode.INTERNAL_ERROR
    assert "RuntimeError: unexpected state" in capsys.readouterr().err


def test_workstation_can_skip_install_check(
    config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    wheel = write_file(tmp_path / "dist" / "pgrtk-0.6.0-cp312-cp312-linux_x86_64.whl")
    script = write_file(tmp_path / "start.sh", "jupyter lab\n")

    code = run_cli(
        [
            "workstation",
            "--config",
            str(config_path),
            "--set",
            "images.workstation.tag=pgr-tk-workstation:smoke",
            "--set",
            'images.workstation.python_version="3.12"',
            "--wheel",
            str(wheel),
            "--launch-script",
            str(script),
            "--skip-install-check",
            "--json",
        ]
    )

    assert code == ExitCode.SUCCESS
    report = json.loads(capsys.readouterr().out)["report"]
    assert report["ok"] is True
    assert report["image"]["built"] is False
    assert report["image"]["artifacts"] == [wheel.name, "start.sh"]
