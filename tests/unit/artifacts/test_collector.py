"""
buildline — unit tests for artifact collection

File: tests/unit/artifacts/test_collector.py

Purpose
- Validate the flat, name-keyed artifact directory and its manifest.

What this test file should cover
- Successful producers are copied under their bare artifact names.
- Tolerated failures become omissions; fatal gaps raise one CollectError.
- Nothing is copied when validation fails.
- Re-collection removes artifacts left over from a previous run.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from buildline.artifacts import ArtifactCollector, ArtifactManifest
from buildline.constants import ARTIFACT_MANIFEST_FILENAME
from buildline.domain.models import (
    ArtifactExpectation,
    FailurePolicy,
    StepKind,
    StepOutcome,
    StepResult,
)
from buildline.errors import CollectError
from buildline.utils.hashing import sha256_file
from tests.conftest import write_file

if TYPE_CHECKING:
    from pathlib import Path

    from tests.conftest import RecordingLogger


def _manifest(tmp_path: Path) -> ArtifactManifest:
    release = tmp_path / "target" / "release"
    return ArtifactManifest(
        entries=(
            ArtifactExpectation("pgr-query", "pgr-bin", release / "pgr-query"),
            ArtifactExpectation("pgr-fetch", "pgr-bin", release / "pgr-fetch"),
            ArtifactExpectation(
                "agc", "agc", tmp_path / "agc" / "agc", policy=FailurePolicy.BEST_EFFORT
            ),
        )
    )


def _success(step: str, kind: StepKind = StepKind.PACKAGE, **artifacts: Path) -> StepResult:
    return StepResult(step=step, kind=kind, outcome=StepOutcome.SUCCESS, artifacts=artifacts)


def _tolerated(step: str) -> StepResult:
    return StepResult(
        step=step,
        kind=StepKind.EXTERNAL,
        outcome=StepOutcome.FAILED_TOLERATED,
        policy=FailurePolicy.BEST_EFFORT,
        error="make failed",
    )


def _write_release_binaries(tmp_path: Path) -> None:
    write_file(tmp_path / "target" / "release" / "pgr-query", "query-v1")
    write_file(tmp_path / "target" / "release" / "pgr-fetch", "fetch-v1")


def test_collects_successful_artifacts_flat_by_name(
    tmp_path: Path, recording_logger: RecordingLogger
) -> None:
    _write_release_binaries(tmp_path)
    write_file(tmp_path / "agc" / "agc", "agc-v3")
    artifact_dir = tmp_path / "out"

    artifact_set = ArtifactCollector(artifact_dir, logger=recording_logger).collect(
        _manifest(tmp_path),
        {"pgr-bin": _success("pgr-bin"), "agc": _success("agc", StepKind.EXTERNAL)},
    )

    assert artifact_set.names == ("agc", "pgr-fetch", "pgr-query")
    assert artifact_set.omitted == ()
    assert artifact_set.path_for("agc") == artifact_dir / "agc"
    assert (artifact_dir / "pgr-query").read_text(encoding="utf-8") == "query-v1"
    assert artifact_set.entries["pgr-query"].sha256 == sha256_file(artifact_dir / "pgr-query")
    assert artifact_set.entries["agc"].producer == "agc"

    written = json.loads((artifact_dir / ARTIFACT_MANIFEST_FILENAME).read_text(encoding="utf-8"))
    assert sorted(written["artifacts"]) == ["agc", "pgr-fetch", "pgr-query"]
    assert written["omitted"] == []


def test_step_reported_path_takes_precedence(tmp_path: Path) -> None:
    _write_release_binaries(tmp_path)
    relocated = write_file(tmp_path / "elsewhere" / "agc", "relocated")

    artifact_set = ArtifactCollector(tmp_path / "out").collect(
        _manifest(tmp_path),
        {
            "pgr-bin": _success("pgr-bin"),
            "agc": _success("agc", StepKind.EXTERNAL, agc=relocated),
        },
    )

    assert artifact_set.entries["agc"].source_path == relocated
    assert artifact_set.path_for("agc").read_text(encoding="utf-8") == "relocated"


def test_tolerated_failure_is_omitted_not_raised(
    tmp_path: Path, recording_logger: RecordingLogger
) -> None:
    _write_release_binaries(tmp_path)

    artifact_set = ArtifactCollector(tmp_path / "out", logger=recording_logger).collect(
        _manifest(tmp_path), {"pgr-bin": _success("pgr-bin"), "agc": _tolerated("agc")}
    )

    assert "agc" not in artifact_set
    assert artifact_set.omitted == ("agc",)
    assert not (tmp_path / "out" / "agc").exists()
    assert recording_logger.named("artifact_omitted") == [
        {"artifact": "agc", "producer": "agc", "outcome": "failed-tolerated"}
    ]
    with pytest.raises(KeyError, match="agc"):
        artifact_set.path_for("agc")


def test_best_effort_success_without_file_is_omitted(
    tmp_path: Path, recording_logger: RecordingLogger
) -> None:
    _write_release_binaries(tmp_path)

    artifact_set = ArtifactCollector(tmp_path / "out", logger=recording_logger).collect(
        _manifest(tmp_path),
        {"pgr-bin": _success("pgr-bin"), "agc": _success("agc", StepKind.EXTERNAL)},
    )

    assert artifact_set.omitted == ("agc",)
    assert recording_logger.named("artifact_missing_after_success")


def test_all_missing_fatal_artifacts_raise_one_error_before_copying(tmp_path: Path) -> None:
    write_file(tmp_path / "agc" / "agc")
    artifact_dir = tmp_path / "out"

    with pytest.raises(CollectError) as excinfo:
        ArtifactCollector(artifact_dir).collect(
            _manifest(tmp_path),
            {"pgr-bin": _success("pgr-bin"), "agc": _success("agc", StepKind.EXTERNAL)},
        )

    assert excinfo.value.artifact_names == ("pgr-fetch", "pgr-query")
    assert excinfo.value.artifact == "pgr-fetch"
    assert excinfo.value.stage == "collect"
    assert not artifact_dir.exists()


def test_fatal_producer_that_never_ran_is_missing(tmp_path: Path) -> None:
    write_file(tmp_path / "agc" / "agc")

    with pytest.raises(CollectError, match="pgr-query"):
        ArtifactCollector(tmp_path / "out").collect(
            _manifest(tmp_path), {"agc": _success("agc", StepKind.EXTERNAL)}
        )


def test_recollection_overwrites_and_removes_stale_artifacts(
    tmp_path: Path, recording_logger: RecordingLogger
) -> None:
    _write_release_binaries(tmp_path)
    write_file(tmp_path / "agc" / "agc", "agc-v3")
    artifact_dir = tmp_path / "out"
    collector = ArtifactCollector(artifact_dir, logger=recording_logger)
    collector.collect(
        _manifest(tmp_path),
        {"pgr-bin": _success("pgr-bin"), "agc": _success("agc", StepKind.EXTERNAL)},
    )
    assert (artifact_dir / "agc").exists()

    write_file(tmp_path / "target" / "release" / "pgr-query", "query-v2")
    artifact_set = collector.collect(
        _manifest(tmp_path), {"pgr-bin": _success("pgr-bin"), "agc": _tolerated("agc")}
    )

    assert not (artifact_dir / "agc").exists()
    assert (artifact_dir / "pgr-query").read_text(encoding="utf-8") == "query-v2"
    assert artifact_set.omitted == ("agc",)
    assert recording_logger.named("stale_artifacts_removed") == [{"artifacts": ["agc"]}]
    assert sorted(path.name for path in artifact_dir.iterdir()) == [
        ARTIFACT_MANIFEST_FILENAME,
        "pgr-fetch",
        "pgr-query",
    ]
