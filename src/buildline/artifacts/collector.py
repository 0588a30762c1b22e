"""
buildline — artifact collector

File: src/buildline/artifacts/collector.py

Purpose
- Gather every produced binary into one flat, name-keyed directory.

Functional requirements
- Validate the whole manifest before copying anything.
- Tolerated failures become omissions, never errors.
- Every missing fatal-origin artifact is reported in a single ``CollectError``.
- Re-collection overwrites; files left over from a previous run are removed.
"""

from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from buildline.constants import ARTIFACT_MANIFEST_FILENAME, CONFIG_SCHEMA_VERSION
from buildline.domain.models import (
    ArtifactExpectation,
    ArtifactSet,
    CollectedArtifact,
    FailurePolicy,
    StepOutcome,
    StepResult,
)
from buildline.errors import CollectError
from buildline.utils.fs import atomic_write, safe_delete
from buildline.utils.hashing import sha256_file

if TYPE_CHECKING:
    from collections.abc import Mapping

    from buildline.artifacts.manifest import ArtifactManifest


@dataclass(frozen=True, slots=True)
class _PlannedCopy:
    expectation: ArtifactExpectation
    source: Path


class ArtifactCollector:
    def __init__(self, artifact_dir: Path, *, logger: Any | None = None) -> None:
        self._artifact_dir = Path(artifact_dir)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def artifact_dir(self) -> Path:
        return self._artifact_dir

    @property
    def manifest_path(self) -> Path:
        return self._artifact_dir / ARTIFACT_MANIFEST_FILENAME

    def collect(
        self,
        manifest: ArtifactManifest,
        outcomes: Mapping[str, StepResult],
    ) -> ArtifactSet:
        planned, omitted = self._plan(manifest, outcomes)

        self._artifact_dir.mkdir(parents=True, exist_ok=True)
        previous = self._read_previous_names()

        entries: dict[str, CollectedArtifact] = {}
        for item in planned:
            destination = self._artifact_dir / item.expectation.name
            if destination.is_dir() and not destination.is_symlink():
                safe_delete(destination, self._artifact_dir)
            shutil.copy2(item.source, destination)
            entries[item.expectation.name] = CollectedArtifact(
                name=item.expectation.name,
                path=destination,
                source_path=item.source,
                producer=item.expectation.producer,
                sha256=sha256_file(destination),
            )

        stale = sorted(previous - set(entries))
        for name in stale:
            safe_delete(self._artifact_dir / name, self._artifact_dir)
        if stale:
            self._logger.info("stale_artifacts_removed", artifacts=stale)

        artifact_set = ArtifactSet(
            directory=self._artifact_dir,
            entries=entries,
            omitted=tuple(omitted),
        )
        atomic_write(self.manifest_path, _render_manifest(artifact_set))
        self._logger.info(
            "artifacts_collected",
            directory=str(self._artifact_dir),
            collected=list(artifact_set.names),
            omitted=list(artifact_set.omitted),
        )
        return artifact_set

    def _plan(
        self,
        manifest: ArtifactManifest,
        outcomes: Mapping[str, StepResult],
    ) -> tuple[list[_PlannedCopy], list[str]]:
        planned: list[_PlannedCopy] = []
        omitted: list[str] = []
        missing: list[ArtifactExpectation] = []

        for expectation in manifest:
            result = outcomes.get(expectation.producer)
            outcome = result.outcome if result is not None else None

            if outcome is StepOutcome.SUCCESS:
                source = result.artifacts.get(expectation.name, expectation.source_path)
                if source.is_file():
                    planned.append(_PlannedCopy(expectation=expectation, source=source))
                    continue
                if expectation.policy is FailurePolicy.BEST_EFFORT:
                    self._logger.warning(
                        "artifact_missing_after_success",
                        artifact=expectation.name,
                        producer=expectation.producer,
                        source=str(source),
                    )
                    omitted.append(expectation.name)
                    continue
                missing.append(expectation)
                continue

            if expectation.policy is FailurePolicy.BEST_EFFORT:
                self._logger.warning(
                    "artifact_omitted",
                    artifact=expectation.name,
                    producer=expectation.producer,
                    outcome=outcome.value if outcome is not None else "not-run",
                )
                omitted.append(expectation.name)
                continue
            missing.append(expectation)

        if missing:
            self._logger.error(
                "fatal_artifacts_missing",
                artifacts=[item.name for item in missing],
            )
            raise CollectError(missing)
        return planned, omitted

    def _read_previous_names(self) -> set[str]:
        path = self.manifest_path
        if not path.is_file():
            return set()
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            self._logger.warning("previous_manifest_unreadable", path=str(path), error=str(exc))
            return set()
        artifacts = payload.get("artifacts") if isinstance(payload, dict) else None
        if not isinstance(artifacts, dict):
            return set()
        # Only bare file names are trusted; anything else is ignored.
        return {
            name
            for name in artifacts
            if isinstance(name, str)
            and name
            and Path(name).name == name
            and name != ARTIFACT_MANIFEST_FILENAME
        }


def _render_manifest(artifact_set: ArtifactSet) -> str:
    payload = {"schema_version": CONFIG_SCHEMA_VERSION, **artifact_set.to_dict()}
    payload.pop("directory", None)
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


__all__ = ["ArtifactCollector"]
