"""Explicit artifact manifest: artifact name -> producer step -> expected path."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from buildline.build.workspace import discover_binaries
from buildline.domain.models import (
    ArtifactExpectation,
    BuildProfile,
    ExternalModule,
    FailurePolicy,
    WorkspacePackage,
)


class DuplicateArtifactError(ValueError):
    """Two producers declare the same artifact name in the flat directory."""

    def __init__(self, name: str, producers: Iterable[str]) -> None:
        self.name = name
        self.producers = tuple(sorted(producers))
        super().__init__(
            f"artifact name {name!r} is produced by more than one step: {', '.join(self.producers)}"
        )


@dataclass(frozen=True, slots=True)
class ArtifactManifest:
    entries: tuple[ArtifactExpectation, ...] = ()

    def __post_init__(self) -> None:
        producers: dict[str, list[str]] = {}
        for entry in self.entries:
            producers.setdefault(entry.name, []).append(entry.producer)
        for name, owners in sorted(producers.items()):
            if len(owners) > 1:
                raise DuplicateArtifactError(name, owners)
        object.__setattr__(
            self, "entries", tuple(sorted(self.entries, key=lambda entry: entry.name))
        )

    def __iter__(self) -> Iterator[ArtifactExpectation]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, name: object) -> bool:
        return any(entry.name == name for entry in self.entries)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(entry.name for entry in self.entries)

    def for_producer(self, producer: str) -> tuple[ArtifactExpectation, ...]:
        return tuple(entry for entry in self.entries if entry.producer == producer)

    def to_dict(self) -> dict[str, object]:
        return {
            entry.name: {
                "producer": entry.producer,
                "source": str(entry.source_path),
                "policy": entry.policy.value,
            }
            for entry in self.entries
        }


def build_manifest(
    *,
    packages: Iterable[WorkspacePackage],
    modules: Iterable[ExternalModule],
    workspace_root: Path,
    profile: BuildProfile,
) -> ArtifactManifest:
    """Derive expectations from the declared packages and external modules."""

    output_dir = Path(workspace_root) / "target" / profile.target_subdir
    entries: list[ArtifactExpectation] = []
    for package in packages:
        names = list(package.artifacts)
        if package.discover_bins:
            names.extend(discover_binaries(Path(workspace_root) / package.path))
        for name in dict.fromkeys(names):
            entries.append(
                ArtifactExpectation(
                    name=name,
                    producer=package.name,
                    source_path=output_dir / name,
                    policy=FailurePolicy.FATAL,
                )
            )
    for module in modules:
        entries.append(
            ArtifactExpectation(
                name=module.artifact,
                producer=module.name,
                source_path=module.expected_artifact,
                policy=module.policy,
            )
        )
    return ArtifactManifest(entries=tuple(entries))


__all__ = ["ArtifactManifest", "DuplicateArtifactError", "build_manifest"]
