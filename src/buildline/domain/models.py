"""
buildline — pipeline domain model

File: src/buildline/domain/models.py

Purpose
- Immutable value types shared by every stage: toolchain specs and provisioned
  environments, workspace packages, external modules, per-step results,
  artifact sets, and image descriptors.

Functional requirements
- Static configuration types are read once at pipeline start and never mutated.
- ``StepResult`` is the explicit tagged outcome consumed uniformly downstream.
- ``ArtifactSet`` is read-only once handed to an assembler.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Final

_WHEEL_FILENAME_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<name>[A-Za-z0-9](?:[A-Za-z0-9._]*[A-Za-z0-9])?)-(?P<version>[^-]+)"
    r"(?:-(?P<build>\d[^-]*))?-(?P<python>[^-]+)-(?P<abi>[^-]+)-(?P<platform>[^-]+)\.whl$"
)


class BuildProfile(StrEnum):
    RELEASE = "release"
    DEBUG = "debug"

    @property
    def target_subdir(self) -> str:
        return self.value


class FailurePolicy(StrEnum):
    """Declared reaction to a step failure."""

    FATAL = "fatal"
    BEST_EFFORT = "best-effort"


class StepOutcome(StrEnum):
    """Tagged result of one pipeline step."""

    SUCCESS = "success"
    FAILED_FATAL = "failed-fatal"
    FAILED_TOLERATED = "failed-tolerated"
    SKIPPED = "skipped"

    @property
    def is_fatal(self) -> bool:
        return self is StepOutcome.FAILED_FATAL


class StepKind(StrEnum):
    TOOLCHAIN = "toolchain"
    PACKAGE = "package"
    EXTERNAL = "external"
    COLLECT = "collect"
    ASSEMBLE = "assemble"


class ToolchainKind(StrEnum):
    RUSTUP = "rustup"
    SYSTEM = "system"


class ImageKind(StrEnum):
    TOOL = "tool"
    WORKSTATION = "workstation"


def _freeze_mapping(value: Mapping[str, str]) -> Mapping[str, str]:
    return MappingProxyType(dict(sorted(value.items())))


@dataclass(frozen=True, slots=True)
class ToolchainSpec:
    """Identifies one toolchain and the root it exclusively owns."""

    name: str
    kind: ToolchainKind
    version: str
    root: Path
    installer_url: str | None = None
    checksum: str | None = None
    packages: tuple[str, ...] = ()
    extra_tools: tuple[str, ...] = ()
    verify_commands: tuple[tuple[str, ...], ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", _freeze_mapping(self.env))

    @property
    def rustup_home(self) -> Path:
        return self.root / "rustup"

    @property
    def cargo_home(self) -> Path:
        return self.root / "cargo"


@dataclass(frozen=True, slots=True)
class ToolchainEnvironment:
    """Provisioned toolchain state, exported explicitly instead of via ``os.environ``."""

    name: str
    version: str
    root: Path
    path_entries: tuple[Path, ...] = ()
    variables: Mapping[str, str] = field(default_factory=dict)
    changed: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", _freeze_mapping(self.variables))


@dataclass(frozen=True, slots=True)
class BuildEnvironment:
    """Merged environment of every provisioned toolchain.

    Build steps only receive tool roots through this value, so no compiler
    invocation can be constructed before provisioning has returned.
    """

    toolchains: tuple[ToolchainEnvironment, ...] = ()

    @property
    def variables(self) -> dict[str, str]:
        merged: dict[str, str] = {}
        for toolchain in self.toolchains:
            merged.update(toolchain.variables)
        return merged

    @property
    def path_entries(self) -> tuple[Path, ...]:
        entries: list[Path] = []
        for toolchain in self.toolchains:
            for entry in toolchain.path_entries:
                if entry not in entries:
                    entries.append(entry)
        return tuple(entries)

    def versions(self) -> dict[str, str]:
        return {toolchain.name: toolchain.version for toolchain in self.toolchains}

    def process_env(self, base: Mapping[str, str]) -> dict[str, str]:
        """Return ``base`` overlaid with toolchain variables and PATH entries."""

        env = dict(base)
        env.update(self.variables)
        prefix = [str(entry) for entry in self.path_entries]
        existing = env.get("PATH", "")
        env["PATH"] = ":".join([*prefix, existing] if existing else prefix)
        return env


@dataclass(frozen=True, slots=True)
class WorkspacePackage:
    """A compilable unit inside the cargo workspace."""

    name: str
    path: str
    depends_on: tuple[str, ...] = ()
    artifacts: tuple[str, ...] = ()
    discover_bins: bool = False


@dataclass(frozen=True, slots=True)
class ExternalModule:
    """A native subproject built by its own build description."""

    name: str
    source_dir: Path
    artifact: str
    artifact_path: str
    command: tuple[str, ...] = ("make",)
    policy: FailurePolicy = FailurePolicy.FATAL

    @property
    def expected_artifact(self) -> Path:
        return self.source_dir / self.artifact_path


@dataclass(frozen=True, slots=True)
class StepResult:
    """Explicit per-step outcome consumed by the collector and the report."""

    step: str
    kind: StepKind
    outcome: StepOutcome
    policy: FailurePolicy = FailurePolicy.FATAL
    artifacts: Mapping[str, Path] = field(default_factory=dict)
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    error: str | None = None

    def __post_init__(self) -> None:
        if self.outcome is not StepOutcome.SUCCESS and self.artifacts:
            raise ValueError(f"step {self.step!r} reports artifacts without succeeding")
        object.__setattr__(self, "artifacts", MappingProxyType(dict(self.artifacts)))

    @property
    def succeeded(self) -> bool:
        return self.outcome is StepOutcome.SUCCESS

    def to_dict(self) -> dict[str, object]:
        return {
            "step": self.step,
            "kind": self.kind.value,
            "outcome": self.outcome.value,
            "policy": self.policy.value,
            "artifacts": {name: str(path) for name, path in sorted(self.artifacts.items())},
            "returncode": self.returncode,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class ArtifactExpectation:
    """One manifest row: artifact name -> producer step -> expected path."""

    name: str
    producer: str
    source_path: Path
    policy: FailurePolicy = FailurePolicy.FATAL


@dataclass(frozen=True, slots=True)
class CollectedArtifact:
    name: str
    path: Path
    source_path: Path
    producer: str
    sha256: str


@dataclass(frozen=True, slots=True)
class ArtifactSet:
    """Canonical, flat, name-keyed artifact directory contents."""

    directory: Path
    entries: Mapping[str, CollectedArtifact] = field(default_factory=dict)
    omitted: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", MappingProxyType(dict(sorted(self.entries.items()))))
        object.__setattr__(self, "omitted", tuple(sorted(set(self.omitted))))

    def __contains__(self, name: object) -> bool:
        return name in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self.entries)

    def path_for(self, name: str) -> Path:
        try:
            return self.entries[name].path
        except KeyError:
            raise KeyError(f"artifact {name!r} is not in the artifact set") from None

    def to_dict(self) -> dict[str, object]:
        return {
            "directory": str(self.directory),
            "artifacts": {
                name: {
                    "path": str(item.path),
                    "source": str(item.source_path),
                    "producer": item.producer,
                    "sha256": item.sha256,
                }
                for name, item in self.entries.items()
            },
            "omitted": list(self.omitted),
        }


@dataclass(frozen=True, slots=True)
class ImageDescriptor:
    """Declarative definition of one deliverable image."""

    name: str
    kind: ImageKind
    tag: str
    base_image: str
    system_packages: tuple[str, ...] = ()
    artifacts: tuple[str, ...] = ()
    artifact_dest: str = "/software/bins"
    env: Mapping[str, str] = field(default_factory=dict)
    workdir: str | None = None
    command: tuple[str, ...] = ()
    python_version: str | None = None
    conda_packages: tuple[str, ...] = ()
    pip_packages: tuple[str, ...] = ()
    launch_script_dest: str = "/opt/bin"
    verify_import: str | None = None
    setup_commands: tuple[str, ...] = ()
    directories: tuple[str, ...] = ()
    check_install: bool = True
    wheel_platforms: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", _freeze_mapping(self.env))

    @property
    def wants_all_artifacts(self) -> bool:
        return "*" in self.artifacts


@dataclass(frozen=True, slots=True)
class BindingPackage:
    """Opaque pre-built language-binding wheel consumed by the workstation image."""

    path: Path
    distribution: str
    version: str

    @classmethod
    def from_wheel(cls, path: Path | str) -> BindingPackage:
        wheel = Path(path)
        match = _WHEEL_FILENAME_RE.match(wheel.name)
        if match is None:
            raise ValueError(f"not a wheel filename: {wheel.name!r}")
        return cls(path=wheel, distribution=match["name"], version=match["version"])

    @property
    def filename(self) -> str:
        return self.path.name


@dataclass(frozen=True, slots=True)
class AssembledImage:
    """Terminal result of one image assembly."""

    name: str
    kind: ImageKind
    tag: str
    context_dir: Path
    dockerfile: Path
    artifacts: tuple[str, ...] = ()
    omitted: tuple[str, ...] = ()
    built: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "tag": self.tag,
            "context_dir": str(self.context_dir),
            "dockerfile": str(self.dockerfile),
            "artifacts": list(self.artifacts),
            "omitted": list(self.omitted),
            "built": self.built,
        }


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Immutable configuration struct threaded through every stage call."""

    install_root: Path
    workspace_root: Path
    artifact_dir: Path
    image_context_dir: Path
    profile: BuildProfile = BuildProfile.RELEASE
    jobs: int = 1
    parallel_builders: bool = True
    locked: bool = True
    command_timeout_seconds: float = 3600.0
    engine: str = "docker"
    toolchains: tuple[ToolchainSpec, ...] = ()
    packages: tuple[WorkspacePackage, ...] = ()
    external_modules: tuple[ExternalModule, ...] = ()
    tool_image: ImageDescriptor | None = None
    workstation_image: ImageDescriptor | None = None


__all__ = [
    "ArtifactExpectation",
    "ArtifactSet",
    "AssembledImage",
    "BindingPackage",
    "BuildEnvironment",
    "BuildProfile",
    "CollectedArtifact",
    "ExternalModule",
    "FailurePolicy",
    "ImageDescriptor",
    "ImageKind",
    "PipelineConfig",
    "StepKind",
    "StepOutcome",
    "StepResult",
    "ToolchainEnvironment",
    "ToolchainKind",
    "ToolchainSpec",
    "WorkspacePackage",
]
