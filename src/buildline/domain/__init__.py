"""Immutable domain types for the build-and-assembly pipeline."""

from buildline.domain.models import (
    ArtifactExpectation,
    ArtifactSet,
    AssembledImage,
    BindingPackage,
    BuildEnvironment,
    BuildProfile,
    CollectedArtifact,
    ExternalModule,
    FailurePolicy,
    ImageDescriptor,
    ImageKind,
    PipelineConfig,
    StepKind,
    StepOutcome,
    StepResult,
    ToolchainEnvironment,
    ToolchainKind,
    ToolchainSpec,
    WorkspacePackage,
)

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
