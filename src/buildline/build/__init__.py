"""Compilation stages: the cargo workspace and external native modules."""

from buildline.build.external import ExternalModuleBuilder
from buildline.build.graph import CycleError, PackageGraph, UnknownDependencyError
from buildline.build.workspace import WorkspaceBuildReport, WorkspaceCompiler, discover_binaries

__all__ = [
    "CycleError",
    "ExternalModuleBuilder",
    "PackageGraph",
    "UnknownDependencyError",
    "WorkspaceBuildReport",
    "WorkspaceCompiler",
    "discover_binaries",
]
