"""Stable constants shared across pipeline stages."""

from __future__ import annotations

from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1

# Marker files written into owned directories.
TOOLCHAIN_MARKER_FILENAME: Final[str] = ".buildline-toolchain.json"
ARTIFACT_MANIFEST_FILENAME: Final[str] = ".buildline-manifest.json"
PIPELINE_REPORT_FILENAME: Final[str] = "pipeline-report.json"

# Defaults recovered from the reference container recipes.
DEFAULT_RUSTUP_INSTALLER_URL: Final[str] = "https://sh.rustup.rs"
DEFAULT_TOOL_BASE_IMAGE: Final[str] = "ubuntu:22.04"
DEFAULT_WORKSTATION_BASE_IMAGE: Final[str] = "continuumio/miniconda3:latest"
DEFAULT_ARTIFACT_DEST: Final[str] = "/software/bins"
DEFAULT_LAUNCH_SCRIPT_DEST: Final[str] = "/opt/bin"
# Wheel platform tags the conda workstation base image can install.
DEFAULT_WHEEL_PLATFORMS: Final[tuple[str, ...]] = ("manylinux2014_x86_64", "linux_x86_64")

CONTAINER_ENGINES: Final[tuple[str, ...]] = ("docker", "podman", "none")

__all__ = [
    "ARTIFACT_MANIFEST_FILENAME",
    "CONFIG_SCHEMA_VERSION",
    "CONTAINER_ENGINES",
    "DEFAULT_ARTIFACT_DEST",
    "DEFAULT_LAUNCH_SCRIPT_DEST",
    "DEFAULT_RUSTUP_INSTALLER_URL",
    "DEFAULT_TOOL_BASE_IMAGE",
    "DEFAULT_WHEEL_PLATFORMS",
    "DEFAULT_WORKSTATION_BASE_IMAGE",
    "PIPELINE_REPORT_FILENAME",
    "TOOLCHAIN_MARKER_FILENAME",
]
