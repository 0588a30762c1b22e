"""Convert a validated config mapping into the immutable ``PipelineConfig``."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from buildline.constants import (
    DEFAULT_ARTIFACT_DEST,
    DEFAULT_LAUNCH_SCRIPT_DEST,
    DEFAULT_RUSTUP_INSTALLER_URL,
    DEFAULT_TOOL_BASE_IMAGE,
    DEFAULT_WHEEL_PLATFORMS,
    DEFAULT_WORKSTATION_BASE_IMAGE,
)
from buildline.domain.models import (
    BuildProfile,
    ExternalModule,
    FailurePolicy,
    ImageDescriptor,
    ImageKind,
    PipelineConfig,
    ToolchainKind,
    ToolchainSpec,
    WorkspacePackage,
)


def resolve_pipeline_config(config: Mapping[str, Any]) -> PipelineConfig:
    """Build the pipeline struct from the output of ``load_config``.

    Toolchains without an explicit ``root`` get ``<install_root>/<name>``.
    External modules without a ``policy`` inherit ``build.default_external_policy``.
    """

    paths = config["paths"]
    build = config["build"]
    images = config.get("images", {})
    install_root = Path(paths["install_root"])
    default_policy = FailurePolicy(build["default_external_policy"])

    toolchains = tuple(
        _toolchain(name, settings, install_root)
        for name, settings in config.get("toolchains", {}).items()
    )
    packages = tuple(
        _package(name, settings)
        for name, settings in sorted(config.get("workspace", {}).get("packages", {}).items())
    )
    modules = tuple(
        _external_module(name, settings, default_policy)
        for name, settings in sorted(config.get("external_modules", {}).items())
    )

    tool_settings = images.get("tool")
    workstation_settings = images.get("workstation")
    return PipelineConfig(
        install_root=install_root,
        workspace_root=Path(paths["workspace_root"]),
        artifact_dir=Path(paths["artifact_dir"]),
        image_context_dir=Path(paths["image_context_dir"]),
        profile=BuildProfile(build["profile"]),
        jobs=int(build["jobs"]),
        parallel_builders=bool(build["parallel_builders"]),
        locked=bool(build["locked"]),
        command_timeout_seconds=float(build["command_timeout_seconds"]),
        engine=str(images.get("engine", "docker")),
        toolchains=toolchains,
        packages=packages,
        external_modules=modules,
        tool_image=(
            _image(ImageKind.TOOL, tool_settings) if tool_settings is not None else None
        ),
        workstation_image=(
            _image(ImageKind.WORKSTATION, workstation_settings)
            if workstation_settings is not None
            else None
        ),
    )


def _toolchain(name: str, settings: Mapping[str, Any], install_root: Path) -> ToolchainSpec:
    kind = ToolchainKind(settings["kind"])
    installer_url = settings.get("installer_url")
    if installer_url is None and kind is ToolchainKind.RUSTUP:
        installer_url = DEFAULT_RUSTUP_INSTALLER_URL
    return ToolchainSpec(
        name=name,
        kind=kind,
        version=settings["version"],
        root=Path(settings["root"]) if "root" in settings else install_root / name,
        installer_url=installer_url,
        checksum=settings.get("checksum"),
        packages=tuple(settings.get("packages", ())),
        extra_tools=tuple(settings.get("extra_tools", ())),
        verify_commands=tuple(tuple(command) for command in settings.get("verify_commands", ())),
        env=dict(settings.get("env", {})),
    )


def _package(name: str, settings: Mapping[str, Any]) -> WorkspacePackage:
    return WorkspacePackage(
        name=name,
        path=settings["path"],
        depends_on=tuple(settings.get("depends_on", ())),
        artifacts=tuple(settings.get("artifacts", ())),
        discover_bins=bool(settings.get("discover_bins", False)),
    )


def _external_module(
    name: str, settings: Mapping[str, Any], default_policy: FailurePolicy
) -> ExternalModule:
    policy = settings.get("policy")
    return ExternalModule(
        name=name,
        source_dir=Path(settings["source_dir"]),
        artifact=settings["artifact"],
        artifact_path=settings["artifact_path"],
        command=tuple(settings.get("command", ("make",))),
        policy=FailurePolicy(policy) if policy is not None else default_policy,
    )


def _image(kind: ImageKind, settings: Mapping[str, Any]) -> ImageDescriptor:
    if kind is ImageKind.TOOL:
        base_image = settings.get("base_image", DEFAULT_TOOL_BASE_IMAGE)
        artifacts = tuple(settings.get("artifacts", ("*",)))
    else:
        base_image = settings.get("base_image", DEFAULT_WORKSTATION_BASE_IMAGE)
        artifacts = ()
    return ImageDescriptor(
        name=settings.get("name", kind.value),
        kind=kind,
        tag=settings["tag"],
        base_image=base_image,
        system_packages=tuple(settings.get("system_packages", ())),
        artifacts=artifacts,
        artifact_dest=settings.get("artifact_dest", DEFAULT_ARTIFACT_DEST),
        env=dict(settings.get("env", {})),
        workdir=settings.get("workdir"),
        command=tuple(settings.get("command", ())),
        python_version=settings.get("python_version"),
        conda_packages=tuple(settings.get("conda_packages", ())),
        pip_packages=tuple(settings.get("pip_packages", ())),
        launch_script_dest=settings.get("launch_script_dest", DEFAULT_LAUNCH_SCRIPT_DEST),
        verify_import=settings.get("verify_import"),
        setup_commands=tuple(settings.get("setup_commands", ())),
        directories=tuple(settings.get("directories", ())),
        check_install=settings.get("check_install", True),
        wheel_platforms=tuple(settings.get("wheel_platforms", DEFAULT_WHEEL_PLATFORMS)),
    )


__all__ = ["resolve_pipeline_config"]
