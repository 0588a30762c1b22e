"""
buildline — image assemblers

File: src/buildline/images/assembler.py

Purpose
- Turn an ``ArtifactSet`` into the headless tool image.
- Turn a binding wheel plus a launch script into the workstation image.

Functional requirements
- Every declared input is checked before the build context is written.
- A build context holds only the staged inputs and the rendered Dockerfile.
- Engine ``none`` renders the context without invoking a container engine.
- No retries: any engine failure surfaces as ``AssembleError``.
"""

from __future__ import annotations

import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from buildline.constants import CONTAINER_ENGINES
from buildline.domain.models import (
    ArtifactSet,
    AssembledImage,
    BindingPackage,
    ImageDescriptor,
    ImageKind,
)
from buildline.errors import AssembleError
from buildline.images.dockerfile import ARTIFACTS_CONTEXT_DIR, render_dockerfile
from buildline.utils.fs import atomic_write, safe_delete, temp_directory
from buildline.utils.process import CommandRunner, SubprocessCommandRunner

if TYPE_CHECKING:
    from collections.abc import Sequence


class _ContainerImageAssembler:
    _kind: ImageKind

    def __init__(
        self,
        *,
        context_root: Path,
        engine: str = "docker",
        command_runner: CommandRunner | None = None,
        timeout_seconds: float = 3600.0,
        logger: Any | None = None,
    ) -> None:
        if engine not in CONTAINER_ENGINES:
            raise ValueError(f"engine must be one of {', '.join(CONTAINER_ENGINES)}")
        self._context_root = Path(context_root)
        self._engine = engine
        self._command_runner = command_runner or SubprocessCommandRunner()
        self._timeout_seconds = timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def _check_kind(self, descriptor: ImageDescriptor) -> None:
        if descriptor.kind is not self._kind:
            raise AssembleError(
                descriptor.name,
                f"descriptor kind {descriptor.kind.value!r} does not match {self._kind.value!r}",
            )

    def _fresh_context(self, descriptor: ImageDescriptor) -> Path:
        self._context_root.mkdir(parents=True, exist_ok=True)
        context = self._context_root / descriptor.name
        safe_delete(context, self._context_root)
        context.mkdir(parents=True)
        return context

    def _write_dockerfile(self, context: Path, text: str) -> Path:
        dockerfile = context / "Dockerfile"
        atomic_write(dockerfile, text)
        return dockerfile

    def _build(self, descriptor: ImageDescriptor, context: Path, dockerfile: Path) -> bool:
        if self._engine == "none":
            self._logger.info(
                "image_build_not_requested", image=descriptor.name, context=str(context)
            )
            return False

        command = [
            self._engine, "build", "-t", descriptor.tag, "-f", str(dockerfile), str(context)
        ]
        self._logger.info("image_build_started", image=descriptor.name, tag=descriptor.tag)
        result = self._command_runner.run(
            command,
            cwd=context,
            timeout_seconds=self._timeout_seconds,
        )
        if not result.ok:
            self._logger.error(
                "image_build_failed",
                image=descriptor.name,
                returncode=result.returncode,
            )
            raise AssembleError(
                descriptor.name,
                f"{self._engine} build exited {result.returncode}: {result.detail()}",
                returncode=result.returncode,
            )
        self._logger.info(
            "image_built",
            image=descriptor.name,
            tag=descriptor.tag,
            duration_ms=result.duration_ms,
        )
        return True


class ToolImageAssembler(_ContainerImageAssembler):
    """Ship the collected binaries on a minimal runtime base."""

    _kind = ImageKind.TOOL

    def assemble(self, descriptor: ImageDescriptor, artifact_set: ArtifactSet) -> AssembledImage:
        self._check_kind(descriptor)
        included, dropped = self._select(descriptor, artifact_set)

        context = self._fresh_context(descriptor)
        staged = context / ARTIFACTS_CONTEXT_DIR
        staged.mkdir()
        for name in included:
            shutil.copy2(artifact_set.path_for(name), staged / name)
        dockerfile = self._write_dockerfile(
            context, render_dockerfile(descriptor, artifact_names=included)
        )

        built = self._build(descriptor, context, dockerfile)
        return AssembledImage(
            name=descriptor.name,
            kind=descriptor.kind,
            tag=descriptor.tag,
            context_dir=context,
            dockerfile=dockerfile,
            artifacts=included,
            omitted=dropped,
            built=built,
        )

    def _select(
        self, descriptor: ImageDescriptor, artifact_set: ArtifactSet
    ) -> tuple[tuple[str, ...], tuple[str, ...]]:
        declared: list[str] = [name for name in descriptor.artifacts if name != "*"]
        if descriptor.wants_all_artifacts:
            # "*" covers omitted artifacts too so the image reports itself degraded.
            declared.extend((*artifact_set.names, *artifact_set.omitted))
        declared = list(dict.fromkeys(declared))

        included = [name for name in declared if name in artifact_set]
        dropped = [
            name for name in declared if name not in artifact_set and name in artifact_set.omitted
        ]
        missing = [
            name
            for name in declared
            if name not in artifact_set and name not in artifact_set.omitted
        ]
        if missing:
            raise AssembleError(
                descriptor.name,
                f"declared artifacts missing from the artifact set: {', '.join(missing)}",
                missing_input=missing[0],
            )
        if dropped:
            self._logger.warning(
                "image_degraded",
                image=descriptor.name,
                omitted=dropped,
            )
        return tuple(sorted(included)), tuple(sorted(dropped))


class WorkstationImageAssembler(_ContainerImageAssembler):
    """Install a prebuilt binding wheel onto a conda runtime with a launch script."""

    _kind = ImageKind.WORKSTATION

    def __init__(
        self,
        *,
        context_root: Path,
        engine: str = "docker",
        command_runner: CommandRunner | None = None,
        timeout_seconds: float = 3600.0,
        python_executable: str | None = None,
        check_install: bool = True,
        logger: Any | None = None,
    ) -> None:
        super().__init__(
            context_root=context_root,
            engine=engine,
            command_runner=command_runner,
            timeout_seconds=timeout_seconds,
            logger=logger,
        )
        self._python_executable = python_executable or sys.executable
        self._check_install = check_install

    def install_check_command(
        self, descriptor: ImageDescriptor, binding: BindingPackage, target: Path
    ) -> Sequence[str]:
        """Dry-run pip resolution of ``binding`` against the image's interpreter and platform.

        The host interpreter only drives pip; ``--python-version`` and ``--platform``
        make the wheel tags be judged for the image.
        """

        command = [
            self._python_executable,
            "-m",
            "pip",
            "install",
            "--dry-run",
            "--no-deps",
            "--ignore-installed",
            "--only-binary=:all:",
            "--target",
            str(target),
        ]
        if descriptor.python_version:
            command += ["--implementation", "cp", "--python-version", descriptor.python_version]
        for platform in descriptor.wheel_platforms:
            command += ["--platform", platform]
        command.append(str(binding.path))
        return tuple(command)

    def assemble(
        self,
        descriptor: ImageDescriptor,
        binding: BindingPackage,
        launch_script: Path,
    ) -> AssembledImage:
        self._check_kind(descriptor)
        launch_script = Path(launch_script)
        for required in (binding.path, launch_script):
            if not required.is_file():
                raise AssembleError(
                    descriptor.name,
                    f"input does not exist: {required}",
                    missing_input=str(required),
                )
        if self._check_install and descriptor.check_install:
            self._verify_installable(descriptor, binding)

        context = self._fresh_context(descriptor)
        shutil.copy2(binding.path, context / binding.filename)
        shutil.copy2(launch_script, context / launch_script.name)
        dockerfile = self._write_dockerfile(
            context,
            render_dockerfile(
                descriptor,
                wheel_filename=binding.filename,
                launch_script_filename=launch_script.name,
            ),
        )

        built = self._build(descriptor, context, dockerfile)
        return AssembledImage(
            name=descriptor.name,
            kind=descriptor.kind,
            tag=descriptor.tag,
            context_dir=context,
            dockerfile=dockerfile,
            artifacts=(binding.filename, launch_script.name),
            built=built,
        )

    def _verify_installable(self, descriptor: ImageDescriptor, binding: BindingPackage) -> None:
        with temp_directory(prefix=f"{descriptor.name}-install-check-") as target:
            result = self._command_runner.run(
                self.install_check_command(descriptor, binding, target),
                cwd=binding.path.parent,
                timeout_seconds=self._timeout_seconds,
            )
        if not result.ok:
            self._logger.error(
                "binding_not_installable",
                image=descriptor.name,
                wheel=binding.filename,
                returncode=result.returncode,
            )
            raise AssembleError(
                descriptor.name,
                f"binding package {binding.filename} is not installable: {result.detail()}",
                returncode=result.returncode,
            )
        self._logger.info(
            "binding_installable",
            image=descriptor.name,
            distribution=binding.distribution,
            version=binding.version,
        )


__all__ = ["ToolImageAssembler", "WorkstationImageAssembler"]
