"""Pipeline error taxonomy.

Every stage failure carries the failing step identity and the captured
output so a human can remediate and re-invoke the pipeline.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from buildline.domain.models import ArtifactExpectation, FailurePolicy


class PipelineError(RuntimeError):
    """Base error for all stage failures."""

    stage: str = "pipeline"

    def __init__(self, message: str, *, step: str) -> None:
        self.step = step
        super().__init__(message)


class ProvisionError(PipelineError):
    """Toolchain acquisition, pinning, or verification failed."""

    stage = "provision"

    def __init__(self, toolchain: str, detail: str) -> None:
        self.toolchain = toolchain
        self.detail = detail
        super().__init__(
            f"toolchain {toolchain!r} could not be provisioned: {detail}", step=toolchain
        )


class CompileError(PipelineError):
    """A workspace package build exited non-zero. Always fatal."""

    stage = "compile"

    def __init__(self, package: str, stderr: str, *, returncode: int | None = None) -> None:
        self.package = package
        self.stderr = stderr
        self.returncode = returncode
        exit_text = f" (exit {returncode})" if returncode is not None else ""
        message = f"package {package!r} failed to compile{exit_text}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message, step=package)


class ExternalBuildError(PipelineError):
    """An external native module build failed."""

    stage = "external"

    def __init__(
        self,
        module: str,
        stderr: str,
        *,
        returncode: int | None = None,
        policy: FailurePolicy | None = None,
    ) -> None:
        self.module = module
        self.stderr = stderr
        self.returncode = returncode
        self.policy = policy
        exit_text = f" (exit {returncode})" if returncode is not None else ""
        message = f"external module {module!r} failed to build{exit_text}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message, step=module)


class CollectError(PipelineError):
    """Artifacts expected from fatal-policy steps are missing.

    This is an internal inconsistency: a fatal failure should already have
    halted the pipeline before collection.
    """

    stage = "collect"

    def __init__(self, missing: Iterable[ArtifactExpectation]) -> None:
        self.missing = tuple(missing)
        rendered = ", ".join(
            f"{item.name} (from {item.producer} at {item.source_path})" for item in self.missing
        )
        super().__init__(f"missing fatal-origin artifacts: {rendered}", step="collect")

    @property
    def artifact(self) -> str:
        return self.missing[0].name if self.missing else ""

    @property
    def artifact_names(self) -> tuple[str, ...]:
        return tuple(item.name for item in self.missing)


class AssembleError(PipelineError):
    """An image could not be assembled from its declared inputs."""

    stage = "assemble"

    def __init__(
        self,
        image: str,
        detail: str,
        *,
        missing_input: str | None = None,
        returncode: int | None = None,
    ) -> None:
        self.image = image
        self.detail = detail
        self.missing_input = missing_input
        self.returncode = returncode
        super().__init__(f"image {image!r} could not be assembled: {detail}", step=image)


__all__ = [
    "AssembleError",
    "CollectError",
    "CompileError",
    "ExternalBuildError",
    "PipelineError",
    "ProvisionError",
]
