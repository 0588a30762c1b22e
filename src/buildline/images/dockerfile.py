"""Deterministic Dockerfile rendering for tool and workstation images."""

from __future__ import annotations

import json
import shlex
from collections.abc import Sequence
from typing import Final

from buildline.domain.models import ImageDescriptor, ImageKind

ARTIFACTS_CONTEXT_DIR: Final[str] = "artifacts"

_APT_CLEANUP: Final[str] = "rm -rf /var/lib/apt/lists/*"


def render_dockerfile(
    descriptor: ImageDescriptor,
    *,
    artifact_names: Sequence[str] = (),
    wheel_filename: str | None = None,
    launch_script_filename: str | None = None,
) -> str:
    """Render the Dockerfile text for ``descriptor``.

    Tool images copy ``artifact_names`` from ``artifacts/`` in the build
    context. Workstation images install ``wheel_filename`` and launch
    ``launch_script_filename``; both must be given for that kind.
    """

    if descriptor.kind is ImageKind.TOOL:
        lines = _render_tool(descriptor, artifact_names)
    else:
        if not wheel_filename or not launch_script_filename:
            raise ValueError("workstation images need a wheel and a launch script")
        lines = _render_workstation(descriptor, wheel_filename, launch_script_filename)
    return "\n".join(lines) + "\n"


def _render_tool(descriptor: ImageDescriptor, artifact_names: Sequence[str]) -> list[str]:
    lines = [f"FROM {descriptor.base_image}", "", "ENV DEBIAN_FRONTEND=noninteractive"]
    lines.extend(_apt_install(descriptor.system_packages))
    lines.extend(_env_lines(descriptor))
    lines.extend(_run_lines(descriptor.setup_commands))

    dest = descriptor.artifact_dest.rstrip("/") or "/"
    lines.append(f"RUN mkdir -p {shlex.quote(dest)}")
    for name in sorted(artifact_names):
        lines.append(f"COPY {ARTIFACTS_CONTEXT_DIR}/{name} {dest}/{name}")
    if artifact_names:
        lines.append(f"ENV PATH={dest}:$PATH")

    lines.extend(_directory_lines(descriptor.directories))
    if descriptor.workdir:
        lines.append(f"WORKDIR {descriptor.workdir}")
    if descriptor.command:
        lines.append(f"CMD {json.dumps(list(descriptor.command))}")
    return lines


def _render_workstation(
    descriptor: ImageDescriptor,
    wheel_filename: str,
    launch_script_filename: str,
) -> list[str]:
    lines = [f"FROM {descriptor.base_image}", ""]
    lines.extend(_apt_install(descriptor.system_packages))
    lines.extend(_env_lines(descriptor))

    conda_specs = list(descriptor.conda_packages)
    if descriptor.python_version:
        conda_specs.insert(0, f"python={descriptor.python_version}")
    if conda_specs:
        lines.append(f"RUN conda install -y {_join(conda_specs)} && conda clean -ya")
    if descriptor.pip_packages:
        lines.append(f"RUN pip3 install -U --no-cache-dir {_join(descriptor.pip_packages)}")
    lines.extend(_run_lines(descriptor.setup_commands))

    wheel_path = f"/tmp/{wheel_filename}"
    lines.append(f"COPY {wheel_filename} {wheel_path}")
    quoted = shlex.quote(wheel_path)
    lines.append(f"RUN pip3 install --no-cache-dir {quoted} && rm {quoted}")
    if descriptor.verify_import:
        lines.append(f'RUN python -c "import {descriptor.verify_import}"')

    script_dir = descriptor.launch_script_dest.rstrip("/") or "/"
    directories = tuple(dict.fromkeys((script_dir, *descriptor.directories)))
    lines.extend(_directory_lines(directories))
    lines.append(f"COPY {launch_script_filename} {script_dir}/{launch_script_filename}")
    if descriptor.workdir:
        lines.append(f"WORKDIR {descriptor.workdir}")
    if descriptor.command:
        lines.append(f"CMD {json.dumps(list(descriptor.command))}")
    else:
        lines.append(f"CMD /bin/bash {script_dir}/{launch_script_filename}")
    return lines


def _apt_install(packages: Sequence[str]) -> list[str]:
    if not packages:
        return []
    return [
        "RUN apt-get update && apt-get install -y --no-install-recommends "
        f"{_join(sorted(packages))} && {_APT_CLEANUP}"
    ]


def _env_lines(descriptor: ImageDescriptor) -> list[str]:
    return [f"ENV {key}={shlex.quote(value)}" for key, value in descriptor.env.items()]


def _run_lines(commands: Sequence[str]) -> list[str]:
    return [f"RUN {command}" for command in commands]


def _directory_lines(directories: Sequence[str]) -> list[str]:
    if not directories:
        return []
    return [f"RUN mkdir -p {_join(directories)}"]


def _join(values: Sequence[str]) -> str:
    return " ".join(shlex.quote(value) for value in values)


__all__ = ["ARTIFACTS_CONTEXT_DIR", "render_dockerfile"]
