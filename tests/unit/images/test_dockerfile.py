"""Unit tests for Dockerfile rendering."""

from __future__ import annotations

import pytest

from buildline.domain.models import ImageDescriptor, ImageKind
from buildline.images import render_dockerfile

TOOL = ImageDescriptor(
    name="tool",
    kind=ImageKind.TOOL,
    tag="pgr-tk:latest",
    base_image="ubuntu:22.04",
    system_packages=("zlib1g", "libssl3"),
    artifacts=("*",),
    env={"TZ": "Etc/UTC"},
)

WORKSTATION = ImageDescriptor(
    name="workstation",
    kind=ImageKind.WORKSTATION,
    tag="pgr-tk-workstation:latest",
    base_image="continuumio/miniconda3:latest",
    system_packages=("samtools", "minimap2"),
    python_version="3.11",
    conda_packages=("jupyterlab", "networkx==2.4"),
    pip_packages=("papermill==2.3.4",),
    setup_commands=("apt-get update && apt-get install -y libstdc++6",),
    directories=("/wd",),
    verify_import="pgrtk",
)


def test_tool_image_copies_each_artifact_onto_runtime_base() -> None:
    text = render_dockerfile(TOOL, artifact_names=("pgr-query", "agc"))

    lines = text.splitlines()
    assert lines[0] == "FROM ubuntu:22.04"
    assert (
        "RUN apt-get update && apt-get install -y --no-install-recommends libssl3 zlib1g"
        " && rm -rf /var/lib/apt/lists/*"
    ) in lines
    assert "ENV TZ=Etc/UTC" in lines
    assert "RUN mkdir -p /software/bins" in lines
    copies = [line for line in lines if line.startswith("COPY ")]
    assert copies == [
        "COPY artifacts/agc /software/bins/agc",
        "COPY artifacts/pgr-query /software/bins/pgr-query",
    ]
    assert "ENV PATH=/software/bins:$PATH" in lines
    assert "cargo" not in text
    assert text.endswith("\n")


def test_tool_image_without_artifacts_has_no_copy_or_path() -> None:
    text = render_dockerfile(TOOL)

    assert "COPY" not in text
    assert "ENV PATH" not in text


def test_tool_image_command_is_json_exec_form() -> None:
    descriptor = ImageDescriptor(
        name="tool",
        kind=ImageKind.TOOL,
        tag="t",
        base_image="ubuntu:22.04",
        workdir="/data",
        command=("pgr-query", "--help"),
    )

    lines = render_dockerfile(descriptor).splitlines()

    assert lines[-2:] == ["WORKDIR /data", 'CMD ["pgr-query", "--help"]']


def test_workstation_installs_runtime_wheel_and_launch_script() -> None:
    text = render_dockerfile(
        WORKSTATION,
        wheel_filename="pgrtk-0.6.0-cp311-cp311-linux_x86_64.whl",
        launch_script_filename="jupyterlab.sh",
    )
    lines = text.splitlines()

    assert lines[0] == "FROM continuumio/miniconda3:latest"
    conda = lines.index(
        "RUN conda install -y python=3.11 jupyterlab networkx==2.4 && conda clean -ya"
    )
    pip = lines.index("RUN pip3 install -U --no-cache-dir papermill==2.3.4")
    setup = lines.index("RUN apt-get update && apt-get install -y libstdc++6")
    wheel_copy = lines.index(
        "COPY pgrtk-0.6.0-cp311-cp311-linux_x86_64.whl"
        " /tmp/pgrtk-0.6.0-cp311-cp311-linux_x86_64.whl"
    )
    assert conda < pip < setup < wheel_copy
    assert lines[wheel_copy + 1] == (
        "RUN pip3 install --no-cache-dir /tmp/pgrtk-0.6.0-cp311-cp311-linux_x86_64.whl"
        " && rm /tmp/pgrtk-0.6.0-cp311-cp311-linux_x86_64.whl"
    )
    assert 'RUN python -c "import pgrtk"' in lines
    assert "RUN mkdir -p /opt/bin /wd" in lines
    assert "COPY jupyterlab.sh /opt/bin/jupyterlab.sh" in lines
    assert lines[-1] == "CMD /bin/bash /opt/bin/jupyterlab.sh"


def test_workstation_requires_wheel_and_script() -> None:
    with pytest.raises(ValueError, match="wheel and a launch script"):
        render_dockerfile(WORKSTATION, wheel_filename="pgrtk-0.6.0-py3-none-any.whl")
