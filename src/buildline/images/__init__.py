"""Image descriptors rendered into build contexts and built by a container engine."""

from buildline.images.assembler import ToolImageAssembler, WorkstationImageAssembler
from buildline.images.dockerfile import ARTIFACTS_CONTEXT_DIR, render_dockerfile

__all__ = [
    "ARTIFACTS_CONTEXT_DIR",
    "ToolImageAssembler",
    "WorkstationImageAssembler",
    "render_dockerfile",
]
