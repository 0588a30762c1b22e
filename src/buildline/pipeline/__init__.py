"""Stage ordering and run reports for the tool and workstation pipelines."""

from buildline.pipeline.runner import (
    COLLECT_STEP,
    PipelineReport,
    ToolImagePipeline,
    WorkstationPipeline,
    write_report,
)

__all__ = [
    "COLLECT_STEP",
    "PipelineReport",
    "ToolImagePipeline",
    "WorkstationPipeline",
    "write_report",
]
