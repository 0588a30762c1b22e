"""Output rendering for the buildline CLI.

File: src/buildline/ui/render.py

Purpose
- Human-readable views of pipeline reports, build plans, and provisioned
  toolchains; ``--json`` output bypasses this module entirely.

Functional requirements
- Output is plain text; ANSI color is added only on a TTY and never when
  ``NO_COLOR`` or ``--no-color`` is set.
- Step outcomes render in execution order so failures read top-down.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final

from buildline.domain.models import StepOutcome

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from buildline.artifacts.manifest import ArtifactManifest
    from buildline.pipeline.runner import PipelineReport

_OUTCOME_STYLE: Final[dict[StepOutcome, tuple[str, str | None]]] = {
    StepOutcome.SUCCESS: ("ok", "32"),
    StepOutcome.FAILED_FATAL: ("FAILED", "31"),
    StepOutcome.FAILED_TOLERATED: ("failed (tolerated)", "33"),
    StepOutcome.SKIPPED: ("skipped", None),
}
_INDENT: Final[str] = "  "


def _wants_color(disabled: bool) -> bool:
    if disabled or os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


class CLIRenderer:
    """Writes CLI views to stdout, one ``print`` per line."""

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _wants_color(no_color)

    def heading(self, text: str) -> None:
        print(text)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def blank(self) -> None:
        print()

    def block(self, title: str, lines: Iterable[str] = ()) -> None:
        """Blank line, ``title``, then each of ``lines`` indented."""

        print(f"\n{title}")
        for line in lines:
            print(f"{_INDENT}{line}")

    def table(self, title: str, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
        """Column-aligned table under ``title``; nothing is printed for zero rows."""

        if not rows:
            return
        widths = [max(len(cell) for cell in column) for column in zip(headers, *rows)]
        divider = tuple("-" * width for width in widths)
        self.block(
            title,
            (
                "  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip()
                for row in (tuple(headers), divider, *rows)
            ),
        )

    def outcome(self, outcome: StepOutcome) -> str:
        label, ansi = _OUTCOME_STYLE[outcome]
        if self._color and ansi is not None:
            return f"\033[{ansi}m{label}\033[0m"
        return label


def render_report(renderer: CLIRenderer, report: PipelineReport) -> None:
    """Steps, collected artifacts, the image, then any errors."""

    renderer.heading(f"Pipeline: {report.pipeline}")
    renderer.kv("Status", "succeeded" if report.ok else "failed")
    if report.toolchains:
        pinned = (f"{name}={version}" for name, version in sorted(report.toolchains.items()))
        renderer.kv("Toolchains", ", ".join(pinned))

    renderer.table(
        "Steps:",
        ("STEP", "KIND", "OUTCOME", "DURATION"),
        [
            (step.step, step.kind.value, renderer.outcome(step.outcome), f"{step.duration_ms}ms")
            for step in report.steps
        ],
    )

    collected = report.artifact_set
    if collected is not None:
        lines = [f"- {name} <- {item.producer}" for name, item in collected.entries.items()]
        lines += [
            f"Warning: artifact {name!r} omitted (best-effort producer did not deliver)"
            for name in collected.omitted
        ]
        renderer.block("Artifacts:", lines)

    image = report.image
    if image is not None:
        lines = [
            f"Tag: {image.tag}",
            f"Context: {image.context_dir}",
            f"Built: {'yes' if image.built else 'no (context only)'}",
        ]
        lines += [f"Warning: image is degraded: {name!r} is not included" for name in image.omitted]
        renderer.block("Image:", lines)

    if report.errors:
        renderer.block("Errors:")
        for error in report.errors:
            renderer.text(f"{_INDENT}FAIL  [{error.stage}] {error}")
            stderr = getattr(error, "stderr", "")
            if renderer.verbose and isinstance(stderr, str) and stderr.strip():
                renderer.text(stderr.rstrip())


def render_plan(
    renderer: CLIRenderer,
    order: Sequence[str],
    manifest: ArtifactManifest,
) -> None:
    renderer.heading("Build plan")
    renderer.block("Package order:", (f"{index}. {name}" for index, name in enumerate(order, 1)))
    renderer.table(
        "Artifacts:",
        ("ARTIFACT", "PRODUCER", "POLICY", "SOURCE"),
        [
            (entry.name, entry.producer, entry.policy.value, str(entry.source_path))
            for entry in manifest
        ],
    )


def render_toolchains(renderer: CLIRenderer, versions: Mapping[str, str]) -> None:
    renderer.heading("Toolchains")
    if not versions:
        renderer.text(f"{_INDENT}(none configured)")
    for name, version in sorted(versions.items()):
        renderer.text(f"{_INDENT}OK  {name} {version}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer", "render_plan", "render_report", "render_toolchains"]
