"""
buildline command-line interface.

File: src/buildline/ui/cli.py

Purpose
- Route ``buildline`` subcommands to the pipeline stages.
- Load configuration with CLI > env > file > defaults precedence.
- Render human-readable output or deterministic JSON (``--json``).

Functional requirements
- ``build`` exits 0 on success, 1 on a failed stage, 3 when provisioning fails.
- Configuration and graph errors exit 2 before any stage runs.
"""

from __future__ import annotations

import argparse
import json
import sys
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from buildline.config import (
    ConfigLoadError,
    ConfigValidationError,
    assert_valid_config,
    effective_config,
    load_config,
    parse_override,
    redact_config,
    resolve_pipeline_config,
)
from buildline.domain.models import BindingPackage
from buildline.errors import ProvisionError
from buildline.observability import correlation_scope, setup_logging
from buildline.pipeline import ToolImagePipeline, WorkstationPipeline
from buildline.toolchain import ToolchainProvisioner
from buildline.ui.render import (
    CLIRenderer,
    create_renderer,
    render_plan,
    render_report,
    render_toolchains,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from buildline.pipeline.runner import PipelineReport


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="buildline",
        description=(
            "buildline: toolchain provisioning, workspace builds, and container images.\n\n"
            "Common workflows:\n"
            "  buildline plan                     Show package order and artifact manifest\n"
            "  buildline provision                Install the pinned toolchains\n"
            "  buildline build                    Build everything and assemble the tool image\n"
            "  buildline workstation --wheel W    Assemble the workstation image\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to buildline TOML config (default: ./buildline.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name (strict, forgiving, debug, or custom).",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value, e.g. --set build.jobs=4. Repeatable.",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON instead of text.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # build ---------------------------------------------------------------
    build_parser_ = subparsers.add_parser(
        "build",
        parents=[common],
        help="Provision, compile, collect, and assemble the tool image",
        description=(
            "Run the full tool-image pipeline.\n\n"
            "Examples:\n"
            "  buildline build\n"
            "  buildline build --profile forgiving\n"
            "  buildline build --set images.engine=none --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    build_parser_.set_defaults(handler=_cmd_build)

    # provision -----------------------------------------------------------
    provision_parser = subparsers.add_parser(
        "provision",
        parents=[common],
        help="Install the configured toolchains (idempotent)",
        description=(
            "Install or verify every configured toolchain.\n\n"
            "Examples:\n"
            "  buildline provision\n"
            "  buildline provision --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    provision_parser.set_defaults(handler=_cmd_provision)

    # plan ----------------------------------------------------------------
    plan_parser = subparsers.add_parser(
        "plan",
        parents=[common],
        help="Show the package build order and the artifact manifest",
        description=(
            "Validate the package graph and artifact names without running anything.\n\n"
            "Examples:\n"
            "  buildline plan\n"
            "  buildline plan --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    plan_parser.set_defaults(handler=_cmd_plan)

    # workstation ---------------------------------------------------------
    workstation_parser = subparsers.add_parser(
        "workstation",
        parents=[common],
        help="Assemble the workstation image from a pre-built wheel",
        description=(
            "Assemble the interactive workstation image.\n\n"
            "Examples:\n"
            "  buildline workstation --wheel dist/pgrtk-0.6.0-cp311-linux_x86_64.whl \\\n"
            "      --launch-script scripts/start_jupyter.sh\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    workstation_parser.add_argument("--wheel", required=True, help="Binding wheel to install.")
    workstation_parser.add_argument(
        "--launch-script",
        required=True,
        help="Script copied into the image and used as its default command.",
    )
    workstation_parser.add_argument(
        "--skip-install-check",
        action="store_true",
        help="Do not dry-run the wheel against the image interpreter before assembly.",
    )
    workstation_parser.set_defaults(handler=_cmd_workstation)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration with secrets redacted",
        description=(
            "Show the merged configuration after profile, env, and --set overrides.\n\n"
            "Examples:\n"
            "  buildline config\n"
            "  buildline config --profile debug --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_build(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    pipeline_config = resolve_pipeline_config(config)
    pipeline = ToolImagePipeline(pipeline_config)
    try:
        pipeline.plan()
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    with _logging_session(config, pipeline=pipeline.name):
        report = pipeline.run()

    _emit_report(args, report)
    return _report_exit_code(report)


def _cmd_provision(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    pipeline_config = resolve_pipeline_config(config)
    provisioner = ToolchainProvisioner(timeout_seconds=pipeline_config.command_timeout_seconds)

    try:
        with _logging_session(config, pipeline="provision"):
            environment = provisioner.provision_all(pipeline_config.toolchains)
    except ProvisionError as exc:
        raise CLIError(str(exc), exit_code=3) from exc

    versions = environment.versions()
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "provision",
                "toolchains": versions,
                "changed": [item.name for item in environment.toolchains if item.changed],
            }
        )
        return 0

    render_toolchains(_get_renderer(args), versions)
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    pipeline_config = resolve_pipeline_config(config)
    try:
        order, manifest = ToolImagePipeline(pipeline_config).plan()
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if _flag(args, "json"):
        _emit_json({"command": "plan", "order": list(order), "manifest": manifest.to_dict()})
        return 0

    render_plan(_get_renderer(args), order, manifest)
    return 0


def _cmd_workstation(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    pipeline_config = resolve_pipeline_config(config)
    if pipeline_config.workstation_image is None:
        raise CLIError("no workstation image is configured under [images.workstation]", exit_code=2)
    if _flag(args, "skip_install_check"):
        pipeline_config = replace(
            pipeline_config,
            workstation_image=replace(pipeline_config.workstation_image, check_install=False),
        )
    try:
        binding = BindingPackage.from_wheel(_require_str(args.wheel, "wheel"))
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    launch_script = Path(_require_str(args.launch_script, "launch_script")).expanduser()

    pipeline = WorkstationPipeline(pipeline_config)
    with _logging_session(config, pipeline=pipeline.name):
        report = pipeline.run(binding, launch_script)

    _emit_report(args, report)
    return _report_exit_code(report)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    payload = {
        "command": "config",
        "active_profile": _optional_str(getattr(args, "profile", None)),
        "config": redact_config(effective_config(config)),
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.heading("Effective configuration")
    renderer.kv("Active profile", payload["active_profile"] or "(none)")
    renderer.blank()
    renderer.text(json.dumps(payload["config"], indent=2, sort_keys=True))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: object) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _emit_report(args: argparse.Namespace, report: PipelineReport) -> None:
    if _flag(args, "json"):
        _emit_json({"command": args.command, "report": report.to_dict()})
        return
    render_report(_get_renderer(args), report)


def _report_exit_code(report: PipelineReport) -> int:
    if report.ok:
        return 0
    if isinstance(report.error, ProvisionError):
        return 3
    return report.exit_code


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    """Retrieve or create a CLI renderer from the parsed namespace."""

    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        overrides = dict(parse_override(raw) for raw in _string_sequence(args.overrides))
        loaded = load_config(config_path, profile=profile, cli_overrides=overrides)
        validated = assert_valid_config(loaded, active_profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    return {key: value for key, value in validated.items()}


@contextmanager
def _logging_session(config: dict[str, Any], *, pipeline: str) -> Iterator[str]:
    """Configure run logging for one command and tear it down afterwards."""

    run_id = _new_run_id()
    handle = setup_logging(config.get("observability"), run_id=run_id)
    try:
        with correlation_scope(run_id=run_id, pipeline=pipeline):
            structlog.get_logger(__name__).info(
                "command_started", command=pipeline, log_path=str(handle.log_path)
            )
            yield run_id
    finally:
        handle.shutdown()


def _new_run_id() -> str:
    stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    cleaned = value.strip()
    return cleaned or None


def _require_str(value: object, name: str) -> str:
    cleaned = _optional_str(value)
    if cleaned is None:
        raise CLIError(f"missing required argument: {name}", exit_code=2)
    return cleaned


def _flag(args: argparse.Namespace, name: str) -> bool:
    value = getattr(args, name, False)
    return bool(value)


def _string_sequence(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        cleaned = value.strip()
        return () if not cleaned else (cleaned,)
    if not isinstance(value, (list, tuple)):
        raise CLIError("invalid sequence argument", exit_code=2)

    parsed: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise CLIError("invalid sequence argument", exit_code=2)
        cleaned = item.strip()
        if cleaned:
            parsed.append(cleaned)
    return tuple(parsed)


__all__ = ["CLIError", "build_parser", "run_cli"]
