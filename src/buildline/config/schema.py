"""
buildline — configuration schema and validation.

File: src/buildline/config/schema.py

Purpose
- Built-in defaults for every table in ``buildline.toml`` and the rules a
  loaded document must satisfy.

What should be included in this file
- Table-by-table validators that collect issues as ``(dotted.path, message)``.
- Cross-table checks: workspace dependency cycles and colliding artifact names.
- The strict/forgiving/debug profile overlays and the deep-merge they rely on.
- Masking of secret-looking keys before config reaches logs or stdout.

Functional requirements
- Report every issue in one pass instead of stopping at the first.
- Walk tables in sorted key order so issue lists are stable between runs.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from buildline.build.graph import CycleError, PackageGraph
from buildline.constants import CONFIG_SCHEMA_VERSION, CONTAINER_ENGINES
from buildline.utils.hashing import normalize_checksum

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "forgiving", "debug")

BUILD_PROFILES: Final[tuple[str, ...]] = ("release", "debug")
FAILURE_POLICIES: Final[tuple[str, ...]] = ("fatal", "best-effort")
TOOLCHAIN_KINDS: Final[tuple[str, ...]] = ("rustup", "system")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_ENTRY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CAMEL_HUMP = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SEPARATORS = re.compile(r"[^a-z0-9]+")

_REDACTED: Final[str] = "<redacted>"
# Whole words after snake-casing the key.
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"apikey", "auth", "credential", "credentials", "passwd", "password", "private", "token"}
)
# Matched anywhere in the snake-cased key.
_SECRET_FRAGMENTS: Final[tuple[str, ...]] = (
    "access_token",
    "api_key",
    "client_secret",
    "password",
    "private_key",
    "secret",
)

# Resolved against the directory holding buildline.toml.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "install_root"),
    ("paths", "workspace_root"),
    ("paths", "artifact_dir"),
    ("paths", "image_context_dir"),
    ("observability", "log_dir"),
)
# Path fields inside named tables: (table, field).
NAMED_PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = (
    ("toolchains", "root"),
    ("external_modules", "source_dir"),
)

_TOOLCHAIN_KEYS: Final[frozenset[str]] = frozenset(
    {
        "kind",
        "version",
        "root",
        "installer_url",
        "checksum",
        "packages",
        "extra_tools",
        "verify_commands",
        "env",
    }
)
_PACKAGE_KEYS: Final[frozenset[str]] = frozenset(
    {"path", "depends_on", "artifacts", "discover_bins"}
)
_MODULE_KEYS: Final[frozenset[str]] = frozenset(
    {"source_dir", "artifact", "artifact_path", "command", "policy"}
)
_IMAGE_COMMON_KEYS: Final[frozenset[str]] = frozenset(
    {
        "name",
        "tag",
        "base_image",
        "system_packages",
        "env",
        "workdir",
        "command",
        "setup_commands",
        "directories",
    }
)
_TOOL_IMAGE_KEYS: Final[frozenset[str]] = _IMAGE_COMMON_KEYS | {"artifacts", "artifact_dest"}
_WORKSTATION_IMAGE_KEYS: Final[frozenset[str]] = _IMAGE_COMMON_KEYS | {
    "python_version",
    "conda_packages",
    "pip_packages",
    "launch_script_dest",
    "verify_import",
    "check_install",
    "wheel_platforms",
}


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    install_root: str
    workspace_root: str
    artifact_dir: str
    image_context_dir: str


class BuildConfig(TypedDict):
    profile: Literal["release", "debug"]
    jobs: int
    parallel_builders: bool
    locked: bool
    command_timeout_seconds: float
    default_external_policy: Literal["fatal", "best-effort"]


class ToolchainSettings(TypedDict, total=False):
    kind: Literal["rustup", "system"]
    version: str
    root: str
    installer_url: str
    checksum: str
    packages: list[str]
    extra_tools: list[str]
    verify_commands: list[list[str]]
    env: dict[str, str]


class PackageSettings(TypedDict, total=False):
    path: str
    depends_on: list[str]
    artifacts: list[str]
    discover_bins: bool


class WorkspaceConfig(TypedDict):
    packages: dict[str, PackageSettings]


class ExternalModuleSettings(TypedDict, total=False):
    source_dir: str
    artifact: str
    artifact_path: str
    command: list[str]
    policy: Literal["fatal", "best-effort"]


class ImagesConfig(TypedDict):
    engine: Literal["docker", "podman", "none"]
    tool: NotRequired[dict[str, object]]
    workstation: NotRequired[dict[str, object]]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    paths: dict[str, object]
    build: dict[str, object]
    images: dict[str, object]
    observability: dict[str, object]


class BuildlineConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    build: BuildConfig
    toolchains: dict[str, ToolchainSettings]
    workspace: WorkspaceConfig
    external_modules: dict[str, ExternalModuleSettings]
    images: ImagesConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[BuildlineConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "paths": {
        "install_root": ".buildline/toolchains",
        "workspace_root": ".",
        "artifact_dir": ".buildline/artifacts",
        "image_context_dir": ".buildline/images",
    },
    "build": {
        "profile": "release",
        "jobs": 1,
        "parallel_builders": True,
        "locked": True,
        "command_timeout_seconds": 3600.0,
        "default_external_policy": "fatal",
    },
    "toolchains": {},
    "workspace": {
        "packages": {},
    },
    "external_modules": {},
    "images": {
        "engine": "docker",
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": ".buildline/logs",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "build": {"default_external_policy": "fatal"},
        },
        "forgiving": {
            "build": {"default_external_policy": "best-effort"},
        },
        "debug": {
            "build": {"profile": "debug"},
            "observability": {"log_level": "DEBUG"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One problem in a config document, addressed by dotted path."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return not self.issues and self.config is not None


class ConfigValidationError(ValueError):
    """A config document failed validation; ``issues`` lists every problem found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "- <root>: rejected"))

    @classmethod
    def single(cls, path: str, message: str) -> ConfigValidationError:
        return cls((ConfigValidationIssue(path, message),))


class _IssueCollector:
    __slots__ = ("_found",)

    def __init__(self) -> None:
        self._found: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._found.append(ConfigValidationIssue(path, message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._found)

    @property
    def has_issues(self) -> bool:
        return len(self._found) > 0


def default_config() -> BuildlineConfig:
    """Fresh copy of the built-in defaults; callers may mutate it freely."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Say which side needs upgrading when ``meta.schema_version`` differs from ours."""

    if found_version == ConfigSchemaVersion:
        return "schema version is current"
    if found_version < ConfigSchemaVersion:
        relation, remedy = "older", "upgrade buildline.toml to the current schema"
    else:
        relation, remedy = "newer", "upgrade the buildline runtime"
    return (
        f"schema version {found_version} is {relation} than supported "
        f"{ConfigSchemaVersion}; {remedy}"
    )


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Merge ``overlay`` onto a copy of ``base``.

    Tables merge key by key; any other value in ``overlay`` (lists included)
    replaces what ``base`` had.
    """

    merged = _deep_copy_mapping(base)
    for key in sorted(overlay):
        incoming = overlay[key]
        if not isinstance(incoming, Mapping):
            merged[key] = _deep_copy_value(incoming)
            continue
        current = merged.get(key)
        merged[key] = merge_config(current if isinstance(current, Mapping) else {}, incoming)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge ``profiles.<profile>`` over ``config`` and validate the result."""

    materialized = _deep_copy_mapping(config)
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles = materialized.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError.single("profiles", "profiles section is required")
    if selected not in profiles:
        raise ConfigValidationError.single("profiles", f"profile {selected!r} is not defined")
    overlay = profiles[selected]
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError.single(
            f"profiles.{selected}", "profile overlay must be an object"
        )
    return assert_valid_config(merge_config(materialized, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check a whole config document, gathering every issue instead of stopping early."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    normalized = _validate_root(root, issues) if root is not None else None

    wanted = active_profile.strip() if isinstance(active_profile, str) else ""
    if normalized is not None and wanted:
        defined = normalized.get("profiles")
        if not isinstance(defined, Mapping) or wanted not in defined:
            issues.add("profiles", f"profile {wanted!r} is not defined")

    if issues.has_issues:
        normalized = None
    return ConfigValidationResult(config=normalized, issues=issues.items())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Like :func:`validate_config` but returns the normalized mapping or raises."""

    outcome = validate_config(config, active_profile=active_profile)
    if outcome.config is None:
        raise ConfigValidationError(outcome.issues)
    return outcome.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking keys masked, for logs and ``config`` output."""

    if not isinstance(config, Mapping):
        return {}
    return _redact_mapping(config)


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    sections: dict[str, Callable[[dict[str, object], str], dict[str, Any]]] = {
        "meta": lambda section, path: _validate_meta(section, path, issues),
        "paths": lambda section, path: _validate_paths(section, path, issues, partial=False),
        "build": lambda section, path: _validate_build(section, path, issues, partial=False),
        "toolchains": lambda section, path: _validate_named_table(
            section, path, issues, _validate_toolchain
        ),
        "workspace": lambda section, path: _validate_workspace(section, path, issues),
        "external_modules": lambda section, path: _validate_named_table(
            section, path, issues, _validate_external_module
        ),
        "images": lambda section, path: _validate_images(section, path, issues, partial=False),
        "observability": lambda section, path: _validate_observability(
            section, path, issues, partial=False
        ),
        "profiles": lambda section, path: _validate_profiles(section, path, issues),
    }
    _reject_unknown_keys(payload, set(sections), "", issues)
    _require_keys(payload, set(sections) - {"profiles"}, "", issues)

    out: dict[str, Any] = {}
    for key, validator in sections.items():
        _section(payload, key=key, path="", issues=issues, validator=validator, out=out)

    _validate_cross_fields(out, issues)
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    path: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str], dict[str, Any]],
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_path = _join(path, key)
    section_obj = _as_object(raw, section_path, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, section_path)


def _validate_meta(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_paths(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"install_root", "workspace_root", "artifact_dir", "image_context_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_build(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {
        "profile",
        "jobs",
        "parallel_builders",
        "locked",
        "command_timeout_seconds",
        "default_external_policy",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "profile" in payload:
        parsed_profile = _as_enum(
            payload["profile"], _join(path, "profile"), issues, allowed_values=BUILD_PROFILES
        )
        if parsed_profile is not None:
            out["profile"] = parsed_profile

    if "jobs" in payload:
        parsed_jobs = _as_int(payload["jobs"], _join(path, "jobs"), issues, minimum=1)
        if parsed_jobs is not None:
            out["jobs"] = parsed_jobs

    for key in ("parallel_builders", "locked"):
        if key in payload:
            parsed_flag = _as_bool(payload[key], _join(path, key), issues)
            if parsed_flag is not None:
                out[key] = parsed_flag

    if "command_timeout_seconds" in payload:
        timeout_path = _join(path, "command_timeout_seconds")
        parsed_timeout = _as_float(payload["command_timeout_seconds"], timeout_path, issues)
        if parsed_timeout is not None:
            if parsed_timeout <= 0:
                issues.add(timeout_path, "must be > 0")
            else:
                out["command_timeout_seconds"] = parsed_timeout

    if "default_external_policy" in payload:
        parsed_policy = _as_enum(
            payload["default_external_policy"],
            _join(path, "default_external_policy"),
            issues,
            allowed_values=FAILURE_POLICIES,
        )
        if parsed_policy is not None:
            out["default_external_policy"] = parsed_policy
    return out


def _validate_named_table(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]],
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(payload):
        entry_path = _join(path, name)
        if not _ENTRY_NAME_PATTERN.fullmatch(name):
            issues.add(entry_path, "name must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
            continue
        entry = _as_object(payload[name], entry_path, issues)
        if entry is None:
            continue
        out[name] = validator(entry, entry_path, issues)
    return out


def _validate_toolchain(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_TOOLCHAIN_KEYS), path, issues)
    _require_keys(payload, {"kind", "version"}, path, issues)

    out: dict[str, Any] = {}
    if "kind" in payload:
        parsed_kind = _as_enum(
            payload["kind"], _join(path, "kind"), issues, allowed_values=TOOLCHAIN_KINDS
        )
        if parsed_kind is not None:
            out["kind"] = parsed_kind

    for key in ("version", "installer_url"):
        if key in payload:
            parsed = _as_str(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed

    if "installer_url" in out and not out["installer_url"].startswith("https://"):
        issues.add(_join(path, "installer_url"), "installer must be fetched over https")

    if "root" in payload:
        parsed_root = _as_path_text(payload["root"], _join(path, "root"), issues)
        if parsed_root is not None:
            out["root"] = parsed_root

    if "checksum" in payload:
        checksum_path = _join(path, "checksum")
        parsed_checksum = _as_str(payload["checksum"], checksum_path, issues)
        if parsed_checksum is not None:
            try:
                out["checksum"] = normalize_checksum(parsed_checksum)
            except ValueError as exc:
                issues.add(checksum_path, str(exc))

    for key in ("packages", "extra_tools"):
        if key in payload:
            parsed_list = _as_str_list(payload[key], _join(path, key), issues)
            if parsed_list is not None:
                out[key] = parsed_list

    if "verify_commands" in payload:
        commands_path = _join(path, "verify_commands")
        raw_commands = payload["verify_commands"]
        if not isinstance(raw_commands, list):
            issues.add(commands_path, f"expected array, got {type(raw_commands).__name__}")
        else:
            commands: list[list[str]] = []
            for index, raw_command in enumerate(raw_commands):
                parsed_command = _as_command(raw_command, f"{commands_path}[{index}]", issues)
                if parsed_command is not None:
                    commands.append(parsed_command)
            out["verify_commands"] = commands

    if "env" in payload:
        parsed_env = _as_env_mapping(payload["env"], _join(path, "env"), issues)
        if parsed_env is not None:
            out["env"] = parsed_env

    if out.get("kind") == "system" and not out.get("packages") and not out.get("verify_commands"):
        issues.add(path, "system toolchains need packages or verify_commands")
    return out


def _validate_workspace(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"packages"}, path, issues)
    out: dict[str, Any] = {"packages": {}}
    raw_packages = payload.get("packages")
    if raw_packages is None:
        return out
    packages_path = _join(path, "packages")
    packages = _as_object(raw_packages, packages_path, issues)
    if packages is not None:
        out["packages"] = _validate_named_table(packages, packages_path, issues, _validate_package)
    return out


def _validate_package(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_PACKAGE_KEYS), path, issues)
    _require_keys(payload, {"path"}, path, issues)

    out: dict[str, Any] = {}
    if "path" in payload:
        parsed_path = _as_relative_path(payload["path"], _join(path, "path"), issues)
        if parsed_path is not None:
            out["path"] = parsed_path

    if "depends_on" in payload:
        parsed_deps = _as_str_list(payload["depends_on"], _join(path, "depends_on"), issues)
        if parsed_deps is not None:
            out["depends_on"] = parsed_deps

    if "artifacts" in payload:
        artifacts_path = _join(path, "artifacts")
        parsed_artifacts = _as_str_list(payload["artifacts"], artifacts_path, issues)
        if parsed_artifacts is not None:
            for name in parsed_artifacts:
                _check_artifact_name(name, artifacts_path, issues)
            out["artifacts"] = parsed_artifacts

    if "discover_bins" in payload:
        parsed_discover = _as_bool(payload["discover_bins"], _join(path, "discover_bins"), issues)
        if parsed_discover is not None:
            out["discover_bins"] = parsed_discover
    return out


def _validate_external_module(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_MODULE_KEYS), path, issues)
    _require_keys(payload, {"source_dir", "artifact", "artifact_path"}, path, issues)

    out: dict[str, Any] = {}
    if "source_dir" in payload:
        parsed_source = _as_path_text(payload["source_dir"], _join(path, "source_dir"), issues)
        if parsed_source is not None:
            out["source_dir"] = parsed_source

    if "artifact" in payload:
        parsed_artifact = _as_str(payload["artifact"], _join(path, "artifact"), issues)
        if parsed_artifact is not None and _check_artifact_name(
            parsed_artifact, _join(path, "artifact"), issues
        ):
            out["artifact"] = parsed_artifact

    if "artifact_path" in payload:
        parsed_artifact_path = _as_relative_path(
            payload["artifact_path"], _join(path, "artifact_path"), issues
        )
        if parsed_artifact_path is not None:
            out["artifact_path"] = parsed_artifact_path

    if "command" in payload:
        parsed_command = _as_command(payload["command"], _join(path, "command"), issues)
        if parsed_command is not None:
            out["command"] = parsed_command

    if "policy" in payload:
        parsed_policy = _as_enum(
            payload["policy"], _join(path, "policy"), issues, allowed_values=FAILURE_POLICIES
        )
        if parsed_policy is not None:
            out["policy"] = parsed_policy
    return out


def _validate_images(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"engine", "tool", "workstation"}, path, issues)
    if not partial:
        _require_keys(payload, {"engine"}, path, issues)

    out: dict[str, Any] = {}
    if "engine" in payload:
        parsed_engine = _as_enum(
            payload["engine"], _join(path, "engine"), issues, allowed_values=CONTAINER_ENGINES
        )
        if parsed_engine is not None:
            out["engine"] = parsed_engine

    for key, allowed in (("tool", _TOOL_IMAGE_KEYS), ("workstation", _WORKSTATION_IMAGE_KEYS)):
        raw = payload.get(key)
        if raw is None:
            continue
        image_path = _join(path, key)
        image = _as_object(raw, image_path, issues)
        if image is not None:
            out[key] = _validate_image(image, image_path, issues, allowed=allowed, partial=partial)
    return out


def _validate_image(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    allowed: frozenset[str],
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(allowed), path, issues)
    if not partial:
        _require_keys(payload, {"tag"}, path, issues)

    out: dict[str, Any] = {}
    for key in (
        "name",
        "tag",
        "base_image",
        "workdir",
        "artifact_dest",
        "launch_script_dest",
        "python_version",
        "verify_import",
    ):
        if key in payload:
            parsed = _as_str(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed

    if "name" in out and not _ENTRY_NAME_PATTERN.fullmatch(out["name"]):
        issues.add(_join(path, "name"), "name must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
    for key in ("artifact_dest", "launch_script_dest"):
        if key in out and not out[key].startswith("/"):
            issues.add(_join(path, key), "must be an absolute path inside the image")

    for key in (
        "system_packages",
        "artifacts",
        "setup_commands",
        "directories",
        "conda_packages",
        "pip_packages",
        "wheel_platforms",
    ):
        if key in payload:
            parsed_list = _as_str_list(payload[key], _join(path, key), issues)
            if parsed_list is not None:
                out[key] = parsed_list

    if "command" in payload:
        parsed_command = _as_command(payload["command"], _join(path, "command"), issues)
        if parsed_command is not None:
            out["command"] = parsed_command

    if "check_install" in payload:
        parsed_check = _as_bool(payload["check_install"], _join(path, "check_install"), issues)
        if parsed_check is not None:
            out["check_install"] = parsed_check

    if "env" in payload:
        parsed_env = _as_env_mapping(payload["env"], _join(path, "env"), issues)
        if parsed_env is not None:
            out["env"] = parsed_env
    return out


def _validate_observability(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "log_dir", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_log_level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        )
        if parsed_log_level is not None:
            out["log_level"] = parsed_log_level

    if "log_format" in payload:
        parsed_log_format = _as_enum(
            payload["log_format"],
            _join(path, "log_format"),
            issues,
            allowed_values=("json", "text"),
        )
        if parsed_log_format is not None:
            out["log_format"] = parsed_log_format

    if "log_dir" in payload:
        parsed_log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_log_dir is not None:
            out["log_dir"] = parsed_log_dir

    for key in ("log_to_stdout", "redact_secrets"):
        if key in payload:
            parsed_flag = _as_bool(payload[key], _join(path, key), issues)
            if parsed_flag is not None:
                out[key] = parsed_flag
    return out


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        out[profile_name] = _validate_profile_overlay(profile_obj, profile_path, issues)
    return out


def _validate_profile_overlay(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    validators: dict[str, Callable[[dict[str, object], str], dict[str, Any]]] = {
        "paths": lambda section, section_path: _validate_paths(
            section, section_path, issues, partial=True
        ),
        "build": lambda section, section_path: _validate_build(
            section, section_path, issues, partial=True
        ),
        "images": lambda section, section_path: _validate_images(
            section, section_path, issues, partial=True
        ),
        "observability": lambda section, section_path: _validate_observability(
            section, section_path, issues, partial=True
        ),
    }
    _reject_unknown_keys(payload, set(validators), path, issues)

    out: dict[str, Any] = {}
    for section in sorted(validators):
        _section(
            payload,
            key=section,
            path=path,
            issues=issues,
            validator=validators[section],
            out=out,
        )
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    packages = config.get("workspace", {}).get("packages", {})
    graph = PackageGraph(nodes=packages)
    for name in sorted(packages):
        for dependency in packages[name].get("depends_on", ()):
            if dependency not in packages:
                issues.add(
                    f"workspace.packages.{name}.depends_on",
                    f"depends on undeclared package {dependency!r}",
                )
                continue
            graph.add_edge(dependency, name)
    try:
        graph.topological_sort()
    except CycleError as exc:
        issues.add("workspace.packages", str(exc))

    producers: dict[str, list[str]] = {}
    for name in sorted(packages):
        for artifact in packages[name].get("artifacts", ()):
            producers.setdefault(artifact, []).append(f"workspace.packages.{name}")
    modules = config.get("external_modules", {})
    for name in sorted(modules):
        artifact = modules[name].get("artifact")
        if isinstance(artifact, str):
            producers.setdefault(artifact, []).append(f"external_modules.{name}")
    for artifact, owners in sorted(producers.items()):
        if len(owners) > 1:
            issues.add(
                owners[-1],
                f"artifact {artifact!r} is already produced by {', '.join(owners[:-1])}",
            )


def _check_artifact_name(name: str, path: str, issues: _IssueCollector) -> bool:
    if name == "*" or "/" in name or "\\" in name or name in {".", ".."}:
        issues.add(path, f"artifact name {name!r} must be a plain file name")
        return False
    return True


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, list):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_command(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    parsed = _as_str_list(value, path, issues)
    if parsed is None:
        return None
    if not parsed:
        issues.add(path, "command must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_relative_path(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_path_text(value, path, issues)
    if parsed is None:
        return None
    if parsed.startswith("/") or ".." in parsed.replace("\\", "/").split("/"):
        issues.add(path, "must be a relative path without '..' segments")
        return None
    return parsed


def _as_env_mapping(value: object, path: str, issues: _IssueCollector) -> dict[str, str] | None:
    mapping = _as_object(value, path, issues)
    if mapping is None:
        return None
    out: dict[str, str] = {}
    for key in sorted(mapping):
        key_path = _join(path, key)
        if not _ENV_NAME_PATTERN.fullmatch(key):
            issues.add(key_path, "must be an env var name (example: CARGO_TERM_COLOR)")
            continue
        item = mapping[key]
        if not isinstance(item, str):
            issues.add(key_path, f"expected string, got {type(item).__name__}")
            continue
        out[key] = item
    return out


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; pass credentials through the environment",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    snake = _SEPARATORS.sub("_", _CAMEL_HUMP.sub("_", key.strip()).lower()).strip("_")
    if any(fragment in snake for fragment in _SECRET_FRAGMENTS):
        return True
    return not _SECRET_WORDS.isdisjoint(snake.split("_"))


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        copied = [_deep_copy_value(item) for item in value]
        return copied if isinstance(value, list) else tuple(copied)
    return copy.deepcopy(value)


def _redact_mapping(mapping: Mapping[str, object]) -> dict[str, Any]:
    return {
        key: _REDACTED if _looks_sensitive_key(key) else _redact_value(mapping[key])
        for key in sorted(mapping)
    }


def _redact_value(value: object) -> object:
    if isinstance(value, Mapping):
        return _redact_mapping(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item) for item in value]
    return value


__all__ = [
    "BUILD_PROFILES",
    "BUILTIN_PROFILE_NAMES",
    "BuildlineConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "FAILURE_POLICIES",
    "NAMED_PATH_FIELDS",
    "PATH_FIELDS",
    "ProfileOverlay",
    "TOOLCHAIN_KINDS",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
