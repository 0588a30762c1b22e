"""
buildline — runtime config loader.

File: src/buildline/config/loader.py

Purpose
- Layer defaults, ``buildline.toml``, ``BUILDLINE_*`` environment variables and
  ``--set`` overrides into one validated mapping.

What should be included in this file
- Precedence: CLI > env > file > defaults, with an optional profile overlay
  applied on top of the file and below env/CLI.
- Environment names derived from scalar config paths
  (``build.jobs`` -> ``BUILDLINE_BUILD_JOBS``), coerced to the type already
  present at that path.
- Path fields resolved against the directory holding the config file.

Functional requirements
- Every layer is re-validated so an override can never smuggle in a bad value.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from buildline.config.schema import (
    NAMED_PATH_FIELDS,
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "buildline.toml"
ENV_PREFIX: Final[str] = "BUILDLINE_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Optional tables absent from the defaults still get env names.
_OPTIONAL_ENV_PATHS: Final[tuple[tuple[str, ...], ...]] = (
    ("images", "tool", "tag"),
    ("images", "tool", "base_image"),
    ("images", "workstation", "tag"),
    ("images", "workstation", "base_image"),
)

ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the effective config: CLI > env > profile > file > defaults."""

    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    path = _config_file(config_path)

    config = merge_config(default_config(), _read_toml(path, required=config_path is not None))
    config = assert_valid_config(config)

    selected = _select_profile(profile, overrides, env)
    if selected is not None:
        config = apply_profile_overlay(config, selected)

    env_layer = _env_layer(config, env)
    cli_layer = _cli_layer(config, overrides)
    config = merge_config(merge_config(config, env_layer), cli_layer)
    config = assert_valid_config(config, active_profile=selected)

    return assert_valid_config(
        normalize_paths(config, base_dir=path.parent), active_profile=selected
    )


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve every path field against ``base_dir``; env vars and ``~`` are expanded."""

    resolved = merge_config({}, config)
    for path in _path_fields(resolved):
        raw = _lookup(resolved, path)
        if isinstance(raw, str):
            candidate = Path(os.path.expandvars(raw)).expanduser()
            _assign(resolved, path, Path(os.path.normpath(base_dir / candidate)).as_posix())
    return resolved


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` that is safe to print or log."""

    return redact_config(config)


def dump_effective_config(config: Mapping[str, object], *, indent: int | None = None) -> str:
    return json.dumps(
        effective_config(config),
        sort_keys=True,
        indent=indent,
        separators=(",", ":") if indent is None else (",", ": "),
        ensure_ascii=False,
    )


def parse_override(raw: str) -> tuple[str, object]:
    """Parse a ``key=value`` CLI override; the value is read as a TOML literal when possible."""

    key, separator, value = raw.partition("=")
    key = key.strip()
    if not separator or not key:
        raise ConfigLoadError(f"override must look like key=value, got {raw!r}")
    try:
        parsed = tomllib.loads(f"value = {value.strip()}")["value"]
    except tomllib.TOMLDecodeError:
        parsed = value.strip()
    return key, parsed


def env_name(path: ConfigPath) -> str:
    """Environment variable bound to a config path."""

    return ENV_PREFIX + "_".join(part.upper().replace("-", "_").replace(".", "_") for part in path)


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, overrides: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    if explicit is not None:
        candidate: object = explicit
    elif "profile" in overrides:
        candidate = overrides["profile"]
        if not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    else:
        candidate = env.get(f"{ENV_PREFIX}PROFILE", "")
    return str(candidate).strip() or None


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    bindings: dict[str, tuple[ConfigPath, type]] = {}
    for path, value in _scalar_leaves(config):
        if path[0] != "profiles":
            bindings[env_name(path)] = (path, type(value))
    for path in _OPTIONAL_ENV_PATHS:
        bindings.setdefault(env_name(path), (path, str))

    layer: dict[str, Any] = {}
    for name in sorted(bindings):
        if name in env:
            path, kind = bindings[name]
            _assign(layer, path, _coerce(env[name], kind, source=name, path=path))
    return layer


def _cli_layer(config: Mapping[str, object], overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = overrides[key]
        current = _lookup(config, path)
        if isinstance(value, str) and isinstance(current, (bool, int, float)):
            value = _coerce(value, type(current), source=f"--set {key}", path=path)
        _assign(layer, path, value)
    return layer


def _coerce(raw: str, kind: type, *, source: str, path: ConfigPath) -> object:
    text = raw.strip()
    target = f"{source} -> {'.'.join(path)}"
    if kind is bool:
        if text.lower() in _TRUTHY:
            return True
        if text.lower() in _FALSY:
            return False
        raise ConfigLoadError(f"{target} must be a boolean (true/false/1/0/yes/no/on/off)")
    if kind is int:
        try:
            return int(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{target} must be an integer") from exc
    if kind is float:
        try:
            return float(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{target} must be a number") from exc
    return text


def _scalar_leaves(
    node: Mapping[str, object], prefix: ConfigPath = ()
) -> Iterator[tuple[ConfigPath, object]]:
    for key in sorted(node):
        value = node[key]
        if isinstance(value, Mapping):
            yield from _scalar_leaves(value, (*prefix, key))
        elif isinstance(value, (bool, int, float, str)):
            yield (*prefix, key), value


def _path_fields(config: Mapping[str, Any]) -> Iterator[ConfigPath]:
    yield from PATH_FIELDS
    for table, field in NAMED_PATH_FIELDS:
        for name in sorted(config.get(table) or {}):
            yield (table, name, field)
    for profile_name, overlay in sorted((config.get("profiles") or {}).items()):
        if isinstance(overlay, Mapping):
            for path in PATH_FIELDS:
                if path[0] in overlay:
                    yield ("profiles", profile_name, *path)


def _lookup(node: Mapping[str, object], path: ConfigPath) -> object | None:
    current: object = node
    for part in path:
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _assign(node: dict[str, Any], path: ConfigPath, value: object) -> None:
    for part in path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[path[-1]] = value


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "effective_config",
    "env_name",
    "load_config",
    "normalize_paths",
    "parse_override",
]
