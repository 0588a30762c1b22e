"""Toolchain provisioning with pinned versions, checksums, and idempotent markers."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from buildline.constants import TOOLCHAIN_MARKER_FILENAME
from buildline.domain.models import (
    BuildEnvironment,
    ToolchainEnvironment,
    ToolchainKind,
    ToolchainSpec,
)
from buildline.errors import ProvisionError
from buildline.utils.fs import atomic_write, safe_delete, temp_directory
from buildline.utils.hashing import normalize_checksum, sha256_file
from buildline.utils.process import (
    CommandExecutionResult,
    CommandRunner,
    SubprocessCommandRunner,
    merged_environment,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

_APT_ENV: dict[str, str] = {"DEBIAN_FRONTEND": "noninteractive"}


@dataclass(frozen=True, slots=True)
class DownloadedInstaller:
    """Result returned by a :class:`Downloader` implementation."""

    path: Path
    source_url: str


class Downloader(Protocol):
    """Injectable installer downloader interface."""

    def download(self, *, url: str, destination: Path) -> DownloadedInstaller: ...


class CurlDownloader:
    """Fetch installers with ``curl`` over TLS 1.2+ only."""

    def __init__(
        self,
        *,
        command_runner: CommandRunner | None = None,
        timeout_seconds: float = 300.0,
    ) -> None:
        self._command_runner = command_runner or SubprocessCommandRunner()
        self._timeout_seconds = timeout_seconds

    def download(self, *, url: str, destination: Path) -> DownloadedInstaller:
        command = (
            "curl",
            "--proto",
            "=https",
            "--tlsv1.2",
            "-sSf",
            "-o",
            str(destination),
            url,
        )
        result = self._command_runner.run(
            command,
            cwd=destination.parent,
            timeout_seconds=self._timeout_seconds,
        )
        if not result.ok:
            raise OSError(f"download of {url} failed ({result.returncode}): {result.detail()}")
        return DownloadedInstaller(path=destination, source_url=url)


class ToolchainProvisioner:
    """Install, pin, and verify toolchains into exclusive installation roots."""

    def __init__(
        self,
        *,
        command_runner: CommandRunner | None = None,
        downloader: Downloader | None = None,
        timeout_seconds: float = 3600.0,
        base_env: Mapping[str, str] | None = None,
        now_provider: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._command_runner = command_runner or SubprocessCommandRunner()
        self._downloader = downloader or CurlDownloader(command_runner=self._command_runner)
        self._timeout_seconds = timeout_seconds
        self._base_env = dict(os.environ if base_env is None else base_env)
        self._now = now_provider or _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def provision_all(self, specs: Iterable[ToolchainSpec]) -> BuildEnvironment:
        """Provision every toolchain in order and return the merged environment."""

        environments: list[ToolchainEnvironment] = []
        seen_roots: dict[Path, str] = {}
        for spec in specs:
            owner = seen_roots.get(spec.root)
            if owner is not None:
                raise ProvisionError(
                    spec.name, f"installation root {spec.root} is already owned by {owner!r}"
                )
            seen_roots[spec.root] = spec.name
            environments.append(self.provision(spec))
        return BuildEnvironment(toolchains=tuple(environments))

    def provision(self, spec: ToolchainSpec) -> ToolchainEnvironment:
        """Provision one toolchain; a matching, verified root is a no-op."""

        environment = self._environment_for(spec)
        marker = _read_marker(spec.root)

        if marker is not None and _marker_matches(marker, spec):
            if self._verify(spec, environment, raise_on_failure=False):
                self._logger.info(
                    "toolchain_already_provisioned",
                    toolchain=spec.name,
                    version=spec.version,
                    root=str(spec.root),
                )
                return _with_changed(environment, changed=False)
            self._logger.warning(
                "toolchain_verification_failed_reinstalling",
                toolchain=spec.name,
                version=spec.version,
            )
        elif marker is not None:
            self._replace_existing(spec, previous_version=str(marker.get("version", "")))

        spec.root.mkdir(parents=True, exist_ok=True)
        if spec.kind is ToolchainKind.RUSTUP:
            checksum = self._install_rustup(spec, environment)
        elif spec.kind is ToolchainKind.SYSTEM:
            checksum = None
            self._install_system(spec, environment)
        else:  # pragma: no cover - exhaustive over ToolchainKind.
            raise ProvisionError(spec.name, f"unsupported toolchain kind {spec.kind!r}")

        self._verify(spec, environment, raise_on_failure=True)
        _write_marker(spec, checksum=checksum, provisioned_at=self._now())
        self._logger.info(
            "toolchain_provisioned",
            toolchain=spec.name,
            kind=spec.kind.value,
            version=spec.version,
            root=str(spec.root),
        )
        return environment

    def _replace_existing(self, spec: ToolchainSpec, *, previous_version: str) -> None:
        self._logger.warning(
            "toolchain_replacing_previous_version",
            toolchain=spec.name,
            previous_version=previous_version,
            version=spec.version,
            root=str(spec.root),
        )
        if spec.kind is not ToolchainKind.RUSTUP:
            return
        container = spec.root.parent
        try:
            safe_delete(spec.rustup_home, container)
            safe_delete(spec.cargo_home, container)
            safe_delete(spec.root / TOOLCHAIN_MARKER_FILENAME, container)
        except (OSError, ValueError) as exc:
            raise ProvisionError(
                spec.name, f"unable to remove previous installation {previous_version!r}: {exc}"
            ) from exc

    def _install_rustup(self, spec: ToolchainSpec, environment: ToolchainEnvironment) -> str:
        if not spec.installer_url:
            raise ProvisionError(spec.name, "rustup toolchains require an installer_url")

        with temp_directory(prefix=f"toolchain-{spec.name}-") as stage_dir:
            destination = stage_dir / "rustup-init.sh"
            try:
                downloaded = self._downloader.download(
                    url=spec.installer_url, destination=destination
                )
            except OSError as exc:
                raise ProvisionError(spec.name, f"installer download failed: {exc}") from exc

            installer = downloaded.path
            if not installer.is_file():
                raise ProvisionError(spec.name, f"downloaded installer is not a file: {installer}")
            checksum = sha256_file(installer)
            if spec.checksum is not None and checksum != normalize_checksum(spec.checksum):
                raise ProvisionError(
                    spec.name,
                    f"checksum mismatch for installer: expected {spec.checksum}, got {checksum}",
                )

            self._run_checked(
                spec,
                ("sh", str(installer), "-y", "--no-modify-path", "--default-toolchain", "none"),
                environment,
                cwd=stage_dir,
                action="installer",
            )

        rustup = str(spec.cargo_home / "bin" / "rustup")
        cargo = str(spec.cargo_home / "bin" / "cargo")
        self._run_checked(
            spec,
            (rustup, "default", spec.version),
            environment,
            cwd=spec.root,
            action=f"version {spec.version!r} unavailable",
        )
        for tool in spec.extra_tools:
            self._run_checked(
                spec,
                (cargo, "install", "--locked", tool),
                environment,
                cwd=spec.root,
                action=f"cargo install {tool}",
            )
        return checksum

    def _install_system(self, spec: ToolchainSpec, environment: ToolchainEnvironment) -> None:
        if not spec.packages:
            return
        self._run_checked(
            spec, ("apt-get", "update"), environment, cwd=spec.root, action="apt-get update"
        )
        self._run_checked(
            spec,
            ("apt-get", "install", "-y", *spec.packages),
            environment,
            cwd=spec.root,
            action="apt-get install",
        )

    def _verify(
        self,
        spec: ToolchainSpec,
        environment: ToolchainEnvironment,
        *,
        raise_on_failure: bool,
    ) -> bool:
        try:
            if spec.kind is ToolchainKind.RUSTUP:
                rustup = str(spec.cargo_home / "bin" / "rustup")
                result = self._run_checked(
                    spec,
                    (rustup, "toolchain", "list"),
                    environment,
                    cwd=spec.root,
                    action="toolchain listing",
                )
                if not _default_toolchain_matches(result.stdout, spec.version):
                    raise ProvisionError(
                        spec.name,
                        f"pinned default does not match {spec.version!r}: {result.stdout.strip()}",
                    )
            for command in spec.verify_commands:
                self._run_checked(
                    spec, command, environment, cwd=spec.root, action="verification"
                )
        except ProvisionError:
            if raise_on_failure:
                raise
            return False
        return True

    def _run_checked(
        self,
        spec: ToolchainSpec,
        command: Sequence[str],
        environment: ToolchainEnvironment,
        *,
        cwd: Path,
        action: str,
    ) -> CommandExecutionResult:
        env = BuildEnvironment(toolchains=(environment,)).process_env(
            merged_environment(_apt_env(spec), base=self._base_env)
        )
        result = self._command_runner.run(
            command, cwd=cwd, timeout_seconds=self._timeout_seconds, env=env
        )
        if not result.ok:
            raise ProvisionError(
                spec.name,
                f"{action} failed ({result.returncode}): {result.command_line}: {result.detail()}",
            )
        return result

    @staticmethod
    def _environment_for(spec: ToolchainSpec) -> ToolchainEnvironment:
        variables = dict(spec.env)
        path_entries: tuple[Path, ...] = ()
        if spec.kind is ToolchainKind.RUSTUP:
            variables["RUSTUP_HOME"] = str(spec.rustup_home)
            variables["CARGO_HOME"] = str(spec.cargo_home)
            path_entries = (spec.cargo_home / "bin",)
        return ToolchainEnvironment(
            name=spec.name,
            version=spec.version,
            root=spec.root,
            path_entries=path_entries,
            variables=variables,
        )


def _apt_env(spec: ToolchainSpec) -> dict[str, str]:
    return dict(_APT_ENV) if spec.kind is ToolchainKind.SYSTEM else {}


def _default_toolchain_matches(listing: str, version: str) -> bool:
    """True when the ``(default)`` line of ``rustup toolchain list`` is exactly ``version``.

    Host-qualified names such as ``1.76.0-x86_64-unknown-linux-gnu`` match a
    pin of ``1.76.0``; ``1.75.0`` does not match a pin of ``1.7``.
    """

    for line in listing.splitlines():
        tokens = line.split()
        if not tokens or "default" not in line:
            continue
        name = tokens[0]
        if name == version or name.startswith(f"{version}-"):
            return True
    return False


def _with_changed(environment: ToolchainEnvironment, *, changed: bool) -> ToolchainEnvironment:
    return ToolchainEnvironment(
        name=environment.name,
        version=environment.version,
        root=environment.root,
        path_entries=environment.path_entries,
        variables=environment.variables,
        changed=changed,
    )


def _marker_payload(spec: ToolchainSpec) -> dict[str, object]:
    return {
        "name": spec.name,
        "kind": spec.kind.value,
        "version": spec.version,
        "packages": sorted(spec.packages),
        "extra_tools": sorted(spec.extra_tools),
    }


def _marker_matches(marker: Mapping[str, object], spec: ToolchainSpec) -> bool:
    expected = _marker_payload(spec)
    # Only the rustup installer is downloaded and checksummed.
    if spec.checksum is not None and spec.kind is ToolchainKind.RUSTUP:
        expected["checksum"] = normalize_checksum(spec.checksum)
    return all(marker.get(key) == value for key, value in expected.items())


def _read_marker(root: Path) -> dict[str, object] | None:
    marker_path = root / TOOLCHAIN_MARKER_FILENAME
    if not marker_path.is_file():
        return None
    try:
        payload = json.loads(marker_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _write_marker(spec: ToolchainSpec, *, checksum: str | None, provisioned_at: datetime) -> None:
    payload = _marker_payload(spec)
    payload["checksum"] = checksum
    payload["provisioned_at"] = _coerce_datetime_utc(provisioned_at).isoformat()
    atomic_write(
        spec.root / TOOLCHAIN_MARKER_FILENAME,
        json.dumps(payload, sort_keys=True, indent=2) + "\n",
    )


def _coerce_datetime_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = [
    "CurlDownloader",
    "DownloadedInstaller",
    "Downloader",
    "ToolchainProvisioner",
]
