"""Toolchain provisioning into exclusive, reproducible installation roots."""

from buildline.toolchain.provisioner import (
    CurlDownloader,
    DownloadedInstaller,
    Downloader,
    ToolchainProvisioner,
)

__all__ = [
    "CurlDownloader",
    "DownloadedInstaller",
    "Downloader",
    "ToolchainProvisioner",
]
