"""
buildline: reproducible toolchain, workspace, and container image builds.

File: src/buildline/__init__.py

Purpose
- Package root. Defines package-level metadata and keeps imports light.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
