"""
buildline — filesystem utilities

File: src/buildline/utils/fs.py

Purpose
- Atomic writes for manifests, markers, and rendered Dockerfiles.
- Guarded deletion for installation roots and stale artifacts.

Functional requirements
- A reader never observes a half-written file: content lands in a sibling temp
  file that is fsynced and then renamed over the target.
- Deletion refuses anything that is not strictly inside the given root.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "safe_delete",
    "temp_directory",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``data`` in one rename, creating parent directories."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    with tempfile.NamedTemporaryFile(
        mode="wb",
        dir=target.parent,
        prefix=f".{target.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        staged = Path(handle.name)
        try:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        except BaseException:
            handle.close()
            staged.unlink(missing_ok=True)
            raise
    try:
        os.replace(staged, target)
    except OSError:
        staged.unlink(missing_ok=True)
        raise


def safe_delete(path: PathLike, containing_root: PathLike) -> None:
    """Remove a file, symlink or directory tree that lives under ``containing_root``.

    Missing paths are a no-op. Symlinks are removed without following them.
    """

    root = Path(containing_root).resolve(strict=True)
    if not root.is_dir():
        raise NotADirectoryError(f"{root!s} is not a directory")

    target = Path(path)
    if not os.path.lexists(target):
        return

    # Resolve the parent only so a symlink leaf is judged by where it sits.
    located = target.parent.resolve(strict=True) / target.name
    if located == root or root not in located.parents:
        raise ValueError(f"refusing to delete path outside {root!s}: {target!s}")

    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()


@contextmanager
def temp_directory(prefix: str = "buildline-") -> Iterator[Path]:
    """Scratch directory removed when the block exits."""

    with tempfile.TemporaryDirectory(prefix=prefix) as scratch:
        yield Path(scratch)
