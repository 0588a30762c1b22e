from __future__ import annotations

from pathlib import Path

import pytest

from buildline.utils.fs import atomic_write, safe_delete, temp_directory
from buildline.utils.hashing import normalize_checksum, sha256_bytes, sha256_file

_EMPTY_DIGEST = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_atomic_write_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "manifest.json"

    atomic_write(target, "{}\n")
    atomic_write(target, b"[]\n")

    assert target.read_bytes() == b"[]\n"
    assert [entry.name for entry in target.parent.iterdir()] == ["manifest.json"]


def test_safe_delete_removes_files_and_trees_under_root(tmp_path: Path) -> None:
    tree = tmp_path / "rustup"
    (tree / "bin").mkdir(parents=True)
    (tree / "bin" / "cargo").write_text("x", encoding="utf-8")
    marker = tmp_path / ".marker"
    marker.write_text("x", encoding="utf-8")

    safe_delete(tree, tmp_path)
    safe_delete(marker, tmp_path)
    safe_delete(tmp_path / "absent", tmp_path)

    assert list(tmp_path.iterdir()) == []


def test_safe_delete_unlinks_symlink_without_touching_target(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "keep.txt").write_text("x", encoding="utf-8")
    root = tmp_path / "root"
    root.mkdir()
    link = root / "link"
    link.symlink_to(outside, target_is_directory=True)

    safe_delete(link, root)

    assert not link.exists()
    assert (outside / "keep.txt").exists()


def test_safe_delete_refuses_root_and_outside_paths(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    stray = tmp_path / "stray.txt"
    stray.write_text("x", encoding="utf-8")

    with pytest.raises(ValueError, match="refusing to delete"):
        safe_delete(root, root)
    with pytest.raises(ValueError, match="refusing to delete"):
        safe_delete(stray, root)
    assert stray.exists()


def test_temp_directory_is_removed_on_exit() -> None:
    with temp_directory(prefix="toolchain-") as scratch:
        assert scratch.is_dir()
        assert scratch.name.startswith("toolchain-")

    assert not scratch.exists()


def test_sha256_file_matches_bytes_digest(tmp_path: Path) -> None:
    payload = b"agc binary\n" * 1000
    path = tmp_path / "agc"
    path.write_bytes(payload)

    assert sha256_file(path, chunk_size=7) == sha256_bytes(payload)
    assert sha256_bytes(b"") == _EMPTY_DIGEST


def test_normalize_checksum_accepts_prefix_and_case() -> None:
    assert normalize_checksum(f"  SHA256:{_EMPTY_DIGEST.upper()} ") == _EMPTY_DIGEST


@pytest.mark.parametrize("value", ["abc", "z" * 64, 42])
def test_normalize_checksum_rejects_malformed_digests(value: object) -> None:
    with pytest.raises(ValueError, match="installer.checksum"):
        normalize_checksum(value, field_name="installer.checksum")
