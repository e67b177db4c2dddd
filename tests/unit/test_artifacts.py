"""Tests for artifact archiving."""

from __future__ import annotations

import tarfile
import zipfile
from pathlib import Path

import pytest

from stagehand.pipeline.artifacts import ArchiveFormat, collect_files, pack_artifacts

# --- ArchiveFormat ---


@pytest.mark.parametrize(
    ("filename", "expected"),
    [
        ("out.zip", ArchiveFormat("zip")),
        ("out.tar", ArchiveFormat("tar")),
        ("out.tar.gz", ArchiveFormat("tar", "gz")),
        ("out.tgz", ArchiveFormat("tar", "gz")),
        ("out.tar.xz", ArchiveFormat("tar", "xz")),
        ("out.txz", ArchiveFormat("tar", "xz")),
        ("out.tar.bz2", ArchiveFormat("tar", "bz2")),
        ("project-manager-bundle-2026.1.1-linux-amd64.tar.gz", ArchiveFormat("tar", "gz")),
        ("OUT.ZIP", ArchiveFormat("zip")),
    ],
)
def test_archive_format_from_filename(filename: str, expected: ArchiveFormat) -> None:
    assert ArchiveFormat.from_filename(filename) == expected


@pytest.mark.parametrize("filename", ["out", "out.rar", "out.gz", "out.7z"])
def test_archive_format_rejects_unknown(filename: str) -> None:
    with pytest.raises(ValueError, match="Cannot deduce archive format"):
        ArchiveFormat.from_filename(filename)


def test_tar_mode() -> None:
    assert ArchiveFormat("tar").tar_mode == "w"
    assert ArchiveFormat("tar", "xz").tar_mode == "w:xz"


# --- Packing ---


@pytest.fixture
def build_tree(tmp_path: Path) -> Path:
    root = tmp_path / "work"
    (root / "dist" / "nested").mkdir(parents=True)
    (root / "dist" / "engine.bin").write_text("engine", encoding="utf-8")
    (root / "dist" / "nested" / "lib.so").write_text("lib", encoding="utf-8")
    (root / "README.txt").write_text("readme", encoding="utf-8")
    return root


def test_collect_files_unique_and_sorted(build_tree: Path) -> None:
    files = collect_files(build_tree, ["dist/**/*", "dist/*.bin"])
    assert files == [build_tree / "dist" / "engine.bin", build_tree / "dist" / "nested" / "lib.so"]


def test_pack_zip(build_tree: Path, tmp_path: Path) -> None:
    destination = tmp_path / "out" / "bundle.zip"

    result = pack_artifacts(build_tree, ["dist/**/*"], destination)

    assert result == destination
    with zipfile.ZipFile(destination) as archive:
        assert sorted(archive.namelist()) == ["dist/engine.bin", "dist/nested/lib.so"]
        assert archive.read("dist/engine.bin") == b"engine"


def test_pack_tar_xz(build_tree: Path, tmp_path: Path) -> None:
    destination = tmp_path / "bundle.tar.xz"

    pack_artifacts(build_tree, ["*.txt"], destination)

    with tarfile.open(destination, "r:xz") as archive:
        assert archive.getnames() == ["README.txt"]


def test_pack_nothing_matched(build_tree: Path, tmp_path: Path) -> None:
    destination = tmp_path / "bundle.tar.gz"
    assert pack_artifacts(build_tree, ["*.exe"], destination) is None
    assert not destination.exists()
