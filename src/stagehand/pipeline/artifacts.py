"""Archiving of files produced by a stage instance.

A stage may declare ``artifacts`` glob patterns. After an instance succeeds,
the matching files are packed into one archive inside the run directory so
the run keeps an auditable copy of what each target produced.
"""

from __future__ import annotations

import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Literal

from stagehand.observability.logging import get_logger

log = get_logger(__name__)

Compression = Literal["gz", "xz", "bz2"]

_TAR_COMPRESSIONS: dict[str, Compression] = {
    ".gz": "gz",
    ".tgz": "gz",
    ".xz": "xz",
    ".txz": "xz",
    ".bz2": "bz2",
    ".tbz2": "bz2",
}


@dataclass(frozen=True)
class ArchiveFormat:
    """Archive container plus optional compression."""

    kind: Literal["zip", "tar"]
    compression: Compression | None = None

    @classmethod
    def from_filename(cls, filename: str | PurePath) -> ArchiveFormat:
        """Deduce the archive format from a filename.

        Recognizes ``.zip``, ``.tar``, ``.tar.gz``/``.tgz``,
        ``.tar.xz``/``.txz`` and ``.tar.bz2``/``.tbz2``.

        Raises:
            ValueError: If the suffix names no supported format.
        """
        path = PurePath(filename)
        suffixes = [s.lower() for s in path.suffixes]
        if not suffixes:
            raise ValueError(f"Cannot deduce archive format of '{path.name}': no extension")

        last = suffixes[-1]
        if last == ".zip":
            return cls("zip")
        if last == ".tar":
            return cls("tar")
        if last in (".tgz", ".txz", ".tbz2"):
            return cls("tar", _TAR_COMPRESSIONS[last])
        if last in (".gz", ".xz", ".bz2") and len(suffixes) >= 2 and suffixes[-2] == ".tar":
            return cls("tar", _TAR_COMPRESSIONS[last])
        raise ValueError(f"Cannot deduce archive format of '{path.name}'")

    @property
    def tar_mode(self) -> str:
        return f"w:{self.compression}" if self.compression else "w"


def collect_files(root: Path, patterns: tuple[str, ...] | list[str]) -> list[Path]:
    """Files under ``root`` matching any of the glob patterns, sorted and unique."""
    found: set[Path] = set()
    for pattern in patterns:
        for path in root.glob(pattern):
            if path.is_file():
                found.add(path)
    return sorted(found)


def pack_artifacts(
    root: Path,
    patterns: tuple[str, ...] | list[str],
    destination: Path,
) -> Path | None:
    """Pack files matching ``patterns`` into ``destination``.

    Args:
        root: Directory the patterns are relative to; archive members are
            stored relative to it as well.
        patterns: Glob patterns.
        destination: Archive path; its suffix selects the format.

    Returns:
        The archive path, or None if no file matched.
    """
    archive_format = ArchiveFormat.from_filename(destination)
    files = collect_files(root, patterns)
    if not files:
        log.warning("artifacts_not_found", root=str(root), patterns=list(patterns))
        return None

    destination.parent.mkdir(parents=True, exist_ok=True)
    if archive_format.kind == "zip":
        with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path in files:
                archive.write(path, arcname=path.relative_to(root).as_posix())
    else:
        with tarfile.open(destination, archive_format.tar_mode) as archive:
            for path in files:
                archive.add(path, arcname=path.relative_to(root).as_posix())

    log.debug("artifacts_packed", archive=str(destination), files=len(files))
    return destination
