"""Archive extraction (zip, tar.gz, tar.xz) with root-folder policies."""

from __future__ import annotations

import asyncio
import logging
import lzma
import shutil
import tarfile
import zipfile
import zlib
from pathlib import Path
from typing import List

from ..errors import ExtractionFailed, UnsupportedFormat
from ..runtime.types import ArchiveKind, RootPolicy

logger = logging.getLogger(__name__)

TEMP_DIR_NAME = ".extract-tmp"

_READER_ERRORS = (
    zipfile.BadZipFile,
    tarfile.TarError,
    lzma.LZMAError,
    zlib.error,
    EOFError,
    OSError,
    ValueError,
)


def _ensure_inside(destination: Path, member_name: str) -> Path:
    target = (destination / member_name).resolve()
    if target != destination and destination not in target.parents:
        raise ValueError(f"Archive member escapes destination: {member_name}")
    return target


def _extract_zip(archive_path: Path, destination: Path) -> None:
    root = destination.resolve()
    with zipfile.ZipFile(archive_path) as zf:
        for info in zf.infolist():
            target = _ensure_inside(root, info.filename)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
            # zipfile drops unix permissions; executables need their x bit back
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                target.chmod(mode)


def _extract_tar(archive_path: Path, destination: Path, mode: str) -> None:
    with tarfile.open(archive_path, mode) as tf:
        if hasattr(tarfile, "data_filter"):
            tf.extractall(destination, filter="data")
        else:
            root = destination.resolve()
            for member in tf.getmembers():
                _ensure_inside(root, member.name)
            tf.extractall(destination)


def _extract_into(archive_path: Path, destination: Path, kind: ArchiveKind) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    if kind is ArchiveKind.ZIP:
        _extract_zip(archive_path, destination)
    elif kind is ArchiveKind.TAR_GZ:
        _extract_tar(archive_path, destination, "r:gz")
    else:
        _extract_tar(archive_path, destination, "r:xz")


def _replace(source: Path, target: Path) -> None:
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    elif target.exists() or target.is_symlink():
        target.unlink()
    shutil.move(str(source), str(target))


def _promote(temp_dir: Path, destination: Path) -> List[Path]:
    """Move extracted entries from the temp dir into the destination.

    A single top-level directory is unwrapped; anything else moves as is.
    """
    entries = list(temp_dir.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        entries = list(entries[0].iterdir())

    moved = []
    for entry in entries:
        target = destination / entry.name
        _replace(entry, target)
        moved.append(target)
    return moved


def extract_sync(archive_path: Path, destination: Path, policy: RootPolicy) -> Path:
    """Blocking extraction; see :func:`extract`."""
    archive_path = Path(archive_path)
    destination = Path(destination)

    kind = ArchiveKind.from_name(archive_path.name)
    if kind is None:
        raise UnsupportedFormat(archive_path)

    try:
        if policy is RootPolicy.PRESERVE:
            _extract_into(archive_path, destination, kind)
            return destination

        temp_dir = destination / TEMP_DIR_NAME
        if temp_dir.exists():
            shutil.rmtree(temp_dir)
        try:
            _extract_into(archive_path, temp_dir, kind)
            moved = _promote(temp_dir, destination)
            logger.debug("Promoted %d entries into %s", len(moved), destination)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
        return destination
    except _READER_ERRORS as e:
        raise ExtractionFailed(archive_path, e) from e


async def extract(archive_path: Path, destination: Path, policy: RootPolicy) -> Path:
    """Extract an archive into ``destination``.

    The format is inferred from the file extension. With
    ``RootPolicy.STRIP`` a single enclosing folder is dropped so its
    contents land directly in ``destination``; with ``RootPolicy.PRESERVE``
    the archive is unpacked as is.

    The work runs in the default executor so the event loop keeps
    servicing supervised processes meanwhile.

    Raises:
        UnsupportedFormat: Unknown extension
        ExtractionFailed: Corrupt archive or filesystem error. Partial
            output may remain; treat the destination as not installed.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, extract_sync, archive_path, destination, policy)
