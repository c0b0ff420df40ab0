"""Recursive directory walking for search and zip archives."""

from __future__ import annotations

import os
import shutil
import stat
import zipfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Protocol, Sequence

from dufserve.content import is_hidden
from dufserve.utils import get_file_mtime_and_mode

_ZIP_MIN_YEAR = 1980
_ZIP_MAX_YEAR = 2107


class _RunFlag(Protocol):
    def is_set(self) -> bool: ...


class Compress(Enum):
    """Compression level requested for zip archives."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def zip_options(self) -> int:
        """The ``zipfile`` compression method used for this level."""
        return {
            Compress.NONE: zipfile.ZIP_STORED,
            Compress.LOW: zipfile.ZIP_DEFLATED,
            Compress.MEDIUM: zipfile.ZIP_BZIP2,
            Compress.HIGH: zipfile.ZIP_LZMA,
        }[self]


def _is_contained(path: Path, serve_root: Path) -> bool:
    try:
        real = path.resolve(strict=True)
    except (OSError, RuntimeError):
        return False
    return real == serve_root or serve_root in real.parents


def _children(directory: Path) -> Iterator[Path]:
    return iter(sorted(directory.iterdir(), key=lambda p: p.name))


def collect_dir_entries(
    path: str | os.PathLike[str],
    hidden: Sequence[str],
    follow_symlinks: bool,
    serve_path: str | os.PathLike[str],
    include_entry: Callable[[Path], bool],
    running: _RunFlag | None = None,
) -> list[Path]:
    """Walk ``path`` (symlinks followed) and return entries accepted by ``include_entry``.

    Hidden entries are skipped along with their contents. Unless
    ``follow_symlinks`` is set, entries resolving outside ``serve_path`` are
    skipped too. The walk stops at the first unreadable entry or link loop, or
    when ``running`` is cleared.
    """
    root = Path(path)
    serve_root = Path(serve_path).resolve()
    found: list[Path] = []
    try:
        stack: list[tuple[Iterator[Path], frozenset[str]]] = [
            (_children(root), frozenset({os.path.realpath(root)}))
        ]
    except OSError:
        return found

    while stack:
        entries, ancestors = stack[-1]
        entry = next(entries, None)
        if entry is None:
            stack.pop()
            continue
        if running is not None and not running.is_set():
            break
        try:
            is_dir = stat.S_ISDIR(entry.stat().st_mode)
        except OSError:
            break
        real = os.path.realpath(entry) if is_dir else ""
        if is_dir and real in ancestors:
            break
        if is_hidden(hidden, entry.name, is_dir):
            continue
        if not follow_symlinks and not _is_contained(entry, serve_root):
            continue
        if include_entry(entry):
            found.append(entry)
        if is_dir:
            try:
                stack.append((_children(entry), ancestors | {real}))
            except OSError:
                break
    return found


def _is_regular_file(entry: Path) -> bool:
    try:
        entry.lstat()
    except OSError:
        return False
    return entry.is_file()


def _zip_date(moment: datetime) -> tuple[int, int, int, int, int, int]:
    if moment.year < _ZIP_MIN_YEAR:
        return (_ZIP_MIN_YEAR, 1, 1, 0, 0, 0)
    if moment.year > _ZIP_MAX_YEAR:
        return (_ZIP_MAX_YEAR, 12, 31, 23, 59, 58)
    return (moment.year, moment.month, moment.day,
            moment.hour, moment.minute, moment.second)


def zip_dir(
    writer: BinaryIO,
    directory: str | os.PathLike[str],
    hidden: Sequence[str],
    compress: Compress,
    follow_symlinks: bool,
    serve_path: str | os.PathLike[str],
    running: _RunFlag | None = None,
) -> None:
    """Write a zip archive of every visible regular file under ``directory`` to ``writer``."""
    base = Path(directory)
    compress_type = Compress(compress).zip_options()
    files = collect_dir_entries(
        base, hidden, follow_symlinks, serve_path, _is_regular_file, running
    )
    with zipfile.ZipFile(writer, "w") as archive:
        for file_path in files:
            try:
                relative = file_path.relative_to(base)
            except ValueError:
                continue
            modified, mode = get_file_mtime_and_mode(file_path)
            info = zipfile.ZipInfo(relative.as_posix(), date_time=_zip_date(modified))
            info.compress_type = compress_type
            info.external_attr = (mode & 0xFFFF) << 16
            info.file_size = file_path.stat().st_size
            with open(file_path, "rb") as src, archive.open(info, "w") as dst:
                shutil.copyfileobj(src, dst)