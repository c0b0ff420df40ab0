"""File inspection and request-parsing helpers used when serving files."""

from __future__ import annotations

import codecs
import hashlib
import mimetypes
import os
from datetime import datetime, timezone
from typing import Mapping, Sequence

from charset_normalizer import from_bytes

from dufserve.utils import glob, parse_range

_SNIFF_SIZE = 1024
_HASH_CHUNK = 8192

_BOMS = (
    b"\xef\xbb\xbf",
    b"\x00\x00\xfe\xff",
    b"\xff\xfe\x00\x00",
    b"\xfe\xff",
    b"\xff\xfe",
)

_CHARSET_NAMES = {
    "ascii": "UTF-8",
    "utf_8": "UTF-8",
    "utf_16": "UTF-16LE",
    "utf_16_le": "UTF-16LE",
    "utf_16_be": "UTF-16BE",
    "gb2312": "GBK",
    "gbk": "GBK",
    "gb18030": "gb18030",
    "big5": "Big5",
    "big5hkscs": "Big5",
    "shift_jis": "Shift_JIS",
    "cp932": "Shift_JIS",
    "euc_jp": "EUC-JP",
    "iso2022_jp": "ISO-2022-JP",
    "euc_kr": "EUC-KR",
    "cp949": "EUC-KR",
    "latin_1": "windows-1252",
    "cp1252": "windows-1252",
    "cp1250": "windows-1250",
    "cp1251": "windows-1251",
    "cp1253": "windows-1253",
    "cp1254": "windows-1254",
    "cp1255": "windows-1255",
    "cp1256": "windows-1256",
    "cp1257": "windows-1257",
    "cp1258": "windows-1258",
    "koi8_r": "KOI8-R",
    "koi8_u": "KOI8-U",
    "iso8859_2": "ISO-8859-2",
    "iso8859_5": "ISO-8859-5",
    "iso8859_7": "ISO-8859-7",
    "iso8859_8": "ISO-8859-8",
    "tis_620": "windows-874",
    "cp874": "windows-874",
}


def is_text(data: bytes) -> bool:
    """Guess whether ``data`` (the start of a file) is text rather than binary."""
    if any(data.startswith(bom) for bom in _BOMS):
        return True
    if data.startswith(b"%PDF"):
        return False
    return b"\x00" not in data


def _detect_charset(data: bytes) -> str | None:
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        decoder.decode(data, final=len(data) < _SNIFF_SIZE)
        return "UTF-8"
    except UnicodeDecodeError:
        pass
    best = from_bytes(data).best()
    if best is None:
        return None
    return _CHARSET_NAMES.get(best.encoding, best.encoding)


def get_content_type(path: str | os.PathLike[str]) -> str:
    """Content type for ``path`` from its name, with a charset for text files."""
    with open(path, "rb") as fh:
        head = fh.read(_SNIFF_SIZE)
    mime, _ = mimetypes.guess_type(os.fspath(path))
    if not is_text(head):
        return mime or "application/octet-stream"
    charset = _detect_charset(head)
    suffix = f"; charset={charset}" if charset else ""
    return f"{mime or 'text/plain'}{suffix}"


def sha256_file(path: str | os.PathLike[str]) -> str:
    """Lower-case hex SHA-256 digest of the file's contents."""
    hasher = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_HASH_CHUNK), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def is_hidden(hidden: Sequence[str], file_name: str, is_dir: bool) -> bool:
    """Whether ``file_name`` matches a hidden pattern; ``name/`` patterns apply to dirs only."""
    for pattern in hidden:
        if is_dir and pattern.endswith("/"):
            if glob(pattern[:-1], file_name):
                return True
            continue
        if glob(pattern, file_name):
            return True
    return False


def parse_upload_offset(value: str | None, size: int) -> int | None:
    """Offset named by an ``X-Update-Range`` header value.

    ``None`` when there is no header, ``size`` for ``append``; raises
    ``ValueError`` when the value cannot be used.
    """
    if value is None:
        return None
    if value == "append":
        return size
    ranges = parse_range(value, size)
    if not ranges:
        raise ValueError("Invalid X-Update-Range Header")
    return ranges[0][0]


def has_query_flag(query_params: Mapping[str, str], name: str) -> bool:
    """True when ``name`` is present in the query with an empty value."""
    return query_params.get(name) == ""


def extract_cache_headers(stat_result: os.stat_result) -> tuple[str, datetime]:
    """ETag and Last-Modified values (whole seconds, UTC) for a file's metadata."""
    mtime_ns = getattr(stat_result, "st_mtime_ns", None)
    if mtime_ns is None:
        mtime_ns = int(stat_result.st_mtime * 1_000_000_000)
    millis = max(0, mtime_ns // 1_000_000)
    etag = f'"{millis}-{stat_result.st_size}"'
    seconds = max(0, mtime_ns // 1_000_000_000)
    last_modified = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return etag, last_modified