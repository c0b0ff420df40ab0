"""Small helpers shared across the file server: URI coding, globbing, ranges."""

from __future__ import annotations

import functools
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote, unquote_to_bytes

_U64_MAX = 2**64 - 1
_UNSIGNED = re.compile(r"\+?[0-9]+")
_RECURSIVE = "(?:.*/)?"


def unix_now() -> float:
    """Seconds elapsed since the Unix epoch."""
    return time.time()


def encode_uri(v: str) -> str:
    """Percent-encode every path segment, keeping the slashes between them."""
    return "/".join(quote(part, safe="") for part in v.split("/"))


def decode_uri(v: str) -> str | None:
    """Percent-decode ``v``; ``None`` when the result is not valid UTF-8."""
    try:
        return unquote_to_bytes(v).decode("utf-8")
    except UnicodeDecodeError:
        return None


def get_file_name(path: str | os.PathLike[str]) -> str:
    """Final component of ``path``, or an empty string when there is none."""
    name = Path(path).name
    return "" if name == ".." else name


def try_get_file_name(path: str | os.PathLike[str]) -> str:
    """Final component of ``path``; raises ``ValueError`` when there is none."""
    name = get_file_name(path)
    if not name:
        raise ValueError(f"Failed to get file name of `{os.fspath(path)}`")
    return name


def get_file_mtime_and_mode(path: str | os.PathLike[str]) -> tuple[datetime, int]:
    """Modification time (UTC) and 16-bit permission mode of ``path``."""
    st = os.stat(path)
    modified = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
    mode = st.st_mode & 0xFFFF if os.name == "posix" else 0o644
    return modified, mode


def _char_class(spec: str, negate: bool) -> str:
    items = []
    i = 0
    while i < len(spec):
        if i + 3 <= len(spec) and spec[i + 1] == "-":
            start, end = spec[i], spec[i + 2]
            if start <= end:
                items.append(f"{re.escape(start)}-{re.escape(end)}")
            i += 3
        else:
            items.append(re.escape(spec[i]))
            i += 1
    if not items:
        return "." if negate else "(?!)"
    return f"[{'^' if negate else ''}{''.join(items)}]"


@functools.lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str] | None:
    parts: list[str] = []
    n = len(pattern)
    i = 0
    while i < n:
        c = pattern[i]
        if c == "?":
            parts.append(".")
            i += 1
        elif c == "*":
            start = i
            while i < n and pattern[i] == "*":
                i += 1
            count = i - start
            if count > 2:
                return None
            if count == 2:
                if start != 0 and pattern[start - 1] != "/":
                    return None
                if i < n:
                    if pattern[i] != "/":
                        return None
                    i += 1
                parts.append(_RECURSIVE)
            else:
                parts.append(".*")
        elif c == "[":
            if i + 4 <= n and pattern[i + 1] == "!":
                close = pattern.find("]", i + 3)
                if close == -1:
                    return None
                parts.append(_char_class(pattern[i + 2 : close], negate=True))
                i = close + 1
            elif i + 3 <= n and pattern[i + 1] != "!":
                close = pattern.find("]", i + 2)
                if close == -1:
                    return None
                parts.append(_char_class(pattern[i + 1 : close], negate=False))
                i = close + 1
            else:
                return None
        else:
            parts.append(re.escape(c))
            i += 1
    return re.compile("".join(parts), re.DOTALL)


def glob(pattern: str, target: str) -> bool:
    """Match ``target`` against a shell-style pattern; invalid patterns never match."""
    compiled = _compile_glob(pattern)
    return compiled is not None and compiled.fullmatch(target) is not None


def _parse_u64(text: str) -> int | None:
    if not _UNSIGNED.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _U64_MAX else None


def parse_range(range_header: str, size: int) -> list[tuple[int, int]] | None:
    """Parse an HTTP ``Range`` value into inclusive byte ranges, or ``None`` if unsatisfiable."""
    unit, sep, ranges = range_header.partition("=")
    if not sep or unit != "bytes":
        return None

    result: list[tuple[int, int]] = []
    for item in ranges.split(","):
        start_text, sep, end_text = item.strip().partition("-")
        if not sep:
            return None
        if not start_text:
            offset = _parse_u64(end_text)
            if offset is None or offset > size:
                return None
            result.append((size - offset, size - 1))
            continue
        start = _parse_u64(start_text)
        if start is None or start >= size:
            return None
        if not end_text:
            result.append((start, size - 1))
            continue
        end = _parse_u64(end_text)
        if end is None or end >= size:
            return None
        result.append((start, end))
    return result