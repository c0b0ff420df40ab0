"""Serving a single file with caching validators and byte ranges."""

from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from http import HTTPStatus
from pathlib import Path
from typing import Iterator, Mapping

from dufserve.content import extract_cache_headers, get_content_type
from dufserve.responses import Response
from dufserve.utils import parse_range, try_get_file_name

BUF_SIZE = 65536


def _header(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _parse_date(value: str) -> datetime | None:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_weak(tag: str) -> bool:
    return tag.startswith("W/")


def _etag_matches(value: str, etag: str, weak: bool) -> bool:
    if value.strip() == "*":
        return True
    for tag in (part.strip() for part in value.split(",")):
        if not tag:
            continue
        if weak:
            if tag.removeprefix("W/") == etag.removeprefix("W/"):
                return True
        elif not _is_weak(tag) and not _is_weak(etag) and tag == etag:
            return True
    return False


def check_preconditions(
    request_headers: Mapping[str, str], etag: str, last_modified: datetime
) -> int | None:
    """Status a conditional request resolves to (412 or 304), or ``None`` to proceed."""
    value = _header(request_headers, "if-unmodified-since")
    if value is not None:
        since = _parse_date(value)
        if since is not None and last_modified > since:
            return HTTPStatus.PRECONDITION_FAILED
    value = _header(request_headers, "if-match")
    if value is not None and not _etag_matches(value, etag, weak=False):
        return HTTPStatus.PRECONDITION_FAILED
    value = _header(request_headers, "if-modified-since")
    if value is not None:
        since = _parse_date(value)
        if since is not None and last_modified <= since:
            return HTTPStatus.NOT_MODIFIED
    value = _header(request_headers, "if-none-match")
    if value is not None and _etag_matches(value, etag, weak=True):
        return HTTPStatus.NOT_MODIFIED
    return None


def _if_range_fresh(value: str | None, etag: str, last_modified: datetime) -> bool:
    if value is None:
        return True
    value = value.strip()
    if value.startswith('"') or _is_weak(value):
        return not _is_weak(value) and not _is_weak(etag) and value == etag
    since = _parse_date(value)
    if since is None:
        return False
    return not since < last_modified


def _stream(path: Path, start: int = 0, length: int | None = None) -> Iterator[bytes]:
    with open(path, "rb") as fh:
        fh.seek(start)
        remaining = length
        while remaining is None or remaining > 0:
            want = BUF_SIZE if remaining is None else min(BUF_SIZE, remaining)
            chunk = fh.read(want)
            if not chunk:
                break
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk


def send_file(
    path: str | os.PathLike[str],
    request_headers: Mapping[str, str],
    head_only: bool,
    response: Response,
) -> None:
    """Fill ``response`` with the file at ``path``, honouring validators and ranges."""
    path = Path(path)
    st = path.stat()
    size = st.st_size
    etag, last_modified = extract_cache_headers(st)

    status = check_preconditions(request_headers, etag, last_modified)
    if status is not None:
        response.status = status
        return

    response.headers["Cache-Control"] = "no-cache"
    response.headers["Last-Modified"] = format_datetime(last_modified, usegmt=True)
    response.headers["ETag"] = etag

    range_value = _header(request_headers, "range")
    use_range = range_value is not None and _if_range_fresh(
        _header(request_headers, "if-range"), etag, last_modified
    )

    content_type = get_content_type(path)
    response.headers["Content-Type"] = content_type
    response.set_content_disposition(True, try_get_file_name(path))
    response.headers["Accept-Ranges"] = "bytes"

    if not use_range:
        response.headers["Content-Length"] = str(size)
        if not head_only:
            response.body = _stream(path)
        return

    ranges = parse_range(range_value, size)
    if ranges is None:
        response.status = HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE
        response.headers["Content-Range"] = f"bytes */{size}"
        return

    response.status = HTTPStatus.PARTIAL_CONTENT
    if len(ranges) == 1:
        start, end = ranges[0]
        range_size = end - start + 1
        response.headers["Content-Range"] = f"bytes {start}-{end}/{size}"
        response.headers["Content-Length"] = str(range_size)
        if not head_only:
            response.body = _stream(path, start, range_size)
        return

    boundary = uuid.uuid4()
    parts = bytearray()
    with open(path, "rb") as fh:
        for start, end in ranges:
            fh.seek(start)
            part_header = (
                f"--{boundary}\r\nContent-Type: {content_type}\r\n"
                f"Content-Range: bytes {start}-{end}/{size}\r\n\r\n"
            )
            parts += part_header.encode("utf-8")
            parts += fh.read(end - start + 1)
            parts += b"\r\n"
    parts += f"--{boundary}--\r\n".encode("utf-8")
    response.headers["Content-Type"] = f"multipart/byteranges; boundary={boundary}"
    response.headers["Content-Length"] = str(len(parts))
    if not head_only:
        response.body = bytes(parts)