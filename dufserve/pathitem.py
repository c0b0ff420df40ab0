"""Directory listing entries and the data documents built from them."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable

from dufserve.utils import encode_uri

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_CHUNKS = re.compile(r"[0-9]+|[^0-9]")


class PathType(Enum):
    """Kind of a listed entry; directories sort before files."""

    DIR = "Dir"
    SYMLINK_DIR = "SymlinkDir"
    FILE = "File"
    SYMLINK_FILE = "SymlinkFile"

    def is_dir(self) -> bool:
        return self in (PathType.DIR, PathType.SYMLINK_DIR)

    @property
    def rank(self) -> int:
        return 0 if self.is_dir() else 1


class DataKind(Enum):
    """Which page the browser front end should render."""

    INDEX = "Index"
    EDIT = "Edit"
    VIEW = "View"


def _http_date(mtime_ms: int) -> str:
    try:
        dt = _EPOCH + timedelta(milliseconds=mtime_ms)
    except OverflowError:
        return ""
    return (
        f"{_WEEKDAYS[dt.weekday()]}, {dt.day:02d} {_MONTHS[dt.month - 1]} "
        f"{dt.year:04d} {dt:%H:%M:%S} GMT"
    )


def _escape_pcdata(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


@dataclass
class PathItem:
    """One entry of a directory listing; ``mtime`` is in milliseconds."""

    path_type: PathType
    name: str
    mtime: int
    size: int

    def is_dir(self) -> bool:
        return self.path_type.is_dir()

    def base_name(self) -> str:
        return self.name.split("/")[-1]

    def to_dav_xml(self, prefix: str) -> str:
        """Render this entry as a WebDAV ``<D:response>`` element."""
        mtime = _http_date(self.mtime)
        href = encode_uri(f"{prefix}{self.name}")
        if self.is_dir() and not href.endswith("/"):
            href += "/"
        displayname = _escape_pcdata(self.base_name())
        if self.is_dir():
            return (
                "<D:response>\n"
                f"<D:href>{href}</D:href>\n"
                "<D:propstat>\n"
                "<D:prop>\n"
                f"<D:displayname>{displayname}</D:displayname>\n"
                f"<D:getlastmodified>{mtime}</D:getlastmodified>\n"
                "<D:resourcetype><D:collection/></D:resourcetype>\n"
                "</D:prop>\n"
                "<D:status>HTTP/1.1 200 OK</D:status>\n"
                "</D:propstat>\n"
                "</D:response>"
            )
        return (
            "<D:response>\n"
            f"<D:href>{href}</D:href>\n"
            "<D:propstat>\n"
            "<D:prop>\n"
            f"<D:displayname>{displayname}</D:displayname>\n"
            f"<D:getcontentlength>{self.size}</D:getcontentlength>\n"
            f"<D:getlastmodified>{mtime}</D:getlastmodified>\n"
            "<D:resourcetype></D:resourcetype>\n"
            "</D:prop>\n"
            "<D:status>HTTP/1.1 200 OK</D:status>\n"
            "</D:propstat>\n"
            "</D:response>"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path_type": self.path_type.value,
            "name": self.name,
            "mtime": self.mtime,
            "size": self.size,
        }


@dataclass
class IndexData:
    """Document describing a directory listing page."""

    href: str
    uri_prefix: str
    allow_upload: bool = False
    allow_delete: bool = False
    allow_search: bool = False
    allow_archive: bool = False
    dir_exists: bool = True
    auth: bool = False
    user: str | None = None
    paths: list[PathItem] = field(default_factory=list)
    kind: DataKind = DataKind.INDEX

    def to_dict(self) -> dict[str, Any]:
        return {
            "href": self.href,
            "kind": self.kind.value,
            "uri_prefix": self.uri_prefix,
            "allow_upload": self.allow_upload,
            "allow_delete": self.allow_delete,
            "allow_search": self.allow_search,
            "allow_archive": self.allow_archive,
            "dir_exists": self.dir_exists,
            "auth": self.auth,
            "user": self.user,
            "paths": [item.to_dict() for item in self.paths],
        }


@dataclass
class EditData:
    """Document describing a file edit or view page."""

    href: str
    kind: DataKind
    uri_prefix: str
    allow_upload: bool = False
    allow_delete: bool = False
    auth: bool = False
    user: str | None = None
    editable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "href": self.href,
            "kind": self.kind.value,
            "uri_prefix": self.uri_prefix,
            "allow_upload": self.allow_upload,
            "allow_delete": self.allow_delete,
            "auth": self.auth,
            "user": self.user,
            "editable": self.editable,
        }


def natural_key(text: str) -> list[tuple[int, int, int]]:
    """Sort key comparing digit runs by numeric value and other characters by code point."""
    key = []
    for chunk in _CHUNKS.findall(text):
        if chunk[0].isdigit():
            key.append((ord("0"), int(chunk), len(chunk)))
        else:
            key.append((ord(chunk), 0, 0))
    return key


def _by_name(item: PathItem) -> tuple[int, list[tuple[int, int, int]]]:
    return item.path_type.rank, natural_key(item.name.lower())


_SORT_KEYS: dict[str, Callable[[PathItem], Any]] = {
    "name": _by_name,
    "mtime": lambda item: (item.path_type.rank, item.mtime),
    "size": lambda item: (item.path_type.rank, item.size),
}


def sort_paths(
    paths: Iterable[PathItem], sort: str | None = None, order: str | None = None
) -> list[PathItem]:
    """Order entries for a listing, directories first.

    Without ``sort`` entries are ordered by name. With an unknown ``sort`` the
    original order is kept; ``order="desc"`` reverses the result whenever
    ``sort`` is given.
    """
    items = list(paths)
    if sort is None:
        items.sort(key=_by_name)
        return items
    key = _SORT_KEYS.get(sort)
    if key is not None:
        items.sort(key=key)
    if order == "desc":
        items.reverse()
    return items