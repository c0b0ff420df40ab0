"""Request handling for the file server: listings, files, uploads and WebDAV."""

from __future__ import annotations

import base64
import io
import json
import logging
import os
import shutil
import stat
import struct
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from http import HTTPStatus
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Mapping
from urllib.parse import parse_qsl, urlsplit

from dufserve.config import ServerConfig
from dufserve.content import (
    get_content_type,
    has_query_flag,
    is_hidden,
    is_text,
    parse_upload_offset,
    sha256_file,
)
from dufserve.fileserve import send_file
from dufserve.pathitem import DataKind, EditData, IndexData, PathItem, PathType, sort_paths
from dufserve.responses import Response
from dufserve.utils import decode_uri, get_file_name, try_get_file_name
from dufserve.walk import collect_dir_entries, zip_dir

logger = logging.getLogger(__name__)

ASSETS_VERSION = "0.46.0"
INDEX_NAME = "index.html"
BUF_SIZE = 65536
EDITABLE_TEXT_MAX_SIZE = 4194304
RESUMABLE_UPLOAD_MIN_SIZE = 20971520
HEALTH_CHECK_PATH = "__dufs__/health"
MAX_SUBPATHS_COUNT = 1000

_HTML_UTF8 = "text/html; charset=utf-8"

INDEX_HTML = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8" />
<meta name="viewport" content="width=device-width" />
<link rel="icon" type="image/x-icon" href="__ASSETS_PREFIX__favicon.ico">
<link rel="stylesheet" href="__ASSETS_PREFIX__index.css">
</head>
<body>
<template id="index-data">__INDEX_DATA__</template>
<main id="app"></main>
<script src="__ASSETS_PREFIX__index.js"></script>
</body>
</html>
"""

INDEX_CSS = """body { font-family: sans-serif; margin: 1em 2em; }
table { border-collapse: collapse; }
td { padding: 2px 12px; }
a { text-decoration: none; }
"""

INDEX_JS = """(function () {
  var raw = document.getElementById("index-data").innerHTML;
  var data = JSON.parse(new TextDecoder().decode(
    Uint8Array.from(atob(raw), function (c) { return c.charCodeAt(0); })));
  var app = document.getElementById("app");
  var title = document.createElement("h1");
  title.textContent = decodeURIComponent(data.href);
  app.appendChild(title);
  if (!data.paths) { return; }
  var table = document.createElement("table");
  data.paths.forEach(function (item) {
    var isDir = item.path_type.endsWith("Dir");
    var row = table.insertRow();
    var link = document.createElement("a");
    link.href = encodeURIComponent(item.name).replace(/%2F/g, "/") + (isDir ? "/" : "");
    link.textContent = item.name + (isDir ? "/" : "");
    row.insertCell().appendChild(link);
    row.insertCell().textContent = new Date(item.mtime).toLocaleString();
    row.insertCell().textContent = isDir ? item.size + " items" : item.size + " B";
  });
  app.appendChild(table);
})();
"""


def _make_favicon() -> bytes:
    header = struct.pack("<HHH", 0, 1, 1)
    entry = struct.pack("<BBBBHHII", 1, 1, 0, 0, 1, 32, 48, 22)
    info = struct.pack("<IiiHHIIiiII", 40, 1, 2, 1, 32, 0, 8, 0, 0, 0, 0)
    return header + entry + info + b"\x00\x00\x00\x00" + b"\x00\x00\x00\x00"


FAVICON_ICO = _make_favicon()

_BUILTIN_ASSETS = {
    "index.js": (INDEX_JS.encode("utf-8"), "application/javascript; charset=UTF-8"),
    "index.css": (INDEX_CSS.encode("utf-8"), "text/css; charset=UTF-8"),
    "favicon.ico": (FAVICON_ICO, "image/x-icon"),
}


@dataclass
class Request:
    """An incoming request: method, raw request target, headers and body stream."""

    method: str
    uri: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | BinaryIO = b""

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {key.lower(): value for key, value in dict(self.headers).items()}
        if isinstance(self.body, (bytes, bytearray)):
            self.body = io.BytesIO(bytes(self.body))

    @property
    def _target(self) -> str:
        if "://" in self.uri.split("?", 1)[0]:
            parts = urlsplit(self.uri)
            return parts.path + (f"?{parts.query}" if parts.query else "")
        return self.uri.split("#", 1)[0]

    @property
    def path(self) -> str:
        return self._target.partition("?")[0] or "/"

    @property
    def query(self) -> str:
        return self._target.partition("?")[2]

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


def _ensure_path_parent(path: Path) -> None:
    parent = path.parent
    try:
        parent.lstat()
    except OSError:
        parent.mkdir(parents=True, exist_ok=True)


def _relative_name(path: Path, base: Path) -> str:
    rel = path.relative_to(base).as_posix()
    return "" if rel == "." else rel


class Server:
    """Turns requests into responses for one configured directory or file."""

    def __init__(self, config: ServerConfig, running: threading.Event | None = None) -> None:
        self.config = config
        if running is None:
            running = threading.Event()
            running.set()
        self.running = running
        self.assets_prefix = f"__dufs_v{ASSETS_VERSION}__/"
        self._single_file_paths = config.single_file_paths()
        if config.assets is not None:
            self._html = (Path(config.assets) / INDEX_NAME).read_text(encoding="utf-8")
        else:
            self._html = INDEX_HTML

    def call(self, request: Request, remote_addr: str | None = None) -> Response:
        """Handle ``request``, turning unexpected failures into a 500 response."""
        try:
            res = self.handle(request)
        except Exception as err:  # noqa: BLE001 - any failure becomes a 500
            res = Response(status=HTTPStatus.INTERNAL_SERVER_ERROR)
            logger.error("%s %s %s - %s", remote_addr or "-", request.method, request.uri, err)
        else:
            if not request.path.startswith(self.assets_prefix):
                logger.info("%s %s %s %d", remote_addr or "-", request.method, request.uri, res.status)
        if self.config.enable_cors:
            res.add_cors()
        return res

    def handle(self, request: Request) -> Response:
        """Dispatch ``request`` and return the response built for it."""
        cfg = self.config
        res = Response()
        req_path = request.path
        method = request.method

        relative_path = self.resolve_path(req_path)
        if relative_path is None:
            res.bad_request("Invalid Path")
            return res

        if method == "GET" and self._handle_internal(relative_path, request.headers, res):
            return res

        user_agent = (request.header("user-agent") or "").lower()
        if user_agent.startswith("microsoft-webdav-miniredir/"):
            res.headers["Connection"] = "close"

        query_params = dict(parse_qsl(request.query, keep_blank_values=True))
        user: str | None = None

        if method == "CHECKAUTH":
            if has_query_flag(query_params, "login"):
                self._auth_reject(res)
            else:
                res.body = ""
            return res
        if method == "LOGOUT":
            self._auth_reject(res)
            return res

        head_only = method == "HEAD"

        if cfg.path_is_file:
            if req_path in self._single_file_paths:
                send_file(cfg.serve_path, request.headers, head_only, res)
            else:
                res.not_found()
            return res

        path = self.join_path(relative_path)
        try:
            st = path.stat()
        except OSError:
            is_miss, is_dir, is_file, size = True, False, False, 0
        else:
            is_miss = False
            is_dir = stat.S_ISDIR(st.st_mode)
            is_file = stat.S_ISREG(st.st_mode)
            size = st.st_size

        if not cfg.allow_symlink and not is_miss and not self._is_root_contained(path):
            res.not_found()
            return res

        if method in ("GET", "HEAD"):
            self._handle_get(path, req_path, request, query_params, head_only, user,
                             is_dir, is_file, res)
        elif method == "OPTIONS":
            res.set_webdav_headers()
        elif method == "PUT":
            if is_dir or not cfg.allow_upload or (not cfg.allow_delete and size > 0):
                res.forbid()
            else:
                self._handle_upload(path, None, size, request, res)
        elif method == "PATCH":
            self._handle_patch(path, is_miss, size, request, res)
        elif method == "DELETE":
            if not cfg.allow_delete:
                res.forbid()
            elif is_miss:
                res.not_found()
            else:
                if is_dir:
                    shutil.rmtree(path)
                else:
                    path.unlink()
                res.no_content()
        elif method == "PROPFIND":
            if is_dir:
                self._handle_propfind_dir(path, request, res)
            elif is_file:
                item = self._to_pathitem(path, cfg.serve_path)
                if item is None:
                    res.not_found()
                else:
                    res.multistatus(item.to_dav_xml(cfg.uri_prefix))
            else:
                res.not_found()
        elif method == "PROPPATCH":
            if is_file:
                res.multistatus(
                    "<D:response>\n"
                    f"<D:href>{req_path}</D:href>\n"
                    "<D:propstat>\n<D:prop>\n</D:prop>\n"
                    "<D:status>HTTP/1.1 403 Forbidden</D:status>\n"
                    "</D:propstat>\n</D:response>"
                )
            else:
                res.not_found()
        elif method == "MKCOL":
            if not cfg.allow_upload:
                res.forbid()
            elif not is_miss:
                res.status = HTTPStatus.METHOD_NOT_ALLOWED
                res.body = "Already exists"
            else:
                path.mkdir(parents=True, exist_ok=True)
                res.status = HTTPStatus.CREATED
        elif method == "COPY":
            if not cfg.allow_upload:
                res.forbid()
            elif is_miss:
                res.not_found()
            else:
                self._handle_copy(path, request, res)
        elif method == "MOVE":
            if not cfg.allow_upload or not cfg.allow_delete:
                res.forbid()
            elif is_miss:
                res.not_found()
            else:
                dest = self._extract_dest(request, res)
                if dest is not None:
                    _ensure_path_parent(dest)
                    os.replace(path, dest)
                    res.no_content()
        elif method == "LOCK":
            if is_file:
                self._handle_lock(req_path, request.header("authorization") is not None, res)
            else:
                res.not_found()
        elif method == "UNLOCK":
            if is_miss:
                res.not_found()
        else:
            res.status = HTTPStatus.METHOD_NOT_ALLOWED
        return res

    def resolve_path(self, path: str) -> str | None:
        """Decode a request path into a safe relative path, or ``None`` if invalid."""
        decoded = decode_uri(path)
        if decoded is None:
            return None
        parts: list[str] = []
        for index, part in enumerate(decoded.strip("/").split("/")):
            if part == "":
                continue
            if part == ".":
                if index == 0:
                    return None
                continue
            if part == "..":
                return None
            if os.name == "nt" and len(part) == 2 and part[1] == ":" and part[0].isascii() and part[0].isalpha():
                return None
            parts.append(part)
        new_path = "/".join(parts)
        prefix = self.config.path_prefix
        if not prefix:
            return new_path
        prefix = prefix.lstrip("/")
        if not new_path.startswith(prefix):
            return None
        return new_path[len(prefix):].strip("/")

    def join_path(self, path: str) -> Path:
        """Filesystem location of a resolved relative path."""
        if not path:
            return self.config.serve_path
        return self.config.serve_path.joinpath(*path.split("/"))

    def _handle_internal(self, relative_path: str, headers: Mapping[str, str], res: Response) -> bool:
        if relative_path.startswith(self.assets_prefix):
            name = relative_path[len(self.assets_prefix):]
            if self.config.assets is not None:
                asset = Path(self.config.assets) / name
                if not asset.exists():
                    res.not_found()
                    return True
                send_file(asset, headers, False, res)
            elif name in _BUILTIN_ASSETS:
                body, content_type = _BUILTIN_ASSETS[name]
                res.body = body
                res.headers["content-type"] = content_type
            else:
                res.not_found()
            res.headers["cache-control"] = "public, max-age=31536000, immutable"
            res.headers["x-content-type-options"] = "nosniff"
            return True
        if relative_path == HEALTH_CHECK_PATH:
            res.headers["content-type"] = "application/json"
            res.body = '{"status":"OK"}'
            return True
        return False

    def _auth_reject(self, res: Response) -> None:
        res.set_webdav_headers()
        res.status = HTTPStatus.UNAUTHORIZED

    def _handle_get(self, path: Path, req_path: str, request: Request, query_params: dict[str, str],
                    head_only: bool, user: str | None, is_dir: bool, is_file: bool,
                    res: Response) -> None:
        cfg = self.config
        headers = request.headers
        if is_dir:
            wants_zip = has_query_flag(query_params, "zip")
            wants_search = cfg.allow_search and "q" in query_params
            if cfg.render_try_index:
                if cfg.allow_archive and wants_zip:
                    self._handle_zip_dir(path, head_only, res)
                elif wants_search:
                    self._handle_search_dir(path, query_params, head_only, user, res)
                else:
                    self._handle_render_index(path, query_params, headers, head_only, user, res)
            elif cfg.render_index or cfg.render_spa:
                self._handle_render_index(path, query_params, headers, head_only, user, res)
            elif wants_zip:
                if not cfg.allow_archive:
                    res.not_found()
                else:
                    self._handle_zip_dir(path, head_only, res)
            elif wants_search:
                self._handle_search_dir(path, query_params, head_only, user, res)
            else:
                self._handle_ls_dir(path, True, query_params, head_only, user, res)
        elif is_file:
            if has_query_flag(query_params, "edit"):
                self._handle_edit_file(path, DataKind.EDIT, head_only, user, res)
            elif has_query_flag(query_params, "view"):
                self._handle_edit_file(path, DataKind.VIEW, head_only, user, res)
            elif has_query_flag(query_params, "hash"):
                output = sha256_file(path)
                res.headers["content-type"] = _HTML_UTF8
                res.headers["content-length"] = str(len(output))
                if not head_only:
                    res.body = output
            else:
                send_file(path, headers, head_only, res)
        elif cfg.render_spa:
            if path.suffix == "":
                send_file(cfg.serve_path / INDEX_NAME, headers, head_only, res)
            else:
                res.not_found()
        elif cfg.allow_upload and req_path.endswith("/"):
            self._handle_ls_dir(path, False, query_params, head_only, user, res)
        else:
            res.not_found()

    def _handle_patch(self, path: Path, is_miss: bool, size: int, request: Request,
                      res: Response) -> None:
        if is_miss:
            res.not_found()
            return
        if not self.config.allow_upload:
            res.forbid()
            return
        try:
            offset = parse_upload_offset(request.header("x-update-range"), size)
        except ValueError as err:
            res.bad_request(str(err))
            return
        if offset is None:
            res.status = HTTPStatus.METHOD_NOT_ALLOWED
        elif offset < size and not self.config.allow_delete:
            res.forbid()
        else:
            self._handle_upload(path, offset, size, request, res)

    def _handle_upload(self, path: Path, offset: int | None, size: int, request: Request,
                       res: Response) -> None:
        _ensure_path_parent(path)
        if offset is None:
            mode, status = "wb", HTTPStatus.CREATED
        elif offset == size:
            mode, status = "ab", HTTPStatus.NO_CONTENT
        else:
            mode, status = "r+b", HTTPStatus.NO_CONTENT
        try:
            with open(path, mode) as fh:
                if mode == "r+b":
                    fh.seek(offset)
                shutil.copyfileobj(request.body, fh, BUF_SIZE)
        except Exception:
            try:
                written = path.stat().st_size
            except OSError:
                written = 0
            if offset is None and written < RESUMABLE_UPLOAD_MIN_SIZE:
                path.unlink(missing_ok=True)
            raise
        res.status = status

    def _handle_copy(self, path: Path, request: Request, res: Response) -> None:
        dest = self._extract_dest(request, res)
        if dest is None:
            return
        if stat.S_ISDIR(path.lstat().st_mode):
            res.forbid()
            return
        _ensure_path_parent(dest)
        shutil.copy(path, dest)
        res.no_content()

    def _extract_dest(self, request: Request, res: Response) -> Path | None:
        header = request.header("destination")
        resolved = None
        if header:
            try:
                resolved = self.resolve_path(urlsplit(header).path)
            except ValueError:
                resolved = None
        if resolved is None:
            res.bad_request("Invalid Destination")
            return None
        return self.join_path(resolved)

    def _handle_lock(self, req_path: str, has_auth: bool, res: Response) -> None:
        token = f"opaquelocktoken:{uuid.uuid4()}" if has_auth else str(int(time.time()))
        res.headers["content-type"] = "application/xml; charset=utf-8"
        res.headers["lock-token"] = f"<{token}>"
        res.body = (
            '<?xml version="1.0" encoding="utf-8"?>\n'
            '<D:prop xmlns:D="DAV:"><D:lockdiscovery><D:activelock>\n'
            f"<D:locktoken><D:href>{token}</D:href></D:locktoken>\n"
            f"<D:lockroot><D:href>{req_path}</D:href></D:lockroot>\n"
            "</D:activelock></D:lockdiscovery></D:prop>"
        )

    def _handle_propfind_dir(self, path: Path, request: Request, res: Response) -> None:
        depth_value = request.header("depth")
        depth = 1
        if depth_value is not None:
            if depth_value.strip() not in ("0", "1"):
                res.bad_request("Invalid depth: only 0 and 1 are allowed.")
                return
            depth = int(depth_value)
        serve_path = self.config.serve_path
        item = self._to_pathitem(path, serve_path)
        paths = [item] if item is not None else []
        if depth == 1:
            try:
                paths.extend(self._list_dir(path, serve_path))
            except OSError:
                res.forbid()
                return
        res.multistatus("".join(p.to_dav_xml(self.config.uri_prefix) for p in paths))

    def _handle_ls_dir(self, path: Path, exist: bool, query_params: dict[str, str],
                       head_only: bool, user: str | None, res: Response) -> None:
        paths: list[PathItem] = []
        if exist:
            try:
                paths = self._list_dir(path, path)
            except OSError:
                res.forbid()
                return
        self._send_index(path, paths, exist, query_params, head_only, user, res)

    def _handle_search_dir(self, path: Path, query_params: dict[str, str], head_only: bool,
                           user: str | None, res: Response) -> None:
        search = query_params["q"].lower()
        if not search:
            self._handle_ls_dir(path, True, query_params, head_only, user, res)
            return
        cfg = self.config
        found = collect_dir_entries(
            path, cfg.hidden, cfg.allow_symlink, cfg.serve_path,
            lambda entry: search in get_file_name(entry).lower(), self.running,
        )
        paths = []
        for entry in found:
            try:
                item = self._to_pathitem(entry, path)
            except (OSError, ValueError):
                continue
            if item is not None:
                paths.append(item)
        self._send_index(path, paths, True, query_params, head_only, user, res)

    def _handle_zip_dir(self, path: Path, head_only: bool, res: Response) -> None:
        filename = try_get_file_name(path)
        res.set_content_disposition(False, f"{filename}.zip")
        res.headers["content-type"] = "application/zip"
        if not head_only:
            res.body = self._zip_stream(path)

    def _zip_stream(self, path: Path) -> Iterator[bytes]:
        cfg = self.config
        with tempfile.TemporaryFile() as spool:
            try:
                zip_dir(spool, path, cfg.hidden, cfg.compress, cfg.allow_symlink,
                        cfg.serve_path, self.running)
            except Exception as err:  # noqa: BLE001 - the stream is already under way
                logger.error("Failed to zip %s, %s", path, err)
            spool.seek(0)
            yield from iter(lambda: spool.read(BUF_SIZE), b"")

    def _handle_render_index(self, path: Path, query_params: dict[str, str],
                             headers: Mapping[str, str], head_only: bool, user: str | None,
                             res: Response) -> None:
        index_path = path / INDEX_NAME
        if index_path.is_file():
            send_file(index_path, headers, head_only, res)
        elif self.config.render_try_index:
            self._handle_ls_dir(path, True, query_params, head_only, user, res)
        else:
            res.not_found()

    def _handle_edit_file(self, path: Path, kind: DataKind, head_only: bool,
                          user: str | None, res: Response) -> None:
        size = path.stat().st_size
        with open(path, "rb") as fh:
            head = fh.read(1024)
        cfg = self.config
        data = EditData(
            href=f"/{_relative_name(path, cfg.serve_path)}",
            kind=kind,
            uri_prefix=cfg.uri_prefix,
            allow_upload=cfg.allow_upload,
            allow_delete=cfg.allow_delete,
            auth=False,
            user=user,
            editable=size <= EDITABLE_TEXT_MAX_SIZE and is_text(head),
        )
        output = self._render_page(data.to_dict())
        res.headers["content-type"] = _HTML_UTF8
        res.headers["content-length"] = str(len(output.encode("utf-8")))
        res.headers["cache-control"] = "no-cache"
        if not head_only:
            res.body = output

    def _render_page(self, data: dict[str, Any]) -> str:
        encoded = json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        index_data = base64.b64encode(encoded).decode("ascii")
        return self._html.replace(
            "__ASSETS_PREFIX__", f"{self.config.uri_prefix}{self.assets_prefix}"
        ).replace("__INDEX_DATA__", index_data)

    def _send_index(self, path: Path, paths: list[PathItem], exist: bool,
                    query_params: dict[str, str], head_only: bool, user: str | None,
                    res: Response) -> None:
        cfg = self.config
        paths = sort_paths(paths, query_params.get("sort"), query_params.get("order"))
        if has_query_flag(query_params, "simple"):
            output = "".join(f"{p.name}/\n" if p.is_dir() else f"{p.name}\n" for p in paths)
            res.headers["content-type"] = _HTML_UTF8
            res.headers["content-length"] = str(len(output.encode("utf-8")))
            res.body = output
            return
        data = IndexData(
            href=f"/{_relative_name(path, cfg.serve_path)}",
            uri_prefix=cfg.uri_prefix,
            allow_upload=cfg.allow_upload,
            allow_delete=cfg.allow_delete,
            allow_search=cfg.allow_search,
            allow_archive=cfg.allow_archive,
            dir_exists=exist,
            auth=False,
            user=user,
            paths=paths,
        )
        if has_query_flag(query_params, "json"):
            res.headers["content-type"] = "application/json"
            output = json.dumps(data.to_dict(), ensure_ascii=False, indent=2)
        else:
            res.headers["content-type"] = _HTML_UTF8
            output = self._render_page(data.to_dict())
        res.headers["content-length"] = str(len(output.encode("utf-8")))
        res.headers["cache-control"] = "no-cache"
        res.headers["x-content-type-options"] = "nosniff"
        if not head_only:
            res.body = output

    def _is_root_contained(self, path: Path) -> bool:
        try:
            real = path.resolve(strict=True)
        except (OSError, RuntimeError):
            return False
        serve = self.config.serve_path
        return real == serve or serve in real.parents

    def _list_dir(self, entry_path: Path, base_path: Path) -> list[PathItem]:
        items: list[PathItem] = []
        with os.scandir(entry_path) as entries:
            for entry in entries:
                child = Path(entry.path)
                try:
                    item = self._to_pathitem(child, base_path)
                except (OSError, ValueError):
                    continue
                if item is None or is_hidden(self.config.hidden, child.name, item.is_dir()):
                    continue
                items.append(item)
        return items

    def _to_pathitem(self, path: Path, base_path: Path) -> PathItem | None:
        st = path.stat()
        is_symlink = stat.S_ISLNK(path.lstat().st_mode)
        if not self.config.allow_symlink and is_symlink and not self._is_root_contained(path):
            return None
        is_dir = stat.S_ISDIR(st.st_mode)
        if is_dir:
            path_type = PathType.SYMLINK_DIR if is_symlink else PathType.DIR
            size = 0
            with os.scandir(path) as entries:
                for entry in entries:
                    try:
                        entry_is_dir = entry.is_dir()
                    except OSError:
                        entry_is_dir = False
                    if is_hidden(self.config.hidden, entry.name, entry_is_dir):
                        continue
                    size += 1
                    if size >= MAX_SUBPATHS_COUNT:
                        break
        else:
            path_type = PathType.SYMLINK_FILE if is_symlink else PathType.FILE
            size = st.st_size
        return PathItem(
            path_type=path_type,
            name=_relative_name(path, base_path),
            mtime=max(0, st.st_mtime_ns // 1_000_000),
            size=size,
        )


__all__ = ["Request", "Server", "get_content_type"]