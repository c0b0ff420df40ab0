import base64
import io
import json
import os
import zipfile
from datetime import timedelta
from email.utils import format_datetime, parsedate_to_datetime
from http import HTTPStatus
from urllib.parse import quote

import pytest

from dufserve.config import ServerConfig
from dufserve.server import Request, Server

BIN_FILE = "😀.bin"
FILES = ["test.html", "test.txt", "index.html", BIN_FILE]
DIRS = ["dir1/", "dir2/", ".git/"]
ALL = dict(allow_upload=True, allow_delete=True, allow_search=True,
           allow_symlink=True, allow_archive=True)


def _populate(directory):
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "index.html").write_text("This is index.html")
    (directory / "test.html").write_text("This is test.html")
    (directory / "test.txt").write_text("This is test.txt")
    (directory / BIN_FILE).write_bytes(b"\x00\x01\x02\x03bin")


@pytest.fixture
def root(tmp_path):
    base = tmp_path / "root"
    _populate(base)
    (base / "file\n1.txt").write_text("newline")
    for name in ("dir1", "dir2"):
        _populate(base / name)
    (base / ".git").mkdir()
    (base / ".git" / "config").write_text("cfg")
    (base / "dir4").mkdir()
    (base / "dir4" / "hidden").write_text("hidden")
    types = base / "content-types"
    types.mkdir()
    (types / "bin.tar").write_bytes(b"\x00\x01tar")
    (types / "bin").write_bytes(b"\x00\x01bin")
    (types / "file-utf8.txt").write_text("世界", encoding="utf-8")
    (types / "file").write_text("plain text")
    return base


def make(root, **options):
    return Server(ServerConfig(serve_path=root, **options))


def fetch(server, method, uri, headers=None, body=b""):
    res = server.call(Request(method, uri, headers or {}, body))
    res.read_body()
    return res


def text(res):
    return res.read_body().decode("utf-8")


def retrieve_json(content):
    start_tag = '<template id="index-data">'
    for line in content.splitlines():
        if start_tag in line:
            start = line.index(start_tag) + len(start_tag)
            end = line.index("</template>", start)
            return json.loads(base64.b64decode(line[start:end]))
    raise AssertionError("no index data")


def index_paths(content):
    return {
        f"{p['name']}/" if p["path_type"].endswith("Dir") else p["name"]
        for p in retrieve_json(content)["paths"]
    }


def assert_resp_paths(res):
    assert res.status == 200
    paths = index_paths(text(res))
    for name in FILES + DIRS:
        assert name in paths


def test_get_dir(root):
    assert_resp_paths(fetch(make(root), "GET", "/"))


def test_head_dir(root):
    res = fetch(make(root), "HEAD", "/")
    assert res.status == 200
    assert res.headers["content-type"] == "text/html; charset=utf-8"
    assert text(res) == ""


@pytest.mark.parametrize("method", ["GET", "HEAD"])
def test_dir_404(root, method):
    assert fetch(make(root), method, "/404/").status == 404


@pytest.mark.parametrize("compress", ["low", "none", "medium", "high"])
def test_get_dir_zip(root, compress):
    res = fetch(make(root, allow_archive=True, compress=compress), "GET", "/?zip")
    assert res.status == 200
    assert res.headers["content-type"] == "application/zip"
    assert "content-disposition" in res.headers
    names = zipfile.ZipFile(io.BytesIO(res.read_body())).namelist()
    assert "index.html" in names and "dir1/test.txt" in names


def test_head_dir_zip(root):
    res = fetch(make(root, **ALL), "HEAD", "/?zip")
    assert res.headers["content-type"] == "application/zip"
    assert "content-disposition" in res.headers
    assert text(res) == ""


def test_get_dir_json(root):
    res = fetch(make(root, **ALL), "GET", "/?json")
    assert res.headers["content-type"] == "application/json"
    assert isinstance(json.loads(text(res))["paths"], list)


def test_get_dir_simple(root):
    res = fetch(make(root, **ALL), "GET", "/?simple")
    assert res.headers["content-type"] == "text/html; charset=utf-8"
    assert "index.html" in text(res).split("\n")


def test_get_dir_search(root):
    res = fetch(make(root, **ALL), "GET", "/?q=test.html")
    paths = index_paths(text(res))
    assert paths
    assert all("test.html" in p for p in paths)


def test_get_dir_search2(root):
    res = fetch(make(root, **ALL), "GET", f"/?q={quote(BIN_FILE)}")
    paths = index_paths(text(res))
    assert paths
    assert all(BIN_FILE in p for p in paths)


def test_get_dir_search3(root):
    res = fetch(make(root, **ALL), "GET", "/?q=test.html&simple")
    assert "test.html" in text(res).split("\n")


def test_get_dir_search4(root):
    res = fetch(make(root, **ALL), "GET", "/dir1?q=dir1&simple")
    assert res.status == 200
    assert text(res) == ""


def test_head_dir_search(root):
    res = fetch(make(root, **ALL), "HEAD", "/?q=test.html")
    assert res.headers["content-type"] == "text/html; charset=utf-8"
    assert text(res) == ""


def test_empty_search(root):
    assert_resp_paths(fetch(make(root, **ALL), "GET", "/?q="))


@pytest.mark.parametrize("method", ["GET", "HEAD"])
def test_get_file(root, method):
    res = fetch(make(root), method, "/index.html")
    assert res.status == 200
    assert res.headers["content-type"] == "text/html; charset=UTF-8"
    assert res.headers["accept-ranges"] == "bytes"
    for name in ("etag", "last-modified", "content-length", "content-disposition"):
        assert name in res.headers
    assert text(res) == ("This is index.html" if method == "GET" else "")


def test_hash_file(root):
    res = fetch(make(root), "GET", "/index.html?hash")
    assert res.headers["content-type"] == "text/html; charset=utf-8"
    assert text(res) == "c8dd395e3202674b9512f7b7f956e0d96a8ba8f572e785b0d5413ab83766dbc4"


@pytest.mark.parametrize("method", ["GET", "HEAD"])
def test_file_404(root, method):
    assert fetch(make(root), method, "/404").status == 404


def test_get_file_emoji_path(root):
    res = fetch(make(root), "GET", f"/{quote(BIN_FILE)}")
    assert res.headers["content-disposition"] == (
        "inline; filename=\"😀.bin\"; filename*=UTF-8''%F0%9F%98%80.bin"
    )


def test_get_file_newline_path(root):
    res = fetch(make(root), "GET", "/file%0A1.txt")
    assert res.status == 200
    assert res.headers["content-disposition"] == 'inline; filename="file 1.txt"'


@pytest.mark.parametrize("name,editable", [("index.html", True), (quote(BIN_FILE), False)])
def test_get_file_edit(root, name, editable):
    res = fetch(make(root), "GET", f"/{name}?edit")
    assert res.status == 200
    assert retrieve_json(text(res))["editable"] is editable


def test_options(root):
    res = fetch(make(root), "OPTIONS", "/index.html")
    assert res.status == 200
    assert res.headers["allow"] == "GET,HEAD,PUT,OPTIONS,DELETE,PATCH,PROPFIND,COPY,MOVE,CHECKAUTH,LOGOUT"
    assert res.headers["dav"] == "1, 2, 3"


@pytest.mark.parametrize("uri", ["/file1", "/xyz/file1"])
def test_put_file(root, uri):
    server = make(root, **ALL)
    assert fetch(server, "PUT", uri, body=b"abc").status == 201
    assert fetch(server, "GET", uri).status == 200


def test_put_file_conflict_dir(root):
    assert fetch(make(root, **ALL), "PUT", "/dir1", body=b"abc").status == 403


def test_delete_file(root):
    server = make(root, **ALL)
    assert fetch(server, "DELETE", "/test.html").status == 204
    assert fetch(server, "GET", "/test.html").status == 404
    assert fetch(server, "DELETE", "/file1").status == 404


def test_get_file_content_type(root):
    server = make(root)
    expected = {
        "bin.tar": "application/x-tar",
        "bin": "application/octet-stream",
        "file-utf8.txt": "text/plain; charset=UTF-8",
        "file": "text/plain; charset=UTF-8",
    }
    for name, content_type in expected.items():
        assert fetch(server, "GET", f"/content-types/{name}").headers["content-type"] == content_type


def test_resumable_upload(root):
    server = make(root, allow_upload=True)
    assert fetch(server, "PUT", "/file1", body=b"abc").status == 201
    res = fetch(server, "PATCH", "/file1", {"X-Update-Range": "append"}, b"123")
    assert res.status == 204
    assert text(fetch(server, "GET", "/file1")) == "abc123"


def test_copy_and_move(root):
    server = make(root, **ALL)
    assert fetch(server, "COPY", "/test.txt", {"Destination": "http://localhost/copy.txt"}).status == 204
    assert (root / "copy.txt").read_text() == "This is test.txt"
    assert fetch(server, "MOVE", "/copy.txt", {"Destination": "/moved/a.txt"}).status == 204
    assert (root / "moved" / "a.txt").read_text() == "This is test.txt"
    assert not (root / "copy.txt").exists()


@pytest.mark.parametrize("hidden,exist", [((), True), (".git,index.html", False)])
def test_hidden_get_dir(root, hidden, exist):
    paths = index_paths(text(fetch(make(root, hidden=hidden), "GET", "/")))
    assert "dir1/" in paths
    assert (".git/" in paths) is exist
    assert ("index.html" in paths) is exist


@pytest.mark.parametrize("hidden,exist", [((), True), ("*.html", False)])
def test_hidden_get_dir2(root, hidden, exist):
    paths = index_paths(text(fetch(make(root, hidden=hidden), "GET", "/")))
    assert "dir1/" in paths
    assert ("index.html" in paths) is exist
    assert ("test.html" in paths) is exist


@pytest.mark.parametrize("hidden,exist", [((), True), (".git,index.html", False)])
def test_hidden_propfind_dir(root, hidden, exist):
    res = fetch(make(root, hidden=hidden), "PROPFIND", "/")
    assert res.status == 207
    body = text(res)
    assert "<D:href>/dir1/</D:href>" in body
    assert ("<D:href>/.git/</D:href>" in body) is exist
    assert ("<D:href>/index.html</D:href>" in body) is exist


@pytest.mark.parametrize("hidden,exist", [((), True), (".git,test.html", False)])
def test_hidden_search_dir(root, hidden, exist):
    res = fetch(make(root, allow_search=True, hidden=hidden), "GET", "/?q=test.html")
    assert res.status == 200
    for p in index_paths(text(res)):
        assert ("test.html" in p) is exist


@pytest.mark.parametrize("hidden,count", [("hidden/", 1), ("hidden", 0)])
def test_hidden_dir_only(root, hidden, count):
    res = fetch(make(root, hidden=hidden), "GET", "/dir4/")
    assert res.status == 200
    assert len(index_paths(text(res))) == count


@pytest.mark.parametrize("header,days,expected", [
    ("If-Unmodified-Since", 1, 200),
    ("If-Unmodified-Since", 0, 200),
    ("If-Unmodified-Since", -1, 412),
    ("If-Modified-Since", 1, 304),
    ("If-Modified-Since", 0, 304),
    ("If-Modified-Since", -1, 200),
])
def test_if_modified_since(root, header, days, expected):
    server = make(root)
    last_modified = parsedate_to_datetime(fetch(server, "HEAD", "/index.html").headers["last-modified"])
    value = format_datetime(last_modified + timedelta(days=days), usegmt=True)
    assert fetch(server, "GET", "/index.html", {header: value}).status == expected


@pytest.mark.parametrize("header,suffix,expected", [
    ("If-Match", "", 200),
    ("If-Match", "1234", 412),
    ("If-None-Match", "", 304),
    ("If-None-Match", "1234", 200),
])
def test_etag_match(root, header, suffix, expected):
    server = make(root)
    etag = fetch(server, "HEAD", "/index.html").headers["etag"]
    assert fetch(server, "GET", "/index.html", {header: etag + suffix}).status == expected


def test_cors(root):
    res = fetch(make(root, enable_cors=True), "GET", "/")
    assert res.headers["access-control-allow-origin"] == "*"
    assert res.headers["access-control-allow-credentials"] == "true"
    assert res.headers["access-control-allow-methods"] == "*"
    assert res.headers["access-control-allow-headers"] == "Authorization,*"
    assert res.headers["access-control-expose-headers"] == "Authorization,*"


@pytest.mark.parametrize("prefix,uri", [("", "/__dufs__/health"), ("xyz", "/xyz/__dufs__/health")])
def test_health(root, prefix, uri):
    assert text(fetch(make(root, path_prefix=prefix), "GET", uri)) == '{"status":"OK"}'


def test_path_prefix(root):
    server = make(root, path_prefix="xyz")
    assert_resp_paths(fetch(server, "GET", "/xyz"))
    assert text(fetch(server, "GET", "/xyz/index.html")) == "This is index.html"
    assert "<D:href>/xyz/</D:href>" in text(fetch(server, "PROPFIND", "/xyz"))


@pytest.mark.parametrize("prefix", ["", "xyz"])
def test_assets(root, prefix):
    server = make(root, path_prefix=prefix)
    base = f"/{prefix}/" if prefix else "/"
    body = text(fetch(server, "GET", base))
    assets = f"{base}{server.assets_prefix}"
    assert f'href="{assets}index.css"' in body
    assert f'href="{assets}favicon.ico"' in body
    assert f'src="{assets}index.js"' in body
    for name, content_type in [("index.js", "application/javascript; charset=UTF-8"),
                               ("index.css", "text/css; charset=UTF-8"),
                               ("favicon.ico", "image/x-icon")]:
        res = fetch(server, "GET", f"{assets}{name}")
        assert res.status == 200
        assert res.headers["content-type"] == content_type


def test_assets_override(root, tmp_path):
    assets = tmp_path / "assets"
    assets.mkdir()
    (assets / "index.html").write_text(
        '__ASSETS_PREFIX__index.js;<template id="index-data">__INDEX_DATA__</template>'
    )
    server = make(root, assets=assets)
    res = fetch(server, "GET", "/")
    assert text(res).startswith(f'/{server.assets_prefix}index.js;<template id="index-data">')
    assert_resp_paths(fetch(server, "GET", "/"))


@pytest.mark.parametrize("allow,status", [(False, 404), (True, 200)])
def test_symlink(root, tmp_path, allow, status):
    outside = tmp_path / "outside"
    _populate(outside)
    os.symlink(outside, root / "foo", target_is_directory=True)
    server = make(root, allow_symlink=allow)
    assert fetch(server, "GET", "/foo").status == status
    assert fetch(server, "GET", "/foo/index.html").status == status
    paths = index_paths(text(fetch(server, "GET", "/")))
    assert paths
    assert ("foo/" in paths) is allow


def test_resolve_and_join(root):
    server = make(root)
    assert server.resolve_path("/../etc") is None
    assert server.resolve_path("/a/b/") == "a/b"
    assert server.join_path("") == server.config.serve_path
    assert fetch(server, "GET", "/%2E%2E/x").status == HTTPStatus.BAD_REQUEST
    prefixed = make(root, path_prefix="xyz")
    assert prefixed.resolve_path("/xyz/a") == "a"
    assert prefixed.resolve_path("/other") is None


def test_unknown_method(root):
    assert fetch(make(root), "FROB", "/").status == HTTPStatus.METHOD_NOT_ALLOWED