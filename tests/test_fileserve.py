from datetime import timedelta
from email.utils import format_datetime
from http import HTTPStatus

import pytest

from dufserve.content import extract_cache_headers
from dufserve.fileserve import check_preconditions, send_file
from dufserve.responses import Response

CONTENT = b"0123456789abcdefghij"


@pytest.fixture
def sample(tmp_path):
    path = tmp_path / "sample.txt"
    path.write_bytes(CONTENT)
    return path


def _serve(path, headers=None, head_only=False):
    res = Response()
    send_file(path, headers or {}, head_only, res)
    return res


def test_full_file(sample):
    res = _serve(sample)
    assert res.status == HTTPStatus.OK
    assert res.read_body() == CONTENT
    assert res.headers["content-length"] == str(len(CONTENT))
    assert res.headers["accept-ranges"] == "bytes"
    etag, _ = extract_cache_headers(sample.stat())
    assert res.headers["etag"] == etag


def test_head_has_no_body(sample):
    res = _serve(sample, head_only=True)
    assert res.read_body() == b""
    assert res.headers["content-length"] == str(len(CONTENT))


def test_single_range(sample):
    res = _serve(sample, {"Range": "bytes=0-4"})
    assert res.status == HTTPStatus.PARTIAL_CONTENT
    assert res.read_body() == CONTENT[:5]
    assert res.headers["content-range"] == f"bytes 0-4/{len(CONTENT)}"


def test_unsatisfiable_range(sample):
    res = _serve(sample, {"Range": "bytes=100-"})
    assert res.status == HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE
    assert res.headers["content-range"] == f"bytes */{len(CONTENT)}"


def test_multiple_ranges(sample):
    res = _serve(sample, {"Range": "bytes=0-1, 5-6"})
    assert res.status == HTTPStatus.PARTIAL_CONTENT
    assert res.headers["content-type"].startswith("multipart/byteranges; boundary=")
    body = res.read_body()
    assert CONTENT[0:2] in body and CONTENT[5:7] in body
    assert res.headers["content-length"] == str(len(body))


def test_if_range_mismatch_sends_whole_file(sample):
    res = _serve(sample, {"Range": "bytes=0-4", "If-Range": '"other"'})
    assert res.status == HTTPStatus.OK
    assert res.read_body() == CONTENT


def test_preconditions(sample):
    etag, last_modified = extract_cache_headers(sample.stat())
    assert check_preconditions({"If-None-Match": etag}, etag, last_modified) == HTTPStatus.NOT_MODIFIED
    assert check_preconditions({"If-Match": etag + "x"}, etag, last_modified) == HTTPStatus.PRECONDITION_FAILED
    assert check_preconditions({"If-Match": "*"}, etag, last_modified) is None
    same = format_datetime(last_modified, usegmt=True)
    assert check_preconditions({"If-Modified-Since": same}, etag, last_modified) == HTTPStatus.NOT_MODIFIED
    earlier = format_datetime(last_modified - timedelta(days=1), usegmt=True)
    assert check_preconditions({"If-Unmodified-Since": earlier}, etag, last_modified) == HTTPStatus.PRECONDITION_FAILED


def test_precondition_stops_send(sample):
    etag, _ = extract_cache_headers(sample.stat())
    res = _serve(sample, {"if-none-match": etag})
    assert res.status == HTTPStatus.NOT_MODIFIED
    assert res.read_body() == b""


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        _serve(tmp_path / "nope")