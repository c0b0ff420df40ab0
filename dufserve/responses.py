"""HTTP response object with the status helpers the file server relies on."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, MutableMapping
from http import HTTPStatus

from dufserve.utils import encode_uri

_WEBDAV_ALLOW = "GET,HEAD,PUT,OPTIONS,DELETE,PATCH,PROPFIND,COPY,MOVE,CHECKAUTH,LOGOUT"
_WEBDAV_DAV = "1, 2, 3"
_XML_CONTENT_TYPE = "application/xml; charset=utf-8"

BodyType = bytes | Iterable[bytes]


class _HeaderMap(MutableMapping[str, str]):
    """Case-insensitive header mapping that keeps the last spelling of each name."""

    def __init__(self, items: Mapping[str, str] | None = None) -> None:
        self._items: dict[str, tuple[str, str]] = {}
        if items:
            self.update(items)

    def __setitem__(self, key: str, value: str) -> None:
        self._items[key.lower()] = (key, str(value))

    def __getitem__(self, key: str) -> str:
        return self._items[key.lower()][1]

    def __delitem__(self, key: str) -> None:
        del self._items[key.lower()]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._items

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({dict(self.items())!r})"


class Response:
    """A response under construction: status code, headers and body.

    The body is either ``bytes`` or an iterable yielding ``bytes`` chunks for
    streamed content. Assigning a ``str`` stores its UTF-8 encoding.
    """

    def __init__(
        self,
        status: int = HTTPStatus.OK,
        headers: Mapping[str, str] | None = None,
        body: BodyType | str = b"",
    ) -> None:
        self.status = int(status)
        self.headers: MutableMapping[str, str] = _HeaderMap(headers)
        self.body = body

    @property
    def body(self) -> BodyType:
        return self._body

    @body.setter
    def body(self, value: BodyType | str) -> None:
        if isinstance(value, str):
            self._body: BodyType = value.encode("utf-8")
        elif isinstance(value, (bytes, bytearray, memoryview)):
            self._body = bytes(value)
        else:
            self._body = value

    def read_body(self) -> bytes:
        """Return the whole body, draining a streamed body into memory."""
        if not isinstance(self._body, bytes):
            self._body = b"".join(self._body)
        return self._body

    def forbid(self) -> None:
        self.status = HTTPStatus.FORBIDDEN
        self.body = "Forbidden"

    def not_found(self) -> None:
        self.status = HTTPStatus.NOT_FOUND
        self.body = "Not Found"

    def bad_request(self, message: str) -> None:
        self.status = HTTPStatus.BAD_REQUEST
        if message:
            self.body = message

    def no_content(self) -> None:
        self.status = HTTPStatus.NO_CONTENT

    def add_cors(self) -> None:
        self.headers["Access-Control-Allow-Origin"] = "*"
        self.headers["Access-Control-Allow-Credentials"] = "true"
        self.headers["Access-Control-Allow-Methods"] = "*"
        self.headers["Access-Control-Allow-Headers"] = "Authorization,*"
        self.headers["Access-Control-Expose-Headers"] = "Authorization,*"

    def set_webdav_headers(self) -> None:
        self.headers["Allow"] = _WEBDAV_ALLOW
        self.headers["DAV"] = _WEBDAV_DAV

    def multistatus(self, content: str) -> None:
        """Turn this into a WebDAV 207 response wrapping ``content``."""
        self.status = HTTPStatus.MULTI_STATUS
        self.headers["content-type"] = _XML_CONTENT_TYPE
        self.body = (
            '<?xml version="1.0" encoding="utf-8" ?>\n'
            '<D:multistatus xmlns:D="DAV:">\n'
            f"{content}\n"
            "</D:multistatus>"
        )

    def set_content_disposition(self, inline: bool, filename: str) -> None:
        """Set ``Content-Disposition``, adding an RFC 5987 name for non-ASCII files."""
        kind = "inline" if inline else "attachment"
        cleaned = "".join(
            " " if (ord(ch) < 0x20 or ord(ch) == 0x7F) and ch != "\t" else ch
            for ch in filename
        )
        if cleaned.isascii():
            value = f'{kind}; filename="{cleaned}"'
        else:
            value = f"{kind}; filename=\"{cleaned}\"; filename*=UTF-8''{encode_uri(cleaned)}"
        self.headers["Content-Disposition"] = value