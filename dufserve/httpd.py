"""HTTP front end: socket servers, request handler and the command line."""

from __future__ import annotations

import argparse
import logging
import signal
import socket
import socketserver
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import BinaryIO, Sequence

from dufserve.config import ServerConfig
from dufserve.responses import Response
from dufserve.server import Request, Server
from dufserve.walk import Compress

logger = logging.getLogger(__name__)

_BUF_SIZE = 65536
_DRAIN_LIMIT = 1 << 20
_DEFAULT_PORT = 5000
_BODYLESS_STATUSES = (204, 304)


class _LengthReader:
    """Reads at most ``length`` bytes of a request body from the connection."""

    def __init__(self, stream: BinaryIO, length: int) -> None:
        self._stream = stream
        self.remaining = length

    def read(self, size: int = -1) -> bytes:
        if self.remaining <= 0:
            return b""
        want = self.remaining if size is None or size < 0 else min(size, self.remaining)
        data = self._stream.read(want)
        if not data:
            self.remaining = 0
            raise ConnectionError("request body ended early")
        self.remaining -= len(data)
        return data


class _ChunkedReader:
    """Decodes a ``Transfer-Encoding: chunked`` request body on the fly."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._pending = 0
        self.done = False

    def _next_chunk(self) -> None:
        line = self._stream.readline(_BUF_SIZE)
        if not line:
            raise ConnectionError("chunked body ended early")
        size_text = line.split(b";", 1)[0].strip()
        try:
            size = int(size_text, 16)
        except ValueError as err:
            raise ConnectionError("invalid chunk size") from err
        if size == 0:
            while self._stream.readline(_BUF_SIZE) not in (b"\r\n", b"\n", b""):
                pass
            self.done = True
        self._pending = size

    def read(self, size: int = -1) -> bytes:
        out = bytearray()
        while not self.done and (size is None or size < 0 or len(out) < size):
            if self._pending == 0:
                self._next_chunk()
                continue
            want = self._pending
            if size is not None and size >= 0:
                want = min(want, size - len(out))
            data = self._stream.read(want)
            if not data:
                raise ConnectionError("chunked body ended early")
            out += data
            self._pending -= len(data)
            if self._pending == 0:
                self._stream.readline(_BUF_SIZE)
        return bytes(out)


class _HTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], app: Server) -> None:
        self.address_family = socket.AF_INET6 if ":" in address[0] else socket.AF_INET
        self.app = app
        super().__init__(address, RequestHandler)

    def server_bind(self) -> None:
        if self.address_family == socket.AF_INET6 and hasattr(socket, "IPV6_V6ONLY"):
            self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        socketserver.TCPServer.server_bind(self)
        host, port = self.server_address[:2]
        self.server_name = host
        self.server_port = port


class RequestHandler(BaseHTTPRequestHandler):
    """Hands every request, whatever its method, to the file server."""

    protocol_version = "HTTP/1.1"
    server_version = "dufserve"

    def __getattr__(self, name: str):
        if name.startswith("do_"):
            return self._dispatch
        raise AttributeError(name)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        logger.debug(format, *args)

    def _dispatch(self) -> None:
        body = self._request_body()
        if body is None:
            return
        request = Request(
            method=self.command,
            uri=self.path,
            headers=dict(self.headers.items()),
            body=body,
        )
        response = self.server.app.call(request, self.client_address[0])
        self._drain(body)
        self._write_response(response, self.command == "HEAD")

    def _request_body(self) -> _LengthReader | _ChunkedReader | None:
        encoding = self.headers.get("Transfer-Encoding", "")
        if "chunked" in encoding.lower():
            return _ChunkedReader(self.rfile)
        length_text = self.headers.get("Content-Length")
        if length_text is None:
            return _LengthReader(self.rfile, 0)
        try:
            length = int(length_text)
        except ValueError:
            length = -1
        if length < 0:
            self.send_error(400, "Invalid Content-Length")
            self.close_connection = True
            return None
        return _LengthReader(self.rfile, length)

    def _drain(self, body: _LengthReader | _ChunkedReader) -> None:
        drained = 0
        try:
            while drained <= _DRAIN_LIMIT:
                data = body.read(_BUF_SIZE)
                if not data:
                    return
                drained += len(data)
        except ConnectionError:
            pass
        self.close_connection = True

    def _write_response(self, response: Response, head_only: bool) -> None:
        status = response.status
        headers = response.headers
        body = response.body
        streamed = not isinstance(body, bytes)
        bodiless = head_only or status in _BODYLESS_STATUSES or status < 200
        chunked = False

        if status in _BODYLESS_STATUSES:
            headers.pop("content-length", None)
        elif not streamed:
            if "content-length" not in headers:
                headers["Content-Length"] = str(len(body))
        elif "content-length" not in headers and not head_only:
            if self.request_version == "HTTP/1.1":
                headers["Transfer-Encoding"] = "chunked"
                chunked = True
            else:
                self.close_connection = True

        self.send_response(status)
        for name, value in headers.items():
            self.send_header(name, value)
        self.end_headers()

        try:
            if bodiless:
                return
            if not streamed:
                self.wfile.write(body)
                return
            for chunk in body:
                if not chunk:
                    continue
                if chunked:
                    self.wfile.write(b"%x\r\n" % len(chunk) + chunk + b"\r\n")
                else:
                    self.wfile.write(chunk)
            if chunked:
                self.wfile.write(b"0\r\n\r\n")
        except Exception as err:  # noqa: BLE001 - the status line is already out
            logger.error("Failed to send response body: %s", err)
            self.close_connection = True
        finally:
            close = getattr(body, "close", None)
            if streamed and callable(close):
                close()


def make_http_server(config: ServerConfig, host: str, port: int) -> ThreadingHTTPServer:
    """Bind a threading HTTP server for ``config`` on ``host:port``; raises ``OSError``."""
    return _HTTPServer((host.strip("[]"), port), Server(config))


def _display_url(host: str, port: int, uri_prefix: str) -> str:
    host = host.strip("[]")
    if host == "0.0.0.0":
        host = "127.0.0.1"
    elif host == "::":
        host = "::1"
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}{uri_prefix}"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dufserve", description="A file server with upload, search and WebDAV support."
    )
    parser.add_argument("serve_path", nargs="?", default=".", help="directory or file to serve")
    parser.add_argument("-b", "--bind", action="append", default=[],
                        help="address to listen on (repeatable)")
    parser.add_argument("-p", "--port", type=int, default=_DEFAULT_PORT, help="port to listen on")
    parser.add_argument("--path-prefix", default="", help="URL path prefix")
    parser.add_argument("--hidden", default="", help="comma separated glob patterns to hide")
    parser.add_argument("-A", "--allow-all", action="store_true", help="allow all operations")
    parser.add_argument("--allow-upload", action="store_true")
    parser.add_argument("--allow-delete", action="store_true")
    parser.add_argument("--allow-search", action="store_true")
    parser.add_argument("--allow-symlink", action="store_true")
    parser.add_argument("--allow-archive", action="store_true")
    parser.add_argument("--enable-cors", action="store_true")
    parser.add_argument("--render-index", action="store_true")
    parser.add_argument("--render-try-index", action="store_true")
    parser.add_argument("--render-spa", action="store_true")
    parser.add_argument("--assets", type=Path, default=None, help="custom assets directory")
    parser.add_argument("--compress", choices=[c.value for c in Compress], default="low",
                        help="zip compression level")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the file server until interrupted; returns the exit status."""
    args = _build_parser().parse_args(argv)
    everything = args.allow_all
    try:
        config = ServerConfig(
            serve_path=Path(args.serve_path),
            path_prefix=args.path_prefix,
            hidden=args.hidden,
            allow_upload=everything or args.allow_upload,
            allow_delete=everything or args.allow_delete,
            allow_search=everything or args.allow_search,
            allow_symlink=everything or args.allow_symlink,
            allow_archive=everything or args.allow_archive,
            enable_cors=args.enable_cors,
            render_index=args.render_index,
            render_try_index=args.render_try_index,
            render_spa=args.render_spa,
            assets=args.assets,
            compress=Compress(args.compress),
        )
    except ValueError as err:
        print(f"error: {err}", file=sys.stderr)
        return 1

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s - %(message)s")

    defaulted = not args.bind
    hosts = args.bind or ["0.0.0.0", "::"]
    running = threading.Event()
    running.set()
    servers: list[tuple[str, ThreadingHTTPServer]] = []
    for host in hosts:
        try:
            httpd = make_http_server(config, host, args.port)
        except OSError as err:
            if defaulted and ":" in host and servers:
                continue
            print(f"Failed to bind `{host}:{args.port}`, {err}", file=sys.stderr)
            for _, started in servers:
                started.server_close()
            return 1
        httpd.app.running = running
        servers.append((host, httpd))

    print("Listening on:")
    for host, httpd in servers:
        print(f"  {_display_url(host, httpd.server_address[1], config.uri_prefix)}")
    print(flush=True)

    stop = threading.Event()
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
    threads = [
        threading.Thread(target=httpd.serve_forever, daemon=True) for _, httpd in servers
    ]
    for thread in threads:
        thread.start()
    try:
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        running.clear()
        for _, httpd in servers:
            httpd.shutdown()
            httpd.server_close()
    return 0


if __name__ == "__main__":
    sys.exit(main())