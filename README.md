# dufserve

A small, self-contained file server. Point it at a directory (or a single
file) and it serves the contents over HTTP with a browsable index, and
answers enough WebDAV requests for desktop clients to mount it.

## Features

- Directory listings as an HTML page, JSON (`?json`) or plain text
  (`?simple`, one name per line, directories ending in `/`), sortable with
  `?sort=name|mtime|size` and `&order=desc`. Directories always come first.
- File downloads with `ETag` / `Last-Modified` headers, conditional requests
  (`If-Match`, `If-None-Match`, `If-Modified-Since`, `If-Unmodified-Since`,
  `If-Range`) and single or multiple byte ranges.
- Content types guessed from the file name, with a detected charset for
  text files.
- Uploads with `PUT`, resumable writes with `PATCH` and an `X-Update-Range`
  header (`append` or a `bytes=` range), deletion, `MKCOL`, `COPY` and
  `MOVE`, each only when the matching option allows it.
- Name search (`?q=...`) and on-the-fly ZIP download of a directory
  (`?zip`).
- SHA-256 of a file with `?hash`; `?edit` and `?view` pages for a file.
- WebDAV `PROPFIND` (depth 0 or 1), `PROPPATCH`, `LOCK` and `UNLOCK`.
- Hidden-name patterns (glob style; a pattern ending in `/` hides
  directories only), symlinks kept inside the served directory unless
  allowed, optional CORS headers and a health check at `__dufs__/health`
  that answers `{"status":"OK"}`.

## Installation

```
pip install dufserve
```

## Running

The package installs one command, `dufserve`:

```
dufserve [SERVE_PATH] [options]
```

`SERVE_PATH` defaults to the current directory and may also be a single
file. The addresses being listened on are printed at start-up.

| Option | Meaning |
| --- | --- |
| `-b`, `--bind ADDR` | Address to listen on; repeatable. Defaults to `0.0.0.0` and `::`. |
| `-p`, `--port PORT` | Port to listen on (default 5000). |
| `--path-prefix PREFIX` | Serve everything under `/PREFIX/`. |
| `--hidden PATTERNS` | Comma separated glob patterns to hide. |
| `-A`, `--allow-all` | Same as all of the `--allow-*` options below. |
| `--allow-upload` | Allow `PUT`, `PATCH`, `MKCOL`, `COPY` and `MOVE`. |
| `--allow-delete` | Allow `DELETE`, overwriting and `MOVE`. |
| `--allow-search` | Allow `?q=` searches. |
| `--allow-symlink` | Follow symlinks that point outside the served directory. |
| `--allow-archive` | Allow `?zip` downloads. |
| `--enable-cors` | Add permissive CORS headers to every response. |
| `--render-index` | Serve `index.html` for a directory instead of a listing. |
| `--render-try-index` | Serve `index.html` if present, else the listing. |
| `--render-spa` | Like `--render-index`, and serve the root `index.html` for missing paths without an extension. |
| `--assets DIR` | Use `index.html` and other page assets from `DIR`. |
| `--compress LEVEL` | ZIP compression: `none`, `low`, `medium` or `high` (default `low`). |

`dufserve --help` prints the same list.

## Using it from Python

Build a `ServerConfig` from `dufserve.config` and hand it to
`make_http_server` from `dufserve.httpd` together with a host and port. It
returns a `ThreadingHTTPServer` that has already been bound:

```python
from pathlib import Path

from dufserve.config import ServerConfig
from dufserve.httpd import make_http_server

config = ServerConfig(serve_path=Path("."), allow_search=True)
httpd = make_http_server(config, "127.0.0.1", 5000)
httpd.serve_forever()
```

Without any socket, `dufserve.server.Server(config).call(request)` takes a
`dufserve.server.Request` (method, URI, headers, body) and returns a
`dufserve.responses.Response`; `Response.read_body()` gives the whole body
as bytes.

## What it does not do

- There are no user accounts, passwords or access tokens: every client gets
  the same rights, set only by the `--allow-*` options.
- It speaks plain HTTP only; there is no TLS support.
- Options come from the command line only; there is no configuration file.
- Locks are not real: `LOCK` hands out a token and `UNLOCK` succeeds, but
  nothing is ever locked.

## Development

```
pip install -e ".[test]"
pytest
```