"""Settings that control what the file server exposes and allows."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from dufserve.utils import encode_uri, get_file_name
from dufserve.walk import Compress


@dataclass
class ServerConfig:
    """Server settings; ``serve_path`` is resolved and must exist.

    ``uri_prefix`` and ``path_is_file`` are derived from ``path_prefix`` and
    ``serve_path``. ``hidden`` may be given as a comma separated string.
    """

    serve_path: Path
    path_prefix: str = ""
    hidden: Sequence[str] = ()
    allow_upload: bool = False
    allow_delete: bool = False
    allow_search: bool = False
    allow_symlink: bool = False
    allow_archive: bool = False
    enable_cors: bool = False
    render_index: bool = False
    render_try_index: bool = False
    render_spa: bool = False
    assets: Path | None = None
    compress: Compress = Compress.LOW
    uri_prefix: str = field(init=False)
    path_is_file: bool = field(init=False)

    def __post_init__(self) -> None:
        path = Path(self.serve_path)
        if not path.exists():
            raise ValueError(f"Path `{path}` doesn't exist")
        self.serve_path = path.resolve()
        self.path_is_file = self.serve_path.is_file()

        self.path_prefix = self.path_prefix.strip("/")
        self.uri_prefix = f"/{self.path_prefix}/" if self.path_prefix else "/"

        if isinstance(self.hidden, str):
            self.hidden = tuple(part for part in self.hidden.split(",") if part)
        else:
            self.hidden = tuple(self.hidden)

        self.compress = Compress(self.compress)

        if self.assets is not None:
            assets = Path(self.assets)
            if not assets.is_dir():
                raise ValueError(f"Path `{assets}` doesn't exist or is not a directory")
            self.assets = assets.resolve()

    def single_file_paths(self) -> list[str]:
        """Request paths that address the served file when serving a single file."""
        if not self.path_is_file:
            return []
        return [
            self.uri_prefix,
            self.uri_prefix[:-1],
            encode_uri(f"{self.uri_prefix}{get_file_name(self.serve_path)}"),
        ]