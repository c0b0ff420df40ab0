"""A file server with directory listings, uploads, search, ZIP archives and WebDAV."""

__version__ = "0.1.0"