# src/__init__.py - v1
"""chunkzip: chunked ZIP archive generation over object storage."""

from chunkzip.version import __version__

__all__ = ["__version__"]
