"""
Error taxonomy shared by the pyramid builder and the cache gateway.

Build-path errors (geometry, rasterization, store writes) propagate to the
caller and abort the build. Gateway-path errors (store reads, network) are
caught by the router and turned into a response.
"""

from __future__ import annotations

from typing import Optional


class PyramidError(Exception):
    """Base class for every error raised by this project."""


class InvalidGeometry(PyramidError, ValueError):
    """Non-positive width/height/tile edge or a level outside 0..maxLevel."""


class RasterizationFailure(PyramidError):
    """The rasterizer failed, or produced a raster of the wrong size."""

    def __init__(self, message: str, *, level: Optional[int] = None):
        super().__init__(message)
        self.level = level


class BuildCancelled(PyramidError):
    """A build was cancelled between levels; levels 0..last_level are complete."""

    def __init__(self, last_level: int):
        super().__init__(f"build cancelled after level {last_level}")
        self.last_level = last_level


class StoreError(PyramidError):
    def __init__(self, message: str, *, store: str = "", key: str = ""):
        super().__init__(message)
        self.store = store
        self.key = key


class StoreWriteFailure(StoreError):
    """A put/delete did not complete. The key is left absent, never half written."""


class StoreReadFailure(StoreError):
    """A get/list failed. The router treats this as a cache miss."""


class NetworkFailure(PyramidError):
    """An upstream fetch failed (connection error, timeout, DNS...)."""

    def __init__(self, url: str, cause: Optional[BaseException] = None):
        super().__init__(f"network fetch failed: {url}" + (f" ({cause})" if cause else ""))
        self.url = url
        self.cause = cause
