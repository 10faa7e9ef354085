"""Shared fixtures: in-memory store, scripted upstream, test rasterizers."""

import os
import sys
from typing import Dict, List, Optional, Union

import numpy as np
import pytest

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from common.errors import NetworkFailure
from common.types import PyramidSession
from gateway.responses import GatewayResponse
from gateway.store import MemoryBlobStore
from tiler.rasterize import ImageRasterizer


ORIGIN = "http://app.local"
UPSTREAM = "http://upstream.local"


class FakeNetwork:
    """
    Scripted upstream. `routes` maps URL -> response (or an exception to raise).
    Unknown URLs raise NetworkFailure, as if the host were unreachable.
    """

    def __init__(self, routes: Optional[Dict[str, Union[GatewayResponse, Exception]]] = None):
        self.routes: Dict[str, Union[GatewayResponse, Exception]] = dict(routes or {})
        self.calls: List[str] = []
        self.sent_headers: List[Dict[str, str]] = []
        self.online = True

    def serve(self, path: str, body: bytes, content_type: str = "text/plain", status: int = 200, **kw) -> None:
        self.routes[UPSTREAM + path] = GatewayResponse(
            status=status, headers={"Content-Type": content_type}, body=body, url=UPSTREAM + path, **kw
        )

    async def fetch(self, url: str, **kwargs) -> GatewayResponse:
        self.calls.append(url)
        self.sent_headers.append(dict(kwargs.get("headers") or {}))
        if not self.online:
            raise NetworkFailure(url)
        r = self.routes.get(url)
        if r is None:
            raise NetworkFailure(url)
        if isinstance(r, Exception):
            raise r
        return r

    def close(self) -> None:
        pass


def gradient_page(width: int, height: int) -> np.ndarray:
    """Deterministic RGB page with distinct content in every region."""
    ys, xs = np.mgrid[0:height, 0:width]
    page = np.stack([(xs * 255) // max(1, width - 1), (ys * 255) // max(1, height - 1), (xs ^ ys) & 0xFF], axis=-1)
    return page.astype(np.uint8)


@pytest.fixture
def memory_store():
    return MemoryBlobStore()


@pytest.fixture
def session():
    return PyramidSession()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def page_rasterizer():
    """1000x700 page at base scale 2.0 (maxLevel 2 with 256 px tiles)."""
    return ImageRasterizer(gradient_page(1000, 700), base_scale=2.0)
