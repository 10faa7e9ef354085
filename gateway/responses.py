from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from common.types import StoreEntry


REASON_HEADER = "X-Offline-Reason"
SOURCE_HEADER = "X-Offline-Source"  # cache | network | fallback
TILE_CACHE_CONTROL = "public, max-age=31536000, immutable"


@dataclass(frozen=True, slots=True)
class ContentRequest:
    """
    One content request as seen by the router.

    Attributes:
        url: absolute URL, e.g. http://127.0.0.1:8000/tiles/2/3_1.png
        method: HTTP method (only GET is ever intercepted)
        navigate: True for top-level page navigations
    """
    url: str
    method: str = "GET"
    navigate: bool = False
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass(frozen=True, slots=True)
class GatewayResponse:
    """
    Response returned by the router. `kind == "error"` is a network-error
    result carrying no HTTP status, distinct from any textual 404/503.
    """
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    redirected: bool = False
    url: str = ""
    kind: str = "basic"

    @property
    def ok(self) -> bool:
        return self.kind != "error" and 200 <= self.status < 300

    @property
    def is_network_error(self) -> bool:
        return self.kind == "error"

    @property
    def content_type(self) -> str:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return v
        return "application/octet-stream"

    @property
    def reason(self) -> Optional[str]:
        return self.headers.get(REASON_HEADER)

    def with_source(self, source: str) -> "GatewayResponse":
        return replace(self, headers={**self.headers, SOURCE_HEADER: source})

    # -------- constructors --------

    @classmethod
    def from_entry(cls, entry: StoreEntry, cache_control: Optional[str] = None) -> "GatewayResponse":
        headers = {"Content-Type": entry.content_type, SOURCE_HEADER: "cache"}
        if cache_control:
            headers["Cache-Control"] = cache_control
        return cls(
            status=200,
            headers=headers,
            body=entry.payload,
            url=entry.key,
        )

    @classmethod
    def text(cls, status: int, message: str, reason: str) -> "GatewayResponse":
        return cls(
            status=status,
            headers={"Content-Type": "text/plain; charset=utf-8", REASON_HEADER: reason},
            body=message.encode("utf-8"),
        )

    @classmethod
    def offline(cls) -> "GatewayResponse":
        return cls.text(503, "Offline", "offline")

    @classmethod
    def network_error(cls) -> "GatewayResponse":
        return cls(status=0, headers={REASON_HEADER: "network_error"}, kind="error")


def normalize_redirect(resp: GatewayResponse) -> GatewayResponse:
    """
    Strip redirect provenance before a response is stored: a fresh 200 with
    the original headers and the fully read body.
    """
    if not resp.redirected:
        return resp
    return GatewayResponse(status=200, headers=dict(resp.headers), body=bytes(resp.body), url=resp.url)
