from __future__ import annotations

"""
Upstream HTTP access for the gateway.

`requests` is blocking, so every fetch runs in a worker thread; the
configured timeout bounds each call. Connection errors, timeouts and other
transport problems surface as NetworkFailure. HTTP error statuses are not
failures: a 404 from upstream is a valid response.
"""

import asyncio
import logging
from typing import Dict, Optional

import requests

from common.errors import NetworkFailure
from gateway.responses import GatewayResponse


log = logging.getLogger(__name__)

# hop-by-hop and body-framing headers that must not be replayed from a stored copy
_DROP_HEADERS = {
    "connection",
    "keep-alive",
    "transfer-encoding",
    "content-encoding",
    "content-length",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "upgrade",
}


class NetworkClient:
    def __init__(self, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        self.calls = 0

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
    ) -> GatewayResponse:
        self.calls += 1
        return await asyncio.to_thread(self._fetch_sync, url, method, headers or {}, body)

    def _fetch_sync(self, url: str, method: str, headers: Dict[str, str], body: bytes) -> GatewayResponse:
        fwd = {k: v for k, v in headers.items() if k.lower() not in _DROP_HEADERS and k.lower() != "host"}
        try:
            r = self.session.request(
                method,
                url,
                headers=fwd,
                data=body or None,
                timeout=self.timeout,
                allow_redirects=True,
            )
            content = r.content  # read the body fully while the connection is open
        except requests.RequestException as e:
            log.warning("upstream fetch failed: %s %s (%s)", method, url, e)
            raise NetworkFailure(url, e) from e
        out_headers = {k: v for k, v in r.headers.items() if k.lower() not in _DROP_HEADERS}
        return GatewayResponse(
            status=r.status_code,
            headers=out_headers,
            body=content,
            redirected=bool(r.history),
            url=r.url,
        )

    def close(self) -> None:
        self.session.close()
