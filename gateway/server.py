from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from common.config import load_config
from common.errors import NetworkFailure
from common.logging_setup import get_logger, setup_logging
from common.types import PyramidManifest, PyramidSession
from gateway.lifecycle import LifecycleManager
from gateway.network import NetworkClient
from gateway.responses import REASON_HEADER, ContentRequest, GatewayResponse
from gateway.router import Router, RouteRules, request_path
from gateway.store import BlobStore, FileBlobStore
from tiler.builder import BuildStatus, CancelToken, PyramidBuilder, run_build
from tiler.rasterize import open_rasterizer


log = get_logger("gateway.server")

CONTROL_PREFIX = "/_offline"


class BuildRequest(BaseModel):
    source: str = Field(..., description="Server-local path to a PDF or page image")
    page: int = Field(1, ge=1)
    tile_size: Optional[int] = Field(None, gt=0)
    scale: Optional[float] = Field(None, gt=0)


class ActivateRequest(BaseModel):
    version: Optional[str] = None


class GatewayState:
    """Everything the endpoints share; one instance per app."""

    def __init__(self, cfg: Dict[str, Any], store: Optional[BlobStore] = None, network: Optional[NetworkClient] = None):
        tiles = cfg["tiles"]
        assets = cfg["assets"]
        self.cfg = cfg
        self.session = PyramidSession.from_config(cfg)
        self.store = store or FileBlobStore(tiles["store_root"])
        self.network = network or NetworkClient(timeout=float(cfg["network"]["timeout_s"]))
        self.upstream = str(cfg["network"]["upstream"]).rstrip("/")
        self.origin = str(cfg["gateway"]["public_origin"]).rstrip("/")
        self.lifecycle = LifecycleManager(
            self.store,
            tile_store=self.session.tile_store,
            asset_prefix=str(assets["prefix"]),
            version=str(assets["version"]),
        )
        self.router = Router(
            self.store,
            RouteRules(
                session=self.session,
                build_prefix=str(assets["build_prefix"]),
                offline_page=str(assets["offline_page"]),
            ),
            origin=self.origin,
            upstream=self.upstream,
            fetch=self.network.fetch,
            asset_store=self.lifecycle.asset_store,
            tile_network_fallback=bool(tiles.get("network_fallback", False)),
        )
        self.builder = PyramidBuilder(self.store, self.session, workers=int(tiles.get("workers", 4)))
        self.build_status = BuildStatus()
        self.build_task: Optional[asyncio.Task] = None
        self.build_cancel: Optional[CancelToken] = None


def _to_http(resp: GatewayResponse) -> Response:
    if resp.is_network_error:
        # distinct from a textual 404: no body, gateway error status
        return Response(status_code=502, headers={REASON_HEADER: "network_error"})
    headers = {k: v for k, v in resp.headers.items() if k.lower() != "content-type"}
    return Response(content=resp.body, status_code=resp.status, headers=headers, media_type=resp.content_type)


def _is_navigation(request: Request) -> bool:
    mode = request.headers.get("sec-fetch-mode")
    if mode is not None:
        return mode == "navigate"
    return request.method == "GET" and "text/html" in request.headers.get("accept", "")


def create_app(cfg: Optional[Dict[str, Any]] = None, *, store: Optional[BlobStore] = None, network: Optional[NetworkClient] = None) -> FastAPI:
    cfg = cfg or load_config()
    state = GatewayState(cfg, store=store, network=network)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if cfg["gateway"].get("lifecycle_on_startup", True):
            version = state.lifecycle.current.version
            await state.lifecycle.on_install(version, state.network.fetch, state.upstream, cfg["assets"].get("precache", []))
            await state.lifecycle.on_activate(version)
        yield
        await state.router.drain()
        state.network.close()

    app = FastAPI(title="Offline Tile Gateway", version="1.0.0", lifespan=lifespan)
    app.state.gateway = state

    # (Optional) CORS for local dev tools
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        present = await state.store.has(state.session.tile_store, state.session.manifest_path)
        return {
            "status": "ok",
            "generation": state.lifecycle.current.version,
            "stores": sorted(await state.store.store_names()),
            "pyramid": {"present": present},
            "build": state.build_status.state,
        }

    @app.get("/stats")
    async def stats():
        keys = await state.store.list_keys(state.session.tile_store)
        manifest = None
        entry = await state.store.get(state.session.tile_store, state.session.manifest_path)
        if entry is not None:
            manifest = PyramidManifest.from_json(entry.payload).to_dict()["tileSources"]
        return {
            "tiles": len(keys - {state.session.manifest_path}),
            "manifest": manifest,
            "asset_entries": len(await state.store.list_keys(state.lifecycle.asset_store())),
            "pending_refreshes": state.router.pending_refreshes,
            "upstream_calls": state.network.calls,
        }

    # -------- lifecycle signals --------

    @app.post(f"{CONTROL_PREFIX}/install")
    async def install(body: Optional[ActivateRequest] = None):
        version = (body.version if body else None) or state.lifecycle.current.version
        stored = await state.lifecycle.on_install(version, state.network.fetch, state.upstream, cfg["assets"].get("precache", []))
        return {"version": version, "precached": sorted(stored)}

    @app.post(f"{CONTROL_PREFIX}/activate")
    async def activate(body: Optional[ActivateRequest] = None):
        deleted = await state.lifecycle.on_activate(body.version if body else None)
        return {"version": state.lifecycle.current.version, "deleted": sorted(deleted)}

    @app.post(f"{CONTROL_PREFIX}/clear")
    async def clear():
        if state.build_task is not None and not state.build_task.done():
            return JSONResponse({"error": "build_in_progress"}, status_code=409)
        deleted = await state.lifecycle.on_clear_requested()
        return {"deleted": sorted(deleted)}

    # -------- pyramid build --------

    @app.post(f"{CONTROL_PREFIX}/build", status_code=202)
    async def start_build(body: BuildRequest):
        if state.build_task is not None and not state.build_task.done():
            return JSONResponse({"error": "build_in_progress"}, status_code=409)
        tiles = cfg["tiles"]
        try:
            rasterizer = await asyncio.to_thread(
                open_rasterizer, body.source, body.page, float(body.scale or tiles["base_scale"])
            )
        except Exception:
            log.exception("cannot open build source", extra={"extra": {"source": body.source}})
            return JSONResponse({"error": "conversion_failed", "detail": "conversion failed"}, status_code=422)
        state.build_cancel = CancelToken()
        state.build_task = asyncio.create_task(
            run_build(
                state.builder,
                rasterizer,
                int(body.tile_size or tiles["tile_size"]),
                state.build_status,
                cancel=state.build_cancel,
            )
        )
        return {"state": "running"}

    @app.get(f"{CONTROL_PREFIX}/build")
    async def build_status():
        return state.build_status.to_dict()

    @app.post(f"{CONTROL_PREFIX}/build/cancel")
    async def cancel_build():
        if state.build_task is None or state.build_task.done() or state.build_cancel is None:
            return JSONResponse({"error": "no_build_running"}, status_code=409)
        state.build_cancel.cancel()
        return {"state": "cancelling"}

    # -------- everything else goes through the router --------

    @app.api_route("/{path:path}", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    async def route(request: Request, path: str):
        path_qs = request_path(str(request.url))
        body = await request.body()
        creq = ContentRequest(
            url=state.origin + path_qs,
            method=request.method,
            navigate=_is_navigation(request),
            headers={k: v for k, v in request.headers.items() if k.lower() not in ("host", "content-length")},
            body=body,
        )
        resp = await state.router.handle(creq)
        if resp is None:
            try:
                resp = await state.network.fetch(
                    state.upstream + path_qs, method=request.method, headers=creq.headers, body=body
                )
            except NetworkFailure:
                return JSONResponse({"error": "upstream_unreachable"}, status_code=502)
        return _to_http(resp)

    return app


# -------- local dev entrypoint --------
if __name__ == "__main__":
    P = load_config()
    setup_logging(P["logging"]["level"], force=True)
    uvicorn.run(create_app(P), host=P["gateway"]["host"], port=int(P["gateway"]["port"]))
