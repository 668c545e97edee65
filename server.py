from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from wsdrop_backend.config import LOG_LEVEL, SSL_CERTFILE, SSL_KEYFILE, ServerSettings
from wsdrop_backend.exceptions import NotFoundFault, NotReadyFault
from wsdrop_backend.logging_setup import setup_logging
from wsdrop_backend.registry import Registry
from wsdrop_backend.retrieval import content_disposition, retrieve
from wsdrop_backend.session import TaskSet, UploadSession
from wsdrop_backend.transport import StarletteConnection


BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger("wsdrop.server")


def create_app(
    settings: Optional[ServerSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    log_level: Optional[str] = None,
) -> FastAPI:
    """Build the upload/download application.

    ``transport`` replaces the network layer of the outbound fetch client
    (tests pass an ``httpx.MockTransport``). When ``log_level`` is given the
    JSON log handler is installed at startup, whichever way uvicorn was
    launched.
    """
    settings = settings or ServerSettings.from_env()
    registry = Registry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if log_level:
            setup_logging(log_level)
        settings.files_root.mkdir(parents=True, exist_ok=True)
        fetches = TaskSet()
        client = httpx.AsyncClient(
            timeout=settings.fetch_timeout,
            follow_redirects=True,
            transport=transport,
        )
        app.state.fetches = fetches
        app.state.http_client = client
        logger.info("Storing uploads under %s", settings.files_root)
        try:
            yield
        finally:
            # Unfinished fetches are settled as failed by their own cleanup.
            await fetches.cancel_all()
            await client.aclose()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.log_level = log_level
    app.state.registry = registry

    # The upload page may be opened straight from disk (Origin: null).
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _no_cache_static_assets(request: Request, call_next):
        response = await call_next(request)
        path = (request.url.path or "").lower()
        if path.endswith((".css", ".js", ".html")) or path == "/":
            response.headers["Cache-Control"] = "no-store"
        return response

    @app.websocket("/ws/upload/")
    async def ws_upload(websocket: WebSocket) -> None:
        session = UploadSession(
            StarletteConnection(websocket),
            registry,
            settings,
            websocket.app.state.http_client,
            websocket.app.state.fetches.spawn,
        )
        await session.run()

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse({"ok": True, "files": len(registry)})

    @app.get("/{file_id}/")
    def download_file(file_id: str) -> Response:
        # Plain def: FastAPI runs it in the threadpool, so the blocking read
        # never stalls the sessions on the event loop.
        try:
            stored = retrieve(registry, file_id)
        except NotReadyFault:
            raise HTTPException(status_code=409, detail="Upload in progress")
        except NotFoundFault as exc:
            logger.info("Download miss for %s: %s", exc.token, exc.reason)
            raise HTTPException(status_code=404, detail="Not found")

        headers = {
            "Content-Disposition": content_disposition(stored.name),
            "Cache-Control": "no-store",
            "X-Content-Type-Options": "nosniff",
        }
        return Response(content=stored.data, media_type="application/octet-stream", headers=headers)

    # Static upload page; define routes above, then mount static at '/'.
    if settings.static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(settings.static_dir), html=True), name="static")

    return app


def uvicorn_options(settings: ServerSettings) -> dict:
    """Keyword arguments for ``uvicorn.run``.

    uvicorn answers and enforces transport-level ping/pong itself; the
    heartbeat settings drive it so silent peers are dropped even if they
    never use the JSON probes.
    """
    return {
        "ws_ping_interval": settings.heartbeat_interval,
        "ws_ping_timeout": settings.client_timeout,
        "ssl_keyfile": SSL_KEYFILE,
        "ssl_certfile": SSL_CERTFILE,
    }


app = create_app(log_level=LOG_LEVEL)


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "8080"))
    host = os.environ.get("HOST", "0.0.0.0")
    uvicorn.run(
        "server:app",
        host=host,
        port=port,
        reload=False,
        log_config=None,
        **uvicorn_options(app.state.settings),
    )
