"""
Relayer health endpoint.

A small FastAPI app served by uvicorn next to the engine:

    GET /health    overall status with per-service detail (503 unless healthy)
    GET /stats     work item counts and queue depth
    GET /failures  FAILED items and rejected source events
    GET /items/{seal_hash}  one work item
"""

import asyncio
import logging

import uvicorn
from fastapi import FastAPI, HTTPException, Query, status
from starlette.responses import JSONResponse

from .constants import RELAYER_VERSION
from .engine import RelayerEngine
from .logger import get_logger

logger = get_logger(__name__)


def create_app(engine: RelayerEngine) -> FastAPI:
    app = FastAPI(title="Seal Relayer", description="Seal relayer health endpoint.", version=RELAYER_VERSION)
    app.state.engine = engine

    @app.get("/")
    async def root():
        return {"relayer_version": RELAYER_VERSION, "running": engine.running}

    @app.get("/health")
    async def health():
        report = await engine.health_report()
        code = status.HTTP_200_OK if report["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=report)

    @app.get("/stats")
    async def stats():
        return await engine.stats()

    @app.get("/failures")
    async def failures(limit: int = Query(100, ge=1, le=1000)):
        return {"failures": await engine.store.list_failures(limit)}

    @app.get("/items/{seal_hash}")
    async def get_item(seal_hash: str):
        try:
            key = bytes.fromhex(seal_hash.removeprefix("0x"))
        except ValueError:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "seal_hash must be hex")
        item = await engine.store.get_item(key)
        if item is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Unknown seal hash")
        return item.to_dict()

    return app


async def serve_health(engine: RelayerEngine, host: str, port: int) -> None:
    """Run the health app until the engine's stop event is set."""
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "uvicorn.asgi"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.setLevel(logging.ERROR)
        uvicorn_logger.handlers = []

    config = uvicorn.Config(
        create_app(engine),
        host=host,
        port=port,
        access_log=False,
        log_config=None,
    )
    server = uvicorn.Server(config)
    logger.info(f"Health endpoint on http://{host}:{port}/health")

    async def watch_stop():
        await engine.stop_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(watch_stop())
    try:
        await server.serve()
    finally:
        watcher.cancel()
