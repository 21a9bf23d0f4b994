"""Local cache + sync observability API."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from bitacora.routers.common import get_sync_engine

cache_router = APIRouter(prefix="/api/cache", tags=["cache"])


@cache_router.get("/status")
async def get_cache_status(request: Request):
    """Return cache records and live engine operations."""
    sync_engine = get_sync_engine(request)
    cache_status = await sync_engine.cache.status()
    observability = await sync_engine.get_observability_snapshot()
    return {
        "status": "active",
        "sync_engine": "ready",
        "cache": cache_status,
        "operations": observability,
    }


@cache_router.get("/operations")
async def list_cache_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent capture/confirm/refresh operations."""
    sync_engine = get_sync_engine(request)
    operations = await sync_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@cache_router.get("/operations/{operation_id}")
async def get_cache_operation(request: Request, operation_id: str):
    sync_engine = get_sync_engine(request)
    operation = await sync_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@cache_router.post("/clear-expired")
async def clear_expired(request: Request):
    sync_engine = get_sync_engine(request)
    removed = await sync_engine.cache.clear_expired()
    return {"status": "ok", "removed": removed}


@cache_router.post("/clear")
async def clear_all(request: Request):
    """Drop every cached record; the next library read goes to the store."""
    sync_engine = get_sync_engine(request)
    removed = await sync_engine.cache.clear_all()
    return {"status": "ok", "removed": removed}
