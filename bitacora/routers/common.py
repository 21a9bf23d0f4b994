"""Shared request helpers for the API routers."""
from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from bitacora import config
from bitacora.errors import (
    BitacoraError,
    CaptureRejected,
    ClassificationFailure,
    NotFoundError,
    PersistenceFailure,
)

logger = logging.getLogger("bitacora.api")


def get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def get_owner_id(request: Request) -> str:
    headers = getattr(request, "headers", None) or {}
    return (headers.get("x-owner-id") or "").strip() or config.DEFAULT_OWNER_ID


def to_http_error(exc: BitacoraError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, CaptureRejected):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (PersistenceFailure, ClassificationFailure)):
        logger.warning("Upstream failure: %s", exc)
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
