"""Capture pipeline API: capture, inspect staging, confirm, discard."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from bitacora.errors import BitacoraError
from bitacora.models import Attachment, CaptureResult, StagedTopic, TopicCommitResult
from bitacora.routers.common import get_owner_id, get_sync_engine, to_http_error

captures_router = APIRouter(prefix="/api/captures", tags=["captures"])


class CaptureRequest(BaseModel):
    text: str = ""
    attachment: Optional[Attachment] = None
    targetBookId: Optional[str] = None


class ConfirmRequest(BaseModel):
    topics: list[StagedTopic] = Field(default_factory=list)


class ConfirmResponse(BaseModel):
    captureId: str
    state: str
    results: list[TopicCommitResult]


@captures_router.post("", response_model=CaptureResult)
async def create_capture(request: Request, body: CaptureRequest):
    """Classify a capture; classification failures come back as state ERROR."""
    sync_engine = get_sync_engine(request)
    try:
        return await sync_engine.capture(
            get_owner_id(request),
            body.text,
            attachment=body.attachment,
            target_book_id=body.targetBookId,
        )
    except BitacoraError as exc:
        raise to_http_error(exc) from exc


@captures_router.get("/staged")
async def list_staged_topics(request: Request):
    sync_engine = get_sync_engine(request)
    topics = sync_engine.list_staged(get_owner_id(request))
    return {"status": "ok", "count": len(topics), "items": topics}


@captures_router.post("/{capture_id}/confirm", response_model=ConfirmResponse)
async def confirm_capture(request: Request, capture_id: str, body: Optional[ConfirmRequest] = None):
    """Commit the staged topics of a capture, optionally with user edits."""
    sync_engine = get_sync_engine(request)
    owner_id = get_owner_id(request)
    edited = body.topics if body and body.topics else None
    try:
        results = await sync_engine.confirm(owner_id, capture_id, edited_topics=edited)
        state = sync_engine.get_capture_state(owner_id, capture_id)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc
    return ConfirmResponse(captureId=capture_id, state=state, results=results)


@captures_router.delete("/topics/{entry_id}")
async def discard_topic(request: Request, entry_id: str):
    sync_engine = get_sync_engine(request)
    try:
        await sync_engine.discard(get_owner_id(request), entry_id)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "discarded": entry_id}
