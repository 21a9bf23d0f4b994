"""Library API: books, entries, tasks and folders."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from bitacora.errors import BitacoraError
from bitacora.models import Book, Entry, Folder, NoteType, SearchFilters, TaskPriority
from bitacora.routers.common import get_owner_id, get_sync_engine, to_http_error

library_router = APIRouter(prefix="/api", tags=["library"])


class TaskPatch(BaseModel):
    description: Optional[str] = Field(default=None, min_length=1)
    assignee: Optional[str] = None
    dueDate: Optional[str] = None
    priority: Optional[TaskPriority] = None
    isDone: Optional[bool] = None
    completionNotes: Optional[str] = None


class EntryPatch(BaseModel):
    summary: str


class BookCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    context: Optional[str] = None
    folderId: Optional[str] = None


class BookPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    context: Optional[str] = None
    folderId: Optional[str] = None


class FolderCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = None


class FolderPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = None


# ── Library ────────────────────────────────────────────────────────

@library_router.get("/library")
async def get_library(request: Request):
    """Books, entries and folders; served from cache first when cold."""
    sync_engine = get_sync_engine(request)
    try:
        snapshot = await sync_engine.load_library(get_owner_id(request))
    except BitacoraError as exc:
        raise to_http_error(exc) from exc
    return snapshot.to_dict()


@library_router.post("/library/refresh")
async def refresh_library(request: Request, use_cache: bool = Query(False, alias="useCache")):
    sync_engine = get_sync_engine(request)
    try:
        snapshot = await sync_engine.refresh_data(get_owner_id(request), use_cache=use_cache)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc
    return snapshot.to_dict()


# ── Entries ────────────────────────────────────────────────────────

@library_router.get("/entries/search", response_model=list[Entry])
async def search_entries(
    request: Request,
    q: Optional[str] = Query(None, description="Text in original text or summary"),
    book_id: Optional[str] = Query(None, alias="bookId"),
    type: Optional[NoteType] = Query(None),
    date_from: Optional[str] = Query(None, alias="dateFrom"),
    date_to: Optional[str] = Query(None, alias="dateTo"),
    assignee: Optional[str] = Query(None),
):
    sync_engine = get_sync_engine(request)
    filters = SearchFilters(
        query=q,
        bookId=book_id,
        type=type,
        dateFrom=date_from,
        dateTo=date_to,
        assignee=assignee,
    )
    return await sync_engine.search_entries(get_owner_id(request), filters)


@library_router.patch("/entries/{entry_id}", response_model=Entry)
async def update_entry_summary(request: Request, entry_id: str, body: EntryPatch):
    sync_engine = get_sync_engine(request)
    try:
        return sync_engine.update_entry_summary(get_owner_id(request), entry_id, body.summary)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc


@library_router.delete("/entries/{entry_id}")
async def delete_entry(request: Request, entry_id: str):
    sync_engine = get_sync_engine(request)
    try:
        await sync_engine.delete_entry(get_owner_id(request), entry_id)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "deleted": entry_id}


# ── Tasks ──────────────────────────────────────────────────────────

@library_router.post("/entries/{entry_id}/tasks/{task_index}/toggle", response_model=Entry)
async def toggle_task(request: Request, entry_id: str, task_index: int):
    sync_engine = get_sync_engine(request)
    try:
        return await sync_engine.toggle_task(get_owner_id(request), entry_id, task_index)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc


@library_router.patch("/entries/{entry_id}/tasks/{task_index}", response_model=Entry)
async def update_task(request: Request, entry_id: str, task_index: int, body: TaskPatch):
    sync_engine = get_sync_engine(request)
    fields: dict[str, Any] = body.model_dump(exclude_unset=True)
    try:
        return await sync_engine.update_task_fields(get_owner_id(request), entry_id, task_index, fields)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc


@library_router.delete("/entries/{entry_id}/tasks/{task_index}", response_model=Entry)
async def delete_task(request: Request, entry_id: str, task_index: int):
    sync_engine = get_sync_engine(request)
    try:
        return await sync_engine.delete_task(get_owner_id(request), entry_id, task_index)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc


# ── Books ──────────────────────────────────────────────────────────

@library_router.post("/books", response_model=Book)
async def create_book(request: Request, body: BookCreate):
    sync_engine = get_sync_engine(request)
    try:
        return await sync_engine.create_book(
            get_owner_id(request),
            body.name,
            description=body.description,
            context=body.context,
            folder_id=body.folderId,
        )
    except BitacoraError as exc:
        raise to_http_error(exc) from exc


@library_router.patch("/books/{book_id}", response_model=Book)
async def update_book(request: Request, book_id: str, body: BookPatch):
    sync_engine = get_sync_engine(request)
    try:
        return await sync_engine.update_book(get_owner_id(request), book_id, body.model_dump(exclude_unset=True))
    except BitacoraError as exc:
        raise to_http_error(exc) from exc


# ── Folders ────────────────────────────────────────────────────────

@library_router.post("/folders", response_model=Folder)
async def create_folder(request: Request, body: FolderCreate):
    sync_engine = get_sync_engine(request)
    try:
        return await sync_engine.create_folder(get_owner_id(request), body.name, body.color)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc


@library_router.patch("/folders/{folder_id}")
async def update_folder(request: Request, folder_id: str, body: FolderPatch):
    sync_engine = get_sync_engine(request)
    try:
        await sync_engine.update_folder(get_owner_id(request), folder_id, body.model_dump(exclude_unset=True))
    except BitacoraError as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "updated": folder_id}


@library_router.delete("/folders/{folder_id}")
async def delete_folder(request: Request, folder_id: str):
    sync_engine = get_sync_engine(request)
    try:
        await sync_engine.delete_folder(get_owner_id(request), folder_id)
    except BitacoraError as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "deleted": folder_id}
