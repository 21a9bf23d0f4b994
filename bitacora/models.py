"""Pydantic models for the library, the capture pipeline and the classification wire format."""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

NoteType = Literal["NOTE", "TASK", "DECISION", "IDEA", "RISK"]
EntryStatus = Literal["PROCESSING", "COMPLETED", "ERROR"]
TaskPriority = Literal["LOW", "MEDIUM", "HIGH"]
CaptureState = Literal[
    "CAPTURED",
    "CLASSIFYING",
    "STAGED",
    "COMMITTING",
    "COMMITTED",
    "DISCARDED",
    "ERROR",
]


def _upper(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


# ── Library models ─────────────────────────────────────────────────

class TaskItem(BaseModel):
    id: Optional[str] = None
    description: str
    assignee: Optional[str] = None
    dueDate: Optional[str] = None  # ISO date
    priority: TaskPriority = "MEDIUM"
    isDone: bool = False
    completionNotes: Optional[str] = None

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, value: Any) -> Any:
        return _upper(value) or "MEDIUM"


class Entity(BaseModel):
    name: str
    type: str = "TOPIC"  # "PERSON" | "COMPANY" | "PROJECT" | "TOPIC" | ...

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _upper(value) or "TOPIC"


class Attachment(BaseModel):
    mimeType: str
    base64Data: str
    fileName: str = ""


class Folder(BaseModel):
    id: str
    name: str
    color: Optional[str] = None
    createdAt: int = 0  # epoch ms
    updatedAt: Optional[int] = None


class Book(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    folderId: Optional[str] = None
    context: str = ""
    createdAt: int = 0
    updatedAt: Optional[int] = None


class Entry(BaseModel):
    id: str
    originalText: str
    attachmentRef: Optional[str] = None
    bookId: str
    type: NoteType = "NOTE"
    summary: str = ""
    tasks: list[TaskItem] = Field(default_factory=list)
    entities: list[Entity] = Field(default_factory=list)
    status: EntryStatus = "PROCESSING"
    createdAt: int = 0


class SearchFilters(BaseModel):
    query: Optional[str] = None
    bookId: Optional[str] = None
    type: Optional[NoteType] = None
    dateFrom: Optional[str] = None  # ISO date, inclusive
    dateTo: Optional[str] = None  # ISO date, inclusive
    assignee: Optional[str] = None


class AnalysisMeta(BaseModel):
    """Classification output that accompanies an entry when it is saved."""

    targetBookName: str
    type: NoteType = "NOTE"
    summary: str = ""
    tasks: list[TaskItem] = Field(default_factory=list)
    entities: list[Entity] = Field(default_factory=list)


# ── Capture pipeline models ────────────────────────────────────────

class TaskAction(BaseModel):
    action: Literal["complete", "update"]
    taskDescription: str
    completionNotes: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class StagedTopic(BaseModel):
    captureId: str = ""
    entryId: str
    bookId: str
    bookName: str
    isNewBook: bool = False
    type: NoteType = "NOTE"
    summary: str = ""
    tasks: list[TaskItem] = Field(default_factory=list)
    entities: list[Entity] = Field(default_factory=list)
    originalText: str = ""
    taskActions: list[TaskAction] = Field(default_factory=list)


class CaptureResult(BaseModel):
    captureId: str
    state: CaptureState
    isMultiTopic: bool = False
    overallContext: str = ""
    topics: list[StagedTopic] = Field(default_factory=list)
    placeholder: Optional[Entry] = None
    completedTasks: int = 0
    error: Optional[str] = None


class TopicCommitResult(BaseModel):
    entryId: str
    bookId: str
    status: Literal["committed", "failed"]
    bookCreated: bool = False
    completedTasks: int = 0
    error: Optional[str] = None


class CacheRecord(BaseModel):
    data: Any
    timestamp: int  # epoch ms
    schemaVersion: str


# ── Classification wire format ─────────────────────────────────────

class ClassificationRequest(BaseModel):
    rawText: str
    attachment: Optional[Attachment] = None
    existingBooksSummary: list[str] = Field(default_factory=list)
    existingOpenTasksSummary: list[str] = Field(default_factory=list)
    recentEntriesSummary: list[str] = Field(default_factory=list)


class ProposedTask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: str = Field(..., min_length=1)
    assignee: Optional[str] = None
    dueDate: Optional[str] = None
    priority: Optional[TaskPriority] = None

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, value: Any) -> Any:
        return _upper(value) or None


class ProposedEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    type: str = "TOPIC"

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _upper(value) or "TOPIC"


class ProposedTopic(BaseModel):
    model_config = ConfigDict(extra="ignore")

    targetBookName: str = Field(..., min_length=1)
    type: NoteType
    summary: str
    content: Optional[str] = None  # slice of the raw text belonging to this topic
    tasks: list[ProposedTask] = Field(default_factory=list)
    entities: list[ProposedEntity] = Field(default_factory=list)
    taskActions: list[TaskAction] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _upper(value)


class ClassificationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    isMultiTopic: bool = False
    topics: list[ProposedTopic] = Field(..., min_length=1)
    overallContext: str = ""
