"""Classification service contract and the OpenAI-backed implementation."""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError

from bitacora import config
from bitacora.errors import ClassificationFailure
from bitacora.models import (
    Attachment,
    Book,
    ClassificationRequest,
    ClassificationResponse,
    Entry,
)
from bitacora.services import prompts
from bitacora.services.resolvers import iter_open_tasks

logger = logging.getLogger("bitacora.classifier")


def sanitize_text(text: str | None, has_attachment: bool) -> str:
    limit = config.MAX_TEXT_LENGTH_WITH_ATTACHMENT if has_attachment else config.MAX_TEXT_LENGTH
    return (text or "").strip()[:limit]


def build_request(
    text: str,
    attachment: Optional[Attachment],
    books: Sequence[Book],
    entries: Sequence[Entry],
) -> ClassificationRequest:
    """Assemble the classification request with library context."""
    book_names = {b.id: b.name for b in books}
    books_summary = [
        f'"{b.name}"' + (f" (context: {b.context})" if b.context else "") for b in books
    ]
    open_tasks: list[str] = []
    for ref in iter_open_tasks(entries):
        if len(open_tasks) >= config.OPEN_TASKS_CONTEXT_LIMIT:
            break
        entry = next(e for e in entries if e.id == ref.entry_id)
        book = book_names.get(entry.bookId, "Unknown")
        open_tasks.append(f'"{ref.task.description}" [book: {book}]')
    recent = [
        f"[{e.type}] {e.summary}"
        for e in list(entries)[: config.RECENT_ENTRIES_CONTEXT_LIMIT]
        if e.status == "COMPLETED"
    ]
    return ClassificationRequest(
        rawText=text,
        attachment=attachment,
        existingBooksSummary=books_summary,
        existingOpenTasksSummary=open_tasks,
        recentEntriesSummary=recent,
    )


class ClassificationService(ABC):
    """External capability turning a raw capture into topic proposals."""

    @abstractmethod
    async def classify(self, request: ClassificationRequest) -> ClassificationResponse:
        """Raise :class:`ClassificationFailure` on any error or invalid output."""
        raise NotImplementedError

    @abstractmethod
    async def rewrite_book_context(self, book_name: str, current_context: str, entry_summary: str) -> str:
        raise NotImplementedError


class RequestThrottle:
    """Caps concurrent OpenAI calls and spaces their start times."""

    def __init__(
        self,
        max_concurrency: int = config.OPENAI_MAX_CONCURRENCY,
        min_interval: float = config.OPENAI_MIN_INTERVAL_MS / 1000,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_concurrency = max(1, max_concurrency)
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._slots = asyncio.Semaphore(self.max_concurrency)
        self._spacing = asyncio.Lock()
        self._last_start: float | None = None

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._slots:
            async with self._spacing:
                if self._last_start is not None:
                    wait = self._last_start + self.min_interval - self._clock()
                    if wait > 0:
                        logger.debug("Throttling OpenAI call for %.3fs", wait)
                        await self._sleep(wait)
                self._last_start = self._clock()
            yield


class OpenAIClassificationService(ClassificationService):
    def __init__(
        self,
        api_key: str = config.OPENAI_API_KEY,
        model: str = config.OPENAI_MODEL,
        timeout: float = config.CLASSIFICATION_TIMEOUT_SECONDS,
        client: Any | None = None,
        http_client: Any | None = None,
        throttle: RequestThrottle | None = None,
    ) -> None:
        self.model = model
        # Classification is never retried, so the SDK's own retries stay off.
        self.client = client or AsyncOpenAI(
            api_key=api_key or None,
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )
        self.throttle = throttle or RequestThrottle()

    def _messages(self, request: ClassificationRequest) -> list[dict[str, Any]]:
        attachment = request.attachment
        system = prompts.CLASSIFICATION_SYSTEM_PROMPT.format(
            attachment_hint=", with an attached file" if attachment else "",
            today=date.today().isoformat(),
            books="\n".join(f"- {line}" for line in request.existingBooksSummary) or "No books yet",
            open_tasks="\n".join(f"- {line}" for line in request.existingOpenTasksSummary) or "None",
            recent_entries="\n".join(f"- {line}" for line in request.recentEntriesSummary) or "None",
        )
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompts.CLASSIFICATION_USER_PROMPT.format(
                text=request.rawText or "(no additional text)"
            )},
        ]
        if attachment is None:
            return messages
        if attachment.mimeType.startswith("image/"):
            data = attachment.base64Data.split(",", 1)[-1]
            messages.append({
                "role": "user",
                "content": [
                    {"type": "text", "text": prompts.ATTACHMENT_IMAGE_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:{attachment.mimeType};base64,{data}"}},
                ],
            })
        else:
            messages.append({
                "role": "user",
                "content": prompts.ATTACHMENT_UNREADABLE_PROMPT.format(file_name=attachment.fileName or "attachment"),
            })
        return messages

    async def classify(self, request: ClassificationRequest) -> ClassificationResponse:
        try:
            async with self.throttle.slot():
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=self._messages(request),
                    response_format={"type": "json_object"},
                    temperature=0.5,
                    max_tokens=2000,
                )
        except OpenAIError as exc:
            logger.warning("Classification request failed: %s", exc)
            raise ClassificationFailure(f"Classification request failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ClassificationFailure("Classification service returned no content")
        try:
            return ClassificationResponse.model_validate_json(content)
        except ValidationError as exc:
            logger.warning("Classification output rejected: %s", exc.errors()[:3])
            raise ClassificationFailure("Classification output did not match the expected schema") from exc

    async def rewrite_book_context(self, book_name: str, current_context: str, entry_summary: str) -> str:
        prompt = prompts.BOOK_CONTEXT_PROMPT.format(
            book_name=book_name,
            current_context=current_context or "No description yet.",
            entry_summary=entry_summary,
        )
        try:
            async with self.throttle.slot():
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": prompts.BOOK_CONTEXT_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=0.7,
                    max_tokens=200,
                )
        except OpenAIError as exc:
            logger.warning("Book context rewrite failed for %s: %s", book_name, exc)
            return current_context or ""
        content = response.choices[0].message.content if response.choices else None
        return (content or "").strip().strip('"') or current_context or ""
