"""In-memory holding area for classification results awaiting confirmation."""
from __future__ import annotations

from bitacora.errors import NotFoundError
from bitacora.models import StagedTopic


class StagingArea:
    """Staged topics keyed by entry id and grouped by capture id.

    Nothing here ever reaches the persistent store.
    """

    def __init__(self) -> None:
        self._topics: dict[str, StagedTopic] = {}
        self._captures: dict[str, list[str]] = {}

    def stage(self, capture_id: str, topics: list[StagedTopic]) -> list[StagedTopic]:
        staged = []
        for topic in topics:
            topic = topic.model_copy(update={"captureId": capture_id})
            self._topics[topic.entryId] = topic
            self._captures.setdefault(capture_id, []).append(topic.entryId)
            staged.append(topic)
        return staged

    def get(self, entry_id: str) -> StagedTopic:
        topic = self._topics.get(entry_id)
        if topic is None:
            raise NotFoundError(f"Staged topic {entry_id} not found")
        return topic

    def replace(self, topic: StagedTopic) -> StagedTopic:
        if topic.entryId not in self._topics:
            raise NotFoundError(f"Staged topic {topic.entryId} not found")
        current = self._topics[topic.entryId]
        topic = topic.model_copy(update={"captureId": current.captureId})
        self._topics[topic.entryId] = topic
        return topic

    def for_capture(self, capture_id: str) -> list[StagedTopic]:
        ids = self._captures.get(capture_id)
        if not ids:
            raise NotFoundError(f"Capture {capture_id} has no staged topics")
        return [self._topics[i] for i in ids]

    def has_capture(self, capture_id: str) -> bool:
        return bool(self._captures.get(capture_id))

    def remove(self, entry_id: str) -> StagedTopic:
        topic = self._topics.pop(entry_id, None)
        if topic is None:
            raise NotFoundError(f"Staged topic {entry_id} not found")
        ids = self._captures.get(topic.captureId, [])
        if entry_id in ids:
            ids.remove(entry_id)
        if not ids:
            self._captures.pop(topic.captureId, None)
        return topic

    def list_all(self) -> list[StagedTopic]:
        return list(self._topics.values())

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._topics

    def __len__(self) -> int:
        return len(self._topics)
