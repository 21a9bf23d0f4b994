import types
import unittest

from fastapi import HTTPException

from bitacora import config
from bitacora.errors import CaptureRejected, ClassificationFailure, NotFoundError, PersistenceFailure
from bitacora.models import CaptureResult, Entry, TopicCommitResult
from bitacora.routers import cache as cache_router
from bitacora.routers import captures as captures_router
from bitacora.routers import library as library_router
from bitacora.routers.common import get_owner_id
from bitacora.services.state import LibrarySnapshot


class _FakeCache:
    async def status(self):
        return {"schemaVersion": "v1", "ttlSeconds": 300, "prefix": "bitacora_cache_", "keys": []}

    async def clear_expired(self):
        return 2

    async def clear_all(self):
        return 5


class _FakeSyncEngine:
    def __init__(self) -> None:
        self.cache = _FakeCache()
        self.capture_calls: list[dict] = []
        self.confirm_calls: list[dict] = []
        self.raise_on_capture: Exception | None = None
        self.task_field_calls: list[dict] = []

    async def capture(self, owner_id, text, attachment=None, target_book_id=None):
        self.capture_calls.append({"owner_id": owner_id, "text": text, "target_book_id": target_book_id})
        if self.raise_on_capture:
            raise self.raise_on_capture
        return CaptureResult(captureId="c1", state="STAGED")

    async def confirm(self, owner_id, capture_id, edited_topics=None):
        if capture_id == "missing":
            raise NotFoundError("Nothing staged under capture missing")
        self.confirm_calls.append({"owner_id": owner_id, "capture_id": capture_id, "edited": edited_topics})
        return [TopicCommitResult(entryId="c1", bookId="b1", status="committed")]

    def get_capture_state(self, owner_id, capture_id):
        return "COMMITTED"

    def list_staged(self, owner_id):
        return []

    async def discard(self, owner_id, entry_id):
        raise NotFoundError(f"Nothing staged under {entry_id}")

    async def load_library(self, owner_id):
        return LibrarySnapshot(entries=(Entry(id="e1", originalText="x", bookId="b1", status="COMPLETED"),))

    async def delete_entry(self, owner_id, entry_id):
        raise PersistenceFailure("delete rejected")

    async def update_task_fields(self, owner_id, entry_id, task_index, fields):
        self.task_field_calls.append(fields)
        return Entry(id=entry_id, originalText="x", bookId="b1", status="COMPLETED")

    async def get_observability_snapshot(self):
        return {"activeOperationCount": 0, "activeOperations": [], "recentOperations": [], "trackedOperationCount": 1}

    async def list_operations(self, limit=20):
        return [{"id": "OP-1", "status": "completed"}][:limit]

    async def get_operation(self, operation_id):
        if operation_id == "OP-404":
            return None
        return {"id": operation_id, "status": "completed"}


class RouterTests(unittest.IsolatedAsyncioTestCase):
    def _request(self, engine, owner: str | None = "u1"):
        headers = {"x-owner-id": owner} if owner else {}
        return types.SimpleNamespace(
            app=types.SimpleNamespace(state=types.SimpleNamespace(sync_engine=engine)),
            headers=headers,
        )

    async def test_missing_engine_is_service_unavailable(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await cache_router.get_cache_status(self._request(None))
        self.assertEqual(ctx.exception.status_code, 503)

    def test_owner_falls_back_to_default(self) -> None:
        self.assertEqual(get_owner_id(self._request(None, owner=None)), config.DEFAULT_OWNER_ID)
        self.assertEqual(get_owner_id(self._request(None, owner="u7")), "u7")

    async def test_capture_passes_owner_and_target(self) -> None:
        engine = _FakeSyncEngine()
        body = captures_router.CaptureRequest(text="Project X kickoff", targetBookId="b1")

        result = await captures_router.create_capture(self._request(engine), body)

        self.assertEqual(result.state, "STAGED")
        self.assertEqual(engine.capture_calls[0], {"owner_id": "u1", "text": "Project X kickoff", "target_book_id": "b1"})

    async def test_capture_errors_map_to_status_codes(self) -> None:
        engine = _FakeSyncEngine()
        request = self._request(engine)
        for exc, status in (
            (CaptureRejected("empty"), 400),
            (NotFoundError("book"), 404),
            (ClassificationFailure("timeout"), 502),
            (PersistenceFailure("down"), 502),
        ):
            engine.raise_on_capture = exc
            with self.assertRaises(HTTPException) as ctx:
                await captures_router.create_capture(request, captures_router.CaptureRequest(text="x"))
            self.assertEqual(ctx.exception.status_code, status)

    async def test_confirm_without_body_and_unknown_capture(self) -> None:
        engine = _FakeSyncEngine()
        request = self._request(engine)

        payload = await captures_router.confirm_capture(request, "c1", None)

        self.assertEqual(payload.state, "COMMITTED")
        self.assertEqual(payload.results[0].status, "committed")
        self.assertIsNone(engine.confirm_calls[0]["edited"])
        with self.assertRaises(HTTPException) as ctx:
            await captures_router.confirm_capture(request, "missing", None)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_discard_unknown_topic_is_not_found(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await captures_router.discard_topic(self._request(_FakeSyncEngine()), "nope")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_library_payload_and_failed_delete(self) -> None:
        engine = _FakeSyncEngine()
        request = self._request(engine)

        payload = await library_router.get_library(request)

        self.assertEqual(payload["entries"][0]["id"], "e1")
        with self.assertRaises(HTTPException) as ctx:
            await library_router.delete_entry(request, "e1")
        self.assertEqual(ctx.exception.status_code, 502)

    async def test_task_patch_sends_only_set_fields(self) -> None:
        engine = _FakeSyncEngine()

        await library_router.update_task(
            self._request(engine), "e1", 0, library_router.TaskPatch(assignee="Ana", priority="HIGH")
        )

        self.assertEqual(engine.task_field_calls, [{"assignee": "Ana", "priority": "HIGH"}])

    async def test_cache_status_and_operations(self) -> None:
        engine = _FakeSyncEngine()
        request = self._request(engine)

        status = await cache_router.get_cache_status(request)
        self.assertEqual(status["status"], "active")
        self.assertEqual(status["cache"]["schemaVersion"], "v1")
        self.assertIn("operations", status)

        listing = await cache_router.list_cache_operations(request, limit=20)
        self.assertEqual(listing["count"], 1)
        with self.assertRaises(HTTPException) as ctx:
            await cache_router.get_cache_operation(request, "OP-404")
        self.assertEqual(ctx.exception.status_code, 404)

        self.assertEqual((await cache_router.clear_expired(request))["removed"], 2)
        self.assertEqual((await cache_router.clear_all(request))["removed"], 5)


if __name__ == "__main__":
    unittest.main()
