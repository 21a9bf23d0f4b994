import asyncio
import unittest

from bitacora import config
from bitacora.db.connection import open_connection
from bitacora.db.sqlite_migrations import run_migrations
from bitacora.db.store import SqlitePersistentStore
from bitacora.db.sync_engine import FAILED_SUMMARY, SyncEngine
from bitacora.errors import CaptureRejected, ClassificationFailure, NotFoundError, PersistenceFailure
from bitacora.models import AnalysisMeta, ClassificationResponse, Entry, SearchFilters, TaskItem
from bitacora.services.cache import MemoryCacheStorage, VersionedCache
from bitacora.services.classifier import ClassificationService

_LOADS = ("load_all_books", "load_all_entries", "load_all_folders")


class _InstrumentedStore(SqlitePersistentStore):
    """SQLite store that records calls and can reject selected writes."""

    def __init__(self, db):
        super().__init__(db)
        self.calls: list[str] = []
        self.fail_save_for: set[str] = set()
        self.fail_task_updates = False
        self.fail_deletes = False

    def writes(self) -> list[str]:
        return [c for c in self.calls if c not in _LOADS]

    async def create_book(self, *args, **kwargs):
        self.calls.append("create_book")
        return await super().create_book(*args, **kwargs)

    async def update_book(self, *args, **kwargs):
        self.calls.append("update_book")
        return await super().update_book(*args, **kwargs)

    async def save_entry(self, entry, owner_id, analysis):
        self.calls.append("save_entry")
        if analysis.targetBookName in self.fail_save_for:
            raise PersistenceFailure(f"save rejected for {analysis.targetBookName}")
        return await super().save_entry(entry, owner_id, analysis)

    async def update_task_status(self, task_id, is_done, notes=None):
        self.calls.append("update_task_status")
        if self.fail_task_updates:
            raise PersistenceFailure("task update rejected")
        return await super().update_task_status(task_id, is_done, notes)

    async def delete_entry_from_db(self, entry_id, owner_id):
        self.calls.append("delete_entry")
        if self.fail_deletes:
            raise PersistenceFailure("delete rejected")
        return await super().delete_entry_from_db(entry_id, owner_id)

    async def load_all_books(self, owner_id):
        self.calls.append("load_all_books")
        return await super().load_all_books(owner_id)

    async def load_all_entries(self, owner_id):
        self.calls.append("load_all_entries")
        return await super().load_all_entries(owner_id)

    async def load_all_folders(self, owner_id):
        self.calls.append("load_all_folders")
        return await super().load_all_folders(owner_id)


class _ScriptedClassifier(ClassificationService):
    """Returns queued responses (dicts) or raises queued exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.gate: asyncio.Event | None = None

    async def classify(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return ClassificationResponse.model_validate(item)

    async def rewrite_book_context(self, book_name, current_context, entry_summary):
        return current_context


def _topic(book: str, summary: str, note_type: str = "NOTE", tasks=(), actions=(), entities=()) -> dict:
    return {
        "targetBookName": book,
        "type": note_type,
        "summary": summary,
        "tasks": list(tasks),
        "entities": list(entities),
        "taskActions": list(actions),
    }


class SyncEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await open_connection(":memory:")
        await run_migrations(self.db)
        self.store = _InstrumentedStore(self.db)
        self.classifier = _ScriptedClassifier()
        self.cache = VersionedCache(MemoryCacheStorage())
        self.engine = SyncEngine(self.store, self.classifier, self.cache)

    async def asyncTearDown(self) -> None:
        await self.engine.drain_background()
        await self.db.close()

    def _script(self, *responses) -> None:
        self.classifier.responses.extend(responses)

    async def _seed_open_task(self, description: str) -> None:
        await self.store.create_book("b-andina", "u1", "Andina")
        await self.store.save_entry(
            Entry(
                id="e-andina",
                originalText="BI work",
                bookId="b-andina",
                type="TASK",
                summary="BI model",
                status="COMPLETED",
                createdAt=1_700_000_000_000,
                tasks=[TaskItem(description=description)],
            ),
            "u1",
            AnalysisMeta(targetBookName="Andina"),
        )
        self.store.calls.clear()

    async def test_new_book_capture_is_staged_then_committed(self) -> None:
        self._script({
            "isMultiTopic": False,
            "topics": [
                _topic(
                    "Project X",
                    "Meeting with Ana about Project X",
                    note_type="task",
                    tasks=[{"description": "Send the deck", "assignee": "Ana", "dueDate": "2026-10-23", "priority": "high"}],
                    entities=[{"name": "Ana", "type": "person"}],
                )
            ],
        })

        result = await self.engine.capture("u1", "Meeting notes with Ana about Project X, due Friday")

        self.assertEqual(result.state, "STAGED")
        topic = result.topics[0]
        self.assertTrue(topic.isNewBook)
        self.assertEqual(topic.bookName, "Project X")
        self.assertEqual(topic.entryId, result.captureId)
        self.assertEqual(topic.tasks[0].priority, "HIGH")
        self.assertEqual(self.store.writes(), [])
        self.assertEqual(self.engine.get_library("u1").find_entry(topic.entryId).status, "PROCESSING")

        results = await self.engine.confirm("u1", result.captureId)

        self.assertEqual([(r.status, r.bookCreated) for r in results], [("committed", True)])
        self.assertEqual(self.store.writes(), ["create_book", "save_entry"])
        self.assertEqual(self.engine.get_capture_state("u1", result.captureId), "COMMITTED")
        self.assertEqual(self.engine.list_staged("u1"), [])

        books = await self.store.load_all_books("u1")
        self.assertEqual(sorted(b.name for b in books), [config.INBOX_BOOK_NAME, "Project X"])
        entries = await self.store.load_all_entries("u1")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].type, "TASK")
        self.assertIn("Ana", entries[0].tasks[0].assignee)
        self.assertTrue(entries[0].tasks[0].id.startswith("T-"))

        committed = self.engine.get_library("u1").find_entry(topic.entryId)
        self.assertEqual(committed.status, "COMPLETED")
        self.assertEqual(committed.tasks[0].id, entries[0].tasks[0].id)

    async def test_task_completion_capture_commits_without_staging(self) -> None:
        await self._seed_open_task("finish BI model Andina")
        action = {"action": "complete", "taskDescription": "BI model Andina", "completionNotes": "Delivered"}
        self._script(
            {"topics": [_topic("Andina", "BI model ready", actions=[action])]},
            {"topics": [_topic("Andina", "BI model ready", actions=[action])]},
        )

        result = await self.engine.capture("u1", "the BI model for Andina is ready")

        self.assertEqual(result.state, "COMMITTED")
        self.assertEqual(result.completedTasks, 1)
        self.assertEqual(self.engine.list_staged("u1"), [])
        self.assertIsNone(self.engine.get_library("u1").find_entry(result.captureId))
        self.assertEqual(self.store.writes(), ["update_task_status"])
        stored = (await self.store.load_all_entries("u1"))[0].tasks[0]
        self.assertTrue(stored.isDone)
        self.assertEqual(stored.completionNotes, "Delivered")

        # The task is done now, so the same signal completes nothing.
        again = await self.engine.capture("u1", "the BI model for Andina is ready")

        self.assertEqual(again.state, "COMMITTED")
        self.assertEqual(again.completedTasks, 0)
        self.assertEqual(self.engine.list_staged("u1"), [])
        self.assertIsNone(self.engine.get_library("u1").find_entry(again.captureId))
        self.assertEqual(len(await self.store.load_all_entries("u1")), 1)
        self.assertEqual(self.store.calls.count("update_task_status"), 1)
        self.assertEqual((await self.store.load_all_entries("u1"))[0].tasks[0].completionNotes, "Delivered")

    async def test_partial_commit_keeps_failed_topic_staged_and_visible(self) -> None:
        await self.store.create_book("b-alpha", "u1", "Alpha")
        self.store.calls.clear()
        self._script({
            "isMultiTopic": True,
            "topics": [_topic("Alpha", "Alpha update"), _topic("Beta", "Beta kickoff")],
        })
        result = await self.engine.capture("u1", "Alpha is on track. Beta kicks off Monday.")
        alpha, beta = result.topics
        self.store.fail_save_for.add("Beta")

        results = await self.engine.confirm("u1", result.captureId)

        self.assertEqual([r.status for r in results], ["committed", "failed"])
        self.assertIn("Beta", results[1].error)
        self.assertEqual(self.store.writes(), ["save_entry", "create_book", "save_entry", "save_entry"])
        stored_ids = [e.id for e in await self.store.load_all_entries("u1")]
        self.assertEqual(stored_ids, [alpha.entryId])

        library = self.engine.get_library("u1")
        self.assertEqual(library.find_entry(alpha.entryId).status, "COMPLETED")
        self.assertEqual(library.find_entry(beta.entryId).status, "ERROR")
        staged = self.engine.list_staged("u1")
        self.assertEqual([(t.entryId, t.isNewBook) for t in staged], [(beta.entryId, False)])
        self.assertEqual(self.engine.get_capture_state("u1", result.captureId), "ERROR")

        self.store.fail_save_for.clear()
        retry = await self.engine.confirm("u1", result.captureId)

        self.assertEqual([(r.status, r.bookCreated) for r in retry], [("committed", False)])
        self.assertEqual(self.store.calls.count("create_book"), 1)
        self.assertEqual(len(await self.store.load_all_entries("u1")), 2)
        self.assertEqual(self.engine.get_capture_state("u1", result.captureId), "COMMITTED")

    async def test_task_update_action_is_staged_not_dropped(self) -> None:
        await self._seed_open_task("finish BI model Andina")
        action = {"action": "update", "taskDescription": "BI model Andina"}
        self._script({"topics": [_topic("Andina", "BI model scope changed", actions=[action])]})

        result = await self.engine.capture("u1", "the BI model for Andina now covers churn too")

        self.assertEqual(result.state, "STAGED")
        self.assertEqual([t.entryId for t in self.engine.list_staged("u1")], [result.captureId])
        self.assertIsNotNone(self.engine.get_library("u1").find_entry(result.captureId))
        self.assertEqual(self.store.writes(), [])

        await self.engine.confirm("u1", result.captureId)

        stored = {e.id: e for e in await self.store.load_all_entries("u1")}
        self.assertEqual(stored[result.captureId].summary, "BI model scope changed")
        self.assertFalse(stored["e-andina"].tasks[0].isDone)

    async def test_concurrent_confirms_commit_once(self) -> None:
        self._script({"topics": [_topic("Project X", "Kickoff")]})
        result = await self.engine.capture("u1", "Project X kickoff")

        outcomes = await asyncio.gather(
            self.engine.confirm("u1", result.captureId),
            self.engine.confirm("u1", result.captureId),
            return_exceptions=True,
        )

        committed = [o for o in outcomes if isinstance(o, list)]
        rejected = [o for o in outcomes if isinstance(o, CaptureRejected)]
        self.assertEqual(len(committed), 1)
        self.assertEqual(len(rejected), 1)
        self.assertEqual([r.status for r in committed[0]], ["committed"])
        self.assertEqual(self.store.calls.count("save_entry"), 1)
        self.assertEqual(self.engine.get_capture_state("u1", result.captureId), "COMMITTED")
        self.assertEqual(self.engine.get_library("u1").find_entry(result.captureId).status, "COMPLETED")

    async def test_edited_topic_with_unknown_book_is_rejected(self) -> None:
        self._script({"topics": [_topic(config.INBOX_BOOK_NAME, "Draft summary")]})
        result = await self.engine.capture("u1", "Remember the dentist")
        edited = result.topics[0].model_copy(update={"bookId": "no-such-book", "isNewBook": False})

        with self.assertRaises(NotFoundError):
            await self.engine.confirm("u1", result.captureId, [edited])

        self.assertEqual(self.store.writes(), [])
        self.assertEqual(self.engine.list_staged("u1")[0].bookId, config.INBOX_BOOK_ID)
        self.assertEqual(self.engine.get_capture_state("u1", result.captureId), "STAGED")

    async def test_finished_capture_records_are_pruned(self) -> None:
        self.engine._max_capture_history = 2
        capture_ids = []
        for index in range(5):
            self._script({"topics": [_topic("Project X", f"Note {index}")]})
            result = await self.engine.capture("u1", f"Project X note {index}")
            capture_ids.append(result.captureId)
            if index < 2:
                await self.engine.discard("u1", result.topics[0].entryId)

        for capture_id in capture_ids[:2]:
            with self.assertRaises(NotFoundError):
                self.engine.get_capture_state("u1", capture_id)
        self.assertEqual(
            [self.engine.get_capture_state("u1", cid) for cid in capture_ids[2:]],
            ["STAGED", "STAGED", "STAGED"],
        )

    async def test_cached_library_is_served_before_store_round_trip(self) -> None:
        await self.engine.refresh_data("u1", use_cache=False)
        other = SyncEngine(self.store, self.classifier, self.cache)
        self.store.calls.clear()

        snapshot = await other.load_library("u1")

        self.assertEqual([b.id for b in snapshot.books], [config.INBOX_BOOK_ID])
        self.assertEqual(self.store.calls, [])

        await other.drain_background()
        self.assertEqual(sorted(self.store.calls), sorted(_LOADS))

    async def test_new_books_proposed_twice_are_created_once(self) -> None:
        self._script({
            "topics": [_topic("Gamma", "First Gamma note"), _topic("gamma", "Second Gamma note")],
        })
        result = await self.engine.capture("u1", "Two Gamma notes")
        self.assertEqual(result.topics[0].bookId, result.topics[1].bookId)

        results = await self.engine.confirm("u1", result.captureId)

        self.assertEqual([(r.status, r.bookCreated) for r in results], [("committed", True), ("committed", False)])
        self.assertEqual(self.store.calls.count("create_book"), 1)

    async def test_targeted_capture_collapses_topics_into_target_book(self) -> None:
        self._script({
            "isMultiTopic": True,
            "topics": [
                _topic("Alpha", "One", tasks=[{"description": "a"}]),
                _topic("Beta", "Two", tasks=[{"description": "b"}]),
            ],
        })

        result = await self.engine.capture("u1", "One. Two.", target_book_id=config.INBOX_BOOK_ID)

        self.assertFalse(result.isMultiTopic)
        self.assertEqual(len(result.topics), 1)
        self.assertEqual(result.topics[0].bookId, config.INBOX_BOOK_ID)
        self.assertEqual([t.description for t in result.topics[0].tasks], ["a", "b"])

    async def test_confirm_applies_edited_topics(self) -> None:
        self._script({"topics": [_topic(config.INBOX_BOOK_NAME, "Draft summary")]})
        result = await self.engine.capture("u1", "Remember the dentist")
        edited = result.topics[0].model_copy(update={"summary": "Dentist on Tuesday"})

        await self.engine.confirm("u1", result.captureId, [edited])

        stored = await self.store.load_all_entries("u1")
        self.assertEqual(stored[0].summary, "Dentist on Tuesday")

    async def test_classification_failure_leaves_error_placeholder(self) -> None:
        self._script(ClassificationFailure("timeout"))

        result = await self.engine.capture("u1", "Raw thought that must not be lost")

        self.assertEqual(result.state, "ERROR")
        placeholder = self.engine.get_library("u1").find_entry(result.captureId)
        self.assertEqual(placeholder.status, "ERROR")
        self.assertEqual(placeholder.summary, FAILED_SUMMARY)
        self.assertEqual(placeholder.originalText, "Raw thought that must not be lost")
        self.assertEqual(self.store.writes(), [])

        await self.engine.discard("u1", result.captureId)
        self.assertIsNone(self.engine.get_library("u1").find_entry(result.captureId))

    async def test_discard_during_classification_drops_the_result(self) -> None:
        self.classifier.gate = asyncio.Event()
        self._script({"topics": [_topic("Project X", "Late result")]})

        pending = asyncio.create_task(self.engine.capture("u1", "Something to forget"))
        while not self.classifier.requests:
            await asyncio.sleep(0)
        placeholder = next(e for e in self.engine.get_library("u1").entries if e.status == "PROCESSING")
        await self.engine.discard("u1", placeholder.id)
        self.classifier.gate.set()
        result = await pending

        self.assertEqual(result.state, "DISCARDED")
        self.assertEqual(self.engine.list_staged("u1"), [])
        self.assertIsNone(self.engine.get_library("u1").find_entry(placeholder.id))
        self.assertEqual(self.store.writes(), [])

    async def test_discard_staged_topic_makes_no_store_call(self) -> None:
        self._script({"topics": [_topic("Project X", "Kickoff")]})
        result = await self.engine.capture("u1", "Project X kickoff")

        await self.engine.discard("u1", result.topics[0].entryId)

        self.assertEqual(self.engine.get_capture_state("u1", result.captureId), "DISCARDED")
        self.assertIsNone(self.engine.get_library("u1").find_entry(result.topics[0].entryId))
        self.assertEqual(self.store.writes(), [])
        with self.assertRaises(NotFoundError):
            await self.engine.discard("u1", result.topics[0].entryId)

    async def test_toggle_failure_restores_pre_mutation_state(self) -> None:
        await self._seed_open_task("finish BI model Andina")
        await self.engine.refresh_data("u1", use_cache=False)
        before = self.engine.get_library("u1")
        self.store.fail_task_updates = True

        with self.assertRaises(PersistenceFailure):
            await self.engine.toggle_task("u1", "e-andina", 0)

        self.assertEqual(self.engine.get_library("u1"), before)
        self.assertEqual(self.store.calls.count("update_task_status"), config.COMMIT_MAX_ATTEMPTS)

    async def test_toggle_success_persists(self) -> None:
        await self._seed_open_task("finish BI model Andina")
        await self.engine.refresh_data("u1", use_cache=False)

        entry = await self.engine.toggle_task("u1", "e-andina", 0)

        self.assertTrue(entry.tasks[0].isDone)
        self.assertTrue((await self.store.load_all_entries("u1"))[0].tasks[0].isDone)

    async def test_delete_entry_failure_keeps_entry(self) -> None:
        await self._seed_open_task("finish BI model Andina")
        await self.engine.refresh_data("u1", use_cache=False)
        self.store.fail_deletes = True

        with self.assertRaises(PersistenceFailure):
            await self.engine.delete_entry("u1", "e-andina")

        self.assertIsNotNone(self.engine.get_library("u1").find_entry("e-andina"))

    async def test_library_management_round_trip(self) -> None:
        await self._seed_open_task("finish BI model Andina")
        await self.engine.refresh_data("u1", use_cache=False)

        folder = await self.engine.create_folder("u1", "Clients", color="#00ff00")
        book = await self.engine.create_book("u1", "  Supervisor Panel ", context="Dashboards")
        moved = await self.engine.update_book_folder("u1", book.id, folder.id)
        self.assertEqual((moved.name, moved.folderId), ("Supervisor Panel", folder.id))

        await self.engine.delete_folder("u1", folder.id)
        self.assertIsNone(self.engine.get_library("u1").find_book(book.id).folderId)
        self.assertIsNone((await self.store.load_all_books("u1"))[-1].folderId)

        self.assertEqual(self.engine.get_book_name("u1", "b-andina"), "Andina")
        self.assertEqual(self.engine.get_book_name("u1", "missing"), "Unknown")
        edited = self.engine.update_entry_summary("u1", "e-andina", "BI model v2")
        self.assertEqual(edited.summary, "BI model v2")

        found = await self.engine.search_entries("u1", SearchFilters(query="BI work"))
        self.assertEqual([e.id for e in found], ["e-andina"])

    async def test_capture_input_validation(self) -> None:
        with self.assertRaises(CaptureRejected):
            await self.engine.capture("u1", "   ")
        with self.assertRaises(NotFoundError):
            await self.engine.capture("u1", "note", target_book_id="missing")

    async def test_operations_are_tracked(self) -> None:
        self._script({"topics": [_topic("Project X", "Kickoff")]})
        await self.engine.capture("u1", "Project X kickoff")

        operations = await self.engine.list_operations()
        capture_op = next(op for op in operations if op["kind"] == "capture")
        self.assertEqual(capture_op["status"], "completed")
        self.assertEqual(capture_op["stats"]["topics"], 1)
        self.assertEqual(await self.engine.get_operation(capture_op["id"]), capture_op)
        snapshot = await self.engine.get_observability_snapshot()
        self.assertEqual(snapshot["stagedTopicCount"], 1)


if __name__ == "__main__":
    unittest.main()
