"""Integration tests for persisted harvest runs and their HTTP surface."""

from __future__ import annotations

import unittest
from datetime import datetime, timezone

from fastapi.testclient import TestClient
from pydantic import ValidationError
from sqlalchemy import create_engine, delete, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from harvester.db.dependencies import get_db
from harvester.harvesting.errors import StaleRunStateError, StoreAuthError
from harvester.harvesting.extractor import RecordExtractor
from harvester.harvesting.orchestrator import Orchestrator, new_state
from harvester.harvesting.planner import QueryPlanner
from harvester.harvesting.types import CategoryStatus, MessageContent, MessagePreview, OrchestratorConfig
from harvester.main import app
from harvester.models.base import Base
from harvester.models.harvest_run import HarvestRun
from harvester.routers.harvest import get_orchestrator_factory
from harvester.schemas.run_state import RUN_STATE_VERSION
from harvester.services.harvest_runs import (
    HarvestConfigurationError,
    HarvestRunNotFoundError,
    advance_run,
    build_progress,
    create_run,
    get_run,
    group_records,
)
from harvester.services.run_state import dump_state, load_state

_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class _StubStore:
    def __init__(self, auth_error: bool = False) -> None:
        self.auth_error = auth_error
        self.search_calls: list[str] = []

    def search(self, query: str) -> list[MessagePreview]:
        if self.auth_error:
            raise StoreAuthError("token revoked")
        self.search_calls.append(query)
        slug = query.split(":", 1)[-1].split(".", 1)[0]
        call = len(self.search_calls)
        return [
            MessagePreview(
                id=f"{slug}-{call}-{idx}",
                subject=f"{slug} membership update {idx}",
                sender=f"club@{slug}.com",
            )
            for idx in range(2)
        ]

    def fetch(self, ids: list[str]) -> list[MessageContent]:
        return [
            MessageContent(
                id=message_id,
                subject=f"Subject {message_id}",
                sender="club@example.com",
                date="2026-10-01",
                body=f"Member number for {message_id}",
            )
            for message_id in ids
        ]


class _ExtractionClient:
    """Yields a record for the first message of every category except ``Gamma``."""

    def extract_records(self, messages, *, category, known_values):  # noqa: ANN001
        _ = known_values
        if category == "Gamma" or not messages:
            return {"records": []}
        return {
            "records": [
                {
                    "category": category,
                    "program_name": f"{category} Club",
                    "identifier": f"{category[:3].upper()}-000{len(category)}",
                    "tier": "Silver",
                    "source_message_id": messages[0]["id"],
                    "confidence": 75,
                }
            ]
        }


def _orchestrator(store: _StubStore | None = None) -> Orchestrator:
    return Orchestrator(
        store or _StubStore(),
        QueryPlanner(max_attempts=2),
        RecordExtractor(_ExtractionClient(), clock=lambda: _NOW),
        OrchestratorConfig(max_attempts_per_category=2, fetch_batch_size=2),
        clock=lambda: _NOW,
    )


class _DbTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        Base.metadata.drop_all(cls.engine)
        cls.engine.dispose()

    def setUp(self) -> None:
        self.db: Session = self.SessionLocal()
        self.db.execute(delete(HarvestRun))
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()


class HarvestRunServiceTests(_DbTestCase):
    def test_advance_persists_state_and_reports_progress(self) -> None:
        run = create_run(self.db, "hotels", ["Acme", "Gamma"])

        run, result = advance_run(self.db, run.id, _orchestrator())

        self.assertEqual(result.category, "Acme")
        self.assertEqual(run.steps_completed, 1)
        stored = load_state(get_run(self.db, run.id).state_json)
        self.assertEqual(stored.status_of("Acme"), CategoryStatus.FOUND)
        self.assertEqual(stored.read_message_ids, ["acme-1-0", "acme-1-1"])
        self.assertEqual(len(stored.cache.entries), 2)
        self.assertEqual(stored.records[0].fields["identifier"], "ACM-0004")

        progress = build_progress(run)
        self.assertFalse(progress.done)
        self.assertEqual(progress.total_records, 1)
        self.assertEqual(progress.messages_read, 2)
        self.assertEqual(
            [(item.category, item.status, item.attempts_used) for item in progress.categories],
            [("Acme", "found", 1), ("Gamma", "unsearched", 0)],
        )
        self.assertEqual(progress.categories[0].latest_attempt.query, "from:acme.com")

    def test_run_is_marked_done_once_every_category_is_terminal(self) -> None:
        run = create_run(self.db, "hotels", ["Acme", "Gamma"])
        orchestrator = _orchestrator()

        for _ in range(5):
            run, result = advance_run(self.db, run.id, orchestrator)
            if result.done:
                break

        self.assertEqual(run.status, "done")
        state = load_state(run.state_json)
        self.assertEqual(state.status_of("Gamma"), CategoryStatus.EXHAUSTED)
        self.assertEqual(len(state.histories["Gamma"].attempts), 2)
        steps = run.steps_completed

        run, result = advance_run(self.db, run.id, orchestrator)
        self.assertTrue(result.done)
        self.assertEqual(run.steps_completed, steps)

    def test_store_auth_error_does_not_advance_persisted_state(self) -> None:
        run = create_run(self.db, "hotels", ["Acme"])
        before = dict(run.state_json)

        with self.assertRaises(StoreAuthError):
            advance_run(self.db, run.id, _orchestrator(_StubStore(auth_error=True)))

        self.db.expire_all()
        reloaded = get_run(self.db, run.id)
        self.assertEqual(reloaded.steps_completed, 0)
        self.assertEqual(reloaded.state_json, before)

    def test_concurrent_advance_is_rejected_without_writing(self) -> None:
        run = create_run(self.db, "hotels", ["Acme"])
        db = self.db
        run_id = run.id

        class _RacingOrchestrator(Orchestrator):
            def run_step(self, state):  # noqa: ANN001
                db.execute(update(HarvestRun).where(HarvestRun.id == run_id).values(steps_completed=7))
                db.commit()
                return super().run_step(state)

        base = _orchestrator()
        racing = _RacingOrchestrator(base._store, base._planner, base._extractor, base.config, clock=lambda: _NOW)

        with self.assertRaises(StaleRunStateError):
            advance_run(self.db, run_id, racing)

        self.db.expire_all()
        reloaded = get_run(self.db, run_id)
        self.assertEqual(reloaded.steps_completed, 7)
        self.assertEqual(load_state(reloaded.state_json).histories, {})

    def test_state_document_without_cache_loads_with_empty_cache(self) -> None:
        run = create_run(self.db, "hotels", ["Acme"])
        run, result = advance_run(self.db, run.id, _orchestrator())

        document = dump_state(result.state, include_cache=False)
        restored = load_state(document)

        self.assertEqual(restored.cache.entries, {})
        self.assertEqual(restored.records, result.state.records)
        self.assertEqual(restored.histories["Acme"].attempts, result.state.histories["Acme"].attempts)

    def test_records_are_grouped_by_category(self) -> None:
        run = create_run(self.db, "hotels", ["Zeta", "Acme"])
        orchestrator = _orchestrator()
        run, _ = advance_run(self.db, run.id, orchestrator)
        run, _ = advance_run(self.db, run.id, orchestrator)

        groups = group_records(load_state(run.state_json))

        self.assertEqual([group.category for group in groups], ["Acme", "Zeta"])
        self.assertEqual([len(group.records) for group in groups], [1, 1])

    def test_blank_run_name_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            create_run(self.db, "   ", ["Acme"])

    def test_state_document_from_another_version_is_rejected(self) -> None:
        document = dump_state(new_state(["Acme"]))
        document["version"] = RUN_STATE_VERSION + 1

        with self.assertRaises(ValidationError):
            load_state(document)

    def test_missing_run_raises(self) -> None:
        with self.assertRaises(HarvestRunNotFoundError):
            get_run(self.db, 999)


class HarvestRunApiTests(_DbTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.store = _StubStore()

        def _get_test_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_test_db
        app.dependency_overrides[get_orchestrator_factory] = lambda: (lambda: _orchestrator(self.store))
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        super().tearDown()

    def test_create_step_and_read_records(self) -> None:
        created = self.client.post("/harvest-runs", json={"name": "hotels", "categories": ["Acme"]})
        self.assertEqual(created.status_code, 201)
        run_id = created.json()["data"]["run_id"]
        self.assertEqual(created.json()["data"]["categories"][0]["status"], "unsearched")

        stepped = self.client.post(f"/harvest-runs/{run_id}/step")
        self.assertEqual(stepped.status_code, 200)
        step = stepped.json()["data"]
        self.assertEqual(step["category"], "Acme")
        self.assertEqual(step["attempt"]["records_found"], 1)
        self.assertTrue(step["progress"]["done"])

        records = self.client.get(f"/harvest-runs/{run_id}/records")
        self.assertEqual(records.status_code, 200)
        self.assertEqual(records.json()["data"][0]["category"], "Acme")
        self.assertEqual(records.json()["data"][0]["records"][0]["fields"]["tier"], "Silver")

        progress = self.client.get(f"/harvest-runs/{run_id}")
        self.assertEqual(progress.json()["data"]["total_records"], 1)
        self.assertEqual(progress.json()["data"]["status"], "done")

    def test_store_auth_error_maps_to_401(self) -> None:
        self.store.auth_error = True
        run_id = self.client.post("/harvest-runs", json={"name": "hotels", "categories": ["Acme"]}).json()["data"][
            "run_id"
        ]

        response = self.client.post(f"/harvest-runs/{run_id}/step")

        self.assertEqual(response.status_code, 401)

    def test_unknown_run_returns_404(self) -> None:
        self.assertEqual(self.client.get("/harvest-runs/4242").status_code, 404)
        self.assertEqual(self.client.post("/harvest-runs/4242/step").status_code, 404)

    def test_blank_name_returns_422(self) -> None:
        response = self.client.post("/harvest-runs", json={"name": "   ", "categories": ["Acme"]})

        self.assertEqual(response.status_code, 422)

    def test_unconfigured_server_still_reports_unknown_run_as_404(self) -> None:
        def _unconfigured() -> Orchestrator:
            raise HarvestConfigurationError("OPENAI_API_KEY is not configured.")

        app.dependency_overrides[get_orchestrator_factory] = lambda: _unconfigured
        run_id = self.client.post("/harvest-runs", json={"name": "hotels", "categories": ["Acme"]}).json()["data"][
            "run_id"
        ]

        self.assertEqual(self.client.post("/harvest-runs/4242/step").status_code, 404)
        self.assertEqual(self.client.post(f"/harvest-runs/{run_id}/step").status_code, 503)


if __name__ == "__main__":
    unittest.main()
