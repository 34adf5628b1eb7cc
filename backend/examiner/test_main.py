from __future__ import annotations

import json
import tempfile
from pathlib import Path
from unittest import TestCase

from fastapi.testclient import TestClient

from .config import Settings
from .errors import BankLoadError
from .main import create_app

ADMIN = {"X-Admin-Key": "secret"}


class ExaminerApiTests(TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.bank_path = self.dir / "questions.json"
        self.bank_path.write_text(
            json.dumps(
                [
                    {"id": i, "text": f"Q{i}", "options": ["a", "b"], "answer": 0, "category": "logic"}
                    for i in range(1, 4)
                ]
            )
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _settings(self, **overrides) -> Settings:
        values = dict(
            ADMIN_KEY="secret",
            QUESTION_BANK_PATH=str(self.bank_path),
            TEST_TYPES_PATH=str(self.dir / "types.json"),
            TEST_QUESTIONS=3,
            TEST_DURATION_MINUTES=5,
            TIMER_TICK_SECONDS=0.05,
            STORAGE_TYPE="memory",
        )
        values.update(overrides)
        return Settings(**values)

    def test_assignment_requires_admin_key(self):
        with TestClient(create_app(self._settings())) as client:
            res = client.post("/api/admin/assignments", json={"candidate_handle": "alice"})
        self.assertEqual(res.status_code, 401)

    def test_full_session_over_http(self):
        with TestClient(create_app(self._settings())) as client:
            res = client.post(
                "/api/admin/assignments",
                json={"candidate_handle": "@Alice", "assigned_by": "hr", "assigned_by_id": "hr1", "category": "logic"},
                headers=ADMIN,
            )
            self.assertEqual(res.status_code, 200)
            self.assertEqual(res.json()["candidate_handle"], "alice")
            self.assertEqual(len(client.get("/api/admin/assignments", headers=ADMIN).json()), 1)

            res = client.post("/api/sessions/start", json={"candidate_id": "100", "candidate_handle": "alice"})
            self.assertEqual(res.status_code, 200)
            body = res.json()
            self.assertEqual(body["status"], "in-progress")
            self.assertEqual(body["total_questions"], 3)
            self.assertEqual(body["question"]["index"], 0)
            self.assertEqual(body["question"]["options"], ["a", "b"])

            res = client.post("/api/sessions/answer", json={"candidate_id": "100", "question_index": 2, "option_index": 0})
            self.assertEqual(res.status_code, 400)

            for index in range(3):
                res = client.post(
                    "/api/sessions/answer",
                    json={"candidate_id": "100", "question_index": index, "option_index": 0},
                )
                self.assertEqual(res.status_code, 200)
                self.assertTrue(res.json()["is_correct"])
            self.assertTrue(res.json()["finished"])

            session = client.get("/api/sessions/100").json()
            self.assertEqual(session["status"], "finished")
            self.assertIsNone(session["question"])

            events = client.get("/api/chats/100/events").json()["events"]
            self.assertTrue(any(e["payload"]["type"] == "message" for e in events))
            summary = client.get("/api/chats/hr1/events").json()["events"]
            self.assertIn("3/3", summary[-1]["payload"]["text"])

    def test_rejections(self):
        with TestClient(create_app(self._settings())) as client:
            res = client.post("/api/sessions/start", json={"candidate_id": "1", "candidate_handle": "nobody"})
            self.assertEqual(res.status_code, 404)

            res = client.post("/api/sessions/answer", json={"candidate_id": "1", "question_index": 0, "option_index": 0})
            self.assertEqual(res.status_code, 404)

            res = client.post(
                "/api/admin/assignments",
                json={"candidate_handle": "bob", "category": "history"},
                headers=ADMIN,
            )
            self.assertEqual(res.status_code, 400)

            self.assertEqual(client.delete("/api/admin/assignments/bob", headers=ADMIN).status_code, 404)
            self.assertEqual(client.get("/api/sessions/1").status_code, 404)

    def test_broken_bank_aborts_startup(self):
        self.bank_path.write_text("not json")
        with self.assertRaises(BankLoadError):
            with TestClient(create_app(self._settings())):
                pass

    def test_json_storage_survives_restart(self):
        settings = self._settings(
            STORAGE_TYPE="json",
            SESSIONS_FILE=str(self.dir / "sessions.json"),
            ASSIGNMENTS_FILE=str(self.dir / "assignments.json"),
        )
        with TestClient(create_app(settings)) as client:
            client.post("/api/admin/assignments", json={"candidate_handle": "carol"}, headers=ADMIN)
            started = client.post("/api/sessions/start", json={"candidate_id": "7", "candidate_handle": "carol"}).json()

        with TestClient(create_app(settings)) as client:
            session = client.get("/api/sessions/7").json()
            self.assertEqual(session["status"], "in-progress")
            self.assertEqual(session["deadline_ts"], started["deadline_ts"])
            self.assertTrue(client.app.state.engine.timers.active("7"))
