import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from dayline.web_api import create_app


SLACK_SESSION = {
    "source_id": "st-1",
    "title": "Slack",
    "scheduled_start": "2026-01-29T10:00:00Z",
    "scheduled_end": "2026-01-29T10:15:00Z",
    "app_id": "com.slack.Slack",
}
OFFICE_SEGMENT = {
    "source_id": "loc-1",
    "title": "At Office",
    "scheduled_start": "2026-01-29T10:00:00Z",
    "scheduled_end": "2026-01-29T10:30:00Z",
    "meta": {"kind": "location_block", "place_id": "place-office-123"},
}
WINDOW = {"window_start": "2026-01-29T10:00:00Z", "window_end": "2026-01-29T10:30:00Z"}


class WebApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        os.environ["DAYLINE_CONFIG_PATH"] = self.config_path
        os.environ["DAYLINE_STATE_PATH"] = self.state_path
        self.client = TestClient(create_app())

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_get_and_put(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["reconcile"]["extension_gap_seconds"], 60)

        resp = self.client.put("/api/config", json={"payload": {"ingestion": {"window_minutes": 15}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["ingestion"]["window_minutes"], 15)
        self.assertEqual(self.client.get("/api/config").json()["ingestion"]["window_minutes"], 15)

    def test_put_config_rejects_bad_values(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"reconcile": {"min_segment_seconds": "abc"}}})
        self.assertEqual(resp.status_code, 400)

    def test_preview_then_reconcile(self) -> None:
        body = {**WINDOW, "screen_time": [SLACK_SESSION], "location": [OFFICE_SEGMENT]}
        preview = self.client.post("/api/users/user-1/reconcile/preview", json=body)
        self.assertEqual(preview.status_code, 200)
        plan = preview.json()["plan"]
        self.assertEqual([item["source_id"] for item in plan["inserts"]], ["st-1", "loc-1:0"])
        self.assertEqual(plan["inserts"][1]["scheduled_start"], "2026-01-29T10:15:00+00:00")

        resp = self.client.post("/api/users/user-1/reconcile", json=body)
        self.assertEqual(resp.status_code, 200)
        result = resp.json()["result"]
        self.assertEqual(result["status"], "success")
        self.assertEqual(result["counts"]["inserted"], 2)

        events = self.client.get(
            "/api/users/user-1/events",
            params={"start": WINDOW["window_start"], "end": WINDOW["window_end"]},
        ).json()["events"]
        self.assertEqual(len(events), 2)
        self.assertEqual(events[0]["meta"]["app_id"], "com.slack.Slack")

        runs = self.client.get("/api/runs", params={"user_id": "user-1"}).json()["runs"]
        self.assertEqual(runs[0]["id"], result["run_id"])
        debug = self.client.get(f"/api/debug/runs/{result['run_id']}").json()
        self.assertEqual(debug["run"]["status"], "success")
        self.assertIn("insert", [item["action"] for item in debug["events"]])

    def test_second_reconcile_of_same_window_is_skipped(self) -> None:
        body = {**WINDOW, "screen_time": [SLACK_SESSION]}
        self.client.post("/api/users/user-1/reconcile", json=body)
        resp = self.client.post("/api/users/user-1/reconcile", json=body)
        self.assertEqual(resp.json()["result"]["status"], "skipped")
        forced = self.client.post("/api/users/user-1/reconcile", json={**body, "trigger": "manual-window"})
        self.assertEqual(forced.json()["result"]["status"], "success")

    def test_reconcile_rejects_bad_windows_and_candidates(self) -> None:
        resp = self.client.post("/api/users/user-1/reconcile", json={"window_start": WINDOW["window_start"]})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(
            "/api/users/user-1/reconcile",
            json={"window_start": WINDOW["window_end"], "window_end": WINDOW["window_start"]},
        )
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(
            "/api/users/user-1/reconcile",
            json={**WINDOW, "screen_time": [{**SLACK_SESSION, "scheduled_start": "yesterday"}]},
        )
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(
            "/api/users/user-1/reconcile",
            json={**WINDOW, "location": [{"source_id": "loc-1", "title": "x"}]},
        )
        self.assertEqual(resp.status_code, 400)

    def test_user_events_block_derived_candidates(self) -> None:
        resp = self.client.post(
            "/api/users/user-1/events",
            json={
                "title": "Standup",
                "scheduled_start": "2026-01-29T10:00:00Z",
                "scheduled_end": "2026-01-29T10:15:00Z",
            },
        )
        self.assertEqual(resp.status_code, 200)
        event = resp.json()["event"]
        self.assertEqual(event["meta"], {"source": "user"})
        self.assertIsNone(event["locked_at"])

        result = self.client.post(
            "/api/users/user-1/reconcile",
            json={**WINDOW, "screen_time": [SLACK_SESSION]},
        ).json()["result"]
        self.assertEqual(result["counts"]["inserted"], 0)
        self.assertEqual(result["counts"]["protected"], 1)

    def test_lock_event_and_window(self) -> None:
        self.client.post("/api/users/user-1/reconcile", json={**WINDOW, "screen_time": [SLACK_SESSION]})
        events = self.client.get(
            "/api/users/user-1/events",
            params={"start": WINDOW["window_start"], "end": WINDOW["window_end"]},
        ).json()["events"]
        event_id = events[0]["id"]

        resp = self.client.post(f"/api/events/{event_id}/lock")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["changed"])
        self.assertIsNotNone(resp.json()["event"]["locked_at"])
        self.assertFalse(self.client.post(f"/api/events/{event_id}/lock").json()["changed"])

        resp = self.client.post(
            "/api/users/user-1/windows/lock",
            json={"start": WINDOW["window_start"], "end": WINDOW["window_end"]},
        )
        self.assertEqual(resp.json()["locked_count"], 0)

    def test_missing_event_and_run_return_404(self) -> None:
        self.assertEqual(self.client.post("/api/events/missing/lock").status_code, 404)
        self.assertEqual(self.client.get("/api/debug/runs/999").status_code, 404)

    def test_audit_events_endpoint(self) -> None:
        self.client.post("/api/users/user-1/reconcile", json={**WINDOW, "screen_time": [SLACK_SESSION]})
        events = self.client.get("/api/audit/events", params={"limit": 10}).json()["events"]
        self.assertEqual(sorted(item["action"] for item in events), ["insert", "lock_window"])


if __name__ == "__main__":
    unittest.main()
