#!/usr/bin/env python3
"""
HTTP layer: routes and error mapping (Flask test client, scripted AI).

Run:
  python3 -m pytest backend/test_app.py
"""

import pytest

from ai_gateway import OP_MAP_DIALOGUE, AIOperationGateway, build_operation_registry
from app import create_app
from blueprint_store import BlueprintStore
from scripting_workflow import ScriptingWorkflowService
from settings_store import SettingsStore
from task_orchestrator import TaskOrchestrator


class QueueCapability:
    def __init__(self):
        self.responses = []

    def invoke(self, prompt_spec):
        return self.responses.pop(0)


@pytest.fixture
def ctx(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    backend_dir = tmp_path / "backend"
    backend_dir.mkdir()
    cap = QueueCapability()
    store = BlueprintStore(str(tmp_path / "data"))
    service = ScriptingWorkflowService(
        store,
        AIOperationGateway(build_operation_registry(), cap),
        orchestrator=TaskOrchestrator(run_async=False),
    )
    settings = SettingsStore(str(tmp_path / "data"), str(backend_dir))
    app = create_app(service=service, settings_store=settings)
    app.config["TESTING"] = True
    return app.test_client(), service, cap


def test_health(ctx) -> None:
    client, _, _ = ctx
    assert client.get("/api/health").get_json() == {"status": "ok"}


def test_settings_report_keys_as_flags_only(ctx) -> None:
    client, _, _ = ctx
    body = client.get("/api/settings").get_json()
    assert body["success"] is True
    assert body["settings"]["openai_key_configured"] is False
    assert "map-dialogue" in body["settings"]["llm_defaults"]


def test_unknown_blueprint_get_is_404_and_creates_nothing(ctx) -> None:
    client, service, _ = ctx
    resp = client.get("/api/videos/vid_404/blueprint")
    assert resp.status_code == 404
    assert resp.get_json()["error_code"] == "NOT_FOUND"
    assert service.store.exists("vid_404") is False


def test_blueprint_is_created_on_first_post(ctx) -> None:
    client, service, _ = ctx
    assert client.post("/api/videos/vid_001/blueprint", json={"patch": {"rawTranscript": ""}}).status_code == 200
    assert service.store.exists("vid_001") is True
    body = client.get("/api/videos/vid_001/blueprint").get_json()
    assert body["status"] == "transcript_input"
    assert body["active_task"] is None
    assert body["autosave"]["pending"] is False


def test_edit_and_illegal_edit(ctx) -> None:
    client, _, _ = ctx
    resp = client.post("/api/videos/vid_001/blueprint", json={"patch": {"rawTranscript": "Hello tower."}})
    assert resp.status_code == 200
    assert resp.get_json()["blueprint"]["rawTranscript"] == "Hello tower."

    resp = client.post("/api/videos/vid_001/blueprint", json={"draftScript": []})
    assert resp.status_code == 400
    assert resp.get_json()["error_code"] == "PRECONDITION_FAILED"


def test_footage_roundtrip_and_validation(ctx) -> None:
    client, _, _ = ctx
    resp = client.put("/api/videos/vid_001/footage", json={"footage_inventory": {"Tower": {"onCamera": True}}})
    assert resp.status_code == 200
    body = client.get("/api/videos/vid_001/footage").get_json()
    assert body["footage_inventory"]["Tower"] == {"onCamera": True, "bRoll": False, "drone": False}

    resp = client.put("/api/videos/vid_001/footage", json=["Tower"])
    assert resp.status_code == 422
    assert resp.get_json()["error_code"] == "VALIDATION_ERROR"


def test_action_returns_task_and_task_can_be_polled(ctx) -> None:
    client, _, cap = ctx
    client.put("/api/videos/vid_001/footage", json={"Tower": {"onCamera": True}})
    cap.responses.append([{"dialogueChunk": "Hello tower.", "locationTag": "Tower"}])

    resp = client.post("/api/videos/vid_001/actions/submit_transcript", json={"transcript": "Hello tower."})
    assert resp.status_code == 202
    task = resp.get_json()["task"]
    assert task["type"] == OP_MAP_DIALOGUE

    polled = client.get(f"/api/tasks/{task['id']}").get_json()["task"]
    assert polled["status"] == "complete"
    assert len(client.get("/api/videos/vid_001/tasks").get_json()["tasks"]) == 1
    assert client.get("/api/videos/vid_001/blueprint").get_json()["status"] == "dialogue_mapping"


def test_precondition_failure_is_400(ctx) -> None:
    client, _, _ = ctx
    resp = client.post("/api/videos/vid_001/actions/submit_transcript", json={"transcript": "Hi"})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["success"] is False
    assert body["stage"] == "transcript_input"


def test_failed_task_retry(ctx) -> None:
    client, _, cap = ctx
    client.put("/api/videos/vid_001/footage", json={"Tower": {"onCamera": True}})
    cap.responses.append([{"dialogueChunk": "Hello.", "locationTag": "Castle"}])
    cap.responses.append([{"dialogueChunk": "Hello.", "locationTag": "Tower"}])

    task = client.post("/api/videos/vid_001/actions/submit_transcript", json={"transcript": "Hello."}).get_json()["task"]
    assert task["status"] == "failed"
    assert task["error"]["code"] == "INVALID_AI_RESPONSE"

    resp = client.post(f"/api/tasks/{task['id']}/retry")
    assert resp.status_code == 202
    assert resp.get_json()["task"]["status"] == "complete"

    # retrying a completed task is a precondition failure
    assert client.post(f"/api/tasks/{task['id']}/retry").status_code == 400


def test_not_found_mapping(ctx) -> None:
    client, _, _ = ctx
    resp = client.get("/api/tasks/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error_code"] == "NOT_FOUND"

    resp = client.post("/api/videos/vid_001/actions/publish")
    assert resp.status_code == 404

    assert client.get("/api/no-such-route").status_code == 404
