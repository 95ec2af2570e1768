"""Web API: endpoints, error mapping, state socket."""

import pytest
from fastapi.testclient import TestClient

from conftest import plan_json, planning_router
from mode_store import ModeStore
from runtime import Runtime, set_runtime
from web import app


@pytest.fixture
def client(tmp_path):
    def make(*replies, auto_approve=True):
        runtime = Runtime(
            working_directory=str(tmp_path),
            router=planning_router(*replies),
            mode_store=ModeStore(base_dir=str(tmp_path / ".state"), working_directory=str(tmp_path)),
            auto_approve=auto_approve,
        )
        runtime.initialize()
        set_runtime(runtime)
        return TestClient(app)

    yield make
    set_runtime(None)


def _create(id, path):
    return {"id": id, "description": f"create {path}", "tool": "createFile",
            "parameters": {"path": path, "content": "hi"}}


def test_state_and_history(client):
    c = client()
    resp = c.get("/api/state")
    assert resp.status_code == 200
    data = resp.json()
    assert data["state"] == "ready"
    assert data["mode"] == "ask"
    assert data["agent"]["is_running"] is False

    history = c.get("/api/history").json()["transitions"]
    assert history[-1]["from"] == "idle"
    assert history[-1]["to"] == "ready"


def test_agent_in_wrong_mode_is_forbidden(client):
    c = client()
    resp = c.post("/api/agent", json={"description": "do it", "mode": "code"})
    assert resp.status_code == 403
    assert resp.json()["kind"] == "capability"


def test_bad_requests_are_422(client):
    c = client()
    assert c.post("/api/agent", json={}).status_code == 422
    assert c.post("/api/mode", json={"mode": "warp"}).status_code == 422
    assert c.post("/api/mode", content=b"not json").status_code == 422
    assert c.post("/api/backends/default", json={"backend": "omega"}).status_code == 422


def test_agent_run_then_conflict_then_ack(client, tmp_path):
    c = client(plan_json(_create("s1", "made.txt")))
    resp = c.post("/api/agent", json={"description": "make a file", "mode": "agent"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"
    assert (tmp_path / "made.txt").read_text() == "hi"

    again = c.post("/api/agent", json={"description": "again", "mode": "agent"})
    assert again.status_code == 409
    assert again.json()["kind"] == "state_guard"

    assert c.post("/api/agent/ack").status_code == 200
    assert c.get("/api/state").json()["state"] == "ready"

    assert c.post("/api/undo").json() == {"ok": True}
    assert not (tmp_path / "made.txt").exists()


def test_approval_flow_over_http(client, tmp_path):
    c = client(plan_json(_create("s1", "later.txt")), auto_approve=False)
    paused = c.post("/api/agent", json={"description": "write later", "mode": "agent"}).json()
    assert paused["awaiting_step"] == "s1"

    assert c.post("/api/agent/resume").status_code == 403

    approved = c.post("/api/steps/s1/approve", json={"resume": True})
    assert approved.status_code == 200
    assert approved.json()["status"] == "completed"
    assert (tmp_path / "later.txt").exists()


def test_reject_over_http(client):
    c = client(plan_json(_create("s1", "never.txt")), auto_approve=False)
    c.post("/api/agent", json={"description": "write", "mode": "agent"})
    resp = c.post("/api/steps/s1/reject", json={"reason": "no"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert c.get("/api/state").json()["state"] == "cancelled"


def test_invalid_plan_is_422_and_error_state(client):
    c = client("this is not json")
    resp = c.post("/api/agent", json={"description": "x", "mode": "agent"})
    assert resp.status_code == 422
    assert c.get("/api/state").json()["state"] == "error"


def test_tools_endpoint(client, tmp_path):
    (tmp_path / "a.txt").write_text("alpha\n")
    c = client()
    ok = c.post("/api/tools/readFile", json={"params": {"path": "a.txt"}})
    assert ok.status_code == 200
    assert "alpha" in ok.json()["data"]

    missing = c.post("/api/tools/readFile", json={"params": {"path": "b.txt"}})
    assert missing.status_code == 500
    assert missing.json()["success"] is False

    assert c.post("/api/tools/createFile", json={"params": {"path": "x"}}).status_code == 403
    assert c.post("/api/tools/teleport", json={}).status_code == 422

    tools = {t["name"]: t for t in c.get("/api/tools").json()["tools"]}
    assert tools["readFile"]["allowed"]
    assert not tools["createFile"]["allowed"]


def test_mode_switch_is_persisted(client, tmp_path):
    c = client()
    resp = c.post("/api/mode", json={"mode": "code"})
    assert resp.status_code == 200
    assert resp.json()["mode"]["name"] == "code"
    store = ModeStore(base_dir=str(tmp_path / ".state"), working_directory=str(tmp_path))
    assert store.load() == "code"
    assert c.get("/api/modes").json()["current"] == "code"


def test_backends(client):
    c = client()
    data = c.get("/api/backends").json()
    assert data["default"] == "fake"
    assert data["backends"][0]["configured"] is True


def test_state_socket_pushes_snapshots(client):
    c = client()
    with c.websocket_connect("/ws/state") as ws:
        first = ws.receive_json()
        assert first["type"] == "state"
        assert first["snapshot"]["state"] == "ready"

        c.post("/api/mode", json={"mode": "debug"})
        update = ws.receive_json()
        assert update["type"] == "state"
        assert update["snapshot"]["mode"] == "debug"

        ws.send_text("ping")
        assert ws.receive_json() == {"type": "pong"}
