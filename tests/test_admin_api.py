from fastapi.testclient import TestClient

from conftest import SENDER
from textme import main as admin
from textme.config import TextMeSettings
from textme.main import build_app
from textme.models import Role


def _client(store, tmp_path, token=""):
    settings = TextMeSettings(db_path=tmp_path / "textme.db", admin_api_token=token)
    return TestClient(build_app(store=store, settings=settings))


def test_admin_endpoints_expose_state(store, tmp_path):
    store.claim_running_task("task-1", "refactor auth")
    store.enqueue_request("m1", SENDER, "write tests", {})
    store.append_turn(SENDER, Role.USER, "hi")
    store.append_turn(SENDER, Role.ASSISTANT, "hello")
    client = _client(store, tmp_path)

    assert client.get("/health").json() == {"status": "ok"}

    status = client.get("/status").json()
    assert status["running_task"]["id"] == "task-1"
    assert status["queued"] == 1

    queue = client.get("/queue").json()
    assert [item["text"] for item in queue] == ["write tests"]

    assert client.get("/approvals/pending").json() == []

    turns = client.get(f"/conversations/{SENDER}").json()
    assert [turn["role"] for turn in turns] == ["user", "assistant"]


def test_token_required_when_configured(store, tmp_path):
    client = _client(store, tmp_path, token="s3cret")

    assert client.get("/health").status_code == 200
    assert client.get("/status").status_code == 401
    assert client.get("/status", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/status", headers={"Authorization": "Bearer s3cret"}).status_code == 200


def test_terminate_running_task(store, tmp_path, monkeypatch):
    client = _client(store, tmp_path)
    assert client.post("/running-task/terminate").status_code == 404

    store.claim_running_task("task-1", "long job")
    store.set_running_task_pid("task-1", 4242)
    killed = []
    monkeypatch.setattr(admin, "terminate_pid", lambda pid: killed.append(pid) or True)

    response = client.post("/running-task/terminate")

    assert response.status_code == 200
    assert response.json() == {"task_id": "task-1", "pid": 4242, "terminated": True}
    assert killed == [4242]
