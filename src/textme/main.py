from __future__ import annotations

import secrets
from dataclasses import asdict
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from . import __version__
from .config import TextMeSettings
from .executor import get_working_dir
from .process_control import terminate_pid
from .store import SQLiteStore


class TerminateResult(BaseModel):
    task_id: str
    pid: int | None
    terminated: bool


def _make_auth_dependency(token: str):
    """Create a FastAPI dependency that validates the Authorization: Bearer token."""
    async def _verify_token(request: Request) -> None:
        if not token:
            return
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
        provided = auth_header[7:]
        if not secrets.compare_digest(provided, token):
            raise HTTPException(status_code=401, detail="Invalid API token")
    return _verify_token


def build_app(store: Any | None = None, settings: TextMeSettings | None = None) -> FastAPI:
    """Read-mostly view of the daemon's durable state, served out of process."""
    settings = settings or TextMeSettings()
    active_store = store if store is not None else SQLiteStore(Path(settings.db_path))
    active_store.bootstrap()

    verify_token = _make_auth_dependency(settings.admin_api_token)

    app = FastAPI(title="TextMe Admin API", version=__version__)
    app.state.store = active_store

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/status", dependencies=[Depends(verify_token)])
    def status() -> dict[str, Any]:
        running = app.state.store.get_running_task()
        return {
            "working_dir": get_working_dir(app.state.store),
            "running_task": asdict(running) if running is not None else None,
            "queued": app.state.store.queue_length(),
        }

    @app.get("/queue", dependencies=[Depends(verify_token)])
    def queue() -> list[dict[str, Any]]:
        return [asdict(item) for item in app.state.store.list_queued_requests()]

    @app.get("/approvals/pending", dependencies=[Depends(verify_token)])
    def pending_approvals() -> list[dict[str, Any]]:
        return [asdict(item) for item in app.state.store.list_approvals()]

    @app.get("/conversations/{sender}", dependencies=[Depends(verify_token)])
    def conversation(sender: str, limit: int = 20) -> list[dict[str, Any]]:
        turns = app.state.store.recent_turns(sender, max(1, min(limit, 200)))
        return [
            {"role": turn.role.value, "content": turn.content, "timestamp": turn.timestamp}
            for turn in reversed(turns)
        ]

    @app.post("/running-task/terminate", dependencies=[Depends(verify_token)])
    def terminate_running_task() -> TerminateResult:
        running = app.state.store.get_running_task()
        if running is None:
            raise HTTPException(status_code=404, detail="no running task")
        terminated = bool(running.pid) and terminate_pid(int(running.pid))
        return TerminateResult(task_id=running.id, pid=running.pid, terminated=terminated)

    return app
