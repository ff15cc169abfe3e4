"""Shared test fixtures for TextMe tests."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from textme.claude_session import WorkerReply  # noqa: E402
from textme.models import InboundMessage  # noqa: E402
from textme.store import SQLiteStore  # noqa: E402

SENDER = "+15550001111"


def make_message(text: str, message_id: str = "msg-1", sender: str = SENDER) -> InboundMessage:
    return InboundMessage(
        id=message_id,
        sender=sender,
        text=text,
        received_at="2026-10-19T12:00:00.000000+00:00",
    )


class FakeTransport:
    """Fake Sendblue client: records outbound, serves scripted inbound batches."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []
        self.batches: list[list[InboundMessage]] = []
        self.fetch_calls: list[str] = []
        self.fail_fetch = False
        self.fail_send = False

    def fetch_inbound(self, since: str) -> list[InboundMessage]:
        self.fetch_calls.append(since)
        if self.fail_fetch:
            raise RuntimeError("network down")
        if not self.batches:
            return []
        return self.batches.pop(0)

    def send(self, recipient: str, text: str, media_url: str | None = None) -> str:
        if self.fail_send:
            raise RuntimeError("send failed")
        self.messages.append((recipient, text))
        return f"out-{len(self.messages)}"

    def texts(self) -> list[str]:
        return [text for _, text in self.messages]


@dataclass
class FakeSession:
    """Scripted stand-in for ClaudeSession."""

    working_dir: str
    replies: list[Any] = field(default_factory=list)
    prompts: list[str] = field(default_factory=list)
    task_ids: list[str | None] = field(default_factory=list)
    extra_tools: list[Any] = field(default_factory=list)
    activities: list[str] = field(default_factory=list)
    on_send: Callable[[str], None] | None = None

    def send(
        self,
        request: str,
        *,
        task_id: str | None = None,
        on_activity: Callable[[str], Any] | None = None,
        extra_allowed_tools: list[str] | None = None,
    ) -> WorkerReply:
        self.prompts.append(request)
        self.task_ids.append(task_id)
        self.extra_tools.append(extra_allowed_tools)
        if self.on_send is not None:
            self.on_send(request)
        for activity in self.activities:
            if on_activity is not None:
                on_activity(activity)
        reply = self.replies.pop(0) if self.replies else "assistant-response"
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, WorkerReply):
            return reply
        return WorkerReply(text=reply, activity_count=len(self.activities))


class FakeSessionManager:
    def __init__(self) -> None:
        self.session = FakeSession(working_dir="")
        self.dirs: list[str] = []
        self.kills: list[bool] = []
        self.interrupt_result: str | None = None
        self.interrupt_calls = 0

    def get_or_create(self, working_dir: str) -> FakeSession:
        self.dirs.append(working_dir)
        self.session.working_dir = working_dir
        return self.session

    def kill_current(self, *, fresh: bool = False) -> None:
        self.kills.append(fresh)

    def interrupt(self) -> str | None:
        self.interrupt_calls += 1
        return self.interrupt_result


@pytest.fixture
def store(tmp_path):
    db = SQLiteStore(tmp_path / "textme.db")
    db.bootstrap()
    yield db
    db.close()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_sessions():
    return FakeSessionManager()
