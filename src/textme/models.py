from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class InboundMessage:
    id: str
    sender: str
    text: str
    received_at: str
    media_url: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ConversationTurn:
    sender: str
    role: Role
    content: str
    timestamp: str


@dataclass(slots=True)
class RunningTask:
    id: str
    description: str
    started_at: str
    pid: int | None = None


@dataclass(slots=True)
class QueuedRequest:
    id: int
    message_id: str
    sender: str
    text: str
    queued_at: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PendingApproval:
    id: str
    task_id: str
    command: str
    sender: str
    created_at: str
    expires_at: str
    allow_rules: str = ""
