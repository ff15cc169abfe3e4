"""Protocol interfaces for TextMe components.

These protocols define what the orchestrator needs from the store, the
message transport and the worker session manager, so tests can swap in
fakes.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .models import ConversationTurn, InboundMessage, PendingApproval, QueuedRequest, Role, RunningTask


@runtime_checkable
class StoreProtocol(Protocol):
    """Protocol for persistent storage backends."""

    def bootstrap(self) -> None:
        """Initialize database schema."""
        ...

    def mark_processed(self, message_id: str) -> bool:
        """Record a message id. Returns True if newly inserted."""
        ...

    def is_processed(self, message_id: str) -> bool:
        """Whether a message id has been handled."""
        ...

    def prune_processed(self, older_than_days: int) -> int:
        """Forget processed ids older than the retention window."""
        ...

    def append_turn(self, sender: str, role: Role, content: str) -> None:
        """Append one conversation turn."""
        ...

    def recent_turns(self, sender: str, limit: int) -> list[ConversationTurn]:
        """Most recent turns for a sender, newest first."""
        ...

    def trim_turns(self, sender: str, keep: int) -> int:
        """Keep only the newest turns for a sender."""
        ...

    def clear_turns(self, sender: str) -> int:
        """Delete a sender's conversation."""
        ...

    def latest_turn(self) -> ConversationTurn | None:
        """Most recent turn across all senders."""
        ...

    def set_state(self, key: str, value: str) -> None:
        """Set a key/value state entry."""
        ...

    def get_state(self, key: str) -> str | None:
        """Get a key/value state entry."""
        ...

    def claim_running_task(self, task_id: str, description: str) -> bool:
        """Occupy the running-task slot if empty."""
        ...

    def set_running_task_pid(self, task_id: str, pid: int) -> bool:
        """Record the worker pid for the running task."""
        ...

    def get_running_task(self) -> RunningTask | None:
        """Return the running task, if any."""
        ...

    def clear_running_task(self, task_id: str | None = None) -> bool:
        """Empty the running-task slot."""
        ...

    def enqueue_request(
        self, message_id: str, sender: str, text: str, context: dict[str, Any] | None = None
    ) -> bool:
        """Queue a request. Returns False if the message id is already queued."""
        ...

    def claim_next_queued(self, task_id: str) -> QueuedRequest | None:
        """Atomically move the oldest queued request into an empty running-task slot."""
        ...

    def queue_length(self) -> int:
        """Number of queued requests."""
        ...

    def list_queued_requests(self) -> list[QueuedRequest]:
        """Queued requests, oldest first."""
        ...

    def create_approval(self, approval: PendingApproval) -> None:
        """Persist a pending approval."""
        ...

    def get_active_approval(self, sender: str, now: str) -> PendingApproval | None:
        """Newest non-expired approval for a sender."""
        ...

    def delete_approval(self, approval_id: str) -> bool:
        """Delete an approval by id."""
        ...

    def delete_expired_approvals(self, now: str) -> int:
        """Delete approvals that expired before ``now``."""
        ...


@runtime_checkable
class TransportProtocol(Protocol):
    """Protocol for the messaging provider client."""

    def fetch_inbound(self, since: str) -> list[InboundMessage]:
        """Inbound messages created at or after ``since`` (ISO-8601)."""
        ...

    def send(self, recipient: str, text: str, media_url: str | None = None) -> str:
        """Send a message and return the provider's message id."""
        ...


@runtime_checkable
class SessionManagerProtocol(Protocol):
    """Protocol for the owner of the live worker session."""

    def get_or_create(self, working_dir: str) -> Any:
        """Session bound to ``working_dir``, replacing any other."""
        ...

    def kill_current(self, *, fresh: bool = False) -> None:
        """Tear down the live session."""
        ...

    def interrupt(self) -> str | None:
        """Kill an active request; return its partial output or None when idle."""
        ...

