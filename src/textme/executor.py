from __future__ import annotations

import asyncio
import logging
import queue
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from uuid import uuid4

from .approval import ApprovalGate
from .claude_session import WorkerInterrupted
from .models import ConversationTurn, InboundMessage, Role, RunningTask
from .process_control import pid_alive, terminate_pid
from .protocols import SessionManagerProtocol, StoreProtocol, TransportProtocol
from .stream_events import PermissionDenial
from .utils import preview, truncate

logger = logging.getLogger("textme.executor")

WORKING_DIR_KEY = "current_project"
DONE_PREFIX = "✅ Done\n\n"


def get_working_dir(store: StoreProtocol, default: str | None = None) -> str:
    return store.get_state(WORKING_DIR_KEY) or default or str(Path.home())


def new_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{uuid4().hex[:4]}"


def build_prompt(working_dir: str, history: list[ConversationTurn], request: str) -> str:
    """Prompt for one request; ``history`` is oldest first and excludes the request."""
    parts = [f"[Session: {working_dir}]", ""]
    if history:
        parts.append("Recent conversation:")
        for turn in history:
            label = "User" if turn.role is Role.USER else "Claude"
            parts.append(f"{label}: {turn.content}")
        parts.extend(["", "---", ""])
    parts.append("Current request:")
    parts.append(request)
    return "\n".join(parts)


@dataclass(slots=True)
class SubmitOutcome:
    started: bool
    position: int = 0
    duplicate: bool = False


@dataclass(slots=True)
class Work:
    message: InboundMessage
    task_id: str
    from_queue: bool = False


class TaskExecutor:
    """Single-flight executor.

    The durable running-task slot decides whether a request starts now or is
    queued. ``submit`` never blocks: it either claims the slot and hands the
    work to the worker loop through an in-memory channel, or persists the
    request in the FIFO queue. After every execution the worker drains the
    queue oldest-first until it is empty.
    """

    def __init__(
        self,
        *,
        store: StoreProtocol,
        sessions: SessionManagerProtocol,
        transport: TransportProtocol,
        approvals: ApprovalGate | None = None,
        default_dir: str | None = None,
        conversation_window: int = 20,
        max_response_chars: int = 15000,
        idle_poll_seconds: float = 0.25,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.transport = transport
        self.approvals = approvals
        self.default_dir = default_dir or str(Path.home())
        self.conversation_window = max(1, int(conversation_window))
        self.max_response_chars = max_response_chars
        self.idle_poll_seconds = idle_poll_seconds
        self._channel: queue.Queue[Work] = queue.Queue()
        self._stopping = False

    # --- Control plane ---

    def is_busy(self) -> bool:
        return self.store.get_running_task() is not None

    def submit(self, message: InboundMessage) -> SubmitOutcome:
        task_id = new_task_id()
        # Items already waiting go first so arrival order holds.
        if (
            not self._stopping
            and self.store.queue_length() == 0
            and self.store.claim_running_task(task_id, message.text[:100])
        ):
            self._channel.put(Work(message=message, task_id=task_id))
            logger.info("Task %s claimed for sender=%s", task_id, message.sender)
            return SubmitOutcome(started=True)

        if not self.store.enqueue_request(message.id, message.sender, message.text, message.context):
            logger.info("Message %s already queued; ignoring", message.id)
            return SubmitOutcome(started=False, duplicate=True)
        position = self.store.queue_length()
        logger.info("Queued message %s at position %d", message.id, position)
        self._safe_send(message.sender, f'📥 Queued (position {position}): "{preview(message.text, 50)}"')
        return SubmitOutcome(started=False, position=position)

    def recover(self) -> RunningTask | None:
        """Clear a running-task slot left behind by a previous process."""
        stale = self.store.get_running_task()
        if stale is None:
            return None
        if stale.pid and pid_alive(stale.pid):
            logger.warning("Terminating orphaned worker pid=%s from task %s", stale.pid, stale.id)
            terminate_pid(stale.pid)
        self.store.clear_running_task(stale.id)
        logger.warning("Recovered stale running task %s (%s)", stale.id, stale.description)
        return stale

    # --- Data plane ---

    def stop(self) -> None:
        """Finish the current task but start nothing new; the queue stays durable."""
        self._stopping = True

    async def run_forever(self, is_shutdown: Callable[[], bool]) -> None:
        while not (is_shutdown() or self._stopping):
            try:
                work = self.next_work()
                if work is None:
                    await asyncio.sleep(self.idle_poll_seconds)
                    continue
                await asyncio.to_thread(self.process, work)
            except Exception:
                logger.exception("Executor loop error")
                await asyncio.sleep(self.idle_poll_seconds)
        self._requeue_unstarted()

    def _requeue_unstarted(self) -> None:
        """Return claimed-but-unstarted work to the durable queue so a restart picks it up."""
        while True:
            try:
                work = self._channel.get_nowait()
            except queue.Empty:
                return
            message = work.message
            self.store.enqueue_request(message.id, message.sender, message.text, message.context)
            self.store.clear_running_task(work.task_id)
            logger.info("Requeued unstarted task %s for message %s", work.task_id, message.id)

    def next_work(self) -> Work | None:
        try:
            return self._channel.get_nowait()
        except queue.Empty:
            return self._dequeue_next()

    def process(self, work: Work) -> None:
        """Execute ``work``, then keep draining the queue until it is empty."""
        current: Work | None = work
        while current is not None:
            self._execute(current)
            if self._stopping:
                break
            current = self._dequeue_next()

    def _dequeue_next(self) -> Work | None:
        task_id = new_task_id()
        queued = self.store.claim_next_queued(task_id)
        if queued is None:
            return None

        remaining = self.store.queue_length()
        notice = f'📬 Now processing: "{preview(queued.text, 50)}"'
        if remaining:
            notice += f" | {remaining} still queued"
        self._safe_send(queued.sender, notice)
        message = InboundMessage(
            id=queued.message_id,
            sender=queued.sender,
            text=queued.text,
            received_at=queued.queued_at,
            context=queued.context,
        )
        return Work(message=message, task_id=task_id, from_queue=True)

    def _execute(self, work: Work) -> None:
        message = work.message
        sender = message.sender
        running = self.store.get_running_task()
        if running is None or running.id != work.task_id:
            logger.info("Task %s was interrupted before it started; skipping", work.task_id)
            return
        try:
            working_dir = get_working_dir(self.store, self.default_dir)
            history = list(reversed(self.store.recent_turns(sender, self.conversation_window)))
            self.store.append_turn(sender, Role.USER, message.text)
            prompt = build_prompt(working_dir, history, message.text)

            if not work.from_queue:
                queued = self.store.queue_length()
                notice = f'🔄 Starting: "{preview(message.text, 50)}"'
                if queued:
                    notice += f" | {queued} queued"
                self._safe_send(sender, notice)

            logger.info("Executing task %s in %s", work.task_id, working_dir)
            session = self.sessions.get_or_create(working_dir)
            reply = session.send(
                prompt,
                task_id=work.task_id,
                on_activity=lambda activity: self._safe_send(sender, f"🔧 {activity}"),
                extra_allowed_tools=message.context.get("allowed_tools") or None,
            )

            response = truncate(reply.text, self.max_response_chars)
            self.store.append_turn(sender, Role.ASSISTANT, response)
            self.store.trim_turns(sender, self.conversation_window)

            if reply.activity_count:
                response = DONE_PREFIX + response
            self._safe_send(sender, response)

            if reply.permission_denials and self.approvals is not None:
                self._request_approval(work, reply.permission_denials)
            logger.info("Task %s completed (%d chars)", work.task_id, len(reply.text))
        except WorkerInterrupted as exc:
            logger.info("Task %s interrupted with %d chars of partial output", work.task_id, len(exc.partial))
        except Exception as exc:
            logger.exception("Task %s failed", work.task_id)
            self._safe_send(sender, f"❌ Error: {exc}")
            self.sessions.kill_current()
        finally:
            self.store.clear_running_task(work.task_id)

    def _request_approval(self, work: Work, denials: list[PermissionDenial]) -> None:
        assert self.approvals is not None
        command = "\n".join(denial.command for denial in denials)
        rules = "\n".join(denial.allow_rule for denial in denials)
        approval = self.approvals.open(work.message.sender, work.task_id, command, allow_rules=rules)
        minutes = int(self.approvals.ttl.total_seconds() // 60)
        self._safe_send(
            work.message.sender,
            f"⚠️ Claude was blocked from running:\n{command}\n\n"
            f'Reply "yes" to allow it or "no" to skip (expires in {minutes} min).',
        )
        logger.info("Task %s awaiting approval %s", work.task_id, approval.id)

    def _safe_send(self, recipient: str, text: str) -> None:
        try:
            self.transport.send(recipient, text)
        except Exception as exc:
            logger.warning("Failed to send to %s: %s", recipient, exc)
