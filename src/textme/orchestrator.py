from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .approval import ApprovalGate
from .commanding import CommandKind, parse_command
from .executor import WORKING_DIR_KEY, TaskExecutor, get_working_dir
from .models import ConversationTurn, InboundMessage, Role
from .policy import PolicyEngine
from .protocols import SessionManagerProtocol, StoreProtocol, TransportProtocol
from .utils import format_time_ago, iso_now, parse_dt, preview, truncate, utc_now

logger = logging.getLogger("textme.orchestrator")

HISTORY_LIST_SIZE = 10
HISTORY_DETAIL_CHARS = 1500
INTERRUPT_PARTIAL_CHARS = 10000

HELP_TEXT = """📱 Commands:
status - what's running
queue (q) - waiting requests
history (h) - recent exchanges
history N - show exchange N in full
interrupt / stop / cancel - kill the current task
home - switch to your home directory
cd <path> - switch project directory
reset / fresh - new session, clear history
yes / no - answer a pending approval
? - this help

Anything else is sent to Claude."""


@dataclass(slots=True)
class OrchestrationResult:
    kind: CommandKind
    response: str | None = None
    task_started: bool = False
    queue_position: int = 0


@dataclass(slots=True)
class Exchange:
    user: str
    assistant: str


def pair_exchanges(turns: list[ConversationTurn]) -> list[Exchange]:
    """Pair oldest-first turns into user/assistant exchanges, most recent first."""
    exchanges: list[Exchange] = []
    pending_user: str | None = None
    for turn in turns:
        if turn.role is Role.USER:
            pending_user = turn.content
        elif pending_user is not None:
            exchanges.append(Exchange(user=pending_user, assistant=turn.content))
            pending_user = None
    exchanges.reverse()
    return exchanges


class RelayOrchestrator:
    """Routes one accepted inbound message.

    Control commands are answered synchronously; free-form requests are
    handed to the executor, which never blocks the caller.
    """

    def __init__(
        self,
        *,
        store: StoreProtocol,
        transport: TransportProtocol,
        sessions: SessionManagerProtocol,
        executor: TaskExecutor,
        policy: PolicyEngine,
        approvals: ApprovalGate | None = None,
        conversation_window: int = 20,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.transport = transport
        self.sessions = sessions
        self.executor = executor
        self.policy = policy
        self.approvals = approvals
        self.conversation_window = conversation_window
        self._clock = clock

    @property
    def home(self) -> str:
        return str(self.policy.home)

    def handle_message(self, message: InboundMessage) -> OrchestrationResult:
        command = parse_command(message.text)
        logger.info("Message %s from %s classified as %s", message.id, message.sender, command.kind.value)

        if command.kind is CommandKind.HELP:
            return self._reply(message, command.kind, HELP_TEXT)
        if command.kind is CommandKind.STATUS:
            return self._reply(message, command.kind, self.status_text())
        if command.kind is CommandKind.QUEUE:
            return self._reply(message, command.kind, self.queue_text())
        if command.kind is CommandKind.HISTORY:
            return self._reply(message, command.kind, self.history_text(message.sender, command.index))
        if command.kind is CommandKind.INTERRUPT:
            return self._reply(message, command.kind, self._interrupt())
        if command.kind is CommandKind.HOME:
            return self._reply(message, command.kind, self._switch_home())
        if command.kind is CommandKind.RESET:
            return self._reply(message, command.kind, self._reset(message.sender))
        if command.kind is CommandKind.CHANGE_DIRECTORY:
            return self._reply(message, command.kind, self._change_directory(command.payload))
        if command.kind is CommandKind.APPROVAL_RESPONSE:
            result = self._handle_approval(message)
            if result is not None:
                return result
            # no pending approval: a plain "ok" or "no" goes to Claude
        return self._submit(message)

    # --- Views ---

    def status_text(self) -> str:
        running = self.store.get_running_task()
        queued = self.store.queue_length()
        lines = [
            f"📊 Status: {'Working' if running else 'Idle'}",
            f"📂 {get_working_dir(self.store, self.home)}",
        ]
        if running is not None:
            elapsed = int((self._clock() - parse_dt(running.started_at)).total_seconds())
            lines.append(f"⏳ Working on: {preview(running.description, 60)}")
            lines.append(f"⏱️ Elapsed: {max(0, elapsed)}s")
        else:
            lines.append("✨ Ready for input")
        if queued:
            lines.append(f"📥 {queued} queued")
        return "\n".join(lines)

    def queue_text(self) -> str:
        queued = self.store.list_queued_requests()
        if not queued:
            return "📭 Queue is empty"
        now = self._clock()
        lines = [f"📥 Queue ({len(queued)}):"]
        for position, item in enumerate(queued, start=1):
            lines.append(f'{position}. "{preview(item.text, 50)}" ({format_time_ago(item.queued_at, now)})')
        return "\n".join(lines)

    def history_text(self, sender: str, index: int | None = None) -> str:
        turns = list(reversed(self.store.recent_turns(sender, self.conversation_window)))
        exchanges = pair_exchanges(turns)
        if not exchanges:
            return "No history yet"
        if index is not None:
            if index < 1 or index > len(exchanges):
                return f"Invalid index. Use 1-{len(exchanges)}"
            exchange = exchanges[index - 1]
            return (
                f"📜 #{index}\n\nYou: {exchange.user}\n\n"
                f"Claude: {truncate(exchange.assistant, HISTORY_DETAIL_CHARS, marker='...')}"
            )
        lines = ["📜 Recent (newest first):"]
        for number, exchange in enumerate(exchanges[:HISTORY_LIST_SIZE], start=1):
            lines.append(f"{number}. {preview(exchange.user, 40)}\n   → {preview(exchange.assistant, 60)}")
        lines.append('\nSend "history N" for details.')
        return "\n".join(lines)

    # --- Control actions ---

    def _interrupt(self) -> str:
        running = self.store.get_running_task()
        if running is None:
            return "Nothing to interrupt."
        # None: the task is claimed but its worker has not spawned yet
        partial = self.sessions.interrupt()
        self.store.clear_running_task(running.id)
        logger.info("Interrupted task %s", running.id)
        if not partial or not partial.strip():
            return "[Interrupted] - No output yet."
        return "[Interrupted]\n\nPartial output:\n" + truncate(partial.strip(), INTERRUPT_PARTIAL_CHARS, marker="\n\n...")

    def _switch_home(self) -> str:
        self.store.set_state(WORKING_DIR_KEY, self.home)
        self.sessions.kill_current()
        return f"🏠 Switched to {self.home}\nNew session on next message."

    def _reset(self, sender: str) -> str:
        self.sessions.kill_current(fresh=True)
        cleared = self.store.clear_turns(sender)
        logger.info("Reset session for %s (%d turns cleared)", sender, cleared)
        return "🔄 Fresh session. History cleared."

    def _change_directory(self, path_text: str) -> str:
        current = get_working_dir(self.store, self.home)
        try:
            target = self.policy.resolve_directory(path_text, current)
        except ValueError as exc:
            return f"❌ {exc}"
        self.store.set_state(WORKING_DIR_KEY, str(target))
        self.sessions.kill_current()
        return f"📂 Switched to {target}\nNew session on next message."

    def _handle_approval(self, message: InboundMessage) -> OrchestrationResult | None:
        if self.approvals is None:
            return None
        resolution = self.approvals.resolve(message.sender, message.text)
        if resolution is None:
            return None
        approval = resolution.approval
        if not resolution.approved:
            return self._reply(message, CommandKind.APPROVAL_RESPONSE, f"❌ Rejected. Not running:\n{approval.command}")

        rules = [rule for rule in approval.allow_rules.splitlines() if rule.strip()]
        followup = InboundMessage(
            id=f"{approval.id}:approved",
            sender=message.sender,
            text=(
                "The operator approved the action you were blocked from running:\n"
                f"{approval.command}\n\nRun it now and finish the previous request."
            ),
            received_at=iso_now(),
            context={"allowed_tools": rules},
        )
        self._send(message.sender, f"✅ Approved. Running:\n{approval.command}")
        outcome = self.executor.submit(followup)
        return OrchestrationResult(
            kind=CommandKind.APPROVAL_RESPONSE,
            response=f"✅ Approved. Running:\n{approval.command}",
            task_started=outcome.started,
            queue_position=outcome.position,
        )

    def _submit(self, message: InboundMessage) -> OrchestrationResult:
        outcome = self.executor.submit(message)
        return OrchestrationResult(
            kind=CommandKind.FREEFORM,
            task_started=outcome.started,
            queue_position=outcome.position,
        )

    # --- Helpers ---

    def _reply(self, message: InboundMessage, kind: CommandKind, text: str) -> OrchestrationResult:
        self._send(message.sender, text)
        return OrchestrationResult(kind=kind, response=text)

    def _send(self, recipient: str, text: str) -> None:
        try:
            self.transport.send(recipient, text)
        except Exception as exc:
            logger.warning("Failed to send reply to %s: %s", recipient, exc)

    def startup_text(self) -> str:
        lines = ["🤖 TextMe ready", f"📂 {get_working_dir(self.store, self.home)}"]
        last = self.store.latest_turn()
        if last is not None:
            label = "You" if last.role is Role.USER else "Claude"
            lines.append(f"💬 Last ({format_time_ago(last.timestamp, self._clock())}): {label}: {preview(last.content, 60)}")
        queued = self.store.queue_length()
        if queued:
            lines.append(f"📥 {queued} queued")
        lines.append('"?" for commands')
        return "\n".join(lines)
