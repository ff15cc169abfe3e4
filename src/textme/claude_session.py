from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .models import SessionState
from .process_control import terminate_process
from .stream_events import (
    AssistantEvent,
    PermissionDenial,
    RawTextEvent,
    ResultEvent,
    StreamEvent,
    SystemEvent,
    TextBlock,
    ToolUseBlock,
    UnknownEvent,
    format_tool_activity,
    parse_stream_line,
)

logger = logging.getLogger("textme.claude_session")

NO_RESPONSE = "No response from Claude."
TIMEOUT_MARKER = "\n\n[Response timed out]"

TRANSIENT_MARKERS = (
    "overloaded",
    "rate_limit",
    "rate limit",
    "529",
    "temporarily unavailable",
    "api_error",
)

_ACTIVE_STATES = (SessionState.STARTING, SessionState.STREAMING)


class WorkerError(RuntimeError):
    """Base class for worker failures surfaced to the executor."""


class WorkerFailed(WorkerError):
    pass


class WorkerTimeout(WorkerError):
    pass


class WorkerInterrupted(WorkerError):
    def __init__(self, partial: str) -> None:
        super().__init__("Interrupted")
        self.partial = partial


def is_transient_error(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


class ActivityThrottle:
    """Forward at most one activity per interval; activities inside the window are dropped."""

    def __init__(
        self,
        callback: Callable[[str], Any] | None,
        min_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.callback = callback
        self.min_interval = min_interval
        self._clock = clock
        self._last: float | None = None
        self.emitted = 0

    def __call__(self, activity: str) -> bool:
        if self.callback is None:
            return False
        now = self._clock()
        if self._last is not None and (now - self._last) < self.min_interval:
            return False
        self._last = now
        self.emitted += 1
        try:
            self.callback(activity)
        except Exception:
            logger.exception("Activity callback failed")
        return True


@dataclass(slots=True)
class WorkerReply:
    text: str
    activity_count: int = 0
    timed_out: bool = False
    permission_denials: list[PermissionDenial] = field(default_factory=list)


class ClaudeSession:
    """One Claude CLI conversation bound to a working directory.

    Each request spawns ``claude --print`` with ``--continue`` so the CLI's own
    per-directory conversation carries context between requests. At most one
    process is alive per session; ``interrupt`` kills it from another thread.
    """

    def __init__(
        self,
        working_dir: str,
        *,
        store: Any | None = None,
        claude_command: str = "claude",
        model: str = "",
        permission_mode: str = "bypassPermissions",
        allowed_tools: list[str] | None = None,
        system_prompt: str = "",
        timeout: float = 600.0,
        max_retries: int = 2,
        retry_base_delay: float = 2.0,
        activity_interval: float = 1.0,
        continue_conversation: bool = True,
    ) -> None:
        self.working_dir = working_dir
        self.store = store
        self.claude_command = claude_command
        self.model = model.strip()
        self.permission_mode = permission_mode.strip()
        self.allowed_tools = [t.strip() for t in (allowed_tools or []) if t and t.strip()]
        self.system_prompt = system_prompt.strip()
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.retry_base_delay = retry_base_delay
        self.activity_interval = activity_interval
        self.continue_conversation = continue_conversation

        self.state = SessionState.IDLE
        self.last_outcome: SessionState | None = None
        self._lock = threading.Lock()
        self._proc: subprocess.Popen[str] | None = None
        self._chunks: list[str] = []
        self._interrupted = False
        self._timed_out = False
        self._cancel = threading.Event()

    def _build_cmd(self, extra_allowed_tools: list[str] | None = None) -> list[str]:
        cmd = [self.claude_command, "--print", "--output-format", "stream-json", "--verbose"]
        if self.continue_conversation:
            cmd.append("--continue")
        if self.permission_mode:
            cmd.extend(["--permission-mode", self.permission_mode])
        if self.model:
            cmd.extend(["--model", self.model])
        allowed = self.allowed_tools + [t for t in (extra_allowed_tools or []) if t]
        if allowed:
            cmd.extend(["--allowedTools", ",".join(allowed)])
        if self.system_prompt:
            cmd.extend(["--append-system-prompt", self.system_prompt])
        return cmd

    def partial_output(self) -> str:
        with self._lock:
            return "\n".join(self._chunks)

    def send(
        self,
        request: str,
        *,
        task_id: str | None = None,
        on_activity: Callable[[str], Any] | None = None,
        extra_allowed_tools: list[str] | None = None,
    ) -> WorkerReply:
        """Run one request to completion, retrying transient failures.

        Raises WorkerFailed, WorkerTimeout or WorkerInterrupted.
        """
        throttle = ActivityThrottle(on_activity, self.activity_interval)
        self._cancel.clear()
        with self._lock:
            self._interrupted = False
        attempt = 1
        try:
            while True:
                try:
                    reply = self._run_once(request, throttle, task_id, extra_allowed_tools)
                    self.continue_conversation = True
                    self.last_outcome = SessionState.TIMED_OUT if reply.timed_out else SessionState.COMPLETED
                    return reply
                except WorkerFailed as exc:
                    if attempt > self.max_retries or not is_transient_error(str(exc)):
                        self.last_outcome = SessionState.FAILED
                        raise
                    delay = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "Transient worker failure (attempt %d/%d), retrying in %.1fs: %s",
                        attempt,
                        self.max_retries + 1,
                        delay,
                        exc,
                    )
                    self.state = SessionState.STARTING
                    if self._cancel.wait(delay):
                        self.last_outcome = SessionState.INTERRUPTED
                        raise WorkerInterrupted("") from exc
                    attempt += 1
                except WorkerInterrupted:
                    self.last_outcome = SessionState.INTERRUPTED
                    raise
                except WorkerTimeout:
                    self.last_outcome = SessionState.TIMED_OUT
                    raise
        finally:
            self.state = SessionState.IDLE
            if task_id and self.store is not None:
                self.store.clear_running_task(task_id)

    def _run_once(
        self,
        request: str,
        throttle: ActivityThrottle,
        task_id: str | None,
        extra_allowed_tools: list[str] | None,
    ) -> WorkerReply:
        cmd = self._build_cmd(extra_allowed_tools)
        env = {**os.environ, "NO_COLOR": "1", "FORCE_COLOR": "0"}

        with self._lock:
            if self._interrupted:
                raise WorkerInterrupted("")
            self._chunks = []
            self._timed_out = False
            self.state = SessionState.STARTING

        logger.info(
            "Spawning Claude CLI: cwd=%s timeout=%.0fs request_chars=%d",
            self.working_dir,
            self.timeout,
            len(request),
        )
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=self.working_dir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise WorkerFailed(f"Claude CLI not found: {self.claude_command}") from exc

        with self._lock:
            self._proc = proc
            interrupted_early = self._interrupted
        if interrupted_early:
            terminate_process(proc)
        if task_id and self.store is not None:
            self.store.set_running_task_pid(task_id, proc.pid)

        stderr_parts: list[str] = []
        stderr_thread = threading.Thread(
            target=lambda: stderr_parts.append(proc.stderr.read() if proc.stderr else ""),
            name="claude-stderr",
            daemon=True,
        )
        stderr_thread.start()
        timer = threading.Timer(self.timeout, self._on_timeout, args=(proc,))
        timer.daemon = True
        timer.start()

        result: ResultEvent | None = None
        try:
            try:
                assert proc.stdin is not None
                proc.stdin.write(request)
                proc.stdin.close()
            except (BrokenPipeError, OSError):
                logger.debug("Worker closed stdin early pid=%s", proc.pid)

            self.state = SessionState.STREAMING
            assert proc.stdout is not None
            for line in proc.stdout:
                event = parse_stream_line(line)
                if event is None:
                    continue
                final = self._handle_event(event, throttle)
                if final is not None:
                    result = final
            returncode = proc.wait()
        finally:
            timer.cancel()
            stderr_thread.join(timeout=2.0)
            with self._lock:
                self._proc = None

        stderr = "".join(stderr_parts).strip()
        with self._lock:
            interrupted = self._interrupted
            timed_out = self._timed_out
            partial = "\n".join(self._chunks)

        if interrupted:
            logger.info("Worker interrupted pid=%s partial_chars=%d", proc.pid, len(partial))
            raise WorkerInterrupted(partial)

        if timed_out:
            logger.warning("Worker timed out after %.0fs pid=%s partial_chars=%d", self.timeout, proc.pid, len(partial))
            if partial.strip():
                return WorkerReply(
                    text=partial.strip() + TIMEOUT_MARKER,
                    activity_count=throttle.emitted,
                    timed_out=True,
                )
            raise WorkerTimeout("Response timeout")

        if result is not None and result.is_error and not partial.strip():
            raise WorkerFailed(result.result or stderr or f"Claude exited with code {returncode}")

        # an error result (e.g. max turns) still returns the work streamed so far
        use_result = result is not None and not result.is_error and result.result.strip()
        text = result.result if use_result else partial
        text = text.strip()
        if text:
            logger.info("Worker completed pid=%s response_chars=%d", proc.pid, len(text))
            return WorkerReply(
                text=text,
                activity_count=throttle.emitted,
                permission_denials=result.permission_denials if result is not None else [],
            )
        if returncode != 0:
            raise WorkerFailed(f"Claude exited with code {returncode}: {stderr}")
        return WorkerReply(text=NO_RESPONSE, activity_count=throttle.emitted)

    def _handle_event(self, event: StreamEvent, throttle: ActivityThrottle) -> ResultEvent | None:
        if isinstance(event, AssistantEvent):
            for block in event.blocks:
                if isinstance(block, ToolUseBlock):
                    throttle(format_tool_activity(block))
                elif isinstance(block, TextBlock):
                    if block.text:
                        self._append(block.text)
                else:
                    raise TypeError(f"unhandled content block {block!r}")
            return None
        if isinstance(event, ResultEvent):
            return event
        if isinstance(event, RawTextEvent):
            self._append(event.text)
            return None
        if isinstance(event, SystemEvent):
            logger.debug("Worker system event: %s", event.subtype)
            return None
        if isinstance(event, UnknownEvent):
            return None
        raise TypeError(f"unhandled stream event {event!r}")

    def _append(self, text: str) -> None:
        with self._lock:
            self._chunks.append(text)

    def _on_timeout(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._timed_out = True
        terminate_process(proc)

    def interrupt(self) -> str | None:
        """Kill an active request and return the text accumulated so far."""
        with self._lock:
            if self.state not in _ACTIVE_STATES:
                return None
            self._interrupted = True
            proc = self._proc
            partial = "\n".join(self._chunks)
        self._cancel.set()
        if proc is not None:
            terminate_process(proc)
        return partial

    def close(self) -> None:
        self.interrupt()


SessionFactory = Callable[[str, bool], ClaudeSession]


class SessionManager:
    """Owns at most one ClaudeSession; a new one is created lazily on demand."""

    def __init__(self, factory: SessionFactory) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._session: ClaudeSession | None = None
        self._fresh_next = False

    @classmethod
    def from_settings(cls, settings: Any, store: Any) -> SessionManager:
        def factory(working_dir: str, fresh: bool) -> ClaudeSession:
            return ClaudeSession(
                working_dir,
                store=store,
                claude_command=settings.claude_command,
                model=settings.claude_model,
                permission_mode=settings.claude_permission_mode,
                allowed_tools=settings.claude_allowed_tools,
                system_prompt=settings.claude_system_prompt,
                timeout=settings.worker_timeout_seconds,
                max_retries=settings.worker_max_retries,
                retry_base_delay=settings.worker_retry_base_delay_seconds,
                activity_interval=settings.activity_interval_seconds,
                continue_conversation=not fresh,
            )

        return cls(factory)

    @property
    def current(self) -> ClaudeSession | None:
        return self._session

    def get_or_create(self, working_dir: str) -> ClaudeSession:
        with self._lock:
            session = self._session
            if session is not None and session.working_dir == working_dir:
                return session
            if session is not None:
                logger.info("Working directory changed %s -> %s; replacing session", session.working_dir, working_dir)
                session.close()
            session = self._factory(working_dir, self._fresh_next)
            self._fresh_next = False
            self._session = session
            return session

    def kill_current(self, *, fresh: bool = False) -> None:
        """Tear down the current session. ``fresh`` skips --continue on the next one."""
        with self._lock:
            session = self._session
            self._session = None
            if fresh:
                self._fresh_next = True
        if session is not None:
            logger.info("Killing session for %s", session.working_dir)
            session.close()

    def interrupt(self) -> str | None:
        session = self._session
        if session is None:
            return None
        return session.interrupt()
