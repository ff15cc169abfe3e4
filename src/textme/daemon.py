from __future__ import annotations

import asyncio
import logging
import os
import signal
from datetime import timedelta
from pathlib import Path
from typing import Any

from .approval import ApprovalGate
from .claude_session import SessionManager
from .config import TextMeSettings
from .executor import TaskExecutor
from .models import InboundMessage
from .orchestrator import RelayOrchestrator
from .policy import PolicyEngine
from .protocols import TransportProtocol
from .sendblue import SendblueClient
from .store import SQLiteStore
from .utils import iso_now, preview, to_iso, utc_now

logger = logging.getLogger("textme.daemon")

WATERMARK_KEY = "last_poll_at"


class TextMeDaemon:
    def __init__(
        self,
        settings: TextMeSettings,
        *,
        store: Any | None = None,
        transport: TransportProtocol | None = None,
        sessions: Any | None = None,
        policy: PolicyEngine | None = None,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else SQLiteStore(Path(settings.db_path))
        self.store.bootstrap()
        self.transport = transport if transport is not None else SendblueClient.from_settings(settings)
        self.policy = policy if policy is not None else PolicyEngine(settings)
        self.sessions = sessions if sessions is not None else SessionManager.from_settings(settings, self.store)
        self.approvals = ApprovalGate(self.store, settings.approval_ttl_minutes)

        home = str(self.policy.home)
        self.executor = TaskExecutor(
            store=self.store,
            sessions=self.sessions,
            transport=self.transport,
            approvals=self.approvals if settings.approval_mode else None,
            default_dir=home,
            conversation_window=settings.conversation_window,
            max_response_chars=settings.max_response_chars,
        )
        self.orchestrator = RelayOrchestrator(
            store=self.store,
            transport=self.transport,
            sessions=self.sessions,
            executor=self.executor,
            policy=self.policy,
            approvals=self.approvals,
            conversation_window=settings.conversation_window,
        )

        self._shutdown_requested = False
        self._stop_event: asyncio.Event | None = None
        self._poll_lock = asyncio.Lock()
        self._poll_tasks: set[asyncio.Task[None]] = set()
        self._last_poll_at = self._load_watermark()

    def _load_watermark(self) -> str:
        stored = self.store.get_state(WATERMARK_KEY)
        if stored:
            return stored
        return to_iso(utc_now() - timedelta(seconds=self.settings.initial_lookback_seconds))

    # --- Lifecycle ---

    def startup(self) -> None:
        """Reconcile state left by a previous process and greet the operator."""
        stale = self.executor.recover()
        if stale is not None:
            self.notify_operator(
                f"⚠️ Restarted while working on: {preview(stale.description, 60)}\n"
                "That task was stopped. Resend it if you still need it."
            )
        if self.settings.send_startup_notice:
            self.notify_operator(self.orchestrator.startup_text())
        logger.info(
            "TextMe ready. allowed_senders=%d poll_interval=%.1fs queued=%d",
            len(self.settings.allowed_senders),
            self.settings.poll_interval_seconds,
            self.store.queue_length(),
        )

    def request_shutdown(self) -> None:
        """Request graceful shutdown of the daemon."""
        logger.info("Shutdown requested")
        self._shutdown_requested = True
        self.executor.stop()
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def shutdown(self) -> None:
        """Perform cleanup on shutdown."""
        logger.info("Shutting down...")
        try:
            self.sessions.kill_current()
        except Exception as exc:
            logger.warning("Error stopping worker session: %s", exc)
        try:
            self.store.close()
        except Exception as exc:
            logger.warning("Error closing store: %s", exc)
        logger.info("Shutdown complete")

    def notify_operator(self, text: str) -> bool:
        recipient = self.settings.operator_number
        if not recipient:
            return False
        try:
            self.transport.send(recipient, text)
            return True
        except Exception as exc:
            logger.warning("Failed to notify operator: %s", exc)
            return False

    def notify_crash(self, exc: BaseException) -> bool:
        return self.notify_operator(crash_text(exc))

    async def run_forever(self) -> None:
        self._stop_event = asyncio.Event()
        if self._shutdown_requested:
            self._stop_event.set()
        executor_task = asyncio.create_task(self.executor.run_forever(lambda: self._shutdown_requested))
        try:
            await asyncio.gather(self._poll_loop(), self._sweep_loop())
        finally:
            await self._wait_for_executor(executor_task)

    async def _wait_for_executor(self, executor_task: asyncio.Task[None]) -> None:
        grace = self.settings.shutdown_grace_seconds
        if self.executor.is_busy():
            logger.info("Waiting up to %.0fs for the running task to finish", grace)
        try:
            await asyncio.wait_for(asyncio.shield(executor_task), timeout=grace)
            return
        except asyncio.TimeoutError:
            logger.warning("Running task did not finish within %.0fs; killing worker", grace)
        self.sessions.kill_current()
        try:
            await asyncio.wait_for(executor_task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.error("Executor did not stop after worker kill")

    async def _wait(self, seconds: float) -> None:
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # --- Poll loop ---

    async def _poll_loop(self) -> None:
        """Fire a poll tick every interval; overlapping ticks are skipped."""
        while not self._shutdown_requested:
            task = asyncio.create_task(self._poll_tick())
            self._poll_tasks.add(task)
            task.add_done_callback(self._poll_tasks.discard)
            await self._wait(self.settings.poll_interval_seconds)
        if self._poll_tasks:
            await asyncio.gather(*self._poll_tasks, return_exceptions=True)

    async def _poll_tick(self) -> None:
        try:
            await self.poll_once()
        except Exception:
            logger.exception("Poll cycle failed; will retry from %s", self._last_poll_at)

    async def poll_once(self) -> int | None:
        """Run one fetch-classify-dispatch cycle.

        Returns the number of dispatched messages, or None if a previous
        cycle was still running. The watermark only advances after a
        successful fetch.
        """
        if self._poll_lock.locked():
            logger.debug("Poll cycle still running; skipping tick")
            return None
        async with self._poll_lock:
            since = self._last_poll_at
            fetch_started = iso_now()
            messages = await asyncio.to_thread(self.transport.fetch_inbound, since)
            await asyncio.to_thread(self.store.set_state, WATERMARK_KEY, fetch_started)
            self._last_poll_at = fetch_started

            dispatched = 0
            for message in messages:
                if self._shutdown_requested:
                    break
                if not await asyncio.to_thread(self._accept, message):
                    continue
                try:
                    await asyncio.to_thread(self.orchestrator.handle_message, message)
                    dispatched += 1
                except Exception:
                    logger.exception("Failed to handle message %s", message.id)
            if dispatched:
                logger.info("Poll cycle dispatched %d of %d messages", dispatched, len(messages))
            return dispatched

    def _accept(self, message: InboundMessage) -> bool:
        """Dedup, whitelist and empty-body filter. Marks the message processed."""
        if not self.store.mark_processed(message.id):
            return False
        if not self.policy.is_sender_allowed(message.sender):
            logger.info("Ignoring message %s from non-whitelisted sender %s", message.id, message.sender)
            return False
        if not message.text.strip():
            logger.debug("Ignoring empty message %s", message.id)
            return False
        return True

    # --- Sweep loop ---

    async def _sweep_loop(self) -> None:
        while not self._shutdown_requested:
            await self._wait(self.settings.sweep_interval_seconds)
            if self._shutdown_requested:
                break
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception:
                logger.exception("Sweep failed")

    def sweep_once(self) -> tuple[int, int]:
        pruned = self.store.prune_processed(self.settings.processed_retention_days)
        expired = self.approvals.sweep_expired()
        if pruned:
            logger.info("Pruned %d processed message ids", pruned)
        return pruned, expired


def crash_text(exc: BaseException) -> str:
    detail = preview(f"{type(exc).__name__}: {exc}", 300)
    return f"🚨 TextMe daemon crashed!\n\n{detail}\n\nCheck the logs and restart with `textme daemon`."


def configure_logging(settings: TextMeSettings) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    if settings.log_file:
        log_path = Path(settings.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logging.getLogger().addHandler(handler)


def notify_startup_failure(settings: TextMeSettings, exc: BaseException) -> None:
    if not settings.operator_number:
        return
    try:
        SendblueClient.from_settings(settings).send(settings.operator_number, crash_text(exc))
    except Exception as send_exc:
        logger.warning("Could not report startup failure: %s", send_exc)


async def run(settings: TextMeSettings | None = None) -> None:
    settings = settings or TextMeSettings()
    configure_logging(settings)
    try:
        daemon = TextMeDaemon(settings)
    except Exception as exc:
        logger.exception("Startup failed")
        notify_startup_failure(settings, exc)
        raise SystemExit(1) from exc

    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        if daemon.shutdown_requested:
            logger.warning("Received %s again; forcing exit", sig.name)
            daemon.sessions.kill_current()
            os._exit(1)
        logger.info("Received signal %s", sig.name)
        daemon.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        daemon.startup()
        await daemon.run_forever()
    except Exception as exc:
        logger.exception("TextMe daemon crashed")
        daemon.notify_crash(exc)
        raise SystemExit(1) from exc
    finally:
        daemon.shutdown()


if __name__ == "__main__":  # pragma: no cover
    asyncio.run(run())
