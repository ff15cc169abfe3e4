from __future__ import annotations

import argparse
import asyncio
import atexit
import importlib.metadata
import json
import os
import subprocess
import sys
import time
from pathlib import Path

import uvicorn

from .config import TextMeSettings
from .daemon import notify_startup_failure
from .daemon import run as run_daemon
from .executor import get_working_dir
from .process_control import pid_alive
from .store import SQLiteStore
from .utils import format_time_ago, preview

_LOCK_PATH: Path | None = None


class DaemonLockError(RuntimeError):
    pass


def _read_lock_holder(lock_path: Path) -> dict[str, str] | None:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def _holder_pid(holder: dict[str, str] | None) -> int:
    raw = str((holder or {}).get("pid", ""))
    return int(raw) if raw.isdigit() else 0


def _holder_is_running(pid: int) -> bool:
    """Liveness check: the pid exists and looks like a textme process."""
    if pid == os.getpid() or not pid_alive(pid):
        return False
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        # can't inspect; trust the pid
        return True
    command = result.stdout.strip()
    return bool(command) and "textme" in command


def _acquire_daemon_lock(
    lock_path: Path | None = None,
    attempts: int = 3,
    retry_delay: float = 0.5,
) -> Path:
    settings = TextMeSettings()
    lock_path = Path(lock_path or settings.pid_file)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    holder: dict[str, str] | None = None
    for attempt in range(attempts):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = _read_lock_holder(lock_path)
            pid = _holder_pid(holder)
            if not _holder_is_running(pid):
                print(f"Removing stale lock {lock_path} (pid {pid or 'unknown'})", file=sys.stderr)
                lock_path.unlink(missing_ok=True)
                continue
            if attempt < attempts - 1:
                time.sleep(retry_delay)
            continue
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(
                {"pid": str(os.getpid()), "cwd": str(Path.cwd()), "db_path": str(settings.db_path)},
                handle,
            )
        global _LOCK_PATH
        _LOCK_PATH = lock_path
        atexit.register(_release_daemon_lock)
        return lock_path

    detail = f" Lock metadata: {json.dumps(holder)}" if holder else ""
    raise DaemonLockError(f"Another TextMe daemon appears to be running (lock: {lock_path}).{detail}")


def _release_daemon_lock() -> None:
    """Remove the pid file, but only if this process owns it."""
    global _LOCK_PATH
    lock_path = _LOCK_PATH
    _LOCK_PATH = None
    if lock_path is None:
        return
    holder = _read_lock_holder(lock_path)
    if holder is not None and str(holder.get("pid")) == str(os.getpid()):
        lock_path.unlink(missing_ok=True)


def _get_version() -> str:
    try:
        return importlib.metadata.version("textme")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def _print_status(settings: TextMeSettings, as_json: bool) -> None:
    store = SQLiteStore(Path(settings.db_path))
    store.bootstrap()
    try:
        running = store.get_running_task()
        queued = store.list_queued_requests()
        working_dir = get_working_dir(store)
    finally:
        store.close()

    if as_json:
        print(
            json.dumps(
                {
                    "working_dir": working_dir,
                    "running_task": None if running is None else {
                        "id": running.id,
                        "description": running.description,
                        "started_at": running.started_at,
                        "pid": running.pid,
                    },
                    "queued": [{"sender": q.sender, "text": q.text, "queued_at": q.queued_at} for q in queued],
                }
            )
        )
        return
    print(f"Directory: {working_dir}")
    if running is None:
        print("Running: nothing")
    else:
        print(f"Running: {preview(running.description, 60)} (pid {running.pid or '-'}, started {format_time_ago(running.started_at)})")
    print(f"Queued: {len(queued)}")
    for position, item in enumerate(queued, start=1):
        print(f"  {position}. {preview(item.text, 60)} ({format_time_ago(item.queued_at)})")


def main() -> None:
    parser = argparse.ArgumentParser(description="TextMe runtime")
    parser.add_argument(
        "mode",
        choices=["daemon", "admin", "status", "version"],
        nargs="?",
        default="daemon",
    )
    parser.add_argument("--version", "-V", action="store_true", help="Show version and exit")
    parser.add_argument("--json", dest="json_output", action="store_true", help="Emit machine-readable JSON")
    args = parser.parse_args()

    if args.version or args.mode == "version":
        print(f"textme {_get_version()}")
        return

    settings = TextMeSettings()

    if args.mode == "status":
        _print_status(settings, args.json_output)
        return

    if args.mode == "daemon":
        try:
            _acquire_daemon_lock()
        except RuntimeError as exc:
            print(str(exc), file=sys.stderr)
            notify_startup_failure(settings, exc)
            raise SystemExit(1) from exc
        try:
            asyncio.run(run_daemon(settings))
        finally:
            _release_daemon_lock()
        return

    uvicorn.run(
        "textme.main:build_app",
        factory=True,
        host=settings.admin_host,
        port=settings.admin_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
