from __future__ import annotations

import logging
import os
import signal
import subprocess
import time

logger = logging.getLogger("textme.process_control")


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


def terminate_process(proc: subprocess.Popen[str], grace_seconds: float = 0.35) -> bool:
    """Terminate a worker's process group, escalating to SIGKILL if needed."""
    pid = int(proc.pid)
    if proc.poll() is not None:
        return False

    try:
        # start_new_session=True makes pid the process-group id.
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except OSError:
        logger.debug("killpg unavailable for pid=%s, signalling process only", pid, exc_info=True)
        proc.terminate()

    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            return True
        time.sleep(0.02)

    if proc.poll() is not None:
        return True
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        return True
    except OSError:
        proc.kill()
    return True


def terminate_pid(pid: int, grace_seconds: float = 2.0) -> bool:
    """Out-of-band termination of a recorded worker pid (no Popen handle)."""
    if not pid_alive(pid):
        return False
    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except OSError:
        os.kill(pid, signal.SIGTERM)

    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    try:
        os.killpg(pid, signal.SIGKILL)
    except OSError:
        logger.debug("SIGKILL failed for pid=%s", pid, exc_info=True)
    return True
