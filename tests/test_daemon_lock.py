import json
import os

import pytest

import textme.__main__ as entrypoint


@pytest.fixture(autouse=True)
def _cleanup_lock():
    entrypoint._release_daemon_lock()
    yield
    entrypoint._release_daemon_lock()


@pytest.fixture
def lock_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("textme_db_path", str(tmp_path / "textme.db"))
    monkeypatch.setenv("textme_pid_file", str(tmp_path / "textme.pid"))
    return tmp_path


def test_acquire_writes_metadata_and_release_clears(lock_env):
    lock_path = entrypoint._acquire_daemon_lock()

    assert lock_path == lock_env / "textme.pid"
    payload = json.loads(lock_path.read_text(encoding="utf-8"))
    assert payload["db_path"] == str(lock_env / "textme.db")
    assert payload["cwd"] == str(lock_env)
    assert payload["pid"] == str(os.getpid())

    entrypoint._release_daemon_lock()
    assert not lock_path.exists()
    assert entrypoint._LOCK_PATH is None


def test_release_leaves_foreign_lock_alone(lock_env):
    lock_path = entrypoint._acquire_daemon_lock()
    lock_path.write_text(json.dumps({"pid": "1"}), encoding="utf-8")

    entrypoint._release_daemon_lock()

    assert lock_path.exists()


def test_stale_lock_is_replaced(lock_env, monkeypatch):
    lock_path = lock_env / "textme.pid"
    lock_path.write_text(json.dumps({"pid": "99999", "cwd": "/tmp/old"}), encoding="utf-8")
    monkeypatch.setattr(entrypoint, "_holder_is_running", lambda pid: False)

    assert entrypoint._acquire_daemon_lock() == lock_path
    assert json.loads(lock_path.read_text(encoding="utf-8"))["pid"] == str(os.getpid())


def test_acquire_surfaces_lock_holder_metadata(lock_env, monkeypatch):
    lock_path = lock_env / "textme.pid"
    lock_path.write_text(json.dumps({"pid": "99999", "cwd": "/tmp/holder"}), encoding="utf-8")
    monkeypatch.setattr(entrypoint, "_holder_is_running", lambda pid: True)

    with pytest.raises(entrypoint.DaemonLockError, match="Lock metadata"):
        entrypoint._acquire_daemon_lock(attempts=2, retry_delay=0)

    assert entrypoint._LOCK_PATH is None
    assert json.loads(lock_path.read_text(encoding="utf-8"))["pid"] == "99999"


def test_holder_is_running_rejects_missing_pid():
    assert entrypoint._holder_is_running(0) is False
    assert entrypoint._holder_is_running(os.getpid()) is False


def test_main_exits_when_lock_contended(monkeypatch, capsys):
    def _raise_locked():
        raise entrypoint.DaemonLockError("locked")

    reported = []
    monkeypatch.setattr(entrypoint, "_acquire_daemon_lock", _raise_locked)
    monkeypatch.setattr(entrypoint, "notify_startup_failure", lambda settings, exc: reported.append(exc))
    monkeypatch.setattr(entrypoint.sys, "argv", ["textme", "daemon"])

    with pytest.raises(SystemExit) as exc:
        entrypoint.main()

    assert exc.value.code == 1
    assert "locked" in capsys.readouterr().err
    assert len(reported) == 1


def test_version_mode(monkeypatch, capsys):
    monkeypatch.setattr(entrypoint.sys, "argv", ["textme", "--version"])
    entrypoint.main()
    assert capsys.readouterr().out.startswith("textme ")


def test_status_mode_json(lock_env, monkeypatch, capsys):
    monkeypatch.setattr(entrypoint.sys, "argv", ["textme", "status", "--json"])

    entrypoint.main()

    payload = json.loads(capsys.readouterr().out)
    assert payload["running_task"] is None
    assert payload["queued"] == []
