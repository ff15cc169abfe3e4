import pytest

from conftest import SENDER, make_message
from textme import executor as executor_module
from textme.approval import ApprovalGate
from textme.claude_session import WorkerFailed, WorkerInterrupted, WorkerReply
from textme.executor import WORKING_DIR_KEY, TaskExecutor, build_prompt
from textme.models import ConversationTurn, Role
from textme.stream_events import PermissionDenial


def _executor(store, transport, sessions, **kwargs):
    kwargs.setdefault("default_dir", "/home/op")
    return TaskExecutor(store=store, sessions=sessions, transport=transport, **kwargs)


def _run_all(executor):
    """Drain everything the executor has been handed, synchronously."""
    while True:
        work = executor.next_work()
        if work is None:
            return
        executor.process(work)


def test_idle_request_starts_and_replies(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    fake_sessions.session.replies = ["Hi there"]

    outcome = executor.submit(make_message("hello"))

    assert outcome.started
    assert store.get_running_task() is not None
    _run_all(executor)

    assert fake_transport.texts() == ['🔄 Starting: "hello"', "Hi there"]
    assert store.get_running_task() is None
    assert fake_sessions.dirs == ["/home/op"]
    turns = store.recent_turns(SENDER, 10)
    assert [(t.role, t.content) for t in reversed(turns)] == [(Role.USER, "hello"), (Role.ASSISTANT, "Hi there")]


def test_busy_requests_queue_and_drain_in_order(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    fake_sessions.session.replies = ["done X", "done Y", "done Z"]

    assert executor.submit(make_message("X", "m1")).started
    y = executor.submit(make_message("Y", "m2"))
    z = executor.submit(make_message("Z", "m3"))
    assert (y.started, y.position) == (False, 1)
    assert (z.started, z.position) == (False, 2)

    _run_all(executor)

    assert fake_transport.texts() == [
        '📥 Queued (position 1): "Y"',
        '📥 Queued (position 2): "Z"',
        '🔄 Starting: "X" | 2 queued',
        "done X",
        '📬 Now processing: "Y" | 1 still queued',
        "done Y",
        '📬 Now processing: "Z"',
        "done Z",
    ]
    assert store.queue_length() == 0
    assert store.get_running_task() is None


def test_duplicate_queued_message_is_ignored(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    executor.submit(make_message("X", "m1"))
    executor.submit(make_message("Y", "m2"))

    again = executor.submit(make_message("Y", "m2"))

    assert again.duplicate
    assert store.queue_length() == 1


def test_new_request_waits_behind_existing_queue(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    store.enqueue_request("old", SENDER, "queued earlier", {})

    outcome = executor.submit(make_message("newer", "m2"))

    assert not outcome.started
    assert outcome.position == 2


def test_failure_reports_error_kills_session_and_keeps_draining(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    fake_sessions.session.replies = [WorkerFailed("Claude exited with code 1: boom"), "second ok"]

    executor.submit(make_message("first", "m1"))
    executor.submit(make_message("second", "m2"))
    _run_all(executor)

    texts = fake_transport.texts()
    assert "❌ Error: Claude exited with code 1: boom" in texts
    assert texts[-1] == "second ok"
    assert fake_sessions.kills == [False]
    assert store.get_running_task() is None


def test_interrupted_task_sends_nothing_more(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    fake_sessions.session.replies = [WorkerInterrupted("partial")]

    executor.submit(make_message("long job"))
    _run_all(executor)

    assert fake_transport.texts() == ['🔄 Starting: "long job"']
    assert fake_sessions.kills == []
    assert store.get_running_task() is None


def test_task_interrupted_before_start_never_runs(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    executor.submit(make_message("cancel me", "m1"))
    executor.submit(make_message("next one", "m2"))
    store.clear_running_task(store.get_running_task().id)

    _run_all(executor)

    assert len(fake_sessions.session.prompts) == 1
    assert fake_sessions.session.prompts[0].endswith("next one")
    assert '🔄 Starting: "cancel me"' not in fake_transport.texts()


def test_activity_updates_and_done_prefix(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    fake_sessions.session.activities = ["Read: app.py"]
    fake_sessions.session.replies = ["Fixed it"]

    executor.submit(make_message("fix the bug"))
    _run_all(executor)

    assert fake_transport.texts()[1:] == ["🔧 Read: app.py", "✅ Done\n\nFixed it"]


def test_long_reply_is_truncated(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions, max_response_chars=10)
    fake_sessions.session.replies = ["x" * 25]

    executor.submit(make_message("dump"))
    _run_all(executor)

    assert fake_transport.texts()[-1] == "x" * 10 + "\n\n[Truncated]"
    assert store.recent_turns(SENDER, 1)[0].content == "x" * 10 + "\n\n[Truncated]"


def test_prompt_carries_directory_and_history(store, fake_transport, fake_sessions):
    store.set_state(WORKING_DIR_KEY, "/work/repo")
    executor = _executor(store, fake_transport, fake_sessions)
    fake_sessions.session.replies = ["first answer", "second answer"]

    executor.submit(make_message("first question", "m1"))
    _run_all(executor)
    executor.submit(make_message("second question", "m2"))
    _run_all(executor)

    prompt = fake_sessions.session.prompts[-1]
    assert prompt.startswith("[Session: /work/repo]")
    assert "User: first question\nClaude: first answer" in prompt
    assert prompt.endswith("Current request:\nsecond question")
    assert "User: second question" not in prompt


def test_build_prompt_without_history():
    assert build_prompt("/a", [], "hi") == "[Session: /a]\n\nCurrent request:\nhi"


def test_build_prompt_labels_roles():
    history = [
        ConversationTurn(sender=SENDER, role=Role.USER, content="q", timestamp="t1"),
        ConversationTurn(sender=SENDER, role=Role.ASSISTANT, content="a", timestamp="t2"),
    ]
    prompt = build_prompt("/a", history, "next")
    assert "Recent conversation:\nUser: q\nClaude: a\n\n---\n\nCurrent request:\nnext" in prompt


def test_conversation_history_is_trimmed(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions, conversation_window=2)

    for index in range(3):
        executor.submit(make_message(f"q{index}", f"m{index}"))
        _run_all(executor)

    contents = [turn.content for turn in reversed(store.recent_turns(SENDER, 10))]
    assert contents == ["q2", "assistant-response"]


def test_send_failures_do_not_break_execution(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    fake_transport.fail_send = True

    executor.submit(make_message("hello"))
    _run_all(executor)

    assert store.get_running_task() is None
    assert len(store.recent_turns(SENDER, 10)) == 2


def test_recover_clears_stale_slot(store, fake_transport, fake_sessions):
    store.claim_running_task("task-old", "refactor everything")
    executor = _executor(store, fake_transport, fake_sessions)

    stale = executor.recover()

    assert stale is not None and stale.id == "task-old"
    assert store.get_running_task() is None
    assert executor.recover() is None


def test_recover_terminates_orphaned_worker(store, fake_transport, fake_sessions, monkeypatch):
    store.claim_running_task("task-old", "refactor")
    store.set_running_task_pid("task-old", 424242)
    killed = []
    monkeypatch.setattr(executor_module, "pid_alive", lambda pid: True)
    monkeypatch.setattr(executor_module, "terminate_pid", killed.append)

    _executor(store, fake_transport, fake_sessions).recover()

    assert killed == [424242]


def test_permission_denials_open_an_approval(store, fake_transport, fake_sessions):
    gate = ApprovalGate(store, ttl_minutes=5)
    executor = _executor(store, fake_transport, fake_sessions, approvals=gate)
    fake_sessions.session.replies = [
        WorkerReply(
            text="I need to install dependencies first.",
            permission_denials=[PermissionDenial(tool_name="Bash", tool_input={"command": "npm install"})],
        )
    ]

    executor.submit(make_message("set up the project"))
    _run_all(executor)

    assert fake_transport.texts()[-1] == (
        "⚠️ Claude was blocked from running:\nnpm install\n\n"
        'Reply "yes" to allow it or "no" to skip (expires in 5 min).'
    )
    pending = gate.active_for(SENDER)
    assert pending is not None
    assert pending.command == "npm install"
    assert pending.allow_rules == "Bash(npm install)"


def test_permission_denials_ignored_without_gate(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    fake_sessions.session.replies = [
        WorkerReply(text="blocked", permission_denials=[PermissionDenial(tool_name="Bash", tool_input={"command": "ls"})])
    ]

    executor.submit(make_message("list"))
    _run_all(executor)

    assert fake_transport.texts()[-1] == "blocked"


def test_allowed_tools_context_reaches_session(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    message = make_message("go ahead", "apr_1:approved")
    message.context = {"allowed_tools": ["Bash(npm install)"]}

    executor.submit(make_message("plain", "m0"))
    _run_all(executor)
    executor.submit(message)
    _run_all(executor)

    assert fake_sessions.session.extra_tools == [None, ["Bash(npm install)"]]


def test_stop_sends_new_requests_to_the_queue(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    executor.stop()

    outcome = executor.submit(make_message("late"))

    assert not outcome.started
    assert store.get_running_task() is None
    assert store.queue_length() == 1


@pytest.mark.asyncio
async def test_worker_loop_processes_channel_then_exits(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions, idle_poll_seconds=0.01)
    executor.submit(make_message("hello"))
    checks = []

    def is_shutdown():
        checks.append(1)
        return len(checks) > 1

    await executor.run_forever(is_shutdown)

    assert fake_transport.texts()[-1] == "assistant-response"
    assert store.get_running_task() is None


@pytest.mark.asyncio
async def test_worker_loop_requeues_unstarted_work_on_shutdown(store, fake_transport, fake_sessions):
    executor = _executor(store, fake_transport, fake_sessions)
    executor.submit(make_message("never started"))
    executor.stop()

    await executor.run_forever(lambda: True)

    assert store.get_running_task() is None
    queued = store.list_queued_requests()
    assert [item.text for item in queued] == ["never started"]
    assert fake_sessions.session.prompts == []
