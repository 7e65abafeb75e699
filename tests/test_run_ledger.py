import asyncio

import pytest

from webchat.errors import RunConflictError, WorkerSpawnError
from webchat.persistence import SessionStore
from webchat.run_ledger import ABORTED_ERROR, RunLedger


class FakeHandle:
    def __init__(self, session_id, on_event, on_exit):
        self.session_id = session_id
        self.on_event = on_event
        self.on_exit = on_exit
        self.pid = 4242
        self.returncode = None
        self.stderr_tail = []

    async def emit(self, **event):
        await self.on_event(event)

    async def exit(self, code, stderr=None):
        self.returncode = code
        self.stderr_tail = list(stderr or [])
        await self.on_exit(self)


class FakeSupervisor:
    def __init__(self, fail=False):
        self.fail = fail
        self.spawned = []
        self.terminated = []

    async def spawn(self, session_id, message, agent_session_id, *, on_event, on_exit):
        await asyncio.sleep(0)
        if self.fail:
            raise WorkerSpawnError("agent executable not found")
        handle = FakeHandle(session_id, on_event, on_exit)
        handle.message = message
        handle.agent_session_id = agent_session_id
        self.spawned.append(handle)
        return handle

    async def terminate(self, handle, *, graceful=True):
        self.terminated.append((handle, graceful))
        handle.returncode = -15


def _ledger(settings, supervisor=None, store=None):
    return RunLedger(settings, supervisor or FakeSupervisor(), store)


async def _collect(sub):
    return [e async for e in sub]


def test_only_one_concurrent_start_succeeds(settings):
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor)

    async def scenario():
        return await asyncio.gather(
            *(ledger.start_run("s1", "hi") for _ in range(5)),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    started = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, RunConflictError)]
    assert len(started) == 1
    assert len(conflicts) == 4
    assert len(supervisor.spawned) == 1
    assert started[0].status == "running"
    assert supervisor.spawned[0].agent_session_id == "s1"


def test_spawn_failure_registers_nothing(settings):
    ledger = _ledger(settings, FakeSupervisor(fail=True))

    async def scenario():
        with pytest.raises(WorkerSpawnError):
            await ledger.start_run("s1", "hi")

    asyncio.run(scenario())
    assert ledger.has_active_run("s1") is False
    assert ledger.get_active_run("s1") is None
    assert ledger.subscribe("s1", replay=True) is None


def test_clean_exit_marks_done_and_keeps_run_for_replay(settings):
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor)

    async def scenario():
        run = await ledger.start_run("s1", "hi")
        live = ledger.subscribe("s1", replay=False)
        handle = supervisor.spawned[0]
        await handle.emit(type="text", delta="Hello")
        await handle.exit(0)
        live_events = await _collect(live)
        replayed = await _collect(ledger.subscribe("s1", replay=True))
        restarted = await ledger.start_run("s1", "again")
        await ledger.shutdown()
        return run, live_events, replayed, restarted

    run, live_events, replayed, restarted = asyncio.run(scenario())
    assert run.status == "done"
    assert run.finished_at_ms is not None
    assert run.worker is None
    assert [e["type"] for e in live_events] == ["start", "text-start", "text-delta", "text-end", "finish"]
    assert replayed == live_events
    assert restarted is not run
    assert restarted.status == "running"


def test_worker_crash_marks_error_and_broadcasts_reason(settings):
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor)

    async def scenario():
        run = await ledger.start_run("s1", "hi")
        sub = ledger.subscribe("s1", replay=False)
        await supervisor.spawned[0].exit(2, stderr=["Traceback", "boom"])
        return run, await _collect(sub)

    run, events = asyncio.run(scenario())
    assert run.status == "error"
    assert "boom" in run.error
    assert events[-2] == {"type": "error", "errorText": run.error}
    assert events[-1] == {"type": "finish"}
    assert ledger.has_active_run("s1") is False


def test_abort_is_idempotent_and_closes_streams(settings):
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor)

    async def scenario():
        run = await ledger.start_run("s1", "hi")
        sub = ledger.subscribe("s1", replay=False)
        first = await ledger.abort_run("s1")
        second = await ledger.abort_run("s1")
        unknown = await ledger.abort_run("nope")
        events = await _collect(sub)
        await asyncio.sleep(0)
        # A late exit from the killed worker must not change the outcome.
        await supervisor.spawned[0].exit(-15)
        return run, first, second, unknown, events

    run, first, second, unknown, events = asyncio.run(scenario())
    assert (first, second, unknown) == (True, False, False)
    assert run.status == "error"
    assert run.error == ABORTED_ERROR
    assert events[-1] == {"type": "finish"}
    assert [g for _h, g in supervisor.terminated] == [True]


def test_unsubscribing_does_not_touch_worker_or_other_subscribers(settings):
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor)

    async def scenario():
        await ledger.start_run("s1", "hi")
        leaving = ledger.subscribe("s1", replay=False)
        staying = ledger.subscribe("s1", replay=False)
        handle = supervisor.spawned[0]
        await handle.emit(type="text", delta="a")
        leaving.close()
        await handle.emit(type="text", delta="b")
        active = ledger.has_active_run("s1")
        await handle.exit(0)
        return active, await _collect(staying)

    active, events = asyncio.run(scenario())
    assert active is True
    assert supervisor.terminated == []
    assert [e.get("delta") for e in events if e["type"] == "text-delta"] == ["a", "b"]


def test_finished_run_is_evicted_after_grace_period(settings):
    settings.grace_period_sec = 0.05
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor)

    async def scenario():
        await ledger.start_run("s1", "hi")
        await supervisor.spawned[0].exit(0)
        refused = ledger.evict("missing")
        before = ledger.get_active_run("s1")
        await asyncio.sleep(0.15)
        return refused, before, ledger.get_active_run("s1"), ledger.subscribe("s1", replay=True)

    refused, before, after, sub = asyncio.run(scenario())
    assert refused is False
    assert before is not None
    assert after is None
    assert sub is None


def test_evict_refuses_active_run(settings):
    ledger = _ledger(settings)

    async def scenario():
        await ledger.start_run("s1", "hi")
        refused = ledger.evict("s1")
        await ledger.abort_run("s1")
        evicted = ledger.evict("s1")
        return refused, evicted

    assert asyncio.run(scenario()) == (False, True)
    assert ledger.get_active_run("s1") is None


def test_finalized_parts_and_final_message_are_persisted(settings, tmp_path):
    supervisor = FakeSupervisor()
    store = SessionStore(tmp_path / "chats")
    ledger = _ledger(settings, supervisor, store)

    async def scenario():
        run = await ledger.start_run("s1", "hi")
        handle = supervisor.spawned[0]
        await handle.emit(type="thinking", delta="plan")
        await handle.emit(type="text", delta="Hi")
        mid = store.read_messages("s1")
        await handle.emit(type="text", delta=" there")
        await handle.exit(0)
        return run, mid, store.read_messages("s1")

    run, mid, final = asyncio.run(scenario())
    assert len(mid) == 1
    assert mid[0]["id"] == run.assistant_message_id
    assert mid[0]["content"] == "Hi"
    assert mid[0]["parts"][0] == {"type": "reasoning", "text": "plan"}
    assert len(final) == 1
    assert final[0]["content"] == "Hi there"
    assert [p["type"] for p in final[0]["parts"]] == ["reasoning", "text"]


def test_shutdown_terminates_active_workers(settings):
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor)

    async def scenario():
        await ledger.start_run("s1", "hi")
        await ledger.start_run("s2", "hi")
        await ledger.shutdown()

    asyncio.run(scenario())
    assert len(supervisor.terminated) == 2
    assert ledger.active_count() == 2
    assert {s["session_id"] for s in ledger.snapshot()} == {"s1", "s2"}


def test_user_message_is_written_only_for_the_accepted_start(settings, tmp_path):
    store = SessionStore(tmp_path / "chats")
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor, store)

    async def scenario():
        return await asyncio.gather(
            ledger.start_run("s1", "first", user_message={"id": "u1", "content": "first"}),
            ledger.start_run("s1", "second", user_message={"id": "u2", "content": "second"}),
            return_exceptions=True,
        )

    first, second = asyncio.run(scenario())
    assert first.status == "running"
    assert isinstance(second, RunConflictError)
    assert [m["id"] for m in store.read_messages("s1")] == ["u1"]
    assert len(supervisor.spawned) == 1


def test_worker_reported_error_is_not_repeated_on_exit(settings):
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor)

    async def scenario():
        run = await ledger.start_run("s1", "hi")
        sub = ledger.subscribe("s1", replay=False)
        handle = supervisor.spawned[0]
        await handle.emit(type="error", message="rate limited")
        await handle.exit(1, stderr=["[worker] failed: rate limited"])
        return run, await _collect(sub)

    run, events = asyncio.run(scenario())
    assert [e for e in events if e["type"] == "error"] == [{"type": "error", "errorText": "rate limited"}]
    assert events[-1] == {"type": "finish"}
    assert run.status == "error"
    assert run.error == "rate limited"


def test_restored_run_keeps_only_its_remaining_grace(settings):
    settings.grace_period_sec = 0.3
    supervisor = FakeSupervisor()
    ledger = _ledger(settings, supervisor)

    async def scenario():
        first = await ledger.start_run("s1", "hi")
        await supervisor.spawned[0].exit(0)
        await asyncio.sleep(0.2)
        supervisor.fail = True
        with pytest.raises(WorkerSpawnError):
            await ledger.start_run("s1", "again")
        restored = ledger.get_active_run("s1")
        await asyncio.sleep(0.2)
        return first, restored, ledger.get_active_run("s1")

    first, restored, after = asyncio.run(scenario())
    assert restored is first
    assert after is None
