"""Tests for request dispatch: sync calls, async continuations, correlation."""

import asyncio

import pytest

from idris_mcp.idris_dispatch import Dispatcher
from idris_mcp.idris_errors import CallFailed, ProcessUnavailable
from idris_mcp.idris_sexp import Command, sym

from conftest import Err, FakeIdris, Hold, Seq


async def settle():
    """Let the reader/writer tasks and call_soon callbacks run."""
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture
async def running():
    fake = FakeIdris()
    await fake.start()
    return fake


async def test_call_returns_response(running):
    running.replies["type-of"] = "foo : Nat"
    d = Dispatcher(running)
    response = await d.call(Command("type-of", ("foo",)))
    assert response.text == "foo : Nat"
    assert running.sent == [("type-of", ["foo"])]
    assert d.pending_count == 0


async def test_call_error_raises_call_failed(running):
    running.replies["type-of"] = Err("No such variable foo")
    d = Dispatcher(running)
    with pytest.raises(CallFailed) as exc:
        await d.call(Command("type-of", ("foo",)))
    assert exc.value.diagnostic == "No such variable foo"


async def test_call_without_process():
    d = Dispatcher(FakeIdris())
    with pytest.raises(ProcessUnavailable):
        await d.call(Command("type-of", ("foo",)))


async def test_call_timeout(running):
    running.replies["type-of"] = Hold("late")
    d = Dispatcher(running)
    with pytest.raises(CallFailed, match="TIMEOUT"):
        await d.call(Command("type-of", ("foo",)), timeout=0.05)
    assert d.pending_count == 0
    # A late reply is dropped rather than misdelivered
    running.release()
    await settle()
    assert d.stats.stray == 1


async def test_call_async_runs_exactly_one_continuation_later(running):
    running.replies["type-of"] = "foo : Nat"
    d = Dispatcher(running)
    successes, failures = [], []

    pending = d.call_async(Command("type-of", ("foo",)), successes.append, failures.append)

    # Never invoked before call_async returns
    assert successes == [] and failures == []
    assert pending.request_id == 1
    await settle()
    assert [r.text for r in successes] == ["foo : Nat"]
    assert failures == []
    assert d.pending_count == 0


async def test_call_async_failure_continuation(running):
    running.replies["case-split"] = Err("Can't split")
    d = Dispatcher(running)
    successes, failures = [], []
    d.call_async(Command("case-split", (3, "x")), successes.append, failures.append)
    await settle()
    assert successes == []
    assert len(failures) == 1
    assert isinstance(failures[0], CallFailed)


async def test_call_async_without_process_fails_later():
    d = Dispatcher(FakeIdris())
    successes, failures = [], []
    d.call_async(Command("type-of", ("x",)), successes.append, failures.append)
    assert failures == []
    await settle()
    assert successes == []
    assert isinstance(failures[0], ProcessUnavailable)


async def test_replies_correlated_by_id_not_order(running):
    """Replies released in reverse order still reach the right callers."""
    running.replies["type-of"] = lambda args: Hold(f"{args[0]} : Type")
    d = Dispatcher(running)
    results = {}
    for name in ("a", "b", "c"):
        d.call_async(Command("type-of", (name,)),
                     lambda r, name=name: results.__setitem__(name, r.text),
                     lambda e: pytest.fail(str(e)))
    await settle()
    running.release(reverse=True)
    await settle()
    assert results == {"a": "a : Type", "b": "b : Type", "c": "c : Type"}


async def test_commands_sent_in_issue_order(running):
    running.replies["type-of"] = "t"
    d = Dispatcher(running)
    d.call_async(Command("type-of", ("first",)), lambda r: None, lambda e: None)
    await d.call(Command("type-of", ("second",)))
    d.call_async(Command("type-of", ("third",)), lambda r: None, lambda e: None)
    await settle()
    assert [args[0] for _, args in running.sent] == ["first", "second", "third"]


async def test_request_ids_never_reused(running):
    running.replies["type-of"] = "t"
    d = Dispatcher(running)
    ids = [d.call_async(Command("type-of", ("x",)), lambda r: None, lambda e: None).request_id
           for _ in range(3)]
    await settle()
    ids.append(d.call_async(Command("type-of", ("x",)), lambda r: None, lambda e: None).request_id)
    assert ids == [1, 2, 3, 4]


async def test_notifications_go_to_observers(running):
    running.replies["interpret"] = Hold("done")
    d = Dispatcher(running)
    seen = []
    d.add_observer(seen.append)
    results = []
    d.call_async(Command("interpret", ("1 + 1",)), results.append, results.append)
    await settle()
    running.notify(sym("write-string"), "progress", 1)
    running.notify(sym("warning"), ["Main.idr", [1, 1], [1, 2], "careful", []], 1)
    await settle()
    # Notifications for request 1 did not complete it
    assert results == []
    assert [m.kind for m in seen] == ["write-string", "warning"]
    running.release()
    await settle()
    assert [r.text for r in results] == ["done"]


async def test_discard_pending_drops_continuations(running):
    running.replies["type-of"] = Hold("t")
    d = Dispatcher(running)
    calls = []
    d.call_async(Command("type-of", ("x",)), calls.append, calls.append)
    await settle()
    d.discard_pending()
    running.release()
    await settle()
    assert calls == []
    assert d.pending_count == 0


async def test_discard_pending_fails_sync_waiters(running):
    running.replies["type-of"] = Hold("t")
    d = Dispatcher(running)
    task = asyncio.create_task(d.call(Command("type-of", ("x",))))
    await settle()
    d.discard_pending()
    with pytest.raises(ProcessUnavailable):
        await task


async def test_process_death_fails_everything_pending(running):
    running.replies["type-of"] = Hold("t")
    d = Dispatcher(running)
    failures = []
    d.call_async(Command("type-of", ("x",)), lambda r: pytest.fail("no reply expected"), failures.append)
    task = asyncio.create_task(d.call(Command("type-of", ("y",))))
    await settle()
    running.die()
    with pytest.raises(ProcessUnavailable):
        await task
    await settle()
    assert len(failures) == 1
    assert isinstance(failures[0], ProcessUnavailable)


async def test_stats_by_tag(running):
    running.replies["type-of"] = Seq(["a", Err("no")])
    d = Dispatcher(running)
    await d.call(Command("type-of", ("x",)))
    with pytest.raises(CallFailed):
        await d.call(Command("type-of", ("y",)))
    assert d.stats.issued == 2
    assert d.stats.completed == 1
    assert d.stats.failed == 1
    assert d.stats.by_tag == {"type-of": 2}


async def test_reader_failure_fails_pending_and_stops_idris():
    class Garbled(FakeIdris):
        async def read_message(self):
            await super().read_message()
            raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

    fake = Garbled({"type-of": "t"})
    await fake.start()
    d = Dispatcher(fake)
    with pytest.raises(ProcessUnavailable, match="Lost sync"):
        await d.call(Command("type-of", ("x",)), timeout=5)
    await settle()
    assert d.pending_count == 0
    assert not fake.is_running
