import asyncio

import pytest

from conftest import FakeSession
from mulebridge.dispatcher import CallResult, OperationHook, SequentialDispatcher
from mulebridge.errors import ConnectionLostError, DispatcherClosedError, ProtocolError


@pytest.mark.asyncio
async def test_concurrent_calls_run_in_submission_order_without_overlap():
    session = FakeSession()
    dispatcher = SequentialDispatcher(session)

    results = await asyncio.gather(*(dispatcher.submit("get_stats", i) for i in range(10)))

    assert [args for _, args in session.calls] == [(i,) for i in range(10)]
    assert all(r.ok for r in results)
    assert session.max_in_flight == 1
    starts = [start for start, _ in session.windows]
    assert starts == sorted(starts)
    for (_, prev_end), (next_start, _) in zip(session.windows, session.windows[1:]):
        assert prev_end <= next_start
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_generic_failure_resolves_to_empty_result():
    session = FakeSession(responses={"get_download_queue": [{"hash": "x"}]})
    session.fail.add("get_stats")
    dispatcher = SequentialDispatcher(session)

    result = await dispatcher.submit("get_stats")
    assert result.value is None
    assert isinstance(result.error, ProtocolError)
    assert await dispatcher.call("get_stats") is None

    # The next call is unaffected
    assert await dispatcher.call("get_download_queue") == [{"hash": "x"}]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_tracked_failure_propagates():
    session = FakeSession()
    session.fail.add("cancel_download")
    dispatcher = SequentialDispatcher(session)

    with pytest.raises(ProtocolError):
        await dispatcher.call_tracked("cancel_download", "a" * 32)
    assert await dispatcher.call("get_stats") is True
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_unexpected_exceptions_are_wrapped_as_protocol_errors():
    session = FakeSession(responses={"get_stats": lambda: 1 / 0})
    dispatcher = SequentialDispatcher(session)

    result = await dispatcher.submit("get_stats")
    assert isinstance(result.error, ProtocolError)
    assert result.error.operation == "get_stats"
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_hook_sees_outcome_and_rewrites_arguments():
    session = FakeSession()
    session.fail.add("cancel_download")
    seen = []

    async def after(args, result):
        seen.append((args, result.ok))

    dispatcher = SequentialDispatcher(session, hooks={
        "download_search_result": OperationHook(prepare=lambda args: args[:2], after=after),
        "cancel_download": OperationHook(after=after),
    })

    await dispatcher.submit("download_search_result", "h", 0, "alice")
    with pytest.raises(ProtocolError):
        await dispatcher.submit("cancel_download", "h")

    assert session.calls[0] == ("download_search_result", ("h", 0))
    assert seen == [(("h", 0, "alice"), True), (("h",), False)]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_lifecycle_calls_bypass_queue():
    session = FakeSession()
    session.alive = False
    dispatcher = SequentialDispatcher(session)

    result = await dispatcher.submit("connect")
    assert result == CallResult("connect", value=True)
    assert session.connects == 1
    assert session.calls == []

    await dispatcher.submit("disconnect")
    assert not session.is_alive()
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_generic_calls_refused_while_disconnected():
    session = FakeSession()
    session.alive = False
    dispatcher = SequentialDispatcher(session)

    result = await dispatcher.submit("get_stats")
    assert isinstance(result.error, ConnectionLostError)
    assert session.calls == []
    assert dispatcher.pending_count == 0


@pytest.mark.asyncio
async def test_queued_calls_fail_individually_after_connection_loss():
    session = FakeSession(delay=0.02)
    dispatcher = SequentialDispatcher(session)

    first = asyncio.create_task(dispatcher.submit("get_stats", 1))
    second = asyncio.create_task(dispatcher.submit("get_stats", 2))
    await asyncio.sleep(0.005)
    session.alive = False

    r1, r2 = await asyncio.gather(first, second)
    assert r1.ok
    assert isinstance(r2.error, ConnectionLostError)
    assert len(session.calls) == 1
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_pending_count_tracks_queue():
    session = FakeSession(delay=0.01)
    dispatcher = SequentialDispatcher(session)

    tasks = [asyncio.create_task(dispatcher.submit("get_stats", i)) for i in range(3)]
    await asyncio.sleep(0)
    assert dispatcher.pending_count == 3

    await asyncio.gather(*tasks)
    assert dispatcher.pending_count == 0
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_stop_fails_waiting_calls():
    session = FakeSession(delay=1)
    dispatcher = SequentialDispatcher(session)

    tasks = [asyncio.create_task(dispatcher.submit("get_stats", i)) for i in range(3)]
    await asyncio.sleep(0.01)
    await dispatcher.stop()

    results = await asyncio.gather(*tasks)
    assert all(isinstance(r.error, DispatcherClosedError) for r in results)
    assert dispatcher.pending_count == 0

    late = await dispatcher.submit("get_stats")
    assert isinstance(late.error, DispatcherClosedError)


@pytest.mark.asyncio
async def test_hooks_run_in_submission_order():
    session = FakeSession(delay=0)
    order = []

    async def slow_after(args, result):
        await asyncio.sleep(0.02)
        order.append(args[0])

    async def fast_after(args, result):
        order.append(args[0])

    dispatcher = SequentialDispatcher(session, hooks={
        "download_search_result": OperationHook(after=slow_after),
        "cancel_download": OperationHook(after=fast_after),
    })

    await asyncio.gather(
        dispatcher.submit("download_search_result", "first"),
        dispatcher.submit("cancel_download", "second"),
    )
    assert order == ["first", "second"]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_failing_hook_does_not_hold_up_later_hooks():
    seen = []

    async def broken(args, result):
        raise RuntimeError("hook crashed")

    async def after(args, result):
        seen.append(args)

    dispatcher = SequentialDispatcher(FakeSession(delay=0), hooks={
        "download_search_result": OperationHook(after=broken),
        "cancel_download": OperationHook(after=after),
    })

    first, second = await asyncio.gather(
        dispatcher.submit("download_search_result", "h"),
        dispatcher.submit("cancel_download", "h"),
        return_exceptions=True,
    )
    assert isinstance(first, RuntimeError)
    assert second.ok
    assert seen == [("h",)]
    await dispatcher.stop()
