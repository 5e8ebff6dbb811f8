import asyncio

import pytest
from sqlalchemy import text

from conftest import HASH_A, HASH_B, FakeSession, RecordingSink
from mulebridge.dispatcher import SequentialDispatcher
from mulebridge.errors import PersistenceError, ProtocolError
from mulebridge.interceptor import FileInfo, HistoryInterceptor
from mulebridge.models import STATUS_DELETED, STATUS_DOWNLOADING

LINK = f"ed2k://|file|Some%20File.txt|4096|{HASH_A.upper()}|/"


def build(store, session=None, lookup=None, enabled=True):
    session = session or FakeSession()
    dispatcher = SequentialDispatcher(session)
    HistoryInterceptor(store, file_info_lookup=lookup, enabled=enabled).install(dispatcher)
    return session, dispatcher


@pytest.mark.asyncio
async def test_search_result_download_uses_file_info_lookup(store):
    sink = RecordingSink()
    store.events = sink

    async def lookup(h):
        assert h == HASH_A
        return {"filename": "found.avi", "size": 700 * 1024 * 1024}

    session, dispatcher = build(store, lookup=lookup)
    result = await dispatcher.submit("download_search_result", HASH_A.upper(), 3, "alice")

    assert result.value is True
    assert session.calls == [("download_search_result", (HASH_A.upper(), 3))]

    entry = await store.get_by_hash(HASH_A)
    assert entry["filename"] == "found.avi"
    assert entry["size"] == 700 * 1024 * 1024
    assert entry["username"] == "alice"
    assert entry["status"] == STATUS_DOWNLOADING

    added = sink.of_type("downloadAdded")
    assert len(added) == 1
    assert added[0].username == "alice"
    assert added[0].category == "3"
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_search_result_without_lookup_uses_placeholder(store):
    _, dispatcher = build(store, lookup=lambda h: FileInfo())
    await dispatcher.submit("download_search_result", HASH_B, 0)

    entry = await store.get_by_hash(HASH_B)
    assert entry["filename"] == "Unknown"
    assert entry["size"] is None
    assert entry["username"] is None
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_failing_lookup_still_tracks(store):
    def lookup(h):
        raise RuntimeError("search results expired")

    _, dispatcher = build(store, lookup=lookup)
    await dispatcher.submit("download_search_result", HASH_B, 0)
    assert (await store.get_by_hash(HASH_B))["filename"] == "Unknown"
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_ed2k_link_is_parsed_and_username_not_forwarded(store):
    session, dispatcher = build(store)
    await dispatcher.submit("add_ed2k_link", LINK, 0, "bob")

    assert session.calls == [("add_ed2k_link", (LINK, 0))]
    entry = await store.get_by_hash(HASH_A)
    assert entry["filename"] == "Some File.txt"
    assert entry["size"] == 4096
    assert entry["username"] == "bob"
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_magnet_is_forwarded_as_ed2k_link(store):
    magnet = f"magnet:?xt=urn:btih:{HASH_A}00000000&dn=Movie.mkv&xl=2048"
    session, dispatcher = build(store)
    await dispatcher.submit("add_ed2k_link", magnet, 0)

    assert session.calls[0][1][0] == f"ed2k://|file|Movie.mkv|2048|{HASH_A}|/"
    assert (await store.get_by_hash(HASH_A))["filename"] == "Movie.mkv"
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_unparseable_link_skips_tracking_but_returns_result(store):
    session, dispatcher = build(store, FakeSession(responses={"add_ed2k_link": "accepted"}))
    result = await dispatcher.submit("add_ed2k_link", "ed2k://|server|1.2.3.4|4661|/", 0)

    assert result.value == "accepted"
    assert await store.get_known_hashes() == set()
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_failed_start_is_raised_and_not_tracked(store):
    session = FakeSession()
    session.fail.add("add_ed2k_link")
    _, dispatcher = build(store, session)

    with pytest.raises(ProtocolError):
        await dispatcher.submit("add_ed2k_link", LINK, 0)
    assert await store.get_by_hash(HASH_A) is None
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_rejected_start_is_not_tracked(store):
    _, dispatcher = build(store, FakeSession(responses={"add_ed2k_link": False}))

    result = await dispatcher.submit("add_ed2k_link", LINK, 0)
    assert result.ok and result.value is False
    assert await store.get_by_hash(HASH_A) is None
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_delete_marks_deleted_even_when_call_fails(store):
    await store.add_download(HASH_A, "file.bin", 4096)
    session = FakeSession()
    session.fail.add("cancel_download")
    _, dispatcher = build(store, session)

    with pytest.raises(ProtocolError):
        await dispatcher.submit("cancel_download", HASH_A.upper())

    entry = await store.get_by_hash(HASH_A)
    assert entry["status"] == STATUS_DELETED
    assert entry["deleted_at"] is not None
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_disabled_history_tracks_nothing(store):
    await store.add_download(HASH_B, "keep.bin", 4096)
    _, dispatcher = build(store, enabled=False)

    await dispatcher.submit("add_ed2k_link", LINK, 0)
    await dispatcher.submit("cancel_download", HASH_B)

    assert await store.get_by_hash(HASH_A) is None
    assert (await store.get_by_hash(HASH_B))["status"] == STATUS_DOWNLOADING
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_delete_right_after_start_is_recorded_despite_slow_lookup(store):
    async def lookup(h):
        await asyncio.sleep(0.02)
        return FileInfo("slow.bin", 4096)

    session, dispatcher = build(store, lookup=lookup)
    await asyncio.gather(
        dispatcher.submit("download_search_result", HASH_A, 0, "alice"),
        dispatcher.submit("cancel_download", HASH_A),
    )

    assert [op for op, _ in session.calls] == ["download_search_result", "cancel_download"]
    entry = await store.get_by_hash(HASH_A)
    assert entry["filename"] == "slow.bin"
    assert entry["status"] == STATUS_DELETED
    assert entry["deleted_at"] is not None
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_lookup_through_the_dispatcher_keeps_history_order(store):
    session = FakeSession(responses={"get_file_info": {"filename": "queued.bin", "size": 4096}})
    dispatcher = SequentialDispatcher(session)
    HistoryInterceptor(store, file_info_lookup=lambda h: dispatcher.call("get_file_info", h)).install(dispatcher)

    await asyncio.gather(
        dispatcher.submit("download_search_result", HASH_A, 0),
        dispatcher.submit("cancel_download", HASH_A),
    )

    assert [op for op, _ in session.calls] == ["download_search_result", "cancel_download", "get_file_info"]
    entry = await store.get_by_hash(HASH_A)
    assert entry["filename"] == "queued.bin"
    assert entry["status"] == STATUS_DELETED
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_history_write_failures_reach_the_caller(store):
    _, dispatcher = build(store)
    async with store.engine.begin() as conn:
        await conn.execute(text("DROP TABLE download_history"))

    with pytest.raises(PersistenceError):
        await dispatcher.submit("download_search_result", HASH_A, 0)
    with pytest.raises(PersistenceError):
        await dispatcher.submit("cancel_download", HASH_A)
    await dispatcher.stop()
