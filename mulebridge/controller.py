"""
Builds every component explicitly; nothing here is a module-level singleton.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta

from .config import Settings
from .datetime_utils import utcnow
from .dispatcher import ProtocolSession, SequentialDispatcher
from .engines.rpc import JsonRpcSession
from .errors import ProtocolError
from .events import EventBus
from .history import DownloadHistoryStore
from .interceptor import FileInfoLookup, HistoryInterceptor
from .live import LiveState, LiveStateCollector
from .reconcile import Reconciler
from .snapshot import SnapshotMerger

log = logging.getLogger(__name__)

GET_DOWNLOAD_QUEUE = "get_download_queue"
GET_SHARED_FILES = "get_shared_files"


def seconds_until_hour(hour: int, now: datetime | None = None) -> float:
    now = now or utcnow()
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class Controller:
    def __init__(
        self,
        settings: Settings,
        store: DownloadHistoryStore,
        dispatcher: SequentialDispatcher,
        events: EventBus,
        file_info_lookup: FileInfoLookup | None = None,
    ):
        self.settings = settings
        self.store = store
        self.dispatcher = dispatcher
        self.events = events
        self.interceptor = HistoryInterceptor(
            store, file_info_lookup, settings.client_type, settings.history_enabled
        )
        self.interceptor.install(dispatcher)
        self.reconciler = Reconciler(store, events, settings.stale_after)
        self.collector = LiveStateCollector(store, settings.client_type)
        self.merger = SnapshotMerger()
        self.downloads: list[dict] = []
        self._last_history_update: float | None = None
        self._tasks: list[asyncio.Task] = []

    @classmethod
    async def create(
        cls,
        settings: Settings,
        session: ProtocolSession | None = None,
        file_info_lookup: FileInfoLookup | None = None,
    ) -> "Controller":
        if session is None:
            if not settings.rpc_url:
                raise ValueError("MULEBRIDGE_RPC_URL is not set and no session was given")
            session = JsonRpcSession(settings.rpc_url, settings.rpc_secret)
        events = EventBus()
        store = await DownloadHistoryStore.open(settings.db_path, events)
        return cls(settings, store, SequentialDispatcher(session), events, file_info_lookup)

    async def start(self):
        await self._try_connect()
        self._tasks = [
            asyncio.create_task(self._refresh_loop(), name="mulebridge-refresh"),
            asyncio.create_task(self._cleanup_loop(), name="mulebridge-cleanup"),
        ]

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self.dispatcher.stop()
        await self.dispatcher.disconnect()
        await self.store.close()

    async def _try_connect(self) -> bool:
        try:
            await self.dispatcher.connect()
        except (ProtocolError, OSError) as e:
            log.warning("Failed to connect to download client: %s", e)
            return False
        log.info("Connected to download client")
        return True

    async def refresh_once(self, force_history: bool = False) -> LiveState | None:
        """Poll once; history work is throttled unless force_history is set."""
        downloads = await self.dispatcher.call(GET_DOWNLOAD_QUEUE) or []
        shared = await self.dispatcher.call(GET_SHARED_FILES) or []

        downloads = self.merger.merge_all(downloads)
        self.merger.prune(d["hash"] for d in downloads if d.get("hash"))
        self.downloads = downloads

        if not self.settings.history_enabled:
            return None
        now = time.monotonic()
        if (
            not force_history
            and self._last_history_update is not None
            and now - self._last_history_update < self.settings.history_update_interval
        ):
            return None

        state = await self.collector.collect(downloads, shared)
        await self.reconciler.reconcile(state.active, state.completed, state.metadata)
        self._last_history_update = now
        return state

    async def _refresh_loop(self):
        while True:
            try:
                if self.dispatcher.session.is_alive() or await self._try_connect():
                    await self.refresh_once()
            except Exception:
                log.exception("Refresh failed")
            await asyncio.sleep(self.settings.refresh_interval)

    async def run_cleanup(self) -> int:
        days = self.settings.history_retention_days
        if days <= 0:
            return 0
        removed = await self.store.cleanup(days)
        if removed:
            log.info("Cleaned up %s old history entries (older than %s days)", removed, days)
        return removed

    async def _cleanup_loop(self):
        while True:
            delay = seconds_until_hour(self.settings.cleanup_hour)
            log.info("Scheduled next history cleanup in %.0f seconds", delay)
            await asyncio.sleep(delay)
            try:
                await self.run_cleanup()
            except Exception:
                log.exception("History cleanup failed")
