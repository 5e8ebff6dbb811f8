"""
Reconciliation of the download history against live daemon state.

Status machine (automatic transitions only):

    downloading -> completed | missing | deleted
    missing     -> downloading | deleted

completed and deleted are terminal here; a hard delete is always possible
through the store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from .datetime_utils import iso_ago, now_iso
from .events import DownloadFinished, EventSink
from .history import DownloadHistoryStore, TransferStats

log = logging.getLogger(__name__)

# Assumes the poller feeds reconcile() more often than this
DEFAULT_STALE_AFTER = 30.0


@dataclass
class ItemMetadata(TransferStats):
    size: Optional[int] = None
    name: Optional[str] = None
    client_type: Optional[str] = None
    category: Optional[str] = None
    directory: Optional[str] = None
    multi_file: bool = False


@dataclass
class ReconcileReport:
    active: int = 0
    completed: list[str] = field(default_factory=list)
    missing: int = 0


class Reconciler:
    def __init__(self, store: DownloadHistoryStore, events: EventSink | None = None,
                 stale_after: float = DEFAULT_STALE_AFTER):
        self.store = store
        self.events = events
        self.stale_after = stale_after

    async def reconcile(
        self,
        active: Iterable[str],
        completed: Iterable[str],
        metadata: Mapping[str, ItemMetadata] | None = None,
    ) -> ReconcileReport:
        report = ReconcileReport()
        now = now_iso()
        meta_by_hash = {k.lower(): v for k, v in (metadata or {}).items()}

        for h in {h.lower() for h in active}:
            if await self.store.touch_active(h, now):
                report.active += 1
            await self._apply_metadata(h, meta_by_hash.get(h))

        for h in {h.lower() for h in completed}:
            changed = await self.store.complete_from_live(h, now)
            meta = meta_by_hash.get(h)
            await self._apply_metadata(h, meta)
            # Emit only on a real transition so repeated polls stay silent
            if changed:
                report.completed.append(h)
                await self._emit_finished(h, meta)

        report.missing = await self.store.mark_stale_missing(iso_ago(seconds=self.stale_after))
        if report.missing:
            log.info("History: %s downloads no longer seen, marked missing", report.missing)
        return report

    async def _apply_metadata(self, h: str, meta: ItemMetadata | None):
        if meta is None:
            return
        if meta.size:
            await self.store.update_size(h, meta.size)
        if meta.name:
            await self.store.update_filename(h, meta.name)
        await self.store.update_transfer_stats(h, meta)

    async def _emit_finished(self, h: str, meta: ItemMetadata | None):
        entry = await self.store.get_by_hash(h)
        if entry is None:
            return
        log.info("History: download finished - %s", entry["filename"])
        if self.events is None:
            return

        directory = meta.directory if meta else None
        path = f"{directory.rstrip('/')}/{entry['filename']}" if directory else None
        await self.events.emit(DownloadFinished(
            hash=h,
            filename=entry["filename"],
            size=entry["size"],
            client_type=(meta.client_type if meta else None) or entry["client_type"] or "unknown",
            downloaded=entry["downloaded"] or 0,
            uploaded=entry["uploaded"] or 0,
            ratio=round(entry["ratio"] or 0, 2),
            tracker_domain=entry["tracker_domain"],
            category=meta.category if meta else None,
            path=path,
            multi_file=meta.multi_file if meta else False,
        ))
