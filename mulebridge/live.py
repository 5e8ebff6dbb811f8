"""
Turns normalized poll results into the (active, completed, metadata) input of
the reconciler, and imports downloads that were added outside the controller.

Normalized item keys: hash, name, size, progress (0-100), downloaded,
uploaded, ratio, trackers, directory, category, multi_file.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from .history import DownloadHistoryStore
from .reconcile import ItemMetadata

log = logging.getLogger(__name__)

TRACKER_HOST_RE = re.compile(r"^(?:https?|udp)://([^:/]+)", re.IGNORECASE)
TWO_PART_TLDS = {
    "co.uk", "com.au", "co.nz", "co.jp", "com.br", "co.in",
    "org.uk", "me.uk", "eu.org", "de.com", "us.com",
}


def extract_tracker_domain(trackers: Iterable[str] | None) -> Optional[str]:
    """Registrable domain of the primary tracker, e.g. tracker.example.org -> example.org."""
    primary = next(iter(trackers or []), "") or ""
    m = TRACKER_HOST_RE.match(primary)
    if not m:
        return None
    parts = m.group(1).split(".")
    if len(parts) <= 2:
        return m.group(1)
    if ".".join(parts[-2:]) in TWO_PART_TLDS:
        return ".".join(parts[-3:])
    return ".".join(parts[-2:])


@dataclass
class LiveState:
    active: set[str] = field(default_factory=set)
    completed: set[str] = field(default_factory=set)
    metadata: dict[str, ItemMetadata] = field(default_factory=dict)


def _hash(item: dict) -> Optional[str]:
    h = item.get("hash")
    return str(h).lower() if h else None


def _progress(item: dict) -> float:
    try:
        return float(item.get("progress") or 0)
    except (TypeError, ValueError):
        return 0.0


class LiveStateCollector:
    def __init__(self, store: DownloadHistoryStore, client_type: str = "amule",
                 torrent_client_type: str = "rtorrent"):
        self.store = store
        self.client_type = client_type
        self.torrent_client_type = torrent_client_type

    async def collect(self, downloads: Iterable[dict] = (), shared_files: Iterable[dict] = (),
                      torrents: Iterable[dict] = ()) -> LiveState:
        state = LiveState()
        known = await self.store.get_known_hashes()

        # Partial files: anything below 100% is still downloading
        for d in downloads:
            h = _hash(d)
            if not h:
                continue
            if h not in known:
                await self.store.add_external_download(h, d.get("name"), d.get("size"), self.client_type)
                known.add(h)
            if _progress(d) < 100:
                state.active.add(h)
            downloaded = d.get("downloaded") or 0
            uploaded = d.get("uploaded") or 0
            state.metadata[h] = ItemMetadata(
                size=d.get("size"),
                name=d.get("name"),
                downloaded=downloaded,
                uploaded=uploaded,
                ratio=uploaded / downloaded if downloaded > 0 else 0,
                client_type=self.client_type,
                category=d.get("category"),
                directory=d.get("directory"),
            )

        # Shared files include in-progress parts; only finished ones count as completed
        for f in shared_files:
            h = _hash(f)
            if not h:
                continue
            if h not in state.active:
                state.completed.add(h)
            existing = state.metadata.get(h) or ItemMetadata(client_type=self.client_type)
            uploaded = f.get("uploaded") or existing.uploaded or 0
            size = f.get("size") or existing.size or 0
            state.metadata[h] = replace(
                existing,
                size=size,
                name=f.get("name") or existing.name,
                uploaded=uploaded,
                ratio=uploaded / size if size > 0 else 0,
                directory=f.get("directory") or existing.directory,
            )

        for t in torrents:
            h = _hash(t)
            if not h:
                continue
            finished = _progress(t) >= 100
            if h not in known and not finished:
                await self.store.add_external_download(h, t.get("name"), t.get("size"), self.torrent_client_type)
                known.add(h)
            (state.completed if finished else state.active).add(h)
            state.metadata[h] = ItemMetadata(
                size=t.get("size"),
                name=t.get("name"),
                downloaded=t.get("downloaded") or 0,
                uploaded=t.get("uploaded") or 0,
                ratio=t.get("ratio") or 0,
                tracker_domain=extract_tracker_domain(t.get("trackers")),
                client_type=self.torrent_client_type,
                category=t.get("category"),
                directory=t.get("directory"),
                multi_file=bool(t.get("multi_file")),
            )

        return state
