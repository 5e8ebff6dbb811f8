"""
Reassembles incrementally reported sub-lists.

The daemon reports some per-file sub-lists (source names, for instance) as
deltas: a poll response may omit the field entirely, meaning "unchanged", or
carry only the records that changed, each keyed by an integer index. This
module keeps the last full view per file hash and overlays each delta on it.
"""
from __future__ import annotations

import copy
from typing import Any, Iterable

SOURCE_NAMES_FIELD = "EC_TAG_PARTFILE_SOURCE_NAMES"


def _as_list(value: Any) -> list[dict]:
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    return [v for v in value if isinstance(v, dict)]


class SnapshotMerger:
    def __init__(self, field: str = SOURCE_NAMES_FIELD, index_key: str = "index"):
        self.field = field
        self.index_key = index_key
        self._cache: dict[str, Any] = {}

    def __len__(self):
        return len(self._cache)

    def cached(self, file_hash: str) -> Any:
        return self._cache.get(file_hash.lower())

    def _index(self, record: dict) -> int | None:
        try:
            return int(record[self.index_key])
        except (KeyError, TypeError, ValueError):
            return None

    def merge(self, file_hash: str, item: dict) -> dict:
        """Attach the full merged sub-list to item (in place) and return it."""
        key = file_hash.lower()

        if self.field not in item:
            if key in self._cache:
                item[self.field] = copy.deepcopy(self._cache[key])
            return item

        by_index: dict[int, dict] = {}
        for record in _as_list(self._cache.get(key)):
            idx = self._index(record)
            if idx is not None:
                by_index[idx] = dict(record)

        for record in _as_list(item[self.field]):
            idx = self._index(record)
            if idx is None:
                continue
            if idx in by_index:
                by_index[idx].update(record)
            else:
                by_index[idx] = dict(record)

        ordered = [by_index[i] for i in sorted(by_index)]
        merged: Any = ordered[0] if len(ordered) == 1 else ordered
        self._cache[key] = copy.deepcopy(merged)
        item[self.field] = merged
        return item

    def merge_all(self, items: Iterable[dict], hash_key: str = "hash") -> list[dict]:
        out = []
        for item in items:
            h = item.get(hash_key)
            out.append(self.merge(str(h), item) if h else item)
        return out

    def forget(self, file_hash: str):
        self._cache.pop(file_hash.lower(), None)

    def prune(self, live_hashes: Iterable[str]):
        """Drop cache entries for files the daemon no longer reports."""
        live = {h.lower() for h in live_hashes}
        for key in [k for k in self._cache if k not in live]:
            del self._cache[key]

    def clear(self):
        self._cache.clear()
