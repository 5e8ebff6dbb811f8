"""Persistent download history.

Tracks every download by hash through its lifecycle (downloading, completed,
missing, deleted) so a history view survives files being moved or removed
from the download client.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .datetime_utils import iso_ago, now_iso
from .db import make_engine, make_sessionmaker
from .errors import MigrationError, PersistenceError
from .events import DownloadAdded, EventSink
from .migrations import run_migrations
from .models import (
    DEFAULT_CLIENT_TYPE,
    PLACEHOLDER_FILENAMES,
    STATUS_COMPLETED,
    STATUS_DELETED,
    STATUS_DOWNLOADING,
    STATUS_MISSING,
    DownloadRecord,
)

log = logging.getLogger(__name__)

history = DownloadRecord.__table__

# Sizes below this are placeholders reported before metadata is resolved
MIN_VALID_SIZE = 1024

SORTABLE_COLUMNS = (
    "filename",
    "size",
    "started_at",
    "completed_at",
    "deleted_at",
    "username",
    "downloaded",
    "uploaded",
    "ratio",
    "tracker_domain",
)
DEFAULT_SORT_COLUMN = "started_at"

EXTERNAL_USERNAME = "external"


@dataclass
class TransferStats:
    downloaded: Optional[int] = None
    uploaded: Optional[int] = None
    ratio: Optional[float] = None
    tracker_domain: Optional[str] = None


@dataclass
class HistoryPage:
    entries: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0


class DownloadHistoryStore:
    def __init__(self, engine: AsyncEngine, events: EventSink | None = None):
        self.engine = engine
        self.Session = make_sessionmaker(engine)
        self.events = events

    @classmethod
    async def open(cls, db_path: str, events: EventSink | None = None) -> "DownloadHistoryStore":
        """Open and migrate the database. A failed migration is fatal."""
        engine = make_engine(db_path)
        try:
            version = await run_migrations(engine)
        except MigrationError:
            await engine.dispose()
            raise
        log.info("Download history initialized: %s (schema v%s)", db_path, version)
        return cls(engine, events)

    async def close(self):
        await self.engine.dispose()

    async def _execute(self, stmt) -> int:
        try:
            async with self.Session() as s:
                result = await s.execute(stmt)
                await s.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            log.error("History write failed: %s", e)
            raise PersistenceError(str(e)) from e

    async def _fetch(self, stmt) -> list[dict[str, Any]]:
        try:
            async with self.Session() as s:
                rows = (await s.execute(stmt)).mappings().all()
                return [dict(r) for r in rows]
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e

    async def add_download(
        self,
        hash: str,
        filename: str,
        size: int | None,
        username: str | None = None,
        client_type: str = DEFAULT_CLIENT_TYPE,
        category: str | None = None,
    ):
        """
        Insert a download, or refresh an existing one: a re-added hash goes back
        to downloading with deleted_at cleared and a new started_at.
        """
        h = hash.lower()
        stmt = sqlite_insert(history).values(
            hash=h,
            filename=filename,
            size=size or None,
            started_at=now_iso(),
            username=username,
            client_type=client_type,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[history.c.hash],
            set_={
                "filename": stmt.excluded.filename,
                "size": stmt.excluded.size,
                "started_at": stmt.excluded.started_at,
                "deleted_at": None,
                "status": STATUS_DOWNLOADING,
                "client_type": stmt.excluded.client_type,
            },
        )
        await self._execute(stmt)
        log.info("History: added %s download - %s", client_type, filename)

        if self.events is not None:
            await self.events.emit(DownloadAdded(
                hash=h,
                filename=filename,
                size=size or None,
                username=username,
                client_type=client_type,
                category=category,
            ))

    async def add_external_download(self, hash, filename, size, client_type=DEFAULT_CLIENT_TYPE, category=None):
        """Record a download that was added outside the controller."""
        await self.add_download(hash, filename or "Unknown", size, EXTERNAL_USERNAME, client_type, category)
        log.info("History: detected external %s download - %s", client_type, filename)

    async def mark_completed(self, hash: str) -> bool:
        stmt = (
            update(history)
            .where(history.c.hash == hash.lower(), history.c.status != STATUS_COMPLETED)
            .values(completed_at=func.coalesce(history.c.completed_at, now_iso()), status=STATUS_COMPLETED)
        )
        changed = await self._execute(stmt) > 0
        if changed:
            log.info("History: marked completed - %s", hash)
        return changed

    async def mark_deleted(self, hash: str) -> bool:
        """Soft delete; the row stays for the history view."""
        stmt = (
            update(history)
            .where(history.c.hash == hash.lower(), history.c.deleted_at.is_(None))
            .values(deleted_at=now_iso(), status=STATUS_DELETED)
        )
        changed = await self._execute(stmt) > 0
        if changed:
            log.info("History: marked deleted - %s", hash)
        return changed

    async def remove_entry(self, hash: str) -> bool:
        changed = await self._execute(delete(history).where(history.c.hash == hash.lower())) > 0
        if changed:
            log.info("History: removed entry - %s", hash)
        return changed

    async def update_transfer_stats(self, hash: str, stats: TransferStats | None) -> bool:
        """
        Counters only ever grow and the tracker domain is set once; zero or
        missing values are ignored.
        """
        if stats is None:
            return False

        values = {}
        if stats.downloaded:
            values["downloaded"] = func.max(func.coalesce(history.c.downloaded, 0), stats.downloaded)
        if stats.uploaded:
            values["uploaded"] = func.max(func.coalesce(history.c.uploaded, 0), stats.uploaded)
        if stats.ratio:
            values["ratio"] = stats.ratio
        if stats.tracker_domain:
            values["tracker_domain"] = func.coalesce(history.c.tracker_domain, stats.tracker_domain)
        if not values:
            return False

        stmt = update(history).where(history.c.hash == hash.lower()).values(**values)
        return await self._execute(stmt) > 0

    async def update_size(self, hash: str, size: int | None) -> bool:
        if not size or size < MIN_VALID_SIZE:
            return False
        stmt = (
            update(history)
            .where(
                history.c.hash == hash.lower(),
                or_(history.c.size.is_(None), history.c.size < size),
            )
            .values(size=size)
        )
        return await self._execute(stmt) > 0

    async def update_filename(self, hash: str, filename: str | None) -> bool:
        if not filename:
            return False
        stmt = (
            update(history)
            .where(
                history.c.hash == hash.lower(),
                history.c.filename.in_(sorted(PLACEHOLDER_FILENAMES)),
            )
            .values(filename=filename)
        )
        changed = await self._execute(stmt) > 0
        if changed:
            log.info('History: updated filename to "%s" for hash %s', filename, hash)
        return changed

    async def touch_active(self, hash: str, seen_at: str) -> bool:
        stmt = (
            update(history)
            .where(history.c.hash == hash.lower(), history.c.status != STATUS_DELETED)
            .values(status=STATUS_DOWNLOADING, last_seen_at=seen_at)
        )
        return await self._execute(stmt) > 0

    async def complete_from_live(self, hash: str, seen_at: str) -> bool:
        """Returns True only when the row actually transitioned to completed."""
        stmt = (
            update(history)
            .where(
                history.c.hash == hash.lower(),
                history.c.status.not_in((STATUS_DELETED, STATUS_COMPLETED)),
            )
            .values(
                status=STATUS_COMPLETED,
                completed_at=func.coalesce(history.c.completed_at, seen_at),
                last_seen_at=seen_at,
            )
        )
        return await self._execute(stmt) > 0

    async def mark_stale_missing(self, cutoff: str) -> int:
        stmt = (
            update(history)
            .where(
                history.c.status == STATUS_DOWNLOADING,
                or_(history.c.last_seen_at.is_(None), history.c.last_seen_at < cutoff),
            )
            .values(status=STATUS_MISSING)
        )
        return await self._execute(stmt)

    async def get_by_hash(self, hash: str) -> dict[str, Any] | None:
        rows = await self._fetch(select(history).where(history.c.hash == hash.lower()))
        return rows[0] if rows else None

    async def get_known_hashes(self) -> set[str]:
        rows = await self._fetch(select(history.c.hash))
        return {r["hash"].lower() for r in rows}

    async def get_pending_downloads(self) -> list[dict[str, Any]]:
        """Entries started but neither completed nor deleted."""
        return await self._fetch(
            select(history).where(history.c.completed_at.is_(None), history.c.deleted_at.is_(None))
        )

    async def query(
        self,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = DEFAULT_SORT_COLUMN,
        sort_dir: str = "desc",
        search: str = "",
        secondary_sort_by: str = "",
        secondary_sort_dir: str = "asc",
    ) -> HistoryPage:
        """Unknown sort columns fall back to started_at; limit <= 0 returns everything."""
        column_name = sort_by if sort_by in SORTABLE_COLUMNS else DEFAULT_SORT_COLUMN
        column = history.c[column_name]
        primary = column.asc() if (sort_dir or "").lower() == "asc" else column.desc()

        order_by = [primary]
        if column_name == "completed_at":
            order_by.append(case(
                (history.c.status == STATUS_DOWNLOADING, 1),
                (history.c.status == STATUS_MISSING, 2),
                (history.c.status == STATUS_DELETED, 3),
                else_=4,
            ))
        elif secondary_sort_by in SORTABLE_COLUMNS and secondary_sort_by != column_name:
            secondary = history.c[secondary_sort_by]
            order_by.append(secondary.asc() if (secondary_sort_dir or "").lower() == "asc" else secondary.desc())

        count_stmt = select(func.count().label("total")).select_from(history)
        stmt = select(history).order_by(*order_by)
        term = (search or "").strip().lower()
        if term:
            pattern = f"%{term}%"
            matches = or_(
                func.lower(history.c.filename).like(pattern),
                func.lower(history.c.hash).like(pattern),
                func.lower(history.c.username).like(pattern),
                func.lower(func.coalesce(history.c.tracker_domain, "")).like(pattern),
            )
            count_stmt = count_stmt.where(matches)
            stmt = stmt.where(matches)

        count_rows = await self._fetch(count_stmt)
        if limit > 0:
            stmt = stmt.limit(limit).offset(offset)
        entries = await self._fetch(stmt)
        return HistoryPage(entries=entries, total=count_rows[0]["total"])

    async def get_stats(self) -> dict[str, int]:
        completed = history.c.completed_at.is_not(None)
        deleted = history.c.deleted_at.is_not(None)
        stmt = select(
            func.count().label("total"),
            func.coalesce(func.sum(case((completed & ~deleted, 1), else_=0)), 0).label("completed"),
            func.coalesce(func.sum(case((deleted, 1), else_=0)), 0).label("deleted"),
            func.coalesce(func.sum(case((~completed & ~deleted, 1), else_=0)), 0).label("pending"),
        ).select_from(history)
        return (await self._fetch(stmt))[0]

    async def cleanup(self, retention_days: int) -> int:
        """Hard-delete entries started more than retention_days ago. 0 disables."""
        if not retention_days or retention_days <= 0:
            return 0
        removed = await self._execute(delete(history).where(history.c.started_at < iso_ago(days=retention_days)))
        if removed > 0:
            log.info("History: cleaned up %s old entries", removed)
        return removed
