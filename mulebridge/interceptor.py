from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from .dispatcher import CallResult, OperationHook, SequentialDispatcher
from .errors import ParseError
from .history import DownloadHistoryStore
from .links import parse_content_link, to_ed2k_link
from .models import DEFAULT_CLIENT_TYPE

log = logging.getLogger(__name__)

DOWNLOAD_SEARCH_RESULT = "download_search_result"   # (hash, category_id[, username])
ADD_ED2K_LINK = "add_ed2k_link"                     # (link, category_id[, username])
CANCEL_DOWNLOAD = "cancel_download"                 # (hash)

# Arguments the daemon actually takes; anything after is attribution
FORWARDED_ARITY = {DOWNLOAD_SEARCH_RESULT: 2, ADD_ED2K_LINK: 2}


@dataclass
class FileInfo:
    filename: str = "Unknown"
    size: Optional[int] = None


FileInfoLookup = Callable[[str], Union[FileInfo, dict, None, Awaitable[Union[FileInfo, dict, None]]]]


class HistoryInterceptor:
    """Records accepted download starts, and every delete, in the history store."""

    def __init__(
        self,
        store: DownloadHistoryStore,
        file_info_lookup: FileInfoLookup | None = None,
        client_type: str = DEFAULT_CLIENT_TYPE,
        enabled: bool = True,
    ):
        self.store = store
        self.file_info_lookup = file_info_lookup
        self.client_type = client_type
        self.enabled = enabled

    def hooks(self) -> dict[str, OperationHook]:
        return {
            DOWNLOAD_SEARCH_RESULT: OperationHook(
                prepare=self._forward(DOWNLOAD_SEARCH_RESULT),
                after=self._track_search_result,
            ),
            ADD_ED2K_LINK: OperationHook(
                prepare=self._forward_link,
                after=self._track_link,
            ),
            CANCEL_DOWNLOAD: OperationHook(after=self._track_delete),
        }

    def install(self, dispatcher: SequentialDispatcher):
        for operation, hook in self.hooks().items():
            dispatcher.register_hook(operation, hook)

    @staticmethod
    def _forward(operation: str) -> Callable[[tuple], tuple]:
        arity = FORWARDED_ARITY[operation]
        return lambda args: tuple(args[:arity])

    @staticmethod
    def _forward_link(args: tuple) -> tuple:
        args = tuple(args[:FORWARDED_ARITY[ADD_ED2K_LINK]])
        link = str(args[0]) if args else ""
        # The daemon only understands ed2k:// links
        if link.lower().startswith("magnet:"):
            try:
                args = (to_ed2k_link(parse_content_link(link)),) + args[1:]
            except ParseError:
                pass
        return args

    def _should_track(self, result: CallResult) -> bool:
        return self.enabled and result.ok and bool(result.value)

    @staticmethod
    def _split(args: tuple) -> tuple[Any, Any, Optional[str]]:
        target = args[0] if len(args) > 0 else None
        category = args[1] if len(args) > 1 else None
        username = args[2] if len(args) > 2 else None
        return target, category, username

    @staticmethod
    def _category(category_id: Any) -> Optional[str]:
        return str(category_id) if category_id else None

    async def _lookup(self, hash: str) -> FileInfo:
        if self.file_info_lookup is None:
            return FileInfo()
        try:
            info = self.file_info_lookup(hash)
            if inspect.isawaitable(info):
                info = await info
        except Exception as e:
            log.warning("File info lookup failed for %s: %s", hash, e)
            return FileInfo()
        if info is None:
            return FileInfo()
        if isinstance(info, dict):
            return FileInfo(filename=info.get("filename") or "Unknown", size=info.get("size") or None)
        return info

    async def _track_search_result(self, args: tuple, result: CallResult):
        if not self._should_track(result):
            return
        target, category, username = self._split(args)
        if not target:
            return
        h = str(target).lower()
        info = await self._lookup(h)
        await self.store.add_download(h, info.filename, info.size, username, self.client_type, self._category(category))

    async def _track_link(self, args: tuple, result: CallResult):
        if not self._should_track(result):
            return
        target, category, username = self._split(args)
        try:
            parsed = parse_content_link(str(target or ""))
        except ParseError as e:
            log.warning("History: not tracking unparseable link %r: %s", target, e)
            return
        await self.store.add_download(
            parsed.hash, parsed.filename, parsed.size, username, self.client_type, self._category(category)
        )

    async def _track_delete(self, args: tuple, result: CallResult):
        if not self.enabled or not args or not args[0]:
            return
        if not result.ok:
            log.info("History: %s failed for %s, marking deleted anyway", CANCEL_DOWNLOAD, args[0])
        await self.store.mark_deleted(str(args[0]))
