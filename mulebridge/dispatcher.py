"""
All calls to the download client go through one FIFO queue drained by a
single worker, so they start in submission order and never overlap.
Hooked calls (download start and delete) re-raise failures to the caller.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from .errors import ConnectionLostError, DispatcherClosedError, ProtocolError

log = logging.getLogger(__name__)

# Establish or tear down the channel the queue depends on, so never queued
LIFECYCLE_OPERATIONS = frozenset({"connect", "disconnect"})


class ProtocolSession(Protocol):
    async def invoke(self, operation: str, *args: Any) -> Any: ...

    def is_alive(self) -> bool: ...

    async def connect(self) -> Any: ...

    async def disconnect(self) -> Any: ...


@dataclass
class CallResult:
    operation: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class OperationHook:
    """
    prepare(args) returns the arguments actually forwarded to the session.
    after(args, result) runs once the call finished, with the caller's
    original arguments, whether the call succeeded or not.
    """
    prepare: Optional[Callable[[tuple], tuple]] = None
    after: Optional[Callable[[tuple, CallResult], Awaitable[None]]] = None
    tracked: bool = True


@dataclass
class _Job:
    operation: str
    args: tuple
    forwarded: tuple
    future: asyncio.Future = field(repr=False)


class SequentialDispatcher:
    def __init__(self, session: ProtocolSession, hooks: dict[str, OperationHook] | None = None):
        self.session = session
        self.hooks: dict[str, OperationHook] = dict(hooks or {})
        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._pending = 0
        self._closed = False
        self._hook_tail: asyncio.Future | None = None

    @property
    def pending_count(self) -> int:
        return self._pending

    def register_hook(self, operation: str, hook: OperationHook):
        self.hooks[operation] = hook

    def start(self):
        if self._worker is None or self._worker.done():
            self._closed = False
            self._worker = asyncio.create_task(self._run(), name="mulebridge-dispatcher")

    async def stop(self):
        """Stop the worker; calls still waiting in the queue fail with DispatcherClosedError."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while not self._queue.empty():
            job = self._queue.get_nowait()
            self._pending -= 1
            if not job.future.done():
                job.future.set_exception(DispatcherClosedError("dispatcher stopped", job.operation))

    async def connect(self):
        result = await self.session.connect()
        self.start()
        return result

    async def disconnect(self):
        try:
            return await self.session.disconnect()
        except ProtocolError as e:
            log.warning("Disconnect error: %s", e)
            return None

    async def submit(self, operation: str, *args: Any, propagate: bool | None = None) -> CallResult:
        """
        Queue a call and wait for its outcome.

        propagate defaults to True for hooked operations. Hooks run one at a
        time in submission order, whenever their own calls finish.
        """
        if operation in LIFECYCLE_OPERATIONS:
            method = self.connect if operation == "connect" else self.disconnect
            return CallResult(operation, value=await method())

        hook = self.hooks.get(operation)
        if propagate is None:
            propagate = hook is not None and hook.tracked

        turn = self._take_hook_turn() if hook is not None and hook.after is not None else None
        try:
            if self._closed:
                result = CallResult(operation, error=DispatcherClosedError("dispatcher stopped", operation))
            elif not propagate and not self.session.is_alive():
                result = CallResult(operation, error=ConnectionLostError("not connected", operation))
            else:
                result = await self._enqueue(operation, args, hook)

            if result.error is not None:
                log.warning("Request failed (%s): %s", operation, result.error)

            if turn is not None:
                if turn[0] is not None:
                    await asyncio.shield(turn[0])
                await hook.after(args, result)
        finally:
            if turn is not None:
                self._release_hook_turn(*turn)

        if propagate and result.error is not None:
            raise result.error
        return result

    def _take_hook_turn(self) -> tuple[asyncio.Future | None, asyncio.Future]:
        previous = self._hook_tail
        done = asyncio.get_running_loop().create_future()
        self._hook_tail = done
        return previous, done

    @staticmethod
    def _release_hook_turn(previous: asyncio.Future | None, done: asyncio.Future):
        def release(_=None):
            if not done.done():
                done.set_result(None)

        # A cancelled caller must not let later hooks overtake earlier ones
        if previous is None or previous.done():
            release()
        else:
            previous.add_done_callback(release)

    async def call(self, operation: str, *args: Any) -> Any:
        """Generic call; returns the value, or None when the call failed."""
        return (await self.submit(operation, *args, propagate=False)).value

    async def call_tracked(self, operation: str, *args: Any) -> Any:
        """Call whose failure is raised to the caller."""
        return (await self.submit(operation, *args, propagate=True)).value

    async def _enqueue(self, operation: str, args: tuple, hook: OperationHook | None) -> CallResult:
        self.start()
        forwarded = hook.prepare(args) if hook is not None and hook.prepare is not None else args
        job = _Job(operation, args, tuple(forwarded), asyncio.get_running_loop().create_future())
        self._pending += 1
        self._queue.put_nowait(job)
        try:
            # The call runs to completion even if this caller goes away
            return await asyncio.shield(job.future)
        except DispatcherClosedError as e:
            return CallResult(operation, error=e)

    async def _run(self):
        while True:
            job = await self._queue.get()
            try:
                result = await self._execute(job)
                if not job.future.done():
                    job.future.set_result(result)
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.set_exception(DispatcherClosedError("dispatcher stopped", job.operation))
                raise
            finally:
                self._pending -= 1
                self._queue.task_done()

    async def _execute(self, job: _Job) -> CallResult:
        if not self.session.is_alive():
            return CallResult(job.operation, error=ConnectionLostError("connection lost", job.operation))
        try:
            value = await self.session.invoke(job.operation, *job.forwarded)
        except ProtocolError as e:
            return CallResult(job.operation, error=e)
        except Exception as e:
            return CallResult(job.operation, error=ProtocolError(str(e), job.operation))
        return CallResult(job.operation, value=value)
