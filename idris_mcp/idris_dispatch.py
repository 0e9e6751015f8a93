"""Request dispatch over an Idris IDE-mode transport.

Every command is tagged with a fresh request id and replies are matched by
that id, never by arrival order. One writer task drains an outbox so commands
reach Idris in the order they were issued; one reader task routes ``:return``
replies to their pending call and everything else to the observers.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .idris_errors import CallFailed, IdrisError, ProcessUnavailable, SExpParseError
from .idris_sexp import Command, Message, Response, error_text, result_of

logger = logging.getLogger(__name__)


@dataclass
class PendingCall:
    """Bookkeeping for one in-flight command."""
    request_id: int
    command: Command
    on_success: Optional[Callable[[Response], None]] = None
    on_failure: Optional[Callable[[IdrisError], None]] = None
    future: Optional[asyncio.Future] = None   # Set for call(), None for call_async()
    finished: bool = False

    @property
    def is_async(self) -> bool:
        return self.future is None


@dataclass
class DispatchStats:
    """Counters, mostly for status output and tests."""
    issued: int = 0
    completed: int = 0
    failed: int = 0
    stray: int = 0
    by_tag: dict[str, int] = field(default_factory=dict)


class Dispatcher:
    """Synchronous and asynchronous calls over one transport.

    The transport must provide ``is_running``, ``write_message(str)``,
    ``read_message() -> Message`` and ``stop()``.
    """

    def __init__(self, transport):
        self.transport = transport
        self.stats = DispatchStats()
        self._next_id = 1
        self._pending: dict[int, PendingCall] = {}
        self._outbox: asyncio.Queue | None = None
        self._reader: asyncio.Task | None = None
        self._writer: asyncio.Task | None = None
        self._observers: list[Callable[[Message], None]] = []

    # =========================================================================
    # Public API
    # =========================================================================

    def add_observer(self, callback: Callable[[Message], None]):
        """Register a callback for notifications (output, warnings, prompts)."""
        self._observers.append(callback)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def call(self, command: Command, timeout: float | None = None) -> Response:
        """Send command and wait for its reply.

        Raises ProcessUnavailable if Idris is not running or dies, and
        CallFailed if Idris answers with an error (or the wait times out).
        """
        if not self.transport.is_running:
            raise ProcessUnavailable()
        loop = asyncio.get_running_loop()
        pending = self._register(command, future=loop.create_future())
        try:
            return await asyncio.wait_for(pending.future, timeout=timeout)
        except asyncio.TimeoutError:
            # A late reply for this id is counted as stray
            self._pending.pop(pending.request_id, None)
            pending.finished = True
            raise CallFailed(f"TIMEOUT after {timeout}s waiting for {command.tag}")

    def call_async(self, command: Command,
                   on_success: Callable[[Response], None],
                   on_failure: Callable[[IdrisError], None]) -> PendingCall:
        """Queue command and return immediately.

        Exactly one of the continuations runs, once, on a later turn of the
        event loop.
        """
        pending = PendingCall(self._take_id(), command, on_success, on_failure)
        if not self.transport.is_running:
            self._finish(pending, ProcessUnavailable())
            return pending
        self._enqueue(pending)
        return pending

    def discard_pending(self):
        """Drop every pending call (session quit).

        Asynchronous continuations are not run; synchronous waiters get
        ProcessUnavailable so they do not hang.
        """
        pending, self._pending = self._pending, {}
        for p in pending.values():
            p.finished = True
            if p.future is not None and not p.future.done():
                p.future.set_exception(ProcessUnavailable("Idris session closed"))
        for task in (self._reader, self._writer):
            if task is not None and not task.done():
                task.cancel()
        self._reader = self._writer = None
        self._outbox = None

    # =========================================================================
    # Internals
    # =========================================================================

    def _take_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def _register(self, command: Command, future: asyncio.Future) -> PendingCall:
        pending = PendingCall(self._take_id(), command, future=future)
        self._enqueue(pending)
        return pending

    def _enqueue(self, pending: PendingCall):
        self._ensure_tasks()
        self._pending[pending.request_id] = pending
        self.stats.issued += 1
        self.stats.by_tag[pending.command.tag] = self.stats.by_tag.get(pending.command.tag, 0) + 1
        self._outbox.put_nowait(pending)

    def _ensure_tasks(self):
        if self._outbox is None:
            self._outbox = asyncio.Queue()
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._write_loop(self._outbox))
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop())

    async def _write_loop(self, outbox: asyncio.Queue):
        while True:
            pending = await outbox.get()
            if pending.finished:
                continue
            try:
                await self.transport.write_message(pending.command.to_sexp(pending.request_id))
            except ProcessUnavailable as e:
                self._fail_all(e)

    async def _read_loop(self):
        while True:
            try:
                message = await self.transport.read_message()
            except SExpParseError:
                continue
            except ProcessUnavailable as e:
                self._fail_all(e)
                return
            except Exception:
                # Stream out of sync: stop Idris so the next call starts a fresh one
                logger.exception("Reader failed, failing %d pending calls", len(self._pending))
                self._fail_all(ProcessUnavailable("Lost sync with the Idris process"))
                await self.transport.stop()
                return
            self._route(message)

    def _route(self, message: Message):
        if not message.is_return:
            for observer in list(self._observers):
                observer(message)
            return
        pending = self._pending.pop(message.request_id, None)
        if pending is None:
            self.stats.stray += 1
            logger.debug("Reply for unknown request %s dropped", message.request_id)
            return
        if message.ok:
            self._finish(pending, result_of(message))
        else:
            self._finish(pending, CallFailed(error_text(message)))

    def _fail_all(self, error: IdrisError):
        pending, self._pending = self._pending, {}
        for p in pending.values():
            self._finish(p, error)

    def _finish(self, pending: PendingCall, outcome):
        """Deliver a terminal outcome (Response or IdrisError) exactly once."""
        if pending.finished:
            return
        pending.finished = True
        self._pending.pop(pending.request_id, None)
        failed = isinstance(outcome, IdrisError)
        if failed:
            self.stats.failed += 1
        else:
            self.stats.completed += 1

        if pending.future is not None:
            if not pending.future.done():
                if failed:
                    pending.future.set_exception(outcome)
                else:
                    pending.future.set_result(outcome)
            return

        callback = pending.on_failure if failed else pending.on_success
        asyncio.get_running_loop().call_soon(callback, outcome)
