"""Load tracking for one Idris process.

Idris holds exactly one loaded program. The session remembers which buffer
that is and whether the buffer changed since, so files are only re-sent when
needed: loading is the expensive operation, yet every interactive command
must see the current text.
"""

import asyncio
import logging
import weakref
from collections import deque
from pathlib import Path
from typing import Callable, Optional

from .idris_dispatch import Dispatcher, PendingCall
from .idris_errors import CallFailed, IdrisError, LoadFailed, SExpParseError
from .idris_sexp import Command, IdrisWarning, Message, Response, parse_warning

logger = logging.getLogger(__name__)

# Cap on buffered :write-string output
OUTPUT_LIMIT = 1000


class Diagnostics:
    """Warnings reported by Idris, grouped by file."""

    def __init__(self):
        self._warnings: list[tuple[Path, IdrisWarning]] = []
        self._listeners: list[Callable[[Path], None]] = []

    def reset(self, path: Path | None = None):
        """Forget warnings for path (or all warnings)."""
        if path is None:
            self._warnings.clear()
        else:
            self._warnings = [(p, w) for p, w in self._warnings if p != path]

    def add(self, warning: IdrisWarning, cwd: Path | None = None):
        path = Path(warning.file)
        if not path.is_absolute() and cwd is not None:
            path = cwd / path
        self._warnings.append((path.resolve(), warning))

    def for_file(self, path: Path) -> list[IdrisWarning]:
        path = Path(path).resolve()
        return [w for p, w in self._warnings if p == path]

    def all(self) -> list[IdrisWarning]:
        return [w for _, w in self._warnings]

    def on_available(self, callback: Callable[[Path], None]):
        """Register a callback run after a failed load left diagnostics."""
        self._listeners.append(callback)

    def signal_available(self, path: Path):
        for callback in list(self._listeners):
            callback(path)


def _key(buffer) -> Path:
    return Path(buffer.file_path).resolve()


class IdrisSession:
    """Dirty/loaded state and working directory of one Idris process.

    Buffers need ``file_path``, ``directory``, ``file_name`` and ``on_change``;
    the session subscribes to each buffer it sees.
    Invariant: ``loaded_buffer`` is set only for a buffer whose last load
    succeeded and which has not been edited since.
    """

    def __init__(self, transport, *, load_timeout: float | None = None,
                 call_timeout: float | None = None):
        self.transport = transport
        self.dispatcher = Dispatcher(transport)
        self.diagnostics = Diagnostics()
        self.load_timeout = load_timeout
        self.call_timeout = call_timeout
        self.current_working_directory: Path | None = None
        self.loaded_buffer = None
        self.prompt: str | None = None
        self.output: deque[str] = deque(maxlen=OUTPUT_LIMIT)
        self._dirty: dict[Path, bool] = {}
        self._generation: dict[Path, int] = {}
        self._watched: weakref.WeakSet = weakref.WeakSet()
        self.dispatcher.add_observer(self._on_notification)

    # =========================================================================
    # Process lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self.transport.is_running

    async def ensure_process(self) -> str | None:
        """Start Idris if it is not running. Returns the start message, if any."""
        if self.transport.is_running:
            return None
        # A fresh process has nothing loaded and an unknown directory
        self.loaded_buffer = None
        self.current_working_directory = None
        return await self.transport.start()

    async def quit(self):
        """Stop Idris, dropping pending calls without running their continuations."""
        self.dispatcher.discard_pending()
        await self.transport.stop()
        self.loaded_buffer = None
        self.current_working_directory = None
        self.prompt = None

    async def call(self, command: Command, timeout: float | None = None) -> Response:
        """Synchronous call with the session's default timeout."""
        return await self.dispatcher.call(command, timeout=timeout or self.call_timeout)

    async def switch_working_directory(self, path) -> bool:
        """Make Idris' working directory path. Returns True if a :cd was sent."""
        path = Path(path).resolve()
        if path == self.current_working_directory and self.transport.is_running:
            return False
        await self.ensure_process()
        if path == self.current_working_directory:
            return False
        await self.call(Command("interpret", (f":cd {path}",)))
        self.current_working_directory = path
        logger.debug("working directory now %s", path)
        return True

    async def interpret(self, expression: str, timeout: float | None = None) -> Response:
        """Evaluate an expression at the REPL."""
        await self.ensure_process()
        self.output.clear()
        return await self.call(Command("interpret", (expression,)), timeout=timeout)

    # =========================================================================
    # Dirty / loaded tracking
    # =========================================================================

    def watch(self, buffer):
        """Mark buffer dirty on each of its later mutations. Subscribes once."""
        if buffer not in self._watched:
            self._watched.add(buffer)
            buffer.on_change(self.mark_dirty)

    def mark_dirty(self, buffer):
        key = _key(buffer)
        self._dirty[key] = True
        self._generation[key] = self._generation.get(key, 0) + 1
        if self.is_loaded(buffer):
            self.loaded_buffer = None

    def mark_clean(self, buffer):
        self._dirty[_key(buffer)] = False
        self.loaded_buffer = buffer

    def is_dirty(self, buffer) -> bool:
        return self._dirty.get(_key(buffer), True)

    def is_loaded(self, buffer) -> bool:
        return self.loaded_buffer is not None and _key(self.loaded_buffer) == _key(buffer)

    def is_stale(self, buffer) -> bool:
        """True if buffer must be (re)loaded before a buffer-scoped command."""
        return self.is_dirty(buffer) or not self.is_loaded(buffer)

    def _loaded(self, buffer, generation: int):
        """Record a successful load started at the given edit generation."""
        if self._generation.get(_key(buffer), 0) == generation:
            self.mark_clean(buffer)
        else:
            # Edited while the load was in flight: Idris has an older text
            logger.debug("%s changed during load, staying dirty", buffer.file_path)

    async def _prepare_load(self, buffer) -> tuple[Command, int]:
        self.watch(buffer)
        path = _key(buffer)
        self.diagnostics.reset(path)
        await self.switch_working_directory(buffer.directory)
        # A load in flight is never treated as already loaded
        self.loaded_buffer = None
        return Command("load-file", (buffer.file_name,)), self._generation.get(path, 0)

    def _load_failed(self, buffer, error: CallFailed) -> LoadFailed:
        path = _key(buffer)
        logger.debug("load of %s failed: %s", path, error.diagnostic)
        self.diagnostics.signal_available(path)
        return LoadFailed(error.diagnostic, path)

    async def load_if_needed(self, buffer) -> bool:
        """Load buffer unless it is already loaded and clean.

        Returns True if a load-file was sent. Raises LoadFailed (diagnostics
        populated, nothing marked loaded) or ProcessUnavailable.
        """
        if not self.is_stale(buffer):
            return False
        await self.reload(buffer)
        return True

    async def reload(self, buffer) -> Response:
        """Load buffer unconditionally."""
        command, generation = await self._prepare_load(buffer)
        try:
            response = await self.dispatcher.call(command, timeout=self.load_timeout)
        except CallFailed as e:
            raise self._load_failed(buffer, e) from e
        self._loaded(buffer, generation)
        return response

    async def load_if_needed_async(self, buffer,
                                   on_success: Callable[[Optional[Response]], None],
                                   on_failure: Callable[[IdrisError], None]) -> Optional[PendingCall]:
        """Like load_if_needed, but the load-file itself is not awaited.

        The directory switch is still synchronous. Returns the PendingCall of
        the load, or None if buffer was already loaded (on_success still runs,
        on a later turn of the event loop, with None).
        """
        if not self.is_stale(buffer):
            asyncio.get_running_loop().call_soon(on_success, None)
            return None
        command, generation = await self._prepare_load(buffer)

        def succeeded(response: Response):
            self._loaded(buffer, generation)
            on_success(response)

        def failed(error: IdrisError):
            if isinstance(error, CallFailed):
                error = self._load_failed(buffer, error)
            on_failure(error)

        return self.dispatcher.call_async(command, succeeded, failed)

    # =========================================================================
    # Notifications
    # =========================================================================

    def _on_notification(self, message: Message):
        if message.kind == "warning":
            try:
                self.diagnostics.add(parse_warning(message.payload), self.current_working_directory)
            except SExpParseError:
                logger.warning("Ignoring malformed warning: %r", message.payload)
        elif message.kind == "write-string":
            self.output.append(str(message.payload))
        elif message.kind == "set-prompt":
            self.prompt = str(message.payload)
        else:
            logger.debug("notification %s: %r", message.kind, message.payload)
