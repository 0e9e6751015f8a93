"""Idris subprocess management for IDE mode."""

import asyncio
import codecs
import logging
import os
import shutil
import signal
from pathlib import Path
from typing import Optional

from .idris_errors import ProcessUnavailable, SExpParseError
from .idris_sexp import HEADER_LEN, decode, frame, parse_length, parse_message, Message

IDRIS = os.environ.get("IDRIS", "idris")

logger = logging.getLogger(__name__)


def find_idris() -> str | None:
    """Resolve the idris executable from $IDRIS or PATH."""
    if Path(IDRIS).is_file():
        return IDRIS
    return shutil.which(IDRIS)


class IdrisProcess:
    """Idris --ide-mode subprocess speaking framed s-expressions."""

    def __init__(self, workdir: str = ".", env: dict | None = None, executable: str | None = None):
        self.workdir = Path(workdir)
        self.env = env  # Extra env vars to merge with os.environ
        self.executable = executable or IDRIS
        self.process: Optional[asyncio.subprocess.Process] = None
        self.protocol_version: tuple[int, int] | None = None
        self._write_lock = asyncio.Lock()

    async def start(self, timeout: float = 30) -> str:
        """Start Idris in IDE mode and wait for the protocol banner."""
        if self.is_running:
            return "Idris already running"

        proc_env = os.environ.copy()
        if self.env:
            proc_env.update(self.env)

        try:
            self.process = await asyncio.create_subprocess_exec(
                self.executable, "--ide-mode",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                # Compiler chatter on stderr is not part of the protocol
                stderr=asyncio.subprocess.DEVNULL,
                cwd=self.workdir,
                env=proc_env,
                start_new_session=True,  # New process group for clean kill
            )
        except FileNotFoundError as e:
            raise ProcessUnavailable(f"Idris executable not found: {self.executable}") from e

        banner = await asyncio.wait_for(self.read_message(), timeout=timeout)
        if banner.kind == "protocol-version" and len(banner.payload) >= 2:
            self.protocol_version = (banner.payload[0], banner.payload[1])
        logger.debug("idris started pid=%s protocol=%s", self.process.pid, self.protocol_version)
        return f"Idris started (PID {self.process.pid})"

    async def write_message(self, payload: str):
        """Frame and send one message."""
        if not self.is_running:
            raise ProcessUnavailable()
        async with self._write_lock:
            logger.debug("-> %s", payload)
            self.process.stdin.write(frame(payload))
            try:
                await self.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise ProcessUnavailable("Idris process died unexpectedly") from e

    async def read_message(self) -> Message:
        """Read and decode one framed message. Raises ProcessUnavailable on EOF."""
        if self.process is None:
            raise ProcessUnavailable()
        try:
            header = await self.process.stdout.readexactly(HEADER_LEN)
            text = await self._read_chars(parse_length(header))
        except asyncio.IncompleteReadError as e:
            raise ProcessUnavailable("Idris process died unexpectedly") from e
        logger.debug("<- %s", text.rstrip("\n"))
        try:
            return parse_message(decode(text))
        except SExpParseError:
            logger.warning("Unparseable message from idris: %r", text)
            raise

    async def _read_chars(self, count: int) -> str:
        """Read exactly count characters of UTF-8 text.

        Every character is at least one byte, so reading the number of
        characters still missing never consumes the next message.
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parts = []
        have = 0
        while have < count:
            chunk = decoder.decode(await self.process.stdout.readexactly(count - have))
            parts.append(chunk)
            have += len(chunk)
        return "".join(parts)

    def interrupt(self):
        """Send SIGINT to the process group."""
        if self.is_running:
            try:
                os.killpg(os.getpgid(self.process.pid), signal.SIGINT)
            except (ProcessLookupError, PermissionError):
                pass

    async def stop(self):
        """Kill the Idris process group and wait for cleanup."""
        if self.process and self.process.returncode is None:
            try:
                os.killpg(os.getpgid(self.process.pid), signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                pass
            try:
                await asyncio.wait_for(self.process.wait(), timeout=5)
            except asyncio.TimeoutError:
                # Force kill if it doesn't terminate
                try:
                    self.process.kill()
                    await self.process.wait()
                except ProcessLookupError:
                    pass
        self.process = None
        self.protocol_version = None

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
