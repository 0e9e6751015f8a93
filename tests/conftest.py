"""Pytest fixtures for Idris client tests."""

import asyncio
from pathlib import Path

import pytest

from idris_mcp.idris_buffer import FileBuffer
from idris_mcp.idris_errors import ProcessUnavailable
from idris_mcp.idris_sexp import decode, encode, parse_message, sym
from idris_mcp.idris_session import IdrisSession


class Err:
    """Scripted (:error msg) reply."""

    def __init__(self, message: str, warnings=()):
        self.message = message
        self.warnings = list(warnings)


class Seq(list):
    """Scripted replies consumed one per call."""


class Hold:
    """Scripted reply that is only sent when FakeIdris.release() is called."""

    def __init__(self, value):
        self.value = value


class FakeIdris:
    """Scripted stand-in for IdrisProcess, speaking real s-expressions.

    replies maps a command tag to one of:
      - a value, sent as (:return (:ok value) id) for every call
      - a Seq of such values/Err/Hold, consumed one per call
      - a callable(args) returning a value or Err
    load-file and interpret succeed with "" unless scripted.
    """

    def __init__(self, replies: dict | None = None):
        self.replies = dict(replies or {})
        self.sent: list[tuple[str, list]] = []
        self.starts = 0
        self.held: list[str] = []
        self._running = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    @property
    def is_running(self) -> bool:
        return self._running

    def tags(self) -> list[str]:
        return [tag for tag, _ in self.sent]

    def count(self, tag: str) -> int:
        return self.tags().count(tag)

    async def start(self) -> str:
        self._inbox = asyncio.Queue()
        self._running = True
        self.starts += 1
        return "Idris started (PID 0)"

    async def stop(self):
        if self._running:
            self._running = False
            self._inbox.put_nowait(None)

    def interrupt(self):
        pass

    def die(self):
        """Simulate the process exiting unexpectedly."""
        self._running = False
        self._inbox.put_nowait(None)

    def notify(self, *message):
        """Queue a notification, e.g. notify(sym("write-string"), "hi", 3)."""
        self._inbox.put_nowait(encode(list(message)))

    def release(self, reverse: bool = False):
        held, self.held = self.held, []
        for text in (reversed(held) if reverse else held):
            self._inbox.put_nowait(text)

    async def write_message(self, payload: str):
        if not self._running:
            raise ProcessUnavailable()
        (tag, *args), request_id = decode(payload)
        tag = tag[1:]
        self.sent.append((tag, args))
        reply = self._reply_for(tag, args)
        held = isinstance(reply, Hold)
        if held:
            reply = reply.value
        if isinstance(reply, Err):
            for w in reply.warnings:
                self._inbox.put_nowait(encode([sym("warning"), w, request_id]))
            text = encode([sym("return"), [sym("error"), reply.message], request_id])
        else:
            text = encode([sym("return"), [sym("ok"), reply], request_id])
        if held:
            self.held.append(text)
        else:
            self._inbox.put_nowait(text)

    def _reply_for(self, tag: str, args: list):
        if tag not in self.replies:
            if tag in ("load-file", "interpret"):
                return ""
            return Err(f"unexpected command {tag}")
        reply = self.replies[tag]
        if isinstance(reply, Seq):
            reply = reply.pop(0)
        if callable(reply):
            reply = reply(args)
        return reply

    async def read_message(self):
        text = await self._inbox.get()
        if text is None:
            raise ProcessUnavailable("Idris process died unexpectedly")
        return parse_message(decode(text))


FIXTURE_SOURCE = """\
module Main

plus' : Nat -> Nat -> Nat
plus' x y = ?plus_rhs

vlen : Vect n a -> Nat
vlen xs = ?vlen_rhs
"""


@pytest.fixture
def fake_idris():
    return FakeIdris()


@pytest.fixture
def session(fake_idris):
    return IdrisSession(fake_idris, call_timeout=5, load_timeout=5)


@pytest.fixture
def idr_file(tmp_path: Path) -> Path:
    """A small Idris source file in a temp directory."""
    f = tmp_path / "Main.idr"
    f.write_text(FIXTURE_SOURCE)
    return f


@pytest.fixture
def buffer(idr_file, session):
    """FileBuffer on idr_file; the session subscribes to it on first use."""
    return FileBuffer(idr_file)
