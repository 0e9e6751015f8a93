"""File-backed text buffers for interactive editing commands."""

import bisect
import hashlib
import re
from pathlib import Path
from typing import Callable

from .idris_errors import NoTargetAtPoint

# Idris names may carry primes and dotted namespaces (Data.Vect.index)
_IDENT_CHAR_RE = re.compile(r"[A-Za-z0-9_'.]")
_COMPLETION_CHAR_RE = re.compile(r"[A-Za-z0-9_]")
_HOLE_NAME_RE = re.compile(r"[A-Za-z0-9_'.]*")


def build_line_starts(content: str) -> list[int]:
    """Table mapping line numbers to char offsets.

    line_starts[i] = char offset where line (i+1) begins.
    """
    starts = [0]
    for i, c in enumerate(content):
        if c == '\n':
            starts.append(i + 1)
    return starts


def offset_to_line_col(offset: int, line_starts: list[int]) -> tuple[int, int]:
    """Convert char offset to (line, col), both 1-indexed."""
    line = bisect.bisect_right(line_starts, offset)
    return (line, offset - line_starts[line - 1] + 1)


class FileBuffer:
    """An editable source file.

    Text is kept in memory and written back on every mutation. Listeners
    registered with ``on_change`` run after each mutation (the session uses
    this to mark the buffer dirty). Lines and columns are 1-indexed.
    """

    def __init__(self, path):
        self.file_path = Path(path).resolve()
        self._listeners: list[Callable[["FileBuffer"], None]] = []
        self._content = ""
        self._content_hash = ""
        self._line_starts: list[int] = [0]
        self.refresh()

    @property
    def directory(self) -> Path:
        return self.file_path.parent

    @property
    def file_name(self) -> str:
        return self.file_path.name

    @property
    def text(self) -> str:
        return self._content

    @property
    def content_hash(self) -> str:
        return self._content_hash

    @property
    def line_count(self) -> int:
        return len(self._line_starts)

    def on_change(self, callback: Callable[["FileBuffer"], None]):
        self._listeners.append(callback)

    def refresh(self) -> bool:
        """Re-read the file. Returns True (and notifies listeners) if it changed.

        Raises FileNotFoundError if the file was deleted.
        """
        content = self.file_path.read_text()
        content_hash = hashlib.sha256(content.encode()).hexdigest()
        if content_hash == self._content_hash:
            return False
        first_read = not self._content_hash
        self._set(content, content_hash)
        if not first_read:
            self._notify()
        return True

    # =========================================================================
    # Positions
    # =========================================================================

    def offset(self, line: int, col: int = 1) -> int:
        """Convert (line, col) to a char offset, clamping col to the line."""
        if line < 1 or line > len(self._line_starts):
            raise ValueError(f"Line {line} out of range (1-{len(self._line_starts)})")
        start, end = self._line_bounds(line)
        return min(start + max(col, 1) - 1, end)

    def position(self, offset: int) -> tuple[int, int]:
        return offset_to_line_col(offset, self._line_starts)

    def _line_bounds(self, line: int) -> tuple[int, int]:
        """(start, end) offsets of a line's content, excluding its newline."""
        start = self._line_starts[line - 1]
        if line < len(self._line_starts):
            end = self._line_starts[line] - 1
        else:
            end = len(self._content)
        return start, end

    def line_text(self, line: int) -> str:
        start, end = self._line_bounds(line)
        return self._content[start:end]

    def identifier_at(self, line: int, col: int) -> tuple[str, int]:
        """Identifier touching (line, col) and its line.

        A leading ``?`` of a hole is not part of the name. Raises
        NoTargetAtPoint if there is no identifier there.
        """
        if line < 1 or line > self.line_count:
            raise NoTargetAtPoint(line, col)
        text = self.line_text(line)
        idx = min(max(col, 1) - 1, len(text))
        # Cursor just past the end of a name still counts
        if (idx >= len(text) or not _IDENT_CHAR_RE.match(text[idx])) and idx > 0 \
                and _IDENT_CHAR_RE.match(text[idx - 1]):
            idx -= 1
        if idx >= len(text) or not _IDENT_CHAR_RE.match(text[idx]):
            raise NoTargetAtPoint(line, col)
        start = idx
        while start > 0 and _IDENT_CHAR_RE.match(text[start - 1]):
            start -= 1
        end = idx
        while end < len(text) and _IDENT_CHAR_RE.match(text[end]):
            end += 1
        name = text[start:end].strip(".")
        if not name:
            raise NoTargetAtPoint(line, col)
        return name, line

    def completion_prefix(self, line: int, col: int) -> tuple[int, int, str]:
        """Maximal run of [A-Za-z0-9_] ending at (line, col): (start, end, text)."""
        end = self.offset(line, col)
        start = end
        line_start, _ = self._line_bounds(line)
        while start > line_start and _COMPLETION_CHAR_RE.match(self._content[start - 1]):
            start -= 1
        return start, end, self._content[start:end]

    def hole_span_before(self, line: int, col: int, name: str | None = None) -> tuple[int, int] | None:
        """Span from the nearest ``?`` on the line at or before (line, col)
        through the name following it.

        None if there is no such ``?``, or if name is given and the hole
        there has a different name.
        """
        point = self.offset(line, col)
        line_start, line_end = self._line_bounds(line)
        # Point may sit on the '?' itself
        q = self._content.rfind("?", line_start, min(point + 1, line_end))
        if q < 0:
            return None
        m = _HOLE_NAME_RE.match(self._content, q + 1)
        if name is not None and m.group(0) != name:
            return None
        return q, m.end()

    # =========================================================================
    # Mutation
    # =========================================================================

    def replace_range(self, start: int, end: int, text: str):
        """Replace content[start:end] with text and write the file."""
        if not 0 <= start <= end <= len(self._content):
            raise ValueError(f"Bad range {start}:{end} (length {len(self._content)})")
        self._write(self._content[:start] + text + self._content[end:])

    def insert_at(self, offset: int, text: str):
        self.replace_range(offset, offset, text)

    def replace_line(self, line: int, text: str):
        """Replace a line's content (its newline is kept)."""
        start, end = self._line_bounds(line)
        self.replace_range(start, end, text)

    def line_end(self, line: int) -> int:
        return self._line_bounds(line)[1]

    def _write(self, content: str):
        self.file_path.write_text(content)
        self._set(content, hashlib.sha256(content.encode()).hexdigest())
        self._notify()

    def _set(self, content: str, content_hash: str):
        self._content = content
        self._content_hash = content_hash
        self._line_starts = build_line_starts(content)

    def _notify(self):
        for callback in list(self._listeners):
            callback(self)
