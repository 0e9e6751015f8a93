"""S-expression codec and framing for the Idris IDE protocol.

Every message on the wire is six lowercase hex digits giving the byte length
of the rest of the message (payload plus trailing newline), then the payload:

    000015(:return (:ok ()) 1)\\n

Requests are ``((:command arg ...) request-id)``; replies and notifications
are the forms handled by ``parse_message``.
"""

import re
from dataclasses import dataclass, field

from .idris_errors import SExpParseError

HEADER_LEN = 6


class Symbol(str):
    """A keyword atom such as ``:ok``. Compares equal to its text."""

    def __repr__(self):
        return f"Symbol({str.__repr__(self)})"


def sym(name: str) -> Symbol:
    """Build a keyword atom, adding the leading colon if missing."""
    return Symbol(name if name.startswith(":") else ":" + name)


def escape_string(s: str) -> str:
    """Escape a string for an s-expression string literal."""
    # Backslash first, otherwise the quote escapes get doubled
    return s.replace("\\", "\\\\").replace('"', '\\"')


def encode(value) -> str:
    """Render a value as s-expression text."""
    if isinstance(value, Symbol):
        return str(value)
    if isinstance(value, bool):
        return ":True" if value else ":False"
    if isinstance(value, str):
        return f'"{escape_string(value)}"'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "(" + " ".join(encode(v) for v in value) + ")"
    raise TypeError(f"Cannot encode {type(value).__name__}: {value!r}")


_ATOM_RE = re.compile(r'[^\s()"]+')
_INT_RE = re.compile(r"-?\d+")


def decode(text: str):
    """Parse one s-expression. Raises SExpParseError on malformed input."""
    value, pos = _read(text, _skip_ws(text, 0))
    pos = _skip_ws(text, pos)
    if pos != len(text):
        raise SExpParseError(f"Trailing data at offset {pos}: {text[pos:pos + 20]!r}")
    return value


def _skip_ws(text: str, pos: int) -> int:
    while pos < len(text) and text[pos].isspace():
        pos += 1
    return pos


def _read(text: str, pos: int):
    if pos >= len(text):
        raise SExpParseError("Unexpected end of input")
    c = text[pos]
    if c == "(":
        items = []
        pos = _skip_ws(text, pos + 1)
        while True:
            if pos >= len(text):
                raise SExpParseError("Unbalanced parenthesis")
            if text[pos] == ")":
                return items, pos + 1
            item, pos = _read(text, pos)
            items.append(item)
            pos = _skip_ws(text, pos)
    if c == ")":
        raise SExpParseError(f"Unexpected ')' at offset {pos}")
    if c == '"':
        return _read_string(text, pos + 1)
    m = _ATOM_RE.match(text, pos)
    atom = m.group(0)
    if _INT_RE.fullmatch(atom):
        return int(atom), m.end()
    return Symbol(atom), m.end()


def _read_string(text: str, pos: int):
    chars = []
    while pos < len(text):
        c = text[pos]
        if c == '"':
            return "".join(chars), pos + 1
        if c == "\\":
            pos += 1
            if pos >= len(text):
                break
            esc = text[pos]
            chars.append("\n" if esc == "n" else esc)
        else:
            chars.append(c)
        pos += 1
    raise SExpParseError("Unterminated string literal")


# =============================================================================
# Framing
# =============================================================================

def frame(payload: str) -> bytes:
    """Prefix payload with its hex length header and terminate with newline.

    Idris counts the length in characters, not in encoded bytes.
    """
    body = payload + "\n"
    return f"{len(body):06x}{body}".encode()


def parse_length(header: bytes) -> int:
    """Decode a six-digit hex length header."""
    if len(header) != HEADER_LEN:
        raise SExpParseError(f"Short header: {header!r}")
    try:
        return int(header.decode("ascii"), 16)
    except (UnicodeDecodeError, ValueError) as e:
        raise SExpParseError(f"Bad length header {header!r}") from e


# =============================================================================
# Commands and replies
# =============================================================================

@dataclass(frozen=True)
class Command:
    """An outgoing request: keyword tag plus fixed, ordered arguments."""
    tag: str
    args: tuple = ()

    def to_sexp(self, request_id: int) -> str:
        return encode([[sym(self.tag), *self.args], request_id])

    def __str__(self):
        return encode([sym(self.tag), *self.args])


@dataclass
class Formatting:
    """A highlighted span of response text."""
    start: int
    length: int
    properties: dict = field(default_factory=dict)


@dataclass
class Response:
    """Decoded success value of a call, with optional highlighting."""
    value: object
    formatting: list[Formatting] = field(default_factory=list)

    @property
    def text(self) -> str:
        """Value as text; lists of identifiers are joined by spaces."""
        if isinstance(self.value, list):
            return " ".join(str(v) for v in self.value)
        return "" if self.value is None else str(self.value)


@dataclass
class Message:
    """One decoded message from Idris."""
    kind: str                    # "return", "output", "write-string", "warning", ...
    request_id: int | None
    payload: object
    ok: bool = True              # Only meaningful for "return"/"output"

    @property
    def is_return(self) -> bool:
        return self.kind == "return"


@dataclass
class IdrisWarning:
    """A diagnostic reported by Idris (from a :warning notification)."""
    file: str
    start: tuple[int, int]   # (line, col), 1-indexed
    end: tuple[int, int]
    message: str


def parse_formatting(spans) -> list[Formatting]:
    """Decode ``((start len ((:key value) ...)) ...)`` highlighting."""
    result = []
    if not isinstance(spans, list):
        return result
    for span in spans:
        if not (isinstance(span, list) and len(span) >= 2):
            continue
        props = {}
        if len(span) > 2 and isinstance(span[2], list):
            for prop in span[2]:
                if isinstance(prop, list) and len(prop) >= 2:
                    props[str(prop[0])] = prop[1]
        result.append(Formatting(span[0], span[1], props))
    return result


def parse_message(value) -> Message:
    """Classify a decoded message as a call result or a notification."""
    if not (isinstance(value, list) and value and isinstance(value[0], Symbol)):
        raise SExpParseError(f"Not an IDE message: {value!r}")
    kind = value[0][1:]
    if kind == "protocol-version":
        return Message(kind, None, value[1:])
    if len(value) < 3:
        raise SExpParseError(f"Malformed {value[0]} message")
    request_id = value[-1] if isinstance(value[-1], int) else None
    payload = value[1]
    if kind in ("return", "output"):
        if not (isinstance(payload, list) and payload and payload[0] in (":ok", ":error")):
            raise SExpParseError(f"Malformed {kind} payload")
        return Message(kind, request_id, payload[1:], ok=payload[0] == ":ok")
    return Message(kind, request_id, payload)


def result_of(message: Message) -> Response:
    """Build a Response from the payload of a successful :return."""
    payload = message.payload
    value = payload[0] if payload else None
    formatting = parse_formatting(payload[1]) if len(payload) > 1 else []
    return Response(value, formatting)


def error_text(message: Message) -> str:
    """Diagnostic text of an (:error ...) return."""
    payload = message.payload
    if payload and isinstance(payload[0], str):
        return payload[0]
    return encode(payload)


def parse_warning(payload) -> IdrisWarning:
    """Decode ``("file" (l c) (l c) "msg" highlighting)``."""
    try:
        file, start, end, msg = payload[:4]
        return IdrisWarning(str(file), (start[0], start[1]), (end[0], end[1]), msg)
    except (TypeError, ValueError, IndexError) as e:
        raise SExpParseError(f"Malformed warning: {payload!r}") from e
