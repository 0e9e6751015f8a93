"""Apply compiler output to buffers, optionally as snippet templates.

With templating on, holes in the inserted text become numbered fields so the
user can tab through them: ``?x`` becomes a field defaulted to ``x`` and the
literal ``(_)`` becomes ``(`` + a field defaulted to ``_`` + ``)``. Fields are
numbered from 1 in order of first occurrence. The template uses snippet
syntax (``${1:x}``, with ``$`` and ``\\`` escaped) and is handed to an
expansion capability.
"""

import re
from dataclasses import dataclass

_PLACEHOLDER_RE = re.compile(r"\?([A-Za-z_][A-Za-z0-9_']*)|\(_\)")
_SNIPPET_RE = re.compile(r"\\(.)|\$\{(\d+):((?:[^}\\]|\\.)*)\}", re.DOTALL)


@dataclass
class Field:
    """An editable field left in the buffer after expansion."""
    number: int
    default: str
    offset: int = 0   # Absolute char offset of the default text in the buffer


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("$", "\\$")


def to_template(text: str) -> tuple[str, list[Field]]:
    """Turn placeholders into numbered snippet fields.

    Returns the snippet text and the fields in numbering order (offsets are
    left at 0 until expansion).
    """
    parts = []
    fields = []
    pos = 0
    for m in _PLACEHOLDER_RE.finditer(text):
        parts.append(_escape(text[pos:m.start()]))
        number = len(fields) + 1
        if m.group(1) is not None:
            fields.append(Field(number, m.group(1)))
            parts.append(f"${{{number}:{m.group(1)}}}")
        else:
            fields.append(Field(number, "_"))
            parts.append(f"(${{{number}:_}})")
        pos = m.end()
    parts.append(_escape(text[pos:]))
    return "".join(parts), fields


class FieldExpander:
    """Expansion capability for file buffers.

    Writes each field's default text and reports where the fields ended up,
    since a file has no live snippet session.
    """

    def expand(self, buffer, start: int, end: int, template: str) -> list[Field]:
        out = []
        fields = []
        pos = 0
        length = 0
        for m in _SNIPPET_RE.finditer(template):
            literal = template[pos:m.start()]
            out.append(literal)
            length += len(literal)
            if m.group(1) is not None:
                out.append(m.group(1))
                length += 1
            else:
                default = re.sub(r"\\(.)", r"\1", m.group(3))
                fields.append(Field(int(m.group(2)), default, start + length))
                out.append(default)
                length += len(default)
            pos = m.end()
        out.append(template[pos:])
        buffer.replace_range(start, end, "".join(out))
        return sorted(fields, key=lambda f: f.number)


class PlainEditor:
    """Insert compiler output verbatim."""

    templated = False

    def apply(self, buffer, start: int, end: int, text: str) -> list[Field]:
        buffer.replace_range(start, end, text)
        return []


class TemplateEditor:
    """Insert compiler output with holes turned into editable fields."""

    templated = True

    def __init__(self, expander=None):
        self.expander = expander or FieldExpander()

    def apply(self, buffer, start: int, end: int, text: str) -> list[Field]:
        template, _ = to_template(text)
        return self.expander.expand(buffer, start, end, template)


def make_editor(snippets: bool):
    """Pick the editor at configuration time."""
    return TemplateEditor() if snippets else PlainEditor()
