"""Tests for plain and templated insertion of compiler output."""

from idris_mcp.idris_buffer import FileBuffer
from idris_mcp.idris_edit import (
    FieldExpander, PlainEditor, TemplateEditor, make_editor, to_template,
)


def test_template_numbering_left_to_right():
    template, fields = to_template("?x + (_) + ?y")
    assert template == "${1:x} + (${2:_}) + ${3:y}"
    assert [(f.number, f.default) for f in fields] == [(1, "x"), (2, "_"), (3, "y")]


def test_repeated_hole_gets_distinct_fields():
    _, fields = to_template("?x ?x")
    assert [f.number for f in fields] == [1, 2]


def test_template_escapes_dollar():
    template, fields = to_template("f $ ?arg")
    assert template == "f \\$ ${1:arg}"
    assert len(fields) == 1


def test_no_placeholders():
    template, fields = to_template("plus Z y = y")
    assert template == "plus Z y = y"
    assert fields == []


def test_expand_writes_defaults_and_offsets(tmp_path):
    f = tmp_path / "A.idr"
    f.write_text("foo = HOLE\n")
    b = FileBuffer(f)
    template, _ = to_template("g (_) ?n $ 1")
    fields = FieldExpander().expand(b, 6, 10, template)
    assert b.text == "foo = g (_) n $ 1\n"
    assert [(fl.number, fl.default) for fl in fields] == [(1, "_"), (2, "n")]
    assert b.text[fields[0].offset] == "_"
    assert b.text[fields[1].offset] == "n"


def test_template_editor(tmp_path):
    f = tmp_path / "A.idr"
    f.write_text("line\n")
    b = FileBuffer(f)
    fields = TemplateEditor().apply(b, 0, 4, "Cons ?x ?xs")
    assert b.text == "Cons x xs\n"
    assert [fl.default for fl in fields] == ["x", "xs"]
    assert b.position(fields[1].offset) == (1, 8)


def test_plain_editor_inserts_verbatim(tmp_path):
    f = tmp_path / "A.idr"
    f.write_text("line\n")
    b = FileBuffer(f)
    assert PlainEditor().apply(b, 0, 4, "Cons ?x ?xs") == []
    assert b.text == "Cons ?x ?xs\n"


def test_make_editor():
    assert isinstance(make_editor(True), TemplateEditor)
    assert isinstance(make_editor(False), PlainEditor)
