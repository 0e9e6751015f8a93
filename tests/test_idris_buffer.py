"""Tests for file-backed buffers."""

import pytest

from idris_mcp.idris_buffer import FileBuffer, build_line_starts, offset_to_line_col
from idris_mcp.idris_errors import NoTargetAtPoint


def test_line_starts():
    assert build_line_starts("ab\ncd\n") == [0, 3, 6]
    assert offset_to_line_col(4, [0, 3, 6]) == (2, 2)


def test_line_text(idr_file):
    b = FileBuffer(idr_file)
    assert b.line_text(1) == "module Main"
    assert b.line_text(4) == "plus' x y = ?plus_rhs"
    assert b.file_name == "Main.idr"
    assert b.directory == idr_file.parent.resolve()


class TestIdentifierAt:

    def test_middle_of_name(self, idr_file):
        b = FileBuffer(idr_file)
        assert b.identifier_at(3, 2) == ("plus'", 3)

    def test_just_after_name(self, idr_file):
        b = FileBuffer(idr_file)
        assert b.identifier_at(4, 8) == ("x", 4)

    def test_hole_name_excludes_question_mark(self, idr_file):
        b = FileBuffer(idr_file)
        assert b.identifier_at(4, 15) == ("plus_rhs", 4)

    def test_whitespace_is_no_target(self, idr_file):
        b = FileBuffer(idr_file)
        with pytest.raises(NoTargetAtPoint):
            b.identifier_at(2, 1)  # blank line

    def test_operator_is_no_target(self, idr_file):
        b = FileBuffer(idr_file)
        with pytest.raises(NoTargetAtPoint):
            b.identifier_at(3, 13)  # the '-' of '->'

    def test_line_out_of_range(self, idr_file):
        b = FileBuffer(idr_file)
        with pytest.raises(NoTargetAtPoint):
            b.identifier_at(99, 1)


def test_hole_span_before(idr_file):
    b = FileBuffer(idr_file)
    start, end = b.hole_span_before(4, 18)
    assert b.text[start:end] == "?plus_rhs"


def test_hole_span_stays_on_its_line(idr_file):
    b = FileBuffer(idr_file)
    # Line 6 has no hole; the ?plus_rhs two lines up is not a candidate
    assert b.hole_span_before(6, 5) is None


def test_hole_span_checks_name(idr_file):
    b = FileBuffer(idr_file)
    assert b.hole_span_before(4, 18, "vlen_rhs") is None
    start, end = b.hole_span_before(4, 18, "plus_rhs")
    assert b.text[start:end] == "?plus_rhs"


def test_hole_span_none_without_question_mark(tmp_path):
    f = tmp_path / "A.idr"
    f.write_text("f : Nat\nf = 3\n")
    assert FileBuffer(f).hole_span_before(2, 3) is None


def test_completion_prefix(tmp_path):
    f = tmp_path / "A.idr"
    f.write_text("x = Data.Vect.ind\n")
    b = FileBuffer(f)
    start, end, prefix = b.completion_prefix(1, 18)
    assert prefix == "ind"
    assert b.text[start:end] == "ind"
    assert b.completion_prefix(1, 4)[2] == ""


def test_mutation_writes_file_and_notifies(idr_file):
    b = FileBuffer(idr_file)
    changed = []
    b.on_change(changed.append)
    b.replace_line(4, "plus' x y = x + y")
    assert idr_file.read_text().splitlines()[3] == "plus' x y = x + y"
    assert changed == [b]
    assert b.line_count == 8


def test_replace_range_rejects_bad_range(idr_file):
    b = FileBuffer(idr_file)
    with pytest.raises(ValueError):
        b.replace_range(5, 2, "x")


def test_refresh_detects_external_edits(idr_file):
    b = FileBuffer(idr_file)
    changed = []
    b.on_change(changed.append)
    assert not b.refresh()
    idr_file.write_text(idr_file.read_text() + "\n-- more\n")
    assert b.refresh()
    assert changed == [b]
    assert b.text.endswith("-- more\n")


def test_refresh_missing_file(idr_file):
    b = FileBuffer(idr_file)
    idr_file.unlink()
    with pytest.raises(FileNotFoundError):
        b.refresh()
