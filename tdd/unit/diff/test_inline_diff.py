"""
Unit tests for inline (word-level) diff highlighting.

These tests verify:
- Pairing of Del and Add lines inside a block of changes
- Unbalanced blocks do not pair
- Word-level segments and their HTML rendering
- Escaping of unpaired and context lines
"""
from app.services.diff import (
    DiffLine,
    DiffLineType,
    DiffSection,
    computed_inline_diff,
    find_paired_line,
    word_diff,
)
from app.services.diff.inline import ADDED_CODE_PREFIX, CODE_TAG_SUFFIX, REMOVED_CODE_PREFIX


def section(*lines: DiffLine) -> DiffSection:
    return DiffSection(name="", lines=[DiffLine(DiffLineType.SECTION, "@@ -1,3 +1,3 @@"), *lines])


def plain(text, left, right):
    return DiffLine(DiffLineType.PLAIN, " " + text, left, right)


def added(text, right):
    return DiffLine(DiffLineType.ADD, "+" + text, 0, right)


def deleted(text, left):
    return DiffLine(DiffLineType.DEL, "-" + text, left, 0)


# -----------------------------------------------------------------------------
# Pairing
# -----------------------------------------------------------------------------

class TestFindPairedLine:
    """Tests for find_paired_line()."""

    def test_single_replacement_pairs(self):
        old = deleted("foo bar baz", 2)
        new = added("foo qux baz", 2)
        sec = section(plain("a", 1, 1), old, new, plain("c", 3, 3))

        assert find_paired_line(sec, DiffLineType.DEL, new.right_idx) is old
        assert find_paired_line(sec, DiffLineType.ADD, old.left_idx) is new

    def test_block_pairs_by_relative_position(self):
        d1, d2 = deleted("one", 2), deleted("two", 3)
        a1, a2 = added("ONE", 2), added("TWO", 3)
        sec = section(plain("ctx", 1, 1), d1, d2, a1, a2, plain("end", 4, 4))

        assert find_paired_line(sec, DiffLineType.DEL, 3) is d2
        assert find_paired_line(sec, DiffLineType.ADD, 2) is a1

    def test_offset_from_earlier_insertions(self):
        """Line numbers drift after an insertion; pairing follows the context lines."""
        old = deleted("value = 1", 5)
        new = added("value = 2", 6)
        sec = section(plain("x", 4, 5), old, new, plain("y", 6, 7))

        assert find_paired_line(sec, DiffLineType.DEL, 6) is old
        assert find_paired_line(sec, DiffLineType.ADD, 5) is new

    def test_unbalanced_block_does_not_pair(self):
        old1, old2 = deleted("one", 2), deleted("two", 3)
        new = added("ONE", 2)
        sec = section(plain("ctx", 1, 1), old1, old2, new, plain("end", 4, 3))

        assert find_paired_line(sec, DiffLineType.DEL, 2) is None
        assert find_paired_line(sec, DiffLineType.ADD, 2) is None

    def test_pure_addition_has_no_pair(self):
        new = added("brand new", 2)
        sec = section(plain("ctx", 1, 1), new, plain("end", 2, 3))
        assert find_paired_line(sec, DiffLineType.DEL, 2) is None

    def test_section_get_line(self):
        old = deleted("foo", 2)
        new = added("bar", 2)
        sec = section(plain("a", 1, 1), old, new)
        assert sec.get_line(DiffLineType.DEL, 2) is old


# -----------------------------------------------------------------------------
# Word diff
# -----------------------------------------------------------------------------

class TestWordDiff:
    """Tests for word_diff() segmentation."""

    def test_single_word_change(self):
        assert word_diff("foo bar baz", "foo qux baz") == [
            (True, "foo ", "foo "),
            (False, "bar", "qux"),
            (True, " baz", " baz"),
        ]

    def test_whitespace_between_edits_is_folded(self):
        assert word_diff("a c", "x y") == [(False, "a c", "x y")]

    def test_identical_lines(self):
        assert word_diff("same text", "same text") == [(True, "same text", "same text")]

    def test_punctuation_is_its_own_token(self):
        segments = word_diff("call(a)", "call(b)")
        assert (False, "a", "b") in segments


# -----------------------------------------------------------------------------
# HTML rendering
# -----------------------------------------------------------------------------

class TestComputedInlineDiff:
    """Tests for computed_inline_diff()."""

    def _pair(self):
        old = deleted("foo bar baz", 2)
        new = added("foo qux baz", 2)
        return section(plain("a", 1, 1), old, new, plain("c", 3, 3)), old, new

    def test_added_line_highlights_new_words(self):
        sec, _, new = self._pair()
        assert computed_inline_diff(sec, new) == f"+foo {ADDED_CODE_PREFIX}qux{CODE_TAG_SUFFIX} baz"

    def test_deleted_line_highlights_old_words(self):
        sec, old, _ = self._pair()
        assert computed_inline_diff(sec, old) == f"-foo {REMOVED_CODE_PREFIX}bar{CODE_TAG_SUFFIX} baz"

    def test_section_method_matches_function(self):
        sec, _, new = self._pair()
        assert sec.get_computed_inline_diff_for(new) == computed_inline_diff(sec, new)

    def test_unpaired_line_is_escaped(self):
        new = added("<b>&</b>", 2)
        sec = section(plain("ctx", 1, 1), new)
        assert computed_inline_diff(sec, new) == "+&lt;b&gt;&amp;&lt;/b&gt;"

    def test_highlighted_text_is_escaped(self):
        old = deleted("x < y", 2)
        new = added("x > y", 2)
        sec = section(old, new)
        assert computed_inline_diff(sec, new) == f"+x {ADDED_CODE_PREFIX}&gt;{CODE_TAG_SUFFIX} y"

    def test_plain_line_is_escaped(self):
        line = plain("a & b", 1, 1)
        assert computed_inline_diff(section(line), line) == " a &amp; b"

    def test_disable_highlight_strips_marker(self):
        sec, _, new = self._pair()
        assert computed_inline_diff(sec, new, disable_highlight=True) == "foo qux baz"
