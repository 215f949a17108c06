"""
Word-level highlighting of a changed line against its counterpart.

A Del line is paired with the Add line in the same block of changes at the
same relative position; a block pairs only when it has as many additions as
deletions. The pair is diffed over word tokens and rendered as escaped HTML
with the changed runs wrapped in marker spans.
"""

import html
import re
from difflib import SequenceMatcher

from app.services.diff.model import DiffLine, DiffLineType, DiffSection

ADDED_CODE_PREFIX = '<span class="added-code">'
REMOVED_CODE_PREFIX = '<span class="removed-code">'
CODE_TAG_SUFFIX = "</span>"

TOKEN_PATTERN = re.compile(r"\w+|\s+|[^\w\s]")

Segment = tuple[bool, str, str]  # (equal, old_text, new_text)


def find_paired_line(section: DiffSection, line_type: DiffLineType, idx: int) -> DiffLine | None:
    """Find the line of ``line_type`` aligned with index ``idx`` of the opposite side."""
    difference = 0
    add_count = 0
    del_count = 0
    match: DiffLine | None = None

    for line in section.lines:
        if line.type == DiffLineType.ADD:
            add_count += 1
        elif line.type == DiffLineType.DEL:
            del_count += 1
        else:
            if match is not None:
                break
            difference = line.right_idx - line.left_idx
            add_count = 0
            del_count = 0

        if line_type == DiffLineType.DEL:
            if line.right_idx == 0 and line.left_idx == idx - difference:
                match = line
        elif line_type == DiffLineType.ADD:
            if line.left_idx == 0 and line.right_idx == idx + difference:
                match = line

    if add_count == del_count:
        return match
    return None


def tokenize(text: str) -> list[str]:
    return TOKEN_PATTERN.findall(text)


def _cleanup(segments: list[Segment]) -> list[Segment]:
    """Merge adjacent edits and fold whitespace-only equal runs that sit between two edits."""
    result: list[Segment] = []
    i = 0
    while i < len(segments):
        equal, old, new = segments[i]
        if (
            equal
            and not old.strip()
            and result
            and not result[-1][0]
            and i + 1 < len(segments)
            and not segments[i + 1][0]
        ):
            _, next_old, next_new = segments[i + 1]
            _, prev_old, prev_new = result[-1]
            result[-1] = (False, prev_old + old + next_old, prev_new + new + next_new)
            i += 2
            continue
        if not equal and result and not result[-1][0]:
            _, prev_old, prev_new = result[-1]
            result[-1] = (False, prev_old + old, prev_new + new)
        else:
            result.append((equal, old, new))
        i += 1
    return result


def word_diff(old: str, new: str) -> list[Segment]:
    a = tokenize(old)
    b = tokenize(new)
    matcher = SequenceMatcher(None, a, b, autojunk=False)
    segments = [
        (tag == "equal", "".join(a[i1:i2]), "".join(b[j1:j2]))
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
    ]
    return _cleanup(segments)


def diff_to_html(segments: list[Segment], line_type: DiffLineType) -> str:
    parts = []
    # Restore the sign stripped before diffing
    if line_type == DiffLineType.ADD:
        parts.append("+")
    elif line_type == DiffLineType.DEL:
        parts.append("-")

    for equal, old, new in segments:
        if equal:
            parts.append(html.escape(new))
        elif line_type == DiffLineType.ADD and new:
            parts.append(ADDED_CODE_PREFIX + html.escape(new) + CODE_TAG_SUFFIX)
        elif line_type == DiffLineType.DEL and old:
            parts.append(REMOVED_CODE_PREFIX + html.escape(old) + CODE_TAG_SUFFIX)
    return "".join(parts)


def computed_inline_diff(section: DiffSection, line: DiffLine, disable_highlight: bool = False) -> str:
    if disable_highlight:
        return html.escape(line.content[1:])

    if line.type == DiffLineType.ADD:
        compare = find_paired_line(section, DiffLineType.DEL, line.right_idx)
        if compare is None:
            return html.escape(line.content)
        old, new = compare.content, line.content
    elif line.type == DiffLineType.DEL:
        compare = find_paired_line(section, DiffLineType.ADD, line.left_idx)
        if compare is None:
            return html.escape(line.content)
        old, new = line.content, compare.content
    else:
        return html.escape(line.content)

    return diff_to_html(word_diff(old[1:], new[1:]), line.type)
