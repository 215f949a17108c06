"""
Unit tests for the streaming diff parser.

These tests verify:
- File headers (plain, quoted, renamed, created, deleted, binary, submodule)
- Hunk line numbering and addition/deletion counts
- The three caps: lines per file, characters per line, files per diff
- LFS pointer detection, both up front and after the fact
- Charset handling for non-UTF-8 content
"""
import io

import pytest

from app.services.diff import (
    DiffFileType,
    DiffLineType,
    apply_lfs_objects,
    collect_lfs_oids,
    parse_patch,
    parse_patch_stream,
)
from app.services.diff.parser import split_header_paths, unquote_name

LIMITS = dict(max_lines=1000, max_line_chars=5000, max_files=100)

MODIFY_PATCH = b"""\
diff --git a/README.md b/README.md
index 1111111..2222222 100644
--- a/README.md
+++ b/README.md
@@ -1,3 +1,3 @@ heading
 line one
-line two
+line 2
 line three
"""

NEW_FILE_PATCH = b"""\
diff --git a/new.txt b/new.txt
new file mode 100644
index 0000000..3333333
--- /dev/null
+++ b/new.txt
@@ -0,0 +1,2 @@
+hello
+world
"""

DELETED_FILE_PATCH = b"""\
diff --git a/gone.txt b/gone.txt
deleted file mode 100644
index 3333333..0000000
--- a/gone.txt
+++ /dev/null
@@ -1 +0,0 @@
-bye
"""

RENAME_PATCH = b"""\
diff --git a/old.txt b/new.txt
similarity index 100%
rename from old.txt
rename to new.txt
"""

BINARY_PATCH = b"""\
diff --git a/img.png b/img.png
new file mode 100644
index 0000000..4444444
Binary files /dev/null and b/img.png differ
"""

SUBMODULE_PATCH = b"""\
diff --git a/vendor/lib b/vendor/lib
new file mode 160000
index 0000000..5555555
--- /dev/null
+++ b/vendor/lib
@@ -0,0 +1 @@
+Subproject commit 5555555555555555555555555555555555555555
"""

LFS_OID = "4d7a214614ab2935c943f9e0ff69d22eadbb8f32b1258daaa5e2ca24d17e2393"

LFS_PATCH = f"""\
diff --git a/big.bin b/big.bin
new file mode 100644
index 0000000..6666666
--- /dev/null
+++ b/big.bin
@@ -0,0 +1,3 @@
+version https://git-lfs.github.com/spec/v1
+oid sha256:{LFS_OID}
+size 12345
""".encode()


def parse(patch: bytes, **overrides):
    return parse_patch(io.BytesIO(patch), **{**LIMITS, **overrides})


# -----------------------------------------------------------------------------
# Header paths
# -----------------------------------------------------------------------------

class TestHeaderPaths:
    """Tests for split_header_paths() and unquote_name()."""

    def test_plain_paths(self):
        assert split_header_paths(b"a/src/main.py b/src/main.py") == ("src/main.py", "src/main.py")

    def test_plain_paths_with_spaces(self):
        assert split_header_paths(b"a/my file.txt b/my file.txt") == ("my file.txt", "my file.txt")

    def test_quoted_paths_with_escapes(self):
        old, new = split_header_paths(rb'"a/tab\there.txt" "b/tab\there.txt"')
        assert old == "tab\there.txt"
        assert new == "tab\there.txt"

    def test_octal_escapes_decode_as_utf8(self):
        old, _ = split_header_paths(rb'"a/caf\303\251.txt" "b/caf\303\251.txt"')
        assert old == "café.txt"

    def test_unquote_returns_remainder(self):
        name, rest = unquote_name(rb'"a/x\"y" tail')
        assert name == b'a/x"y'
        assert rest == b" tail"

    def test_missing_b_path_raises(self):
        with pytest.raises(ValueError):
            split_header_paths(b"a/only-one-path")


# -----------------------------------------------------------------------------
# File kinds
# -----------------------------------------------------------------------------

class TestFileKinds:
    """Tests for how extended header lines classify a file."""

    def test_modified_file(self):
        diff = parse(MODIFY_PATCH)
        assert diff.num_files == 1
        f = diff.files[0]
        assert f.name == "README.md"
        assert f.type == DiffFileType.CHANGE
        assert f.index == 1
        assert (f.addition, f.deletion) == (1, 1)
        assert (diff.total_addition, diff.total_deletion) == (1, 1)

    def test_new_file(self):
        f = parse(NEW_FILE_PATCH).files[0]
        assert f.type == DiffFileType.ADD
        assert f.is_created
        assert f.addition == 2

    def test_deleted_file(self):
        f = parse(DELETED_FILE_PATCH).files[0]
        assert f.type == DiffFileType.DEL
        assert f.is_deleted
        assert f.deletion == 1

    def test_pure_rename(self):
        f = parse(RENAME_PATCH).files[0]
        assert f.type == DiffFileType.RENAME
        assert f.is_renamed
        assert f.name == "new.txt"
        assert f.old_name == "old.txt"
        assert f.sections == []

    def test_binary_file(self):
        f = parse(BINARY_PATCH).files[0]
        assert f.is_bin
        assert f.is_binary

    def test_submodule(self):
        f = parse(SUBMODULE_PATCH).files[0]
        assert f.is_submodule

    def test_files_are_numbered_in_order(self):
        diff = parse(MODIFY_PATCH + NEW_FILE_PATCH + DELETED_FILE_PATCH)
        assert [f.index for f in diff.files] == [1, 2, 3]
        assert [f.name for f in diff.files] == ["README.md", "new.txt", "gone.txt"]
        assert diff.total_addition == 3
        assert diff.total_deletion == 2

    def test_content_before_first_header_is_ignored(self):
        diff = parse(b"stray line\n+also stray\n" + MODIFY_PATCH)
        assert diff.num_files == 1
        assert diff.total_addition == 1


# -----------------------------------------------------------------------------
# Hunks
# -----------------------------------------------------------------------------

class TestHunks:
    """Tests for section and line bookkeeping."""

    def test_section_name_and_lines(self):
        section = parse(MODIFY_PATCH).files[0].sections[0]
        assert section.name == "heading"
        types = [line.type for line in section.lines]
        assert types == [
            DiffLineType.SECTION,
            DiffLineType.PLAIN,
            DiffLineType.DEL,
            DiffLineType.ADD,
            DiffLineType.PLAIN,
        ]

    def test_line_numbers(self):
        lines = parse(MODIFY_PATCH).files[0].sections[0].lines
        numbers = [(line.left_idx, line.right_idx) for line in lines[1:]]
        assert numbers == [(1, 1), (2, 0), (0, 2), (3, 3)]

    def test_line_content_keeps_marker(self):
        lines = parse(MODIFY_PATCH).files[0].sections[0].lines
        assert lines[0].content == "@@ -1,3 +1,3 @@ heading"
        assert lines[2].content == "-line two"
        assert lines[2].get_line_type_marker() == "-"
        assert lines[3].get_line_type_marker() == "+"

    def test_new_file_numbers_from_one(self):
        lines = parse(NEW_FILE_PATCH).files[0].sections[0].lines
        assert [line.right_idx for line in lines[1:]] == [1, 2]
        assert all(line.left_idx == 0 for line in lines[1:])

    def test_multiple_hunks(self):
        patch = b"""\
diff --git a/a.txt b/a.txt
index 1..2 100644
--- a/a.txt
+++ b/a.txt
@@ -1,2 +1,2 @@
-one
+ONE
 two
@@ -10,2 +10,3 @@ def tail():
 ten
+ten and a half
 eleven
"""
        f = parse(patch).files[0]
        assert len(f.sections) == 2
        second = f.sections[1]
        assert second.name == "def tail():"
        assert [(l.left_idx, l.right_idx) for l in second.lines[1:]] == [(10, 10), (0, 11), (11, 12)]


# -----------------------------------------------------------------------------
# Caps
# -----------------------------------------------------------------------------

class TestCaps:
    """Tests for the three parser caps."""

    def test_file_cap_halts_and_marks_diff(self):
        diff = parse(MODIFY_PATCH + NEW_FILE_PATCH + DELETED_FILE_PATCH, max_files=2)
        assert diff.num_files == 2
        assert diff.is_incomplete
        # Counts stop with the last parsed file
        assert diff.total_deletion == 1

    def test_reaching_file_cap_marks_diff(self):
        """The file that reaches the cap is listed by name but not parsed."""
        diff = parse(MODIFY_PATCH + NEW_FILE_PATCH, max_files=2)

        assert diff.is_incomplete
        assert [f.name for f in diff.files] == ["README.md", "new.txt"]
        assert diff.files[1].sections == []
        assert diff.total_addition == 1

    def test_fewer_files_than_cap_is_complete(self):
        assert not parse(MODIFY_PATCH + NEW_FILE_PATCH, max_files=3).is_incomplete

    def test_line_cap_marks_file_only(self):
        diff = parse(MODIFY_PATCH, max_lines=3)
        f = diff.files[0]
        assert f.is_incomplete
        assert not diff.is_incomplete

    def test_line_length_cap_marks_file(self):
        patch = MODIFY_PATCH.replace(b"+line 2", b"+" + b"x" * 200)
        f = parse(patch, max_line_chars=100).files[0]
        assert f.is_incomplete

    def test_under_caps_is_complete(self):
        diff = parse(MODIFY_PATCH)
        assert not diff.is_incomplete
        assert not diff.files[0].is_incomplete


# -----------------------------------------------------------------------------
# LFS pointers
# -----------------------------------------------------------------------------

class TestLFSPointers:
    """Tests for recognising LFS pointer files."""

    def test_known_oid_marks_file_and_drops_hunks(self):
        f = parse(LFS_PATCH, known_lfs_oids={LFS_OID}).files[0]
        assert f.is_lfs_file
        assert f.is_bin
        assert f.sections == []

    def test_unknown_oid_keeps_hunks(self):
        f = parse(LFS_PATCH, known_lfs_oids=set()).files[0]
        assert not f.is_lfs_file
        assert f.lfs_oids == [LFS_OID]
        assert len(f.sections[0].lines) == 4

    def test_apply_lfs_objects_after_parse(self):
        diff = parse(LFS_PATCH)
        assert collect_lfs_oids(diff) == {LFS_OID}
        apply_lfs_objects(diff, {LFS_OID})
        assert diff.files[0].is_lfs_file
        assert diff.files[0].sections == []

    def test_oid_without_identifier_is_ignored(self):
        patch = LFS_PATCH.replace(b"+version https://git-lfs.github.com/spec/v1\n", b"")
        assert collect_lfs_oids(parse(patch)) == set()


# -----------------------------------------------------------------------------
# Streams and charsets
# -----------------------------------------------------------------------------

async def _chunked(data: bytes, size: int):
    for i in range(0, len(data), size):
        yield data[i:i + size]


class TestStreams:
    """Tests for parse_patch_stream() and charset decoding."""

    @pytest.mark.parametrize("chunk_size", [1, 7, 4096])
    async def test_stream_matches_file_parse(self, chunk_size):
        expected = parse(MODIFY_PATCH + NEW_FILE_PATCH).to_dict()
        diff = await parse_patch_stream(_chunked(MODIFY_PATCH + NEW_FILE_PATCH, chunk_size), **LIMITS)
        assert diff.to_dict() == expected

    def test_accepts_iterable_of_lines(self):
        diff = parse_patch(MODIFY_PATCH.splitlines(keepends=True), **LIMITS)
        assert diff.num_files == 1

    def test_utf8_content(self):
        patch = MODIFY_PATCH.replace(b"+line 2", "+línea dos".encode("utf-8"))
        lines = parse(patch).files[0].sections[0].lines
        assert lines[3].content == "+línea dos"

    def test_non_utf8_content_is_decoded(self):
        body = "".join(f"+crème brûlée numéro {i}, très réussie\n" for i in range(20))
        patch = (
            b"diff --git a/menu.txt b/menu.txt\n"
            b"new file mode 100644\n"
            b"--- /dev/null\n"
            b"+++ b/menu.txt\n"
            b"@@ -0,0 +1,20 @@\n" + body.encode("latin-1")
        )
        lines = parse(patch).files[0].sections[0].lines
        assert all("�" not in line.content for line in lines)
        assert lines[1].content.startswith("+cr")

    def test_to_dict_is_stable(self):
        data = parse(MODIFY_PATCH).to_dict()
        assert data["total_addition"] == 1
        assert data["files"][0]["name"] == "README.md"
        assert data["files"][0]["sections"][0][2] == [int(DiffLineType.DEL), 2, 0, "-line two"]
