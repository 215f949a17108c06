"""
Streaming parser for ``git diff`` output.

The parser is fed one raw line at a time so it can sit behind a blocking file
object or an async stream of process output alike. It is bounded by three
caps: lines per file and characters per line only flag the file as
incomplete, while the file cap stops parsing altogether (the caller keeps
draining its reader so the producing process can exit).
"""

import logging
import re
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import BinaryIO

from app.errors import ParseError
from app.models.lfs import LFS_META_FILE_IDENTIFIER, LFS_META_FILE_OID_PREFIX
from app.services.diff.charset import decode_lines
from app.services.diff.model import (
    Diff,
    DiffFile,
    DiffFileType,
    DiffLine,
    DiffLineType,
    DiffSection,
)

logger = logging.getLogger(__name__)

CMD_DIFF_HEAD = b"diff --git "
HUNK_HEADER = re.compile(rb"^@@ -(\d+)(?:,\d+)? \+(\d+)(?:,\d+)? @@ ?(.*)$")
SUBMODULE_MODE = b" 160000"

_LFS_IDENTIFIER = LFS_META_FILE_IDENTIFIER.encode()
_LFS_OID_PREFIX = LFS_META_FILE_OID_PREFIX.encode()
_HEX = set(b"0123456789abcdef")

# Extended header lines that may follow "diff --git"
_HEADER_PREFIXES = (
    b"old mode",
    b"new mode",
    b"new file",
    b"deleted",
    b"similarity index",
    b"dissimilarity index",
    b"rename from",
    b"rename to",
    b"copy from",
    b"copy to",
    b"index",
)

_ESCAPES = {
    ord("a"): 0x07,
    ord("b"): 0x08,
    ord("t"): 0x09,
    ord("n"): 0x0A,
    ord("v"): 0x0B,
    ord("f"): 0x0C,
    ord("r"): 0x0D,
    ord('"'): 0x22,
    ord("\\"): 0x5C,
}


def unquote_name(quoted: bytes) -> tuple[bytes, bytes]:
    """Unquote a C-style quoted path starting at quoted[0] == '"'.

    Returns the unescaped bytes and whatever follows the closing quote.
    """
    out = bytearray()
    i = 1
    while i < len(quoted):
        c = quoted[i]
        if c == ord('"'):
            return bytes(out), quoted[i + 1:]
        if c == ord("\\") and i + 1 < len(quoted):
            nxt = quoted[i + 1]
            if 0x30 <= nxt <= 0x37 and i + 3 < len(quoted):
                out.append(int(quoted[i + 1:i + 4], 8) & 0xFF)
                i += 4
                continue
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        out.append(c)
        i += 1
    # Unterminated quote
    return bytes(out), b""


def split_header_paths(rest: bytes) -> tuple[str, str]:
    """Split ``a/<old> b/<new>`` (either side possibly quoted) into the two paths."""
    if rest.startswith(b'"'):
        a, remainder = unquote_name(rest)
        remainder = remainder.lstrip(b" ")
    else:
        middle = rest.find(b' "b/')
        if middle == -1:
            middle = rest.find(b" b/")
        if middle == -1:
            raise ValueError("missing b/ path")
        a, remainder = rest[:middle], rest[middle + 1:]

    if remainder.startswith(b'"'):
        b, _ = unquote_name(remainder)
    else:
        b = remainder

    if a.startswith(b"a/"):
        a = a[2:]
    if b.startswith(b"b/"):
        b = b[2:]
    return a.decode("utf-8", errors="replace"), b.decode("utf-8", errors="replace")


class DiffParser:
    """Incremental patch parser. Feed raw lines, then call finish()."""

    HEADER, PREAMBLE, BODY = range(3)

    def __init__(
        self,
        max_lines: int,
        max_line_chars: int,
        max_files: int,
        known_lfs_oids: set[str] | None = None,
    ):
        self.max_lines = max_lines
        self.max_line_chars = max_line_chars
        self.max_files = max_files
        self.known_lfs_oids = known_lfs_oids
        self.diff = Diff()
        self.halted = False

        self._state = self.BODY
        self._file: DiffFile | None = None
        self._section: DiffSection | None = None
        self._left = 0
        self._right = 0
        self._file_lines = 0
        self._lfs_pointer = False
        self._orphan_warned = False
        self._pending_new_name = ""
        # Raw bytes per file, decoded once the whole file is known
        self._raw: list[tuple[DiffFile, list[tuple[DiffLine, bytes]]]] = []

    # -------------------------------------------------------------------------
    # Feeding
    # -------------------------------------------------------------------------

    def feed_line(self, line: bytes) -> None:
        if self.halted:
            return
        if line.endswith(b"\n"):
            line = line[:-1]

        if line.startswith(CMD_DIFF_HEAD):
            self._start_file(line)
            return

        if self._state == self.HEADER:
            if line.startswith(_HEADER_PREFIXES):
                self._header_line(line)
                return
            self._state = self.PREAMBLE

        if not line:
            return
        if self._state == self.PREAMBLE and (line.startswith(b"--- ") or line.startswith(b"+++ ")):
            return

        if self._file is None:
            if not self._orphan_warned:
                logger.warning("Patch content before the first file header, ignoring")
                self._orphan_warned = True
            return

        self._file_lines += 1
        if self._file_lines >= self.max_lines or len(line) >= self.max_line_chars:
            self._file.is_incomplete = True

        self._check_lfs(line)

        first = line[:1]
        if first == b"@":
            self._start_section(line)
        elif first == b" ":
            self._append(DiffLine(DiffLineType.PLAIN, "", self._left, self._right), line)
            self._left += 1
            self._right += 1
        elif first == b"+":
            self._file.addition += 1
            self.diff.total_addition += 1
            self._append(DiffLine(DiffLineType.ADD, "", 0, self._right), line)
            self._right += 1
        elif first == b"-":
            self._file.deletion += 1
            self.diff.total_deletion += 1
            self._append(DiffLine(DiffLineType.DEL, "", self._left, 0), line)
            self._left += 1
        elif line.startswith(b"Binary"):
            self._file.is_bin = True

    def _start_file(self, line: bytes) -> None:
        try:
            a, b = split_header_paths(line[len(CMD_DIFF_HEAD):])
        except ValueError:
            logger.warning(f"Malformed diff header: {line[:200]!r}")
            a = b = line[len(CMD_DIFF_HEAD):].decode("utf-8", errors="replace")

        self._file = DiffFile(name=a, index=len(self.diff.files) + 1, type=DiffFileType.CHANGE)
        self._pending_new_name = b
        self.diff.files.append(self._file)
        self._raw.append((self._file, []))
        if len(self.diff.files) >= self.max_files:
            # The file that reaches the cap is listed without its content
            self.diff.is_incomplete = True
            self.halted = True
            return
        self._section = None
        self._left = self._right = 0
        self._file_lines = 0
        self._lfs_pointer = False
        self._state = self.HEADER

    def _header_line(self, line: bytes) -> None:
        f = self._file
        assert f is not None
        if line.startswith(b"new file"):
            f.type = DiffFileType.ADD
            f.is_created = True
        elif line.startswith(b"deleted"):
            f.type = DiffFileType.DEL
            f.is_deleted = True
        elif (line.startswith(b"similarity index 100%") or line.startswith(b"rename to")) and not f.is_renamed:
            f.type = DiffFileType.RENAME
            f.is_renamed = True
            f.old_name = f.name
            f.name = self._pending_new_name
        if line.endswith(SUBMODULE_MODE):
            f.is_submodule = True

    def _start_section(self, line: bytes) -> None:
        match = HUNK_HEADER.match(line)
        name = ""
        if match:
            self._left = int(match.group(1))
            self._right = int(match.group(2))
            name = match.group(3).decode("utf-8", errors="replace").strip()
        else:
            logger.warning(f"Malformed hunk header: {line[:200]!r}")
            self._left = self._right = 0
        self._section = DiffSection(name=name)
        self._file.sections.append(self._section)
        self._append(DiffLine(DiffLineType.SECTION, ""), line)
        self._state = self.BODY

    def _append(self, diff_line: DiffLine, raw: bytes) -> None:
        if self._file.is_lfs_file:
            return
        if self._section is None:
            # Content without a hunk header still lands somewhere visible
            self._section = DiffSection()
            self._file.sections.append(self._section)
        self._section.lines.append(diff_line)
        self._raw[-1][1].append((diff_line, raw))

    def _check_lfs(self, line: bytes) -> None:
        trimmed = line.strip(b"+- ")
        if trimmed == _LFS_IDENTIFIER:
            self._lfs_pointer = True
            return
        if not (self._lfs_pointer and trimmed.startswith(_LFS_OID_PREFIX)):
            return
        oid = trimmed[len(_LFS_OID_PREFIX):]
        if len(oid) != 64 or not set(oid) <= _HEX:
            return
        oid_str = oid.decode("ascii")
        self._file.lfs_oids.append(oid_str)
        if self.known_lfs_oids is not None and oid_str in self.known_lfs_oids:
            self._file.mark_lfs()
            self._section = None

    # -------------------------------------------------------------------------
    # Finishing
    # -------------------------------------------------------------------------

    def finish(self) -> Diff:
        for diff_file, entries in self._raw:
            if diff_file.is_lfs_file or not entries:
                continue
            decoded = decode_lines([raw for _, raw in entries])
            for (diff_line, _), content in zip(entries, decoded):
                diff_line.content = content
        self._raw = []
        return self.diff


def apply_lfs_objects(diff: Diff, known_oids: set[str]) -> None:
    """Mark files whose pointer oids have stored LFS objects, dropping their hunks."""
    for diff_file in diff.files:
        if any(oid in known_oids for oid in diff_file.lfs_oids):
            diff_file.mark_lfs()


def collect_lfs_oids(diff: Diff) -> set[str]:
    return {oid for f in diff.files for oid in f.lfs_oids}


def parse_patch(
    reader: BinaryIO | Iterable[bytes],
    max_lines: int,
    max_line_chars: int,
    max_files: int,
    known_lfs_oids: set[str] | None = None,
) -> Diff:
    """Parse a patch from a binary file object or any iterable of byte lines.

    The reader is always consumed to the end, even after the file cap is hit.
    """
    parser = DiffParser(max_lines, max_line_chars, max_files, known_lfs_oids)
    try:
        for line in reader:
            parser.feed_line(line)
    except OSError as e:
        raise ParseError(f"reading patch: {e}") from e
    return parser.finish()


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """Re-split a stream of arbitrary chunks into newline-terminated lines."""
    buffer = b""
    async for chunk in chunks:
        buffer += chunk
        while True:
            newline = buffer.find(b"\n")
            if newline == -1:
                break
            yield buffer[:newline + 1]
            buffer = buffer[newline + 1:]
    if buffer:
        yield buffer


async def parse_patch_stream(
    chunks: AsyncIterable[bytes],
    max_lines: int,
    max_line_chars: int,
    max_files: int,
    known_lfs_oids: set[str] | None = None,
) -> Diff:
    parser = DiffParser(max_lines, max_line_chars, max_files, known_lfs_oids)
    try:
        async for line in iter_lines(chunks):
            parser.feed_line(line)
    except OSError as e:
        raise ParseError(f"reading patch: {e}") from e
    return parser.finish()
