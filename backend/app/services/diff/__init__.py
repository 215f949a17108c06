from app.services.diff.model import Diff, DiffFile, DiffFileType, DiffLine, DiffLineType, DiffSection
from app.services.diff.parser import (
    DiffParser,
    apply_lfs_objects,
    collect_lfs_oids,
    parse_patch,
    parse_patch_stream,
)
from app.services.diff.inline import computed_inline_diff, find_paired_line, word_diff

__all__ = [
    "Diff",
    "DiffFile",
    "DiffFileType",
    "DiffLine",
    "DiffLineType",
    "DiffSection",
    "DiffParser",
    "apply_lfs_objects",
    "collect_lfs_oids",
    "parse_patch",
    "parse_patch_stream",
    "computed_inline_diff",
    "find_paired_line",
    "word_diff",
]
