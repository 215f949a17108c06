from dataclasses import dataclass, field
from enum import IntEnum


class DiffLineType(IntEnum):
    PLAIN = 1
    ADD = 2
    DEL = 3
    SECTION = 4


class DiffFileType(IntEnum):
    ADD = 1
    CHANGE = 2
    DEL = 3
    RENAME = 4


@dataclass
class DiffLine:
    """One line of a hunk. Add lines have left_idx 0, Del lines have right_idx 0."""
    type: DiffLineType
    content: str
    left_idx: int = 0
    right_idx: int = 0

    def get_line_type_marker(self) -> str:
        if self.content and self.content[0] in "+- ":
            return self.content[0]
        return ""


@dataclass
class DiffSection:
    name: str = ""
    lines: list[DiffLine] = field(default_factory=list)

    def get_line(self, line_type: DiffLineType, idx: int) -> DiffLine | None:
        from app.services.diff.inline import find_paired_line

        return find_paired_line(self, line_type, idx)

    def get_computed_inline_diff_for(self, line: DiffLine, disable_highlight: bool = False) -> str:
        from app.services.diff.inline import computed_inline_diff

        return computed_inline_diff(self, line, disable_highlight=disable_highlight)


@dataclass
class DiffFile:
    name: str
    old_name: str = ""
    index: int = 0
    addition: int = 0
    deletion: int = 0
    type: DiffFileType = DiffFileType.CHANGE
    is_created: bool = False
    is_deleted: bool = False
    is_renamed: bool = False
    is_bin: bool = False
    is_lfs_file: bool = False
    is_submodule: bool = False
    is_incomplete: bool = False
    sections: list[DiffSection] = field(default_factory=list)
    # Pointer oids seen in this file's lines, resolved by apply_lfs_objects()
    lfs_oids: list[str] = field(default_factory=list)

    @property
    def is_binary(self) -> bool:
        return self.is_bin

    def mark_lfs(self) -> None:
        self.is_bin = True
        self.is_lfs_file = True
        self.sections = []


@dataclass
class Diff:
    total_addition: int = 0
    total_deletion: int = 0
    files: list[DiffFile] = field(default_factory=list)
    is_incomplete: bool = False

    @property
    def num_files(self) -> int:
        return len(self.files)

    def to_dict(self) -> dict:
        """Canonical form: stable ordering, no parser bookkeeping."""
        return {
            "total_addition": self.total_addition,
            "total_deletion": self.total_deletion,
            "is_incomplete": self.is_incomplete,
            "files": [
                {
                    "name": f.name,
                    "old_name": f.old_name,
                    "index": f.index,
                    "type": int(f.type),
                    "addition": f.addition,
                    "deletion": f.deletion,
                    "is_bin": f.is_bin,
                    "is_lfs_file": f.is_lfs_file,
                    "is_submodule": f.is_submodule,
                    "is_incomplete": f.is_incomplete,
                    "sections": [
                        [[int(l.type), l.left_idx, l.right_idx, l.content] for l in s.lines]
                        for s in f.sections
                    ],
                }
                for f in self.files
            ],
        }
