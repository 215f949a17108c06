from app.errors import ProcessError
from app.services.diff.model import Diff
from app.services.diff.parser import parse_patch_stream
from app.services.process_manager import ProcessManager


async def get_diff_range(
    process_manager: ProcessManager,
    repo_path: str,
    before_commit: str,
    after_commit: str,
    *,
    max_lines: int,
    max_line_chars: int,
    max_files: int,
    timeout: float | None = None,
    known_lfs_oids: set[str] | None = None,
) -> Diff:
    """Diff two commits with rename detection. An empty ``before_commit`` diffs against the parent."""
    if before_commit:
        args = ["git", "diff", "-M", before_commit, after_commit]
    else:
        args = ["git", "show", "-M", "--format=", after_commit]

    proc = await process_manager.stream(
        args,
        cwd=repo_path,
        description=f"get_diff_range [repo_path: {repo_path}]",
        timeout=timeout,
    )
    await proc.feed(None)
    diff = await parse_patch_stream(
        proc.iter_stdout(), max_lines, max_line_chars, max_files, known_lfs_oids=known_lfs_oids
    )
    if not proc.succeeded:
        raise ProcessError(
            f"git diff {before_commit}..{after_commit}",
            stderr=proc.stderr.decode("utf-8", errors="replace"),
            returncode=proc.returncode,
        )
    return diff
