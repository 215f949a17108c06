"""
Helpers for tests that drive a real git binary.
"""
import os
import shutil
import subprocess
from pathlib import Path

import pytest

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test Author",
    "GIT_AUTHOR_EMAIL": "author@example.com",
    "GIT_COMMITTER_NAME": "Test Author",
    "GIT_COMMITTER_EMAIL": "author@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
    "HOME": "/nonexistent",
    # Pushes from tests bypass the update hook; the tests record update tasks themselves
    "UUID": "",
}


def git(cwd: Path, *args: str, env: dict[str, str] | None = None) -> str:
    """Run git synchronously and return stdout; fail the test on error."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env={**os.environ, **GIT_IDENTITY, **(env or {})},
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0, f"git {' '.join(args)} failed: {result.stderr}"
    return result.stdout.strip()


class WorkTree:
    """A non-bare clone used to author commits and push them to a bare repository."""

    def __init__(self, path: Path, remote: Path):
        self.path = path
        self.remote = remote
        path.mkdir(parents=True)
        git(path, "init", "-q", "-b", "master")
        git(path, "remote", "add", "origin", str(remote))

    def commit(self, files: dict[str, str], message: str = "update") -> str:
        for name, content in files.items():
            target = self.path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        git(self.path, "add", "-A")
        git(self.path, "commit", "-q", "-m", message)
        return self.rev_parse("HEAD")

    def rev_parse(self, rev: str) -> str:
        return git(self.path, "rev-parse", rev)

    def checkout(self, branch: str, create: bool = False) -> None:
        if create:
            git(self.path, "checkout", "-q", "-b", branch)
        else:
            git(self.path, "checkout", "-q", branch)

    def tag(self, name: str) -> str:
        git(self.path, "tag", name)
        return self.rev_parse(name)

    def push(self, *refspecs: str, env: dict[str, str] | None = None) -> None:
        git(self.path, "push", "-q", "origin", *refspecs, env=env)

    def merge(self, branch: str, message: str = "merge", strategy: str | None = None) -> str:
        args = ["merge", "-q", "--no-ff", "-m", message]
        if strategy:
            args += ["-s", strategy]
        git(self.path, *args, branch)
        return self.rev_parse("HEAD")
