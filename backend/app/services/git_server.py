"""
Git server service - manages bare repos and the HTTP smart protocol.

Bare repositories live at ``<repo_root>/<owner_lower>/<name_lower>.git`` with
the wiki next to them as ``.wiki.git``. Pack negotiation is delegated to the
git binary (``--stateless-rpc``) so the server never implements the object
format itself.
"""

import logging
import os
import shutil
import stat
import sys
import zlib
from collections.abc import AsyncIterable, AsyncIterator
from pathlib import Path

from dulwich.repo import Repo as DulwichRepo

from app.errors import InvalidInputError, RepoAlreadyExists, RepoNotFound
from app.services.process_manager import ProcessManager, StreamProcess

logger = logging.getLogger(__name__)

SERVICES = ("git-upload-pack", "git-receive-pack")

UPDATE_HOOK = """#!/bin/sh
[ -z "$UUID" ] && exit 0
"{python}" -m gitforge hook update "$1" "$2" "$3"
"""


def pkt_line(data: bytes) -> bytes:
    """Encode data as a git pkt-line."""
    length = len(data) + 4  # +4 for the length prefix itself
    return f"{length:04x}".encode() + data


class GitRepoManager:
    """Manages bare git repositories on local disk."""

    def __init__(self, repo_root: str | Path, python_executable: str = sys.executable):
        self.repo_root = Path(repo_root)
        self.python_executable = python_executable
        self.repo_root.mkdir(parents=True, exist_ok=True)

    def owner_path(self, owner_name: str) -> Path:
        return self.repo_root / owner_name.lower()

    def repo_path(self, owner_name: str, repo_name: str) -> Path:
        return self.owner_path(owner_name) / f"{repo_name.lower()}.git"

    def wiki_path(self, owner_name: str, repo_name: str) -> Path:
        return self.owner_path(owner_name) / f"{repo_name.lower()}.wiki.git"

    def repo_exists(self, owner_name: str, repo_name: str) -> bool:
        return self.repo_path(owner_name, repo_name).is_dir()

    def has_wiki(self, owner_name: str, repo_name: str) -> bool:
        return self.wiki_path(owner_name, repo_name).is_dir()

    def create_bare_repo(
        self,
        owner_name: str,
        repo_name: str,
        default_branch: str = "master",
        install_hooks: bool = True,
    ) -> Path:
        """Create a new bare git repository and install the update hook."""
        repo_path = self.repo_path(owner_name, repo_name)
        if repo_path.exists():
            raise RepoAlreadyExists(f"repository already exists on disk: {repo_path}")
        self.init_bare(repo_path, default_branch, install_hooks)
        return repo_path

    def init_bare(self, repo_path: Path, default_branch: str = "master", install_hooks: bool = True) -> None:
        # dulwich init_bare needs the directory to exist before initializing
        repo_path.mkdir(parents=True, exist_ok=True)
        repo = DulwichRepo.init_bare(str(repo_path))
        try:
            repo.refs.set_symbolic_ref(b"HEAD", f"refs/heads/{default_branch}".encode())
        finally:
            repo.close()
        if install_hooks:
            self.install_update_hook(repo_path)

    def install_update_hook(self, repo_path: Path) -> None:
        hooks_dir = repo_path / "hooks"
        hooks_dir.mkdir(exist_ok=True)
        hook = hooks_dir / "update"
        hook.write_text(UPDATE_HOOK.format(python=self.python_executable))
        hook.chmod(stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP | stat.S_IROTH | stat.S_IXOTH)

    def rename_repo(self, owner_name: str, old_name: str, new_name: str) -> None:
        """Move the repository (and its wiki) on disk. Raises OSError on failure."""
        old_path = self.repo_path(owner_name, old_name)
        new_path = self.repo_path(owner_name, new_name)
        if old_path == new_path:
            return
        if new_path.exists():
            raise RepoAlreadyExists(f"repository already exists on disk: {new_path}")
        os.rename(old_path, new_path)

        old_wiki = self.wiki_path(owner_name, old_name)
        if old_wiki.exists():
            os.rename(old_wiki, self.wiki_path(owner_name, new_name))

    def delete_repo(self, owner_name: str, repo_name: str) -> bool:
        """Delete a repository and its wiki. Returns False if nothing was on disk."""
        repo_path = self.repo_path(owner_name, repo_name)
        existed = repo_path.exists()
        if existed:
            shutil.rmtree(repo_path)
        wiki = self.wiki_path(owner_name, repo_name)
        if wiki.exists():
            shutil.rmtree(wiki)
        return existed

    def open_repo(self, repo_path: str | Path) -> DulwichRepo:
        if not Path(repo_path).is_dir():
            raise RepoNotFound(f"repository does not exist on disk: {repo_path}")
        return DulwichRepo(str(repo_path))

    def repo_size(self, repo_path: str | Path) -> int:
        """Total size in bytes of every file under the bare directory."""
        total = 0
        for root, _, files in os.walk(repo_path):
            for name in files:
                try:
                    total += os.lstat(os.path.join(root, name)).st_size
                except FileNotFoundError:
                    continue
        return total

    def get_default_branch(self, repo_path: str | Path) -> str | None:
        """Get the branch HEAD points at."""
        repo = self.open_repo(repo_path)
        try:
            head_ref = repo.refs.read_ref(b"HEAD")
        finally:
            repo.close()
        if head_ref and head_ref.startswith(b"ref: refs/heads/"):
            return head_ref[16:].decode("utf-8")
        return None

    def set_default_branch(self, repo_path: str | Path, branch: str) -> None:
        repo = self.open_repo(repo_path)
        try:
            repo.refs.set_symbolic_ref(b"HEAD", f"refs/heads/{branch}".encode())
        finally:
            repo.close()

    def get_branch_commit(self, repo_path: str | Path, branch_name: str) -> str | None:
        """Get the commit SHA for a branch."""
        repo = self.open_repo(repo_path)
        try:
            refs = repo.get_refs()
        finally:
            repo.close()
        sha = refs.get(f"refs/heads/{branch_name}".encode())
        return sha.decode("ascii") if sha else None

    def list_branches(self, repo_path: str | Path) -> list[str]:
        repo = self.open_repo(repo_path)
        try:
            refs = repo.get_refs()
        finally:
            repo.close()
        return sorted(
            name[len(b"refs/heads/"):].decode("utf-8")
            for name in refs
            if name.startswith(b"refs/heads/")
        )


async def gunzip_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """Decompress a gzip request body as it arrives."""
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        async for chunk in chunks:
            out = decompressor.decompress(chunk)
            if out:
                yield out
        tail = decompressor.flush()
    except zlib.error as e:
        raise InvalidInputError(f"invalid gzip request body: {e}") from e
    if tail:
        yield tail


class HTTPGitBackend:
    """Smart-HTTP back end: ref advertisement and the stateless-rpc services."""

    def __init__(self, process_manager: ProcessManager, timeout: int | None = None):
        self.process_manager = process_manager
        self.timeout = timeout

    @staticmethod
    def check_service(service: str) -> str:
        if service not in SERVICES:
            raise InvalidInputError(f"invalid service: {service}")
        return service[len("git-"):]

    async def advertise_refs(self, repo_path: str | Path, service: str, env: dict[str, str] | None = None) -> bytes:
        """Body for ``GET info/refs?service=...``."""
        command = self.check_service(service)
        result = await self.process_manager.run(
            ["git", command, "--stateless-rpc", "--advertise-refs", "."],
            cwd=str(repo_path),
            env=env,
            description=f"{service} advertise refs: {repo_path}",
            timeout=self.timeout,
        )
        return pkt_line(f"# service={service}\n".encode()) + b"0000" + result.stdout

    async def service_rpc(
        self,
        repo_path: str | Path,
        service: str,
        body: AsyncIterable[bytes],
        env: dict[str, str] | None = None,
    ) -> StreamProcess:
        """Start the service, feed it the request body, and hand back the running process."""
        command = self.check_service(service)
        proc = await self.process_manager.stream(
            ["git", command, "--stateless-rpc", "."],
            cwd=str(repo_path),
            env=env,
            description=f"{service}: {repo_path}",
            timeout=self.timeout,
        )
        await proc.feed(body)
        return proc

    async def dumb_info_refs(self, repo_path: str | Path) -> bytes:
        """Plain ``info/refs`` for clients that do not speak the smart protocol."""
        await self.update_server_info(repo_path)
        return (Path(repo_path) / "info" / "refs").read_bytes()

    async def update_server_info(self, repo_path: str | Path) -> None:
        await self.process_manager.run(
            ["git", "update-server-info"],
            cwd=str(repo_path),
            description=f"update-server-info: {repo_path}",
            timeout=self.timeout,
        )
