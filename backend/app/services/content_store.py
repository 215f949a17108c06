"""
Content-addressed blob store for LFS objects.

Objects live at ``<base>/<oid[0:2]>/<oid[2:4]>/<oid[4:]>``. Writers stream
into an exclusive ``.tmp`` file while hashing, verify size then hash, and
rename into place, so a visible object always matches its oid and size.
"""

import hashlib
import logging
import os
import re
import secrets
from collections.abc import AsyncIterable
from pathlib import Path
from typing import BinaryIO, Protocol

from starlette.concurrency import run_in_threadpool

from app.errors import HashMismatchError, InvalidOidError, SizeMismatchError

logger = logging.getLogger(__name__)

OID_PATTERN = re.compile(r"^[0-9a-f]{64}$")
CHUNK_SIZE = 64 * 1024
DIR_MODE = 0o750
FILE_MODE = 0o640


class Pointer(Protocol):
    oid: str
    size: int


def validate_oid(oid: str) -> str:
    if not OID_PATTERN.match(oid or ""):
        raise InvalidOidError(f"invalid oid: {oid!r}")
    return oid


class _PendingWrite:
    """An open tmp file plus the running hash of what was written to it."""

    def __init__(self, path: Path):
        self.path = path
        # Unique per writer so concurrent puts of one oid do not collide
        self.tmp_path = path.with_name(f"{path.name}.{secrets.token_hex(4)}.tmp")
        self.hasher = hashlib.sha256()
        self.written = 0
        self._file: BinaryIO | None = None

    def open(self) -> None:
        self.path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        fd = os.open(self.tmp_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, FILE_MODE)
        self._file = os.fdopen(fd, "wb")

    def write(self, chunk: bytes) -> None:
        assert self._file is not None
        self._file.write(chunk)
        self.hasher.update(chunk)
        self.written += len(chunk)

    def commit(self, pointer: Pointer) -> None:
        assert self._file is not None
        self._file.close()
        self._file = None
        if self.written != pointer.size:
            raise SizeMismatchError(f"content size does not match: expected {pointer.size}, got {self.written}")
        digest = self.hasher.hexdigest()
        if digest != pointer.oid:
            raise HashMismatchError(f"content hash does not match oid {pointer.oid}")
        os.replace(self.tmp_path, self.path)

    def abort(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        try:
            os.remove(self.tmp_path)
        except FileNotFoundError:
            pass


class ContentStore:
    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)

    def path_for(self, oid: str) -> Path:
        validate_oid(oid)
        return self.base_path / oid[0:2] / oid[2:4] / oid[4:]

    def put(self, pointer: Pointer, reader: BinaryIO) -> None:
        """Write the content read from ``reader`` for ``pointer``."""
        pending = _PendingWrite(self.path_for(pointer.oid))
        pending.open()
        try:
            while True:
                chunk = reader.read(CHUNK_SIZE)
                if not chunk:
                    break
                pending.write(chunk)
            pending.commit(pointer)
        except BaseException:
            pending.abort()
            raise

    async def put_stream(self, pointer: Pointer, chunks: AsyncIterable[bytes]) -> None:
        """Async variant of put(); file IO runs on the thread pool."""
        pending = _PendingWrite(self.path_for(pointer.oid))
        await run_in_threadpool(pending.open)
        try:
            async for chunk in chunks:
                if chunk:
                    await run_in_threadpool(pending.write, chunk)
            await run_in_threadpool(pending.commit, pointer)
        except BaseException:
            await run_in_threadpool(pending.abort)
            raise

    def get(self, pointer: Pointer, from_byte: int = 0) -> BinaryIO:
        """Open the object for reading, positioned at ``from_byte``. Caller closes it."""
        f = open(self.path_for(pointer.oid), "rb")
        if from_byte > 0:
            f.seek(from_byte, os.SEEK_SET)
        return f

    def exists(self, pointer: Pointer) -> bool:
        return self.path_for(pointer.oid).is_file()

    def remove(self, pointer: Pointer) -> None:
        try:
            os.remove(self.path_for(pointer.oid))
        except FileNotFoundError:
            pass
