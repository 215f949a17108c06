"""
Registry of child processes.

Every git invocation goes through the ProcessManager so operators can list
what is running and kill runaway children. Each process runs in its own
session so a timeout kills the whole process group (git spawns helpers).
"""

import asyncio
import logging
import os
import signal
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from app.errors import ProcessError, ProcessTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 360  # seconds
CHUNK_SIZE = 64 * 1024


@dataclass
class ProcessEntry:
    pid: int
    description: str
    command: list[str]
    start: datetime = field(default_factory=datetime.utcnow)
    process: asyncio.subprocess.Process | None = None

    @property
    def os_pid(self) -> int | None:
        return self.process.pid if self.process else None


@dataclass
class ProcessResult:
    stdout: bytes
    stderr: bytes
    returncode: int

    @property
    def out(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def err(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


def _kill_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.kill()


class ProcessManager:
    def __init__(self, default_timeout: int = DEFAULT_TIMEOUT):
        self.default_timeout = default_timeout
        self._counter = 0
        self._processes: dict[int, ProcessEntry] = {}

    def add(self, description: str, command: list[str], process: asyncio.subprocess.Process | None = None) -> int:
        """Register a process and return its token. Callers must remove() it on exit."""
        self._counter += 1
        pid = self._counter
        self._processes[pid] = ProcessEntry(pid=pid, description=description, command=list(command), process=process)
        return pid

    def remove(self, pid: int) -> None:
        self._processes.pop(pid, None)

    @contextmanager
    def track(self, description: str, command: list[str], process: asyncio.subprocess.Process | None = None):
        pid = self.add(description, command, process)
        try:
            yield pid
        finally:
            self.remove(pid)

    def processes(self) -> list[ProcessEntry]:
        return sorted(self._processes.values(), key=lambda p: p.pid)

    def kill(self, pid: int) -> bool:
        entry = self._processes.get(pid)
        if entry is None or entry.process is None:
            return False
        logger.info(f"Killing process {pid} ({entry.description})")
        _kill_group(entry.process)
        return True

    def _timeout(self, timeout: float | None) -> float:
        if timeout is None or timeout <= 0:
            return self.default_timeout
        return timeout

    async def run(
        self,
        args: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        description: str = "",
        timeout: float | None = None,
        input: bytes | None = None,
        check: bool = True,
    ) -> ProcessResult:
        """Run a command to completion, capturing stdout and stderr.

        Raises ProcessTimeoutError when the deadline passes (the process group
        is killed first) and ProcessError on a non-zero exit when ``check``.
        """
        timeout = self._timeout(timeout)
        description = description or " ".join(args)
        full_env = None
        if env is not None:
            full_env = {**os.environ, **env}

        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            env=full_env,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        with self.track(description, args, process):
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(input), timeout)
            except asyncio.TimeoutError:
                _kill_group(process)
                await process.wait()
                raise ProcessTimeoutError(f"{description}: timed out after {timeout}s")
            except asyncio.CancelledError:
                _kill_group(process)
                await process.wait()
                raise

        result = ProcessResult(stdout=stdout, stderr=stderr, returncode=process.returncode)
        if check and result.returncode != 0:
            raise ProcessError(description, stdout=result.out, stderr=result.err, returncode=result.returncode)
        return result

    async def exec_dir_env(
        self, timeout: float | None, dir: str | None, description: str, env: dict[str, str] | None, *args: str
    ) -> tuple[str, str]:
        result = await self.run(list(args), cwd=dir, env=env, description=description, timeout=timeout)
        return result.out, result.err

    async def exec_dir(self, timeout: float | None, dir: str | None, description: str, *args: str) -> tuple[str, str]:
        return await self.exec_dir_env(timeout, dir, description, None, *args)

    async def exec_timeout(self, timeout: float | None, description: str, *args: str) -> tuple[str, str]:
        return await self.exec_dir_env(timeout, None, description, None, *args)

    async def stream(
        self,
        args: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        description: str = "",
        timeout: float | None = None,
    ) -> "StreamProcess":
        proc = StreamProcess(self, args, cwd=cwd, env=env, description=description, timeout=self._timeout(timeout))
        await proc.start()
        return proc

    async def run_attached(
        self,
        args: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        description: str = "",
    ) -> int:
        """Run with the caller's stdin/stdout/stderr (SSH sessions). Returns the exit code."""
        full_env = {**os.environ, **(env or {})}
        process = await asyncio.create_subprocess_exec(*args, cwd=cwd, env=full_env)
        with self.track(description or " ".join(args), args, process):
            try:
                return await process.wait()
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                raise


class StreamProcess:
    """A child whose stdin is fed from one async stream and whose stdout is read as another.

    Output written while input is still being fed is buffered so the child
    never blocks on a full pipe; everything after that is read on demand.
    """

    def __init__(
        self,
        manager: ProcessManager,
        args: list[str],
        *,
        cwd: str | None,
        env: dict[str, str] | None,
        description: str,
        timeout: float,
    ):
        self.manager = manager
        self.args = args
        self.cwd = cwd
        self.env = env
        self.description = description or " ".join(args)
        self.timeout = timeout
        self.process: asyncio.subprocess.Process | None = None
        self._pid: int | None = None
        self._deadline = 0.0
        self._early: list[bytes] = []
        self._eof = False
        self.stderr = b""
        self.returncode: int | None = None

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self.timeout
        full_env = {**os.environ, **self.env} if self.env is not None else None
        self.process = await asyncio.create_subprocess_exec(
            *self.args,
            cwd=self.cwd,
            env=full_env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        self._pid = self.manager.add(self.description, self.args, self.process)

    def _remaining(self) -> float:
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            self.kill()
            raise ProcessTimeoutError(f"{self.description}: timed out after {self.timeout}s")
        return remaining

    async def _collect_early(self) -> None:
        assert self.process and self.process.stdout
        while True:
            chunk = await self.process.stdout.read(CHUNK_SIZE)
            if not chunk:
                self._eof = True
                return
            self._early.append(chunk)

    async def feed(self, chunks: AsyncIterable[bytes] | None) -> None:
        """Write every chunk to stdin, then close it."""
        assert self.process and self.process.stdin
        collector = asyncio.create_task(self._collect_early())
        try:
            if chunks is not None:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    self.process.stdin.write(chunk)
                    await asyncio.wait_for(self.process.stdin.drain(), self._remaining())
            self.process.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            # Child exited before reading everything; its exit status tells the story
            logger.debug(f"{self.description}: stdin closed early")
        except BaseException:
            self.kill()
            await self._release()
            raise
        finally:
            collector.cancel()
            try:
                await collector
            except asyncio.CancelledError:
                pass

    async def iter_stdout(self) -> AsyncIterator[bytes]:
        """Yield output, then wait for exit. Releases the registry entry on every path."""
        assert self.process and self.process.stdout
        try:
            for chunk in self._early:
                yield chunk
            self._early = []
            while not self._eof:
                chunk = await asyncio.wait_for(self.process.stdout.read(CHUNK_SIZE), self._remaining())
                if not chunk:
                    break
                yield chunk
            await self.wait()
        finally:
            if self.returncode is None:
                self.kill()
            await self._release()

    async def wait(self) -> int:
        assert self.process
        if self.process.stderr:
            self.stderr = await asyncio.wait_for(self.process.stderr.read(), self._remaining())
        self.returncode = await asyncio.wait_for(self.process.wait(), self._remaining())
        if self.returncode != 0:
            logger.warning(
                f"{self.description} exited with {self.returncode}: "
                f"{self.stderr.decode('utf-8', errors='replace').strip()}"
            )
        return self.returncode

    def kill(self) -> None:
        if self.process and self.process.returncode is None:
            _kill_group(self.process)

    async def _release(self) -> None:
        if self.process and self.process.returncode is None:
            await self.process.wait()
        if self._pid is not None:
            self.manager.remove(self._pid)
            self._pid = None

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0
