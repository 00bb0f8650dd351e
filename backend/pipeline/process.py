"""External process runner (asyncio subprocesses)"""
from __future__ import annotations
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence
from .errors import ProcessIOError

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
STDERR_TAIL_BYTES = 2048

OutputCallback = Callable[[bytes], None]
ExitCallback = Callable[[int], None]


@dataclass
class ProcessResult:
    returncode: int
    stdout: bytes
    stderr: str


class ProcessHandle:
    """A running child process with piped stdin/stdout/stderr.

    Both output pipes are drained by a monitor task for the whole life of the
    process, so the child never stalls on a full pipe and is always reaped,
    whether or not anyone registered an output callback.
    """

    def __init__(self, proc: asyncio.subprocess.Process, name: str):
        self._proc = proc
        self.name = name
        self._output = bytearray()
        self._stderr_tail = bytearray()
        self._output_callbacks: List[OutputCallback] = []
        self._exit_callbacks: List[ExitCallback] = []
        self._input_closed = False
        self._returncode: Optional[int] = None
        self._exited = asyncio.Event()
        self._monitor = asyncio.create_task(self._watch())

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def input_closed(self) -> bool:
        return self._input_closed

    @property
    def output(self) -> bytes:
        return bytes(self._output)

    @property
    def stderr_tail(self) -> str:
        return self._stderr_tail.decode("utf-8", errors="replace")

    def on_output(self, callback: OutputCallback) -> None:
        self._output_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        if self._returncode is not None:
            callback(self._returncode)
            return
        self._exit_callbacks.append(callback)

    async def write(self, data: bytes) -> None:
        if self._returncode is not None or self._proc.returncode is not None:
            raise ProcessIOError(f"{self.name} has already exited", self._proc.returncode)
        if self._input_closed:
            raise ProcessIOError(f"{self.name} input already closed")
        try:
            self._proc.stdin.write(data)
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessIOError(f"write to {self.name} failed: {e}", self._proc.returncode) from e

    async def close_input(self) -> None:
        if self._input_closed:
            return
        self._input_closed = True
        stdin = self._proc.stdin
        if stdin is None:
            return
        try:
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            # Child is already gone; its exit status carries the failure
            logger.debug("%s stdin closed on a dead pipe: %s", self.name, e)

    async def wait(self, timeout: Optional[float] = None) -> int:
        try:
            await asyncio.wait_for(self._exited.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise ProcessIOError(f"{self.name} did not exit within {timeout}s") from e
        return self._returncode

    async def terminate(self, grace_s: float = 2.0) -> int:
        """SIGTERM, then SIGKILL once ``grace_s`` runs out. Returns the exit status."""
        if self._returncode is None:
            self._input_closed = True
            if self._proc.stdin is not None:
                self._proc.stdin.close()
            self._signal(self._proc.terminate)
            try:
                await asyncio.wait_for(asyncio.shield(self._exited.wait()), grace_s)
            except asyncio.TimeoutError:
                logger.warning("%s (pid %s) ignored SIGTERM, killing", self.name, self.pid)
                self._signal(self._proc.kill)
                await self._exited.wait()
        return self._returncode

    def _signal(self, send) -> None:
        try:
            send()
        except ProcessLookupError:
            pass

    def _deliver_output(self, chunk: bytes) -> None:
        self._output.extend(chunk)
        for cb in list(self._output_callbacks):
            try:
                cb(chunk)
            except Exception:
                logger.exception("%s output callback failed", self.name)

    def _collect_stderr(self, chunk: bytes) -> None:
        self._stderr_tail.extend(chunk)
        del self._stderr_tail[:-STDERR_TAIL_BYTES]
        logger.debug("%s: %s", self.name, chunk.decode("utf-8", errors="replace").rstrip())

    async def _pump(self, stream: Optional[asyncio.StreamReader], sink) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                return
            sink(chunk)

    async def _watch(self) -> None:
        try:
            await asyncio.gather(
                self._pump(self._proc.stdout, self._deliver_output),
                self._pump(self._proc.stderr, self._collect_stderr),
            )
        finally:
            code = await self._proc.wait()
            self._returncode = code
            self._exited.set()
            logger.debug("%s (pid %s) exited with %s", self.name, self.pid, code)
            callbacks, self._exit_callbacks = self._exit_callbacks, []
            for cb in callbacks:
                try:
                    cb(code)
                except Exception:
                    logger.exception("%s exit callback failed", self.name)


class ProcessRunner:
    """Spawns executables; no knowledge of sessions or stages."""

    def __init__(self, grace_s: float = 2.0):
        self.grace_s = grace_s

    async def start(self, executable: str, args: Sequence[str], *, cwd: Optional[str] = None) -> ProcessHandle:
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as e:
            # Missing binary, permissions, or the OS refusing to fork (EAGAIN/ENOMEM)
            raise ProcessIOError(f"failed to spawn {executable}: {e}") from e
        handle = ProcessHandle(proc, name=os.path.basename(executable))
        logger.debug("spawned %s (pid %s) args=%s", handle.name, handle.pid, list(args))
        return handle

    async def run(
        self,
        executable: str,
        args: Sequence[str],
        *,
        input: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> ProcessResult:
        """Start, feed ``input``, close stdin and wait for exit."""
        handle = await self.start(executable, args)
        try:
            if input:
                await handle.write(input)
            await handle.close_input()
            returncode = await handle.wait(timeout)
        except BaseException:
            await handle.terminate(self.grace_s)
            raise
        return ProcessResult(returncode=returncode, stdout=handle.output, stderr=handle.stderr_tail)
