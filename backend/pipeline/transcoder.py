"""Transcoder stage - 48 kHz s16le frames in, 16 kHz mono wav out via ffmpeg"""
from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import List, Optional
from .config import Settings
from .errors import ProcessIOError, TranscodeFailed
from .process import ProcessHandle, ProcessRunner

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


class TranscodeJob:
    """One utterance's transcoder process and its ordered frame queue.

    Frames are queued without blocking and written by a single writer task, so
    input order is preserved and a slow child never stalls the caller.
    """

    def __init__(self, handle: ProcessHandle, output_path: Path, timeout_s: Optional[float] = None, grace_s: float = 2.0):
        self.handle = handle
        self.output_path = output_path
        self.timeout_s = timeout_s
        self.grace_s = grace_s
        self.bytes_queued = 0
        self.bytes_written = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._finished = False
        self._write_error: Optional[ProcessIOError] = None
        self._writer = asyncio.create_task(self._write_frames())

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, frame: bytes) -> None:
        if self._finished:
            raise ProcessIOError("transcoder input already closed")
        self.bytes_queued += len(frame)
        self._queue.put_nowait(frame)

    def finish(self) -> bool:
        """Close the input after the queued frames. Only the first call counts."""
        if self._finished:
            return False
        self._finished = True
        self._queue.put_nowait(_END_OF_STREAM)
        return True

    async def _write_frames(self) -> None:
        try:
            while True:
                frame = await self._queue.get()
                if frame is _END_OF_STREAM:
                    break
                await self.handle.write(frame)
                self.bytes_written += len(frame)
            await self.handle.close_input()
        except ProcessIOError as e:
            self._write_error = e
            logger.warning("transcoder write failed: %s", e)

    async def result(self) -> Path:
        """Wait for the process to exit and return the artifact path.

        The timeout only starts once the input is closed; recording itself is
        unbounded.
        """
        exited = asyncio.ensure_future(self.handle.wait())
        try:
            await asyncio.wait({exited, self._writer}, return_when=asyncio.FIRST_COMPLETED)
            if not exited.done():
                try:
                    await asyncio.wait_for(exited, self.timeout_s)
                except asyncio.TimeoutError:
                    await self.handle.terminate(self.grace_s)
                    raise TranscodeFailed(f"transcoder did not finish within {self.timeout_s}s")
        finally:
            if not exited.done():
                exited.cancel()
        if not self._writer.done():
            self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)

        returncode = exited.result()
        if not self._finished:
            raise TranscodeFailed(
                f"transcoder exited during recording (status {returncode}): {self.handle.stderr_tail.strip()}"
            ) from self._write_error
        if self._write_error is not None:
            raise self._write_error
        if returncode != 0:
            raise TranscodeFailed(f"transcoder exited with status {returncode}: {self.handle.stderr_tail.strip()}")
        if not self.output_path.exists():
            raise TranscodeFailed(f"transcoder produced no output at {self.output_path}")
        return self.output_path

    async def cancel(self) -> None:
        self._writer.cancel()
        await self.handle.terminate(self.grace_s)
        await asyncio.gather(self._writer, return_exceptions=True)


class Transcoder:
    def __init__(self, runner: ProcessRunner, settings: Settings):
        self.runner = runner
        self.settings = settings

    def args_for(self, output_path: Path) -> List[str]:
        s = self.settings
        return [
            "-f", "s16le",
            "-ar", str(s.input_sample_rate),
            "-ac", str(s.channels),
            "-i", "pipe:0",
            "-acodec", "pcm_s16le",
            "-ar", str(s.output_sample_rate),
            "-ac", str(s.channels),
            "-y",
            str(output_path),
        ]

    async def start(self, output_path: Path) -> TranscodeJob:
        handle = await self.runner.start(self.settings.transcoder_executable, self.args_for(output_path))
        return TranscodeJob(
            handle,
            output_path,
            timeout_s=self.settings.transcoder_timeout_s,
            grace_s=self.settings.terminate_grace_s,
        )
