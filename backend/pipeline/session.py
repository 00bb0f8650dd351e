"""Session registry and per-utterance state machine"""
from __future__ import annotations
import time
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional
from .config import Phase, Settings
from .errors import PipelineError, ProcessIOError, SynthesisFailed, emit_error, log_event
from .process import ProcessRunner
from .recognizer import Recognizer
from .responder import Responder
from .synthesizer import Synthesizer
from .transcoder import TranscodeJob, Transcoder

logger = logging.getLogger(__name__)

# Events are dicts; "tts-audio" carries its raw bytes under "audio"
Send = Callable[[Dict[str, Any]], Awaitable[None]]

TRANSITIONS = {
    Phase.IDLE: {Phase.RECORDING, Phase.FAILED},
    Phase.RECORDING: {Phase.FINALIZING, Phase.FAILED},
    Phase.FINALIZING: {Phase.RECOGNIZING, Phase.FAILED},
    Phase.RECOGNIZING: {Phase.RESPONDING, Phase.DONE, Phase.FAILED},
    Phase.RESPONDING: {Phase.SYNTHESIZING, Phase.FAILED},
    Phase.SYNTHESIZING: {Phase.DONE, Phase.FAILED},
    Phase.DONE: {Phase.IDLE},
    Phase.FAILED: {Phase.IDLE},
}


@dataclass
class Session:
    id: str
    send: Send
    phase: Phase = Phase.IDLE
    created_at: float = field(default_factory=time.time)
    utterance_seq: int = 0
    # Non-null only while an utterance's transcoder is alive
    transcoder: Optional[TranscodeJob] = None
    artifact_path: Optional[Path] = None
    # Latest utterance only; no conversation memory
    transcript: str = ""
    reply_text: str = ""
    task: Optional[asyncio.Task] = None
    frames_dropped: int = 0
    closed: bool = False
    # Serializes start/stop handling for this session
    control: asyncio.Lock = field(default_factory=asyncio.Lock)

    def transition(self, target: Phase) -> bool:
        if target in TRANSITIONS.get(self.phase, set()):
            log_event("state", session_id=self.id, source=self.phase.value, target=target.value)
            self.phase = target
            return True
        logger.warning("session %s: illegal transition %s -> %s", self.id, self.phase.value, target.value)
        return False


class SessionManager:
    """Owns every Session and drives each utterance through its stages.

    The id -> Session table is the only state shared between sessions. Inserts,
    deletes and the lookups made before each emission all go through one lock,
    so nothing is sent for a session after ``disconnect`` removed it. Sends
    happen outside the lock so a slow client cannot hold up anybody else.
    """

    def __init__(
        self,
        settings: Settings,
        runner: Optional[ProcessRunner] = None,
        transcoder: Optional[Transcoder] = None,
        recognizer: Optional[Recognizer] = None,
        responder: Optional[Responder] = None,
        synthesizer: Optional[Synthesizer] = None,
    ):
        self.settings = settings
        runner = runner or ProcessRunner(grace_s=settings.terminate_grace_s)
        self.transcoder = transcoder or Transcoder(runner, settings)
        self.recognizer = recognizer or Recognizer(runner, settings)
        self.responder = responder or Responder(settings)
        self.synthesizer = synthesizer or Synthesizer(runner, settings)
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    async def connect(self, session_id: str, send: Send) -> Session:
        async with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"session {session_id} already connected")
            session = Session(id=session_id, send=send)
            self._sessions[session_id] = session
        log_event("session_open", session_id=session_id)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def ids(self) -> List[str]:
        async with self._lock:
            return list(self._sessions)

    async def disconnect(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.closed = True
        task = session.task
        try:
            if task is not None and not task.done():
                task.cancel()
                # wait() does not re-raise the task's CancelledError into the caller
                await asyncio.wait({task})
        finally:
            await self._release(session)
            log_event("session_close", session_id=session_id, phase=session.phase.value,
                      utterances=session.utterance_seq, frames_dropped=session.frames_dropped)
        return True

    async def shutdown(self, reason: str = "server_shutdown") -> None:
        for sid in await self.ids():
            session = await self.get(sid)
            if session is not None:
                await self._emit(session, {"type": "info", "message": "Server shutting down", "reason": reason})
            await self.disconnect(sid)
        await self.responder.close()

    # client events

    async def on_start(self, session_id: str) -> bool:
        session = await self.get(session_id)
        if session is None:
            return False
        async with session.control:
            if session.phase != Phase.IDLE:
                await self._emit_error(session, "SESSION_BUSY", f"Cannot start while {session.phase.value}")
                log_event("protocol_error", reason="start_while_busy", phase=session.phase.value, session_id=session_id)
                return False
            session.utterance_seq += 1
            session.transcript = ""
            session.reply_text = ""
            path = self.settings.recordings_dir / f"record_{session.id}_{session.utterance_seq}.wav"
            try:
                job = await self.transcoder.start(path)
            except ProcessIOError as e:
                logger.error("session %s: transcoder spawn failed: %s", session_id, e)
                session.transition(Phase.FAILED)
                await self._emit_error(session, e.code, str(e))
                await self._finish_utterance(session, "failed")
                return False
            if session.closed:
                await job.cancel()
                return False
            session.transcoder = job
            session.artifact_path = path
            session.transition(Phase.RECORDING)
            session.task = asyncio.create_task(
                self._run_utterance(session, job), name=f"utterance-{session.id}-{session.utterance_seq}"
            )
        log_event("utterance_start", session_id=session_id, seq=session.utterance_seq, path=str(path))
        return True

    async def on_frame(self, session_id: str, frame: bytes) -> bool:
        session = await self.get(session_id)
        if session is None:
            return False
        if session.phase != Phase.RECORDING:
            session.frames_dropped += 1
            return False
        session.transcoder.feed(frame)
        return True

    async def on_stop(self, session_id: str) -> bool:
        session = await self.get(session_id)
        if session is None:
            return False
        async with session.control:
            # A repeated or stray end-of-stream is a no-op
            if session.phase != Phase.RECORDING:
                return False
            session.transition(Phase.FINALIZING)
            session.transcoder.finish()
        log_event("utterance_stop", session_id=session_id, seq=session.utterance_seq,
                  bytes=session.transcoder.bytes_queued if session.transcoder else 0)
        return True

    # pipeline

    async def _run_utterance(self, session: Session, job: TranscodeJob) -> None:
        status = "failed"
        try:
            status = await self._drive(session, job)
        except PipelineError as e:
            session.transition(Phase.FAILED)
            log_event("utterance_failed", session_id=session.id, code=e.code, error=str(e))
            await self._emit_error(session, e.code, str(e))
        except Exception:
            logger.exception("session %s: pipeline crashed", session.id)
            session.transition(Phase.FAILED)
            await self._emit_error(session, "INTERNAL", "Internal pipeline error", recoverable=True)
        finally:
            await self._release(session)
        await self._finish_utterance(session, status)

    async def _drive(self, session: Session, job: TranscodeJob) -> str:
        path = await job.result()
        session.transcoder = None
        session.transition(Phase.RECOGNIZING)
        log_event("transcode_done", session_id=session.id, path=str(path), bytes=job.bytes_written)
        await self._emit(session, {"type": "wav-ready", "path": str(path)})

        transcript = await self.recognizer.recognize(path)
        self._discard_artifact(session)
        session.transcript = transcript
        log_event("transcript", session_id=session.id, chars=len(transcript))
        if not transcript:
            session.transition(Phase.DONE)
            await self._emit(session, {"type": "transcript", "text": "", "empty": True})
            return "empty"

        session.transition(Phase.RESPONDING)
        await self._emit(session, {"type": "transcript", "text": transcript})
        reply = await self.responder.respond(transcript)
        session.reply_text = reply
        log_event("reply", session_id=session.id, chars=len(reply))

        session.transition(Phase.SYNTHESIZING)
        await self._emit(session, {"type": "llm-reply", "text": reply})
        try:
            audio = await self.synthesizer.synth(reply)
        except SynthesisFailed as e:
            log_event("tts_failed", session_id=session.id, error=str(e))
            await self._emit_error(session, e.code, "Speech synthesis failed; reply is text only")
        else:
            log_event("tts", session_id=session.id, bytes=len(audio))
            await self._emit(session, {"type": "tts-audio", "mime": self.synthesizer.mime, "audio": audio})
        session.transition(Phase.DONE)
        return "done"

    async def _finish_utterance(self, session: Session, status: str) -> None:
        await self._emit(session, {"type": "utterance-complete", "status": status, "seq": session.utterance_seq})
        if not session.transition(Phase.IDLE):
            session.phase = Phase.IDLE

    # resources & emission

    def _discard_artifact(self, session: Session) -> None:
        path, session.artifact_path = session.artifact_path, None
        if path is not None and not self.settings.keep_recordings:
            path.unlink(missing_ok=True)

    async def _release(self, session: Session) -> None:
        job, session.transcoder = session.transcoder, None
        if job is not None:
            await job.cancel()
        self._discard_artifact(session)

    async def _emit(self, session: Session, payload: Dict[str, Any]) -> bool:
        async with self._lock:
            live = self._sessions.get(session.id) is session
        if not live:
            return False
        try:
            await session.send(payload)
        except Exception as e:
            logger.warning("session %s: send failed: %s", session.id, e)
            return False
        return True

    async def _emit_error(self, session: Session, code: str, message: str, recoverable: bool | None = None) -> None:
        async def _send(payload):
            await self._emit(session, payload)
        await emit_error(_send, code, message, recoverable)
