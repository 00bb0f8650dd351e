"""Error taxonomy & structured logging helpers"""
from __future__ import annotations
import time, json, logging
from typing import Any, Optional

logger = logging.getLogger("voicepipe.pipeline")

FATAL_CLOSE = {"INTERNAL"}
RECOVERABLE = {"PROTOCOL_VIOLATION","SESSION_BUSY","PROCESS_IO","TRANSCODE_FAIL","ASR_FAIL","LLM_FAIL","TTS_FAIL"}

ALL_CODES = FATAL_CLOSE | RECOVERABLE


class PipelineError(Exception):
    """Base for stage failures; ``code`` is what the client sees."""
    code = "INTERNAL"


class ProcessIOError(PipelineError):
    """Spawning, writing to, or waiting on an external process failed."""
    code = "PROCESS_IO"

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class TranscodeFailed(PipelineError):
    code = "TRANSCODE_FAIL"


class RecognitionFailed(PipelineError):
    code = "ASR_FAIL"


class CompletionServiceError(PipelineError):
    # Never leaves the responder; converted to the fallback reply there
    code = "LLM_FAIL"


class SynthesisFailed(PipelineError):
    code = "TTS_FAIL"


def log_event(event: str, **fields: Any) -> None:
    payload = {"ts": time.time(), "event": event, **fields}
    logger.info(json.dumps(payload, ensure_ascii=False, default=str))

async def emit_error(send_json, code: str, message: str, recoverable: bool | None = None):
    if recoverable is None:
        recoverable = code in RECOVERABLE
    await send_json({"type":"error","code":code,"message":message,"recoverable":recoverable})
    log_event("error", code=code, recoverable=recoverable, message=message)
