"""Synthesizer stage - reply text in, audio bytes out (ollama xtts)"""
from __future__ import annotations
import base64
import binascii
import logging
from pydantic import BaseModel, ValidationError
from .config import Settings
from .errors import ProcessIOError, SynthesisFailed
from .process import ProcessRunner

logger = logging.getLogger(__name__)


class SynthesisPayload(BaseModel):
    """Single JSON object printed by the synthesis process"""
    audio: str


def decode_payload(raw: bytes) -> bytes:
    try:
        payload = SynthesisPayload.model_validate_json(raw)
    except ValidationError as e:
        raise SynthesisFailed(f"unparsable synthesis payload: {e.error_count()} error(s)") from e
    try:
        audio = base64.b64decode(payload.audio, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SynthesisFailed(f"synthesis audio is not valid base64: {e}") from e
    if not audio:
        raise SynthesisFailed("synthesis returned no audio")
    return audio


class Synthesizer:
    mime = "audio/wav"

    def __init__(self, runner: ProcessRunner, settings: Settings):
        self.runner = runner
        self.settings = settings

    async def synth(self, text: str) -> bytes:
        if not text.strip():
            raise SynthesisFailed("nothing to synthesize")
        try:
            result = await self.runner.run(
                self.settings.synthesizer_executable,
                self.settings.synthesizer_args,
                input=text.encode("utf-8"),
                timeout=self.settings.synthesizer_timeout_s,
            )
        except ProcessIOError as e:
            raise SynthesisFailed(str(e)) from e
        if result.returncode != 0:
            raise SynthesisFailed(f"synthesizer exited with status {result.returncode}: {result.stderr.strip()}")
        audio = decode_payload(result.stdout)
        logger.debug("synthesized %d chars -> %d audio bytes", len(text), len(audio))
        return audio
