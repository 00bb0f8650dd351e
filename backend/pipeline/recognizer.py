"""Recognizer stage - whisper.cpp over a finished wav file"""
from __future__ import annotations
import logging
from pathlib import Path
from typing import List, Optional
from .config import Settings
from .errors import ProcessIOError, RecognitionFailed
from .process import ProcessRunner
from .transcript import TranscriptFilter

logger = logging.getLogger(__name__)


class Recognizer:
    def __init__(self, runner: ProcessRunner, settings: Settings, transcript_filter: Optional[TranscriptFilter] = None):
        self.runner = runner
        self.settings = settings
        self.filter = transcript_filter or TranscriptFilter.from_settings(settings)

    def args_for(self, audio_path: Path) -> List[str]:
        return [
            "-m", str(self.settings.recognizer_model_path),
            "-f", str(audio_path),
            "-t", str(self.settings.recognizer_threads),
        ]

    async def recognize(self, audio_path: Path) -> str:
        """Run the recognizer to completion and return the filtered transcript.

        An empty string is a valid result (silence). A failed run raises
        RecognitionFailed.
        """
        try:
            result = await self.runner.run(
                self.settings.recognizer_path,
                self.args_for(audio_path),
                timeout=self.settings.recognizer_timeout_s,
            )
        except ProcessIOError as e:
            raise RecognitionFailed(str(e)) from e
        if result.returncode != 0:
            raise RecognitionFailed(f"recognizer exited with status {result.returncode}: {result.stderr.strip()}")
        raw = result.stdout.decode("utf-8", errors="replace")
        text = self.filter.apply(raw)
        logger.debug("recognizer: %d raw chars -> %d transcript chars", len(raw), len(text))
        return text
