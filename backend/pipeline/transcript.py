"""Recognizer output -> clean transcript"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Tuple
from .config import Settings


@dataclass
class TranscriptFilter:
    """Keeps only recognized-speech lines from raw recognizer stdout.

    Per line: drop log lines and lines carrying an error marker, strip the
    leading ``[start --> end]`` range, remove non-speech tags such as
    ``[BLANK_AUDIO]``, then drop whatever is left empty.
    """
    log_pattern: Optional[Pattern[str]] = None
    timestamp_pattern: Optional[Pattern[str]] = None
    noise_pattern: Optional[Pattern[str]] = None
    error_markers: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TranscriptFilter":
        def _compile(expr: str) -> Optional[Pattern[str]]:
            return re.compile(expr, re.IGNORECASE) if expr else None

        return cls(
            log_pattern=_compile(settings.recognizer_log_pattern),
            timestamp_pattern=_compile(settings.recognizer_timestamp_pattern),
            noise_pattern=_compile(settings.recognizer_noise_pattern),
            error_markers=tuple(m.lower() for m in settings.recognizer_error_markers if m),
        )

    def clean_line(self, line: str) -> str:
        if self.log_pattern and self.log_pattern.search(line):
            return ""
        lowered = line.lower()
        if any(marker in lowered for marker in self.error_markers):
            return ""
        if self.timestamp_pattern:
            line = self.timestamp_pattern.sub("", line, count=1)
        if self.noise_pattern:
            line = self.noise_pattern.sub(" ", line)
        return " ".join(line.split())

    def speech_lines(self, lines: Iterable[str]) -> List[str]:
        kept = []
        for raw in lines:
            text = self.clean_line(raw)
            if text:
                kept.append(text)
        return kept

    def apply(self, raw_output: str) -> str:
        """Empty string means no speech was recognized."""
        return " ".join(self.speech_lines(raw_output.splitlines())).strip()
