"""Pipeline configuration and session phases"""
from __future__ import annotations
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Phase(str, Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    FINALIZING = "FINALIZING"
    RECOGNIZING = "RECOGNIZING"
    RESPONDING = "RESPONDING"
    SYNTHESIZING = "SYNTHESIZING"
    DONE = "DONE"
    FAILED = "FAILED"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        # Ignore unexpected extra keys (e.g. values meant for other services)
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 4000
    log_level: str = "INFO"

    recordings_dir: Path = Path("recordings")
    whisper_dir: Path = Path("whisper")
    # Delete each utterance's wav once the recognizer has read it
    keep_recordings: bool = False

    # Transcoder (ffmpeg)
    transcoder_executable: str = "ffmpeg"
    input_sample_rate: int = 48000
    output_sample_rate: int = 16000
    channels: int = 1
    transcoder_timeout_s: Optional[float] = None

    # Recognizer (whisper.cpp); executable defaults to <whisper_dir>/main
    recognizer_executable: Optional[str] = None
    recognizer_model: str = "models/ggml-base.en.bin"
    recognizer_threads: int = 4
    recognizer_timeout_s: Optional[float] = None
    recognizer_log_pattern: str = r"^\s*(whisper_|ggml_|main:|system_info:|output_|load_backend|log_mel)"
    recognizer_timestamp_pattern: str = r"^\s*\[\d{2}:\d{2}:\d{2}[.,]\d{3}\s*-->\s*\d{2}:\d{2}:\d{2}[.,]\d{3}\]"
    recognizer_noise_pattern: str = r"\[(BLANK_AUDIO|MUSIC|NOISE|SILENCE|INAUDIBLE)\]|\((music|silence|noise)\)"
    recognizer_error_markers: List[str] = ["error:", "[error]"]

    # Completion service
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 150
    openai_temperature: float = 0.7
    llm_timeout_s: Optional[float] = None

    # Synthesizer (ollama xtts)
    synthesizer_executable: str = "ollama"
    synthesizer_args: List[str] = ["run", "xtts"]
    synthesizer_timeout_s: Optional[float] = None

    # SIGTERM -> SIGKILL grace when tearing down a subprocess
    terminate_grace_s: float = 2.0

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._validate_config()

    def _validate_config(self) -> None:
        errs = []
        for name in ("input_sample_rate", "output_sample_rate", "channels", "recognizer_threads"):
            if getattr(self, name) < 1:
                errs.append(f"{name} must be >=1 (got {getattr(self, name)})")
        for name in ("transcoder_timeout_s", "recognizer_timeout_s", "llm_timeout_s", "synthesizer_timeout_s"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                errs.append(f"{name} must be >0 when set (got {value})")
        if self.terminate_grace_s < 0:
            errs.append("terminate_grace_s must be >=0")
        if not (0.0 <= self.openai_temperature <= 2.0):
            errs.append(f"openai_temperature must be 0-2 (got {self.openai_temperature})")
        if errs:
            raise ValueError("Configuration validation failed:\n" + "\n".join(errs))

    @property
    def recognizer_path(self) -> str:
        return self.recognizer_executable or str(self.whisper_dir / "main")

    @property
    def recognizer_model_path(self) -> Path:
        model = Path(self.recognizer_model)
        return model if model.is_absolute() else self.whisper_dir / model

    def ensure_directories(self) -> None:
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        self.whisper_dir.mkdir(parents=True, exist_ok=True)

    def as_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["openai_api_key"] = "***" if self.openai_api_key else ""
        return data


def load_settings(**overrides: Any) -> Settings:
    return Settings(**overrides)
