import asyncio
import base64
import itertools
import json
import os
from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import pytest

from backend.pipeline.config import load_settings
from backend.pipeline.errors import ProcessIOError
from backend.pipeline.process import ProcessRunner
from backend.pipeline.responder import Responder
from backend.pipeline.session import SessionManager

FAKE_WAV = b"RIFF\x24\x00\x00\x00WAVEfmt fake-audio"
SCENARIO_A_STDOUT = b"[00:00:00.000 --> 00:00:01.000]   hello there\n"

_pids = itertools.count(1000)


@dataclass
class FakeBehavior:
    returncode: int = 0
    stdout: bytes = b""
    stderr: str = ""
    # Exit as soon as stdin is closed; otherwise the test calls handle.exit()
    exit_on_close: bool = True
    # Transcoder fake: dump everything written to the path in the last arg
    write_artifact: bool = False


class FakeHandle:
    """Stands in for ProcessHandle without spawning anything."""

    def __init__(self, executable: str, args: List[str], behavior: FakeBehavior):
        self.executable = executable
        self.args = list(args)
        self.name = os.path.basename(executable)
        self.pid = next(_pids)
        self.behavior = behavior
        self.written = bytearray()
        self.writes: List[bytes] = []
        self.close_calls = 0
        self.input_closed = False
        self.terminated = False
        self.returncode: Optional[int] = None
        self.stderr_tail = behavior.stderr
        self._output = bytearray()
        self._exited = asyncio.Event()
        self._output_callbacks: List[Callable] = []
        self._exit_callbacks: List[Callable] = []

    @property
    def output(self) -> bytes:
        return bytes(self._output)

    def on_output(self, callback):
        self._output_callbacks.append(callback)

    def on_exit(self, callback):
        if self.returncode is not None:
            callback(self.returncode)
        else:
            self._exit_callbacks.append(callback)

    async def write(self, data: bytes):
        if self.returncode is not None:
            raise ProcessIOError(f"{self.name} has already exited", self.returncode)
        if self.input_closed:
            raise ProcessIOError(f"{self.name} input already closed")
        self.written.extend(data)
        self.writes.append(bytes(data))
        await asyncio.sleep(0)

    async def close_input(self):
        self.close_calls += 1
        if self.input_closed:
            return
        self.input_closed = True
        if self.behavior.exit_on_close:
            self.exit(self.behavior.returncode)

    def exit(self, code: int):
        if self.returncode is not None:
            return
        if self.behavior.write_artifact and code == 0:
            Path(self.args[-1]).write_bytes(bytes(self.written))
        if self.behavior.stdout:
            self._output.extend(self.behavior.stdout)
            for cb in self._output_callbacks:
                cb(self.behavior.stdout)
        self.returncode = code
        self._exited.set()
        for cb in self._exit_callbacks:
            cb(code)
        self._exit_callbacks = []

    async def wait(self, timeout=None):
        try:
            await asyncio.wait_for(self._exited.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise ProcessIOError(f"{self.name} did not exit within {timeout}s") from e
        return self.returncode

    async def terminate(self, grace_s: float = 2.0):
        if self.returncode is None:
            self.terminated = True
            self.input_closed = True
            self.exit(-15)
        return self.returncode


class FakeRunner(ProcessRunner):
    """ProcessRunner whose start() hands out FakeHandles keyed by executable name."""

    def __init__(self):
        super().__init__(grace_s=0.1)
        self.behaviors: Dict[str, FakeBehavior] = {}
        self.unspawnable: set = set()
        self.handles: List[FakeHandle] = []

    def script(self, name: str, **kwargs) -> None:
        self.behaviors[name] = FakeBehavior(**kwargs)

    def spawned(self, name: str) -> List[FakeHandle]:
        return [h for h in self.handles if h.name == name]

    async def start(self, executable, args, *, cwd=None):
        name = os.path.basename(executable)
        if name in self.unspawnable:
            raise ProcessIOError(f"failed to spawn {executable}: [Errno 11] Resource temporarily unavailable")
        handle = FakeHandle(executable, args, self.behaviors.get(name, FakeBehavior()))
        self.handles.append(handle)
        return handle


class FakeCompletions:
    def __init__(self, reply: str = "Hey! Doing great, thanks for asking.", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: List[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    def __init__(self, **kwargs):
        self.completions = FakeCompletions(**kwargs)
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def prompts(self) -> List[str]:
        return [c["messages"][-1]["content"] for c in self.completions.calls]


class Outbox:
    """Collects events a session would have sent to its client."""

    def __init__(self):
        self.events: List[dict] = []

    async def __call__(self, event: dict):
        self.events.append(event)

    def types(self) -> List[str]:
        return [e["type"] for e in self.events]

    def of(self, kind: str) -> List[dict]:
        return [e for e in self.events if e["type"] == kind]


def synthesis_stdout(audio: bytes = FAKE_WAV) -> bytes:
    return json.dumps({"audio": base64.b64encode(audio).decode()}).encode()


def pcm_frame(seed: int, samples: int = 2048) -> bytes:
    return bytes((seed + i) % 256 for i in range(samples * 2))


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_manager(settings, runner, openai=None) -> SessionManager:
    responder = Responder(settings, client=openai if openai is not None else FakeOpenAI())
    return SessionManager(settings, runner=runner, responder=responder)


@pytest.fixture
def settings(tmp_path):
    cfg = load_settings(
        recordings_dir=tmp_path / "recordings",
        whisper_dir=tmp_path / "whisper",
        openai_api_key="",
        terminate_grace_s=0.1,
    )
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def runner():
    r = FakeRunner()
    r.script("ffmpeg", write_artifact=True)
    r.script("main", stdout=SCENARIO_A_STDOUT)
    r.script("ollama", stdout=synthesis_stdout())
    return r
