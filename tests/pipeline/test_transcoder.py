import asyncio

import pytest

from backend.pipeline.errors import ProcessIOError, TranscodeFailed
from backend.pipeline.transcoder import Transcoder
from conftest import pcm_frame, wait_until


def test_transcoder_args(settings, runner):
    t = Transcoder(runner, settings)
    args = t.args_for(settings.recordings_dir / "out.wav")
    assert args[:8] == ["-f", "s16le", "-ar", "48000", "-ac", "1", "-i", "pipe:0"]
    assert args[args.index("-acodec") + 1] == "pcm_s16le"
    assert args[args.index("-acodec") + 3] == "16000"
    assert args[-1] == str(settings.recordings_dir / "out.wav")


def test_frames_written_in_order_and_artifact_produced(settings, runner):
    frames = [pcm_frame(i) for i in range(5)]

    async def scenario():
        job = await Transcoder(runner, settings).start(settings.recordings_dir / "a.wav")
        for f in frames:
            job.feed(f)
        job.finish()
        return await job.result()

    path = asyncio.run(scenario())
    handle = runner.spawned("ffmpeg")[0]
    assert handle.writes == frames
    assert path.read_bytes() == b"".join(frames)


def test_finish_closes_input_once(settings, runner):
    async def scenario():
        job = await Transcoder(runner, settings).start(settings.recordings_dir / "b.wav")
        job.feed(b"\x01\x00" * 8)
        assert job.finish() is True
        assert job.finish() is False
        await job.result()
        with pytest.raises(ProcessIOError):
            job.feed(b"\x00\x00")

    asyncio.run(scenario())
    assert runner.spawned("ffmpeg")[0].close_calls == 1


def test_not_done_until_process_exits(settings, runner):
    runner.script("ffmpeg", write_artifact=True, exit_on_close=False)

    async def scenario():
        job = await Transcoder(runner, settings).start(settings.recordings_dir / "c.wav")
        job.feed(pcm_frame(1))
        job.finish()
        result = asyncio.ensure_future(job.result())
        handle = runner.spawned("ffmpeg")[0]
        await wait_until(lambda: handle.input_closed)
        await asyncio.sleep(0.02)
        assert not result.done()
        handle.exit(0)
        return await result

    assert asyncio.run(scenario()).name == "c.wav"


def test_nonzero_exit_is_transcode_failure(settings, runner):
    runner.script("ffmpeg", returncode=1, stderr="pipe:0: Invalid data found when processing input")

    async def scenario():
        job = await Transcoder(runner, settings).start(settings.recordings_dir / "d.wav")
        job.finish()
        await job.result()

    with pytest.raises(TranscodeFailed) as exc:
        asyncio.run(scenario())
    assert "status 1" in str(exc.value)


def test_exit_during_recording_is_transcode_failure(settings, runner):
    async def scenario():
        job = await Transcoder(runner, settings).start(settings.recordings_dir / "e.wav")
        job.feed(pcm_frame(2))
        runner.spawned("ffmpeg")[0].exit(137)
        await job.result()

    with pytest.raises(TranscodeFailed) as exc:
        asyncio.run(scenario())
    assert "during recording" in str(exc.value)


def test_flush_timeout_terminates_transcoder(tmp_path, runner):
    from backend.pipeline.config import load_settings
    cfg = load_settings(recordings_dir=tmp_path, transcoder_timeout_s=0.05, terminate_grace_s=0.05)
    runner.script("ffmpeg", exit_on_close=False)

    async def scenario():
        job = await Transcoder(runner, cfg).start(tmp_path / "f.wav")
        job.finish()
        await job.result()

    with pytest.raises(TranscodeFailed):
        asyncio.run(scenario())
    assert runner.spawned("ffmpeg")[0].terminated


def test_cancel_terminates_process(settings, runner):
    async def scenario():
        job = await Transcoder(runner, settings).start(settings.recordings_dir / "g.wav")
        job.feed(pcm_frame(3))
        await job.cancel()

    asyncio.run(scenario())
    handle = runner.spawned("ffmpeg")[0]
    assert handle.terminated
    assert handle.returncode == -15
