import av
import pytest

from app.core.config import get_settings
from app.core.exceptions import FatalIOFailure, StrategyFailed
from app.services import strategies
from app.services.strategies import (
    LibraryEncoder,
    ProcessEncoder,
    RawCopyFallback,
    default_strategies,
    estimate_total_frames,
    library_progress_percent,
    resolve_audio_encoder,
)


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, percent, message):
        self.calls.append((percent, message))

    @property
    def percents(self):
        return [percent for percent, _ in self.calls]


@pytest.fixture
def media(tmp_path):
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"\x00\x00\x00\x18ftypmp42 not really a video")
    return source, tmp_path / "clip.webm"


def test_default_strategy_order():
    names = [strategy.name for strategy in default_strategies()]
    assert names == ["FFmpeg", "PyAV", "file copy"]


def test_build_command():
    settings = get_settings()
    command = ProcessEncoder().build_command("ffmpeg", "in.mp4", "out.webm")

    assert command[:4] == ["ffmpeg", "-y", "-i", "in.mp4"]
    assert command[command.index("-c:v") + 1] == settings.video_codec
    assert command[command.index("-c:a") + 1] == settings.audio_codec
    assert command[command.index("-progress") + 1] == "pipe:1"
    assert command[-1] == "out.webm"


def test_process_encoder_reports_progress(fake_encoder, media):
    fake_encoder()
    source, target = media
    emit = Recorder()

    assert ProcessEncoder().convert(source, target, "job-1", emit) is True

    assert emit.percents == [5, 26, 47, 90, 90]
    assert emit.calls[0][1] == "FFmpeg available, starting conversion"
    assert emit.calls[2][1] == "FFmpeg converting: 00:00:05.00 / 00:00:10.00"
    assert emit.calls[-1][1] == "FFmpeg conversion completed"
    assert target.read_bytes() == b"encoded webm"


def test_process_encoder_progress_never_exceeds_ceiling(fake_encoder, media):
    fake_encoder()
    source, target = media
    emit = Recorder()

    ProcessEncoder().convert(source, target, "job-1", emit)

    assert all(0 <= percent <= 90 for percent in emit.percents)


def test_process_encoder_unknown_duration_never_goes_backwards(fake_encoder, media):
    fake_encoder("no-duration")
    source, target = media
    emit = Recorder()

    ProcessEncoder().convert(source, target, "job-1", emit)

    assert emit.percents == [5, 90]


def test_process_encoder_nonzero_exit(fake_encoder, media):
    fake_encoder("broken")
    source, target = media

    with pytest.raises(StrategyFailed) as exc_info:
        ProcessEncoder().convert(source, target, "job-1", Recorder())

    assert "exit code: 1" in exc_info.value.message
    assert "Unknown encoder" in exc_info.value.output


def test_process_encoder_missing_binary(monkeypatch, media):
    monkeypatch.setattr(get_settings(), "encoder_binary", "definitely-not-an-encoder-binary")
    source, target = media
    emit = Recorder()

    with pytest.raises(StrategyFailed):
        ProcessEncoder().convert(source, target, "job-1", emit)

    assert emit.calls == []


def test_probe_duration(fake_encoder, media):
    script = fake_encoder()
    source, _ = media
    assert ProcessEncoder().probe_duration(str(script), source) == "00:00:10.00"


def test_probe_duration_missing_binary(tmp_path, media):
    source, _ = media
    missing = str(tmp_path / "nope")
    assert ProcessEncoder().probe_duration(missing, source) == "00:00:00.00"


def test_estimate_total_frames():
    assert estimate_total_frames(240, 10.0, 30.0) == 240
    assert estimate_total_frames(0, 10.0, 30.0) == 300
    assert estimate_total_frames(0, 0.0, 30.0) == 0


def test_library_progress_percent():
    assert library_progress_percent(0, 100) == 40
    assert library_progress_percent(50, 100) == 65
    assert library_progress_percent(100, 100) == 90
    assert library_progress_percent(130, 100) == 90
    assert library_progress_percent(10, 0) == 40


def test_library_encoder_propagates_decode_errors(monkeypatch, media):
    def broken_open(*args, **kwargs):
        raise ValueError("Invalid data found when processing input")

    monkeypatch.setattr(strategies.av, "open", broken_open)
    source, target = media
    emit = Recorder()

    with pytest.raises(ValueError):
        LibraryEncoder().convert(source, target, "job-1", emit)

    assert emit.calls == [(30, "Starting library conversion")]


def test_raw_copy_fallback(media):
    source, target = media
    emit = Recorder()

    assert RawCopyFallback().convert(source, target, "job-1", emit) is True

    assert target.read_bytes() == source.read_bytes()
    assert emit.calls == [(90, "Fallback copy completed")]


def test_raw_copy_fallback_io_failure(tmp_path, media):
    source, _ = media
    target = tmp_path / "missing-dir" / "clip.webm"

    with pytest.raises(FatalIOFailure):
        RawCopyFallback().convert(source, target, "job-1", Recorder())


def make_clip(path, frames=60, with_audio=True):
    """Write a small mpeg4/aac mp4 with PyAV."""
    with av.open(str(path), mode="w") as container:
        video = container.add_stream("mpeg4", rate=30)
        video.codec_context.width = 64
        video.codec_context.height = 48
        video.codec_context.pix_fmt = "yuv420p"
        audio = None
        if with_audio:
            audio = container.add_stream("aac", rate=44100)
            audio.codec_context.layout = "stereo"

        for index in range(frames):
            frame = av.VideoFrame(64, 48, "yuv420p")
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
            frame.pts = index
            container.mux(video.encode(frame))
        container.mux(video.encode(None))

        if audio is not None:
            samples = 1024
            for index in range(frames * 44100 // 30 // samples):
                frame = av.AudioFrame(format="fltp", layout="stereo", samples=samples)
                for plane in frame.planes:
                    plane.update(bytes(plane.buffer_size))
                frame.sample_rate = 44100
                frame.pts = index * samples
                container.mux(audio.encode(frame))
            container.mux(audio.encode(None))
    return path


@pytest.mark.parametrize("with_audio", [True, False])
def test_library_encoder_converts_clip(tmp_path, with_audio):
    source = make_clip(tmp_path / "clip.mp4", with_audio=with_audio)
    target = tmp_path / "clip.webm"
    emit = Recorder()

    assert LibraryEncoder().convert(source, target, "job-1", emit) is True

    assert target.stat().st_size > 0
    assert emit.percents[:2] == [30, 40]
    assert emit.percents[-1] == 90
    assert emit.percents == sorted(emit.percents)
    assert any(message.startswith("Converting frame 10/") for _, message in emit.calls)
    with av.open(str(target)) as result:
        assert len(result.streams.video) == 1
        assert len(result.streams.audio) == (1 if with_audio else 0)


def test_resolve_audio_encoder_prefers_configured(monkeypatch):
    monkeypatch.setattr(strategies.av, "codecs_available", {"libvorbis", "vorbis"})
    assert resolve_audio_encoder("libvorbis") == ("libvorbis", {})


def test_resolve_audio_encoder_uses_builtin(monkeypatch):
    monkeypatch.setattr(strategies.av, "codecs_available", {"vorbis", "opus"})
    assert resolve_audio_encoder("libvorbis") == ("vorbis", {"strict": "experimental"})
    assert resolve_audio_encoder("libopus") == ("opus", {"strict": "experimental"})
    assert resolve_audio_encoder("aac") == ("aac", {})
