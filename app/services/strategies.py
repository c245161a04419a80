"""
Conversion strategies, tried in priority order by the orchestrator.

Each strategy turns ``input_path`` into a WebM file at ``output_path`` and
reports intermediate progress through ``emit(percent, message)``. Strategies
only ever report ``processing`` progress; terminal events belong to the
orchestrator.
"""
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple
import logging
import shutil
import subprocess
import threading

import av

from app.core.config import Settings, get_settings
from app.core.exceptions import FatalIOFailure, StrategyFailed
from app.services.ffmpeg_progress import DEFAULT_DURATION, PROGRESS_START, ProgressLineParser, parse_duration

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

LIBRARY_PROGRESS_FLOOR = 40
LIBRARY_PROGRESS_CEILING = 90
LIBRARY_PROGRESS_SPAN = 50
LIBRARY_PROGRESS_EVERY = 10

OUTPUT_TAIL_LINES = 20

# Built-in ffmpeg encoders used when the external library is not compiled in
BUILTIN_AUDIO_ENCODERS = {"libvorbis": "vorbis", "libopus": "opus"}


class ConversionStrategy(ABC):
    name = "strategy"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @abstractmethod
    def convert(self, input_path: Path, output_path: Path, job_id: str, emit: ProgressCallback) -> bool:
        """Convert the file; return True on success, raise on failure."""


class ProcessEncoder(ConversionStrategy):
    """Runs the external encoder binary and follows its ``-progress`` output."""

    name = "FFmpeg"

    def build_command(self, binary: str, input_path: Path, output_path: Path) -> List[str]:
        return [
            binary,
            "-y",
            "-i", str(input_path),
            "-c:v", self.settings.video_codec,
            "-crf", str(self.settings.crf),
            "-b:v", "0",
            "-c:a", self.settings.audio_codec,
            "-progress", "pipe:1",
            str(output_path),
        ]

    def probe_duration(self, binary: str, input_path: Path) -> str:
        """
        Read the media duration from ``encoder -i <input>``.

        The probe exits non-zero because no output file is given; only the
        diagnostic text matters. Any failure yields ``00:00:00.00``.
        """
        try:
            result = subprocess.run(
                [binary, "-i", str(input_path)],
                capture_output=True,
                text=True,
                errors="replace",
                stdin=subprocess.DEVNULL,
                timeout=self.settings.probe_timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Duration probe failed for {input_path}: {str(e)}")
            return DEFAULT_DURATION
        return parse_duration(result.stderr + result.stdout)

    def convert(self, input_path: Path, output_path: Path, job_id: str, emit: ProgressCallback) -> bool:
        binary = shutil.which(self.settings.encoder_binary)
        if binary is None:
            raise StrategyFailed(f"Encoder binary not found: {self.settings.encoder_binary}", job_id=job_id)

        emit(PROGRESS_START, "FFmpeg available, starting conversion")

        total_duration = self.probe_duration(binary, input_path)
        if total_duration == DEFAULT_DURATION:
            logger.warning(f"Could not determine duration of {input_path}; progress will stay at 0%")
        parser = ProgressLineParser(total_duration)

        command = self.build_command(binary, input_path, output_path)
        logger.info(f"Running: {' '.join(command)}")
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise StrategyFailed(f"FFmpeg execution error: {str(e)}", job_id=job_id) from e

        tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        reader = threading.Thread(
            target=self._drain_output,
            args=(process, parser, tail, emit, PROGRESS_START),
            name=f"encoder-output-{job_id}",
            daemon=True,
        )
        reader.start()

        return_code = None
        try:
            return_code = process.wait(timeout=self.settings.encoder_timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Encoder timed out after {self.settings.encoder_timeout}s for job {job_id}")
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
            reader.join()

        output = "\n".join(tail)
        if return_code is None:
            raise StrategyFailed(
                f"FFmpeg timed out after {self.settings.encoder_timeout} seconds", job_id=job_id, output=output
            )
        if return_code != 0:
            logger.error(f"ffmpeg output for job {job_id}:\n{output}")
            raise StrategyFailed(
                f"FFmpeg conversion failed with exit code: {return_code}", job_id=job_id, output=output
            )

        emit(90, "FFmpeg conversion completed")
        return True

    def _drain_output(self, process: subprocess.Popen, parser: ProgressLineParser,
                      tail: Deque[str], emit: ProgressCallback, start_percent: int = -1) -> None:
        last_percent = start_percent
        try:
            for line in process.stdout:
                tail.append(line.rstrip())
                percent = parser.feed(line)
                if percent is None or percent <= last_percent:
                    continue
                last_percent = percent
                emit(percent, f"FFmpeg converting: {parser.current_time} / {parser.total_duration}")
        except Exception as e:
            logger.error(f"Error reading FFmpeg progress: {str(e)}")
        finally:
            process.stdout.close()


def estimate_total_frames(frame_count: int, duration_seconds: float, frame_rate: float) -> int:
    """Use the container's frame count, else duration * frame rate."""
    if frame_count and frame_count > 0:
        return int(frame_count)
    if duration_seconds and frame_rate:
        return int(duration_seconds * frame_rate)
    return 0


def library_progress_percent(frame_count: int, total_frames: int) -> int:
    if total_frames <= 0:
        return LIBRARY_PROGRESS_FLOOR
    percent = LIBRARY_PROGRESS_FLOOR + (frame_count * LIBRARY_PROGRESS_SPAN) // total_frames
    return max(LIBRARY_PROGRESS_FLOOR, min(LIBRARY_PROGRESS_CEILING, percent))


def resolve_audio_encoder(preferred: str) -> Tuple[str, Dict[str, str]]:
    """
    Pick the audio encoder and its open options.

    PyPI wheels of PyAV ship without libvorbis/libopus; their built-in
    counterparts need ``strict=experimental`` to open.
    """
    if preferred in av.codecs_available:
        return preferred, {}
    builtin = BUILTIN_AUDIO_ENCODERS.get(preferred)
    if builtin and builtin in av.codecs_available:
        logger.info(f"{preferred} is not available, using built-in {builtin} encoder")
        return builtin, {"strict": "experimental"}
    return preferred, {}


def _duration_seconds(container, stream) -> float:
    if container.duration:
        return container.duration / av.time_base
    if stream.duration and stream.time_base:
        return float(stream.duration * stream.time_base)
    return 0.0


class LibraryEncoder(ConversionStrategy):
    """
    Decodes frame by frame with PyAV and re-encodes to WebM.

    Audio goes to Vorbis rather than Opus: Opus only accepts a handful of
    sample rates, Vorbis takes whatever the input has.
    """

    name = "PyAV"

    def convert(self, input_path: Path, output_path: Path, job_id: str, emit: ProgressCallback) -> bool:
        emit(30, "Starting library conversion")

        with av.open(str(input_path)) as source:
            if not source.streams.video:
                raise StrategyFailed("No video stream found", job_id=job_id)
            video_in = source.streams.video[0]
            audio_in = source.streams.audio[0] if source.streams.audio else None

            frame_rate = video_in.average_rate or video_in.guessed_rate or 30
            total_frames = estimate_total_frames(
                video_in.frames, _duration_seconds(source, video_in), float(frame_rate)
            )

            with av.open(str(output_path), mode="w", format="webm") as target:
                video_out = target.add_stream(self.settings.library_video_codec, rate=frame_rate)
                video_out.codec_context.width = video_in.codec_context.width
                video_out.codec_context.height = video_in.codec_context.height
                video_out.codec_context.pix_fmt = "yuv420p"
                video_out.codec_context.bit_rate = self.settings.library_video_bitrate

                audio_out = None
                if audio_in is not None:
                    codec_name, options = resolve_audio_encoder(self.settings.library_audio_codec)
                    audio_out = target.add_stream(
                        codec_name, rate=audio_in.codec_context.sample_rate, options=options
                    )
                    audio_out.codec_context.layout = audio_in.codec_context.layout
                    audio_out.codec_context.bit_rate = self.settings.library_audio_bitrate

                emit(LIBRARY_PROGRESS_FLOOR, "Library conversion started")

                streams = [video_in] if audio_in is None else [video_in, audio_in]
                frame_count = 0
                for frame in source.decode(*streams):
                    if isinstance(frame, av.VideoFrame):
                        target.mux(video_out.encode(frame))
                        frame_count += 1
                        if frame_count % LIBRARY_PROGRESS_EVERY == 0 and total_frames > 0:
                            emit(
                                library_progress_percent(frame_count, total_frames),
                                f"Converting frame {frame_count}/{total_frames}",
                            )
                    elif audio_out is not None:
                        frame.pts = None
                        target.mux(audio_out.encode(frame))

                # flush
                target.mux(video_out.encode(None))
                if audio_out is not None:
                    target.mux(audio_out.encode(None))

        emit(LIBRARY_PROGRESS_CEILING, "Library conversion completed")
        return True


class RawCopyFallback(ConversionStrategy):
    """
    Last resort: copies the input bytes unchanged under the .webm name.

    The result is not necessarily a valid WebM stream.
    """

    name = "file copy"

    def convert(self, input_path: Path, output_path: Path, job_id: str, emit: ProgressCallback) -> bool:
        try:
            shutil.copyfile(input_path, output_path)
        except OSError as e:
            raise FatalIOFailure(f"Could not copy file: {str(e)}", job_id=job_id) from e
        emit(90, "Fallback copy completed")
        return True


def default_strategies(settings: Optional[Settings] = None) -> List[ConversionStrategy]:
    return [ProcessEncoder(settings), LibraryEncoder(settings), RawCopyFallback(settings)]
