import io
import sys
import stat
import textwrap
import time
from pathlib import Path

import pytest

from app.core.config import get_settings
from app.core.job_status import JobStatusManager
from app.core.progress_channel import ProgressChannel, topic_for
from app.services.converter import ConversionOrchestrator
from app.services.progress_broadcaster import ProgressBroadcaster
from app.services.strategies import ConversionStrategy


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    workspace_path = tmp_path / "workspace"
    monkeypatch.setattr(get_settings(), "workspace_path", str(workspace_path))
    return workspace_path


class FakeStrategy(ConversionStrategy):
    """Strategy double: emits the given percents, then writes output, writes nothing or raises."""

    def __init__(self, name, percents=(50,), raises=None, writes=True, payload=b"webm-bytes", delay=0.0):
        super().__init__()
        self.name = name
        self.percents = percents
        self.raises = raises
        self.writes = writes
        self.payload = payload
        self.delay = delay
        self.calls = 0

    def convert(self, input_path, output_path, job_id, emit):
        self.calls += 1
        for percent in self.percents:
            if self.delay:
                time.sleep(self.delay)
            emit(percent, f"{self.name} at {percent}%")
        if self.raises is not None:
            raise self.raises
        if self.writes:
            output_path.write_bytes(self.payload)
        return True


@pytest.fixture
def fake_strategy():
    return FakeStrategy


@pytest.fixture
def channel():
    return ProgressChannel()


@pytest.fixture
def make_orchestrator(channel, workspace):
    def factory(*strategies):
        return ConversionOrchestrator(
            strategies=list(strategies),
            broadcaster=ProgressBroadcaster(channel),
            status_manager=JobStatusManager(),
        )
    return factory


@pytest.fixture
def record(channel):
    """Subscribe to a job's topic and collect its events."""
    def subscribe(job_id):
        events = []
        channel.subscribe(topic_for(job_id), events.append)
        return events
    return subscribe


@pytest.fixture
def upload():
    return lambda data=b"original video bytes": io.BytesIO(data)


def write_executable(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


FAKE_ENCODER = """
import sys

args = sys.argv[1:]
if "-progress" not in args:
    sys.stderr.write("Input #0, mov,mp4,m4a, from 'clip.mp4':\\n")
    sys.stderr.write("  Duration: 00:00:10.00, start: 0.000000, bitrate: 1205 kb/s\\n")
    sys.stderr.write("At least one output file must be specified\\n")
    sys.exit(1)

for timecode in ("00:00:02.50", "00:00:05.00", "00:00:10.00"):
    print("frame=10")
    print("out_time=" + timecode)
    print("progress=continue")
    sys.stdout.flush()

with open(args[-1], "wb") as f:
    f.write(b"encoded webm")
print("progress=end")
"""

BROKEN_ENCODER = """
import sys

args = sys.argv[1:]
if "-progress" not in args:
    sys.stderr.write("  Duration: 00:00:10.00, start: 0.000000\\n")
    sys.exit(1)
print("out_time=00:00:01.00")
sys.stderr.write("Unknown encoder 'libvpx-vp9'\\n")
sys.exit(1)
"""

NO_DURATION_ENCODER = """
import sys

args = sys.argv[1:]
if "-progress" not in args:
    sys.stderr.write("garbage\\n")
    sys.exit(1)
print("out_time=00:00:03.00")
print("out_time=00:00:04.00")
with open(args[-1], "wb") as f:
    f.write(b"encoded webm")
"""


ENCODERS = {
    "ok": FAKE_ENCODER,
    "broken": BROKEN_ENCODER,
    "no-duration": NO_DURATION_ENCODER,
}


@pytest.fixture
def fake_encoder(tmp_path, monkeypatch):
    """Point the encoder setting at a generated script and return a setter."""
    def install(kind="ok"):
        script = write_executable(tmp_path / f"fake-ffmpeg-{kind}", ENCODERS[kind])
        monkeypatch.setattr(get_settings(), "encoder_binary", str(script))
        return script
    return install
