from pathlib import Path

import pytest

from framepipe.compaction import compact_segment, compaction_command, recompact_directory
from framepipe.errors import CompactionFailed, EncoderStartError
from framepipe.ffmpeg_io import VideoProfile
from framepipe.segments import (
    MODE_IMAGES,
    Segment,
    SegmentFormat,
    SegmentState,
    find_leftover_segments,
    write_metadata,
)


def _fmt(mode: str = "raw") -> SegmentFormat:
    return SegmentFormat(
        width=2,
        height=2,
        frame_rate=10.0,
        profile=VideoProfile.from_quality(50),
        mode=mode,
        resize=(4, 4),
    )


class FakeProcess:
    def __init__(self, command, returncode):
        self.command = command
        self.returncode = returncode
        self.stderr_text = "bad input" if returncode else None

    def wait_for_exit(self, timeout=None):
        if self.returncode == 0:
            Path(self.command[-1]).write_bytes(b"artifact")
        return self.returncode


def _factory(returncode: int, seen: list):
    def factory(command, *, windowless=True, capture_stderr=False):
        seen.append(list(command))
        return FakeProcess(command, returncode)

    return factory


def test_recompact_directory_rebuilds_leftovers(tmp_path: Path):
    fmt = _fmt()
    write_metadata(tmp_path, fmt)
    (tmp_path / "2000").write_bytes(b"\x00" * fmt.frame_bytes * 3)
    (tmp_path / "1000").write_bytes(b"\x00" * fmt.frame_bytes)
    (tmp_path / "1000.mp4.partial").write_bytes(b"")
    seen: list = []

    results = recompact_directory(tmp_path, binary="/opt/ffmpeg", process_factory=_factory(0, seen))

    assert [r.segment_id for r in results] == ["1000", "2000"]
    assert all(r.success for r in results)
    assert not (tmp_path / "1000").exists()
    assert (tmp_path / "2000.mp4").exists()
    assert seen[0][0] == "/opt/ffmpeg"
    assert seen[0][seen[0].index("-vf") + 1] == "scale=4:4"


def test_recompact_directory_honours_skip(tmp_path: Path):
    fmt = _fmt()
    write_metadata(tmp_path, fmt)
    (tmp_path / "1000").write_bytes(b"\x00" * fmt.frame_bytes)
    (tmp_path / "2000").write_bytes(b"\x00" * fmt.frame_bytes)

    results = recompact_directory(tmp_path, process_factory=_factory(0, []), skip=("2000",))

    assert [r.segment_id for r in results] == ["1000"]
    assert (tmp_path / "2000").exists()


def test_recompact_directory_without_metadata(tmp_path: Path):
    (tmp_path / "1000").write_bytes(b"\x00")
    with pytest.raises(FileNotFoundError):
        recompact_directory(tmp_path, process_factory=_factory(0, []))


def test_leftover_image_segments_are_counted(tmp_path: Path):
    fmt = _fmt(MODE_IMAGES)
    for index in range(3):
        (tmp_path / f"1500_{index:06d}.png").write_bytes(b"png")
    (tmp_path / "1500.mp4").write_bytes(b"old")

    [segment] = find_leftover_segments(tmp_path, fmt)

    assert segment.segment_id == "1500"
    assert segment.frame_count == 3
    assert compaction_command(segment, fmt, "ffmpeg")[-1] == str(tmp_path / "1500.mp4")


def test_zero_exit_without_artifact_is_a_failure(tmp_path: Path):
    fmt = _fmt()
    segment = Segment.begin(3.0, tmp_path, fmt.mode)
    segment.raw_path.write_bytes(b"\x00" * fmt.frame_bytes)

    class SilentProcess(FakeProcess):
        def wait_for_exit(self, timeout=None):
            return 0

    result = compact_segment(
        segment,
        fmt,
        process_factory=lambda command, **kwargs: SilentProcess(command, 0),
    )

    assert not result.success
    assert isinstance(result.error, CompactionFailed)
    assert segment.raw_path.exists()
    assert segment.state is SegmentState.PRESERVED


def test_start_failure_preserves_segment(tmp_path: Path):
    fmt = _fmt()
    segment = Segment.begin(4.0, tmp_path, fmt.mode)
    segment.raw_path.write_bytes(b"\x00" * fmt.frame_bytes)

    def failing_factory(command, **kwargs):
        raise EncoderStartError("no ffmpeg")

    result = compact_segment(segment, fmt, process_factory=failing_factory)

    assert not result.success
    assert isinstance(result.error, EncoderStartError)
    assert result.returncode is None
    assert segment.raw_path.exists()
