import io
import logging
from pathlib import Path

from framepipe import cli
from framepipe.config import default_cfg
from framepipe.ffmpeg_io import VideoProfile
from framepipe.frames import RepeatFrame
from framepipe.pipeline import AudioArgs
from framepipe.segments import SegmentFormat, write_metadata


def test_iter_frames_splits_stream_and_marks_repeats():
    stream = io.BytesIO(b"aaaa" + b"aaaa" + b"bbbb" + b"cc")

    frames = list(cli.iter_frames(stream, 4, repeat_duplicates=True))

    # the trailing partial frame is dropped
    assert len(frames) == 3
    assert isinstance(frames[1], RepeatFrame)
    assert not frames[0].repeat and not frames[2].repeat


def test_iter_frames_without_repeat_detection():
    stream = io.BytesIO(b"aaaa" * 2)
    frames = list(cli.iter_frames(stream, 4))
    assert [frame.repeat for frame in frames] == [False, False]


def test_audio_block_size_is_sample_aligned():
    audio = AudioArgs(sample_rate=44100, channels=2)
    assert cli.audio_block_size(audio, 30) == 5880
    assert cli.audio_block_size(audio, 30) % 4 == 0
    assert cli.audio_block_size(AudioArgs(sample_rate=44100, channels=1), 7) % 2 == 0


def test_record_parser_uses_recorder_option_names():
    args = cli._build_parser().parse_args(
        [
            "record",
            "out.mp4",
            "--width",
            "640",
            "--height",
            "480",
            "-r",
            "25",
            "--vq",
            "80",
            "--ffmpegresize",
            "--ffmpegresizewidth",
            "321",
            "-t",
            "10",
            "-y",
        ]
    )

    assert args.command == "record"
    assert args.framerate == 25.0
    assert args.vq == 80
    assert args.ffmpegresize is True
    assert args.ffmpegresizewidth == 321
    assert args.ffmpegresizeheight == 480
    assert args.length == 10.0
    assert args.overwrite is True
    assert args.source == "-"


def test_record_refuses_to_overwrite(tmp_path: Path, caplog):
    output = tmp_path / "out.mp4"
    output.write_bytes(b"existing")
    args = cli._build_parser().parse_args(["record", str(output), "--width", "2", "--height", "2"])

    with caplog.at_level(logging.ERROR, logger="framepipe.cli"):
        assert cli.run_record(args, default_cfg()) == 2
    assert "already exists" in caplog.text


def test_recompact_without_metadata_fails(tmp_path: Path):
    args = cli._build_parser().parse_args(["recompact", str(tmp_path)])
    assert cli.run_recompact(args, default_cfg()) == 2


def test_recompact_reports_failures(tmp_path: Path, monkeypatch):
    fmt = SegmentFormat(width=2, height=2, frame_rate=5.0, profile=VideoProfile.from_quality(50))
    write_metadata(tmp_path, fmt)
    (tmp_path / "1000").write_bytes(b"\x00" * fmt.frame_bytes)
    calls = []

    def fake_recompact(directory, *, binary):
        calls.append((directory, binary))
        return []

    monkeypatch.setattr(cli, "recompact_directory", fake_recompact)
    args = cli._build_parser().parse_args(["recompact", str(tmp_path), "--binary", "/opt/ffmpeg"])

    assert cli.run_recompact(args, default_cfg()) == 0
    assert calls == [(str(tmp_path), "/opt/ffmpeg")]
