#!/usr/bin/env python3
"""
Command-line front end.

  framepipe record OUT.mp4 --width W --height H [--source FILE|-] ...
      Reads raw rgb32 frames (W*H*4 bytes each) from FILE or stdin and encodes
      them to OUT.mp4 while keeping a rotating raw backup beside it.

  framepipe recompact BACKUP_DIR
      Compacts raw segments left in a backup directory.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import BinaryIO

from framepipe.compaction import recompact_directory
from framepipe.config import get_cfg, log_level
from framepipe.errors import FramePipeError
from framepipe.frames import Frame, RepeatFrame
from framepipe.pipeline import AudioArgs, FramePipeline

_log = logging.getLogger("framepipe.cli")


def _configure_logging(cfg: dict) -> None:
    logging.basicConfig(
        level=log_level(cfg),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def _read_exact(stream: BinaryIO, size: int) -> bytes | None:
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            return None
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def iter_frames(stream: BinaryIO, frame_bytes: int, *, repeat_duplicates: bool = False) -> Iterator[Frame]:
    """Yield frames from a raw stream; identical consecutive frames become repeats."""

    previous: bytes | None = None
    while True:
        data = _read_exact(stream, frame_bytes)
        if data is None:
            return
        if repeat_duplicates and previous is not None and data == previous:
            yield RepeatFrame()
            continue
        previous = data
        yield Frame(data)


def audio_block_size(audio: AudioArgs, frame_rate: float) -> int:
    """PCM bytes per video frame period, aligned to whole sample frames."""

    sample_frame = audio.channels * 2
    per_frame = int(audio.bytes_per_second / float(frame_rate))
    return max(sample_frame, per_frame - per_frame % sample_frame)


def _open_source(source: str) -> BinaryIO:
    if source == "-":
        return sys.stdin.buffer
    return open(source, "rb")


def run_record(args: argparse.Namespace, cfg: dict) -> int:
    output = Path(args.output)
    if output.exists() and not args.overwrite:
        _log.error("%s already exists (use -y to overwrite)", output)
        return 2

    overrides: dict[str, object] = {}
    if args.framerate:
        overrides["frame_rate"] = float(args.framerate)
    if args.vq is not None:
        overrides["video_quality"] = int(args.vq)
    if args.ffmpegresize:
        overrides["resize"] = (int(args.ffmpegresizewidth), int(args.ffmpegresizeheight))
    if args.audio:
        overrides["audio"] = AudioArgs(
            sample_rate=int(args.audio_rate),
            channels=int(args.audio_channels),
            quality=int(args.aq if args.aq is not None else cfg["audio"].get("quality", 50)),
        )

    backup_cfg = dict(cfg.get("backup", {}))
    if args.backup_mode:
        backup_cfg["mode"] = args.backup_mode
    run_cfg = dict(cfg)
    run_cfg["backup"] = backup_cfg

    if args.delay:
        time.sleep(args.delay / 1000.0)

    source = _open_source(args.source)
    audio_stream = open(args.audio, "rb") if args.audio else None
    try:
        pipeline = FramePipeline.from_config(
            run_cfg,
            output,
            args.width,
            args.height,
            backup=False if args.no_backup else None,
            **overrides,
        )
        return _pump(pipeline, source, audio_stream, args)
    except FramePipeError as exc:
        _log.error("recording aborted: %s", exc)
        return 1
    finally:
        if audio_stream is not None:
            audio_stream.close()
        if source is not sys.stdin.buffer:
            source.close()


def _pump(pipeline: FramePipeline, source: BinaryIO, audio_stream: BinaryIO | None, args: argparse.Namespace) -> int:
    frame_rate = float(pipeline.args.frame_rate)
    limit = int(args.length * frame_rate) if args.length else None
    block = audio_block_size(pipeline.args.audio, frame_rate) if pipeline.args.audio else 0
    try:
        with pipeline:
            for frame in iter_frames(source, pipeline.args.frame_bytes, repeat_duplicates=args.repeat_duplicates):
                if limit is not None and pipeline.frames_written >= limit:
                    frame.release()
                    break
                pipeline.write_frame(frame)
                if audio_stream is not None:
                    pcm = audio_stream.read(block)
                    if pcm:
                        pipeline.write_audio(pcm)
    finally:
        if pipeline.backup is not None:
            pipeline.backup.stop()
            stats = pipeline.backup.stats()
            _log.info(
                "backup: %d frames written, %d segments compacted, %d preserved, %d dropped",
                stats.frames_written,
                stats.segments_compacted,
                stats.segments_preserved,
                stats.dropped_frames,
            )
    rc = pipeline.process.exit_code
    return 0 if not rc else 1


def run_recompact(args: argparse.Namespace, cfg: dict) -> int:
    binary = args.binary or str(cfg["encoder"].get("binary", "ffmpeg"))
    try:
        results = recompact_directory(args.directory, binary=binary)
    except FileNotFoundError as exc:
        _log.error("%s", exc)
        return 2
    failed = [result for result in results if not result.success]
    _log.info("recompacted %d segments, %d failed", len(results) - len(failed), len(failed))
    return 1 if failed else 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="framepipe", description="Raw frame recorder with rotating backup")
    subparsers = parser.add_subparsers(dest="command", required=True)

    record = subparsers.add_parser("record", help="Start recording")
    record.add_argument("output", help="Output video file")
    record.add_argument("--width", type=int, required=True, help="Frame width in pixels")
    record.add_argument("--height", type=int, required=True, help="Frame height in pixels")
    record.add_argument("--source", default="-", help="Raw rgb32 frame stream (default: stdin)")
    record.add_argument("-r", "--framerate", type=float, help="Recording frame rate")
    record.add_argument("--vq", type=int, help="Video quality (0-100)")
    record.add_argument("--aq", type=int, help="Audio quality (0-100)")
    record.add_argument("--ffmpegresize", action="store_true", help="Resize the encoded video")
    record.add_argument("--ffmpegresizewidth", type=int, default=640, help="Resize width (default = 640)")
    record.add_argument("--ffmpegresizeheight", type=int, default=480, help="Resize height (default = 480)")
    record.add_argument("-t", "--length", type=float, help="Length of recording in seconds")
    record.add_argument("--delay", type=int, default=0, help="Milliseconds to wait before starting recording")
    record.add_argument("-y", dest="overwrite", action="store_true", help="Overwrite existing file")
    record.add_argument("--audio", help="Raw s16le audio stream to mux alongside the video")
    record.add_argument("--audio-rate", type=int, default=44100, help="Audio sample rate")
    record.add_argument("--audio-channels", type=int, default=2, help="Audio channel count")
    record.add_argument("--no-backup", action="store_true", help="Disable the rotating raw backup")
    record.add_argument("--backup-mode", choices=("raw", "images"), help="Backup segment storage")
    record.add_argument(
        "--repeat-duplicates",
        action="store_true",
        help="Send unchanged frames as repeats instead of copying them",
    )

    recompact = subparsers.add_parser("recompact", help="Compact raw segments left in a backup directory")
    recompact.add_argument("directory", help="Backup directory (output file name without extension)")
    recompact.add_argument("--binary", help="Encoder binary (default from config)")
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    cfg = get_cfg()
    _configure_logging(cfg)
    if args.command == "record":
        return run_record(args, cfg)
    if args.command == "recompact":
        return run_recompact(args, cfg)
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
