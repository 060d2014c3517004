"""Compaction of closed backup segments into compressed artifacts."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from framepipe.encoder_process import EncoderProcess
from framepipe.errors import CompactionFailed, EncoderStartError
from framepipe.ffmpeg_io import build_compaction_command
from framepipe.segments import (
    MODE_IMAGES,
    Segment,
    SegmentFormat,
    SegmentState,
    find_leftover_segments,
    load_metadata,
)

ProcessFactory = Callable[..., EncoderProcess]

_log = logging.getLogger("framepipe.compaction")


@dataclass
class CompactionResult:
    segment_id: str
    artifact_path: str
    success: bool
    returncode: int | None
    removed_files: int
    error: Exception | None = None
    stderr: str | None = None


def compaction_command(segment: Segment, fmt: SegmentFormat, binary: str) -> list[str]:
    images = segment.mode == MODE_IMAGES
    return build_compaction_command(
        binary=binary,
        source=segment.image_pattern if images else str(segment.raw_path),
        output_path=str(segment.artifact_path(fmt.extension)),
        width=fmt.width,
        height=fmt.height,
        frame_rate=fmt.frame_rate,
        profile=fmt.profile,
        resize=fmt.resize,
        images=images,
    )


def compact_segment(
    segment: Segment,
    fmt: SegmentFormat,
    *,
    binary: str = "ffmpeg",
    process_factory: ProcessFactory = EncoderProcess.start,
    timeout: float | None = None,
) -> CompactionResult:
    """Run the compaction invocation for ``segment`` and wait for it.

    Raw data is deleted only when the encoder exited cleanly and produced the
    artifact; otherwise it is kept so the segment can be recompacted later.
    """

    artifact = segment.artifact_path(fmt.extension)
    segment.state = SegmentState.COMPACTING
    returncode: int | None = None
    stderr: str | None = None
    error: Exception | None = None
    try:
        proc = process_factory(compaction_command(segment, fmt, binary), windowless=True, capture_stderr=True)
        returncode = proc.wait_for_exit(timeout=timeout)
        stderr = proc.stderr_text
    except EncoderStartError as exc:
        error = exc
    except subprocess.TimeoutExpired as exc:
        error = exc
        returncode = proc.terminate()

    if error is None and returncode == 0 and artifact.exists():
        removed = segment.remove_raw()
        segment.state = SegmentState.DONE
        _log.info("compacted segment %s -> %s (%d raw files removed)", segment.segment_id, artifact.name, removed)
        return CompactionResult(
            segment_id=segment.segment_id,
            artifact_path=str(artifact),
            success=True,
            returncode=returncode,
            removed_files=removed,
            stderr=stderr,
        )

    if error is None:
        error = CompactionFailed(segment.segment_id, returncode, stderr)
    segment.state = SegmentState.PRESERVED
    _log.warning("segment %s kept after failed compaction: %s", segment.segment_id, error)
    if stderr:
        _log.debug("compaction stderr for %s:\n%s", segment.segment_id, stderr)
    return CompactionResult(
        segment_id=segment.segment_id,
        artifact_path=str(artifact),
        success=False,
        returncode=returncode,
        removed_files=0,
        error=error,
        stderr=stderr,
    )


def recompact_directory(
    directory: str | os.PathLike[str],
    *,
    binary: str = "ffmpeg",
    process_factory: ProcessFactory = EncoderProcess.start,
    skip: Sequence[str] = (),
) -> list[CompactionResult]:
    """Compact every raw segment still present in a backup directory.

    The compaction parameters come from the directory's metadata record, so
    leftovers from an earlier session are rebuilt exactly as that session
    would have.
    """

    root = Path(directory)
    fmt = load_metadata(root)
    if fmt is None:
        raise FileNotFoundError(f"no readable backup metadata in {root}")
    results: list[CompactionResult] = []
    for segment in find_leftover_segments(root, fmt):
        if segment.segment_id in skip:
            continue
        _log.info("recompacting segment %s (%d frames)", segment.segment_id, segment.frame_count)
        results.append(compact_segment(segment, fmt, binary=binary, process_factory=process_factory))
    return results
