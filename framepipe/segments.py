"""Backup segment bookkeeping and the on-disk metadata record."""

from __future__ import annotations

import enum
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from framepipe.ffmpeg_io import (
    BYTES_PER_PIXEL,
    COMPACTION_EXTENSION,
    RAW_PIXEL_FORMAT,
    VideoProfile,
)

METADATA_FILENAME = "backup.json"
METADATA_VERSION = 1
IMAGE_SUFFIX = ".png"
MODE_RAW = "raw"
MODE_IMAGES = "images"

_IMAGE_NAME = re.compile(r"^(\d+)_(\d+)\.png$")


class SegmentState(enum.Enum):
    ACTIVE = "active"
    PENDING_COMPACTION = "pending_compaction"
    COMPACTING = "compacting"
    DONE = "done"
    PRESERVED = "preserved"


@dataclass(frozen=True)
class SegmentFormat:
    """Everything needed to rebuild a compaction invocation for a segment."""

    width: int
    height: int
    frame_rate: float
    profile: VideoProfile
    mode: str = MODE_RAW
    pixel_format: str = RAW_PIXEL_FORMAT
    resize: tuple[int, int] | None = None
    extension: str = COMPACTION_EXTENSION
    rotation_seconds: float = 5.0

    @property
    def frame_bytes(self) -> int:
        return self.width * self.height * BYTES_PER_PIXEL

    def to_dict(self) -> dict[str, object]:
        return {
            "version": METADATA_VERSION,
            "width": self.width,
            "height": self.height,
            "frame_rate": self.frame_rate,
            "pixel_format": self.pixel_format,
            "mode": self.mode,
            "profile": self.profile.to_dict(),
            "resize": list(self.resize) if self.resize else None,
            "extension": self.extension,
            "rotation_seconds": self.rotation_seconds,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> "SegmentFormat":
        resize = payload.get("resize")
        profile = payload.get("profile")
        if not isinstance(profile, dict):
            raise ValueError("metadata is missing the compaction profile")
        return cls(
            width=int(payload["width"]),
            height=int(payload["height"]),
            frame_rate=float(payload["frame_rate"]),
            profile=VideoProfile.from_dict(profile),
            mode=str(payload.get("mode") or MODE_RAW),
            pixel_format=str(payload.get("pixel_format") or RAW_PIXEL_FORMAT),
            resize=(int(resize[0]), int(resize[1])) if isinstance(resize, list) and len(resize) == 2 else None,
            extension=str(payload.get("extension") or COMPACTION_EXTENSION),
            rotation_seconds=float(payload.get("rotation_seconds") or 5.0),
        )


def segment_id_for(start: float) -> str:
    """Segments are named by their start time in unix milliseconds."""
    return str(int(start * 1000))


def backup_directory_for(output_path: str | os.PathLike[str]) -> Path:
    """Backup data lives beside the output file, in a directory named after it."""
    return Path(output_path).with_suffix("")


@dataclass
class Segment:
    segment_id: str
    start: float
    directory: Path
    mode: str = MODE_RAW
    frame_count: int = 0
    state: SegmentState = field(default=SegmentState.ACTIVE)

    @classmethod
    def begin(cls, start: float, directory: Path, mode: str) -> "Segment":
        return cls(segment_id=segment_id_for(start), start=start, directory=directory, mode=mode)

    @property
    def raw_path(self) -> Path:
        return self.directory / self.segment_id

    @property
    def image_pattern(self) -> str:
        return str(self.directory / f"{self.segment_id}_%06d{IMAGE_SUFFIX}")

    def image_path(self, index: int) -> Path:
        return self.directory / f"{self.segment_id}_{index:06d}{IMAGE_SUFFIX}"

    def artifact_path(self, extension: str = COMPACTION_EXTENSION) -> Path:
        return self.directory / f"{self.segment_id}{extension}"

    def contains(self, timestamp: float, window: float) -> bool:
        return self.start <= timestamp < self.start + window

    def raw_files(self) -> list[Path]:
        if self.mode == MODE_IMAGES:
            return sorted(self.directory.glob(f"{self.segment_id}_*{IMAGE_SUFFIX}"))
        return [self.raw_path] if self.raw_path.exists() else []

    def remove_raw(self) -> int:
        removed = 0
        for path in self.raw_files():
            path.unlink(missing_ok=True)
            removed += 1
        return removed


def _write_payload_atomic(path: Path, payload: dict[str, object]) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
        handle.write("\n")
    os.replace(tmp_path, path)


def write_metadata(directory: Path, fmt: SegmentFormat) -> Path:
    path = Path(directory) / METADATA_FILENAME
    _write_payload_atomic(path, fmt.to_dict())
    return path


def load_metadata(directory: str | os.PathLike[str]) -> SegmentFormat | None:
    path = Path(directory) / METADATA_FILENAME
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return SegmentFormat.from_dict(payload)
    except (KeyError, TypeError, ValueError):
        return None


def find_leftover_segments(directory: str | os.PathLike[str], fmt: SegmentFormat) -> list[Segment]:
    """Segments whose raw data is still on disk, oldest first."""

    root = Path(directory)
    if not root.is_dir():
        return []
    mode = fmt.mode
    ids: set[str] = set()
    for entry in root.iterdir():
        if not entry.is_file():
            continue
        if mode == MODE_IMAGES:
            match = _IMAGE_NAME.match(entry.name)
            if match:
                ids.add(match.group(1))
        elif entry.name.isdigit():
            ids.add(entry.name)
    segments = [
        Segment(
            segment_id=segment_id,
            start=int(segment_id) / 1000.0,
            directory=root,
            mode=mode,
            state=SegmentState.PENDING_COMPACTION,
        )
        for segment_id in ids
    ]
    segments.sort(key=lambda seg: int(seg.segment_id))
    for segment in segments:
        segment.frame_count = _count_frames(segment, fmt)
    return segments


def _count_frames(segment: Segment, fmt: SegmentFormat) -> int:
    if segment.mode == MODE_IMAGES:
        return len(segment.raw_files())
    try:
        return segment.raw_path.stat().st_size // max(1, fmt.frame_bytes)
    except OSError:
        return 0
