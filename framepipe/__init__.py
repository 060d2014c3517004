"""framepipe: raw frame streaming to ffmpeg with a rotating segment backup."""

from framepipe.backup import SegmentBackupRecorder
from framepipe.errors import (
    BackupWriteFailure,
    CompactionFailed,
    ConduitConnectTimeout,
    EncoderTerminated,
    FramePipeError,
)
from framepipe.frames import Frame, RepeatFrame
from framepipe.pipeline import AudioArgs, FramePipeline, VideoWriterArgs

__all__ = [
    "AudioArgs",
    "BackupWriteFailure",
    "CompactionFailed",
    "ConduitConnectTimeout",
    "EncoderTerminated",
    "Frame",
    "FramePipeError",
    "FramePipeline",
    "RepeatFrame",
    "SegmentBackupRecorder",
    "VideoWriterArgs",
]
