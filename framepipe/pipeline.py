"""
FramePipeline: streams raw video frames (and optional PCM audio) to a live
encoder process through two named conduits.

Every emitted frame is also handed to a SegmentBackupRecorder, which keeps a
rotating raw backup independent of the live encode.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from concurrent import futures
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from framepipe.backup import SegmentBackupRecorder
from framepipe.conduit import ByteStreamConduit
from framepipe.encoder_process import EncoderProcess
from framepipe.errors import ConduitConnectTimeout, ConduitError, EncoderTerminated
from framepipe.ffmpeg_io import (
    BYTES_PER_PIXEL,
    DEFAULT_THREAD_QUEUE_SIZE,
    FAST_BACKUP_PROFILE,
    VideoProfile,
    build_live_command,
    even_size,
)
from framepipe.frames import Frame
from framepipe.segments import SegmentFormat

DEFAULT_CONNECT_TIMEOUT_MS = 5000


@dataclass(frozen=True)
class AudioArgs:
    sample_rate: int = 44100
    channels: int = 2
    quality: int = 50

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.channels * 2


@dataclass(frozen=True)
class VideoWriterArgs:
    """Everything the live invocation needs to know about one recording."""

    file_name: str
    width: int
    height: int
    frame_rate: float = 30
    video_quality: int = 70
    codec: str = "libx264"
    preset: str = "veryfast"
    output_pixel_format: str = "yuv420p"
    resize: tuple[int, int] | None = None
    audio: AudioArgs | None = None
    output_args: tuple[str, ...] = field(default_factory=tuple)

    @property
    def frame_bytes(self) -> int:
        return self.width * self.height * BYTES_PER_PIXEL

    @property
    def resize_target(self) -> tuple[int, int] | None:
        if not self.resize:
            return None
        return even_size(*self.resize)

    @property
    def profile(self) -> VideoProfile:
        return VideoProfile.from_quality(
            self.video_quality,
            codec=self.codec,
            preset=self.preset,
            pixel_format=self.output_pixel_format,
        )

    def audio_buffer_size(self) -> int:
        """Pipe buffer for two frame periods worth of PCM."""
        if self.audio is None:
            return 0
        return int((1.0 / float(self.frame_rate)) * self.audio.bytes_per_second * 2)

    @classmethod
    def from_config(
        cls,
        cfg: Mapping[str, Any],
        file_name: str,
        width: int,
        height: int,
        **overrides: Any,
    ) -> "VideoWriterArgs":
        video = cfg.get("video", {})
        resize_cfg = cfg.get("resize", {})
        audio_cfg = cfg.get("audio", {})
        values: dict[str, Any] = {
            "file_name": file_name,
            "width": int(width),
            "height": int(height),
            "frame_rate": float(video.get("frame_rate", 30)),
            "video_quality": int(video.get("quality", 70)),
            "codec": str(video.get("codec", "libx264")),
            "preset": str(video.get("preset", "veryfast")),
            "output_pixel_format": str(video.get("output_pixel_format", "yuv420p")),
            "resize": (
                (int(resize_cfg.get("width", width)), int(resize_cfg.get("height", height)))
                if resize_cfg.get("enabled")
                else None
            ),
            "audio": (
                AudioArgs(
                    sample_rate=int(audio_cfg.get("sample_rate", 44100)),
                    channels=int(audio_cfg.get("channels", 2)),
                    quality=int(audio_cfg.get("quality", 50)),
                )
                if audio_cfg.get("enabled")
                else None
            ),
        }
        values.update(overrides)
        return cls(**values)


def segment_format_for(
    args: VideoWriterArgs,
    *,
    mode: str = "raw",
    profile: str = "live",
    rotation_seconds: float = 5.0,
) -> SegmentFormat:
    """Backup compaction reuses the live quality settings unless the fast profile is requested."""

    compaction_profile = FAST_BACKUP_PROFILE if profile == "fast" else args.profile
    return SegmentFormat(
        width=args.width,
        height=args.height,
        frame_rate=float(args.frame_rate),
        profile=compaction_profile,
        mode=mode,
        resize=args.resize_target,
        rotation_seconds=float(rotation_seconds),
    )


CommandBuilder = Callable[[VideoWriterArgs, str, "str | None"], Sequence[str]]
ConduitFactory = Callable[..., ByteStreamConduit]
ProcessFactory = Callable[..., EncoderProcess]


def live_command(
    args: VideoWriterArgs,
    video_source: str,
    audio_source: str | None,
    *,
    binary: str = "ffmpeg",
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
) -> list[str]:
    audio = args.audio
    return build_live_command(
        binary=binary,
        output_path=args.file_name,
        video_source=video_source,
        width=args.width,
        height=args.height,
        frame_rate=args.frame_rate,
        profile=args.profile,
        resize=args.resize_target,
        audio_source=audio_source if audio is not None else None,
        sample_rate=audio.sample_rate if audio else 44100,
        channels=audio.channels if audio else 2,
        audio_quality=audio.quality if audio else 50,
        queue_size=queue_size,
        extra_output_args=args.output_args,
    )


class FramePipeline:
    """Live encode session: one encoder process fed by a video and an optional audio conduit.

    Writes are issued asynchronously but strictly one at a time per conduit:
    each call first waits for the previous write on that conduit to finish.
    """

    def __init__(
        self,
        args: VideoWriterArgs,
        *,
        binary: str = "ffmpeg",
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
        backup: SegmentBackupRecorder | None = None,
        close_timeout: float | None = None,
        conduit_factory: ConduitFactory = ByteStreamConduit,
        process_factory: ProcessFactory = EncoderProcess.start,
        command_builder: CommandBuilder | None = None,
    ) -> None:
        self.args = args
        self.connect_timeout_ms = int(connect_timeout_ms)
        self.close_timeout = close_timeout
        self._log = logging.getLogger("framepipe.pipeline")

        self._video_buffer = np.zeros(args.frame_bytes, dtype=np.uint8)
        self._log.debug("video buffer allocated: %d bytes", self._video_buffer.size)

        self._video = conduit_factory("video", buffer_size=args.frame_bytes)
        self._audio: ByteStreamConduit | None = None
        try:
            if args.audio is not None:
                self._audio = conduit_factory("audio", buffer_size=args.audio_buffer_size())
            if command_builder is None:
                command = live_command(
                    args,
                    self._video.source,
                    self._audio.source if self._audio else None,
                    binary=binary,
                    queue_size=queue_size,
                )
            else:
                command = list(command_builder(args, self._video.source, self._audio.source if self._audio else None))
            self._process = process_factory(command, windowless=True)
        except Exception:
            self._close_conduits()
            raise

        self._backup = backup
        if backup is not None:
            backup.start()

        self._first_frame = True
        self._first_audio = True
        self._last_frame_task: Future | None = None
        self._last_audio_task: Future | None = None
        self._backup_payload: bytes | None = None
        self._closed = False
        self.frames_written = 0
        self.audio_blocks_written = 0

    @property
    def supports_audio(self) -> bool:
        return self._audio is not None

    @property
    def process(self) -> EncoderProcess:
        return self._process

    @property
    def backup(self) -> SegmentBackupRecorder | None:
        return self._backup

    def _ensure_running(self) -> None:
        if self._closed:
            raise ConduitError("pipeline is closed")
        if self._process.is_exited():
            raise EncoderTerminated(self._process.exit_code)

    def _connect(self, conduit: ByteStreamConduit) -> None:
        if conduit.connect(self.connect_timeout_ms, abort=self._process.is_exited):
            return
        if self._process.is_exited():
            raise EncoderTerminated(self._process.exit_code)
        raise ConduitConnectTimeout(conduit.kind, self.connect_timeout_ms)

    def _await(self, task: Future | None) -> None:
        if task is None:
            return
        try:
            task.result()
        except (OSError, ConduitError) as exc:
            # The reader went away mid-write: the encoder is gone or going.
            raise EncoderTerminated(self._process.exit_code) from exc

    def write_frame(self, frame: Frame) -> None:
        """Send one frame to the encoder and hand a copy to the backup recorder.

        The frame is released exactly once, whether or not the write succeeds.
        """

        try:
            self._ensure_running()
            if self._first_frame:
                self._connect(self._video)
                self._first_frame = False
            self._await(self._last_frame_task)
            if not frame.repeat:
                frame.copy_to(self._video_buffer)
                self._backup_payload = None
        finally:
            frame.release()

        self._last_frame_task = self._video.write(self._video_buffer)
        self.frames_written += 1

        if self._backup is not None:
            if self._backup_payload is None:
                self._backup_payload = self._video_buffer.tobytes()
            self._backup.submit(self._backup_payload)

    def write_audio(self, block: Any, length: int | None = None) -> None:
        """Send one PCM block straight to the audio conduit.

        The block is not copied: the caller must leave it untouched until the
        next ``write_audio`` call or ``close``.
        """

        if self._audio is None:
            raise ValueError("pipeline was created without audio")
        self._ensure_running()
        if self._first_audio:
            self._connect(self._audio)
            self._first_audio = False
        self._await(self._last_audio_task)
        view = memoryview(block).cast("B")
        if length is not None:
            view = view[:length]
        self._last_audio_task = self._audio.write(view)
        self.audio_blocks_written += 1

    def _close_conduits(self) -> None:
        for conduit in (self._video, self._audio):
            if conduit is None:
                continue
            try:
                conduit.close()
            except OSError as exc:
                self._log.warning("%s conduit close failed: %r", conduit.kind, exc)

    def _drain_pending_writes(self) -> None:
        """Give outstanding writes ``close_timeout`` to finish.

        A write blocked on an encoder that stopped reading never returns, and
        closing its conduit waits for it; terminating the encoder makes it fail.
        """

        pending = [task for task in (self._last_frame_task, self._last_audio_task) if task is not None]
        if not pending or self.close_timeout is None:
            return
        _, not_done = futures.wait(pending, timeout=self.close_timeout)
        if not_done:
            self._log.warning(
                "encoder stopped reading; %d write(s) still pending after %.1fs, terminating",
                len(not_done),
                self.close_timeout,
            )
            self._process.terminate()

    def close(self) -> int | None:
        """Close both conduits, then wait for the encoder to exit. Returns its exit code."""

        if self._closed:
            return self._process.exit_code
        self._closed = True
        self._drain_pending_writes()
        self._close_conduits()
        for name, task in (("video", self._last_frame_task), ("audio", self._last_audio_task)):
            if task is not None and task.done() and task.exception() is not None:
                self._log.warning("last %s write failed: %r", name, task.exception())

        try:
            rc = self._process.wait_for_exit(timeout=self.close_timeout)
        except subprocess.TimeoutExpired:
            self._log.warning("encoder still running %.1fs after close; terminating", self.close_timeout or 0.0)
            rc = self._process.terminate()
        if rc:
            self._log.warning("encoder exited with rc=%s", rc)
        else:
            self._log.info("encoder finished %s (%d frames)", self.args.file_name, self.frames_written)
        return rc

    def __enter__(self) -> "FramePipeline":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @classmethod
    def from_config(
        cls,
        cfg: Mapping[str, Any],
        file_name: str | os.PathLike[str],
        width: int,
        height: int,
        *,
        backup: bool | None = None,
        **overrides: Any,
    ) -> "FramePipeline":
        """Build a pipeline (and its backup recorder) from a loaded configuration."""

        args = VideoWriterArgs.from_config(cfg, os.fspath(file_name), width, height, **overrides)
        encoder_cfg = cfg.get("encoder", {})
        backup_cfg = cfg.get("backup", {})
        binary = str(encoder_cfg.get("binary", "ffmpeg"))
        close_timeout = encoder_cfg.get("close_timeout_sec")

        recorder = None
        enabled = backup_cfg.get("enabled", True) if backup is None else backup
        if enabled:
            fmt = segment_format_for(
                args,
                mode=str(backup_cfg.get("mode", "raw")),
                profile=str(backup_cfg.get("profile", "live")),
                rotation_seconds=float(backup_cfg.get("rotation_seconds", 5.0)),
            )
            recorder = SegmentBackupRecorder(
                args.file_name,
                fmt,
                binary=binary,
                queue_policy=str(backup_cfg.get("queue_policy", "unbounded")),
                max_queue_frames=int(backup_cfg.get("max_queue_frames", 0) or 0),
                backlog_warn_frames=int(backup_cfg.get("backlog_warn_frames", 300) or 0),
                idle_wait=float(backup_cfg.get("idle_wait_sec", 0.5)),
                compact_on_stop=bool(backup_cfg.get("compact_on_stop", True)),
            )

        return cls(
            args,
            binary=binary,
            connect_timeout_ms=int(encoder_cfg.get("connect_timeout_ms", DEFAULT_CONNECT_TIMEOUT_MS)),
            queue_size=int(encoder_cfg.get("thread_queue_size", DEFAULT_THREAD_QUEUE_SIZE)),
            backup=recorder,
            close_timeout=float(close_timeout) if close_timeout else None,
        )
