"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

from dataclasses import dataclass, replace
from collections.abc import Sequence

DEFAULT_THREAD_QUEUE_SIZE = 512
DEFAULT_SAMPLE_FORMAT = "s16le"
RAW_PIXEL_FORMAT = "rgb32"
BYTES_PER_PIXEL = 4
MAX_CRF = 51
COMPACTION_EXTENSION = ".mp4"


def clamp_quality(quality: int | float) -> int:
    return max(0, min(100, int(quality)))


def quality_to_crf(quality: int | float) -> int:
    """Map a 0-100 quality setting onto x264's 0-51 CRF scale.

    Higher quality yields a lower CRF (higher fidelity): 100 -> 0, 0 -> 51.
    """

    return (MAX_CRF * (100 - clamp_quality(quality))) // 99


def audio_bitrate_kbps(quality: int | float) -> int:
    """AAC bitrate for a 0-100 quality setting (32k .. 256k)."""

    return 32 * (1 + (clamp_quality(quality) * 7) // 100)


def even_dimension(value: int) -> int:
    value = int(value)
    if value % 2 == 1:
        value += 1
    return value


def even_size(width: int, height: int) -> tuple[int, int]:
    """Round both dimensions up to the next even number (macroblock alignment)."""

    return even_dimension(width), even_dimension(height)


def format_rate(rate: int | float) -> str:
    value = float(rate)
    if value.is_integer():
        return str(int(value))
    return f"{value:g}"


def base_args(binary: str) -> list[str]:
    return [binary, "-hide_banner", "-loglevel", "error", "-y"]


def rawvideo_input_args(
    source: str,
    width: int,
    height: int,
    frame_rate: int | float,
    *,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
    pixel_format: str = RAW_PIXEL_FORMAT,
) -> list[str]:
    """Return input arguments for raw frames read from ``source``.

    ffmpeg treats options appearing before ``-i`` as applying to that input, so
    ``-thread_queue_size`` and the raw format description always precede it.
    """

    return [
        "-thread_queue_size",
        str(queue_size),
        "-framerate",
        format_rate(frame_rate),
        "-f",
        "rawvideo",
        "-pix_fmt",
        pixel_format,
        "-video_size",
        f"{int(width)}x{int(height)}",
        "-i",
        source,
    ]


def image_sequence_input_args(pattern: str, frame_rate: int | float) -> list[str]:
    return [
        "-framerate",
        format_rate(frame_rate),
        "-start_number",
        "0",
        "-f",
        "image2",
        "-i",
        pattern,
    ]


def pcm_pipe_input_args(
    source: str,
    sample_rate: int,
    channels: int,
    *,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
    sample_format: str = DEFAULT_SAMPLE_FORMAT,
) -> list[str]:
    """Return input arguments for piping PCM blocks into ffmpeg."""

    return [
        "-thread_queue_size",
        str(queue_size),
        "-f",
        sample_format,
        "-c:a",
        f"pcm_{sample_format}",
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-i",
        source,
    ]


def scale_filter_args(resize: Sequence[int] | None) -> list[str]:
    if not resize:
        return []
    width, height = even_size(resize[0], resize[1])
    return ["-vf", f"scale={width}:{height}"]


def audio_output_args(quality: int | float) -> list[str]:
    return ["-c:a", "aac", "-b:a", f"{audio_bitrate_kbps(quality)}k"]


@dataclass(frozen=True)
class VideoProfile:
    """Output encoding parameters for one invocation."""

    crf: int
    codec: str = "libx264"
    preset: str = "veryfast"
    pixel_format: str = "yuv420p"
    frame_rate: float | None = None

    @classmethod
    def from_quality(
        cls,
        quality: int | float,
        *,
        codec: str = "libx264",
        preset: str = "veryfast",
        pixel_format: str = "yuv420p",
    ) -> "VideoProfile":
        return cls(crf=quality_to_crf(quality), codec=codec, preset=preset, pixel_format=pixel_format)

    def with_frame_rate(self, frame_rate: float | None) -> "VideoProfile":
        return replace(self, frame_rate=frame_rate)

    def output_args(self, frame_rate: int | float) -> list[str]:
        rate = self.frame_rate if self.frame_rate else frame_rate
        return [
            "-c:v",
            self.codec,
            "-crf",
            str(self.crf),
            "-preset",
            self.preset,
            "-pix_fmt",
            self.pixel_format,
            "-r",
            format_rate(rate),
        ]

    def to_dict(self) -> dict[str, object]:
        return {
            "crf": self.crf,
            "codec": self.codec,
            "preset": self.preset,
            "pixel_format": self.pixel_format,
            "frame_rate": self.frame_rate,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> "VideoProfile":
        frame_rate = payload.get("frame_rate")
        return cls(
            crf=int(payload["crf"]),
            codec=str(payload.get("codec") or "libx264"),
            preset=str(payload.get("preset") or "veryfast"),
            pixel_format=str(payload.get("pixel_format") or "yuv420p"),
            frame_rate=float(frame_rate) if frame_rate else None,
        )


# Lower-quality, faster profile used for backup compaction when configured.
FAST_BACKUP_PROFILE = VideoProfile(crf=36, preset="ultrafast", frame_rate=5.0)


def build_live_command(
    *,
    binary: str,
    output_path: str,
    video_source: str,
    width: int,
    height: int,
    frame_rate: int | float,
    profile: VideoProfile,
    resize: Sequence[int] | None = None,
    audio_source: str | None = None,
    sample_rate: int = 44100,
    channels: int = 2,
    audio_quality: int = 50,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
    extra_output_args: Sequence[str] = (),
) -> list[str]:
    """Command line for the live session: raw video (and PCM audio) in, one file out."""

    cmd = base_args(binary)
    cmd.extend(rawvideo_input_args(video_source, width, height, frame_rate, queue_size=queue_size))
    if audio_source is not None:
        cmd.extend(pcm_pipe_input_args(audio_source, sample_rate, channels, queue_size=queue_size))
    cmd.extend(profile.output_args(frame_rate))
    cmd.extend(scale_filter_args(resize))
    if audio_source is not None:
        cmd.extend(audio_output_args(audio_quality))
    cmd.extend(str(arg) for arg in extra_output_args)
    cmd.append(output_path)
    return cmd


def build_compaction_command(
    *,
    binary: str,
    source: str,
    output_path: str,
    width: int,
    height: int,
    frame_rate: int | float,
    profile: VideoProfile,
    resize: Sequence[int] | None = None,
    images: bool = False,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
) -> list[str]:
    """Command line that compacts one closed backup segment.

    ``source`` is the raw segment file, or a printf-style PNG pattern when
    ``images`` is set.
    """

    cmd = base_args(binary)
    if images:
        cmd.extend(image_sequence_input_args(source, frame_rate))
    else:
        cmd.extend(rawvideo_input_args(source, width, height, frame_rate, queue_size=queue_size))
    cmd.extend(profile.output_args(frame_rate))
    cmd.extend(scale_filter_args(resize))
    cmd.append(output_path)
    return cmd
