"""Exception types raised by framepipe components."""

from __future__ import annotations


class FramePipeError(Exception):
    """Base class for framepipe failures."""


class ConfigError(FramePipeError, ValueError):
    """Raised when a configuration value cannot be used."""


class ConduitError(FramePipeError):
    """Raised when a conduit is used outside of its connected state."""


class ConduitConnectTimeout(FramePipeError):
    """No consumer attached to a conduit within the connect timeout."""

    def __init__(self, kind: str, timeout_ms: int) -> None:
        super().__init__(f"Cannot connect {kind} pipe to the encoder within {timeout_ms} ms")
        self.kind = kind
        self.timeout_ms = timeout_ms


class EncoderStartError(FramePipeError):
    """The encoder binary could not be spawned."""


class EncoderTerminated(FramePipeError):
    """The encoder process exited while the pipeline still had data for it."""

    def __init__(self, exit_code: int | None) -> None:
        super().__init__(f"An error occurred with the encoder, exit code: {exit_code}")
        self.exit_code = exit_code


class BackupWriteFailure(FramePipeError):
    """A backup segment could not be written."""


class CompactionFailed(FramePipeError):
    """The compaction invocation for a segment did not produce an artifact."""

    def __init__(self, segment_id: str, returncode: int | None, stderr: str | None = None) -> None:
        super().__init__(f"compaction of segment {segment_id} failed (rc={returncode})")
        self.segment_id = segment_id
        self.returncode = returncode
        self.stderr = stderr
