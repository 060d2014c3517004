"""
SegmentBackupRecorder: persists every emitted video frame to rotating raw
segments on a background thread and compacts each closed segment with a
second encoder invocation.

- Frames are handed off through submit(); the live path never waits on disk
- Segments rotate on wall-clock boundaries (rotation window)
- Raw data is removed only after a successful compaction
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from PIL import Image

from framepipe.compaction import CompactionResult, ProcessFactory, compact_segment
from framepipe.encoder_process import EncoderProcess
from framepipe.errors import BackupWriteFailure, ConfigError
from framepipe.segments import (
    MODE_IMAGES,
    MODE_RAW,
    Segment,
    SegmentFormat,
    SegmentState,
    backup_directory_for,
    write_metadata,
)

QUEUE_UNBOUNDED = "unbounded"
QUEUE_DROP_OLDEST = "drop_oldest"
QUEUE_BLOCK = "block"

_STOP = object()

# Recent segments and compaction results kept for inspection; totals live in counters.
HISTORY_LIMIT = 64


@dataclass(frozen=True)
class BackupStats:
    backlog: int
    peak_backlog: int
    frames_received: int
    frames_written: int
    dropped_frames: int
    segments_closed: int
    segments_compacted: int
    segments_preserved: int
    errors: int


class SegmentBackupRecorder:
    def __init__(
        self,
        output_path: str | os.PathLike[str],
        fmt: SegmentFormat,
        *,
        binary: str = "ffmpeg",
        queue_policy: str = QUEUE_UNBOUNDED,
        max_queue_frames: int = 0,
        backlog_warn_frames: int = 300,
        idle_wait: float = 0.5,
        compact_on_stop: bool = True,
        clock: Callable[[], float] = time.time,
        compactor: Callable[[Segment, SegmentFormat], CompactionResult] | None = None,
        process_factory: ProcessFactory = EncoderProcess.start,
        on_compacted: Callable[[CompactionResult], None] | None = None,
    ) -> None:
        if fmt.mode not in (MODE_RAW, MODE_IMAGES):
            raise ConfigError(f"unknown backup mode {fmt.mode!r}")
        if queue_policy not in (QUEUE_UNBOUNDED, QUEUE_DROP_OLDEST, QUEUE_BLOCK):
            raise ConfigError(f"unknown backup queue policy {queue_policy!r}")
        if queue_policy != QUEUE_UNBOUNDED and max_queue_frames <= 0:
            raise ConfigError(f"queue policy {queue_policy!r} needs max_queue_frames > 0")

        self.directory = backup_directory_for(output_path)
        self.fmt = fmt
        self.rotation_seconds = float(fmt.rotation_seconds)
        self.binary = binary
        self.queue_policy = queue_policy
        self.backlog_warn_frames = int(backlog_warn_frames)
        self.idle_wait = float(idle_wait)
        self.compact_on_stop = compact_on_stop
        self._clock = clock
        self._process_factory = process_factory
        self._compactor = compactor or self._default_compactor
        self._on_compacted = on_compacted

        self.max_queue_frames = 0 if queue_policy == QUEUE_UNBOUNDED else int(max_queue_frames)
        self._q: "queue.Queue[object]" = queue.Queue()
        self._submit_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self.max_queue_frames) if queue_policy == QUEUE_BLOCK else None
        self._pending = 0
        self._idle = threading.Condition()
        self._t: threading.Thread | None = None
        self._stopped = threading.Event()

        self._active: Segment | None = None
        self.closed_segments: deque[Segment] = deque(maxlen=HISTORY_LIMIT)
        self.compaction_results: deque[CompactionResult] = deque(maxlen=HISTORY_LIMIT)
        self._segments_closed = 0
        self._segments_compacted = 0
        self._segments_preserved = 0

        self._frames_received = 0
        self._frames_written = 0
        self._dropped = 0
        self._peak_backlog = 0
        self._errors = 0
        self._warned_backlog = False

        self._log = logging.getLogger("framepipe.backup")

    # ------------------------------------------------------------------ hand-off

    def start(self) -> None:
        if self._t is not None:
            return
        self._stopped.clear()
        self._t = threading.Thread(target=self._run, name="segment-backup", daemon=True)
        self._t.start()
        self._log.info("backup recorder started at %s (%s mode)", self.directory, self.fmt.mode)

    def submit(self, payload: bytes, timestamp: float | None = None) -> bool:
        """Hand one frame to the worker. Returns False when the frame was not queued.

        The frame is stamped at hand-off, so segment boundaries follow capture
        time even while the worker lags behind.
        """

        if self._stopped.is_set():
            return False
        item = (self._clock() if timestamp is None else timestamp, payload)
        if self._slots is not None:
            # backpressure: wait for the worker to free a slot
            self._slots.acquire()
        with self._submit_lock:
            # stop() may have queued its sentinel since the check above
            if self._stopped.is_set():
                if self._slots is not None:
                    self._slots.release()
                return False
            self._frames_received += 1
            if self.queue_policy == QUEUE_DROP_OLDEST:
                while self._q.qsize() >= self.max_queue_frames:
                    if not self._evict_oldest():
                        break
            with self._idle:
                self._pending += 1
            self._q.put(item)
            self._observe_backlog()
        return True

    def _evict_oldest(self) -> bool:
        try:
            self._q.get_nowait()
        except queue.Empty:
            return False
        self._dropped += 1
        self._task_done()
        return True

    def _task_done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending <= 0:
                self._idle.notify_all()

    def _observe_backlog(self) -> None:
        backlog = self._q.qsize()
        if backlog > self._peak_backlog:
            self._peak_backlog = backlog
        if self.backlog_warn_frames <= 0:
            return
        if backlog >= self.backlog_warn_frames and not self._warned_backlog:
            self._warned_backlog = True
            self._log.warning("backup backlog at %d frames; backup is lagging the live recording", backlog)
        elif backlog < self.backlog_warn_frames // 2 and self._warned_backlog:
            self._warned_backlog = False
            self._log.info("backup backlog recovered (%d frames)", backlog)

    @property
    def backlog(self) -> int:
        return self._q.qsize()

    @property
    def peak_backlog(self) -> int:
        return self._peak_backlog

    @property
    def dropped_frames(self) -> int:
        return self._dropped

    @property
    def errors(self) -> int:
        return self._errors

    @property
    def active_segment(self) -> Segment | None:
        return self._active

    def stats(self) -> BackupStats:
        return BackupStats(
            backlog=self.backlog,
            peak_backlog=self._peak_backlog,
            frames_received=self._frames_received,
            frames_written=self._frames_written,
            dropped_frames=self._dropped,
            segments_closed=self._segments_closed,
            segments_compacted=self._segments_compacted,
            segments_preserved=self._segments_preserved,
            errors=self._errors,
        )

    def join(self, timeout: float | None = None) -> bool:
        """Wait until every submitted frame has been handled (or dropped)."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending > 0:
                if deadline is None:
                    self._idle.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def stop(self, timeout: float | None = None) -> None:
        """Drain queued frames, optionally compact the active segment, and stop."""

        if self._t is None or self._stopped.is_set():
            return
        self._stopped.set()
        with self._submit_lock:
            self._q.put(_STOP)
        self._t.join(timeout)
        if self._t.is_alive():
            self._log.warning("backup worker still busy after %.1fs", timeout or 0.0)
            return
        self._t = None
        self._log.info("backup recorder stopped")

    # ------------------------------------------------------------------ worker

    def _run(self) -> None:
        while True:
            try:
                item = self._q.get(timeout=self.idle_wait)
            except queue.Empty:
                continue
            if item is _STOP:
                self._finish()
                return
            try:
                timestamp, payload = item  # type: ignore[misc]
                self._handle_frame(timestamp, payload)
            except Exception as exc:  # noqa: BLE001 - backup failures never reach the live path
                self._errors += 1
                self._log.exception("backup frame failed: %r", exc)
            finally:
                if self._slots is not None:
                    self._slots.release()
                self._task_done()

    def _handle_frame(self, timestamp: float, payload: bytes) -> None:
        closing = self._rotate(timestamp)
        try:
            self._append(payload)
        finally:
            if closing is not None:
                self._compact(closing)

    def _rotate(self, timestamp: float) -> Segment | None:
        """Start a new active segment when the window elapsed; return the closed one."""

        if self._active is None:
            self.directory.mkdir(parents=True, exist_ok=True)
            write_metadata(self.directory, self.fmt)
            self._active = Segment.begin(timestamp, self.directory, self.fmt.mode)
            self._log.debug("segment %s started", self._active.segment_id)
            return None

        if timestamp - self._active.start < self.rotation_seconds:
            return None

        closing = self._active
        self._active = Segment.begin(timestamp, self.directory, self.fmt.mode)
        closing.state = SegmentState.PENDING_COMPACTION
        self.closed_segments.append(closing)
        self._segments_closed += 1
        self._log.debug(
            "segment %s closed after %d frames; segment %s started",
            closing.segment_id,
            closing.frame_count,
            self._active.segment_id,
        )
        return closing

    def _append(self, payload: bytes) -> None:
        segment = self._active
        assert segment is not None
        if len(payload) != self.fmt.frame_bytes:
            raise BackupWriteFailure(
                f"frame of {len(payload)} bytes does not match {self.fmt.width}x{self.fmt.height}"
            )
        try:
            if segment.mode == MODE_IMAGES:
                image = Image.frombuffer(
                    "RGBA", (self.fmt.width, self.fmt.height), payload, "raw", "BGRA", 0, 1
                )
                image.save(segment.image_path(segment.frame_count), format="PNG")
            else:
                with open(segment.raw_path, "ab") as handle:
                    handle.write(payload)
        except OSError as exc:
            raise BackupWriteFailure(f"cannot append to segment {segment.segment_id}: {exc}") from exc
        segment.frame_count += 1
        self._frames_written += 1

    def _compact(self, segment: Segment) -> None:
        result = self._compactor(segment, self.fmt)
        self.compaction_results.append(result)
        if result.success:
            self._segments_compacted += 1
        else:
            self._segments_preserved += 1
        if self._on_compacted is not None:
            try:
                self._on_compacted(result)
            except Exception as exc:  # noqa: BLE001 - observer errors are diagnostics only
                self._log.warning("compaction callback failed: %r", exc)

    def _default_compactor(self, segment: Segment, fmt: SegmentFormat) -> CompactionResult:
        return compact_segment(segment, fmt, binary=self.binary, process_factory=self._process_factory)

    def _finish(self) -> None:
        segment, self._active = self._active, None
        if segment is None or segment.frame_count == 0:
            return
        if not self.compact_on_stop:
            self._log.info("leaving final segment %s uncompacted", segment.segment_id)
            return
        segment.state = SegmentState.PENDING_COMPACTION
        self.closed_segments.append(segment)
        self._segments_closed += 1
        try:
            self._compact(segment)
        except Exception as exc:  # noqa: BLE001 - log and keep raw data
            self._errors += 1
            self._log.exception("final compaction of %s failed: %r", segment.segment_id, exc)
