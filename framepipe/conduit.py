"""Named one-way byte streams feeding an encoder process.

Each conduit is a FIFO in a private temporary directory. The encoder opens it
for reading by path; the pipeline opens the write end once the encoder has
attached, bounded by a connect timeout.
"""

from __future__ import annotations

import enum
import errno
import fcntl
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any

from framepipe.errors import ConduitError

CONNECT_POLL_INTERVAL = 0.01


class ConduitState(enum.Enum):
    CREATED = "created"
    AWAITING_CONNECTION = "awaiting_connection"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAULTED = "faulted"


def new_conduit_name() -> str:
    return f"framepipe-{uuid.uuid4()}"


class ByteStreamConduit:
    def __init__(
        self,
        kind: str = "video",
        *,
        name: str | None = None,
        directory: str | os.PathLike[str] | None = None,
        buffer_size: int = 0,
    ) -> None:
        self.kind = kind
        self.name = name or new_conduit_name()
        self.buffer_size = int(buffer_size)
        self._dir = Path(tempfile.mkdtemp(prefix="framepipe-", dir=directory))
        self.path = self._dir / self.name
        os.mkfifo(self.path, 0o600)
        self._fd: int | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._state = ConduitState.CREATED
        self._lock = threading.Lock()
        self._bytes_written = 0
        self._log = logging.getLogger("framepipe.conduit")

    @property
    def source(self) -> str:
        """Input location handed to the encoder invocation."""
        return str(self.path)

    @property
    def state(self) -> ConduitState:
        return self._state

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    def connect(self, timeout_ms: int, *, abort: Callable[[], bool] | None = None) -> bool:
        """Wait up to ``timeout_ms`` for a reader to attach.

        Returns False on timeout, or early when ``abort`` reports the consumer
        can no longer arrive.
        """

        if self._state is ConduitState.CONNECTED:
            return True
        if self._state in (ConduitState.CLOSED, ConduitState.FAULTED):
            raise ConduitError(f"{self.kind} conduit is {self._state.value}")

        self._state = ConduitState.AWAITING_CONNECTION
        deadline = time.monotonic() + max(0, timeout_ms) / 1000.0
        while True:
            try:
                # A non-blocking open of the write end fails with ENXIO until a
                # reader has the FIFO open.
                fd = os.open(self.path, os.O_WRONLY | os.O_NONBLOCK)
            except OSError as exc:
                if exc.errno != errno.ENXIO:
                    self._state = ConduitState.FAULTED
                    raise
                if abort is not None and abort():
                    return False
                if time.monotonic() >= deadline:
                    self._log.warning("%s conduit: no reader within %d ms", self.kind, timeout_ms)
                    return False
                time.sleep(CONNECT_POLL_INTERVAL)
                continue
            break

        os.set_blocking(fd, True)
        self._apply_buffer_size(fd)
        with self._lock:
            self._fd = fd
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"conduit-{self.kind}")
            self._state = ConduitState.CONNECTED
        self._log.debug("%s conduit connected: %s", self.kind, self.path)
        return True

    def _apply_buffer_size(self, fd: int) -> None:
        set_pipe_size = getattr(fcntl, "F_SETPIPE_SZ", None)
        if not self.buffer_size or set_pipe_size is None:
            return
        try:
            fcntl.fcntl(fd, set_pipe_size, self.buffer_size)
        except OSError as exc:
            self._log.debug("%s conduit: pipe size %d rejected: %s", self.kind, self.buffer_size, exc)

    def write(self, data: Any) -> "Future[int]":
        """Queue ``data`` for writing and return its completion token.

        The caller must wait for the previous token before calling again.
        """

        with self._lock:
            if self._state is not ConduitState.CONNECTED or self._executor is None:
                raise ConduitError(f"{self.kind} conduit is {self._state.value}")
            view = memoryview(data).cast("B")
            return self._executor.submit(self._write_all, view)

    def _write_all(self, view: memoryview) -> int:
        fd = self._fd
        if fd is None:
            raise ConduitError(f"{self.kind} conduit is {self._state.value}")
        total = 0
        try:
            while total < len(view):
                total += os.write(fd, view[total:])
        except OSError:
            self._state = ConduitState.FAULTED
            raise
        self._bytes_written += total
        return total

    def close(self) -> None:
        """Close the write end, signalling EOF to the reader, and remove the FIFO."""

        with self._lock:
            if self._state is ConduitState.CLOSED:
                return
            previous = self._state
            self._state = ConduitState.CLOSED
            executor, self._executor = self._executor, None
            fd, self._fd = self._fd, None

        if executor is not None:
            executor.shutdown(wait=True)
        if fd is not None:
            try:
                os.close(fd)
            except OSError as exc:
                self._log.debug("%s conduit close error: %r", self.kind, exc)
        elif previous in (ConduitState.CREATED, ConduitState.AWAITING_CONNECTION):
            # A reader blocked in open() is released by a writer coming and going.
            try:
                os.close(os.open(self.path, os.O_WRONLY | os.O_NONBLOCK))
            except OSError:
                pass

        shutil.rmtree(self._dir, ignore_errors=True)

    def __enter__(self) -> "ByteStreamConduit":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
