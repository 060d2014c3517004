"""Frames handed from the capture layer to the pipeline."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import numpy as np


def _as_flat_bytes(pixels: Any) -> np.ndarray:
    if isinstance(pixels, np.ndarray):
        return np.ascontiguousarray(pixels).view(np.uint8).reshape(-1)
    return np.frombuffer(pixels, dtype=np.uint8)


class Frame:
    """One captured image in ``rgb32`` layout (4 bytes per pixel).

    ``pixels`` may be any bytes-like object or a numpy array of shape
    ``(height, width, 4)``. The pipeline copies the pixels into its own buffer
    and then releases the frame, which invokes ``on_release`` exactly once.
    """

    repeat = False

    def __init__(self, pixels: Any, *, on_release: Callable[[], None] | None = None) -> None:
        self._pixels = pixels
        self._on_release = on_release
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    @property
    def nbytes(self) -> int:
        return 0 if self._pixels is None else int(_as_flat_bytes(self._pixels).size)

    def copy_to(self, buffer: np.ndarray) -> None:
        if self._released:
            raise ValueError("frame already released")
        data = _as_flat_bytes(self._pixels)
        if data.size != buffer.size:
            raise ValueError(f"frame holds {data.size} bytes, buffer expects {buffer.size}")
        np.copyto(buffer, data)

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            callback = self._on_release
            self._on_release = None
            self._pixels = None
        if callback is not None:
            callback()

    def __enter__(self) -> "Frame":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class RepeatFrame(Frame):
    """Marker meaning "nothing changed": resend the previous frame's pixels."""

    repeat = True

    def __init__(self, *, on_release: Callable[[], None] | None = None) -> None:
        super().__init__(None, on_release=on_release)

    def copy_to(self, buffer: np.ndarray) -> None:  # pragma: no cover - never called by the pipeline
        raise TypeError("repeat frames carry no pixel data")
