"""Supervision of encoder (ffmpeg) child processes."""

from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from typing import Any

from framepipe.errors import EncoderStartError

_log = logging.getLogger("framepipe.encoder")


class EncoderState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


def resolve_binary(binary: str) -> str:
    """Return the absolute path of ``binary``, or ``binary`` unchanged when not on PATH."""

    found = shutil.which(binary)
    return found or binary


def _windowless_kwargs() -> dict[str, Any]:
    if os.name == "nt":  # pragma: no cover - exercised on Windows only
        startupinfo = subprocess.STARTUPINFO()
        startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
        startupinfo.wShowWindow = subprocess.SW_HIDE
        return {"creationflags": subprocess.CREATE_NO_WINDOW, "startupinfo": startupinfo}
    return {"start_new_session": True}


class EncoderProcess:
    """Handle on a running encoder invocation.

    The supervisor only tracks liveness and the exit code; encoder diagnostics
    are optionally captured from stderr but never interpreted.
    """

    def __init__(self, proc: subprocess.Popen, command: Sequence[str]) -> None:
        self._proc = proc
        self.command = list(command)
        self._stderr: bytes | None = None
        self._state = EncoderState.RUNNING

    @classmethod
    def start(
        cls,
        command: Sequence[str],
        *,
        windowless: bool = True,
        capture_stderr: bool = False,
    ) -> "EncoderProcess":
        if not command:
            raise EncoderStartError("empty encoder command")
        kwargs: dict[str, Any] = _windowless_kwargs() if windowless else {}
        _log.info("Launching encoder: %s", " ".join(str(arg) for arg in command))
        try:
            proc = subprocess.Popen(
                [str(arg) for arg in command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE if capture_stderr else subprocess.DEVNULL,
                **kwargs,
            )
        except (OSError, ValueError) as exc:
            raise EncoderStartError(f"failed to start {command[0]}: {exc}") from exc
        return cls(proc, command)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def state(self) -> EncoderState:
        self.is_exited()
        return self._state

    def is_exited(self) -> bool:
        if self._proc.poll() is None:
            return False
        self._state = EncoderState.EXITED
        return True

    @property
    def exit_code(self) -> int | None:
        return self._proc.poll()

    @property
    def stderr_text(self) -> str | None:
        if not self._stderr:
            return None
        return self._stderr.decode("utf-8", errors="ignore")

    def wait_for_exit(self, timeout: float | None = None) -> int:
        """Block until the process exits and return its exit code.

        Raises ``subprocess.TimeoutExpired`` when ``timeout`` elapses first.
        """

        if self._proc.stderr is not None:
            _, stderr = self._proc.communicate(timeout=timeout)
            if stderr:
                self._stderr = stderr
        rc = self._proc.wait(timeout=timeout)
        self._state = EncoderState.EXITED
        return rc

    def terminate(self, timeout: float = 2.0) -> int:
        """Stop a process that did not exit on its own: SIGTERM, then SIGKILL."""

        rc = self._proc.poll()
        if rc is not None:
            self._state = EncoderState.EXITED
            return rc
        self._proc.terminate()
        try:
            rc = self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            _log.warning("encoder did not exit after SIGTERM; sending SIGKILL")
            self._proc.kill()
            rc = self._proc.wait(timeout=timeout)
        self._state = EncoderState.EXITED
        _log.info("encoder terminated with rc=%s", rc)
        return rc
