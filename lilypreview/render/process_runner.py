"""Child-process wrapper for LilyPond invocations using QProcess."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping

from PySide6.QtCore import QObject, QProcess, QProcessEnvironment, QTimer, Signal

from .errors import CompilerExitError, CompilerNotFoundError, RenderCanceledError, RenderError

logger = logging.getLogger(__name__)

CANCEL_GRACE_MS = 1200

ResultCallback = Callable[[str], None]
ErrorCallback = Callable[[RenderError], None]


class ProcessState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    # terminate() sent and the grace timer is armed
    TERMINATING = "terminating"
    # grace period expired, kill() sent
    KILLED = "killed"
    REAPED = "reaped"


@dataclass(frozen=True)
class ProcessResult:
    stderr: str
    stdout: str
    exit_code: int | None
    error: RenderError | None

    @property
    def ok(self) -> bool:
        return self.error is None


class CompilerProcess(QObject):
    """One compiler run: spawn, collect output, report exactly once.

    Cancellation is cooperative: ``cancel()`` sends terminate, and kill
    follows if the process is still alive when the grace timer fires. The
    exit of a canceled process is always reported as ``RenderCanceledError``.
    """

    spawned = Signal()
    finished = Signal(object)  # ProcessResult

    def __init__(self, parent: QObject | None = None, *, grace_ms: int = CANCEL_GRACE_MS) -> None:
        super().__init__(parent)
        self._grace_ms = max(0, int(grace_ms))
        self._state = ProcessState.IDLE
        self._canceled = False
        self._kill_timer: QTimer | None = None
        self._stderr_chunks: list[str] = []
        self._stdout_chunks: list[str] = []
        self._program = ""
        self._on_result: ResultCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._result: ProcessResult | None = None

        self._proc = QProcess(self)
        self._proc.readyReadStandardError.connect(self._on_stderr_ready)
        self._proc.readyReadStandardOutput.connect(self._on_stdout_ready)
        self._proc.started.connect(self._on_started)
        self._proc.finished.connect(self._on_finished)
        self._proc.errorOccurred.connect(self._on_error_occurred)

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def canceled(self) -> bool:
        return self._canceled

    @property
    def result(self) -> ProcessResult | None:
        return self._result

    def is_alive(self) -> bool:
        return self._state in {ProcessState.RUNNING, ProcessState.TERMINATING, ProcessState.KILLED}

    def start(
        self,
        program: str,
        args: list[str],
        *,
        cwd: str = "",
        env: Mapping[str, str] | None = None,
        on_result: ResultCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        if self._state is not ProcessState.IDLE:
            raise RuntimeError("CompilerProcess instances are single-use.")

        self._program = str(program or "").strip()
        self._on_result = on_result
        self._on_error = on_error

        environment = QProcessEnvironment.systemEnvironment()
        for key, value in (env or {}).items():
            environment.insert(str(key), str(value))

        self._proc.setProgram(self._program)
        self._proc.setArguments([str(item) for item in args])
        self._proc.setProcessEnvironment(environment)
        if cwd and os.path.isdir(cwd):
            self._proc.setWorkingDirectory(cwd)

        self._state = ProcessState.RUNNING
        self._proc.start()

    def cancel(self) -> None:
        if self._state is ProcessState.REAPED:
            return
        self._canceled = True
        if self._state is not ProcessState.RUNNING:
            return

        self._state = ProcessState.TERMINATING
        self._proc.terminate()
        self._kill_timer = QTimer(self)
        self._kill_timer.setSingleShot(True)
        self._kill_timer.timeout.connect(self._force_kill)
        self._kill_timer.start(self._grace_ms)

    def diagnostic_text(self) -> str:
        return "".join(self._stderr_chunks)

    def output_text(self) -> str:
        return "".join(self._stdout_chunks)

    # ---------- QProcess slots ----------

    def _on_started(self) -> None:
        self.spawned.emit()

    def _on_stderr_ready(self) -> None:
        raw = bytes(self._proc.readAllStandardError())
        if raw:
            self._stderr_chunks.append(raw.decode("utf-8", errors="replace"))

    def _on_stdout_ready(self) -> None:
        raw = bytes(self._proc.readAllStandardOutput())
        if raw:
            self._stdout_chunks.append(raw.decode("utf-8", errors="replace"))

    def _on_error_occurred(self, error: QProcess.ProcessError) -> None:
        # Every other error is followed by finished(); FailedToStart is not.
        if error != QProcess.ProcessError.FailedToStart:
            return
        if self._state is ProcessState.REAPED:
            return
        detail = self._proc.errorString()
        logger.debug("Process failed to start: program=%s detail=%s", self._program, detail)
        failure: RenderError = RenderCanceledError() if self._canceled else CompilerNotFoundError(self._program, detail)
        self._complete(exit_code=None, error=failure)

    def _on_finished(self, exit_code: int, exit_status: QProcess.ExitStatus) -> None:
        if self._state is ProcessState.REAPED:
            return
        # Drain anything still buffered before the pipes close.
        self._on_stderr_ready()
        self._on_stdout_ready()

        crashed = exit_status == QProcess.ExitStatus.CrashExit
        code = None if crashed else int(exit_code)
        error: RenderError | None = None
        if self._canceled:
            error = RenderCanceledError()
        elif crashed or code != 0:
            error = CompilerExitError(self._failure_message(code, crashed), exit_code=code, crashed=crashed)
        self._complete(exit_code=code, error=error)

    def _force_kill(self) -> None:
        if self._state is not ProcessState.TERMINATING:
            return
        logger.debug("Grace period expired, killing program=%s", self._program)
        self._state = ProcessState.KILLED
        self._proc.kill()

    # ---------- Helpers ----------

    def _failure_message(self, code: int | None, crashed: bool) -> str:
        trimmed = self.diagnostic_text().strip()
        if trimmed:
            return trimmed
        if crashed:
            return "LilyPond exited with code unknown (terminated by signal)."
        return f"LilyPond exited with code {code}."

    def _complete(self, *, exit_code: int | None, error: RenderError | None) -> None:
        if self._kill_timer is not None:
            self._kill_timer.stop()
            self._kill_timer.deleteLater()
            self._kill_timer = None
        self._state = ProcessState.REAPED

        self._result = ProcessResult(
            stderr=self.diagnostic_text(),
            stdout=self.output_text(),
            exit_code=exit_code,
            error=error,
        )
        on_result, on_error = self._on_result, self._on_error
        self._on_result = None
        self._on_error = None

        self.finished.emit(self._result)
        if error is None:
            if callable(on_result):
                on_result(self._result.stderr)
        elif callable(on_error):
            on_error(error)


def run_compiler(
    program: str,
    args: list[str],
    *,
    cwd: str = "",
    env: Mapping[str, str] | None = None,
    parent: QObject | None = None,
    on_result: ResultCallback | None = None,
    on_error: ErrorCallback | None = None,
) -> CompilerProcess:
    """Start ``program`` and return its handle; callbacks fire once on exit."""
    handle = CompilerProcess(parent)
    handle.finished.connect(handle.deleteLater)
    handle.start(program, args, cwd=cwd, env=env, on_result=on_result, on_error=on_error)
    return handle


def quote_arg(value: str) -> str:
    text = str(value)
    if text and all(ch.isascii() and (ch.isalnum() or ch in "_./:-") for ch in text):
        return text
    escaped = text.replace('"', '\\"')
    return f'"{escaped}"'


def format_command(program: str, args: list[str]) -> str:
    return " ".join([program, *(quote_arg(arg) for arg in args)])
