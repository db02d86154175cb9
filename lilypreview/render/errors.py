from __future__ import annotations


class RenderError(RuntimeError):
    """Base class for a failed render or export attempt."""


class CompilerNotFoundError(RenderError):
    """Raised when the LilyPond executable cannot be started."""

    def __init__(self, program: str, detail: str = "") -> None:
        self.program = program
        self.detail = detail
        message = f"Could not start '{program}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class CompilerExitError(RenderError):
    """Raised when LilyPond exits with a non-zero status or crashes."""

    def __init__(self, message: str, *, exit_code: int | None = None, crashed: bool = False) -> None:
        self.exit_code = exit_code
        self.crashed = crashed
        super().__init__(message)


class RenderCanceledError(RenderError):
    """Raised for a process that was stopped because a newer render superseded it."""

    def __init__(self) -> None:
        super().__init__("Render canceled.")


class NoOutputError(RenderError):
    """Raised when LilyPond succeeded but the expected output files are missing."""
