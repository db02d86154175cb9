from .errors import (
    CompilerExitError,
    CompilerNotFoundError,
    NoOutputError,
    RenderCanceledError,
    RenderError,
)
from .lilypond_renderer import LilypondRenderer, RenderOutput, SpawnHandle
from .process_runner import CompilerProcess, ProcessResult, ProcessState, run_compiler

__all__ = [
    "CompilerExitError",
    "CompilerNotFoundError",
    "CompilerProcess",
    "LilypondRenderer",
    "NoOutputError",
    "ProcessResult",
    "ProcessState",
    "RenderCanceledError",
    "RenderError",
    "RenderOutput",
    "SpawnHandle",
    "run_compiler",
]
