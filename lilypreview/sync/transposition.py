"""Wrapping LilyPond music in ``\\transpose`` blocks."""

from __future__ import annotations

import re

PITCH_EXAMPLES = ("c", "d", "e", "f", "g", "a", "b", "cis", "bes")

_PITCH_TOKEN_RE = re.compile(r"^[a-g](?:is|es|isis|eses)?[,']*$")
_PRELUDE_COMMAND_RE = re.compile(r"^\\(?:version|include)\b")
_LINE_BREAK_RE = re.compile(r"\r?\n")
_INDENT = "  "


def is_pitch_token(value: str) -> bool:
    """True for a LilyPond pitch such as ``c``, ``fis``, ``bes`` or ``c'``."""
    return bool(_PITCH_TOKEN_RE.match(str(value or "").strip()))


def wrap_transpose(content: str, from_pitch: str, to_pitch: str) -> str:
    inner = content.strip("\n")
    return f"\\transpose {from_pitch} {to_pitch} {{\n{_indent_block(inner)}\n}}"


def transpose_whole_document(content: str, from_pitch: str, to_pitch: str) -> str:
    """Wrap everything after the leading prelude in one ``\\transpose`` block.

    The prelude is the run of blank, ``%`` comment, ``\\version`` and
    ``\\include`` lines at the top; it stays outside the block. A document
    that is all prelude comes back unchanged.
    """
    lines = _LINE_BREAK_RE.split(content)
    body_start = 0
    while body_start < len(lines):
        stripped = lines[body_start].strip()
        if stripped and not stripped.startswith("%") and not _PRELUDE_COMMAND_RE.match(stripped):
            break
        body_start += 1

    prelude = "\n".join(lines[:body_start]).rstrip()
    body = "\n".join(lines[body_start:]).strip()
    if not body:
        return content

    wrapped = wrap_transpose(body, from_pitch, to_pitch)
    if not prelude:
        return f"{wrapped}\n"
    return f"{prelude}\n\n{wrapped}\n"


def transpose_line_range(content: str, first_line: int, last_line: int, from_pitch: str, to_pitch: str) -> str:
    """Wrap the 1-based inclusive line range ``first_line``..``last_line``.

    The range is clamped to the document. A range holding only whitespace
    raises ``ValueError``.
    """
    lines = _LINE_BREAK_RE.split(content)
    start = max(1, min(first_line, len(lines))) - 1
    end = max(start + 1, min(last_line, len(lines)))
    selected = "\n".join(lines[start:end])
    if not selected.strip():
        raise ValueError("Select a music fragment before transposing.")
    wrapped = wrap_transpose(selected, from_pitch, to_pitch)
    return "\n".join(lines[:start] + [wrapped] + lines[end:])


def _indent_block(content: str) -> str:
    return "\n".join(f"{_INDENT}{line}" if line else line for line in _LINE_BREAK_RE.split(content))
