"""Static scan of ``\\include`` dependencies starting at a root score file."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

_COMMENT_RE = re.compile(r"%.*$")
_INCLUDE_RE = re.compile(r'^\s*\\include\s+"([^"]+)"')
_LINE_BREAK_RE = re.compile(r"\r?\n")


@dataclass(frozen=True)
class IncludeIssue:
    file_path: str
    line: int
    severity: str
    message: str


@dataclass(frozen=True)
class IncludeEntry:
    from_file: str
    line: int
    include_path: str
    resolved_path: str


@dataclass
class IncludeGraphResult:
    files: list[str] = field(default_factory=list)
    issues: list[IncludeIssue] = field(default_factory=list)
    entries: list[IncludeEntry] = field(default_factory=list)


def extract_include_statements(content: str) -> list[tuple[int, str]]:
    result: list[tuple[int, str]] = []
    for index, raw in enumerate(_LINE_BREAK_RE.split(content or "")):
        m = _INCLUDE_RE.match(_COMMENT_RE.sub("", raw))
        if m:
            result.append((index + 1, m.group(1)))
    return result


def analyze_include_graph(root_file_path: str) -> IncludeGraphResult:
    result = IncludeGraphResult()
    visited: set[str] = set()
    stack: list[str] = []

    def _cycle_text(start: str) -> str:
        chain = stack[stack.index(start):] + [start]
        return " -> ".join(os.path.basename(segment) for segment in chain)

    def _visit(file_path: str) -> None:
        normalized = os.path.abspath(file_path)
        if normalized in stack:
            result.issues.append(
                IncludeIssue(normalized, 1, "error", f"Recursive include detected: {_cycle_text(normalized)}")
            )
            return
        if normalized in visited:
            return
        visited.add(normalized)
        result.files.append(normalized)

        try:
            content = Path(normalized).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            result.issues.append(IncludeIssue(normalized, 1, "error", f"Cannot read include file: {normalized}"))
            return

        stack.append(normalized)
        for line, include_path in extract_include_statements(content):
            resolved = os.path.abspath(os.path.join(os.path.dirname(normalized), include_path))
            result.entries.append(IncludeEntry(normalized, line, include_path, resolved))

            if not os.path.exists(resolved):
                result.issues.append(IncludeIssue(normalized, line, "error", f"Missing include: {include_path}"))
                continue
            if not os.path.isfile(resolved):
                result.issues.append(
                    IncludeIssue(normalized, line, "error", f"Included path is not a file: {include_path}")
                )
                continue
            if resolved in stack:
                result.issues.append(
                    IncludeIssue(normalized, line, "error", f"Recursive include detected: {_cycle_text(resolved)}")
                )
                continue
            _visit(resolved)
        stack.pop()

    _visit(root_file_path)
    return result
