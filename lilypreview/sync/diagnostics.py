"""Parser for the ``path:line[:column]: warning|error: message`` lines LilyPond prints."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

DiagnosticSeverity = Literal["error", "warning"]

_DIAGNOSTIC_RE = re.compile(r"^(.+?):(\d+):(?:(\d+):)?\s*(warning|error):\s*(.+)$")


@dataclass(frozen=True)
class LilypondDiagnostic:
    file_path: str
    line: int
    column: int
    severity: DiagnosticSeverity
    message: str

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "line": self.line,
            "column": self.column,
            "severity": self.severity,
            "message": self.message,
        }


def parse_lilypond_diagnostics(output: str) -> list[LilypondDiagnostic]:
    if not (output or "").strip():
        return []

    diagnostics: list[LilypondDiagnostic] = []
    for raw in output.splitlines():
        m = _DIAGNOSTIC_RE.match(raw.rstrip())
        if not m:
            continue
        fname, row, col, severity, message = m.groups()
        file_path = fname.strip()
        if not file_path:
            continue
        diagnostics.append(
            LilypondDiagnostic(
                file_path=file_path,
                line=int(row),
                column=int(col) if col else 1,
                severity=severity,  # type: ignore[arg-type]
                message=message.strip(),
            )
        )
    return diagnostics
