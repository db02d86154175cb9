from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_EXPORT_SUFFIXES = (".pdf", ".midi", ".mid")
_PAGE_SUFFIXES = _EXPORT_SUFFIXES + (".svg",)


@dataclass(frozen=True)
class OutputArtifact:
    path: str
    type: str
    mtime: float


def collect_artifacts(score_file_path: str) -> list[OutputArtifact]:
    """Exported files that belong to ``score_file_path``, newest first."""
    directory = os.path.dirname(os.path.abspath(score_file_path))
    base = Path(score_file_path).stem
    exact_names = {f"{base}{suffix}" for suffix in _EXPORT_SUFFIXES}

    artifacts: list[OutputArtifact] = []
    for name in os.listdir(directory):
        matches = name in exact_names or (name.startswith(f"{base}-") and name.endswith(_PAGE_SUFFIXES))
        if not matches:
            continue
        full_path = os.path.join(directory, name)
        try:
            stat = os.stat(full_path)
        except OSError:
            # Files can disappear between listing and stat.
            continue
        if not os.path.isfile(full_path):
            continue
        artifacts.append(
            OutputArtifact(
                path=full_path,
                type=os.path.splitext(name)[1][1:].upper(),
                mtime=stat.st_mtime,
            )
        )

    artifacts.sort(key=lambda item: item.mtime, reverse=True)
    return artifacts
