"""Score documents as seen by the preview controller, and a file-backed host."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from PySide6.QtCore import QObject, QFileSystemWatcher, QUrl, Signal

logger = logging.getLogger(__name__)

LILYPOND_SUFFIXES = (".ly", ".ily", ".lyi")
LILYPOND_LANGUAGE_ID = "lilypond"


def path_to_uri(path: str) -> str:
    return QUrl.fromLocalFile(os.path.abspath(path)).toString()


@dataclass
class ScoreDocument:
    """Live document state supplied by the host editor.

    ``version`` only ever grows; the host bumps it on every content change.
    """

    file_name: str
    text: str = ""
    version: int = 1
    language_id: str = ""
    uri: str = field(default="")

    def __post_init__(self) -> None:
        self.file_name = os.path.abspath(self.file_name)
        if not self.uri:
            self.uri = path_to_uri(self.file_name)
        if not self.language_id and self.file_name.lower().endswith(LILYPOND_SUFFIXES):
            self.language_id = LILYPOND_LANGUAGE_ID

    @classmethod
    def from_file(cls, file_path: str) -> "ScoreDocument":
        text = Path(file_path).read_text(encoding="utf-8")
        return cls(file_name=file_path, text=text)

    @property
    def base_name(self) -> str:
        return os.path.basename(self.file_name)

    @property
    def source_dir(self) -> str:
        return os.path.dirname(self.file_name)

    def lines(self) -> list[str]:
        # Editors and LilyPond count lines on "\n" only; a trailing newline opens one more line.
        return [line.rstrip("\r") for line in self.text.split("\n")]

    def update_text(self, text: str) -> bool:
        if text == self.text:
            return False
        self.text = text
        self.version += 1
        return True


def is_lilypond_document(document: ScoreDocument | None) -> bool:
    if document is None:
        return False
    if document.language_id == LILYPOND_LANGUAGE_ID:
        return True
    return document.file_name.lower().endswith(LILYPOND_SUFFIXES)


class FileDocumentSession(QObject):
    """Turns on-disk changes of one score file into save events."""

    documentSaved = Signal(object)  # ScoreDocument
    documentMissing = Signal(str)

    def __init__(self, file_path: str, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self.document = ScoreDocument.from_file(file_path)
        self._watcher = QFileSystemWatcher(self)
        self._watcher.fileChanged.connect(self._on_file_changed)
        self._watcher.addPath(self.document.file_name)

    def reload(self) -> bool:
        try:
            text = Path(self.document.file_name).read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not read %s: %s", self.document.file_name, exc)
            self.documentMissing.emit(self.document.file_name)
            return False
        return self.document.update_text(text)

    def dispose(self) -> None:
        paths = self._watcher.files()
        if paths:
            self._watcher.removePaths(paths)

    def _on_file_changed(self, path: str) -> None:
        # Editors that save by rename drop the watch; re-arm it.
        if os.path.exists(path) and path not in self._watcher.files():
            self._watcher.addPath(path)
        if self.reload():
            logger.debug("File changed on disk: %s version=%s", path, self.document.version)
            self.documentSaved.emit(self.document)
