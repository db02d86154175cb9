"""Display surface for rendered pages.

The controller only talks to ``PreviewSurface``; a host embeds the pages
however it likes. ``HtmlFileSurface`` is the file-backed host used by the
command line.
"""

from __future__ import annotations

import html
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from PySide6.QtCore import QObject, Signal

from ..sync.anchor_match import AnchorHighlighter
from ..sync.textedit import PointAnchor

logger = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_UPDATING = "updating"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class SurfaceArtifact:
    title: str
    pages_html: str
    pages_count: int
    status_text: str
    command: str
    stderr: str


class PreviewSurface(QObject):
    previewReady = Signal()
    previewClicked = Signal(str)   # textedit href
    debugMessage = Signal(str)
    disposed = Signal()

    def __init__(self, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._title = ""
        self._visible = True
        self._disposed = False
        self._status: tuple[str, str] = (STATUS_IDLE, "")
        self._artifact: SurfaceArtifact | None = None
        self._highlighter = AnchorHighlighter()
        self._auto_scroll = True

    # ---------- Host state ----------

    @property
    def title(self) -> str:
        return self._title

    @property
    def status(self) -> tuple[str, str]:
        return self._status

    @property
    def artifact(self) -> SurfaceArtifact | None:
        return self._artifact

    @property
    def highlighter(self) -> AnchorHighlighter:
        return self._highlighter

    @property
    def selected_anchor(self) -> PointAnchor | None:
        return self._highlighter.selected

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def is_visible(self) -> bool:
        return self._visible and not self._disposed

    def set_visible(self, visible: bool) -> None:
        self._visible = bool(visible)

    def set_title(self, title: str) -> None:
        self._title = str(title or "")

    def reveal(self) -> None:
        self._visible = True

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._highlighter.bind("")
        self.disposed.emit()

    # ---------- Outbound messages ----------

    def push_status(self, state: str, message: str = "") -> None:
        if self._disposed:
            return
        self._status = (str(state), str(message or ""))
        self._present_status()

    def push_artifact(
        self,
        title: str,
        pages_html: str,
        pages_count: int,
        status_text: str,
        command: str,
        stderr: str,
    ) -> None:
        if self._disposed:
            return
        self._artifact = SurfaceArtifact(
            title=title,
            pages_html=pages_html,
            pages_count=int(pages_count),
            status_text=status_text,
            command=command,
            stderr=stderr,
        )
        self._status = (STATUS_IDLE, status_text)
        count = self._highlighter.bind(pages_html)
        self.debugMessage.emit(f"anchorCount={count}")
        self._present_artifact()

    def push_cursor(
        self,
        file_path: str,
        line: int,
        column: int,
        auto_scroll: bool = True,
        hysteresis_score: float | None = None,
    ) -> PointAnchor | None:
        if self._disposed:
            return None
        self._auto_scroll = bool(auto_scroll)
        previous = self._highlighter.selected
        selected = self._highlighter.highlight(file_path, line, column, hysteresis_score)
        if selected is None:
            self.debugMessage.emit(f"cursor-no-match file={file_path} line={line} col={column}")
        else:
            self.debugMessage.emit(
                f"cursor-match line={line} col={column} -> {selected.element_id} {selected.href}"
            )
        if selected is not previous:
            self._present_selection()
        return selected

    def push_cursor_clear(self) -> None:
        if self._disposed:
            return
        had_selection = self._highlighter.selected is not None
        self._highlighter.clear_selection()
        if had_selection:
            self._present_selection()

    # ---------- Inbound events ----------

    def mark_ready(self) -> None:
        self.previewReady.emit()

    def click(self, href: str) -> None:
        self.previewClicked.emit(str(href or ""))

    # ---------- Presentation hooks ----------

    def _present_status(self) -> None:
        pass

    def _present_artifact(self) -> None:
        pass

    def _present_selection(self) -> None:
        pass


class HtmlFileSurface(PreviewSurface):
    """Writes the current preview into a standalone HTML file."""

    def __init__(self, output_path: str, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self.output_path = os.path.abspath(output_path)

    def render_page(self) -> str:
        state, message = self.status
        artifact = self.artifact
        selected = self.selected_anchor
        parts = [
            "<!DOCTYPE html>",
            "<html>",
            "<head>",
            '<meta charset="utf-8">',
            f"<title>{html.escape(self.title)}</title>",
            "</head>",
            "<body>",
            f'<div class="status" data-state="{html.escape(state)}">{html.escape(message)}</div>',
        ]
        if selected is not None:
            parts.append(
                f'<div class="selection" data-anchor="{html.escape(selected.element_id)}"'
                f' data-auto-scroll="{str(self._auto_scroll).lower()}">{html.escape(selected.href)}</div>'
            )
        if artifact is not None:
            parts.append(f'<main class="pages" data-pages="{artifact.pages_count}">')
            parts.append(artifact.pages_html)
            parts.append("</main>")
            if artifact.stderr.strip():
                parts.append(f'<pre class="log">{html.escape(artifact.stderr)}</pre>')
        parts.extend(["</body>", "</html>", ""])
        return "\n".join(parts)

    def _write(self) -> None:
        try:
            target = Path(self.output_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(self.render_page(), encoding="utf-8")
        except OSError as exc:
            logger.error("Could not write preview page %s: %s", self.output_path, exc)
            return
        logger.debug("Preview page written: %s", self.output_path)

    def _present_status(self) -> None:
        self._write()

    def _present_artifact(self) -> None:
        self._write()

    def _present_selection(self) -> None:
        self._write()
