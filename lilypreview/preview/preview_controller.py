from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from PySide6.QtCore import QObject, QTimer, Signal

from ..documents import ScoreDocument, is_lilypond_document
from ..render.errors import CompilerNotFoundError, RenderCanceledError
from ..render.lilypond_renderer import LilypondRenderer, RenderOutput, SpawnHandle
from ..render.process_runner import CompilerProcess
from ..settings_models import PreviewSettings
from ..settings_store import SettingsStoreError
from ..sync.anchor_match import resolve_source_range
from ..sync.textedit import normalize_fs_path, parse_textedit_href
from .surface import STATUS_ERROR, STATUS_IDLE, STATUS_UPDATING, PreviewSurface

logger = logging.getLogger(__name__)

PREVIEW_TITLE = "LilyPond Preview"

REASON_OPEN = "open"
REASON_MANUAL = "manual"
REASON_TYPING = "typing"
REASON_SAVE = "save"
REASON_EDITOR_SWITCH = "editorSwitch"
REASON_SELECTION = "selection"

# Failures for these reasons also go to the host as a blocking error.
BLOCKING_REASONS = {REASON_MANUAL, REASON_OPEN}

BINARY_NOT_FOUND_MESSAGE = (
    "Could not find LilyPond binary. Install LilyPond and/or set "
    "preview.lilypond_path in the settings file."
)


@dataclass
class _ScheduledRender:
    timer: QTimer
    document: ScoreDocument
    version: int
    reason: str


@dataclass
class _InFlightRender:
    token: int
    uri: str
    version: int
    process: CompilerProcess


@dataclass(frozen=True)
class _CursorState:
    uri: str
    file_path: str
    line: int
    column: int


class PreviewController(QObject):
    """Decides when the preview document is rendered and publishes results.

    At most one render is in flight and at most one render is scheduled.
    Every attempt gets a fresh token; a completion whose token is no longer
    the latest is dropped.
    """

    renderSucceeded = Signal(int, object)   # token, RenderOutput
    renderFailed = Signal(int, str)         # token, message
    errorMessage = Signal(str)
    infoMessage = Signal(str)
    revealRequested = Signal(object)        # SourceRange
    refreshModeChanged = Signal(str)
    previewDocumentChanged = Signal(str)    # uri

    def __init__(
        self,
        renderer: LilypondRenderer,
        settings_provider: Callable[[], PreviewSettings],
        surface_factory: Callable[[], PreviewSurface],
        *,
        clock: Callable[[], float] = time.monotonic,
        mode_writer: Optional[Callable[[str], None]] = None,
        parent=None,
    ):
        super().__init__(parent)
        self._renderer = renderer
        self._settings_provider = settings_provider
        self._surface_factory = surface_factory
        self._clock = clock
        self._mode_writer = mode_writer

        self._surface: Optional[PreviewSurface] = None
        self._preview_uri: Optional[str] = None
        self._documents_by_uri: dict[str, ScoreDocument] = {}
        self._scheduled: Optional[_ScheduledRender] = None
        self._in_flight: Optional[_InFlightRender] = None
        self._render_token = 0
        self._canceled_tokens: set[int] = set()
        self._last_completed_version_by_uri: dict[str, int] = {}
        self._last_render_start_by_uri: dict[str, float] = {}
        self._cursor: Optional[_CursorState] = None
        self._mode_override: Optional[str] = None

    # ---------- Lifecycle ----------

    def initialize(self):
        self._renderer.ensure_storage_directories()

    def dispose(self):
        surface = self._surface
        self._release_surface()
        if surface is not None:
            surface.disposed.disconnect(self._on_surface_disposed)
            surface.dispose()

    # ---------- State ----------

    @property
    def surface(self) -> Optional[PreviewSurface]:
        return self._surface

    @property
    def render_token(self) -> int:
        return self._render_token

    @property
    def preview_document(self) -> Optional[ScoreDocument]:
        if self._preview_uri is None:
            return None
        return self._documents_by_uri.get(self._preview_uri)

    @property
    def has_scheduled_render(self) -> bool:
        return self._scheduled is not None

    @property
    def has_in_flight_render(self) -> bool:
        return self._in_flight is not None

    def refresh_mode(self) -> str:
        return self._mode_override or self._settings().refresh_mode

    def last_completed_version(self, uri: str) -> Optional[int]:
        return self._last_completed_version_by_uri.get(uri)

    # ---------- Commands ----------

    def open_preview(self, document: ScoreDocument | None = None) -> bool:
        logger.info("Command: preview")
        surface = self._ensure_surface(reveal=True)
        if document is None:
            document = self.preview_document
        if document is None or not is_lilypond_document(document):
            self._push_status(STATUS_IDLE, "Open a LilyPond file (.ly, .ily, .lyi) to render a preview.")
            return False

        self._set_preview_document(document)
        surface.set_title(self._title_for(document))
        return self.request_render(document, REASON_OPEN, force=True)

    def refresh_now(self) -> bool:
        logger.info("Command: preview.refreshNow")
        document = self.preview_document
        if document is None:
            self.infoMessage.emit("No active LilyPond document selected for preview.")
            return False
        self._ensure_surface(reveal=True)
        return self.request_render(document, REASON_MANUAL, force=True)

    def toggle_auto_refresh(self) -> str:
        logger.info("Command: preview.toggleAutoRefresh")
        next_mode = "idleAndSave" if self.refresh_mode() == "manual" else "manual"
        self._mode_override = next_mode
        if self._mode_writer is not None:
            try:
                self._mode_writer(next_mode)
            except SettingsStoreError as exc:
                logger.error("Refresh mode not saved: %s", exc)
                self.errorMessage.emit(f"Could not save the refresh mode: {exc}")
        self.refreshModeChanged.emit(next_mode)
        self.infoMessage.emit(f"LilyPond preview refresh mode: {next_mode}")
        return next_mode

    def render_selection(self, document: ScoreDocument, text: str, line: int = 1, column: int = 1) -> bool:
        """Render ``text``, the selection starting at 1-based ``line``:``column`` of ``document``."""
        logger.info("Command: preview.renderSelection")
        if not str(text or "").strip():
            self.infoMessage.emit("Select some LilyPond source to render.")
            return False
        self._ensure_surface(reveal=True)
        return self.request_render(
            document,
            REASON_SELECTION,
            force=True,
            content=text,
            content_origin=(max(1, int(line)), max(1, int(column))),
        )

    # ---------- Host events ----------

    def on_document_changed(self, document: ScoreDocument):
        self._remember(document)
        if not self._should_track(document):
            return
        mode = self.refresh_mode()
        if mode not in {"idleAndSave", "live"}:
            return
        self._schedule_typing_render(document, mode)

    def on_document_saved(self, document: ScoreDocument):
        self._remember(document)
        if not self._should_track(document):
            return
        if self.refresh_mode() not in {"saveOnly", "idleAndSave"}:
            return
        self._cancel_scheduled_if_same_version(document)
        self.request_render(document, REASON_SAVE)

    def on_active_editor_changed(self, document: ScoreDocument | None):
        surface = self._surface
        if document is None or surface is None or not is_lilypond_document(document):
            return
        self._remember(document)
        self._set_preview_document(document)
        surface.set_title(self._title_for(document))
        if self.refresh_mode() != "manual":
            self.request_render(document, REASON_EDITOR_SWITCH)

    def on_selection_changed(self, document: ScoreDocument, line: int, column: int):
        self._remember(document)
        self._cursor = _CursorState(
            uri=document.uri,
            file_path=document.file_name,
            line=max(1, int(line)),
            column=max(1, int(column)),
        )
        if not self._settings().cursor_highlight_enabled:
            self._push_cursor_clear()
            return
        if not self._should_track(document):
            return
        self._push_cursor(self._cursor)

    def on_configuration_changed(self):
        self._mode_override = None
        if not self._settings().cursor_highlight_enabled:
            self._push_cursor_clear()
            return
        self._push_tracked_cursor()

    # ---------- Surface events ----------

    def on_preview_ready(self):
        logger.debug("Webview message: previewReady")
        if not self._settings().cursor_highlight_enabled:
            self._push_cursor_clear()
            return
        self._push_tracked_cursor()

    def on_preview_click(self, href: str):
        logger.debug("Webview message: previewClick")
        target = parse_textedit_href(href)
        if target is None:
            logger.info("Preview click ignored: could not parse href=%s", href)
            return

        document = self._document_for_path(target.file_path)
        if document is None:
            try:
                document = ScoreDocument.from_file(target.file_path)
            except (OSError, UnicodeDecodeError) as exc:
                logger.info("Preview click navigation failed: href=%s (%s)", href, exc)
                return

        source_range = resolve_source_range(href, document.lines())
        if source_range is None:
            logger.info("Preview click navigation failed: href=%s", href)
            return
        self.revealRequested.emit(source_range)

    def on_debug_message(self, text: str):
        logger.debug("Webview: %s", text)

    # ---------- Scheduling ----------

    def request_render(
        self,
        document: ScoreDocument,
        reason: str,
        force: bool = False,
        content: str | None = None,
        content_origin: tuple[int, int] = (1, 1),
    ) -> bool:
        surface = self._surface
        if surface is None:
            return False
        if not is_lilypond_document(document):
            return False

        uri = document.uri
        if not force and self._preview_uri != uri:
            return False
        if not force and not surface.is_visible() and reason not in BLOCKING_REASONS:
            return False
        if not force and self._last_completed_version_by_uri.get(uri) == document.version:
            return False

        current = self._in_flight
        if not force and current is not None and current.uri == uri and current.version == document.version:
            return False

        last_start = self._last_render_start_by_uri.get(uri)
        if not force and reason == REASON_TYPING and last_start is not None:
            min_interval_ms = self._settings().min_render_interval_ms
            elapsed_ms = (self._clock() - last_start) * 1000.0
            remaining_ms = int(math.ceil(min_interval_ms - elapsed_ms))
            if remaining_ms > 0:
                logger.debug("Render throttled: reason=%s remainingMs=%s", reason, remaining_ms)
                self._schedule(document, reason, remaining_ms)
                return False

        self._start_render(document, reason, content, content_origin)
        return True

    def _schedule_typing_render(self, document: ScoreDocument, mode: str):
        self._schedule(document, REASON_TYPING, self._settings().typing_delay_ms(mode))

    def _schedule(self, document: ScoreDocument, reason: str, delay_ms: int):
        self._clear_scheduled()
        timer = QTimer(self)
        timer.setSingleShot(True)
        scheduled = _ScheduledRender(timer=timer, document=document, version=document.version, reason=reason)
        timer.timeout.connect(lambda s=scheduled: self._fire_scheduled(s))
        self._scheduled = scheduled
        timer.start(max(0, int(delay_ms)))

    def _fire_scheduled(self, scheduled: _ScheduledRender):
        if self._scheduled is not scheduled:
            return
        self._scheduled = None
        scheduled.timer.deleteLater()
        self.request_render(scheduled.document, scheduled.reason)

    def _cancel_scheduled_if_same_version(self, document: ScoreDocument):
        scheduled = self._scheduled
        if scheduled is None:
            return
        if scheduled.document.uri == document.uri and scheduled.version == document.version:
            self._clear_scheduled()

    def _clear_scheduled(self):
        scheduled = self._scheduled
        if scheduled is None:
            return
        self._scheduled = None
        scheduled.timer.stop()
        scheduled.timer.deleteLater()

    # ---------- Rendering ----------

    def _start_render(
        self,
        document: ScoreDocument,
        reason: str,
        content: str | None = None,
        content_origin: tuple[int, int] = (1, 1),
    ):
        surface = self._surface
        if surface is None:
            return

        uri = document.uri
        version = document.version
        self._render_token += 1
        token = self._render_token

        if reason != REASON_SELECTION:
            surface.set_title(self._title_for(document))
        self._last_render_start_by_uri[uri] = self._clock()
        logger.info(
            "Render start: reason=%s token=%s version=%s file=%s",
            reason,
            token,
            version,
            document.file_name,
        )

        if self._settings().show_updating_badge:
            self._push_status(STATUS_UPDATING, f"Rendering {document.base_name}...")

        self._cancel_in_flight()
        self._clear_scheduled()

        def _on_spawn(handle: SpawnHandle):
            if handle.token != self._render_token:
                handle.process.cancel()
                return
            self._in_flight = _InFlightRender(
                token=handle.token,
                uri=handle.uri,
                version=handle.version,
                process=handle.process,
            )

        def _on_result(output: RenderOutput):
            self._clear_in_flight(token)
            try:
                self._publish(token, uri, version, document, reason, output)
            finally:
                self._canceled_tokens.discard(token)

        def _on_error(error: Exception):
            self._clear_in_flight(token)
            try:
                self._report_failure(token, reason, error)
            finally:
                self._canceled_tokens.discard(token)

        if content is None:
            self._renderer.render_document(
                document, token, on_spawn=_on_spawn, on_result=_on_result, on_error=_on_error
            )
        else:
            start_line, start_column = content_origin
            self._renderer.render_content(
                document,
                content,
                token,
                on_spawn=_on_spawn,
                on_result=_on_result,
                on_error=_on_error,
                start_line=start_line,
                start_column=start_column,
            )

    def _publish(
        self,
        token: int,
        uri: str,
        version: int,
        document: ScoreDocument,
        reason: str,
        output: RenderOutput,
    ):
        surface = self._surface
        if surface is None or self._is_stale(token):
            logger.debug("Render result dropped: token=%s", token)
            return

        if reason != REASON_SELECTION:
            self._last_completed_version_by_uri[uri] = version
        pages_label = "1 page" if output.pages_count == 1 else f"{output.pages_count} pages"
        surface.push_artifact(
            document.base_name,
            output.pages_html,
            output.pages_count,
            f"Rendered {pages_label} in {output.elapsed_ms} ms",
            output.command,
            output.stderr,
        )
        logger.info(
            "Render success: token=%s pages=%s elapsedMs=%s",
            token,
            output.pages_count,
            output.elapsed_ms,
        )
        self.renderSucceeded.emit(token, output)

        if self._settings().cursor_highlight_enabled:
            self._push_tracked_cursor()

    def _report_failure(self, token: int, reason: str, error: Exception):
        if self._surface is None or self._is_stale(token) or isinstance(error, RenderCanceledError):
            logger.debug("Render failure dropped: token=%s (%s)", token, error)
            return

        message = self._render_error_message(error)
        logger.error("Render error: token=%s reason=%s message=%s", token, reason, message)
        self._push_status(STATUS_ERROR, message)
        self.renderFailed.emit(token, message)
        if reason in BLOCKING_REASONS:
            self.errorMessage.emit(f"LilyPond preview failed: {message}")

    def _is_stale(self, token: int) -> bool:
        return token != self._render_token or token in self._canceled_tokens

    def _cancel_in_flight(self):
        current = self._in_flight
        if current is None:
            return
        self._in_flight = None
        self._canceled_tokens.add(current.token)
        logger.debug("Render canceled: token=%s", current.token)
        current.process.cancel()

    def _clear_in_flight(self, token: int):
        if self._in_flight is not None and self._in_flight.token == token:
            self._in_flight = None

    @staticmethod
    def _render_error_message(error: Exception) -> str:
        if isinstance(error, CompilerNotFoundError):
            return BINARY_NOT_FOUND_MESSAGE
        return str(error) or error.__class__.__name__

    # ---------- Surface ----------

    def _ensure_surface(self, reveal: bool) -> PreviewSurface:
        surface = self._surface
        if surface is not None:
            if reveal:
                surface.reveal()
            return surface

        surface = self._surface_factory()
        surface.previewReady.connect(self.on_preview_ready)
        surface.previewClicked.connect(self.on_preview_click)
        surface.debugMessage.connect(self.on_debug_message)
        surface.disposed.connect(self._on_surface_disposed)
        self._surface = surface
        surface.set_title(PREVIEW_TITLE)
        if reveal:
            surface.reveal()
        self._push_status(STATUS_IDLE, "Preview ready.")
        return surface

    def _on_surface_disposed(self):
        self._release_surface()

    def _release_surface(self):
        self._surface = None
        self._preview_uri = None
        self._clear_scheduled()
        self._cancel_in_flight()

    def _push_status(self, state: str, message: str):
        if self._surface is None:
            return
        self._surface.push_status(state, message)
        logger.info("Status: %s | %s", state, message)

    def _push_cursor(self, cursor: _CursorState):
        if self._surface is None:
            return
        settings = self._settings()
        self._surface.push_cursor(
            cursor.file_path,
            cursor.line,
            cursor.column,
            settings.auto_scroll_to_highlight,
            settings.hysteresis_score,
        )
        logger.debug("Cursor: %s:%s:%s", cursor.file_path, cursor.line, cursor.column)

    def _push_tracked_cursor(self):
        cursor = self._cursor
        if cursor is None:
            return
        document = self._documents_by_uri.get(cursor.uri)
        if document is None or not self._should_track(document):
            return
        self._push_cursor(cursor)

    def _push_cursor_clear(self):
        if self._surface is None:
            return
        self._surface.push_cursor_clear()
        logger.debug("Cursor highlight cleared.")

    # ---------- Helpers ----------

    def _settings(self) -> PreviewSettings:
        return self._settings_provider()

    def _should_track(self, document: ScoreDocument) -> bool:
        surface = self._surface
        if surface is None or self._preview_uri is None:
            return False
        if not surface.is_visible():
            return False
        return is_lilypond_document(document) and document.uri == self._preview_uri

    def _remember(self, document: ScoreDocument):
        self._documents_by_uri[document.uri] = document

    def _set_preview_document(self, document: ScoreDocument):
        self._remember(document)
        if self._preview_uri != document.uri:
            self._preview_uri = document.uri
            self.previewDocumentChanged.emit(document.uri)

    def _document_for_path(self, file_path: str) -> Optional[ScoreDocument]:
        wanted = normalize_fs_path(file_path)
        for document in self._documents_by_uri.values():
            if normalize_fs_path(document.file_name) == wanted:
                return document
        return None

    @staticmethod
    def _title_for(document: ScoreDocument) -> str:
        return f"{PREVIEW_TITLE}: {document.base_name}"
