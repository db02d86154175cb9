"""Scheduling tests for PreviewController with a recording renderer."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, replace
from typing import Callable

import pytest
from PySide6 import QtCore

from lilypreview.documents import ScoreDocument
from lilypreview.preview.preview_controller import BINARY_NOT_FOUND_MESSAGE, PreviewController
from lilypreview.preview.surface import PreviewSurface
from lilypreview.render.errors import CompilerExitError, CompilerNotFoundError, RenderCanceledError
from lilypreview.render.lilypond_renderer import RenderOutput, SpawnHandle
from lilypreview.settings_manager import SettingsManager
from lilypreview.settings_models import PreviewSettings
from lilypreview.settings_store import SettingsStoreError
from lilypreview.sync.textedit import TextEditTarget, format_textedit_href


def _ensure_app() -> QtCore.QCoreApplication:
    app = QtCore.QCoreApplication.instance()
    if app is None:
        app = QtCore.QCoreApplication([])
    return app


def _wait_until(predicate, timeout_ms: int = 3000) -> None:
    app = _ensure_app()
    deadline = time.monotonic() + timeout_ms / 1000.0
    while not predicate():
        if time.monotonic() >= deadline:
            raise TimeoutError("condition not met before timeout")
        app.processEvents(QtCore.QEventLoop.AllEvents, 50)
        time.sleep(0.01)


def _pump(duration_ms: int) -> None:
    app = _ensure_app()
    deadline = time.monotonic() + duration_ms / 1000.0
    while time.monotonic() < deadline:
        app.processEvents(QtCore.QEventLoop.AllEvents, 20)
        time.sleep(0.005)


class _FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def advance(self, delta: float) -> None:
        self._now += float(delta)

    def __call__(self) -> float:
        return self._now


class _FakeProcess:
    def __init__(self) -> None:
        self.canceled = False

    def cancel(self) -> None:
        self.canceled = True


@dataclass
class _RenderCall:
    token: int
    uri: str
    version: int
    content: str
    on_result: Callable[[RenderOutput], None]
    on_error: Callable[[Exception], None]
    process: _FakeProcess = field(default_factory=_FakeProcess)
    origin: tuple[int, int] = (1, 1)

    def succeed(self, pages_html: str = "<svg/>", pages_count: int = 1) -> None:
        self.on_result(
            RenderOutput(
                pages_html=pages_html,
                pages_count=pages_count,
                command="lilypond input.ly",
                stderr="",
                elapsed_ms=5,
            )
        )

    def fail(self, error: Exception) -> None:
        self.on_error(error)


class _FakeRenderer:
    def __init__(self) -> None:
        self.calls: list[_RenderCall] = []
        self.storage_ready = False

    def ensure_storage_directories(self) -> None:
        self.storage_ready = True

    def render_document(self, document, token, *, on_spawn, on_result, on_error) -> None:
        self.render_content(document, document.text, token, on_spawn=on_spawn, on_result=on_result, on_error=on_error)

    def render_content(
        self, document, content, token, *, on_spawn, on_result, on_error, start_line=1, start_column=1
    ) -> None:
        call = _RenderCall(
            token, document.uri, document.version, content, on_result, on_error, origin=(start_line, start_column)
        )
        self.calls.append(call)
        on_spawn(SpawnHandle(token=token, uri=document.uri, version=document.version, process=call.process))


class _Harness:
    def __init__(self, tmp_path, mode_writer=None, **settings) -> None:
        _ensure_app()
        base = dict(render_delay_ms=100, min_render_interval_ms=100)
        base.update(settings)
        self.settings = PreviewSettings(**base)
        self.clock = _FakeClock(100.0)
        self.renderer = _FakeRenderer()
        self.surfaces: list[PreviewSurface] = []
        self.controller = PreviewController(
            self.renderer,
            lambda: self.settings,
            self._make_surface,
            clock=self.clock,
            mode_writer=mode_writer,
        )
        self.errors: list[str] = []
        self.failures: list[tuple[int, str]] = []
        self.reveals: list[object] = []
        self.controller.errorMessage.connect(self.errors.append)
        self.controller.renderFailed.connect(lambda token, message: self.failures.append((token, message)))
        self.controller.revealRequested.connect(self.reveals.append)
        self.controller.initialize()

        path = tmp_path / "score.ly"
        path.write_text("\\relative c' {\n  c4 d e f\n}\n", encoding="utf-8")
        self.document = ScoreDocument.from_file(str(path))

    def _make_surface(self) -> PreviewSurface:
        surface = PreviewSurface()
        self.surfaces.append(surface)
        return surface

    @property
    def surface(self) -> PreviewSurface:
        return self.surfaces[-1]

    @property
    def calls(self) -> list[_RenderCall]:
        return self.renderer.calls

    def open_and_complete(self) -> None:
        self.controller.open_preview(self.document)
        self.calls[-1].succeed()

    def type_text(self, suffix: str) -> None:
        self.document.update_text(self.document.text + suffix)
        self.controller.on_document_changed(self.document)


@pytest.fixture
def harness(tmp_path):
    return _Harness(tmp_path)


@pytest.fixture
def harness_factory(tmp_path):
    return lambda **kwargs: _Harness(tmp_path, **kwargs)


def test_open_renders_and_publishes(harness):
    assert harness.renderer.storage_ready
    assert harness.controller.open_preview(harness.document)

    assert len(harness.calls) == 1
    assert harness.calls[0].version == harness.document.version
    assert harness.surface.status[0] == "updating"
    assert harness.surface.title == "LilyPond Preview: score.ly"

    harness.calls[0].succeed(pages_count=2)
    assert harness.surface.artifact is not None
    assert harness.surface.artifact.status_text == "Rendered 2 pages in 5 ms"
    assert harness.controller.last_completed_version(harness.document.uri) == harness.document.version
    assert not harness.controller.has_in_flight_render


def test_open_without_document_reports_status(harness):
    assert harness.controller.open_preview(None) is False
    assert harness.calls == []
    assert harness.surface.status == ("idle", "Open a LilyPond file (.ly, .ily, .lyi) to render a preview.")


def test_stale_result_is_not_published(harness):
    document = harness.document
    document.version = 5
    harness.controller.open_preview(document)
    first = harness.calls[0]
    assert first.version == 5

    document.update_text(document.text + "g4\n")
    assert document.version == 6
    harness.controller.on_document_saved(document)

    assert len(harness.calls) == 2
    assert first.process.canceled
    first.succeed(pages_html='<a href="textedit:///stale.ly:1:1">x</a>')
    assert harness.surface.artifact is None

    harness.calls[1].succeed()
    assert harness.surface.artifact is not None
    assert harness.controller.last_completed_version(document.uri) == 6


def test_canceled_failure_is_not_surfaced(harness):
    harness.controller.open_preview(harness.document)
    harness.calls[0].fail(RenderCanceledError())

    assert harness.surface.status[0] == "updating"
    assert harness.errors == []
    assert harness.failures == []


def test_two_keystrokes_render_once_after_the_last(harness):
    harness.open_and_complete()
    harness.clock.advance(10)

    harness.type_text("a")
    _pump(60)
    harness.type_text("b")
    second_keystroke = time.monotonic()
    assert harness.controller.has_scheduled_render

    _wait_until(lambda: len(harness.calls) == 2)
    assert time.monotonic() - second_keystroke >= 0.08
    assert harness.calls[1].version == harness.document.version

    harness.calls[1].succeed()
    _pump(250)
    assert len(harness.calls) == 2


def test_save_during_pending_debounce_renders_once_immediately(harness):
    harness.open_and_complete()
    harness.clock.advance(10)

    harness.type_text("c")
    assert harness.controller.has_scheduled_render
    harness.controller.on_document_saved(harness.document)

    assert len(harness.calls) == 2
    assert not harness.controller.has_scheduled_render
    _pump(250)
    assert len(harness.calls) == 2


def test_save_of_rendered_version_is_a_no_op(harness):
    harness.open_and_complete()
    harness.controller.on_document_saved(harness.document)
    assert len(harness.calls) == 1


def test_typing_is_throttled_from_the_previous_start(tmp_path):
    harness = _Harness(tmp_path, min_render_interval_ms=400)
    harness.open_and_complete()
    harness.clock.advance(0.1)

    harness.type_text("d")
    # The debounce fires, the throttle re-schedules instead of rendering.
    _pump(250)
    assert len(harness.calls) == 1
    assert harness.controller.has_scheduled_render

    harness.clock.advance(1.0)
    _wait_until(lambda: len(harness.calls) == 2)
    assert harness.calls[1].version == harness.document.version


def test_in_flight_duplicate_is_dropped(harness):
    harness.controller.open_preview(harness.document)
    harness.controller.request_render(harness.document, "save")
    assert len(harness.calls) == 1


def test_manual_failure_raises_host_error(harness):
    harness.controller.open_preview(harness.document)
    harness.calls[0].fail(CompilerExitError("score.ly:1:1: error: syntax error", exit_code=1))

    assert harness.surface.status == ("error", "score.ly:1:1: error: syntax error")
    assert harness.errors == ["LilyPond preview failed: score.ly:1:1: error: syntax error"]
    assert harness.failures == [(1, "score.ly:1:1: error: syntax error")]


def test_background_failure_only_updates_status(harness):
    harness.open_and_complete()
    harness.clock.advance(10)
    harness.document.update_text(harness.document.text + "e")
    harness.controller.on_document_saved(harness.document)
    harness.calls[1].fail(CompilerNotFoundError("lilypond", "No such file or directory"))

    assert harness.surface.status == ("error", BINARY_NOT_FOUND_MESSAGE)
    assert harness.errors == []
    assert harness.failures == [(2, BINARY_NOT_FOUND_MESSAGE)]


def test_refresh_modes_gate_triggers(harness):
    harness.open_and_complete()
    harness.clock.advance(10)

    harness.settings = replace(harness.settings, refresh_mode="manual")
    harness.type_text("f")
    harness.controller.on_document_saved(harness.document)
    assert not harness.controller.has_scheduled_render
    assert len(harness.calls) == 1

    harness.settings = replace(harness.settings, refresh_mode="saveOnly")
    harness.type_text("g")
    assert not harness.controller.has_scheduled_render
    harness.controller.on_document_saved(harness.document)
    assert len(harness.calls) == 2


def test_toggle_auto_refresh(harness):
    modes: list[str] = []
    harness.controller.refreshModeChanged.connect(modes.append)
    assert harness.controller.toggle_auto_refresh() == "manual"
    assert harness.controller.refresh_mode() == "manual"
    assert harness.controller.toggle_auto_refresh() == "idleAndSave"
    assert modes == ["manual", "idleAndSave"]

    harness.controller.toggle_auto_refresh()
    harness.controller.on_configuration_changed()
    assert harness.controller.refresh_mode() == "idleAndSave"


def test_render_selection_passes_its_source_position(harness):
    harness.open_and_complete()
    assert harness.controller.render_selection(harness.document, "c4 d e f", 2, 3)
    assert harness.calls[-1].origin == (2, 3)

    assert harness.controller.render_selection(harness.document, "c4", 0, -4)
    assert harness.calls[-1].origin == (1, 1)


def test_toggle_auto_refresh_persists_the_mode(tmp_path):
    workspace = tmp_path / "project"
    workspace.mkdir()
    manager = SettingsManager(workspace, tmp_path / "user")
    manager.load_all()
    harness = _Harness(
        tmp_path,
        mode_writer=lambda mode: manager.persist("preview.refresh_mode", mode),
    )

    assert harness.controller.toggle_auto_refresh() == "manual"
    saved = json.loads((workspace / ".lilypreview" / "settings.json").read_text(encoding="utf-8"))
    assert saved == {"preview": {"refresh_mode": "manual"}}
    assert manager.preview_settings().refresh_mode == "manual"
    assert harness.errors == []


def test_toggle_auto_refresh_reports_unsaved_mode(harness_factory):
    def _broken_writer(_mode: str) -> None:
        raise SettingsStoreError("Could not write settings file 'x': read-only")

    harness = harness_factory(mode_writer=_broken_writer)
    assert harness.controller.toggle_auto_refresh() == "manual"
    assert harness.controller.refresh_mode() == "manual"
    assert harness.errors == ["Could not save the refresh mode: Could not write settings file 'x': read-only"]


def test_hidden_surface_skips_background_renders(harness):
    harness.open_and_complete()
    harness.clock.advance(10)
    harness.surface.set_visible(False)

    harness.document.update_text(harness.document.text + "h")
    harness.controller.on_document_saved(harness.document)
    assert len(harness.calls) == 1

    assert harness.controller.refresh_now()
    assert len(harness.calls) == 2


def test_editor_switch_changes_preview_document(harness, tmp_path):
    harness.open_and_complete()
    other_path = tmp_path / "other.ly"
    other_path.write_text("{ a }\n", encoding="utf-8")
    other = ScoreDocument.from_file(str(other_path))

    harness.controller.on_active_editor_changed(other)
    assert harness.controller.preview_document is other
    assert harness.surface.title == "LilyPond Preview: other.ly"
    assert harness.calls[-1].uri == other.uri

    harness.controller.on_active_editor_changed(ScoreDocument(file_name=str(tmp_path / "notes.txt")))
    assert harness.controller.preview_document is other


def test_render_selection_uses_content_override(harness):
    harness.open_and_complete()
    assert harness.controller.render_selection(harness.document, "{ c'1 }")
    call = harness.calls[-1]
    assert call.content == "{ c'1 }"
    call.succeed()
    assert harness.controller.last_completed_version(harness.document.uri) == harness.document.version
    assert harness.surface.title == "LilyPond Preview: score.ly"

    assert harness.controller.render_selection(harness.document, "   ") is False


def test_cursor_follows_selection_and_clears_when_disabled(harness):
    href = format_textedit_href(TextEditTarget(harness.document.file_name, 2, 3, 5))
    harness.controller.open_preview(harness.document)
    harness.calls[0].succeed(pages_html=f'<a xlink:href="{href}"><path/></a>')

    debug: list[str] = []
    harness.surface.debugMessage.connect(debug.append)
    harness.controller.on_selection_changed(harness.document, 2, 4)
    assert harness.surface.selected_anchor is not None
    assert harness.surface.selected_anchor.href == href
    assert debug and debug[-1].startswith("cursor-match")

    harness.settings = replace(harness.settings, cursor_highlight_enabled=False)
    harness.controller.on_configuration_changed()
    assert harness.surface.selected_anchor is None


def test_cursor_is_restored_after_render(harness):
    href = format_textedit_href(TextEditTarget(harness.document.file_name, 1, 1, 3))
    harness.open_and_complete()
    harness.controller.on_selection_changed(harness.document, 1, 2)
    assert harness.surface.selected_anchor is None

    harness.controller.refresh_now()
    harness.calls[-1].succeed(pages_html=f'<a xlink:href="{href}"><path/></a>')
    assert harness.surface.selected_anchor is not None


def test_preview_click_requests_reveal(harness):
    harness.open_and_complete()
    href = format_textedit_href(TextEditTarget(harness.document.file_name, 2, 3, 5))
    harness.surface.click(href)

    assert len(harness.reveals) == 1
    source_range = harness.reveals[0]
    assert source_range.file_path == harness.document.file_name
    assert (source_range.line, source_range.start_column, source_range.end_column) == (1, 2, 4)

    harness.surface.click("textedit://garbage")
    harness.surface.click(format_textedit_href(TextEditTarget("/no/such/file.ly", 1, 1)))
    assert len(harness.reveals) == 1


def test_dispose_cancels_in_flight_and_drops_results(harness):
    harness.controller.open_preview(harness.document)
    call = harness.calls[0]
    surface = harness.surface

    harness.controller.dispose()
    assert call.process.canceled
    assert surface.is_disposed
    assert harness.controller.surface is None

    call.succeed()
    assert surface.artifact is None
    assert harness.controller.request_render(harness.document, "manual", force=True) is False


def test_surface_disposed_by_host(harness):
    harness.controller.open_preview(harness.document)
    harness.surface.dispose()
    assert harness.controller.surface is None
    assert harness.calls[0].process.canceled

    assert harness.controller.open_preview(harness.document)
    assert len(harness.surfaces) == 2


def test_preview_ready_pushes_current_cursor(harness):
    href = format_textedit_href(TextEditTarget(harness.document.file_name, 2, 3, 5))
    harness.controller.open_preview(harness.document)
    harness.calls[0].succeed(pages_html=f'<a xlink:href="{href}"><path/></a>')
    harness.controller.on_selection_changed(harness.document, 2, 3)
    harness.surface.push_cursor_clear()
    assert harness.surface.selected_anchor is None

    harness.surface.mark_ready()
    assert harness.surface.selected_anchor is not None
