from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable

from PySide6.QtCore import QCoreApplication, QSocketNotifier, QTimer

from . import __version__
from .documents import FileDocumentSession, ScoreDocument
from .log import configure_logging
from .output import collect_artifacts
from .preview import HtmlFileSurface, PreviewController
from .preview.preview_controller import BINARY_NOT_FOUND_MESSAGE
from .render import CompilerExitError, CompilerNotFoundError, LilypondRenderer, RenderError, RenderOutput
from .settings_manager import SettingsManager
from .settings_models import REFRESH_MODES, PreviewSettings
from .sync import (
    analyze_include_graph,
    is_pitch_token,
    parse_lilypond_diagnostics,
    transpose_line_range,
    transpose_whole_document,
)
from .sync.transposition import PITCH_EXAMPLES

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1

CONSOLE_HELP = "Commands: r = refresh now, m = toggle auto refresh, q = quit."


def _pitch(value: str) -> str:
    if not is_pitch_token(value):
        raise argparse.ArgumentTypeError(
            f"{value!r} is not a LilyPond pitch (examples: {', '.join(PITCH_EXAMPLES)}, c', g,,)"
        )
    return value.strip()


def _line_range(value: str) -> tuple[int, int]:
    first, _, last = value.partition(":")
    try:
        start = int(first)
        end = int(last) if last else start
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected LINE or FIRST:LAST, got {value!r}") from None
    if start < 1 or end < start:
        raise argparse.ArgumentTypeError(f"invalid line range {value!r}")
    return start, end


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--settings", help="Path to a settings.json file (default: user config dir).")
    common.add_argument("--lilypond", help="LilyPond executable, overrides preview.lilypond_path.")
    common.add_argument("--mode", choices=REFRESH_MODES, help="Refresh mode, overrides preview.refresh_mode.")
    common.add_argument("-v", "--verbose", action="store_true", help="Log debug output.")

    parser = argparse.ArgumentParser(prog="lilypreview", description="Live LilyPond preview.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", parents=[common], help="Re-render a score whenever it changes on disk.")
    watch.add_argument("file")
    watch.add_argument("-o", "--output", help="HTML page to write (default: <file>.preview.html).")

    render = sub.add_parser("render", parents=[common], help="Render a score once into an HTML page.")
    render.add_argument("file")
    render.add_argument("-o", "--output", help="HTML page to write (default: <file>.preview.html).")

    export = sub.add_parser("export", parents=[common], help="Export a score as PDF or MIDI.")
    export.add_argument("format", choices=("pdf", "midi"))
    export.add_argument("file")

    diagnostics = sub.add_parser("diagnostics", parents=[common], help="Render and list warnings and errors.")
    diagnostics.add_argument("file")
    diagnostics.add_argument("--json", action="store_true", help="Print diagnostics as JSON.")

    includes = sub.add_parser("includes", parents=[common], help="Scan the \\include graph of a score.")
    includes.add_argument("file")

    artifacts = sub.add_parser("artifacts", parents=[common], help="List exported files of a score.")
    artifacts.add_argument("file")

    transpose = sub.add_parser("transpose", parents=[common], help="Wrap music in a \\transpose block.")
    transpose.add_argument("from_pitch", type=_pitch, metavar="FROM")
    transpose.add_argument("to_pitch", type=_pitch, metavar="TO")
    transpose.add_argument("file")
    transpose.add_argument("--lines", type=_line_range, help="Only transpose lines FIRST:LAST (1-based, inclusive).")
    transpose.add_argument("-i", "--in-place", action="store_true", help="Rewrite the file instead of printing.")
    return parser


def _load_settings(args: argparse.Namespace) -> SettingsManager:
    score_dir = os.path.dirname(os.path.abspath(args.file))
    if args.settings:
        settings_path = Path(args.settings).expanduser()
        manager = SettingsManager(score_dir, settings_path.parent, user_filename=settings_path.name)
    else:
        manager = SettingsManager(score_dir)
    manager.load_all()
    for scope, error in manager.load_errors().items():
        logger.warning("Ignoring unreadable %s settings: %s", scope, error)

    if args.lilypond:
        manager.override("preview.lilypond_path", args.lilypond)
    if args.mode:
        manager.override("preview.refresh_mode", args.mode)
    return manager


def _default_output(file_path: str) -> str:
    return str(Path(file_path).with_suffix(".preview.html"))


def _make_renderer(settings: Callable[[], PreviewSettings], parent=None) -> LilypondRenderer:
    renderer = LilypondRenderer(
        settings().resolved_cache_dir(),
        lambda: settings().lilypond_path,
        parent,
    )
    renderer.ensure_storage_directories()
    return renderer


def _install_interrupt_handler(app: QCoreApplication) -> QTimer:
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    # The interpreter only runs signal handlers between bytecodes; keep it awake.
    ticker = QTimer(app)
    ticker.timeout.connect(lambda: None)
    ticker.start(250)
    return ticker


def handle_console_command(command: str, controller: PreviewController, app: QCoreApplication) -> bool:
    """Run one line typed into a `watch` session; False for unknown input."""
    command = command.strip().lower()
    if not command:
        return True
    if command in {"r", "refresh"}:
        controller.refresh_now()
    elif command in {"m", "mode"}:
        controller.toggle_auto_refresh()
    elif command in {"q", "quit"}:
        app.quit()
    else:
        print(CONSOLE_HELP)
        return False
    return True


def _install_console_commands(app: QCoreApplication, controller: PreviewController) -> QSocketNotifier | None:
    if os.name == "nt" or sys.stdin is None:
        return None
    try:
        fd = sys.stdin.fileno()
    except (AttributeError, OSError, ValueError):
        return None

    notifier = QSocketNotifier(fd, QSocketNotifier.Type.Read, app)
    buffer = bytearray()

    def _read_ready():
        try:
            data = os.read(fd, 1024)
        except OSError as exc:
            logger.debug("Console input closed: %s", exc)
            data = b""
        if not data:
            notifier.setEnabled(False)
            return
        buffer.extend(data)
        while b"\n" in buffer:
            line, _, rest = bytes(buffer).partition(b"\n")
            buffer[:] = rest
            handle_console_command(line.decode("utf-8", "replace"), controller, app)

    notifier.activated.connect(_read_ready)
    return notifier


def _run_watch(app: QCoreApplication, args: argparse.Namespace, manager: SettingsManager) -> int:
    settings = manager.preview_settings
    output_path = os.path.abspath(args.output or _default_output(args.file))
    session = FileDocumentSession(args.file, app)
    controller = PreviewController(
        _make_renderer(settings, app),
        settings,
        lambda: HtmlFileSurface(output_path, app),
        mode_writer=lambda mode: manager.persist("preview.refresh_mode", mode),
        parent=app,
    )
    session.documentSaved.connect(controller.on_document_saved)
    session.documentMissing.connect(lambda path: logger.warning("Score file missing: %s", path))
    controller.errorMessage.connect(lambda text: print(text, file=sys.stderr))
    controller.infoMessage.connect(print)
    controller.renderSucceeded.connect(lambda _token, _output: print(f"Preview updated: {output_path}"))

    print(f"Watching {session.document.file_name} (mode={controller.refresh_mode()}), Ctrl+C to stop.")
    QTimer.singleShot(0, lambda: controller.open_preview(session.document))
    _install_interrupt_handler(app)
    if _install_console_commands(app, controller) is not None:
        print(CONSOLE_HELP)
    code = app.exec()
    controller.dispose()
    session.dispose()
    return code


def _run_render(app: QCoreApplication, args: argparse.Namespace, manager: SettingsManager) -> int:
    settings = manager.preview_settings
    output_path = os.path.abspath(args.output or _default_output(args.file))
    document = ScoreDocument.from_file(args.file)
    controller = PreviewController(
        _make_renderer(settings, app),
        settings,
        lambda: HtmlFileSurface(output_path, app),
        parent=app,
    )

    def _done(_token: int, output: RenderOutput):
        print(f"Rendered {output.pages_count} page(s) in {output.elapsed_ms} ms: {output_path}")
        app.exit(EXIT_OK)

    def _failed(_token: int, message: str):
        print(f"LilyPond preview failed: {message}", file=sys.stderr)
        app.exit(EXIT_FAILED)

    controller.renderSucceeded.connect(_done)
    controller.renderFailed.connect(_failed)

    def _start():
        if not controller.open_preview(document):
            app.exit(EXIT_FAILED)

    QTimer.singleShot(0, _start)
    code = app.exec()
    controller.dispose()
    return code


def _run_export(app: QCoreApplication, args: argparse.Namespace, manager: SettingsManager) -> int:
    settings = manager.preview_settings
    renderer = _make_renderer(settings, app)
    document = ScoreDocument.from_file(args.file)

    def _done(path: str):
        print(f"Exported {args.format.upper()}: {path}")
        app.exit(EXIT_OK)

    def _failed(error: Exception):
        message = _error_text(error)
        print(f"LilyPond export failed: {message}", file=sys.stderr)
        app.exit(EXIT_FAILED)

    export = renderer.export_pdf if args.format == "pdf" else renderer.export_midi
    QTimer.singleShot(0, lambda: export(document, on_result=_done, on_error=_failed))
    return app.exec()


def _run_diagnostics(app: QCoreApplication, args: argparse.Namespace, manager: SettingsManager) -> int:
    settings = manager.preview_settings
    renderer = _make_renderer(settings, app)
    document = ScoreDocument.from_file(args.file)

    def _report(text: str, failed: bool):
        diagnostics = parse_lilypond_diagnostics(text)
        if args.json:
            print(json.dumps([item.to_dict() for item in diagnostics], indent=2))
        else:
            for item in diagnostics:
                print(f"{item.file_path}:{item.line}:{item.column}: {item.severity}: {item.message}")
            print(f"{len(diagnostics)} diagnostic(s).")
        has_errors = any(item.severity == "error" for item in diagnostics)
        app.exit(EXIT_FAILED if failed or has_errors else EXIT_OK)

    def _failed(error: Exception):
        if isinstance(error, CompilerExitError):
            _report(str(error), True)
            return
        print(_error_text(error), file=sys.stderr)
        app.exit(EXIT_FAILED)

    QTimer.singleShot(
        0,
        lambda: renderer.render_document(
            document,
            1,
            on_spawn=lambda _handle: None,
            on_result=lambda output: _report(output.stderr, False),
            on_error=_failed,
        ),
    )
    return app.exec()


def _run_includes(args: argparse.Namespace) -> int:
    result = analyze_include_graph(args.file)
    for file_path in result.files:
        print(file_path)
    for entry in result.entries:
        logger.debug("%s:%s includes %s -> %s", entry.from_file, entry.line, entry.include_path, entry.resolved_path)
    for issue in result.issues:
        print(f"{issue.file_path}:{issue.line}: {issue.severity}: {issue.message}", file=sys.stderr)
    return EXIT_FAILED if any(issue.severity == "error" for issue in result.issues) else EXIT_OK


def _run_artifacts(args: argparse.Namespace) -> int:
    items = collect_artifacts(args.file)
    if not items:
        print("No exported artifacts found.")
        return EXIT_OK
    for item in items:
        stamp = datetime.fromtimestamp(item.mtime).strftime("%Y-%m-%d %H:%M:%S")
        print(f"{item.type:<5} {stamp}  {item.path}")
    return EXIT_OK


def _run_transpose(args: argparse.Namespace) -> int:
    try:
        text = Path(args.file).read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Could not read {args.file}: {exc}", file=sys.stderr)
        return EXIT_FAILED

    if args.lines:
        first, last = args.lines
        try:
            transposed = transpose_line_range(text, first, last, args.from_pitch, args.to_pitch)
        except ValueError as exc:
            print(exc, file=sys.stderr)
            return EXIT_FAILED
        scope = f"lines {first}-{last}"
    else:
        transposed = transpose_whole_document(text, args.from_pitch, args.to_pitch)
        scope = "document"

    if not args.in_place:
        sys.stdout.write(transposed)
        return EXIT_OK
    try:
        Path(args.file).write_text(transposed, encoding="utf-8")
    except OSError as exc:
        print(f"Failed to apply transposition: {exc}", file=sys.stderr)
        return EXIT_FAILED
    print(f"Applied transpose {args.from_pitch} -> {args.to_pitch} ({scope}).")
    return EXIT_OK


def _error_text(error: Exception) -> str:
    if isinstance(error, CompilerNotFoundError):
        return BINARY_NOT_FOUND_MESSAGE
    return str(error)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    manager = _load_settings(args)
    configure_logging("debug" if args.verbose else manager.log_level())

    if args.command == "includes":
        return _run_includes(args)
    if args.command == "artifacts":
        return _run_artifacts(args)
    if args.command == "transpose":
        return _run_transpose(args)

    if not os.path.isfile(args.file):
        print(f"Score file not found: {args.file}", file=sys.stderr)
        return EXIT_FAILED

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    runners = {
        "watch": _run_watch,
        "render": _run_render,
        "export": _run_export,
        "diagnostics": _run_diagnostics,
    }
    try:
        return runners[args.command](app, args, manager)
    except (OSError, RenderError) as exc:
        print(f"lilypreview: {exc}", file=sys.stderr)
        return EXIT_FAILED
