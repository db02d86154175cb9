"""Turns a score document into SVG preview pages (and PDF/MIDI exports)."""

from __future__ import annotations

import base64
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from PySide6.QtCore import QObject

from ..documents import ScoreDocument
from ..sync.textedit import rewrite_textedit_targets, strip_script_tags
from .errors import NoOutputError, RenderError
from .process_runner import CompilerProcess, format_command, run_compiler

logger = logging.getLogger(__name__)

PREVIEW_CACHE_DIRNAME = "preview-cache"
FONT_CACHE_DIRNAME = "font-cache"
INPUT_FILENAME = "input.ly"
OUTPUT_BASENAME = "result"


@dataclass(frozen=True)
class RenderOutput:
    pages_html: str
    pages_count: int
    command: str
    stderr: str
    elapsed_ms: int


@dataclass(frozen=True)
class SpawnHandle:
    token: int
    uri: str
    version: int
    process: CompilerProcess


@dataclass(frozen=True)
class _RenderContext:
    preview_dir: str
    input_path: str
    output_base: str
    source_dir: str
    lilypond_path: str
    args: list[str]
    font_cache_dir: str


def natural_sort_key(name: str) -> list:
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def document_cache_key(uri: str) -> str:
    return base64.urlsafe_b64encode(uri.encode("utf-8")).decode("ascii").rstrip("=")


class LilypondRenderer(QObject):
    """Runs LilyPond in a per-document staging directory.

    The staging directory holds the input snapshot and the SVG pages of the
    latest render only. Page files carry the render token in their name
    and a render only collects its own.
    """

    def __init__(
        self,
        cache_root: str,
        binary_path_provider: Callable[[], str],
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._cache_root = os.path.abspath(os.path.expanduser(cache_root))
        self._binary_path_provider = binary_path_provider

    @property
    def cache_root(self) -> str:
        return self._cache_root

    def ensure_storage_directories(self) -> None:
        os.makedirs(os.path.join(self._cache_root, PREVIEW_CACHE_DIRNAME), exist_ok=True)
        os.makedirs(os.path.join(self._cache_root, FONT_CACHE_DIRNAME), exist_ok=True)

    def staging_dir_for(self, document: ScoreDocument) -> str:
        return os.path.join(self._cache_root, PREVIEW_CACHE_DIRNAME, document_cache_key(document.uri))

    def render_document(
        self,
        document: ScoreDocument,
        token: int,
        *,
        on_spawn: Callable[[SpawnHandle], None],
        on_result: Callable[[RenderOutput], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        self.render_content(
            document,
            document.text,
            token,
            on_spawn=on_spawn,
            on_result=on_result,
            on_error=on_error,
        )

    def render_content(
        self,
        document: ScoreDocument,
        content: str,
        token: int,
        *,
        on_spawn: Callable[[SpawnHandle], None],
        on_result: Callable[[RenderOutput], None],
        on_error: Callable[[Exception], None],
        start_line: int = 1,
        start_column: int = 1,
    ) -> None:
        """Render ``content`` as if it sat at ``start_line``:``start_column`` of ``document``."""
        uri = document.uri
        version = document.version
        file_name = document.file_name
        try:
            ctx = self._prepare_render_context(document, f"{OUTPUT_BASENAME}-{token}")
            Path(ctx.input_path).write_text(content, encoding="utf-8")
            self._cleanup_previous_outputs(ctx.preview_dir)
        except OSError as exc:
            on_error(exc)
            return

        command = format_command(ctx.lilypond_path, ctx.args)
        started_at = time.monotonic()

        def _on_exit(stderr: str) -> None:
            try:
                output = self._collect_pages(
                    ctx,
                    file_name,
                    command,
                    stderr,
                    started_at,
                    line_offset=max(0, start_line - 1),
                    column_offset=max(0, start_column - 1),
                )
            except (OSError, RenderError) as exc:
                on_error(exc)
                return
            on_result(output)

        logger.debug("Spawning: %s", command)
        handle = run_compiler(
            ctx.lilypond_path,
            ctx.args,
            cwd=ctx.source_dir,
            env={"XDG_CACHE_HOME": ctx.font_cache_dir},
            parent=self,
            on_result=_on_exit,
            on_error=on_error,
        )
        # A spawn failure may already have reported through on_error.
        if handle.is_alive():
            on_spawn(SpawnHandle(token=token, uri=uri, version=version, process=handle))

    def export_pdf(
        self,
        document: ScoreDocument,
        *,
        on_result: Callable[[str], None],
        on_error: Callable[[Exception], None],
    ) -> CompilerProcess | None:
        return self._export(document, (".pdf",), on_result=on_result, on_error=on_error)

    def export_midi(
        self,
        document: ScoreDocument,
        *,
        on_result: Callable[[str], None],
        on_error: Callable[[Exception], None],
    ) -> CompilerProcess | None:
        return self._export(document, (".midi", ".mid"), on_result=on_result, on_error=on_error)

    # ---------- Internals ----------

    def _export(
        self,
        document: ScoreDocument,
        suffixes: tuple[str, ...],
        *,
        on_result: Callable[[str], None],
        on_error: Callable[[Exception], None],
    ) -> CompilerProcess | None:
        try:
            ctx = self._prepare_render_context(document)
            Path(ctx.input_path).write_text(document.text, encoding="utf-8")
        except OSError as exc:
            on_error(exc)
            return None

        output_base = os.path.join(ctx.source_dir, Path(document.file_name).stem)
        args = ["-o", output_base, "-I", ctx.source_dir, ctx.input_path]

        def _on_exit(_stderr: str) -> None:
            for suffix in suffixes:
                candidate = output_base + suffix
                if os.path.isfile(candidate):
                    on_result(candidate)
                    return
            on_error(NoOutputError(f"LilyPond completed without writing {output_base}{suffixes[0]}."))

        logger.info("Export: %s", format_command(ctx.lilypond_path, args))
        # Exports are not tracked by the preview's cancellation bookkeeping.
        return run_compiler(
            ctx.lilypond_path,
            args,
            cwd=ctx.source_dir,
            env={"XDG_CACHE_HOME": ctx.font_cache_dir},
            parent=self,
            on_result=_on_exit,
            on_error=on_error,
        )

    def _prepare_render_context(self, document: ScoreDocument, output_name: str = OUTPUT_BASENAME) -> _RenderContext:
        lilypond_path = str(self._binary_path_provider() or "").strip() or "lilypond"
        preview_dir = self.staging_dir_for(document)
        font_cache_dir = os.path.join(self._cache_root, FONT_CACHE_DIRNAME)
        input_path = os.path.join(preview_dir, INPUT_FILENAME)
        output_base = os.path.join(preview_dir, output_name)
        source_dir = document.source_dir

        os.makedirs(preview_dir, exist_ok=True)
        os.makedirs(font_cache_dir, exist_ok=True)

        args = ["-dbackend=svg", "-dpoint-and-click", "-o", output_base, "-I", source_dir, input_path]
        return _RenderContext(
            preview_dir=preview_dir,
            input_path=input_path,
            output_base=output_base,
            source_dir=source_dir,
            lilypond_path=lilypond_path,
            args=args,
            font_cache_dir=font_cache_dir,
        )

    @staticmethod
    def _page_files(preview_dir: str, output_name: str = OUTPUT_BASENAME) -> list[str]:
        # "result-7.svg" or "result-7-2.svg", never "result-71.svg".
        names = [
            name
            for name in os.listdir(preview_dir)
            if name.endswith(".svg") and (name.startswith(output_name + ".") or name.startswith(output_name + "-"))
        ]
        return sorted(names, key=natural_sort_key)

    def _cleanup_previous_outputs(self, preview_dir: str) -> None:
        for name in self._page_files(preview_dir):
            os.unlink(os.path.join(preview_dir, name))

    def _collect_pages(
        self,
        ctx: _RenderContext,
        source_path: str,
        command: str,
        stderr: str,
        started_at: float,
        *,
        line_offset: int = 0,
        column_offset: int = 0,
    ) -> RenderOutput:
        svg_files = self._page_files(ctx.preview_dir, os.path.basename(ctx.output_base))
        if not svg_files:
            raise NoOutputError("LilyPond completed without generating SVG output.")

        sections: list[str] = []
        for index, file_name in enumerate(svg_files):
            raw_svg = Path(ctx.preview_dir, file_name).read_text(encoding="utf-8")
            rewritten = rewrite_textedit_targets(
                raw_svg,
                ctx.input_path,
                source_path,
                line_offset=line_offset,
                column_offset=column_offset,
            )
            safe_svg = strip_script_tags(rewritten)
            sections.append(
                '<section class="page">'
                f'<div class="page-title">Page {index + 1}</div>'
                f'<div class="svg-wrap">{safe_svg}</div>'
                "</section>"
            )

        return RenderOutput(
            pages_html="\n".join(sections),
            pages_count=len(svg_files),
            command=command,
            stderr=stderr,
            elapsed_ms=int((time.monotonic() - started_at) * 1000),
        )
