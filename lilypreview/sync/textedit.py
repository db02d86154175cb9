"""Parsing and rewriting of LilyPond point-and-click ``textedit://`` references."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from urllib.parse import quote, unquote

TEXTEDIT_SCHEME = "textedit://"

# Same reserved set encodeURI leaves alone, so rewritten paths stay readable.
_PATH_SAFE_CHARS = "/;,?:@&=+$!*'()#"

_TEXTEDIT_REF_RE = re.compile(r'textedit://[^"]+')
_ANCHOR_TAG_RE = re.compile(r"<a\b[^>]*>", re.IGNORECASE)
_HREF_ATTR_RE = re.compile(r'(?:xlink:href|href)\s*=\s*"([^"]*)"', re.IGNORECASE)
_SCRIPT_BLOCK_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)


@dataclass(frozen=True)
class TextEditTarget:
    file_path: str
    line: int
    column: int
    end_column: int | None = None

    @property
    def last_column(self) -> int:
        return self.column if self.end_column is None else self.end_column


@dataclass(eq=False)
class PointAnchor:
    """One clickable region of a rendered page.

    Equality is identity: two anchors with the same target on different
    glyphs are still different highlight candidates.
    """

    href: str
    target: TextEditTarget
    element_id: str
    normalized_file_path: str = field(init=False)

    def __post_init__(self) -> None:
        self.normalized_file_path = normalize_fs_path(self.target.file_path)


def parse_textedit_href(href: str) -> TextEditTarget | None:
    if not isinstance(href, str) or not href.startswith(TEXTEDIT_SCHEME):
        return None

    without_scheme = unquote(href[len(TEXTEDIT_SCHEME):])
    segments = without_scheme.split(":")
    if len(segments) < 3:
        return None

    last, second_last, third_last = segments[-1], segments[-2], segments[-3]
    if not _is_digits(last) or not _is_digits(second_last):
        return None

    has_end_column = _is_digits(third_last)
    if has_end_column:
        file_path = ":".join(segments[:-3])
        return TextEditTarget(
            file_path=file_path,
            line=int(third_last),
            column=int(second_last),
            end_column=int(last),
        )
    file_path = ":".join(segments[:-2])
    return TextEditTarget(file_path=file_path, line=int(second_last), column=int(last))


def format_textedit_href(target: TextEditTarget) -> str:
    end_part = f":{target.end_column}" if target.end_column is not None else ""
    encoded = quote(target.file_path, safe=_PATH_SAFE_CHARS)
    return f"{TEXTEDIT_SCHEME}{encoded}:{target.line}:{target.column}{end_part}"


def normalize_fs_path(file_path: str) -> str:
    text = str(file_path or "")
    if not text:
        return ""
    return os.path.normpath(text).replace("\\", "/").lower()


def rewrite_textedit_targets(
    markup: str,
    original_path: str,
    source_path: str,
    *,
    line_offset: int = 0,
    column_offset: int = 0,
) -> str:
    """Point every reference to ``original_path`` at ``source_path`` instead.

    ``line_offset`` and ``column_offset`` place a snippet compiled on its own
    back at its position in ``source_path``; the column offset only applies
    to the snippet's first line. References to other files are returned
    byte for byte.
    """
    normalized_original = normalize_fs_path(original_path)

    def _replace(match: re.Match[str]) -> str:
        value = match.group(0)
        parsed = parse_textedit_href(value)
        if parsed is None:
            return value
        if normalize_fs_path(parsed.file_path) != normalized_original:
            return value
        shift = column_offset if parsed.line == 1 else 0
        return format_textedit_href(
            TextEditTarget(
                file_path=source_path,
                line=parsed.line + line_offset,
                column=parsed.column + shift,
                end_column=None if parsed.end_column is None else parsed.end_column + shift,
            )
        )

    return _TEXTEDIT_REF_RE.sub(_replace, markup)


def strip_script_tags(markup: str) -> str:
    return _SCRIPT_BLOCK_RE.sub("", markup)


def extract_point_anchors(pages_html: str) -> list[PointAnchor]:
    anchors: list[PointAnchor] = []
    for index, tag_match in enumerate(_ANCHOR_TAG_RE.finditer(pages_html or "")):
        href_match = _HREF_ATTR_RE.search(tag_match.group(0))
        if href_match is None:
            continue
        href = href_match.group(1)
        target = parse_textedit_href(href)
        if target is None:
            continue
        anchors.append(PointAnchor(href=href, target=target, element_id=f"anchor-{index}"))
    return anchors


def _is_digits(value: str) -> bool:
    return bool(value) and value.isascii() and value.isdigit()
