"""Cursor <-> rendered anchor matching.

Scores are "lower is better". A line mismatch outweighs everything else,
being outside the anchor's column range outweighs any column distance, and
the remaining terms order tight, centered anchors first. The currently
selected anchor gets a small bonus, and ``choose_best_anchor`` keeps it while
the best alternative is within the hysteresis band.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from .textedit import PointAnchor, extract_point_anchors, normalize_fs_path, parse_textedit_href

LINE_MISMATCH_WEIGHT = 100000
OUT_OF_RANGE_PENALTY = 1500
COLUMN_DISTANCE_WEIGHT = 10
SPAN_WEIGHT = 0.05
SELECTED_BONUS = 0.25
DEFAULT_HYSTERESIS_SCORE = 180.0


@dataclass(frozen=True)
class SourceRange:
    """0-based, single-line source range produced by a preview click."""

    file_path: str
    line: int
    start_column: int
    end_column: int


def score_anchor_candidate(
    candidate: PointAnchor,
    line: int,
    column: int,
    is_current_selected: bool,
) -> float:
    target = candidate.target
    line_delta = abs(target.line - line)
    start_col = target.column
    end_col = target.last_column
    span = max(0, end_col - start_col)
    in_range = line_delta == 0 and start_col <= column <= end_col

    col_delta = 0
    if column < start_col:
        col_delta = start_col - column
    elif column > end_col:
        col_delta = column - end_col

    center_delta = abs(column - (start_col + end_col) / 2)
    selection_bonus = SELECTED_BONUS if is_current_selected else 0.0

    return (
        line_delta * LINE_MISMATCH_WEIGHT
        + (0 if in_range else OUT_OF_RANGE_PENALTY)
        + col_delta * COLUMN_DISTANCE_WEIGHT
        + center_delta
        + span * SPAN_WEIGHT
        - selection_bonus
    )


def choose_best_anchor(
    candidates: Sequence[PointAnchor],
    line: int,
    column: int,
    current_selected: PointAnchor | None,
    hysteresis_score: float,
) -> PointAnchor | None:
    if not candidates:
        return None

    best: PointAnchor | None = None
    best_score = math.inf
    current: PointAnchor | None = None
    current_score = math.inf

    for candidate in candidates:
        is_current = current_selected is not None and candidate is current_selected
        score = score_anchor_candidate(candidate, line, column, is_current)
        if is_current:
            current = candidate
            current_score = score
        if score < best_score:
            best = candidate
            best_score = score

    if current is not None and best is not None and current is not best:
        if current_score - best_score <= hysteresis_score:
            return current
    return best


def candidate_pool(anchors: Sequence[PointAnchor], file_path: str, line: int) -> list[PointAnchor]:
    normalized = normalize_fs_path(file_path)
    file_matched = [item for item in anchors if item.normalized_file_path == normalized]
    candidates = file_matched or list(anchors)
    same_line = [item for item in candidates if item.target.line == line]
    return same_line or candidates


def normalize_hysteresis(value: object) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_HYSTERESIS_SCORE
    if not math.isfinite(number):
        return DEFAULT_HYSTERESIS_SCORE
    return max(0.0, number)


class AnchorHighlighter:
    """Anchor set of the latest artifact plus the single selected anchor."""

    def __init__(self) -> None:
        self._anchors: list[PointAnchor] = []
        self._selected: PointAnchor | None = None

    @property
    def anchors(self) -> list[PointAnchor]:
        return list(self._anchors)

    @property
    def selected(self) -> PointAnchor | None:
        return self._selected

    def bind(self, pages_html: str) -> int:
        self._anchors = extract_point_anchors(pages_html)
        self._selected = None
        return len(self._anchors)

    def clear_selection(self) -> None:
        self._selected = None

    def highlight(self, file_path: str, line: int, column: int, hysteresis_score: object) -> PointAnchor | None:
        if not self._anchors:
            self._selected = None
            return None
        pool = candidate_pool(self._anchors, file_path, line)
        best = choose_best_anchor(pool, line, column, self._selected, normalize_hysteresis(hysteresis_score))
        self._selected = best
        return best


def resolve_source_range(href: str, lines: Sequence[str]) -> SourceRange | None:
    target = parse_textedit_href(href)
    if target is None:
        return None

    line_count = max(1, len(lines))
    line_index = max(0, min(line_count - 1, target.line - 1))
    line_text = lines[line_index] if line_index < len(lines) else ""
    start_column = max(0, min(len(line_text), target.column - 1))
    end_column = max(start_column, min(len(line_text), target.last_column - 1))
    return SourceRange(
        file_path=target.file_path,
        line=line_index,
        start_column=start_column,
        end_column=end_column,
    )
