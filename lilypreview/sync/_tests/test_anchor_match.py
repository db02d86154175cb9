from __future__ import annotations

from lilypreview.sync.anchor_match import (
    DEFAULT_HYSTERESIS_SCORE,
    AnchorHighlighter,
    candidate_pool,
    choose_best_anchor,
    normalize_hysteresis,
    resolve_source_range,
    score_anchor_candidate,
)
from lilypreview.sync.textedit import PointAnchor, TextEditTarget, format_textedit_href


def _anchor(line: int, column: int, end_column: int | None = None, path: str = "/s.ly", name: str = "") -> PointAnchor:
    target = TextEditTarget(file_path=path, line=line, column=column, end_column=end_column)
    return PointAnchor(href=format_textedit_href(target), target=target, element_id=name or f"a{line}-{column}")


def test_same_line_beats_other_lines():
    same_line_far = _anchor(5, 40, 41)
    other_line_exact = _anchor(6, 3, 4)
    assert score_anchor_candidate(same_line_far, 5, 3, False) < score_anchor_candidate(other_line_exact, 5, 3, False)


def test_in_range_beats_near_miss():
    wide_in_range = _anchor(5, 1, 20)
    tight_near = _anchor(5, 12, 13)
    assert score_anchor_candidate(wide_in_range, 5, 10, False) < score_anchor_candidate(tight_near, 5, 10, False)


def test_tighter_anchor_wins_among_in_range():
    wide = _anchor(5, 1, 9)
    tight = _anchor(5, 4, 6)
    assert score_anchor_candidate(tight, 5, 5, False) < score_anchor_candidate(wide, 5, 5, False)


def test_score_formula():
    anchor = _anchor(3, 5, 9)
    # out of range by 3 columns on the same line
    expected = 1500 + 3 * 10 + abs(12 - 7) + 4 * 0.05
    assert score_anchor_candidate(anchor, 3, 12, False) == expected
    assert score_anchor_candidate(anchor, 3, 12, True) == expected - 0.25


def test_hysteresis_keeps_current_within_band():
    current = _anchor(1, 1, 5, name="current")
    better = _anchor(1, 6, 8, name="better")
    chosen = choose_best_anchor([current, better], 1, 7, current, hysteresis_score=5000)
    assert chosen is current


def test_hysteresis_switches_when_difference_exceeds_band():
    current = _anchor(1, 1, 5, name="current")
    better = _anchor(1, 6, 8, name="better")
    chosen = choose_best_anchor([current, better], 1, 7, current, hysteresis_score=10)
    assert chosen is better


def test_choose_best_without_selection_and_empty_pool():
    a = _anchor(2, 1, 3)
    b = _anchor(2, 5, 6)
    assert choose_best_anchor([a, b], 2, 5, None, DEFAULT_HYSTERESIS_SCORE) is b
    assert choose_best_anchor([], 2, 5, None, DEFAULT_HYSTERESIS_SCORE) is None


def test_candidate_pool_prefers_file_then_line():
    here_line = _anchor(4, 1, path="/s.ly")
    here_other_line = _anchor(9, 1, path="/s.ly")
    elsewhere = _anchor(4, 1, path="/other.ily")
    anchors = [here_line, here_other_line, elsewhere]

    assert candidate_pool(anchors, "/s.ly", 4) == [here_line]
    assert candidate_pool(anchors, "/s.ly", 7) == [here_line, here_other_line]
    assert candidate_pool(anchors, "/missing.ly", 4) == [here_line, elsewhere]


def test_normalize_hysteresis():
    assert normalize_hysteresis(float("nan")) == DEFAULT_HYSTERESIS_SCORE
    assert normalize_hysteresis("oops") == DEFAULT_HYSTERESIS_SCORE
    assert normalize_hysteresis(-3) == 0.0
    assert normalize_hysteresis(12) == 12.0


def test_highlighter_tracks_selection_and_resets_on_bind():
    pages = (
        '<a xlink:href="textedit:///s.ly:1:1:4">c</a>'
        '<a xlink:href="textedit:///s.ly:1:6:7">d</a>'
    )
    highlighter = AnchorHighlighter()
    assert highlighter.bind(pages) == 2

    first = highlighter.highlight("/s.ly", 1, 2, DEFAULT_HYSTERESIS_SCORE)
    assert first is not None and first.element_id == "anchor-0"
    assert highlighter.selected is first

    # Between the two anchors the neighbour scores slightly better.
    assert highlighter.highlight("/s.ly", 1, 5, DEFAULT_HYSTERESIS_SCORE) is first
    second = highlighter.highlight("/s.ly", 1, 5, 0)
    assert second is not None and second.element_id == "anchor-1"

    highlighter.bind(pages)
    assert highlighter.selected is None


def test_highlighter_without_anchors_clears():
    highlighter = AnchorHighlighter()
    highlighter.bind("<svg/>")
    assert highlighter.highlight("/s.ly", 1, 1, 180) is None
    assert highlighter.selected is None


def test_resolve_source_range_clamps():
    lines = ["\\relative c' {", "  c4 d e f"]
    source_range = resolve_source_range("textedit:///s.ly:2:3:5", lines)
    assert source_range is not None
    assert (source_range.line, source_range.start_column, source_range.end_column) == (1, 2, 4)

    past_end = resolve_source_range("textedit:///s.ly:40:99:120", lines)
    assert past_end is not None
    assert past_end.line == 1
    assert past_end.start_column == len(lines[1])
    assert past_end.end_column == len(lines[1])

    reversed_range = resolve_source_range("textedit:///s.ly:1:6:2", lines)
    assert reversed_range is not None
    assert reversed_range.end_column == reversed_range.start_column == 5

    assert resolve_source_range("textedit://bad", lines) is None
