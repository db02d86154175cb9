from .anchor_match import (
    AnchorHighlighter,
    SourceRange,
    candidate_pool,
    choose_best_anchor,
    resolve_source_range,
    score_anchor_candidate,
)
from .diagnostics import LilypondDiagnostic, parse_lilypond_diagnostics
from .include_graph import IncludeGraphResult, analyze_include_graph, extract_include_statements
from .textedit import (
    PointAnchor,
    TextEditTarget,
    extract_point_anchors,
    format_textedit_href,
    parse_textedit_href,
    rewrite_textedit_targets,
    strip_script_tags,
)
from .transposition import is_pitch_token, transpose_line_range, transpose_whole_document, wrap_transpose

__all__ = [
    "AnchorHighlighter",
    "IncludeGraphResult",
    "LilypondDiagnostic",
    "PointAnchor",
    "SourceRange",
    "TextEditTarget",
    "analyze_include_graph",
    "candidate_pool",
    "choose_best_anchor",
    "extract_include_statements",
    "extract_point_anchors",
    "format_textedit_href",
    "is_pitch_token",
    "parse_lilypond_diagnostics",
    "parse_textedit_href",
    "resolve_source_range",
    "rewrite_textedit_targets",
    "score_anchor_candidate",
    "strip_script_tags",
    "transpose_line_range",
    "transpose_whole_document",
    "wrap_transpose",
]
