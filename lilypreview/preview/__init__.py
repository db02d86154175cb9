"""Preview session: render scheduling and the display surface."""

from .preview_controller import PreviewController
from .surface import HtmlFileSurface, PreviewSurface

__all__ = [
    "HtmlFileSurface",
    "PreviewController",
    "PreviewSurface",
]
