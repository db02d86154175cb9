"""Live LilyPond preview with source/score position sync."""

__version__ = "0.3.0"
