from .logger import OutputChannel, TimestampFormatter, configure_logging, resolve_level

__all__ = [
    "OutputChannel",
    "TimestampFormatter",
    "configure_logging",
    "resolve_level",
]
