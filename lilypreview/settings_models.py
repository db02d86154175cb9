from __future__ import annotations

import math
import os
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, TypedDict

from PySide6.QtCore import QStandardPaths

SettingsScope = Literal["workspace", "user"]
RefreshMode = Literal["idleAndSave", "saveOnly", "manual", "live"]

APP_DIRNAME = "lilypreview"
CONFIG_DIR_ENV = "LILYPREVIEW_CONFIG_DIR"
CACHE_DIR_ENV = "LILYPREVIEW_CACHE_DIR"

REFRESH_MODES: tuple[str, ...] = ("idleAndSave", "saveOnly", "manual", "live")
DEFAULT_REFRESH_MODE: RefreshMode = "idleAndSave"
DEFAULT_RENDER_DELAY_MS = 600
DEFAULT_MIN_INTERVAL_MS = 1200
DEFAULT_HYSTERESIS_SCORE = 180.0
MIN_DELAY_MS = 100
LIVE_DELAY_RANGE_MS = (120, 350)
LOG_LEVELS = ("debug", "info", "warning", "error")


class PreviewSettingsDict(TypedDict, total=False):
    refresh_mode: str
    render_delay_ms: int
    min_render_interval_ms: int
    show_updating_badge: bool
    cursor_highlight_enabled: bool
    auto_scroll_to_highlight: bool
    hysteresis_score: float
    lilypond_path: str
    cache_dir: str


class UserSettings(TypedDict, total=False):
    preview: PreviewSettingsDict
    log_level: str


def default_user_config_dir() -> str:
    override = os.environ.get(CONFIG_DIR_ENV, "").strip()
    if override:
        return str(Path(override).expanduser())
    base = QStandardPaths.writableLocation(QStandardPaths.StandardLocation.GenericConfigLocation)
    return str(Path(base or Path.home() / ".config") / APP_DIRNAME)


def default_cache_dir() -> str:
    override = os.environ.get(CACHE_DIR_ENV, "").strip()
    if override:
        return str(Path(override).expanduser())
    base = QStandardPaths.writableLocation(QStandardPaths.StandardLocation.GenericCacheLocation)
    return str(Path(base or Path.home() / ".cache") / APP_DIRNAME)


@dataclass(slots=True, frozen=True)
class SettingsPaths:
    workspace_root: Path
    user_config_dir: Path
    workspace_filename: str = ".lilypreview/settings.json"
    user_filename: str = "settings.json"
    workspace_file: Path = field(init=False)
    user_file: Path = field(init=False)

    def __post_init__(self) -> None:
        workspace_root = Path(self.workspace_root).expanduser().resolve()
        user_config_dir = Path(self.user_config_dir).expanduser().resolve()
        object.__setattr__(self, "workspace_root", workspace_root)
        object.__setattr__(self, "user_config_dir", user_config_dir)
        object.__setattr__(self, "workspace_file", workspace_root / self.workspace_filename)
        object.__setattr__(self, "user_file", user_config_dir / self.user_filename)


def default_preview_settings() -> PreviewSettingsDict:
    return {
        "refresh_mode": DEFAULT_REFRESH_MODE,
        "render_delay_ms": DEFAULT_RENDER_DELAY_MS,
        "min_render_interval_ms": DEFAULT_MIN_INTERVAL_MS,
        "show_updating_badge": True,
        "cursor_highlight_enabled": True,
        "auto_scroll_to_highlight": True,
        "hysteresis_score": DEFAULT_HYSTERESIS_SCORE,
        "lilypond_path": "lilypond",
        "cache_dir": "",
    }


def default_user_settings() -> UserSettings:
    defaults: UserSettings = {
        "preview": default_preview_settings(),
        "log_level": "info",
    }
    return deepcopy(defaults)


def normalize_preview_settings(raw: Any) -> PreviewSettingsDict:
    defaults = default_preview_settings()
    data: dict[str, Any] = dict(defaults)
    if isinstance(raw, dict):
        for key, value in raw.items():
            data[str(key)] = value

    refresh_mode = str(data.get("refresh_mode") or "").strip()
    if refresh_mode not in REFRESH_MODES:
        refresh_mode = defaults["refresh_mode"]

    def _floor_int(value: Any, low: int, fallback: int) -> int:
        try:
            return max(low, int(value))
        except (TypeError, ValueError, OverflowError):
            return fallback

    def _bool(value: Any, fallback: bool) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"1", "true", "yes", "on"}:
                return True
            if lowered in {"0", "false", "no", "off"}:
                return False
        return fallback

    try:
        hysteresis = float(data.get("hysteresis_score"))
    except (TypeError, ValueError):
        hysteresis = DEFAULT_HYSTERESIS_SCORE
    if not math.isfinite(hysteresis):
        hysteresis = DEFAULT_HYSTERESIS_SCORE

    return {
        "refresh_mode": refresh_mode,
        "render_delay_ms": _floor_int(data.get("render_delay_ms"), MIN_DELAY_MS, DEFAULT_RENDER_DELAY_MS),
        "min_render_interval_ms": _floor_int(
            data.get("min_render_interval_ms"), MIN_DELAY_MS, DEFAULT_MIN_INTERVAL_MS
        ),
        "show_updating_badge": _bool(data.get("show_updating_badge"), True),
        "cursor_highlight_enabled": _bool(data.get("cursor_highlight_enabled"), True),
        "auto_scroll_to_highlight": _bool(data.get("auto_scroll_to_highlight"), True),
        "hysteresis_score": max(0.0, hysteresis),
        "lilypond_path": str(data.get("lilypond_path") or "").strip() or "lilypond",
        "cache_dir": str(data.get("cache_dir") or "").strip(),
    }


@dataclass(slots=True, frozen=True)
class PreviewSettings:
    refresh_mode: str = DEFAULT_REFRESH_MODE
    render_delay_ms: int = DEFAULT_RENDER_DELAY_MS
    min_render_interval_ms: int = DEFAULT_MIN_INTERVAL_MS
    show_updating_badge: bool = True
    cursor_highlight_enabled: bool = True
    auto_scroll_to_highlight: bool = True
    hysteresis_score: float = DEFAULT_HYSTERESIS_SCORE
    lilypond_path: str = "lilypond"
    cache_dir: str = ""

    @classmethod
    def from_mapping(cls, data: Any) -> "PreviewSettings":
        n = normalize_preview_settings(data)
        return cls(
            refresh_mode=str(n["refresh_mode"]),
            render_delay_ms=int(n["render_delay_ms"]),
            min_render_interval_ms=int(n["min_render_interval_ms"]),
            show_updating_badge=bool(n["show_updating_badge"]),
            cursor_highlight_enabled=bool(n["cursor_highlight_enabled"]),
            auto_scroll_to_highlight=bool(n["auto_scroll_to_highlight"]),
            hysteresis_score=float(n["hysteresis_score"]),
            lilypond_path=str(n["lilypond_path"]),
            cache_dir=str(n["cache_dir"]),
        )

    def typing_delay_ms(self, mode: str | None = None) -> int:
        baseline = max(MIN_DELAY_MS, int(self.render_delay_ms))
        if (mode or self.refresh_mode) == "live":
            low, high = LIVE_DELAY_RANGE_MS
            return max(low, min(high, baseline))
        return baseline

    def resolved_cache_dir(self) -> str:
        return str(Path(self.cache_dir).expanduser()) if self.cache_dir else default_cache_dir()
