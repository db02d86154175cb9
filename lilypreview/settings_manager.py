from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

from .settings_models import (
    LOG_LEVELS,
    PreviewSettings,
    SettingsPaths,
    SettingsScope,
    default_user_config_dir,
    default_user_settings,
)
from .settings_store import JsonSettingsStore, overlay

SCOPES: tuple[SettingsScope, ...] = ("workspace", "user")


class SettingsManager:
    """Workspace settings layered over user settings.

    Workspace files carry only the keys someone set explicitly, so a key
    missing there falls through to the user file and then to defaults.
    """

    def __init__(
        self,
        workspace_root: str | Path,
        user_config_dir: str | Path | None = None,
        *,
        workspace_filename: str = ".lilypreview/settings.json",
        user_filename: str = "settings.json",
    ) -> None:
        self.paths = SettingsPaths(
            workspace_root=Path(workspace_root),
            user_config_dir=Path(user_config_dir or default_user_config_dir()),
            workspace_filename=workspace_filename,
            user_filename=user_filename,
        )
        self._stores: dict[SettingsScope, JsonSettingsStore] = {
            "workspace": JsonSettingsStore(self.paths.workspace_file),
            "user": JsonSettingsStore(self.paths.user_file, default_user_settings()),
        }

    def load_all(self) -> None:
        for store in self._stores.values():
            store.load()

    def save_all(self, scopes: Iterable[SettingsScope] | None = None, *, only_dirty: bool = False) -> set[SettingsScope]:
        saved: set[SettingsScope] = set()
        for scope in tuple(scopes) if scopes is not None else SCOPES:
            store = self._stores[scope]
            if only_dirty and not store.dirty:
                continue
            store.save()
            saved.add(scope)
        return saved

    def load_errors(self) -> dict[SettingsScope, str]:
        return {scope: store.last_error for scope, store in self._stores.items() if store.last_error}

    def get(self, key: str, default: Any = None) -> Any:
        workspace = self._stores["workspace"]
        if workspace.has(key):
            return workspace.get(key, default)
        return self._stores["user"].get(key, default)

    def set(self, key: str, value: Any, scope: SettingsScope) -> bool:
        return self._stores[scope].set(key, value)

    def persist(self, key: str, value: Any, scope: SettingsScope = "workspace") -> bool:
        """Set ``key`` in ``scope`` and write that file if it changed.

        Raises ``SettingsStoreError`` when the file cannot be written.
        """
        changed = self.set(key, value, scope)
        self.save_all((scope,), only_dirty=True)
        return changed

    def override(self, key: str, value: Any) -> None:
        """Shadow ``key`` for this process only; nothing is written to disk."""
        self._stores["workspace"].override(key, value)

    def preview_settings(self) -> PreviewSettings:
        user_section = self._stores["user"].get("preview", {})
        workspace_section = self._stores["workspace"].get("preview", {})
        merged = overlay(
            user_section if isinstance(user_section, dict) else {},
            workspace_section if isinstance(workspace_section, dict) else {},
        )
        return PreviewSettings.from_mapping(merged)

    def log_level(self) -> str:
        level = str(self.get("log_level", "info") or "").strip().lower()
        return level if level in LOG_LEVELS else "info"
