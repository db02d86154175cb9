"""One ``settings.json`` file with defaults and memory-only overrides."""

from __future__ import annotations

import json
from copy import deepcopy
from pathlib import Path
from typing import Any, Mapping

_MISSING = object()


class SettingsStoreError(RuntimeError):
    """Raised when a settings file cannot be written."""


def overlay(base: Mapping[str, Any], top: Mapping[str, Any]) -> dict[str, Any]:
    """Copy of ``base`` with ``top`` laid over it; nested sections merge key by key."""
    result = deepcopy(dict(base))
    for key, value in top.items():
        below = result.get(key)
        if isinstance(below, dict) and isinstance(value, Mapping):
            result[key] = overlay(below, value)
        else:
            result[key] = deepcopy(value)
    return result


def lookup(tree: Mapping[str, Any], dotted_key: str, default: Any = None) -> Any:
    node: Any = tree
    for part in dotted_key.split(".") if dotted_key else ():
        if not isinstance(node, Mapping):
            return default
        node = node.get(part, _MISSING)
        if node is _MISSING:
            return default
    return node


def assign(tree: dict[str, Any], dotted_key: str, value: Any) -> None:
    *sections, leaf = dotted_key.split(".")
    if not leaf:
        raise ValueError(f"Invalid settings key: {dotted_key!r}")
    node = tree
    for part in sections:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[leaf] = value


class JsonSettingsStore:
    """Settings read from one JSON file.

    ``values`` is defaults, then the file, then overrides. Overrides come
    from the command line and are never written back. A missing or broken
    file reads as empty; the reason for a broken one is kept in
    ``last_error``.
    """

    def __init__(self, path: Path, defaults: Mapping[str, Any] | None = None) -> None:
        self.path = Path(path)
        self.defaults = deepcopy(dict(defaults or {}))
        self.file_data: dict[str, Any] = {}
        self.overrides: dict[str, Any] = {}
        self.values: dict[str, Any] = deepcopy(self.defaults)
        self.dirty = False
        self.last_error: str | None = None

    def load(self) -> dict[str, Any]:
        self.last_error = None
        self.file_data = {}
        self.dirty = False
        if self.path.is_file():
            try:
                parsed = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                self.last_error = f"{self.path}: {exc}"
            else:
                if isinstance(parsed, dict):
                    self.file_data = parsed
                else:
                    self.last_error = f"{self.path}: expected a JSON object, got {type(parsed).__name__}"
        self._rebuild()
        return self.values

    def save(self) -> None:
        text = json.dumps(self.file_data, indent=2, sort_keys=True) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise SettingsStoreError(f"Could not write settings file '{self.path}': {exc}") from exc
        self.dirty = False

    def get(self, key: str, default: Any = None) -> Any:
        return lookup(self.values, key, default)

    def has(self, key: str) -> bool:
        return lookup(self.values, key, _MISSING) is not _MISSING

    def set(self, key: str, value: Any) -> bool:
        if lookup(self.file_data, key, _MISSING) == value:
            return False
        assign(self.file_data, key, deepcopy(value))
        self.dirty = True
        self._rebuild()
        return True

    def override(self, key: str, value: Any) -> None:
        assign(self.overrides, key, deepcopy(value))
        self._rebuild()

    def _rebuild(self) -> None:
        self.values = overlay(overlay(self.defaults, self.file_data), self.overrides)
