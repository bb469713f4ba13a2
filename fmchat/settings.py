"""
Advanced settings: a user-editable system prompt and refusal prefix list.

Stored as YAML next to the wire log. The file only exists while advanced
settings are enabled; disabling deletes it and falls back to the defaults.
The store re-reads the file when its mtime changes, so edits made by
`fmchat tune` in another terminal apply to a running chat.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from fmchat.guardrail import DEFAULT_REFUSAL_PREFIXES
from fmchat.prompt import SYSTEM_PROMPT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatSettings:
    """Values the prompt formatter and classifier use for one turn."""
    system_prompt: str = SYSTEM_PROMPT
    refusal_prefixes: tuple[str, ...] = DEFAULT_REFUSAL_PREFIXES


DEFAULT_CHAT_SETTINGS = ChatSettings()


@dataclass
class AdvancedSettings:
    enabled: bool = False
    system_prompt: str = SYSTEM_PROMPT
    refusal_prefixes: list[str] = field(default_factory=lambda: list(DEFAULT_REFUSAL_PREFIXES))

    @classmethod
    def from_dict(cls, data: dict) -> "AdvancedSettings":
        prefixes = data.get("refusal_prefixes")
        if not isinstance(prefixes, list):
            prefixes = list(DEFAULT_REFUSAL_PREFIXES)
        return cls(
            enabled=bool(data.get("enabled", False)),
            system_prompt=str(data.get("system_prompt") or SYSTEM_PROMPT),
            refusal_prefixes=[str(p) for p in prefixes if str(p)],
        )

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "system_prompt": self.system_prompt,
            "refusal_prefixes": list(self.refusal_prefixes),
        }

    def effective(self) -> ChatSettings:
        if not self.enabled:
            return DEFAULT_CHAT_SETTINGS
        return ChatSettings(
            system_prompt=self.system_prompt,
            refusal_prefixes=tuple(self.refusal_prefixes),
        )


def load_settings(path: Path) -> AdvancedSettings | None:
    """Read stored settings. None if missing, unreadable, or not enabled."""
    if not path.exists():
        return None
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return None
    if not isinstance(data, dict) or not data.get("enabled"):
        return None
    return AdvancedSettings.from_dict(data)


def save_settings(settings: AdvancedSettings | None, path: Path) -> None:
    """Persist enabled settings; anything else removes the file."""
    if settings is None or not settings.enabled:
        path.unlink(missing_ok=True)
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(settings.to_dict(), f, default_flow_style=False, allow_unicode=True, sort_keys=False)


class SettingsStore:
    """Settings file wrapper with mtime-based reload."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._settings = AdvancedSettings()
        self._mtime: float = 0.0

    @property
    def settings(self) -> AdvancedSettings:
        self._reload_if_changed()
        return self._settings

    def _reload_if_changed(self) -> None:
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            # File gone means disabled
            if self._mtime:
                self._settings = AdvancedSettings()
                self._mtime = 0.0
            return
        if mtime == self._mtime:
            return
        self._settings = load_settings(self.path) or AdvancedSettings()
        self._mtime = mtime

    def update(self, settings: AdvancedSettings) -> None:
        save_settings(settings if settings.enabled else None, self.path)
        self._settings = settings if settings.enabled else AdvancedSettings()
        self._mtime = 0.0

    def toggle(self, enabled: bool) -> AdvancedSettings:
        """Enabling keeps the current values; disabling resets to defaults."""
        if enabled:
            current = self.settings
            new = AdvancedSettings(
                enabled=True,
                system_prompt=current.system_prompt,
                refusal_prefixes=list(current.refusal_prefixes),
            )
        else:
            new = AdvancedSettings()
        self.update(new)
        return new

    def effective(self) -> ChatSettings:
        return self.settings.effective()
