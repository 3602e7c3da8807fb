"""
Save settings persisted in the legacy key-value store.

The flags survive restarts independently of any save slot. They are stored
under ``"idb-settings"`` with camelCase keys:

    {"warnSave": bool, "warnLoad": bool, "warnDelete": bool,
     "active": bool, "useDelta": bool}
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from storyvault.storage.legacy import KeyValueStore

logger = logging.getLogger(__name__)

SETTINGS_KEY = "idb-settings"


class SaveSettings(BaseModel):
    """User-facing save flags."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    warn_save: bool = Field(default=False, alias="warnSave", description="Confirm before saving")
    warn_load: bool = Field(default=False, alias="warnLoad", description="Confirm before loading")
    warn_delete: bool = Field(default=True, alias="warnDelete", description="Confirm before deleting")
    active: bool = Field(default=True, description="Use the object store instead of the legacy store")
    use_delta: bool = Field(default=True, alias="useDelta", description="Delta-encode saved history")

    def to_record(self) -> dict[str, bool]:
        return self.model_dump(by_alias=True)


SETTING_NAMES: tuple[str, ...] = tuple(
    field.alias or name for name, field in SaveSettings.model_fields.items()
)
_ATTRIBUTES = {field.alias or name: name for name, field in SaveSettings.model_fields.items()}


class SaveSettingsStore:
    """
    Reads and writes ``SaveSettings`` through a key-value store.

    Example:
        settings = SaveSettingsStore(JsonFileKeyValueStore(path))
        settings.update("useDelta")          # -> True
        settings.update("useDelta", False)   # persisted
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.settings = self.load()

    def load(self) -> SaveSettings:
        """Read the persisted settings; defaults when absent or unreadable."""
        record = self.store.get(SETTINGS_KEY)
        if record is None:
            return SaveSettings()
        try:
            return SaveSettings.model_validate(record)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable save settings: {e}")
            return SaveSettings()

    def save(self) -> bool:
        return self.store.set(SETTINGS_KEY, self.settings.to_record())

    def update(self, setting: str | None = None, value: Any = None) -> Any:
        """
        Resynchronize with the store and optionally read or change one flag.

        Args:
            setting: camelCase setting name; None only reloads
            value: New value; None reads the current one

        Returns:
            The current (or newly set) value, or None for an unknown setting
        """
        self.settings = self.load()
        if not setting:
            return None
        if setting not in _ATTRIBUTES:
            logger.warning(f"Unknown save setting: {setting!r}")
            return None

        attribute = _ATTRIBUTES[setting]
        if value is None:
            return getattr(self.settings, attribute)

        self.settings = self.settings.model_copy(update={attribute: bool(value)})
        self.save()
        logger.info(f"Save setting {setting} set to {bool(value)}")
        return bool(value)

    @property
    def active(self) -> bool:
        return self.settings.active

    @property
    def use_delta(self) -> bool:
        return self.settings.use_delta
