"""Save slots, settings and story metadata."""

from storyvault.persistence.listing import default_list_length, default_page, latest_save, page_slots
from storyvault.persistence.metadata import StoryMetadata
from storyvault.persistence.quarantine import register_opaque
from storyvault.persistence.save_store import SaveStore
from storyvault.persistence.settings import SaveSettings, SaveSettingsStore

__all__ = [
    "SaveSettings",
    "SaveSettingsStore",
    "SaveStore",
    "StoryMetadata",
    "default_list_length",
    "default_page",
    "latest_save",
    "page_slots",
    "register_opaque",
]
