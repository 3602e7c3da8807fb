"""
storyvault - save slots and undo history for interactive stories.

Keeps a navigable history of story moments, snapshots it into a transient
session store for crash recovery, and persists it into numbered save slots
backed by an asynchronous transactional object store.

Quick Start:
    from storyvault import create_context

    context = create_context()
    context.history.create("Start")
    context.history.variables["gold"] = 10
    context.history.create("Forest")

    await context.saves.save_state(1, title="Into the forest")
    await context.saves.load_state(1)
"""

__version__ = "1.0.0"

from storyvault.context import StoryContext, create_context
from storyvault.core.config import Settings, get_settings
from storyvault.core.history import MomentHistory
from storyvault.core.prng import PRNG
from storyvault.persistence.save_store import SaveStore

__all__ = [
    "MomentHistory",
    "PRNG",
    "SaveStore",
    "Settings",
    "StoryContext",
    "create_context",
    "get_settings",
    "__version__",
]
