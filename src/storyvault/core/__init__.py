"""Core history, PRNG, snapshot and configuration primitives for storyvault."""

from storyvault.core.config import Settings, get_settings, reset_settings
from storyvault.core.diff import DiffEngine, JsonPatchDiff, get_diff_engine
from storyvault.core.errors import (
    BackendUnavailableError,
    ConstraintError,
    MomentIndexError,
    QuotaExceededError,
    StoryVaultError,
    StructuralError,
    TransactionAbortedError,
)
from storyvault.core.history import (
    MomentHistory,
    history_delta_decode,
    history_delta_encode,
    moment_create,
    reduce_history_size,
)
from storyvault.core.prng import PRNG, str2int
from storyvault.core.session import SessionSnapshotManager, validate_snapshot

__all__ = [
    # Configuration
    "Settings",
    "get_settings",
    "reset_settings",
    # Diff
    "DiffEngine",
    "JsonPatchDiff",
    "get_diff_engine",
    # Errors
    "BackendUnavailableError",
    "ConstraintError",
    "MomentIndexError",
    "QuotaExceededError",
    "StoryVaultError",
    "StructuralError",
    "TransactionAbortedError",
    # History
    "MomentHistory",
    "history_delta_decode",
    "history_delta_encode",
    "moment_create",
    "reduce_history_size",
    # PRNG
    "PRNG",
    "str2int",
    # Session snapshots
    "SessionSnapshotManager",
    "validate_snapshot",
]
