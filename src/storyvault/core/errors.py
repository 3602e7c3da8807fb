"""
Exception hierarchy for storyvault.

Structural errors describe malformed input handed to the core and always
propagate. Backend errors describe the storage medium misbehaving; the save
store reports them and degrades to the legacy key-value store.
"""


class StoryVaultError(Exception):
    """Base exception for storyvault."""


class StructuralError(StoryVaultError, ValueError):
    """Malformed snapshot, history or moment input."""


class MomentIndexError(StructuralError, IndexError):
    """Moment activation with a missing or out-of-bounds history index."""


class BackendUnavailableError(StoryVaultError):
    """The transactional object store could not be opened."""


class TransactionAbortedError(StoryVaultError):
    """A transaction errored or was aborted; none of its writes are visible."""

    def __init__(self, message: str, *, explicit: bool = False):
        super().__init__(message)
        # explicit aborts come from the caller, not from the backend
        self.explicit = explicit


class ConstraintError(TransactionAbortedError):
    """An ``add`` targeted a key that already exists."""


class QuotaExceededError(StoryVaultError):
    """The transient session store cannot hold the value."""

    def __init__(self, size: int, quota: int):
        self.size = size
        self.quota = quota
        super().__init__(f"Value of {size} bytes exceeds session quota of {quota} bytes")
