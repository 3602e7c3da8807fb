"""
Structural diff/patch capability.

History compression only needs two operations, ``diff(a, b) -> delta`` and
``patch(a, delta) -> b``. The default engine produces RFC 6902 JSON Patch
documents, which are plain lists of dicts and survive any storage medium
that holds structured data.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import jsonpatch


@runtime_checkable
class DiffEngine(Protocol):
    """Protocol for structural difference providers."""

    def diff(self, source: Any, target: Any) -> Any:
        """Return a delta turning ``source`` into ``target``."""
        ...

    def patch(self, source: Any, delta: Any) -> Any:
        """Return a new object: ``source`` with ``delta`` applied. ``source`` is untouched."""
        ...


class JsonPatchDiff:
    """DiffEngine backed by the ``jsonpatch`` library."""

    def diff(self, source: Any, target: Any) -> list[dict[str, Any]]:
        return jsonpatch.make_patch(source, target).patch

    def patch(self, source: Any, delta: list[dict[str, Any]]) -> Any:
        # apply_patch deep-copies unless in_place is requested
        return jsonpatch.apply_patch(source, delta, in_place=False)


_default_engine: DiffEngine | None = None


def get_diff_engine() -> DiffEngine:
    """Get the shared default diff engine."""
    global _default_engine
    if _default_engine is None:
        _default_engine = JsonPatchDiff()
    return _default_engine
