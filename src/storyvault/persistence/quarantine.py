"""
Quarantine of values the save store can't hold.

Story variables occasionally pick up callables or custom objects. The object
store only holds plain structured data, so before a save those values are
replaced by a JSON string describing them, and their access paths are
recorded next to the moment. Loading reverses the substitution.

Opaque Value Envelope:
=====================
    {"__opaque__": "callable", "ref": "package.module:qualname"}
    {"__opaque__": "object",   "ref": "package.module:ClassName", "state": obj.to_json()}

Objects opt in by providing ``to_json()`` and a ``from_json(state)``
classmethod. Loading only revives references registered with
``register_opaque``; anything else stays in its string form.

Values that are neither plain data nor opaque (sets, datetimes, bytes) are
refused before anything is written.

Access paths read like subscript chains: ``['inventory'][0]['use']``.

Usage:
======

    @register_opaque
    class Lantern:
        def to_json(self): ...

        @classmethod
        def from_json(cls, state): ...
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from storyvault.core.errors import StructuralError

logger = logging.getLogger(__name__)

OPAQUE_MARKER = "__opaque__"

_ACCESSOR_RE = re.compile(r"\[(?:'((?:[^'\\]|\\.)*)'|(\d+))\]")

# Revival registry
_revivable: dict[str, Any] = {}


def register_opaque(target: Any) -> Any:
    """
    Allow quarantined references to ``target`` to be revived on load.

    Args:
        target: Function, or class providing ``from_json(state)``

    Returns:
        ``target`` unchanged, so this works as a decorator
    """
    _revivable[_ref(target)] = target
    return target


def unregister_opaque(target: Any) -> None:
    _revivable.pop(_ref(target), None)


def is_opaque(value: Any) -> bool:
    """Whether ``value`` can't be stored as plain data."""
    if value is None or isinstance(value, (str, int, float, bool, dict, list, tuple)):
        return False
    return callable(value) or callable(getattr(value, "to_json", None))


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def _ref(target: Any) -> str:
    return f"{target.__module__}:{target.__qualname__}"


def _envelope(value: Any) -> dict[str, Any]:
    if callable(getattr(value, "to_json", None)) and not isinstance(value, type):
        return {OPAQUE_MARKER: "object", "ref": _ref(type(value)), "state": value.to_json()}
    return {OPAQUE_MARKER: "callable", "ref": _ref(value)}


def _key_path(path: str, key: Any) -> str:
    if isinstance(key, int):
        return f"{path}[{key}]"
    escaped = str(key).replace("\\", "\\\\").replace("'", "\\'")
    return f"{path}['{escaped}']"


def _children(target: Any):
    if isinstance(target, dict):
        return list(target.items())
    if isinstance(target, list):
        return list(enumerate(target))
    return []


def find_opaque(variables: Any, path: str = "") -> list[str]:
    """Access paths of every opaque value under ``variables``, without touching it."""
    found: list[str] = []
    for key, value in _children(variables):
        value_path = _key_path(path, key)
        if is_opaque(value):
            found.append(value_path)
        elif isinstance(value, (dict, list)):
            found.extend(find_opaque(value, value_path))
    return found


def quarantine(variables: Any, path: str = "", verbose: bool = False) -> list[str]:
    """
    Replace opaque values under ``variables`` in place.

    Args:
        variables: Variable tree of one moment
        path: Prefix for the reported access paths
        verbose: Log a warning for each substituted value

    Returns:
        Access paths of the substituted values
    """
    quarantined: list[str] = []
    for key, value in _children(variables):
        value_path = _key_path(path, key)
        if is_opaque(value):
            if verbose:
                logger.warning(
                    f"{value_path} of type {type(value).__name__} shouldn't be in story variables"
                )
            variables[key] = json.dumps(_envelope(value))
            quarantined.append(value_path)
        elif isinstance(value, (dict, list)):
            quarantined.extend(quarantine(value, value_path, verbose))
    return quarantined


def find_unstorable(variables: Any, path: str = "", allow_opaque: bool = True) -> list[str]:
    """
    Access paths of values under ``variables`` the save store can't hold.

    Tuples are stored as lists. Opaque values count as storable when
    ``allow_opaque`` is set and they sit where ``quarantine`` can replace
    them, which excludes the inside of a tuple.
    """
    items = list(enumerate(variables)) if isinstance(variables, tuple) else _children(variables)
    found: list[str] = []
    for key, value in items:
        value_path = _key_path(path, key)
        if isinstance(value, (dict, list, tuple)):
            found.extend(find_unstorable(value, value_path, allow_opaque and not isinstance(value, tuple)))
        elif not (_is_scalar(value) or (allow_opaque and is_opaque(value))):
            found.append(value_path)
    return found


def ensure_plain(variables: Any, allow_opaque: bool = False) -> None:
    """
    Reject variable trees the save store can't hold.

    Args:
        variables: Variable tree of one moment
        allow_opaque: Accept values ``quarantine`` can substitute

    Raises:
        StructuralError: listing the offending access paths
    """
    found = find_unstorable(variables, allow_opaque=allow_opaque)
    if found:
        raise StructuralError(f"Story variables hold values that can't be saved: {', '.join(found)}")


def parse_path(path: str) -> list[str | int]:
    """Split ``['a'][0]['b']`` into ``['a', 0, 'b']``."""
    if not isinstance(path, str) or not path:
        raise ValueError(f"Invalid quarantine path: {path!r}")

    accessors: list[str | int] = []
    position = 0
    for match in _ACCESSOR_RE.finditer(path):
        if match.start() != position:
            break
        name, index = match.groups()
        if index is not None:
            accessors.append(int(index))
        else:
            accessors.append(re.sub(r"\\(.)", r"\1", name))
        position = match.end()
    if position != len(path) or not accessors:
        raise ValueError(f"Invalid quarantine path: {path!r}")
    return accessors


def _resolve(ref: str) -> Any:
    if not isinstance(ref, str) or ref not in _revivable:
        raise ValueError(f"{ref!r} isn't registered for revival")
    return _revivable[ref]


def revive(text: str) -> Any:
    """Rebuild the value described by a quarantined envelope string."""
    envelope = json.loads(text)
    if not isinstance(envelope, dict) or OPAQUE_MARKER not in envelope:
        raise ValueError("Not a quarantined value")

    target = _resolve(envelope["ref"])
    kind = envelope[OPAQUE_MARKER]
    if kind == "callable":
        return target
    if kind == "object":
        return target.from_json(envelope.get("state"))
    raise ValueError(f"Unknown opaque value kind {kind!r}")


def restore(variables: Any, paths: list[str]) -> list[str]:
    """
    Revive quarantined values in place.

    A path that can't be revived is logged and left as its string form.

    Returns:
        Paths that failed to revive
    """
    failed: list[str] = []
    for path in paths:
        try:
            accessors = parse_path(path)
            ref = variables
            for accessor in accessors[:-1]:
                ref = ref[accessor]
            ref[accessors[-1]] = revive(ref[accessors[-1]])
        except Exception as e:
            logger.warning(f"Couldn't restore quarantined value at {path}: {e}")
            failed.append(path)
    return failed
