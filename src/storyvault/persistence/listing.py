"""
Paging helpers for the save list.

The autosave (slot 0) is shown on every page; user slots ``1..`` are split
into pages of ``length`` slots. These helpers only look at details rows
``{"slot": n, "data": {"date", "metadata": {"saveId", ...}, ...}}``.
"""

from __future__ import annotations

from typing import Any

DEFAULT_LIST_LENGTH = 10
LIST_LENGTH_MAX = 20
LIST_PAGE_MAX = 20


def _date(row: dict[str, Any]) -> float:
    return row.get("data", {}).get("date") or 0


def _save_id(row: dict[str, Any] | None) -> Any:
    if row is None:
        return None
    return (row.get("data", {}).get("metadata") or {}).get("saveId")


def latest_save(details: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Most recent user save (never the autosave), or None."""
    latest = None
    for row in details:
        if row["slot"] == 0:
            continue
        if latest is None or _date(row) > _date(latest):
            latest = row
    return latest


def default_list_length(
    details: list[dict[str, Any]],
    page_max: int = LIST_PAGE_MAX,
    length_max: int = LIST_LENGTH_MAX,
) -> int:
    """
    Rows per page so that the highest occupied slot still fits on ``page_max`` pages.

    Starts at 10 and grows up to ``length_max``.
    """
    highest = max((row["slot"] for row in details), default=0)
    length = DEFAULT_LIST_LENGTH
    while highest > length * page_max and length < length_max:
        length += 1
    return length


def default_page(details: list[dict[str, Any]], length: int) -> int:
    """
    Zero-based page to open the list on.

    Opens the page of the most recent user save, unless the autosave is
    newer and belongs to a different playthrough (different ``saveId``), in
    which case the first page is shown.
    """
    latest = latest_save(details)
    if latest is None:
        return 0

    autosave = next((row for row in details if row["slot"] == 0), None)
    if autosave is None:
        return (latest["slot"] - 1) // length

    ignore_autosave = _date(latest) > _date(autosave) or _save_id(latest) == _save_id(autosave)
    return (latest["slot"] - 1) // length if ignore_autosave else 0


def page_slots(page: int, length: int) -> range:
    """User slots shown on zero-based ``page``."""
    if page < 0 or length < 1:
        raise ValueError(f"Invalid page {page} of length {length}")
    return range(length * page + 1, length * (page + 1) + 1)
