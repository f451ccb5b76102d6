"""Helpers for participant attributes."""

from __future__ import annotations

from typing import Dict, Mapping, Optional


def attribute_changes(
    old: Optional[Mapping[str, str]], cur: Optional[Mapping[str, str]]
) -> Dict[str, str]:
    """Return the attributes that differ between ``old`` and ``cur``.

    Added or changed keys map to their new value; deleted keys map to "".
    """
    old = old or {}
    cur = cur or {}
    diff = {key: value for key, value in cur.items() if old.get(key, "") != value}
    diff.update({key: "" for key in old if key not in cur})
    return diff