"""JSON helpers for list-valued DB columns (child_ids, character_ids, tags)."""

import json
from collections.abc import Iterable


def parse_json_list(raw: str | list | tuple | None) -> list[str]:
    """Parse a JSON array column, returning [] on failure or empty.

    Lists and tuples pass through as lists without re-parsing.
    Returns [] for: None, empty string, invalid JSON, non-list JSON.
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(item) for item in raw]
    if isinstance(raw, str):
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except (ValueError, TypeError):
            return []
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
    return []


def json_list_str(values: Iterable[str] | None) -> str:
    """Serialize ids for a JSON array column. '[]' for None."""
    if values is None:
        return "[]"
    return json.dumps(list(values))
