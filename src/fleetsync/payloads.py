from __future__ import annotations

from typing import cast


def as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def as_object_list(value: object) -> list[dict[str, object]] | None:
    if not isinstance(value, list):
        return None
    items: list[dict[str, object]] = []
    for item in value:
        item_obj = as_object_dict(item)
        if item_obj is not None:
            items.append(item_obj)
    return items


def as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def as_int(value: object, *, field: str, platform: str = "GitHub") -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected {platform} response: {field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(
                f"Unexpected {platform} response: {field} must be an integer"
            ) from exc
    raise RuntimeError(f"Unexpected {platform} response: {field} must be an integer")
