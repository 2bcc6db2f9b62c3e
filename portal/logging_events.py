"""Structured log events shared by queue, lock and sync components."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

_JSON_PRIMITIVES = (str, int, float, bool, type(None))


def _check_flat(name: str, value: Any) -> None:
    if not isinstance(value, _JSON_PRIMITIVES):
        raise TypeError(f"Field '{name}' must be a flat JSON-compatible value")


def _check_nested(value: Any, *, path: str) -> None:
    if isinstance(value, _JSON_PRIMITIVES):
        return
    if isinstance(value, Mapping):
        for key, nested in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Keys in '{path}' must be strings")
            _check_nested(nested, path=f"{path}.{key}")
        return
    if isinstance(value, (list, tuple)):
        for index, nested in enumerate(value):
            _check_nested(nested, path=f"{path}[{index}]")
        return
    raise TypeError(f"Unsupported value in '{path}': {type(value).__name__}")


def log_event(logger: Any, event: str, /, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit ``event`` with flat ``fields`` and an optional nested ``meta`` mapping."""

    if not isinstance(event, str) or not event.strip():
        raise ValueError("event must be a non-empty string")

    extra: dict[str, Any] = {"event": event}
    meta = fields.pop("meta", None)
    for name, value in fields.items():
        _check_flat(name, value)
        extra[name] = value
    if meta is not None:
        if not isinstance(meta, Mapping):
            raise TypeError("meta must be a mapping if provided")
        meta = dict(meta)
        _check_nested(meta, path="meta")
        extra["meta"] = meta

    logger.log(level, event, extra=extra)
