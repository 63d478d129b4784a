"""Shape-tolerant decoding of Password Safe response bodies.

The API answers the same endpoint with a JSON object, a JSON array or a bare
(optionally quoted) string depending on server-side state. Each helper here
tries the shapes in a fixed order and returns ``None`` when none of them fit,
leaving it to the caller to decide whether that is an error.
"""

from __future__ import annotations

import json
from typing import Final, TypeVar

from pydantic import BaseModel, ValidationError

M = TypeVar("M", bound=BaseModel)


class _NotJson:
    def __repr__(self) -> str:
        return "NOT_JSON"


NOT_JSON: Final = _NotJson()


def load_json(text: str | None) -> object:
    """Return the parsed body, or :data:`NOT_JSON` when it is not valid JSON."""

    if text is None or not text.strip():
        return NOT_JSON
    try:
        return json.loads(text)
    except ValueError:
        return NOT_JSON


def as_model(payload: object, model: type[M]) -> M | None:
    """Validate a JSON object into ``model``; non-objects never match."""

    if not isinstance(payload, dict):
        return None
    try:
        return model.model_validate(payload)
    except ValidationError:
        return None


def as_model_list(payload: object, model: type[M], *, skip_invalid: bool = False) -> list[M] | None:
    """Validate a JSON array into a list of ``model``.

    With ``skip_invalid`` entries that do not validate are dropped instead of
    failing the whole list.
    """

    if not isinstance(payload, list):
        return None
    items: list[M] = []
    for entry in payload:
        item = as_model(entry, model)
        if item is None:
            if skip_invalid:
                continue
            return None
        items.append(item)
    return items


def decode_object(text: str | None, model: type[M]) -> M | None:
    return as_model(load_json(text), model)


def decode_object_or_first(text: str | None, model: type[M]) -> M | None:
    """Decode a single object, falling back to the first element of an array."""

    payload = load_json(text)
    single = as_model(payload, model)
    if single is not None:
        return single
    many = as_model_list(payload, model)
    if many:
        return many[0]
    return None


def decode_object_or_list(text: str | None, model: type[M]) -> list[M] | None:
    """Decode an array, wrapping a lone object in a one-element list."""

    payload = load_json(text)
    single = as_model(payload, model)
    if single is not None:
        return [single]
    return as_model_list(payload, model)


def decode_raw_string(text: str | None) -> str | None:
    """Interpret the body as a bare secret, stripping surrounding quotes."""

    if text is None:
        return None
    payload = load_json(text)
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (dict, list)):
        # Structured JSON that did not match the expected model is not a raw value.
        return None
    stripped = text.strip().strip('"')
    return stripped or None


def decode_request_id(text: str | None) -> str | None:
    """Accept a bare numeric request identifier such as ``12345`` or ``"12345"``."""

    payload = load_json(text)
    if isinstance(payload, bool):
        return None
    if isinstance(payload, int):
        return str(payload)
    if isinstance(payload, str) and payload.strip().isdigit():
        return payload.strip()
    return None


__all__ = [
    "NOT_JSON",
    "as_model",
    "as_model_list",
    "decode_object",
    "decode_object_or_first",
    "decode_object_or_list",
    "decode_raw_string",
    "decode_request_id",
    "load_json",
]
