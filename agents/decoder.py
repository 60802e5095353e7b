"""Shape-tolerant extraction of a named field from a model's JSON answer.

Models asked for ``{"code": "..."}`` also answer with ``{"code": {"code": "..."}}``,
``[{"code": "..."}]``, or the JSON wrapped in prose and code fences. Decoding
happens in three steps:

1. Find the JSON value in the raw text (pure, fenced, or embedded) that
   carries the requested field, skipping bracketed prose such as ``[1]``.
2. Normalize the payload and then the field value with a small, ordered set
   of rules. Each rule is a pure function that either rewrites the value or
   declines (returns ``_NO_MATCH``); the first matching rule is applied and
   the list is re-scanned until no rule matches.
3. Coerce the normalized value to the requested kind.

Every function here is pure.
"""

import json
import re
from collections.abc import Callable, Iterator
from typing import Any, Literal

from agents.errors import DecodeError

FieldKind = Literal["string", "boolean", "string_list"]

_NO_MATCH = object()
_MAX_NORMALIZE_PASSES = 8
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_TRUE_WORDS = frozenset({"true", "yes"})
_FALSE_WORDS = frozenset({"false", "no"})
_NONE_WORDS = frozenset({"", "none", "null"})


# -----------------------------------------------------------------------------
# JSON location
# -----------------------------------------------------------------------------


def _extract_balanced_json_candidates(text: str) -> list[str]:
    """Extract balanced JSON object/array candidates from arbitrary text."""
    candidates: list[str] = []
    closing = {"{": "}", "[": "]"}
    n = len(text)

    for start in range(n):
        opener = text[start]
        if opener not in closing:
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
                continue

            if ch == opener:
                depth += 1
            elif ch == closing[opener]:
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def _try_parse(candidate: str) -> Any:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return _NO_MATCH
    return parsed if isinstance(parsed, (dict, list)) else _NO_MATCH


def iter_json_values(text: str) -> Iterator[Any]:
    """Yield every JSON object or array found in ``text``, in search order.

    The order is: the whole text, the body of each fenced block (then the
    balanced spans inside it), and balanced ``{...}`` / ``[...]`` spans in
    the free-form text.
    """
    parsed = _try_parse(text.strip())
    if parsed is not _NO_MATCH:
        yield parsed

    for match in _FENCE_RE.finditer(text):
        body = match.group(1).strip()
        parsed = _try_parse(body)
        if parsed is not _NO_MATCH:
            yield parsed
        for candidate in _extract_balanced_json_candidates(body):
            parsed = _try_parse(candidate)
            if parsed is not _NO_MATCH:
                yield parsed

    for candidate in _extract_balanced_json_candidates(text):
        parsed = _try_parse(candidate)
        if parsed is not _NO_MATCH:
            yield parsed


def extract_json_value(text: str) -> Any:
    """Return the first JSON object or array found in ``text``.

    Raises:
        DecodeError: If nothing in the text parses as a JSON object or array.
    """
    for parsed in iter_json_values(text):
        return parsed
    raise DecodeError("response contains no JSON object or array")


def select_payload(text: str, field: str) -> Any:
    """Return the first JSON value in ``text`` that carries ``field``.

    Prose often contains bracketed asides such as ``[1]`` or ``[]`` ahead
    of the real answer, so a candidate only wins if its normalized payload
    is an object holding ``field``. When none does, the first candidate is
    returned so the caller reports the missing field.

    Raises:
        DecodeError: If nothing in the text parses as a JSON object or array.
    """
    first: Any = _NO_MATCH
    for parsed in iter_json_values(text):
        if first is _NO_MATCH:
            first = parsed
        payload = normalize_payload(parsed, field)
        if isinstance(payload, dict) and field in payload:
            return parsed
    if first is _NO_MATCH:
        raise DecodeError("response contains no JSON object or array")
    return first


# -----------------------------------------------------------------------------
# Normalization rules
# -----------------------------------------------------------------------------

PayloadRule = Callable[[Any, str], Any]
ValueRule = Callable[[Any, FieldKind], Any]


def _unwrap_singleton_array(payload: Any, field: str) -> Any:
    """``[{...}]`` -> ``{...}``"""
    if isinstance(payload, list) and len(payload) == 1:
        return payload[0]
    return _NO_MATCH


def _unwrap_envelope(payload: Any, field: str) -> Any:
    """``{"response": {...field...}}`` -> ``{...field...}``"""
    if isinstance(payload, dict) and field not in payload and len(payload) == 1:
        (inner,) = payload.values()
        if isinstance(inner, (dict, list)):
            return inner
    return _NO_MATCH


def _unwrap_single_key_object(value: Any, kind: FieldKind) -> Any:
    """``{"code": "..."}`` or ``{"value": true}`` -> the wrapped value."""
    if isinstance(value, dict) and len(value) == 1:
        return next(iter(value.values()))
    return _NO_MATCH


def _unwrap_singleton_list_for_scalar(value: Any, kind: FieldKind) -> Any:
    """``[true]`` -> ``true`` when a boolean is expected."""
    if kind == "boolean" and isinstance(value, list) and len(value) == 1:
        return value[0]
    return _NO_MATCH


PAYLOAD_RULES: tuple[PayloadRule, ...] = (
    _unwrap_singleton_array,
    _unwrap_envelope,
)

VALUE_RULES: tuple[ValueRule, ...] = (
    _unwrap_single_key_object,
    _unwrap_singleton_list_for_scalar,
)


def _apply_rules(value: Any, rules: tuple[Callable[[Any, Any], Any], ...], arg: Any) -> Any:
    for _ in range(_MAX_NORMALIZE_PASSES):
        for rule in rules:
            rewritten = rule(value, arg)
            if rewritten is not _NO_MATCH:
                value = rewritten
                break
        else:
            return value
    return value


def normalize_payload(payload: Any, field: str) -> Any:
    """Apply the payload rules until none matches."""
    return _apply_rules(payload, PAYLOAD_RULES, field)


def normalize_value(value: Any, kind: FieldKind) -> Any:
    """Apply the value rules until none matches."""
    return _apply_rules(value, VALUE_RULES, kind)


# -----------------------------------------------------------------------------
# Coercion
# -----------------------------------------------------------------------------


def _coerce_string(value: Any, field: str) -> str:
    if isinstance(value, str):
        # Some models double-escape newlines inside JSON strings
        return value.replace("\\n", "\n")
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return "\n".join(value)
    raise DecodeError(
        f"field '{field}' is {type(value).__name__}, expected a string",
        field=field,
    )


def _coerce_boolean(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise DecodeError(
        f"field '{field}' is {value!r}, expected a boolean",
        field=field,
    )


def _coerce_string_list(value: Any, field: str) -> list[str] | None:
    if isinstance(value, str):
        if value.strip().lower() in _NONE_WORDS:
            return None
        return [value]
    if isinstance(value, list):
        items: list[str] = []
        for item in value:
            item = normalize_value(item, "string")
            if not isinstance(item, str):
                raise DecodeError(
                    f"field '{field}' contains a {type(item).__name__} element",
                    field=field,
                )
            items.append(item)
        return items
    raise DecodeError(
        f"field '{field}' is {type(value).__name__}, expected a list of strings",
        field=field,
    )


_COERCERS: dict[FieldKind, Callable[[Any, str], Any]] = {
    "string": _coerce_string,
    "boolean": _coerce_boolean,
    "string_list": _coerce_string_list,
}


def decode_payload_field(
    payload: Any,
    field: str,
    kind: FieldKind,
    *,
    optional: bool = False,
) -> str | bool | list[str] | None:
    """Decode ``field`` from an already-parsed JSON payload.

    Returns None ("no value") when an optional field is absent or null.

    Raises:
        DecodeError: If the field is missing and required, or cannot be
            coerced to ``kind`` after normalization.
    """
    payload = normalize_payload(payload, field)
    if not isinstance(payload, dict):
        raise DecodeError(
            f"expected a JSON object, got {type(payload).__name__}",
            field=field,
        )

    if field not in payload or payload[field] is None:
        if optional:
            return None
        raise DecodeError(f"response is missing field '{field}'", field=field)

    value = normalize_value(payload[field], kind)
    if value is None:
        if optional:
            return None
        raise DecodeError(f"field '{field}' is null", field=field)

    return _COERCERS[kind](value, field)


def decode_field(
    raw_text: str,
    field: str,
    kind: FieldKind,
    *,
    optional: bool = False,
) -> str | bool | list[str] | None:
    """Extract ``field`` from raw model output as ``kind``.

    Args:
        raw_text: The model's complete response text
        field: Name of the field to extract
        kind: "string", "boolean" or "string_list"
        optional: Whether an absent field decodes to None instead of failing

    Returns:
        The decoded value, or None for an absent optional field

    Raises:
        DecodeError: If no JSON parses, a required field is absent, or the
            value cannot be coerced to ``kind``.
    """
    return decode_payload_field(select_payload(raw_text, field), field, kind, optional=optional)
