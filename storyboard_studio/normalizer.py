"""
Field Normalizer - best-effort field extraction from workflow payloads

Workflow outputs are not contractually fixed: depending on the workflow
version a field arrives as a flat key, nested inside another object, inside
a JSON document that was itself stringified into a field, or as a markdown
label in free text. A field is described by a FieldSpec (its synonyms and
an ordered tuple of strategies) and resolved by resolve_field(), where the
first strategy that yields a non-empty value wins.

Nothing in this module raises on bad input. Absence is reported as None and
callers decide whether a missing field blocks progress.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

FieldValue = Union[str, List[str]]


class _NotJson:
    def __repr__(self) -> str:
        return "NOT_JSON"


NOT_JSON = _NotJson()


# ---------- Descriptors ----------

class Strategy(str, Enum):
    DEEP_KEY = "deep_key"
    JSON_LITERAL = "json_literal"
    LABEL = "label"
    WHOLE_OBJECT = "whole_object"
    RAW_PAYLOAD = "raw_payload"


DEFAULT_STRATEGIES = (Strategy.DEEP_KEY, Strategy.JSON_LITERAL, Strategy.LABEL)


class FieldSpec(BaseModel):
    """Describes one logical field and how to find it."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Logical field name, used in logs only.")
    keys: Tuple[str, ...] = Field(..., description="Key synonyms, matched case-insensitively.")
    label_keys: Optional[Tuple[str, ...]] = Field(None, description="Markdown label synonyms; defaults to keys.")
    strategies: Tuple[Strategy, ...] = DEFAULT_STRATEGIES
    multiline: bool = Field(False, description="Label values run until the next bullet/heading line instead of end of line.")
    join_lists: Optional[str] = Field(None, description="Join list values into one string with this separator.")
    consumed_keys: Tuple[str, ...] = Field((), description="Keys dropped before a whole-object dump.")
    container_key: Optional[str] = Field(None, description="Dump this sub-object instead of the root when present.")

    @property
    def labels(self) -> Tuple[str, ...]:
        return self.label_keys if self.label_keys is not None else self.keys


# ---------- JSON helpers ----------

def load_json(text: Any) -> Any:
    """json.loads that returns NOT_JSON instead of raising."""
    if not isinstance(text, str):
        return NOT_JSON
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return NOT_JSON


def looks_like_json(text: str) -> bool:
    return text.strip()[:1] in ("{", "[")


def parse_payload(payload: str) -> Any:
    """Parse a terminal payload, unwrapping JSON that was stringified twice."""
    data = load_json(payload)
    for _ in range(2):
        if isinstance(data, str) and looks_like_json(data):
            inner = load_json(data)
            if inner is NOT_JSON:
                break
            data = inner
    return data


_FENCE_START = re.compile(r"^\s*```[a-zA-Z]*\s*")
_FENCE_END = re.compile(r"\s*```\s*$")


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` markdown fence."""
    if not text.lstrip().startswith("```"):
        return text
    return _FENCE_END.sub("", _FENCE_START.sub("", text, count=1), count=1)


def repair_escapes(value: str) -> str:
    r"""Decode literal escapes (\uXXXX, \n, \") left by regex extraction."""
    if "\\" not in value:
        return value
    try:
        decoded = json.loads(f'"{value}"')
    except (json.JSONDecodeError, ValueError):
        return value
    return decoded if isinstance(decoded, str) else value


# ---------- Deep key search ----------

def deep_find(data: Any, keys: Tuple[str, ...]) -> Any:
    """Pre-order search for the first key matching one of `keys`.

    The current object's own keys are checked before any child is entered,
    so a shallow match wins over a coincidental deeper one. Strings that look
    like JSON are parsed and searched as if they were nested structures.
    Returns None when nothing matches.
    """
    wanted = {k.lower() for k in keys}
    return _deep_find(data, wanted)


def _deep_find(data: Any, wanted: set) -> Any:
    if isinstance(data, dict):
        for key, value in data.items():
            if isinstance(key, str) and key.lower() in wanted and value is not None:
                return value
        children = list(data.values())
    elif isinstance(data, list):
        children = data
    else:
        return None

    for child in children:
        if isinstance(child, (dict, list)):
            found = _deep_find(child, wanted)
        elif isinstance(child, str) and looks_like_json(child):
            parsed = load_json(child)
            found = None if parsed is NOT_JSON else _deep_find(parsed, wanted)
        else:
            continue
        if found is not None:
            return found
    return None


def coerce_value(value: Any, join_lists: Optional[str] = None) -> Optional[FieldValue]:
    """Turn a matched JSON value into a string or list of strings; empty -> None."""
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, list):
        items = [v for v in (_scalar_text(x) for x in value) if v]
        if not items:
            return None
        return join_lists.join(items) if join_lists is not None else items
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False, indent=2) if value else None
    return str(value)


def _scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


# ---------- Regex strategies ----------

# Labels start a line, optionally behind bullet or heading markers; the value
# may begin on the following line
_LABEL_PREFIX = r"(?:^|\n)[ \t]*(?:[*#-]+[ \t]*)?(?:\*\*)?"
_LABEL_SUFFIX = r"(?:\*\*)?[ \t]*[:：]\s*"


def json_literal_match(payload: str, keys: Tuple[str, ...]) -> Optional[str]:
    """Find `"key": "value"` in raw text, trying each key in order."""
    for key in keys:
        pattern = re.compile(r'"%s"\s*:\s*"((?:[^"\\]|\\.)*)"' % re.escape(key), re.IGNORECASE)
        match = pattern.search(payload)
        if match and match.group(1).strip():
            return repair_escapes(match.group(1))
    return None


def label_match(payload: str, keys: Tuple[str, ...], multiline: bool = False) -> Optional[str]:
    """Find `**key**: value` / `key：value` style labels in free text."""
    if not keys:
        return None
    alternatives = "|".join(re.escape(k) for k in keys)
    if multiline:
        body = r"([\s\S]+?)(?:\n(?=[*#-])|$)"
    else:
        body = r"(.+?)(?:\n|$)"
    pattern = re.compile(_LABEL_PREFIX + "(?:" + alternatives + ")" + _LABEL_SUFFIX + body)
    match = pattern.search(payload)
    if not match:
        return None
    value = match.group(1).strip()
    return repair_escapes(value) if value else None


# ---------- Resolver ----------

def _strategy_deep_key(payload: str, data: Any, spec: FieldSpec) -> Optional[FieldValue]:
    if data is NOT_JSON:
        return None
    return coerce_value(deep_find(data, spec.keys), spec.join_lists)


def _strategy_json_literal(payload: str, data: Any, spec: FieldSpec) -> Optional[FieldValue]:
    return json_literal_match(payload, spec.keys)


def _strategy_label(payload: str, data: Any, spec: FieldSpec) -> Optional[FieldValue]:
    return label_match(payload, spec.labels, multiline=spec.multiline)


def _strategy_whole_object(payload: str, data: Any, spec: FieldSpec) -> Optional[FieldValue]:
    if not isinstance(data, dict):
        return None
    target = data
    if spec.container_key and spec.container_key in data:
        inner = data[spec.container_key]
        if isinstance(inner, str):
            inner = load_json(inner)
        if isinstance(inner, dict):
            target = inner
    consumed = set(spec.consumed_keys)
    remaining = {k: v for k, v in target.items() if k not in consumed}
    if not remaining:
        return None
    return json.dumps(remaining, ensure_ascii=False, indent=2)


def _strategy_raw_payload(payload: str, data: Any, spec: FieldSpec) -> Optional[FieldValue]:
    if isinstance(data, (dict, list)):
        return None
    text = payload.strip()
    return text or None


_STRATEGIES: Dict[Strategy, Callable[[str, Any, FieldSpec], Optional[FieldValue]]] = {
    Strategy.DEEP_KEY: _strategy_deep_key,
    Strategy.JSON_LITERAL: _strategy_json_literal,
    Strategy.LABEL: _strategy_label,
    Strategy.WHOLE_OBJECT: _strategy_whole_object,
    Strategy.RAW_PAYLOAD: _strategy_raw_payload,
}


def resolve_field(payload: str, spec: FieldSpec, data: Any = None) -> Optional[FieldValue]:
    """Evaluate spec.strategies in order; the first non-empty result wins.

    Args:
        payload: Raw terminal payload
        spec: Field descriptor
        data: Already parsed payload (parsed here when omitted)

    Returns:
        A string, a list of strings, or None when every strategy came up empty
    """
    if payload is None:
        return None
    if data is None:
        data = parse_payload(payload)
    for strategy in spec.strategies:
        value = _STRATEGIES[strategy](payload, data, spec)
        if value:
            return value
    return None


def extract(payload: str, candidate_keys, multiline: bool = False) -> Optional[FieldValue]:
    """Extract one field by its key synonyms using the default strategies."""
    spec = FieldSpec(name="adhoc", keys=tuple(candidate_keys), multiline=multiline)
    return resolve_field(payload, spec)


def resolve_fields(payload: str, specs: List[FieldSpec]) -> Dict[str, Optional[FieldValue]]:
    """Resolve several fields against one payload, parsing it once."""
    data = parse_payload(payload)
    return {spec.name: resolve_field(payload, spec, data=data) for spec in specs}


# ---------- Image URL lists ----------

_URL_KEYS = ("image_url", "url", "image")
_LIST_KEYS = ("output", "data", "images")


def _is_url(text: str) -> bool:
    return text.startswith("http://") or text.startswith("https://") or text.startswith("data:image/")


def _url_of(item: Any) -> Optional[str]:
    if isinstance(item, str):
        text = item.strip()
        return text or None
    if isinstance(item, dict):
        for key in _URL_KEYS:
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, dict) and isinstance(value.get("url"), str):
                return value["url"].strip() or None
        return None
    if item is None:
        return None
    return str(item)


_MAX_DEPTH = 6


def _urls_from(data: Any, depth: int = 0) -> Optional[List[str]]:
    if depth > _MAX_DEPTH:
        return None
    if isinstance(data, str):
        text = data.strip()
        if looks_like_json(text):
            inner = load_json(text)
            if inner is not NOT_JSON:
                return _urls_from(inner, depth + 1)
        return [text] if _is_url(text) else None
    if isinstance(data, list):
        urls = [u for u in (_url_of(item) for item in data) if u]
        return urls or None
    if not isinstance(data, dict):
        return None

    # Field holding an array, a JSON-encoded array, or a bare URL
    output = data.get("output")
    if output:
        found = _urls_from(output, depth + 1)
        if found:
            return found

    for key in _URL_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return [value.strip()]
        if isinstance(value, list):
            found = _urls_from(value, depth + 1)
            if found:
                return found

    for key in _LIST_KEYS[1:]:
        value = data.get(key)
        if isinstance(value, list):
            found = _urls_from(value, depth + 1)
            if found:
                return found

    return _nested_urls(data, depth)


def _nested_urls(container: Any, depth: int) -> Optional[List[str]]:
    """Search the children of an object or list; keys at this level were already tried."""
    if depth > _MAX_DEPTH:
        return None
    children = container.values() if isinstance(container, dict) else container
    for child in children:
        if isinstance(child, str) and looks_like_json(child):
            child = load_json(child)
        if isinstance(child, dict):
            found = _urls_from(child, depth + 1)
        elif isinstance(child, list):
            found = _nested_urls(child, depth + 1)
        else:
            continue
        if found:
            return found
    return None


def extract_image_urls(payload: str) -> Optional[List[str]]:
    """Extract an ordered list of image references from a payload.

    Accepted shapes, tried in order: a bare URL with no JSON wrapper,
    `output` as an array / JSON-encoded array / bare URL, single
    `image_url` / `url` / `image` keys, `data` or `images` arrays of strings
    or `{url: ...}` objects, and finally any of those keys found deeper.
    """
    if payload is None:
        return None
    text = payload.strip()
    data = parse_payload(text)
    if data is NOT_JSON:
        return [text] if text.startswith("http") else None
    return _urls_from(data)
