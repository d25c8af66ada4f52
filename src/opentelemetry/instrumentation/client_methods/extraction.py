# Copyright The OpenTelemetry Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Best-effort span attribute extraction from call arguments and results.

An :class:`AttributeRule` names an attribute key, where to look for the
value (request arguments, result or error), an ordered list of candidate
field paths and an optional transform. Evaluation never raises: a missing
field, a ``None`` value, a transform returning ``None`` or a transform
failing simply moves on to the next candidate, and the attribute is
omitted when no candidate yields a value.

Paths are dotted. Every segment is looked up as a mapping key, a sequence
index or an object attribute, in that order of preference. For request
arguments the first segment is a positional index (``"0"``) or a keyword
argument name (``"sql"``). The empty path designates the payload itself.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping, Set
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from opentelemetry.instrumentation.client_methods.errors import safe_str
from opentelemetry.instrumentation.client_methods.settings import (
    ClientSettings,
)
from opentelemetry.util.types import AttributeValue

_logger = logging.getLogger(__name__)

ARGS = "args"
RESULT = "result"
ERROR = "error"

# configuration flags a rule can be gated on
REQUEST_TEXT = "request_text"
RESPONSE_METADATA = "response_metadata"

ELLIPSIS = "..."

Transform = Callable[[Any, ClientSettings], Any]

_MISSING = object()
_PRIMITIVES = (bool, str, int, float)
_SQL_LEADING_COMMENTS = re.compile(r"^(\s*(/\*.*?\*/|--[^\n]*\n?))*", re.S)
_FIRST_WORD = re.compile(r"\s*(\w+)")


@dataclass(frozen=True)
class AttributeRule:
    key: str
    paths: Tuple[str, ...]
    source: str = ARGS
    transform: Optional[Transform] = None
    gate: Optional[str] = None
    namespaced: bool = True

    @classmethod
    def request(cls, key: str, *paths: str, **options: Any) -> "AttributeRule":
        return cls(key, tuple(paths), ARGS, **options)

    @classmethod
    def response(
        cls, key: str, *paths: str, **options: Any
    ) -> "AttributeRule":
        options.setdefault("gate", RESPONSE_METADATA)
        return cls(key, tuple(paths), RESULT, **options)

    @classmethod
    def error(cls, key: str, *paths: str, **options: Any) -> "AttributeRule":
        return cls(key, tuple(paths), ERROR, **options)


def identifier_paths(
    *names: str, envelopes: Iterable[str] = ("data",)
) -> Tuple[str, ...]:
    """Candidate paths for an identifier, direct fields first.

    ``identifier_paths("id", "message_id")`` gives
    ``("id", "message_id", "data.id", "data.message_id")``.
    """
    envelopes = tuple(envelopes)
    return tuple(names) + tuple(
        f"{envelope}.{name}" for envelope in envelopes for name in names
    )


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + ELLIPSIS


# Transforms. Each receives the looked-up value and the call settings and
# returns the attribute value, or None to skip the candidate.


def identity(value: Any, settings: ClientSettings) -> Any:  # pylint: disable=unused-argument
    return value


def truncate(value: Any, settings: ClientSettings) -> Optional[str]:
    """Strings (statements, code) truncated; anything else is skipped."""
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", "replace")
    if not isinstance(value, str):
        return None
    return truncate_text(value, settings.max_text_length)


def text(value: Any, settings: ClientSettings) -> str:
    """Any payload (message bodies, step data) serialized, then truncated."""
    if isinstance(value, (bytes, bytearray)):
        serialized = bytes(value).decode("utf-8", "replace")
    elif isinstance(value, str):
        serialized = value
    else:
        try:
            serialized = json.dumps(value, default=safe_str)
        except (TypeError, ValueError):
            serialized = safe_str(value)
    return truncate_text(serialized, settings.max_text_length)


def count(value: Any, settings: ClientSettings) -> Optional[int]:  # pylint: disable=unused-argument
    if isinstance(value, (list, tuple, Set)):
        return len(value)
    return None


def line_count(value: Any, settings: ClientSettings) -> Optional[int]:  # pylint: disable=unused-argument
    if isinstance(value, str):
        return len(value.split("\n"))
    if isinstance(value, (list, tuple)):
        return len(value)
    return None


def join(separator: str = ",") -> Transform:
    def _join(value: Any, settings: ClientSettings) -> Optional[str]:  # pylint: disable=unused-argument
        if isinstance(value, str):
            return value
        if isinstance(value, (list, tuple, Set)):
            return separator.join(safe_str(item) for item in value)
        return None

    return _join


def identifier(value: Any, settings: ClientSettings) -> Optional[str]:  # pylint: disable=unused-argument
    if isinstance(value, bool):
        return None
    if isinstance(value, (str, int)):
        return str(value) if value != "" else None
    return None


def first_word(value: Any, settings: ClientSettings) -> Optional[str]:  # pylint: disable=unused-argument
    """``SELECT``, ``INSERT``... from the first word of a statement."""
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", "replace")
    if not isinstance(value, str):
        return None
    statement = _SQL_LEADING_COMMENTS.sub("", value, count=1)
    match = _FIRST_WORD.match(statement)
    if match is None:
        return None
    return match.group(1).upper()


def to_bool(value: Any, settings: ClientSettings) -> bool:  # pylint: disable=unused-argument
    return bool(value)


def _step(value: Any, segment: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(segment, _MISSING)
    if isinstance(value, (list, tuple)):
        try:
            return value[int(segment)]
        except (ValueError, IndexError):
            return _MISSING
    if isinstance(value, (str, bytes, bytearray)):
        return _MISSING
    return getattr(value, segment, _MISSING)


def lookup(payload: Any, path: str) -> Any:
    current = payload
    if not path:
        return current
    for segment in path.split("."):
        if current is None or current is _MISSING:
            return _MISSING
        current = _step(current, segment)
    return current


def _to_attribute_value(value: Any) -> AttributeValue:
    if isinstance(value, _PRIMITIVES):
        return value
    if isinstance(value, (list, tuple)):
        items = [item for item in value if item is not None]
        item_types = {type(item) for item in items}
        if len(item_types) == 1 and item_types.issubset(_PRIMITIVES):
            return tuple(items)
        return tuple(safe_str(item) for item in items)
    return safe_str(value)


def _evaluate(rule: AttributeRule, payload: Any, settings: ClientSettings):
    for path in rule.paths:
        try:
            value = lookup(payload, path)
            if value is _MISSING or value is None:
                continue
            if rule.transform is not None:
                value = rule.transform(value, settings)
            if value is None:
                continue
            return _to_attribute_value(value)
        except Exception:  # pylint: disable=broad-except
            _logger.debug(
                "Failed to extract attribute %s from path %r",
                rule.key,
                path,
                exc_info=True,
            )
    return _MISSING


def _is_enabled(rule: AttributeRule, settings: ClientSettings) -> bool:
    if rule.gate == REQUEST_TEXT:
        return settings.capture_request_text
    if rule.gate == RESPONSE_METADATA:
        return settings.capture_response_metadata
    return True


def extract_attributes(
    rules: Iterable[AttributeRule],
    source: str,
    payload: Any,
    settings: ClientSettings,
) -> Dict[str, AttributeValue]:
    attributes = {}
    for rule in rules:
        if rule.source != source or not _is_enabled(rule, settings):
            continue
        value = _evaluate(rule, payload, settings)
        if value is _MISSING:
            continue
        key = settings.attribute_key(rule.key) if rule.namespaced else rule.key
        attributes[key] = value
    return attributes


def _arguments(args: tuple, kwargs: dict) -> Dict[str, Any]:
    arguments = {str(index): value for index, value in enumerate(args)}
    arguments.update(kwargs)
    return arguments


def extract_pre(
    descriptor, args: tuple, kwargs: dict, settings: ClientSettings
) -> Dict[str, AttributeValue]:
    return extract_attributes(
        descriptor.rules, ARGS, _arguments(args, kwargs), settings
    )


def extract_post(
    descriptor, value: Any, settings: ClientSettings, failed: bool = False
) -> Dict[str, AttributeValue]:
    return extract_attributes(
        descriptor.rules, ERROR if failed else RESULT, value, settings
    )


def extract_span_name(
    descriptor, args: tuple, kwargs: dict, settings: ClientSettings
) -> str:
    """Name of the span of one call.

    ``descriptor.span_name_rule`` is evaluated against the call arguments;
    when it is unset, disabled or yields no text the fixed name is used.
    """
    rule = descriptor.span_name_rule
    if rule is None or not _is_enabled(rule, settings):
        return descriptor.span_name
    value = _evaluate(rule, _arguments(args, kwargs), settings)
    if not isinstance(value, str) or not value:
        return descriptor.span_name
    return settings.attribute_key(value) if rule.namespaced else value
