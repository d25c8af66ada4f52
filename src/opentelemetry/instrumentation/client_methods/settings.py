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

"""Options accepted by every instrumentation entry point."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Callable, Optional, Sequence

from opentelemetry import trace
from opentelemetry.instrumentation.client_methods.environment_variables import (
    OTEL_PYTHON_CLIENT_METHODS_CAPTURE_REQUEST_TEXT,
    OTEL_PYTHON_CLIENT_METHODS_CAPTURE_RESPONSE_METADATA,
    OTEL_PYTHON_CLIENT_METHODS_MAX_TEXT_LENGTH,
)
from opentelemetry.instrumentation.client_methods.version import __version__
from opentelemetry.trace import SpanKind, TracerProvider

_logger = logging.getLogger(__name__)

DEFAULT_TRACER_NAME = "opentelemetry.instrumentation.client_methods"
DEFAULT_ATTRIBUTE_PREFIX = "client"
DEFAULT_MAX_TEXT_LENGTH = 1000

# (resource path, method name, original callable) -> wrap it?
ShouldInstrument = Callable[[Sequence[str], str, Any], bool]


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def _env_length(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        length = int(value)
    except ValueError:
        _logger.warning(
            "Invalid value %r for %s, falling back to %s", value, name, default
        )
        return default
    if length < 0:
        _logger.warning(
            "Negative value %r for %s, falling back to %s",
            value,
            name,
            default,
        )
        return default
    return length


@dataclass(frozen=True)
class ClientSettings:
    """Resolved configuration for one instrumentation call.

    Explicit keyword options win over the ``OTEL_PYTHON_CLIENT_METHODS_*``
    environment variables, which win over the defaults.
    """

    tracer_name: str = DEFAULT_TRACER_NAME
    tracer_provider: Optional[TracerProvider] = None
    capture_request_text: bool = True
    capture_response_metadata: bool = True
    max_text_length: int = DEFAULT_MAX_TEXT_LENGTH
    instrument_nested_resources: bool = True
    attribute_prefix: str = DEFAULT_ATTRIBUTE_PREFIX
    span_kind: SpanKind = SpanKind.CLIENT
    should_instrument: Optional[ShouldInstrument] = None
    detect_callbacks: bool = True

    @classmethod
    def from_options(cls, **options: Any) -> "ClientSettings":
        known = {field.name for field in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise TypeError(
                f"Unexpected instrumentation options: {', '.join(unknown)}"
            )

        resolved = {
            name: value for name, value in options.items() if value is not None
        }
        resolved.setdefault(
            "capture_request_text",
            _env_flag(OTEL_PYTHON_CLIENT_METHODS_CAPTURE_REQUEST_TEXT, True),
        )
        resolved.setdefault(
            "capture_response_metadata",
            _env_flag(
                OTEL_PYTHON_CLIENT_METHODS_CAPTURE_RESPONSE_METADATA, True
            ),
        )
        resolved.setdefault(
            "max_text_length",
            _env_length(
                OTEL_PYTHON_CLIENT_METHODS_MAX_TEXT_LENGTH,
                DEFAULT_MAX_TEXT_LENGTH,
            ),
        )
        return cls(**resolved)

    def attribute_key(self, key: str) -> str:
        if not self.attribute_prefix:
            return key
        return f"{self.attribute_prefix}.{key}"

    def get_tracer(self) -> trace.Tracer:
        return trace.get_tracer(
            self.tracer_name,
            __version__,
            tracer_provider=self.tracer_provider,
        )
