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

"""Opening and settling the span of a single instrumented call.

A span is opened before the underlying method runs and settled exactly
once, with one of three outcomes:

* :class:`Success` carries the call's value. Result attributes are
  extracted, the status is set to ``OK`` and the span is ended.
* :class:`Failure` carries whatever was reported as the failure. The error
  is normalized and recorded as an exception event, ``error.type`` and an
  ``ERROR`` status are set and the span is ended.
* ``PENDING_CALLBACK`` means completion will be reported later through a
  callback; the span is left open.

Settling never raises into the caller's code path.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.client_methods.descriptors import (
    OperationDescriptor,
)
from opentelemetry.instrumentation.client_methods.errors import (
    NormalizedError,
    normalize_error,
)
from opentelemetry.instrumentation.client_methods.extraction import (
    extract_post,
)
from opentelemetry.instrumentation.client_methods.settings import (
    ClientSettings,
)
from opentelemetry.semconv.attributes import (
    error_attributes as ErrorAttributes,
)
from opentelemetry.semconv.attributes import (
    exception_attributes as ExceptionAttributes,
)
from opentelemetry.trace import Span, Status, StatusCode, Tracer
from opentelemetry.util.types import AttributeValue

_logger = logging.getLogger(__name__)


class Success:
    __slots__ = ("value",)

    def __init__(self, value: Any = None):
        self.value = value


class Failure:
    __slots__ = ("error",)

    def __init__(self, error: Any):
        self.error = error


class _PendingCallback:
    __slots__ = ()

    def __repr__(self):
        return "PENDING_CALLBACK"


PENDING_CALLBACK = _PendingCallback()


def _exception_attributes(error: NormalizedError) -> Dict[str, str]:
    attributes = {
        ExceptionAttributes.EXCEPTION_TYPE: error.type,
        ExceptionAttributes.EXCEPTION_MESSAGE: error.message,
    }
    if error.stacktrace is not None:
        attributes[ExceptionAttributes.EXCEPTION_STACKTRACE] = error.stacktrace
    return attributes


class SpanHandle:
    """The open span of one call, plus what is needed to settle it."""

    __slots__ = ("span", "descriptor", "_settings")

    def __init__(
        self,
        span: Span,
        descriptor: OperationDescriptor,
        settings: ClientSettings,
    ):
        self.span = span
        self.descriptor = descriptor
        self._settings = settings

    def activate(self):
        """Makes the span current without ending it on exit."""
        return trace.use_span(
            self.span,
            end_on_exit=False,
            record_exception=False,
            set_status_on_exception=False,
        )

    def settle(self, outcome) -> bool:
        """Applies ``outcome`` to the span; returns whether it was ended."""
        if outcome is PENDING_CALLBACK:
            return False
        try:
            if isinstance(outcome, Failure):
                self._fail(outcome.error)
            else:
                self._succeed(outcome.value)
        except Exception:  # pylint: disable=broad-except
            _logger.debug(
                "Failed to settle span %s",
                self.descriptor.span_name,
                exc_info=True,
            )
        finally:
            self.span.end()
        if isinstance(outcome, Success):
            self._run_result_hook(outcome.value)
        return True

    def _succeed(self, value: Any) -> None:
        if self.span.is_recording():
            self.span.set_attributes(
                extract_post(self.descriptor, value, self._settings)
            )
        self.span.set_status(Status(StatusCode.OK))

    def _fail(self, reported: Any) -> None:
        error = normalize_error(reported)
        if self.span.is_recording():
            self.span.set_attributes(
                extract_post(
                    self.descriptor, error.exception, self._settings, True
                )
            )
            try:
                self.span.record_exception(
                    error.exception, attributes=_exception_attributes(error)
                )
            except Exception:  # pylint: disable=broad-except
                # exception whose __str__ fails inside the SDK
                self.span.add_event("exception", _exception_attributes(error))
            self.span.set_attribute(ErrorAttributes.ERROR_TYPE, error.type)
        self.span.set_status(Status(StatusCode.ERROR, error.message))

    def _run_result_hook(self, value: Any) -> None:
        hook = self.descriptor.result_hook
        if hook is None:
            return
        try:
            hook(value)
        except Exception:  # pylint: disable=broad-except
            _logger.debug(
                "Result hook of %s failed",
                self.descriptor.qualified_name,
                exc_info=True,
            )


def open_span(
    tracer: Tracer,
    descriptor: OperationDescriptor,
    settings: ClientSettings,
    attributes: Dict[str, AttributeValue],
    name: Optional[str] = None,
) -> SpanHandle:
    span_attributes = dict(descriptor.attributes)
    span_attributes.update(attributes)
    span = tracer.start_span(
        descriptor.span_name if name is None else name,
        kind=descriptor.kind,
        attributes=span_attributes,
    )
    return SpanHandle(span, descriptor, settings)
