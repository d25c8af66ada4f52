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

"""
Tracing for the methods of an already constructed SDK client object.

Every instrumented method call produces exactly one span, whether the
method returns a value, returns an awaitable or a future, or reports its
outcome through a trailing ``callback(error, result)`` argument. The
instrumented method behaves exactly like the original: same arguments,
same return value, same exceptions.

Usage
-----

.. code-block:: python

    from opentelemetry.instrumentation.client_methods import (
        AttributeRule,
        OperationSpec,
        ResourceSpec,
        identifier_paths,
        instrument_client,
    )

    client = EmailClient(api_key)

    instrument_client(
        client,
        ResourceSpec(
            methods=(),
            children={
                "emails": ResourceSpec(
                    methods=("send", "get"),
                    rules=(
                        AttributeRule.request("to", "0.to"),
                        AttributeRule.response(
                            "message_id", *identifier_paths("id")
                        ),
                    ),
                )
            },
        ),
        attribute_prefix="email",
    )

    client.emails.send({"to": "someone@example.com"})  # span "email.emails.send"

Instrumenting the same client again is a no-op. A single method can be
traced with :func:`instrument_method` and the clients returned by a factory
such as ``Sandbox.create`` with :func:`instrument_factory`.

Configuration
-------------

Every entry point accepts the following keyword options:

* ``tracer_provider``, ``tracer_name``: where spans are created.
* ``capture_request_text``: record free text such as query statements
  (``OTEL_PYTHON_CLIENT_METHODS_CAPTURE_REQUEST_TEXT``, default ``true``).
* ``capture_response_metadata``: record identifiers and counts read from
  results (``OTEL_PYTHON_CLIENT_METHODS_CAPTURE_RESPONSE_METADATA``,
  default ``true``).
* ``max_text_length``: text longer than this is cut and suffixed with
  ``...`` (``OTEL_PYTHON_CLIENT_METHODS_MAX_TEXT_LENGTH``, default 1000).
* ``instrument_nested_resources``: walk ``group`` resources (default
  ``True``).
* ``attribute_prefix``: namespace of span names and attributes (default
  ``"client"``).
* ``span_kind``: default ``SpanKind.CLIENT``.
* ``should_instrument``: ``(path, method_name, original) -> bool`` filter.
* ``detect_callbacks``: treat a trailing two-argument callable as an
  error-first callback (default ``True``).

API
---
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Optional, TypeVar

import wrapt

from opentelemetry.instrumentation.client_methods.conventions import (
    CallingConvention,
)
from opentelemetry.instrumentation.client_methods.descriptors import (
    OperationSpec,
    ResourceSpec,
    build_descriptor,
)
from opentelemetry.instrumentation.client_methods.errors import (
    NonExceptionError,
    normalize_error,
)
from opentelemetry.instrumentation.client_methods.extraction import (
    REQUEST_TEXT,
    RESPONSE_METADATA,
    AttributeRule,
    count,
    first_word,
    identifier,
    identifier_paths,
    identity,
    join,
    line_count,
    text,
    to_bool,
    truncate,
    truncate_text,
)
from opentelemetry.instrumentation.client_methods.markers import (
    is_instrumented,
)
from opentelemetry.instrumentation.client_methods.presets import (
    crud_client,
    crud_resource,
    sql_client,
)
from opentelemetry.instrumentation.client_methods.settings import (
    ClientSettings,
)
from opentelemetry.instrumentation.client_methods.walker import (
    ResourceWalker,
    TracedMethod,
    is_traced,
    wrap_method,
)

_logger = logging.getLogger(__name__)

C = TypeVar("C")

__all__ = [
    "AttributeRule",
    "CallingConvention",
    "NonExceptionError",
    "OperationSpec",
    "REQUEST_TEXT",
    "RESPONSE_METADATA",
    "ResourceSpec",
    "TracedMethod",
    "count",
    "crud_client",
    "crud_resource",
    "first_word",
    "identifier",
    "identifier_paths",
    "identity",
    "instrument_client",
    "instrument_factory",
    "instrument_method",
    "is_instrumented",
    "join",
    "line_count",
    "normalize_error",
    "sql_client",
    "text",
    "to_bool",
    "truncate",
    "truncate_text",
]


def _instrument(client, resources: ResourceSpec, settings: ClientSettings):
    walker = ResourceWalker(settings, settings.get_tracer())
    walker.walk(client, resources)
    _logger.debug(
        "Instrumented %d methods of %s", walker.wrapped, type(client).__name__
    )


def instrument_client(
    client: C, resources: Optional[ResourceSpec] = None, **options: Any
) -> C:
    """Instruments the methods of ``client`` in place.

    Args:
        client: The client object. ``None`` is returned unchanged.
        resources: The shape of the client. If omitted every public method
            of ``client`` itself is traced.
        options: See the module documentation.

    Returns:
        The same ``client`` object.
    """
    if client is None:
        return client
    settings = ClientSettings.from_options(**options)
    _instrument(
        client, ResourceSpec() if resources is None else resources, settings
    )
    return client


def instrument_method(
    target: Any,
    method_name: str,
    operation: Optional[OperationSpec] = None,
    **options: Any,
) -> bool:
    """Traces the single method ``target.<method_name>``.

    Returns whether the method was wrapped by this call. Calling it again
    for the same method, or for an attribute that is not a function, leaves
    the attribute untouched and returns ``False``.
    """
    if target is None:
        return False
    settings = ClientSettings.from_options(**options)
    resource = ResourceSpec(
        methods=(method_name,),
        operations={} if operation is None else {method_name: operation},
    )
    return wrap_method(
        target, method_name, (), resource, settings, settings.get_tracer()
    )


def instrument_factory(
    owner: Any,
    factory_name: str,
    resources: Optional[ResourceSpec] = None,
    operation: Optional[OperationSpec] = None,
    **options: Any,
) -> bool:
    """Traces a factory and instruments every client it creates.

    ``owner.<factory_name>`` is typically a class method such as
    ``Sandbox.create``. Its calls get a span like any other method and
    the client it returns, directly or through an awaitable, is passed to
    :func:`instrument_client` with ``resources`` and the same options.

    Returns whether the factory was wrapped by this call.
    """
    settings = ClientSettings.from_options(**options)
    factory = getattr(owner, factory_name, None)
    if not callable(factory):
        _logger.warning(
            "%r has no callable %s, nothing to instrument", owner, factory_name
        )
        return False
    if is_traced(factory):
        return False

    created = ResourceSpec() if resources is None else resources
    operation = operation or OperationSpec()
    user_hook = operation.result_hook

    def instrument_created(client):
        _instrument(client, created, settings)
        if user_hook is not None:
            user_hook(client)

    descriptor = build_descriptor(
        (),
        factory_name,
        ResourceSpec(
            methods=(factory_name,),
            operations={
                factory_name: dataclasses.replace(
                    operation, result_hook=instrument_created
                )
            },
        ),
        settings,
    )
    wrapt.wrap_object(
        owner,
        factory_name,
        TracedMethod,
        (descriptor, settings, settings.get_tracer()),
    )
    return True
