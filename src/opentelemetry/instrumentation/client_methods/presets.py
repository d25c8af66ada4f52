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

"""Ready-made resource shapes for common kinds of clients.

``sql_client`` describes a database client whose query methods take a
statement, either as a string or as an object carrying it under ``text``
or ``sql``::

    instrument_client(db, sql_client("postgresql", db_name="orders"))

``crud_client`` describes an API client exposing resources such as
``client.customers.list()`` or ``client.portal.billing.get("id")``::

    instrument_client(api, crud_client(["customers"], {"portal": ["billing"]}))
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional, Sequence

from opentelemetry.instrumentation.client_methods.descriptors import (
    OperationSpec,
    ResourceSpec,
)
from opentelemetry.instrumentation.client_methods.extraction import (
    REQUEST_TEXT,
    AttributeRule,
    count,
    first_word,
    identifier,
    identifier_paths,
    truncate,
)
from opentelemetry.semconv.trace import SpanAttributes

CRUD_METHODS = (
    "list",
    "create",
    "get",
    "update",
    "delete",
    "search",
    "export",
    "validate",
    "activate",
    "deactivate",
    "claim",
    "release",
    "ingest",
    "upload",
    "download",
    "authorize",
    "token",
    "revoke",
    "introspect",
)

STATEMENT_PATHS = ("0", "0.text", "0.sql", "sql", "query", "statement")


def _operation_name(value, settings):
    operation = first_word(value, settings)
    return operation.lower() if operation else None


def sql_client(
    db_system: str,
    db_name: Optional[str] = None,
    peer_name: Optional[str] = None,
    peer_port: Optional[int] = None,
    methods: Sequence[str] = ("query",),
) -> ResourceSpec:
    attributes = {SpanAttributes.DB_SYSTEM: db_system}
    if db_name is not None:
        attributes[SpanAttributes.DB_NAME] = db_name
    if peer_name is not None:
        attributes[SpanAttributes.NET_PEER_NAME] = peer_name
    if peer_port is not None:
        attributes[SpanAttributes.NET_PEER_PORT] = peer_port

    operation = OperationSpec(
        rules=(
            AttributeRule.request(
                SpanAttributes.DB_STATEMENT,
                *STATEMENT_PATHS,
                transform=truncate,
                gate=REQUEST_TEXT,
                namespaced=False,
            ),
            AttributeRule.request(
                SpanAttributes.DB_OPERATION,
                *STATEMENT_PATHS,
                transform=first_word,
                namespaced=False,
            ),
        ),
        attributes=attributes,
        # spans read <prefix>.select, <prefix>.insert...
        span_name_from=AttributeRule.request(
            "span_name", *STATEMENT_PATHS, transform=_operation_name
        ),
    )
    return ResourceSpec(
        methods=tuple(methods),
        operations={method: operation for method in methods},
    )


CRUD_RULES = (
    AttributeRule.request(
        "resource_id", "0", "0.id", "id", transform=identifier
    ),
    AttributeRule.response(
        "resource_id", *identifier_paths("id"), transform=identifier
    ),
    AttributeRule.response("result_count", "", "data", "items", transform=count),
)


def crud_resource(methods: Sequence[str] = CRUD_METHODS) -> ResourceSpec:
    return ResourceSpec(methods=tuple(methods), rules=CRUD_RULES)


def crud_client(
    resources: Iterable[str],
    groups: Optional[Mapping[str, Iterable[str]]] = None,
    methods: Sequence[str] = CRUD_METHODS,
) -> ResourceSpec:
    """Root resource whose attributes ``resources`` are CRUD resources.

    ``groups`` maps a namespace attribute to the CRUD resources it holds;
    namespaces are skipped when ``instrument_nested_resources`` is off.
    """
    children = {name: crud_resource(methods) for name in resources}
    for group, names in (groups or {}).items():
        children[group] = ResourceSpec(
            methods=(),
            children={name: crud_resource(methods) for name in names},
            group=True,
        )
    return ResourceSpec(methods=(), children=children)
