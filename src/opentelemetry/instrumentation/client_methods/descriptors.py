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

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple

from opentelemetry.instrumentation.client_methods.extraction import (
    AttributeRule,
)
from opentelemetry.instrumentation.client_methods.settings import (
    ClientSettings,
)
from opentelemetry.trace import SpanKind
from opentelemetry.util.types import AttributeValue

ResultHook = Callable[[Any], None]


@dataclass(frozen=True)
class OperationSpec:
    """Per-method overrides.

    ``rules`` are added to the rules of the enclosing resource,
    ``attributes`` are static attributes set on every span of the method
    and ``result_hook`` is called with the value of every successful call.
    ``span_name_from`` builds the span name of each call from its
    arguments, falling back to ``span_name`` or the operation name.
    """

    rules: Sequence[AttributeRule] = ()
    span_name: Optional[str] = None
    kind: Optional[SpanKind] = None
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)
    result_hook: Optional[ResultHook] = None
    span_name_from: Optional[AttributeRule] = None


@dataclass(frozen=True)
class ResourceSpec:
    """Shape of one object in a client's resource tree.

    ``methods`` lists the method names to wrap; ``None`` wraps every public
    method found on the object. Methods named in ``operations`` are always
    wrapped. ``children`` maps attribute names to nested resources. A
    ``group`` resource is only walked when nested resources are enabled and
    ``discover`` walks every public object attribute not listed in
    ``children``. ``name`` replaces the attribute name in operation names.
    """

    methods: Optional[Sequence[str]] = None
    operations: Mapping[str, OperationSpec] = field(default_factory=dict)
    rules: Sequence[AttributeRule] = ()
    children: Mapping[str, "ResourceSpec"] = field(default_factory=dict)
    group: bool = False
    discover: bool = False
    name: Optional[str] = None

    def discovered_child(self) -> "ResourceSpec":
        return ResourceSpec(rules=self.rules, discover=True)


@dataclass(frozen=True)
class OperationDescriptor:
    qualified_name: str
    span_name: str
    kind: SpanKind
    rules: Tuple[AttributeRule, ...]
    attributes: Mapping[str, AttributeValue]
    result_hook: Optional[ResultHook] = None
    span_name_rule: Optional[AttributeRule] = None


_NO_OVERRIDES = OperationSpec()


def build_descriptor(
    path: Sequence[str],
    method_name: str,
    resource: ResourceSpec,
    settings: ClientSettings,
) -> OperationDescriptor:
    operation = resource.operations.get(method_name, _NO_OVERRIDES)
    qualified_name = ".".join((*path, method_name))

    attributes = {settings.attribute_key("operation"): qualified_name}
    if path:
        attributes[settings.attribute_key("resource")] = ".".join(path)
    attributes.update(operation.attributes)

    return OperationDescriptor(
        qualified_name=qualified_name,
        span_name=operation.span_name
        or settings.attribute_key(qualified_name),
        kind=settings.span_kind if operation.kind is None else operation.kind,
        rules=tuple(resource.rules) + tuple(operation.rules),
        attributes=MappingProxyType(attributes),
        result_hook=operation.result_hook,
        span_name_rule=operation.span_name_from,
    )
