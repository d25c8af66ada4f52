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

import copy
import inspect
import logging
from typing import Any, Iterator, Sequence, Tuple

import wrapt

from opentelemetry.instrumentation.client_methods.conventions import (
    detect_convention,
    invoke,
)
from opentelemetry.instrumentation.client_methods.descriptors import (
    OperationDescriptor,
    ResourceSpec,
    build_descriptor,
)
from opentelemetry.instrumentation.client_methods.extraction import (
    extract_pre,
    extract_span_name,
)
from opentelemetry.instrumentation.client_methods.lifecycle import open_span
from opentelemetry.instrumentation.client_methods.markers import (
    mark_instrumented,
)
from opentelemetry.instrumentation.client_methods.settings import (
    ClientSettings,
)
from opentelemetry.instrumentation.utils import is_instrumentation_enabled
from opentelemetry.trace import Tracer

_logger = logging.getLogger(__name__)

_PLAIN_DATA = (
    str,
    bytes,
    bytearray,
    int,
    float,
    complex,
    bool,
    list,
    tuple,
    dict,
    set,
    frozenset,
)


def _traced_call(
    tracer: Tracer, descriptor: OperationDescriptor, settings: ClientSettings
):
    def traced_call(wrapped, instance, args, kwargs):
        if not is_instrumentation_enabled():
            return wrapped(*args, **kwargs)

        attributes = extract_pre(descriptor, args, kwargs, settings)
        handle = open_span(
            tracer,
            descriptor,
            settings,
            attributes,
            name=extract_span_name(descriptor, args, kwargs, settings),
        )
        convention = detect_convention(args, settings.detect_callbacks)
        return invoke(convention, wrapped, args, kwargs, handle)

    return traced_call


class TracedMethod(wrapt.FunctionWrapper):
    """Installed in place of an instrumented method.

    Calls the original with the same arguments and returns what it
    returns; the span of each call is opened and settled around it.
    """

    def __init__(
        self,
        wrapped,
        descriptor: OperationDescriptor,
        settings: ClientSettings,
        tracer: Tracer,
    ):
        super().__init__(wrapped, _traced_call(tracer, descriptor, settings))
        self._self_descriptor = descriptor
        self._self_settings = settings
        self._self_tracer = tracer

    @property
    def descriptor(self) -> OperationDescriptor:
        return self._self_descriptor

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        # a bound method is rebound to the copy of its instance
        return type(self)(
            copy.deepcopy(self.__wrapped__, memo),
            self._self_descriptor,
            self._self_settings,
            self._self_tracer,
        )

    def __reduce_ex__(self, protocol):
        return self.__wrapped__.__reduce_ex__(protocol)


def _can_walk(value: Any) -> bool:
    return not (
        value is None
        or isinstance(value, _PLAIN_DATA)
        or inspect.isroutine(value)
    )


def is_resource(value: Any) -> bool:
    """Whether ``value`` is an object discovery may descend into.

    Classes, modules and proxies are only walked when they are the root
    or a configured child.
    """
    return _can_walk(value) and not (
        inspect.isclass(value)
        or inspect.ismodule(value)
        or isinstance(value, wrapt.ObjectProxy)
    )


def is_traced(value: Any) -> bool:
    # methods read from a class come back bound to their TracedMethod
    return isinstance(value, TracedMethod) or isinstance(
        getattr(value, "_self_parent", None), TracedMethod
    )


def _safe_getattr(obj: Any, name: str) -> Any:
    try:
        return getattr(obj, name)
    except Exception:  # pylint: disable=broad-except
        _logger.debug("Cannot read attribute %s of %r", name, type(obj))
        return None


def _public_method_names(obj: Any, resource: ResourceSpec) -> Iterator[str]:
    for name in sorted(dir(obj)):
        if name.startswith("_") or name in resource.children:
            continue
        static = inspect.getattr_static(obj, name, None)
        if isinstance(static, property):
            continue
        if inspect.isroutine(_safe_getattr(obj, name)):
            yield name


def _method_names(obj: Any, resource: ResourceSpec) -> Tuple[str, ...]:
    if resource.methods is None:
        names = list(_public_method_names(obj, resource))
    else:
        names = list(resource.methods)
    names.extend(name for name in resource.operations if name not in names)
    return tuple(names)


def wrap_method(
    obj: Any,
    method_name: str,
    path: Sequence[str],
    resource: ResourceSpec,
    settings: ClientSettings,
    tracer: Tracer,
) -> bool:
    """Replaces ``obj.<method_name>`` with a :class:`TracedMethod`.

    Returns ``False`` and leaves the attribute untouched when it is missing,
    not a function, already traced, filtered out by ``should_instrument``
    or cannot be assigned.
    """
    original = _safe_getattr(obj, method_name)
    if is_traced(original):
        return False
    if not callable(original) or inspect.isclass(original):
        return False

    if settings.should_instrument is not None:
        try:
            if not settings.should_instrument(
                tuple(path), method_name, original
            ):
                return False
        except Exception:  # pylint: disable=broad-except
            _logger.debug(
                "should_instrument failed for %s, skipping it",
                method_name,
                exc_info=True,
            )
            return False

    descriptor = build_descriptor(path, method_name, resource, settings)
    try:
        if inspect.isclass(obj):
            # wraps the raw staticmethod or classmethod found on the MRO
            wrapt.wrap_object(
                obj,
                method_name,
                TracedMethod,
                (descriptor, settings, tracer),
            )
        else:
            setattr(
                obj,
                method_name,
                TracedMethod(original, descriptor, settings, tracer),
            )
    except (AttributeError, TypeError):
        _logger.debug(
            "Cannot replace %s on %r", method_name, type(obj), exc_info=True
        )
        return False
    return True


class ResourceWalker:
    """Walks a client's resource tree once, wrapping methods as it goes.

    Every visited object is marked; an object that already carries the
    marker is skipped along with everything below it, which both keeps
    repeated instrumentation idempotent and stops reference cycles.
    """

    def __init__(self, settings: ClientSettings, tracer: Tracer):
        self._settings = settings
        self._tracer = tracer
        self.wrapped = 0

    def walk(
        self, obj: Any, resource: ResourceSpec, path: Sequence[str] = ()
    ) -> None:
        if not _can_walk(obj) or not mark_instrumented(obj):
            return

        for name in _method_names(obj, resource):
            if wrap_method(
                obj, name, path, resource, self._settings, self._tracer
            ):
                self.wrapped += 1

        for attribute, child in resource.children.items():
            if child.group and not self._settings.instrument_nested_resources:
                continue
            value = _safe_getattr(obj, attribute)
            if value is not None:
                self.walk(value, child, (*path, child.name or attribute))

        if resource.discover:
            self._discover(obj, resource, path)

    def _discover(
        self, obj: Any, resource: ResourceSpec, path: Sequence[str]
    ) -> None:
        try:
            names = sorted(vars(obj))
        except TypeError:
            return
        for name in names:
            if name.startswith("_") or name in resource.children:
                continue
            value = _safe_getattr(obj, name)
            if is_resource(value):
                self.walk(value, resource.discovered_child(), (*path, name))
