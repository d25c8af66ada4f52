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

"""Calling conventions an instrumented method can follow.

The convention of a call is decided from its arguments before it runs (a
trailing error-first callback) and, failing that, from what it returns (an
awaitable or a future). Each convention has one strategy that invokes the
method and settles the call's span when the outcome is known.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import functools
import inspect
from typing import Any, Callable

import wrapt

from opentelemetry.instrumentation.client_methods.lifecycle import (
    PENDING_CALLBACK,
    Failure,
    SpanHandle,
    Success,
)


class CallingConvention(enum.Enum):
    SYNCHRONOUS = "synchronous"
    PROMISE_LIKE = "promise_like"
    ERROR_FIRST_CALLBACK = "error_first_callback"


_POSITIONAL = (
    inspect.Parameter.POSITIONAL_ONLY,
    inspect.Parameter.POSITIONAL_OR_KEYWORD,
)


def is_error_first_callback(value: Any) -> bool:
    """Whether ``value`` looks like a ``callback(error, result)`` function."""
    if not callable(value) or inspect.isclass(value):
        return False
    try:
        signature = inspect.signature(value)
    except (TypeError, ValueError):
        # builtins without introspectable signatures
        return True
    positional = 0
    for parameter in signature.parameters.values():
        if parameter.kind == inspect.Parameter.VAR_POSITIONAL:
            return True
        if parameter.kind in _POSITIONAL:
            positional += 1
    return positional >= 2


def is_future(value: Any) -> bool:
    return asyncio.isfuture(value) or isinstance(
        value, concurrent.futures.Future
    )


def detect_convention(
    args: tuple, detect_callbacks: bool = True
) -> CallingConvention:
    if detect_callbacks and args and is_error_first_callback(args[-1]):
        return CallingConvention.ERROR_FIRST_CALLBACK
    return CallingConvention.SYNCHRONOUS


def classify_result(result: Any) -> CallingConvention:
    if is_future(result) or inspect.isawaitable(result):
        return CallingConvention.PROMISE_LIKE
    return CallingConvention.SYNCHRONOUS


def _settle_synchronous(result: Any, handle: SpanHandle) -> Any:
    handle.settle(Success(result))
    return result


def _settle_future(handle: SpanHandle, future) -> None:
    if future.cancelled():
        if isinstance(future, concurrent.futures.Future):
            handle.settle(Failure(concurrent.futures.CancelledError()))
        else:
            handle.settle(Failure(asyncio.CancelledError()))
        return
    exception = future.exception()
    if exception is not None:
        handle.settle(Failure(exception))
    else:
        handle.settle(Success(future.result()))


async def _await_and_settle(awaitable, handle: SpanHandle) -> Any:
    with handle.activate():
        try:
            value = await awaitable
        except BaseException as exc:
            handle.settle(Failure(exc))
            raise
    handle.settle(Success(value))
    return value


class _TracedAwaitable(wrapt.ObjectProxy):
    """Settles the span the first time the wrapped object is awaited.

    Everything other than ``__await__`` is forwarded, so the caller still
    sees the object the method returned.
    """

    def __init__(self, wrapped, handle: SpanHandle):
        super().__init__(wrapped)
        self._self_handle = handle
        self._self_consumed = False

    def _settling(self, awaitable):
        if self._self_consumed:
            return awaitable
        self._self_consumed = True
        return _await_and_settle(awaitable, self._self_handle)

    def __await__(self):
        return self._settling(self.__wrapped__).__await__()


class _TracedAwaitableContext(_TracedAwaitable):
    """Also usable with ``async with``; entering settles the span."""

    async def __aenter__(self):
        return await self._settling(self.__wrapped__.__aenter__())

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return await self.__wrapped__.__aexit__(exc_type, exc_val, exc_tb)


def _settle_promise_like(result: Any, handle: SpanHandle) -> Any:
    if is_future(result):
        # the caller keeps the very same future
        result.add_done_callback(functools.partial(_settle_future, handle))
        return result
    if inspect.iscoroutine(result):
        return _await_and_settle(result, handle)
    if hasattr(type(result), "__aenter__"):
        return _TracedAwaitableContext(result, handle)
    return _TracedAwaitable(result, handle)


_SETTLE_RESULT = {
    CallingConvention.SYNCHRONOUS: _settle_synchronous,
    CallingConvention.PROMISE_LIKE: _settle_promise_like,
}


def _invoke_direct(
    wrapped: Callable, args: tuple, kwargs: dict, handle: SpanHandle
) -> Any:
    with handle.activate():
        try:
            result = wrapped(*args, **kwargs)
        except BaseException as exc:
            handle.settle(Failure(exc))
            raise
    return _SETTLE_RESULT[classify_result(result)](result, handle)


def _invoke_with_callback(
    wrapped: Callable, args: tuple, kwargs: dict, handle: SpanHandle
) -> Any:
    callback = args[-1]
    settled = False

    def settle_once(outcome) -> None:
        nonlocal settled
        if settled:
            return
        settled = True
        handle.settle(outcome)

    def traced_callback(*callback_args, **callback_kwargs):
        error = callback_args[0] if callback_args else None
        if error is None:
            value = callback_args[1] if len(callback_args) > 1 else None
            settle_once(Success(value))
        else:
            settle_once(Failure(error))
        return callback(*callback_args, **callback_kwargs)

    with handle.activate():
        try:
            result = wrapped(*args[:-1], traced_callback, **kwargs)
        except BaseException as exc:
            settle_once(Failure(exc))
            raise
    if not settled:
        handle.settle(PENDING_CALLBACK)
    return result


_INVOKE = {
    CallingConvention.SYNCHRONOUS: _invoke_direct,
    # awaitables are only recognized once the method has returned
    CallingConvention.PROMISE_LIKE: _invoke_direct,
    CallingConvention.ERROR_FIRST_CALLBACK: _invoke_with_callback,
}


def invoke(
    convention: CallingConvention,
    wrapped: Callable,
    args: tuple,
    kwargs: dict,
    handle: SpanHandle,
) -> Any:
    """Runs ``wrapped`` under ``handle`` following ``convention``.

    Returns what the caller of the original method would have received:
    the same value, the same future or an awaitable resolving to the same
    value. Exceptions raised by ``wrapped`` propagate unchanged.
    """
    return _INVOKE[convention](wrapped, args, kwargs, handle)
