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

import traceback
from dataclasses import dataclass
from typing import Any, Optional


class NonExceptionError(Exception):
    """Stands in for a failure value that is not an exception.

    Error-first callbacks and failed futures may report plain strings or
    arbitrary objects; the original value is kept on ``value``.
    """

    def __init__(self, value: Any, message: str):
        super().__init__(message)
        self.value = value


@dataclass(frozen=True)
class NormalizedError:
    exception: BaseException
    message: str
    type: str
    stacktrace: Optional[str] = None


def safe_str(value: Any) -> str:
    try:
        return str(value)
    except Exception:  # pylint: disable=broad-except
        pass
    try:
        return repr(value)
    except Exception:  # pylint: disable=broad-except
        return f"<unprintable {type(value).__qualname__}>"


def normalize_error(value: Any) -> NormalizedError:
    """Turns any reported failure into a (message, type, stacktrace) triple.

    Never raises, whatever ``value`` is.
    """
    if isinstance(value, BaseException):
        exception = value
    else:
        exception = NonExceptionError(value, safe_str(value))

    stacktrace = None
    if exception.__traceback__ is not None:
        try:
            stacktrace = "".join(
                traceback.format_exception(
                    type(exception), exception, exception.__traceback__
                )
            )
        except Exception:  # pylint: disable=broad-except
            stacktrace = None

    return NormalizedError(
        exception=exception,
        message=safe_str(exception),
        type=type(exception).__qualname__,
        stacktrace=stacktrace,
    )
