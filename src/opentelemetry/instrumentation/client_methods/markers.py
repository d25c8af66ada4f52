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

"""Process-wide record of objects that have already been instrumented.

The marker lives in a side-table keyed by object identity instead of on the
object itself, so instrumented clients keep the same ``vars()``/``dir()``
and serialize exactly as before. Entries are never cleared while the object
is alive.
"""

import threading
import weakref
from typing import Any, Dict

_lock = threading.RLock()
# id(obj) -> weakref to obj, or obj itself when it cannot be weakly referenced
_instrumented: Dict[int, Any] = {}


def _forget(key: int, ref: weakref.ref) -> None:
    with _lock:
        if _instrumented.get(key) is ref:
            del _instrumented[key]


def _is_marked(key: int, obj: Any) -> bool:
    entry = _instrumented.get(key)
    if entry is None:
        return False
    if isinstance(entry, weakref.ref):
        return entry() is obj
    return entry is obj


def is_instrumented(obj: Any) -> bool:
    """Returns whether ``obj`` carries the instrumentation marker."""
    with _lock:
        return _is_marked(id(obj), obj)


def mark_instrumented(obj: Any) -> bool:
    """Marks ``obj`` as instrumented.

    Returns:
        ``True`` if the marker was set by this call, ``False`` if the object
        was already instrumented and must not be wrapped again.
    """
    key = id(obj)
    with _lock:
        if _is_marked(key, obj):
            return False
        try:
            _instrumented[key] = weakref.ref(
                obj, lambda ref, key=key: _forget(key, ref)
            )
        except TypeError:
            # not weakly referenceable, keep it alive so the id stays unique
            _instrumented[key] = obj
        return True
