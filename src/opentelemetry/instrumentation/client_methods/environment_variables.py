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
Whether free-text request fields (statements, message bodies, code) are
captured on spans. Accepts ``true`` or ``false``, default ``true``.
"""
OTEL_PYTHON_CLIENT_METHODS_CAPTURE_REQUEST_TEXT = (
    "OTEL_PYTHON_CLIENT_METHODS_CAPTURE_REQUEST_TEXT"
)

"""
Whether identifiers and counts are extracted from responses.
Accepts ``true`` or ``false``, default ``true``.
"""
OTEL_PYTHON_CLIENT_METHODS_CAPTURE_RESPONSE_METADATA = (
    "OTEL_PYTHON_CLIENT_METHODS_CAPTURE_RESPONSE_METADATA"
)

"""
Maximum number of characters kept from a captured free-text field before
it is truncated, default ``1000``.
"""
OTEL_PYTHON_CLIENT_METHODS_MAX_TEXT_LENGTH = (
    "OTEL_PYTHON_CLIENT_METHODS_MAX_TEXT_LENGTH"
)
