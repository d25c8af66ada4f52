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
import asyncio
import copy
import pickle
import types
from unittest import mock

import wrapt

from opentelemetry import trace as trace_api
from opentelemetry.instrumentation.client_methods import (
    AttributeRule,
    OperationSpec,
    ResourceSpec,
    TracedMethod,
    identifier_paths,
    instrument_client,
    instrument_factory,
    instrument_method,
    is_instrumented,
    line_count,
    text,
)
from opentelemetry.instrumentation.client_methods.environment_variables import (
    OTEL_PYTHON_CLIENT_METHODS_CAPTURE_RESPONSE_METADATA,
)
from opentelemetry.instrumentation.utils import suppress_instrumentation
from opentelemetry.test.test_base import TestBase
from opentelemetry.trace import SpanKind, StatusCode

from .fake_clients import (
    ApiError,
    Database,
    EmailClient,
    Emails,
    Node,
    Sandbox,
)

EMAIL_RESOURCES = ResourceSpec(
    methods=(),
    children={
        "emails": ResourceSpec(
            methods=("send", "send_async", "fail", "fail_async"),
            rules=(
                AttributeRule.request("to", "0.to"),
                AttributeRule.response(
                    "message_id", *identifier_paths("id")
                ),
            ),
        )
    },
)


class Frozen:
    __slots__ = ()

    def get(self):
        return "value"


# pylint: disable=too-many-public-methods
class TestInstrumentClient(TestBase):
    def setUp(self):
        super().setUp()
        self.client = EmailClient()

    def instrument(self, client, resources=EMAIL_RESOURCES, **options):
        options.setdefault("tracer_provider", self.tracer_provider)
        return instrument_client(client, resources, **options)

    def test_synchronous_success(self):
        self.instrument(self.client)

        result = self.client.emails.send({"to": "someone@example.com"})

        self.assertEqual(result, {"data": {"id": "msg_1"}})
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertEqual(span.name, "client.emails.send")
        self.assertIs(span.kind, SpanKind.CLIENT)
        self.assertIs(span.status.status_code, StatusCode.OK)
        self.assertEqual(
            dict(span.attributes),
            {
                "client.operation": "emails.send",
                "client.resource": "emails",
                "client.to": "someone@example.com",
                "client.message_id": "msg_1",
            },
        )

    def test_awaitable_failure_propagates_the_same_error(self):
        self.instrument(self.client)
        error = ApiError("rate limited")

        async def run():
            try:
                await self.client.emails.fail_async(error)
            except ApiError as exc:
                return exc
            return None

        raised = asyncio.run(run())

        self.assertIs(raised, error)
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertIs(span.status.status_code, StatusCode.ERROR)
        self.assertEqual(span.status.description, "rate limited")
        self.assertEqual(span.attributes["error.type"], "ApiError")
        (event,) = span.events
        self.assertEqual(event.name, "exception")
        self.assertEqual(event.attributes["exception.type"], "ApiError")
        self.assertEqual(event.attributes["exception.message"], "rate limited")

    def test_awaitable_success(self):
        self.instrument(self.client)

        result = asyncio.run(self.client.emails.send_async({"to": "a@b.c"}))

        self.assertEqual(result, {"data": {"id": "msg_1"}})
        # send_async calls the traced send
        inner, outer = self.memory_exporter.get_finished_spans()
        self.assertEqual(outer.name, "client.emails.send_async")
        self.assertEqual(outer.attributes["client.message_id"], "msg_1")
        self.assertIs(outer.status.status_code, StatusCode.OK)
        self.assertEqual(inner.name, "client.emails.send")
        self.assertEqual(inner.parent.span_id, outer.context.span_id)
        self.assertIsNone(outer.parent)

    def test_synchronous_failure(self):
        self.instrument(self.client)

        with self.assertRaises(ApiError) as context:
            self.client.emails.fail("invalid key")

        self.assertEqual(str(context.exception), "invalid key")
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertIs(span.status.status_code, StatusCode.ERROR)
        self.assertEqual(span.status.description, "invalid key")

    def test_resource_and_operation_rules_combine(self):
        resources = ResourceSpec(
            methods=("send",),
            rules=(
                AttributeRule.request("body", "0.html", transform=line_count),
            ),
            operations={
                "send": OperationSpec(
                    rules=(
                        AttributeRule.request(
                            "subject", "0.subject", transform=text
                        ),
                    )
                )
            },
        )
        emails = Emails()
        self.instrument(emails, resources, max_text_length=50)
        subject = "s" * 1200

        emails.send({"subject": subject, "html": "a\nb"})

        (span,) = self.memory_exporter.get_finished_spans()
        self.assertEqual(
            span.attributes["client.subject"], subject[:50] + "..."
        )
        self.assertEqual(span.attributes["client.body"], 2)

    def test_nested_resources_are_wrapped_once(self):
        resources = ResourceSpec(
            methods=(),
            children={
                "peer": ResourceSpec(
                    methods=("ping",),
                    children={"peer": ResourceSpec(methods=("ping",))},
                )
            },
        )
        root = Node("root")
        root.peer = Node("child")
        root.peer.peer = Node("grandchild")

        self.instrument(root, resources)
        wrapped = root.peer.peer.ping
        self.instrument(root, resources)

        self.assertIs(root.peer.peer.ping, wrapped)
        self.assertIsInstance(wrapped, TracedMethod)
        self.assertEqual(root.peer.peer.ping(), "pong from grandchild")
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertEqual(span.name, "client.peer.peer.ping")
        self.assertTrue(is_instrumented(root.peer.peer))

    def test_instrumenting_twice_traces_once(self):
        self.instrument(self.client)
        send = self.client.emails.send
        self.instrument(self.client)

        self.assertIs(self.client.emails.send, send)
        self.client.emails.send({"to": "x@y.z"})
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 1)

    def test_non_function_target_is_left_untouched(self):
        database = Database()
        database.query = "not a function"

        self.assertIs(
            self.instrument(database, ResourceSpec(methods=("query",))),
            database,
        )
        self.assertEqual(database.query, "not a function")
        self.assertFalse(
            instrument_method(
                database, "query", tracer_provider=self.tracer_provider
            )
        )
        self.assertFalse(
            instrument_method(
                database, "missing", tracer_provider=self.tracer_provider
            )
        )

    def test_returns_client(self):
        self.assertIs(self.instrument(self.client), self.client)
        self.assertIsNone(self.instrument(None))

    def test_default_resources_discover_public_methods(self):
        emails = Emails()
        self.instrument(emails, None)

        self.assertIsInstance(emails.send, TracedMethod)
        self.assertNotIsInstance(emails._internal, TracedMethod)
        emails.send({"to": "x@y.z"})
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertEqual(span.name, "client.send")

    def test_discovery_follows_cycles(self):
        first = Node("first")
        second = Node("second")
        first.peer = second
        second.peer = first

        self.instrument(first, ResourceSpec(discover=True))

        self.assertEqual(first.peer.ping(), "pong from second")
        self.assertEqual(second.peer.ping(), "pong from first")
        self.assertEqual(
            [span.name for span in self.memory_exporter.get_finished_spans()],
            ["client.peer.ping", "client.ping"],
        )

    def test_discovery_skips_private_and_primitive_attributes(self):
        self.instrument(self.client, ResourceSpec(methods=(), discover=True))

        self.assertEqual(self.client.api_key, "re_123")
        self.client.emails.send({"to": "x@y.z"})
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertEqual(span.name, "client.emails.send")

    def test_nested_resources_can_be_disabled(self):
        resources = ResourceSpec(
            methods=(),
            children={"emails": ResourceSpec(methods=("send",), group=True)},
        )
        self.instrument(
            self.client, resources, instrument_nested_resources=False
        )

        self.assertNotIsInstance(self.client.emails.send, TracedMethod)

    def test_should_instrument(self):
        calls = []

        def should_instrument(path, method_name, original):
            calls.append((path, method_name))
            return method_name == "send"

        self.instrument(self.client, should_instrument=should_instrument)

        self.assertIsInstance(self.client.emails.send, TracedMethod)
        self.assertNotIsInstance(self.client.emails.fail, TracedMethod)
        self.assertIn((("emails",), "fail"), calls)

    def test_capture_response_metadata_disabled(self):
        self.instrument(self.client, capture_response_metadata=False)
        self.client.emails.send({"to": "x@y.z"})
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertNotIn("client.message_id", span.attributes)
        self.assertEqual(span.attributes["client.to"], "x@y.z")

    @mock.patch.dict(
        "os.environ",
        {OTEL_PYTHON_CLIENT_METHODS_CAPTURE_RESPONSE_METADATA: "false"},
    )
    def test_capture_response_metadata_from_environment(self):
        self.instrument(self.client)
        self.client.emails.send({"to": "x@y.z"})
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertNotIn("client.message_id", span.attributes)

    def test_options(self):
        resources = ResourceSpec(
            methods=("send",),
            operations={
                "send": OperationSpec(
                    span_name="email send",
                    kind=SpanKind.PRODUCER,
                    attributes={"messaging.system": "email"},
                )
            },
        )
        emails = Emails()
        self.instrument(emails, resources, attribute_prefix="resend")

        emails.send({})

        (span,) = self.memory_exporter.get_finished_spans()
        self.assertEqual(span.name, "email send")
        self.assertIs(span.kind, SpanKind.PRODUCER)
        self.assertEqual(span.attributes["messaging.system"], "email")
        self.assertEqual(span.attributes["resend.operation"], "send")

    def test_span_is_current_during_call(self):
        seen = []

        class Client:
            def call(self):
                seen.append(trace_api.get_current_span())

        client = Client()
        self.instrument(client, ResourceSpec(methods=("call",)))
        tracer = self.tracer_provider.get_tracer(__name__)
        with tracer.start_as_current_span("parent") as parent:
            client.call()

        spans = {
            span.name: span
            for span in self.memory_exporter.get_finished_spans()
        }
        child = spans["client.call"]
        self.assertEqual(
            seen[0].get_span_context().span_id, child.context.span_id
        )
        self.assertEqual(child.parent.span_id, parent.get_span_context().span_id)

    def test_suppress_instrumentation(self):
        self.instrument(self.client)
        with suppress_instrumentation():
            self.client.emails.send({"to": "x@y.z"})
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 0)

    def test_no_op_tracer_provider(self):
        self.instrument(
            self.client, tracer_provider=trace_api.NoOpTracerProvider()
        )
        self.assertEqual(
            self.client.emails.send({"to": "x@y.z"}), {"data": {"id": "msg_1"}}
        )
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 0)

    def test_result_hook_failure_is_ignored(self):
        def hook(value):
            raise RuntimeError("hook failed")

        resources = ResourceSpec(
            methods=("send",),
            operations={"send": OperationSpec(result_hook=hook)},
        )
        emails = Emails()
        self.instrument(emails, resources)

        self.assertEqual(emails.send({}), {"data": {"id": "msg_1"}})
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 1)

    def test_read_only_objects_are_skipped(self):
        frozen = Frozen()
        self.instrument(frozen, ResourceSpec(methods=("get",)))
        self.assertEqual(frozen.get(), "value")
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 0)

    def test_deepcopy_of_instrumented_client(self):
        self.instrument(self.client)

        clone = copy.deepcopy(self.client)
        clone.emails.send({"to": "a@b.c"})

        self.assertIsNot(clone.emails, self.client.emails)
        self.assertIsInstance(clone.emails.send, TracedMethod)
        self.assertEqual(clone.emails.sent, [{"to": "a@b.c"}])
        self.assertEqual(self.client.emails.sent, [])
        self.assertIs(copy.copy(self.client).emails, self.client.emails)
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertEqual(span.name, "client.emails.send")

    def test_pickle_of_instrumented_client(self):
        self.instrument(self.client)

        restored = pickle.loads(pickle.dumps(self.client))

        self.assertEqual(restored.api_key, "re_123")
        self.assertEqual(
            restored.emails.send({"to": "a@b.c"}), {"data": {"id": "msg_1"}}
        )
        self.assertEqual(restored.emails.sent, [{"to": "a@b.c"}])

    def test_class_valued_child(self):
        class ClassEmails:
            sent = []

            @staticmethod
            def send(payload):
                ClassEmails.sent.append(payload)
                return {"data": {"id": f"msg_{len(ClassEmails.sent)}"}}

            @classmethod
            def get(cls, message_id):
                return {"data": {"id": message_id}}

        sdk = types.SimpleNamespace(Emails=ClassEmails)
        self.instrument(
            sdk,
            ResourceSpec(
                methods=(),
                children={
                    "Emails": ResourceSpec(
                        methods=("send", "get"),
                        rules=(
                            AttributeRule.response(
                                "message_id", *identifier_paths("id")
                            ),
                        ),
                    )
                },
            ),
        )

        self.assertEqual(sdk.Emails.send({}), {"data": {"id": "msg_1"}})
        self.assertEqual(sdk.Emails.get("msg_7"), {"data": {"id": "msg_7"}})
        self.assertFalse(
            instrument_method(
                ClassEmails, "send", tracer_provider=self.tracer_provider
            )
        )

        send, get = self.memory_exporter.get_finished_spans()
        self.assertEqual(send.name, "client.Emails.send")
        self.assertEqual(send.attributes["client.message_id"], "msg_1")
        self.assertEqual(get.name, "client.Emails.get")
        self.assertEqual(get.attributes["client.message_id"], "msg_7")

    def test_module_root(self):
        module = types.ModuleType("mailer")
        module.VERSION = "1.0"

        def send(payload):
            return "queued"

        module.send = send
        self.instrument(module, ResourceSpec())

        self.assertEqual(module.send({"to": "a@b.c"}), "queued")
        self.assertIsInstance(module.__dict__["send"], TracedMethod)
        (span,) = self.memory_exporter.get_finished_spans()
        self.assertEqual(span.name, "client.send")

    def test_proxy_root(self):
        proxy = wrapt.ObjectProxy(self.client)
        self.instrument(proxy)

        proxy.emails.send({"to": "a@b.c"})

        (span,) = self.memory_exporter.get_finished_spans()
        self.assertEqual(span.name, "client.emails.send")


class TestInstrumentFactory(TestBase):
    def setUp(self):
        super().setUp()

        class LocalSandbox(Sandbox):
            pass

        self.sandbox_class = LocalSandbox
        self.resources = ResourceSpec(
            methods=("run_code",),
            operations={
                "run_code": OperationSpec(
                    rules=(
                        AttributeRule.response(
                            "stdout_lines", "stdout", transform=line_count
                        ),
                    )
                )
            },
        )

    def instrument(self, factory_name="create"):
        return instrument_factory(
            self.sandbox_class,
            factory_name,
            self.resources,
            operation=OperationSpec(
                rules=(AttributeRule.request("template", "0", "template"),)
            ),
            tracer_provider=self.tracer_provider,
        )

    def test_created_clients_are_instrumented(self):
        self.assertTrue(self.instrument())
        self.assertFalse(self.instrument())

        sandbox = self.sandbox_class.create("python")
        sandbox.run_code("print(1)")

        self.assertIsInstance(sandbox, self.sandbox_class)
        create, run_code = self.memory_exporter.get_finished_spans()
        self.assertEqual(create.name, "client.create")
        self.assertEqual(create.attributes["client.template"], "python")
        self.assertEqual(run_code.name, "client.run_code")
        self.assertEqual(run_code.attributes["client.stdout_lines"], 2)

    def test_awaited_clients_are_instrumented(self):
        self.instrument("create_async")

        sandbox = asyncio.run(self.sandbox_class.create_async(template="node"))
        sandbox.run_code("console.log(1)")

        create, run_code = self.memory_exporter.get_finished_spans()
        self.assertEqual(create.name, "client.create_async")
        self.assertEqual(create.attributes["client.template"], "node")
        self.assertEqual(run_code.name, "client.run_code")

    def test_parent_class_is_untouched(self):
        self.instrument()
        self.assertNotIsInstance(Sandbox.__dict__["create"], TracedMethod)

    def test_missing_factory(self):
        with self.assertLogs(level="WARNING"):
            self.assertFalse(self.instrument("connect"))
