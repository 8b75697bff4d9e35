"""Tests for the Execution Pipeline."""

import pytest

from converse_kernel.catalog.capability import EntityTypeRegistry
from converse_kernel.catalog.registry import ActionCatalog
from converse_kernel.execution.pipeline import (
    ExecutionError,
    ExecutionPipeline,
    ValidationMiddleware,
)
from converse_kernel.models.action import (
    ActionInvocation,
    ActionResult,
    ExecutorKind,
    InvocationPayload,
    PeerNode,
)
from converse_kernel.models.context import UnifiedContext
from converse_kernel.workflow.engine import WorkflowEngine, WorkflowRegistry
from converse_kernel.workflow.steps import COMPLETE, Workflow, WorkflowStep

from fakes import FakePeerTransport, make_customer_type


PEER = PeerNode(slug="warehouse", name="Warehouse", url="http://warehouse.local")
LISTING = [{"entity_type": "shipment", "fields": {"destination": {"required": True}}}]


def _make_invocation(action_id, kind, params=None, ready=True) -> ActionInvocation:
    return ActionInvocation(
        action_id=action_id,
        type=kind,
        label=action_id,
        payload=InvocationPayload(params=params or {}, ready=ready),
    )


def _make_pipeline(transport=None, engine=None) -> ExecutionPipeline:
    transport = transport or FakePeerTransport(LISTING)
    catalog = ActionCatalog(
        EntityTypeRegistry([make_customer_type()]), peers=[PEER], transport=transport
    )
    return ExecutionPipeline(catalog, engine=engine)


class TestLocalCreate:
    def test_creates_record_and_stamps_result(self):
        pipeline = _make_pipeline()
        invocation = _make_invocation(
            "create_customer", ExecutorKind.LOCAL_CREATE, {"name": "Bob", "phone": "555"}
        )

        result = pipeline.execute(invocation, user_id=5, session_id="s1")

        assert result.success is True
        assert result.data["id"] == 1
        assert result.data["created_by"] == 5
        assert result.action_id == "create_customer"
        assert result.action_type == "local_create"
        assert result.duration_ms is not None

    def test_creation_error_becomes_failure_with_exception_class(self):
        pipeline = _make_pipeline()
        invocation = _make_invocation("create_customer", ExecutorKind.LOCAL_CREATE, {"name": "Bob"})

        result = pipeline.execute(invocation)

        assert result.success is False
        assert "missing phone" in result.error
        assert result.metadata["exception"] == "ValueError"
        assert result.action_id == "create_customer"


class TestRemoteCreate:
    def test_delegates_to_peer(self):
        transport = FakePeerTransport(LISTING, execute_response={"success": True, "data": {"id": 42}})
        pipeline = _make_pipeline(transport=transport)
        invocation = _make_invocation(
            "warehouse.create_shipment", ExecutorKind.REMOTE_CREATE, {"destination": "Oslo"}
        )

        result = pipeline.execute(invocation)

        assert result.success is True
        assert result.data == {"id": 42}
        assert transport.executed == [
            {"peer": "warehouse", "entity_type": "shipment", "params": {"destination": "Oslo"}}
        ]

    def test_peer_reported_failure(self):
        transport = FakePeerTransport(LISTING, execute_response={"success": False, "error": "full"})
        pipeline = _make_pipeline(transport=transport)

        result = pipeline.execute(
            _make_invocation("warehouse.create_shipment", ExecutorKind.REMOTE_CREATE)
        )

        assert result.success is False
        assert result.error == "full"

    def test_unreachable_peer_is_a_failure_not_an_exception(self):
        transport = FakePeerTransport(LISTING)
        pipeline = _make_pipeline(transport=transport)
        pipeline.catalog.discover()
        transport.fail = True

        result = pipeline.execute(
            _make_invocation("warehouse.create_shipment", ExecutorKind.REMOTE_CREATE)
        )

        assert result.success is False
        assert result.metadata["exception"] == "PeerError"


class TestCustomAndUnknown:
    def test_custom_executor_dict_result(self):
        pipeline = _make_pipeline()
        pipeline.catalog.register("send_quote", {"label": "Send quote", "handler": "quotes"})
        pipeline.register_executor("quotes", lambda inv, user_id: {"sent": inv.payload.params["to"]})

        result = pipeline.execute(
            _make_invocation("send_quote", ExecutorKind.CUSTOM, {"to": "a@b.io"})
        )

        assert result.success is True
        assert result.data == {"sent": "a@b.io"}

    def test_custom_executor_action_result_passes_through(self):
        pipeline = _make_pipeline()
        pipeline.catalog.register("ping", {})
        pipeline.register_executor("ping", lambda inv, user_id: ActionResult.needs_input("Ping whom?"))

        result = pipeline.execute(_make_invocation("ping", ExecutorKind.CUSTOM))

        assert result.needs_user_input is True
        assert result.message == "Ping whom?"

    def test_custom_without_executor(self):
        pipeline = _make_pipeline()
        pipeline.catalog.register("ping", {})

        result = pipeline.execute(_make_invocation("ping", ExecutorKind.CUSTOM))

        assert result.success is False
        assert "No executor registered" in result.error

    def test_unknown_action(self):
        result = _make_pipeline().execute(_make_invocation("nope", ExecutorKind.CUSTOM))

        assert result.success is False
        assert result.error == "Unknown action: nope"

    def test_executor_exception_is_contained(self):
        pipeline = _make_pipeline()
        pipeline.catalog.register("boom", {})

        def explode(inv, user_id):
            raise KeyError("missing key")

        pipeline.register_executor("boom", explode)

        result = pipeline.execute(_make_invocation("boom", ExecutorKind.CUSTOM))

        assert result.success is False
        assert result.metadata["exception"] == "KeyError"


class TestMiddleware:
    def test_chain_runs_in_registration_order(self):
        pipeline = _make_pipeline()
        pipeline.catalog.register("ping", {})
        pipeline.register_executor("ping", lambda inv, user_id: {"ok": True})
        seen = []

        def outer(inv, definition, call_next):
            seen.append("outer")
            return call_next(inv)

        def inner(inv, definition, call_next):
            seen.append(f"inner:{definition.id}")
            return call_next(inv)

        pipeline.use(outer)
        pipeline.use(inner)
        result = pipeline.execute(_make_invocation("ping", ExecutorKind.CUSTOM))

        assert result.success is True
        assert seen == ["outer", "inner:ping"]

    def test_validation_middleware_rejects_unready_invocation(self):
        pipeline = _make_pipeline()
        pipeline.use(ValidationMiddleware())
        invocation = _make_invocation("create_customer", ExecutorKind.LOCAL_CREATE, ready=False)
        invocation.payload.missing = ["phone"]

        result = pipeline.execute(invocation)

        assert result.success is False
        assert result.metadata["exception"] == ExecutionError.__name__
        assert "phone" in result.error


class TestWorkflowHandOff:
    def _make_engine(self) -> WorkflowEngine:
        def ask(context, message):
            if context.collected_data.get("name"):
                return ActionResult.succeeded("done", data=dict(context.collected_data))
            return ActionResult.needs_input("Name?")

        workflow = Workflow("onboard", [WorkflowStep("ask", ask, on_success=COMPLETE)])
        return WorkflowEngine(WorkflowRegistry([workflow]))

    def test_starts_bound_workflow_with_params(self):
        pipeline = _make_pipeline(engine=self._make_engine())
        pipeline.catalog.register(
            "onboard_customer", {"executor": "workflow", "workflow_id": "onboard"}
        )
        context = UnifiedContext(session_id="s1")
        context.add_user_message("onboard Bob")

        result = pipeline.execute(
            _make_invocation("onboard_customer", ExecutorKind.WORKFLOW, {"name": "Bob"}),
            context=context,
        )

        assert result.success is True
        assert result.data == {"name": "Bob"}

    def test_workflow_needs_input_is_translated(self):
        pipeline = _make_pipeline(engine=self._make_engine())
        pipeline.catalog.register(
            "onboard_customer", {"executor": "workflow", "workflow_id": "onboard"}
        )
        context = UnifiedContext(session_id="s1")

        result = pipeline.execute(
            _make_invocation("onboard_customer", ExecutorKind.WORKFLOW), context=context
        )

        assert result.needs_user_input is True
        assert context.current_workflow == "onboard"

    def test_workflow_without_engine_is_configuration_failure(self):
        pipeline = _make_pipeline()
        pipeline.catalog.register("onboard_customer", {"executor": "workflow"})

        result = pipeline.execute(_make_invocation("onboard_customer", ExecutorKind.WORKFLOW))

        assert result.success is False
        assert result.metadata["exception"] == "ConfigurationError"
