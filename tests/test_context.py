"""Tests for UnifiedContext: history, entity state and the call stack."""

from datetime import date

import pytest

from converse_kernel.models.action import ActionInvocation, ExecutorKind
from converse_kernel.context.store import InMemoryContextStore
from converse_kernel.models.context import EntityStatus, PendingAction, UnifiedContext


def _make_context(**kwargs) -> UnifiedContext:
    context = UnifiedContext(session_id="s1", user_id=1, **kwargs)
    context.current_workflow = "create_invoice"
    context.current_step = "resolve_customer"
    context.collected_data.update({
        "customer": "Acme Corp",
        "items": [{"product": "Laptop", "quantity": 10}],
    })
    return context


class TestHistory:
    def test_history_is_capped_and_pending_index_shifts(self):
        context = UnifiedContext(session_id="s1", history_limit=4)
        context.add_user_message("hello")
        context.pending_action = PendingAction(
            invocation=ActionInvocation(
                action_id="create_customer", type=ExecutorKind.LOCAL_CREATE, label="Create Customer"
            ),
            start_index=1,
        )
        for i in range(4):
            context.add_assistant_message(f"reply {i}")

        assert len(context.conversation_history) == 4
        assert context.conversation_history[0].content == "reply 0"
        assert context.pending_action.start_index == 0

    def test_last_user_message(self):
        context = UnifiedContext(session_id="s1")
        context.add_user_message("first")
        context.add_assistant_message("ok")
        context.add_user_message("second")
        assert context.last_user_message == "second"


class TestEntityState:
    def test_monotonic_transitions(self):
        context = UnifiedContext(session_id="s1")
        context.set_entity_state("customer", EntityStatus.PENDING, identifier="Acme")
        context.set_entity_state("customer", EntityStatus.RESOLVED, entity_id=4)

        state = context.entity_state("customer")
        assert state.status == EntityStatus.RESOLVED
        assert state.identifier == "Acme"
        assert state.entity_id == 4

    def test_resolved_entity_cannot_be_re_resolved(self):
        context = UnifiedContext(session_id="s1")
        context.set_entity_state("customer", EntityStatus.PENDING)
        context.set_entity_state("customer", EntityStatus.RESOLVED, entity_id=4)

        with pytest.raises(ValueError):
            context.set_entity_state("customer", EntityStatus.PENDING)

    def test_unresolved_cannot_jump_to_resolved(self):
        context = UnifiedContext(session_id="s1")
        with pytest.raises(ValueError):
            context.set_entity_state("customer", EntityStatus.RESOLVED)

    def test_invalidate_allows_new_resolution(self):
        context = UnifiedContext(session_id="s1")
        context.set("customer_id", 4)
        context.set_entity_state("customer", EntityStatus.PENDING)
        context.set_entity_state("customer", EntityStatus.RESOLVED, entity_id=4)

        context.invalidate_entity("customer")

        assert context.entity_state("customer").status == EntityStatus.UNRESOLVED
        assert context.get("customer_id") is None
        context.set_entity_state("customer", EntityStatus.PENDING)


class TestCallStack:
    def test_pop_restores_exactly_the_pushed_frame(self):
        context = _make_context()
        context.set_entity_state("customer", EntityStatus.PENDING, identifier="Acme Corp")
        before_state = context.model_dump(mode="json")["workflow_state"]

        context.push_frame(entity="customer", result_keys={"id": "customer_id"})
        context.begin_isolated("create_customer", {"name": "Acme Corp"})
        context.collected_data["phone"] = "555-0100"
        context.current_step = "collect_data"

        frame = context.pop_frame()

        assert frame.entity == "customer"
        assert context.current_workflow == "create_invoice"
        assert context.current_step == "resolve_customer"
        assert context.workflow_state == before_state
        assert context.entity_state("customer").status == EntityStatus.PENDING
        assert context.is_subworkflow is False

    def test_child_sees_only_seed(self):
        context = _make_context()
        context.push_frame()
        context.begin_isolated("create_customer", {"name": "Acme Corp"})

        assert context.collected_data == {"name": "Acme Corp"}
        assert context.entity_states == {}
        assert context.metadata["is_subworkflow"] is True
        assert context.is_subworkflow is True

    def test_merge_copies_only_declared_keys(self):
        context = _make_context()
        context.push_frame(entity="customer", result_keys={"id": "customer_id"})
        context.begin_isolated("create_customer", {"name": "Acme Corp"})
        frame = context.pop_frame()

        merged = context.merge_result(frame, {"id": 9, "name": "Acme Corp", "phone": "555-0100"})

        assert merged == {"customer_id": 9}
        assert context.get("customer_id") == 9
        assert "phone" not in context.collected_data
        assert context.collected_data["items"] == [{"product": "Laptop", "quantity": 10}]

    def test_push_requires_active_workflow(self):
        with pytest.raises(ValueError):
            UnifiedContext(session_id="s1").push_frame()

    def test_stack_survives_serialization(self):
        context = _make_context()
        context.push_frame(entity="customer")
        context.begin_isolated("create_customer", {"name": "Acme Corp"})

        restored = UnifiedContext.model_validate_json(context.model_dump_json())

        assert len(restored.call_stack) == 1
        restored.pop_frame()
        assert restored.current_workflow == "create_invoice"
        assert restored.collected_data["customer"] == "Acme Corp"

    def test_frame_encodes_values_like_the_store(self):
        context = _make_context()
        context.collected_data["due_date"] = date(2024, 5, 1)
        store = InMemoryContextStore()
        store.save(context)
        stored = store.load("s1").workflow_state

        context.push_frame()
        context.begin_isolated("create_customer", {"name": "Acme Corp"})
        context.pop_frame()

        assert context.collected_data["due_date"] == "2024-05-01"
        assert context.workflow_state == stored

    def test_unserializable_state_is_refused(self):
        context = _make_context()
        context.collected_data["handle"] = object()

        with pytest.raises(ValueError, match="not serializable"):
            context.push_frame()

        assert context.is_subworkflow is False
        assert context.current_workflow == "create_invoice"

    def test_clear_workflow(self):
        context = _make_context()
        context.push_frame()
        context.metadata["awaiting_confirmation"] = True

        context.clear_workflow()

        assert context.current_workflow is None
        assert not context.call_stack
        assert context.workflow_state == {}
        assert "awaiting_confirmation" not in context.metadata
