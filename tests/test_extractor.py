"""Tests for the Parameter Extractor."""

import pytest

from converse_kernel.catalog.capability import EntityTypeRegistry, InMemoryEntityType
from converse_kernel.extraction.extractor import (
    ParameterExtractor,
    build_prompt,
    merge_by_config,
    merge_by_convention,
)
from converse_kernel.models.action import ActionDefinition, ActionInvocation, FieldSpec
from converse_kernel.models.context import PendingAction, UnifiedContext

from fakes import INVOICE_FIELDS, FakeLanguageModel, make_customer_type


def _make_definition(**kwargs) -> ActionDefinition:
    defaults = dict(
        id="create_customer",
        label="Create Customer",
        fields={
            "name": FieldSpec(required=True, description="Customer name"),
            "phone": FieldSpec(required=True),
            "email": FieldSpec(),
            "city": FieldSpec(),
        },
        required_params=["name", "phone"],
    )
    defaults.update(kwargs)
    return ActionDefinition(**defaults)


def _make_extractor(llm, types=()) -> ParameterExtractor:
    return ParameterExtractor(llm, EntityTypeRegistry(list(types)))


class TestScoping:
    def test_new_action_sees_only_current_message(self):
        llm = FakeLanguageModel()
        context = UnifiedContext(session_id="s1")
        context.add_user_message("my phone is 555-9999")
        context.add_assistant_message("ok")
        context.add_user_message("add customer Bob")

        _make_extractor(llm).extract("add customer Bob", _make_definition(), context)

        prompt = llm.calls[0]["prompt"]
        assert "add customer Bob" in prompt
        assert "555-9999" not in prompt

    def test_modification_sees_history_from_start_index(self):
        llm = FakeLanguageModel()
        context = UnifiedContext(session_id="s1")
        context.add_user_message("unrelated earlier turn")
        context.add_assistant_message("ok")
        context.add_user_message("add customer Bob")
        context.add_assistant_message("What is the phone?")
        context.add_user_message("555-0100")
        pending = PendingAction(
            invocation=ActionInvocation(action_id="create_customer", type="local_create", label="x"),
            start_index=2,
        )

        _make_extractor(llm).extract("555-0100", _make_definition(), context, pending=pending)

        prompt = llm.calls[0]["prompt"]
        assert "add customer Bob\n555-0100" in prompt
        assert "unrelated earlier turn" not in prompt


class TestExtraction:
    def test_prompt_carries_fields_items_and_instructions(self):
        prompt = build_prompt("Laptop x10", INVOICE_FIELDS, "Create invoice", {"items": "one per product"})

        assert "- customer (entity, required): Customer name" in prompt
        assert "Each item has:" in prompt
        assert "- price (number, required): Unit price" in prompt
        assert "items: one per product" in prompt
        assert "CRITICAL INSTRUCTIONS" in prompt
        assert "Extract ONLY values the user explicitly stated" in prompt

    def test_strict_schema_is_used_when_type_declares_one(self):
        llm = FakeLanguageModel({"Bob": {"name": "Bob", "phone": "555"}})
        strict = InMemoryEntityType(
            "customer",
            fields={"name": FieldSpec(required=True), "phone": FieldSpec(required=True)},
            strict_schema=True,
        )
        definition = _make_definition(entity_type="customer")

        result = _make_extractor(llm, [strict]).extract("add customer Bob", definition)

        assert llm.calls[0]["schema"]["name"] == "extract_customer"
        assert result.params == {"name": "Bob", "phone": "555"}
        assert result.is_complete

    def test_unknown_keys_and_empty_values_are_dropped(self):
        llm = FakeLanguageModel({"Bob": {"name": "Bob", "phone": "", "favourite_color": "red"}})

        result = _make_extractor(llm).extract("add customer Bob", _make_definition())

        assert result.params == {"name": "Bob"}
        assert result.missing == ["phone"]

    def test_missing_includes_type_critical_fields(self):
        llm = FakeLanguageModel({"Bob": {"name": "Bob", "phone": "555"}})
        customer = InMemoryEntityType(
            "customer",
            fields={"name": FieldSpec(required=True), "phone": FieldSpec(), "email": FieldSpec()},
            critical=["email"],
        )
        definition = _make_definition(entity_type="customer")

        result = _make_extractor(llm, [customer]).extract("add customer Bob", definition)

        assert result.missing == ["email"]

    def test_model_failure_is_empty_extraction(self):
        result = _make_extractor(FakeLanguageModel(fail=True)).extract(
            "add customer Bob", _make_definition()
        )

        assert result.params == {}
        assert result.confidence == 0.0
        assert result.missing == ["name", "phone"]

    def test_garbage_response_is_empty_extraction(self):
        llm = FakeLanguageModel({"Bob": "I think the name is Bob"})
        result = _make_extractor(llm).extract("add customer Bob", _make_definition())
        assert result.params == {}

    def test_fenced_json_is_parsed(self):
        llm = FakeLanguageModel({"Bob": '```json\n{"name": "Bob"}\n```'})
        result = _make_extractor(llm).extract("add customer Bob", _make_definition())
        assert result.params == {"name": "Bob"}


class TestMerges:
    def test_convention_merge_lifts_root_scalars_into_first_item(self):
        params = {"customer": "Acme", "product": "Laptop", "quantity": 10}

        merged = merge_by_convention(params, INVOICE_FIELDS)

        assert merged == {"customer": "Acme", "items": [{"product": "Laptop", "quantity": 10}]}

    def test_convention_merge_keeps_existing_item_values(self):
        params = {"items": [{"product": "Laptop"}, {"product": "Mouse"}], "quantity": 3}

        merged = merge_by_convention(params, INVOICE_FIELDS)

        assert merged["items"] == [{"product": "Laptop", "quantity": 3}, {"product": "Mouse"}]

    def test_config_merge_uses_alternative_names(self):
        fields = {
            "customer": FieldSpec(alternative_fields=["client"]),
            "items": FieldSpec(
                type="array",
                item_structure={
                    "product": FieldSpec(alternative_fields=["product_name", "sku"]),
                    "quantity": FieldSpec(type="integer", alternative_fields=["qty"]),
                },
            ),
        }
        params = {"client": "Acme", "product_name": "Laptop", "items": [{"qty": 2}]}

        merged = merge_by_config(params, fields)

        assert merged["customer"] == "Acme"
        assert merged["items"] == [{"quantity": 2, "product": "Laptop"}]
        assert "client" not in merged and "product_name" not in merged


class TestConfidence:
    def test_zero_when_nothing_extracted(self):
        result = _make_extractor(FakeLanguageModel()).extract("hi", _make_definition())
        assert result.confidence == 0.0

    def test_near_zero_for_actions_without_fields(self):
        llm = FakeLanguageModel({"ping": {"anything": 1}})
        definition = ActionDefinition(id="catch_all")

        result = _make_extractor(llm).extract("ping", definition)

        assert result.confidence == 0.1

    @pytest.mark.parametrize("optional", [{}, {"email": "b@x.io"}])
    def test_monotonic_in_required_coverage(self, optional):
        extractor = _make_extractor(FakeLanguageModel())
        definition = _make_definition()
        required = ["name", "phone"]

        scores = [
            extractor.score({**optional, **params}, definition, required)
            for params in ({"city": "Oslo"}, {"name": "Bob", "city": "Oslo"}, {"name": "Bob", "phone": "5", "city": "Oslo"})
        ]

        assert scores == sorted(scores)
        assert scores[-1] > scores[0]

    def test_weights_favour_required_fields(self):
        extractor = _make_extractor(FakeLanguageModel())
        definition = _make_definition()

        all_required = extractor.score({"name": "Bob", "phone": "5"}, definition, ["name", "phone"])
        all_optional = extractor.score({"email": "b@x.io", "city": "Oslo"}, definition, ["name", "phone"])

        assert all_required == 0.7
        assert all_optional == 0.3
