"""Tests for the context stores."""

import pytest

from converse_kernel.context.store import InMemoryContextStore, SQLiteContextStore
from converse_kernel.models.context import EntityStatus, UnifiedContext


def _make_context(session_id="s1") -> UnifiedContext:
    context = UnifiedContext(session_id=session_id, user_id=3)
    context.add_user_message("create invoice")
    context.current_workflow = "create_invoice"
    context.current_step = "resolve_customer"
    context.collected_data["customer"] = "Acme Corp"
    context.set_entity_state("customer", EntityStatus.PENDING, identifier="Acme Corp")
    context.push_frame(entity="customer", result_keys={"id": "customer_id"})
    context.begin_isolated("create_customer", {"name": "Acme Corp"})
    return context


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        yield InMemoryContextStore()
    else:
        s = SQLiteContextStore(db_path=":memory:")
        yield s
        s.close()


class TestContextStores:
    def test_missing_session_loads_none(self, store):
        assert store.load("nope") is None

    def test_round_trip(self, store):
        store.save(_make_context())

        loaded = store.load("s1")

        assert loaded.current_workflow == "create_customer"
        assert loaded.collected_data == {"name": "Acme Corp"}
        assert loaded.conversation_history[0].content == "create invoice"
        frame = loaded.pop_frame()
        assert frame.result_keys == {"id": "customer_id"}
        assert loaded.entity_state("customer").status == EntityStatus.PENDING

    def test_save_overwrites(self, store):
        context = _make_context()
        store.save(context)
        context.clear_workflow()
        store.save(context)

        assert store.load("s1").current_workflow is None

    def test_loaded_context_is_a_copy(self, store):
        store.save(_make_context())
        first = store.load("s1")
        first.collected_data["phone"] = "555"

        assert "phone" not in store.load("s1").collected_data

    def test_delete(self, store):
        store.save(_make_context())
        assert store.delete("s1") is True
        assert store.delete("s1") is False
        assert store.load("s1") is None


class TestSQLiteExpiry:
    def test_expired_context_is_dropped_on_load(self):
        store = SQLiteContextStore(db_path=":memory:", ttl_hours=24)
        store.save(_make_context())
        store._conn.execute("UPDATE contexts SET updated_at = '2000-01-01T00:00:00'")

        assert store.load("s1") is None
        assert store.count() == 0

    def test_purge_expired(self):
        store = SQLiteContextStore(db_path=":memory:")
        store.save(_make_context("old"))
        store.save(_make_context("fresh"))
        store._conn.execute(
            "UPDATE contexts SET updated_at = '2000-01-01T00:00:00' WHERE session_id = 'old'"
        )

        assert store.purge_expired() == 1
        assert store.count() == 1
