"""Tests for orchestrator wiring and per-session turn locking."""

import threading
import time
from datetime import timedelta

from converse_kernel.catalog.capability import EntityTypeRegistry
from converse_kernel.context.store import InMemoryContextStore, SQLiteContextStore
from converse_kernel.llm.client import OpenAILanguageModel
from converse_kernel.models.action import PeerNode
from converse_kernel.models.config import KernelConfig
from converse_kernel.orchestrator.service import build_orchestrator
from converse_kernel.peers.transport import HttpPeerTransport

from fakes import FakeLanguageModel, make_customer_type, make_kernel


PEER = PeerNode(slug="warehouse", name="Warehouse", url="http://warehouse.local")


def _make_registry() -> EntityTypeRegistry:
    return EntityTypeRegistry([make_customer_type()])


class _GatedStore(InMemoryContextStore):
    """Holds the first load of a session until `release` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()
        self.loads = 0

    def load(self, session_id):
        self.loads += 1
        if self.loads == 1:
            self.entered.set()
            self.release.wait(timeout=5)
        return super().load(session_id)


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.01)


class TestBuildOrchestrator:
    def test_model_defaults_to_configured_extraction_model(self):
        kernel = build_orchestrator(
            _make_registry(), config=KernelConfig(extraction_model="gpt-4o")
        )

        assert isinstance(kernel.extractor.llm, OpenAILanguageModel)
        assert kernel.extractor.llm.model == "gpt-4o"

    def test_given_model_is_used(self):
        llm = FakeLanguageModel()
        kernel = build_orchestrator(_make_registry(), llm)

        assert kernel.extractor.llm is llm

    def test_peers_get_http_transport_with_configured_timeout(self):
        kernel = build_orchestrator(
            _make_registry(),
            FakeLanguageModel(),
            peers=[PEER],
            config=KernelConfig(peer_timeout_seconds=2.5),
        )

        assert isinstance(kernel.catalog.transport, HttpPeerTransport)
        assert kernel.catalog.transport.timeout == 2.5
        assert kernel.pipeline.transport is kernel.catalog.transport

    def test_no_peers_no_transport(self):
        kernel = build_orchestrator(_make_registry(), FakeLanguageModel())

        assert kernel.catalog.transport is None
        assert isinstance(kernel.store, InMemoryContextStore)

    def test_db_path_gives_sqlite_store_with_configured_ttl(self, tmp_path):
        db_path = str(tmp_path / "contexts.db")
        kernel = build_orchestrator(
            _make_registry(),
            FakeLanguageModel(),
            config=KernelConfig(context_ttl_hours=2),
            db_path=db_path,
        )

        assert isinstance(kernel.store, SQLiteContextStore)
        assert kernel.store.db_path == db_path
        assert kernel.store.ttl == timedelta(hours=2)


class TestSessionLocks:
    def test_lock_is_released_after_each_turn(self):
        kernel = make_kernel(FakeLanguageModel())

        for i in range(5):
            kernel.process("hello", f"s{i}")

        assert kernel._locks == {}

    def test_waiting_turn_keeps_lock_until_it_finishes(self):
        kernel = make_kernel(FakeLanguageModel())
        store = _GatedStore()
        kernel.store = store

        first = threading.Thread(target=kernel.process, args=("hello", "s1"))
        first.start()
        assert store.entered.wait(timeout=5)

        second = threading.Thread(target=kernel.process, args=("hello", "s1"))
        second.start()
        _wait_until(lambda: kernel._locks.get("s1", (None, 0))[1] == 2)
        assert store.loads == 1

        store.release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert store.loads == 2
        assert kernel._locks == {}
