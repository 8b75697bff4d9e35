"""
Orchestrator — the upward `process(message, session_id, user_id)` interface.

Behavioral Contract:
- One in-flight turn per session: turns on the same session are serialized
  by an in-process lock; different sessions run independently
- The context is loaded at turn start and written back at turn end
- Everything below is converted into needs_input / complete / failure;
  no exception escapes to the chat layer
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import structlog

from converse_kernel.catalog.capability import EntityTypeRegistry
from converse_kernel.catalog.registry import ActionCatalog, CatalogMatch
from converse_kernel.context.store import ContextStore, InMemoryContextStore, SQLiteContextStore
from converse_kernel.execution.pipeline import ExecutionPipeline
from converse_kernel.extraction.extractor import ParameterExtractor, is_filled
from converse_kernel.llm.client import LanguageModel, OpenAILanguageModel
from converse_kernel.models.action import (
    ActionDefinition,
    ActionInvocation,
    ActionResult,
    ExecutorKind,
    ExtractionResult,
    PeerNode,
)
from converse_kernel.models.config import KernelConfig
from converse_kernel.models.context import PendingAction, UnifiedContext
from converse_kernel.models.turn import TurnResponse, TurnStatus
from converse_kernel.models.workflow import WorkflowConfig
from converse_kernel.peers.transport import HttpPeerTransport, PeerTransport
from converse_kernel.resolution.resolver import EntityResolver
from converse_kernel.workflow.auto_steps import AutoStepWorkflow, creation_workflow
from converse_kernel.workflow.engine import WorkflowEngine, WorkflowRegistry
from converse_kernel.workflow.summary import SummaryRenderer


logger = structlog.get_logger(__name__)

CANCEL_WORDS = {"cancel", "stop", "abort", "nevermind", "never mind"}


class Orchestrator:
    def __init__(
        self,
        catalog: ActionCatalog,
        extractor: ParameterExtractor,
        pipeline: ExecutionPipeline,
        engine: WorkflowEngine,
        store: Optional[ContextStore] = None,
        config: Optional[KernelConfig] = None,
    ):
        self.catalog = catalog
        self.extractor = extractor
        self.pipeline = pipeline
        self.engine = engine
        self.store = store or InMemoryContextStore()
        self.config = config or KernelConfig()
        # session id -> (lock, number of turns holding or waiting on it)
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _session_lock(self, session_id: str):
        with self._locks_guard:
            lock, holders = self._locks.get(session_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[session_id] = (lock, holders + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                _, holders = self._locks[session_id]
                if holders == 1:
                    del self._locks[session_id]
                else:
                    self._locks[session_id] = (lock, holders - 1)

    def process(self, message: str, session_id: str, user_id: Any = None) -> TurnResponse:
        with self._session_lock(session_id), structlog.contextvars.bound_contextvars(
            session_id=session_id, user_id=user_id
        ):
            context = self.store.load(session_id) or UnifiedContext(
                session_id=session_id,
                user_id=user_id,
                history_limit=self.config.history_limit,
            )
            if user_id is not None:
                context.user_id = user_id
            context.add_user_message(message)

            try:
                result = self._route(context, message)
            except Exception as e:
                logger.exception("Turn failed", error=str(e))
                result = ActionResult.failed(
                    "Something went wrong while handling that request.",
                    metadata={"exception": type(e).__name__},
                )

            response = self._respond(context, result)
            context.add_assistant_message(response.message)
            self.store.save(context)
            logger.info(
                "Turn processed",
                status=response.status.value,
                workflow=context.current_workflow,
                step=context.current_step,
            )
            return response

    def get_context(self, session_id: str) -> Optional[UnifiedContext]:
        return self.store.load(session_id)

    # --- Routing ---

    def _route(self, context: UnifiedContext, message: str) -> ActionResult:
        if message.strip().lower() in CANCEL_WORDS:
            if context.current_workflow or context.pending_action:
                context.pending_action = None
                return self.engine.cancel(context)

        if context.current_workflow:
            return self.engine.continue_workflow(context, message)

        matches = self.catalog.match(message)
        pending = context.pending_action
        if pending is not None:
            if not any(m.triggered and m.definition.id != pending.invocation.action_id for m in matches):
                return self._modify_pending(context, message, pending)
            logger.info("Pending action superseded", action_id=pending.invocation.action_id)
            context.pending_action = None

        selected = self._select(context, message, matches)
        if selected is None:
            return self._unmatched()
        definition, extraction = selected
        return self._invoke(context, definition, ActionInvocation.from_extraction(definition, extraction))

    def _select(
        self, context: UnifiedContext, message: str, matches: List[CatalogMatch]
    ) -> Optional[Tuple[ActionDefinition, ExtractionResult]]:
        best: Optional[Tuple[CatalogMatch, ExtractionResult]] = None
        for match in matches:
            extraction = self.extractor.extract(message, match.definition, context)
            if not match.triggered and extraction.confidence < self.config.min_confidence:
                continue
            if best is None or (match.triggered, extraction.confidence) > (
                best[0].triggered, best[1].confidence
            ):
                best = (match, extraction)
        if best is None:
            return None
        logger.info(
            "Action selected",
            action_id=best[0].definition.id,
            triggered=best[0].triggered,
            confidence=best[1].confidence,
            candidates=len(matches),
        )
        return best[0].definition, best[1]

    def _modify_pending(
        self, context: UnifiedContext, message: str, pending: PendingAction
    ) -> ActionResult:
        definition = self.catalog.get(pending.invocation.action_id)
        if definition is None:
            context.pending_action = None
            return ActionResult.failed(f"Action {pending.invocation.action_id} is no longer available")

        extraction = self.extractor.extract(message, definition, context, pending=pending)
        params = {**pending.invocation.payload.params, **extraction.params}
        required = set(pending.invocation.payload.missing) | set(extraction.missing)
        ordered = [n for n in definition.fields if n in required] + sorted(required - set(definition.fields))
        missing = [name for name in ordered if not is_filled(params.get(name))]

        invocation = pending.invocation.model_copy(deep=True)
        invocation.payload.params = params
        invocation.payload.missing = missing
        invocation.payload.ready = not missing
        invocation.payload.confidence = max(extraction.confidence, invocation.payload.confidence)
        return self._invoke(context, definition, invocation, start_index=pending.start_index)

    def _invoke(
        self,
        context: UnifiedContext,
        definition: ActionDefinition,
        invocation: ActionInvocation,
        start_index: Optional[int] = None,
    ) -> ActionResult:
        if definition.executor != ExecutorKind.WORKFLOW and not invocation.payload.ready:
            if start_index is None:
                start_index = len(context.conversation_history) - 1
            context.pending_action = PendingAction(invocation=invocation, start_index=start_index)
            return ActionResult.needs_input(
                self._missing_question(definition, invocation.payload.missing),
                data={"params": invocation.payload.params},
                metadata={"action_id": definition.id, "missing": invocation.payload.missing},
            )

        context.pending_action = None
        return self.pipeline.execute(
            invocation,
            user_id=context.user_id,
            session_id=context.session_id,
            context=context,
        )

    def _missing_question(self, definition: ActionDefinition, missing: List[str]) -> str:
        first = definition.fields.get(missing[0]) if missing else None
        if first is not None and first.prompt:
            return first.prompt
        names = ", ".join(m.replace("_", " ") for m in missing)
        return f"To {definition.label.lower()}, I still need: {names}."

    def _unmatched(self) -> ActionResult:
        labels = [d.label for d in self.catalog.get_enabled()]
        if not labels:
            return ActionResult.needs_input("I'm not able to perform any actions right now.")
        return ActionResult.needs_input(
            "I'm not sure what you'd like to do. I can help with: " + ", ".join(labels) + ".",
            data={"actions": labels},
        )

    def _respond(self, context: UnifiedContext, result: ActionResult) -> TurnResponse:
        metadata = dict(result.metadata)
        metadata.update(
            workflow=context.current_workflow,
            step=context.current_step,
            is_subworkflow=context.is_subworkflow,
        )
        if result.action_id:
            metadata.setdefault("action_id", result.action_id)
        if result.needs_user_input:
            return TurnResponse(
                status=TurnStatus.NEEDS_INPUT,
                message=result.message or "",
                data=result.data,
                metadata=metadata,
            )
        if result.success:
            return TurnResponse(
                status=TurnStatus.COMPLETE,
                message=result.message or "Done.",
                data=result.data,
                metadata=metadata,
            )
        return TurnResponse(
            status=TurnStatus.FAILURE,
            message=result.error or "Request failed.",
            data=result.data,
            metadata=metadata,
        )


def build_orchestrator(
    entity_types: EntityTypeRegistry,
    llm: Optional[LanguageModel] = None,
    workflows: Optional[List[WorkflowConfig]] = None,
    peers: Optional[List[PeerNode]] = None,
    transport: Optional[PeerTransport] = None,
    store: Optional[ContextStore] = None,
    config: Optional[KernelConfig] = None,
    db_path: Optional[str] = None,
) -> Orchestrator:
    """
    Wire up a complete kernel.

    Any sub-workflow an entity refers to but nobody registered is derived
    from the bound type's schema with `creation_workflow`.

    Collaborators left out are built from `config`: an OpenAI model named by
    `extraction_model`, an httpx transport with `peer_timeout_seconds` when
    peers are given, and a SQLite store at `db_path` expiring sessions after
    `context_ttl_hours` (in-memory store without a path).
    """
    config = config or KernelConfig()
    if llm is None:
        llm = OpenAILanguageModel(model=config.extraction_model)
    if transport is None and peers:
        transport = HttpPeerTransport(timeout=config.peer_timeout_seconds)
    if store is None and db_path:
        store = SQLiteContextStore(db_path, ttl_hours=config.context_ttl_hours)
    catalog = ActionCatalog(entity_types, peers=peers, transport=transport, config=config)
    extractor = ParameterExtractor(llm, entity_types, config)
    resolver = EntityResolver(entity_types)
    renderer = SummaryRenderer(llm, max_tokens=config.summary_max_tokens)
    engine = WorkflowEngine(WorkflowRegistry())

    for workflow_config in workflows or []:
        engine.registry.register(AutoStepWorkflow(workflow_config, extractor, resolver, renderer))
    for workflow_config in workflows or []:
        for entity in workflow_config.entities:
            capability = entity_types.get(entity.entity_type)
            if entity.subworkflow and capability and not engine.registry.has(entity.subworkflow):
                engine.registry.register(
                    creation_workflow(
                        capability, extractor, resolver, renderer, workflow_id=entity.subworkflow
                    )
                )

    pipeline = ExecutionPipeline(catalog, entity_types, transport, engine)
    return Orchestrator(catalog, extractor, pipeline, engine, store=store, config=config)
