"""
Execution Pipeline — dispatches a finalized invocation to its executor.

Behavioral Contract:
- Routes by executor kind: local create, remote create, workflow hand-off, custom
- Never raises: every executor exception becomes a failed ActionResult
  carrying the exception class in metadata
- Every outcome is timed and stamped with the action's identity
- Peer calls are not retried; a failed remote call is a failed result
- Middleware wraps dispatch in registration order; none are installed by default
"""

import time
from functools import reduce
from typing import Any, Callable, Dict, List, Optional

import structlog

from converse_kernel.catalog.capability import EntityTypeRegistry
from converse_kernel.catalog.registry import ActionCatalog
from converse_kernel.models.action import (
    ActionDefinition,
    ActionInvocation,
    ActionResult,
    ExecutorKind,
)
from converse_kernel.models.context import UnifiedContext
from converse_kernel.peers.transport import PeerTransport
from converse_kernel.workflow.engine import ConfigurationError, WorkflowEngine


logger = structlog.get_logger(__name__)

Dispatch = Callable[[ActionInvocation], ActionResult]
Middleware = Callable[[ActionInvocation, ActionDefinition, Dispatch], ActionResult]


class ExecutionError(Exception):
    """Raised by middleware to reject an invocation before dispatch."""
    pass


class ValidationMiddleware:
    """Rejects invocations whose payload is not ready."""

    def __call__(
        self, invocation: ActionInvocation, definition: ActionDefinition, call_next: Dispatch
    ) -> ActionResult:
        if not invocation.payload.ready:
            raise ExecutionError(
                f"Invocation {invocation.action_id} is missing: "
                f"{', '.join(invocation.payload.missing) or 'required parameters'}"
            )
        return call_next(invocation)


class ExecutionPipeline:
    """
    Single dispatch point for every action the orchestrator runs directly.

    Workflow-backed actions are handed to the workflow engine, which needs
    the session's context; the other kinds only need the invocation.
    """

    def __init__(
        self,
        catalog: ActionCatalog,
        entity_types: Optional[EntityTypeRegistry] = None,
        transport: Optional[PeerTransport] = None,
        engine: Optional[WorkflowEngine] = None,
    ):
        self.catalog = catalog
        self.entity_types = entity_types or catalog.entity_types
        self.transport = transport or catalog.transport
        self.engine = engine
        self._executors: Dict[str, Callable] = {}
        self._middleware: List[Middleware] = []

    def register_executor(self, name: str, executor: Callable) -> None:
        """Register a custom executor, called as executor(invocation, user_id)."""
        self._executors[name] = executor

    def use(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)

    def execute(
        self,
        invocation: ActionInvocation,
        user_id: Any = None,
        session_id: Optional[str] = None,
        context: Optional[UnifiedContext] = None,
    ) -> ActionResult:
        start = time.monotonic()
        definition = self.catalog.get(invocation.action_id)

        if definition is None:
            result = ActionResult.failed(
                f"Unknown action: {invocation.action_id}",
                metadata={"exception": "LookupError"},
            )
        else:
            def dispatch(inv: ActionInvocation) -> ActionResult:
                return self._dispatch(inv, definition, user_id, context)

            chain = reduce(
                lambda call_next, mw: (
                    lambda inv, _mw=mw, _next=call_next: _mw(inv, definition, _next)
                ),
                reversed(self._middleware),
                dispatch,
            )
            try:
                result = chain(invocation)
            except Exception as e:
                result = ActionResult.failed(
                    str(e) or type(e).__name__,
                    metadata={"exception": type(e).__name__},
                )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = result.with_duration(elapsed_ms).with_action_info(
            invocation.action_id, invocation.type.value
        )
        log = logger.info if result.success or result.needs_user_input else logger.warning
        log(
            "Action executed",
            action_id=invocation.action_id,
            session_id=session_id,
            success=result.success,
            needs_input=result.needs_user_input,
            error=result.error,
            duration_ms=elapsed_ms,
        )
        return result

    def _dispatch(
        self,
        invocation: ActionInvocation,
        definition: ActionDefinition,
        user_id: Any,
        context: Optional[UnifiedContext],
    ) -> ActionResult:
        kind = definition.executor
        if kind == ExecutorKind.LOCAL_CREATE:
            return self._local_create(invocation, definition, user_id)
        if kind == ExecutorKind.REMOTE_CREATE:
            return self._remote_create(invocation, definition, user_id)
        if kind == ExecutorKind.WORKFLOW:
            return self._workflow(invocation, definition, context)
        if kind == ExecutorKind.CUSTOM:
            return self._custom(invocation, definition, user_id)
        return ActionResult.failed(f"Unsupported executor: {kind}")

    def _local_create(
        self, invocation: ActionInvocation, definition: ActionDefinition, user_id: Any
    ) -> ActionResult:
        capability = self.entity_types.get(definition.entity_type or "")
        if capability is None:
            raise ConfigurationError(
                f"Action {definition.id} is bound to unknown type {definition.entity_type}"
            )
        record = capability.create(invocation.payload.params, user_id=user_id)
        return ActionResult.succeeded(
            f"{capability.label} created successfully", data=record
        )

    def _remote_create(
        self, invocation: ActionInvocation, definition: ActionDefinition, user_id: Any
    ) -> ActionResult:
        if definition.peer is None or self.transport is None:
            raise ConfigurationError(f"Action {definition.id} has no reachable peer")
        response = self.transport.execute_action(
            definition.peer, definition.entity_type or "", invocation.payload.params, user_id
        )
        if response.get("success"):
            return ActionResult.succeeded(
                f"{definition.label} completed",
                data=response.get("data"),
                metadata={"peer": definition.peer.slug},
            )
        return ActionResult.failed(
            response.get("error") or "Remote execution failed",
            metadata={"peer": definition.peer.slug},
        )

    def _workflow(
        self,
        invocation: ActionInvocation,
        definition: ActionDefinition,
        context: Optional[UnifiedContext],
    ) -> ActionResult:
        if self.engine is None or context is None:
            raise ConfigurationError(f"Workflow action {definition.id} needs an engine and context")
        workflow_id = definition.workflow_id or definition.id
        if context.current_workflow == workflow_id:
            return self.engine.continue_workflow(context, context.last_user_message)
        return self.engine.start(
            workflow_id,
            context,
            context.last_user_message,
            initial_data=invocation.payload.params,
        )

    def _custom(
        self, invocation: ActionInvocation, definition: ActionDefinition, user_id: Any
    ) -> ActionResult:
        name = definition.handler or definition.id
        executor = self._executors.get(name)
        if executor is None:
            return ActionResult.failed(f"No executor registered for action: {name}")
        outcome = executor(invocation, user_id)
        if isinstance(outcome, ActionResult):
            return outcome
        return ActionResult.succeeded(f"{definition.label} completed", data=outcome)
