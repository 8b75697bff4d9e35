"""
Workflow Step Machine — drives guided, multi-turn interactions.

Behavioral Contract:
- A turn's message is handed only to the first step run in that turn
- needs_user_input pauses the run; the next turn resumes at the same step
- Reaching `complete` or `error` ends the run; a finished run never
  transitions again, retrying means starting a new one
- Sub-workflows run on the context's call stack in an isolated child
  state; on completion only the frame's declared result keys flow back
"""

from typing import Dict, List, Optional

import structlog

from converse_kernel.models.action import ActionResult
from converse_kernel.models.context import ContextFrame, EntityStatus, UnifiedContext
from converse_kernel.workflow.steps import COMPLETE, TERMINAL_STEPS, Workflow


logger = structlog.get_logger(__name__)

ENTER_SUBWORKFLOW = "enter_subworkflow"
JUMP_TO = "jump_to"


class ConfigurationError(Exception):
    """Raised when a workflow, step or bound type is not wired up."""
    pass


class WorkflowRegistry:
    """Explicit id -> workflow directory, owned by the engine."""

    def __init__(self, workflows: Optional[List[Workflow]] = None):
        self._workflows: Dict[str, Workflow] = {}
        for workflow in workflows or []:
            self.register(workflow)

    def register(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow

    def get(self, workflow_id: Optional[str]) -> Optional[Workflow]:
        if workflow_id is None:
            return None
        return self._workflows.get(workflow_id)

    def has(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    def ids(self) -> List[str]:
        return list(self._workflows)


class WorkflowEngine:
    def __init__(
        self,
        registry: Optional[WorkflowRegistry] = None,
        max_transitions: int = 50,
    ):
        self.registry = registry or WorkflowRegistry()
        self.max_transitions = max_transitions

    def start(
        self,
        workflow_id: str,
        context: UnifiedContext,
        message: Optional[str],
        initial_data: Optional[dict] = None,
    ) -> ActionResult:
        """
        Begin a fresh top-level run.

        `initial_data` marks the message as already extracted by the
        caller, so the run will not spend its extraction pass on it again.
        """
        workflow = self.registry.get(workflow_id)
        if workflow is None:
            return self._config_failure(f"Unknown workflow: {workflow_id}")

        context.clear_workflow()
        context.workflow_state = {"collected_data": dict(initial_data or {})}
        if initial_data is not None:
            context.set("extraction_done", True)
        context.current_workflow = workflow.id
        context.current_step = workflow.first_step
        logger.info(
            "Workflow started",
            workflow=workflow.id,
            session_id=context.session_id,
            seeded=sorted(initial_data or {}),
        )
        return self._run(context, message)

    def continue_workflow(self, context: UnifiedContext, message: Optional[str]) -> ActionResult:
        if not context.current_workflow:
            return ActionResult.failed("No active workflow to continue")
        if context.current_step in TERMINAL_STEPS:
            return ActionResult.failed(
                f"Workflow {context.current_workflow} already finished; start a new run"
            )
        return self._run(context, message)

    def cancel(self, context: UnifiedContext) -> ActionResult:
        workflow_id = context.current_workflow
        context.clear_workflow()
        logger.info("Workflow cancelled", workflow=workflow_id, session_id=context.session_id)
        return ActionResult.failed(
            "Action cancelled by user", metadata={"cancelled": True, "workflow": workflow_id}
        )

    def enter_subworkflow(
        self,
        context: UnifiedContext,
        workflow: str,
        seed: Optional[dict] = None,
        entity: Optional[str] = None,
        result_keys: Optional[Dict[str, str]] = None,
    ) -> None:
        """Push the running workflow and switch to an isolated child run."""
        child = self.registry.get(workflow)
        if child is None:
            raise ConfigurationError(f"Unknown sub-workflow: {workflow}")
        parent = context.current_workflow
        context.push_frame(entity=entity, result_keys=result_keys)
        context.begin_isolated(child.id, seed)
        context.set("extraction_done", True)
        context.current_step = child.first_step
        logger.info(
            "Sub-workflow entered",
            parent=parent,
            workflow=child.id,
            entity=entity,
            depth=len(context.call_stack),
            session_id=context.session_id,
        )

    def _run(self, context: UnifiedContext, message: Optional[str]) -> ActionResult:
        for _ in range(self.max_transitions):
            workflow = self.registry.get(context.current_workflow)
            if workflow is None:
                return self._abort(context, f"Unknown workflow: {context.current_workflow}")
            step_name = context.current_step or workflow.first_step
            step = workflow.get_step(step_name)
            if step is None:
                return self._abort(context, f"Workflow {workflow.id} has no step {step_name}")

            context.current_step = step.name
            result = step.run(context, message)
            message = None

            request = result.metadata.get(ENTER_SUBWORKFLOW)
            if request:
                try:
                    self.enter_subworkflow(context, **request)
                except ConfigurationError as e:
                    return self._abort(context, str(e))
                continue
            jump = result.metadata.get(JUMP_TO)
            if jump and workflow.get_step(jump) is not None:
                context.current_step = jump
                continue
            if result.needs_user_input:
                return result

            target = step.on_success if result.success else step.on_failure
            logger.debug(
                "Workflow transition",
                workflow=workflow.id,
                step=step.name,
                target=target,
                success=result.success,
            )
            if target not in TERMINAL_STEPS:
                context.current_step = target
                continue

            context.current_step = target
            outcome = self._finish(context, workflow, target, result)
            if outcome is not None:
                return outcome

        return self._abort(context, "Workflow exceeded its transition limit")

    def _finish(
        self,
        context: UnifiedContext,
        workflow: Workflow,
        terminal: str,
        result: ActionResult,
    ) -> Optional[ActionResult]:
        """Close a run. Returns None when control went back to a parent."""
        if context.call_stack:
            frame = context.pop_frame()
            self._resume_parent(context, frame, workflow, terminal, result)
            return None

        context.clear_workflow()
        context.metadata["last_workflow"] = {"id": workflow.id, "status": terminal}
        logger.info(
            "Workflow finished",
            workflow=workflow.id,
            status=terminal,
            session_id=context.session_id,
        )
        if terminal == COMPLETE:
            return ActionResult.succeeded(
                result.message or f"{workflow.goal} completed",
                data=result.data,
                metadata={"workflow": workflow.id},
            )
        return ActionResult.failed(
            result.error or f"{workflow.goal} failed",
            data=result.data,
            metadata={**result.metadata, "workflow": workflow.id},
        )

    def _resume_parent(
        self,
        context: UnifiedContext,
        frame: ContextFrame,
        child: Workflow,
        terminal: str,
        result: ActionResult,
    ) -> None:
        merged = context.merge_result(frame, result.data) if terminal == COMPLETE else {}
        if frame.entity:
            entity_id = result.data.get("id") if isinstance(result.data, dict) else None
            status = (
                EntityStatus.RESOLVED if terminal == COMPLETE and entity_id is not None
                else EntityStatus.FAILED
            )
            if context.entity_state(frame.entity).status == EntityStatus.UNRESOLVED:
                context.set_entity_state(frame.entity, EntityStatus.PENDING)
            context.set_entity_state(frame.entity, status, entity_id=entity_id)
        logger.info(
            "Sub-workflow returned",
            workflow=child.id,
            parent=frame.workflow,
            status=terminal,
            merged=sorted(merged),
            session_id=context.session_id,
        )

    def _abort(self, context: UnifiedContext, error: str) -> ActionResult:
        logger.error(
            "Workflow configuration error",
            workflow=context.current_workflow,
            step=context.current_step,
            error=error,
            session_id=context.session_id,
        )
        context.clear_workflow()
        return ActionResult.failed(error, metadata={"exception": ConfigurationError.__name__})

    def _config_failure(self, error: str) -> ActionResult:
        logger.error("Workflow configuration error", error=error)
        return ActionResult.failed(error, metadata={"exception": ConfigurationError.__name__})
