"""Step and workflow primitives for the step machine."""

from typing import Callable, Dict, List, Optional

import structlog

from converse_kernel.models.action import ActionResult
from converse_kernel.models.context import UnifiedContext


logger = structlog.get_logger(__name__)

COMPLETE = "complete"
ERROR = "error"
TERMINAL_STEPS = (COMPLETE, ERROR)

StepFn = Callable[[UnifiedContext, Optional[str]], ActionResult]


class WorkflowStep:
    """
    One node of a workflow.

    `execute(context, message)` returns an ActionResult: needs_user_input
    pauses the run, success follows `on_success`, failure `on_failure`.
    """

    def __init__(
        self,
        name: str,
        execute: StepFn,
        on_success: str,
        on_failure: str = ERROR,
        description: str = "",
    ):
        self.name = name
        self.execute = execute
        self.on_success = on_success
        self.on_failure = on_failure
        self.description = description

    def run(self, context: UnifiedContext, message: Optional[str]) -> ActionResult:
        try:
            return self.execute(context, message)
        except Exception as e:
            logger.warning(
                "Workflow step raised",
                step=self.name,
                workflow=context.current_workflow,
                error=str(e),
                exception=type(e).__name__,
            )
            return ActionResult.failed(
                str(e) or type(e).__name__,
                metadata={"exception": type(e).__name__, "step": self.name},
            )

    def __repr__(self) -> str:
        return f"WorkflowStep({self.name!r} -> {self.on_success!r} | {self.on_failure!r})"


class Workflow:
    """An ordered set of steps with a fixed entry point."""

    def __init__(
        self,
        workflow_id: str,
        steps: List[WorkflowStep],
        goal: str = "",
        description: str = "",
    ):
        if not steps:
            raise ValueError(f"Workflow {workflow_id} has no steps")
        self.id = workflow_id
        self.goal = goal or workflow_id
        self.description = description
        self._steps: Dict[str, WorkflowStep] = {s.name: s for s in steps}
        self.first_step = steps[0].name

    @property
    def step_names(self) -> List[str]:
        return list(self._steps)

    def get_step(self, name: str) -> Optional[WorkflowStep]:
        return self._steps.get(name)
