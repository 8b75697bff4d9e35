"""Turn Response — what `process` hands back to the chat layer."""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class TurnStatus(str, Enum):
    NEEDS_INPUT = "needs_input"
    COMPLETE = "complete"
    FAILURE = "failure"


class TurnResponse(BaseModel):
    status: TurnStatus
    message: str
    data: Optional[Any] = None
    metadata: Dict[str, Any] = {}

    @property
    def needs_input(self) -> bool:
        return self.status == TurnStatus.NEEDS_INPUT

    @property
    def is_complete(self) -> bool:
        return self.status == TurnStatus.COMPLETE
