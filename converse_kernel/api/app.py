"""
Converse Kernel API — FastAPI endpoints.

Exposes the kernel for:
- Chat turns (`process`)
- Peer nodes (capability listing, remote create)
- Catalog inspection
- Session context inspection
"""

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from converse_kernel.models.action import ActionOrigin
from converse_kernel.orchestrator.service import Orchestrator


# --- Request/Response Models ---

class ProcessRequest(BaseModel):
    message: str
    session_id: str
    user_id: Optional[Any] = None


class ExecuteActionRequest(BaseModel):
    entity_type: str
    params: Dict[str, Any] = {}
    user_id: Optional[Any] = None


# --- Application Factory ---

def create_app(orchestrator: Orchestrator) -> FastAPI:
    """Create the FastAPI application around an already wired orchestrator."""

    app = FastAPI(
        title="Converse Kernel API",
        description="Conversational action and workflow orchestration",
        version="0.1.0",
    )
    app.state.orchestrator = orchestrator
    app.state.catalog = orchestrator.catalog
    app.state.entity_types = orchestrator.catalog.entity_types

    # === CHAT ===

    @app.post("/process")
    def process(req: ProcessRequest):
        """Handle one user turn."""
        response = app.state.orchestrator.process(req.message, req.session_id, req.user_id)
        return response.model_dump(mode="json")

    # === PEER SURFACE ===

    @app.get("/capabilities")
    def capabilities():
        """Local entity types, as listed to peer nodes."""
        return {"capabilities": app.state.entity_types.describe_all()}

    @app.post("/actions/execute")
    def execute_action(req: ExecuteActionRequest):
        """Create a local record on behalf of a peer."""
        capability = app.state.entity_types.get(req.entity_type)
        if capability is None:
            raise HTTPException(404, f"Unknown entity type: {req.entity_type}")
        try:
            record = capability.create(req.params, user_id=req.user_id)
        except ValueError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "data": record}

    # === CATALOG ===

    @app.get("/actions")
    def list_actions(origin: Optional[ActionOrigin] = None, enabled_only: bool = False):
        catalog = app.state.catalog
        if origin is not None:
            definitions = catalog.get_by_origin(origin)
        elif enabled_only:
            definitions = catalog.get_enabled()
        else:
            definitions = catalog.discover()
        return [d.model_dump(mode="json", exclude={"peer"}) for d in definitions]

    @app.get("/actions/statistics")
    def action_statistics():
        return app.state.catalog.get_statistics()

    # === SESSIONS ===

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str):
        context = app.state.orchestrator.get_context(session_id)
        if context is None:
            raise HTTPException(404, "Session not found")
        return context.model_dump(mode="json")

    return app
