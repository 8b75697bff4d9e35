"""
Peer transport — how this node talks to the nodes that own remote entity types.

Calls are short-timeout and never retried; the caller decides what a
failure means (the catalog skips the peer, the pipeline returns a failed
result).
"""

from typing import Any, List, Optional, Protocol

import httpx
import structlog

from converse_kernel.models.action import PeerNode


logger = structlog.get_logger(__name__)


class PeerError(Exception):
    """Raised when a peer cannot be reached or answers with garbage."""
    pass


class PeerTransport(Protocol):
    def list_capabilities(self, peer: PeerNode) -> List[dict]:
        ...

    def execute_action(
        self, peer: PeerNode, entity_type: str, params: dict, user_id: Any = None
    ) -> dict:
        ...


class HttpPeerTransport:
    """httpx implementation of `GET /capabilities` and `POST /actions/execute`."""

    def __init__(self, timeout: float = 5.0, headers: Optional[dict] = None):
        self.timeout = timeout
        self.headers = headers or {}

    def list_capabilities(self, peer: PeerNode) -> List[dict]:
        url = f"{peer.url.rstrip('/')}/capabilities"
        try:
            with httpx.Client(timeout=self.timeout, headers=self.headers) as client:
                resp = client.get(url)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PeerError(f"Capability listing from {peer.slug} failed: {e}") from e

        if isinstance(data, dict):
            data = data.get("capabilities", [])
        if not isinstance(data, list):
            raise PeerError(f"Peer {peer.slug} returned a malformed capability list")
        return [c for c in data if isinstance(c, dict)]

    def execute_action(
        self, peer: PeerNode, entity_type: str, params: dict, user_id: Any = None
    ) -> dict:
        url = f"{peer.url.rstrip('/')}/actions/execute"
        body = {"entity_type": entity_type, "params": params, "user_id": user_id}
        try:
            with httpx.Client(timeout=self.timeout, headers=self.headers) as client:
                resp = client.post(url, json=body)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PeerError(f"Execute on {peer.slug} failed: {e}") from e

        if not isinstance(data, dict) or "success" not in data:
            raise PeerError(f"Peer {peer.slug} returned a malformed execute response")
        logger.info(
            "Peer action executed",
            peer=peer.slug,
            entity_type=entity_type,
            success=data["success"],
        )
        return data
