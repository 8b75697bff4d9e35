"""Kernel configuration."""

from pydantic import BaseModel


class KernelConfig(BaseModel):
    """Tunables for discovery, extraction and session handling."""

    type_list_ttl_seconds: int = 3600
    peer_ttl_seconds: int = 300
    peer_failure_ttl_seconds: int = 30
    peer_timeout_seconds: float = 5.0
    min_confidence: float = 0.3
    required_weight: float = 0.7
    optional_weight: float = 0.3
    history_limit: int = 20
    extraction_model: str = "gpt-4o-mini"
    extraction_max_tokens: int = 800
    summary_max_tokens: int = 400
    context_ttl_hours: int = 24
