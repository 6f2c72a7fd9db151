# src/websets/application/ports/provider_port.py
"""
Provider client port.

One implementation per provider type tag (openai, claude, exa, brave, ...).
The gateway owns selection, budgets, retries and timeouts; a client only
translates a ProviderRequest into one HTTP exchange and back.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from websets.domain.provider import ProviderConfig, ProviderRequest, ProviderResponse


@runtime_checkable
class ProviderClient(Protocol):
    """Capability interface shared by every LLM and search client."""

    async def call(self, config: ProviderConfig, request: ProviderRequest) -> ProviderResponse:
        """
        Perform one provider call.

        Raises:
            RateLimited: provider answered 429
            TransientProviderError: timeout, connection error or 5xx
            PermanentProviderError: any other rejection or an unreadable payload
        """
        ...

    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""
        ...
