"""
Shared HTTP plumbing for provider clients.

Status codes map onto the engine's error classes:
    429                      -> RateLimited (Retry-After honoured)
    5xx, timeouts, conn errs -> TransientProviderError
    other non-2xx            -> PermanentProviderError
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientTimeout

from websets.domain.errors import PermanentProviderError, RateLimited, TransientProviderError
from websets.domain.provider import ProviderConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def _retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


class HttpProviderClient:
    """Base class: one aiohttp session per client, reused across calls."""

    user_agent = "websets/0.1"

    def __init__(self) -> None:
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"User-Agent": self.user_agent})
        return self._session

    async def request_json(
        self,
        config: ProviderConfig,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        timeout = float(config.options.get("timeout") or DEFAULT_TIMEOUT)
        session = await self._get_session()
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                params=clean_params or None,
                json=json_body,
                timeout=ClientTimeout(total=timeout),
            ) as response:
                status = response.status
                if 200 <= status < 300:
                    try:
                        return await response.json(content_type=None)
                    except (ValueError, aiohttp.ContentTypeError) as exc:
                        raise PermanentProviderError(
                            f"{config.name}: unreadable response body",
                            provider_id=config.id,
                            status=status,
                        ) from exc
                text = await response.text()
                self._raise_for_status(config, status, text, response.headers.get("Retry-After"))
        except asyncio.TimeoutError as exc:
            raise TransientProviderError(
                f"{config.name}: request timed out after {timeout:.0f}s", provider_id=config.id
            ) from exc
        except aiohttp.ClientError as exc:
            raise TransientProviderError(
                f"{config.name}: connection error: {exc}", provider_id=config.id
            ) from exc
        return {}

    @staticmethod
    def _raise_for_status(
        config: ProviderConfig, status: int, text: str, retry_after: Optional[str]
    ) -> None:
        snippet = (text or "")[:200]
        logger.warning("provider %s (%s) returned HTTP %s: %s", config.name, config.type, status, snippet)
        if status == 429:
            raise RateLimited(f"{config.name}: rate limit exceeded", retry_after=_retry_after(retry_after))
        if status >= 500:
            raise TransientProviderError(
                f"{config.name}: server error {status}", provider_id=config.id, status=status
            )
        if status in (401, 403):
            message = f"{config.name}: invalid API key"
        elif status == 402:
            message = f"{config.name}: insufficient credits"
        elif status == 404:
            message = f"{config.name}: endpoint or model not found"
        else:
            message = f"{config.name}: request rejected ({status}) {snippet}"
        raise PermanentProviderError(message, provider_id=config.id, status=status)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
