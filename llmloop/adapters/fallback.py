"""Primary/fallback provider composition.

Routes every request to the primary provider and, when the primary fails
before its stream starts with a retryable error (outage, overload,
throttling, timeout), repeats the request against the fallback. Errors
that would fail identically anywhere (bad credentials, malformed request)
are raised unchanged.
"""

import logging
import threading
from typing import Optional

from llmloop.adapters.base import ProviderAdapter
from llmloop.events import EventStream
from llmloop.exceptions import LLMLoopError
from llmloop.models import Message, RequestOptions, ToolDefinition

logger = logging.getLogger("llmloop.adapters.fallback")


class FallbackProvider(ProviderAdapter):
    """Provider that fails over from ``primary`` to ``fallback``."""

    provider = "fallback"

    def __init__(
        self,
        primary: ProviderAdapter,
        fallback: ProviderAdapter,
        name: Optional[str] = None,
    ):
        super().__init__(
            model=primary.model,
            base_url=primary.base_url,
            name=name or f"{primary.name}+{fallback.name}",
        )
        self.primary = primary
        self.fallback = fallback
        self._lock = threading.Lock()
        self._fallback_count = 0

    @property
    def fallback_count(self) -> int:
        """How many requests were served by the fallback."""
        with self._lock:
            return self._fallback_count

    async def send(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        options: RequestOptions,
    ) -> EventStream:
        try:
            return await self.primary.send(messages, tools, options)
        except LLMLoopError as e:
            if not e.retryable:
                raise
            logger.warning(
                "Primary provider '%s' failed (%s); using fallback '%s'",
                self.primary.name,
                e,
                self.fallback.name,
            )
            with self._lock:
                self._fallback_count += 1
            return await self.fallback.send(messages, tools, options)

    async def aclose(self) -> None:
        await self.primary.aclose()
        await self.fallback.aclose()
