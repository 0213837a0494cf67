"""Liveness and model discovery for local / self-hosted endpoints.

Local servers (Ollama, llama.cpp, vLLM, LM Studio) are started and stopped
outside the runtime's control, so before routing a conversation to one the
caller can probe it::

    service = LocalProbeService(ProbeConfig("http://localhost:11434"))
    status = await service.probe()
    if status.is_available:
        print([m.id for m in status.models])
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

logger = logging.getLogger("llmloop.adapters.local_probe")

DEFAULT_LOCAL_ENDPOINT = "http://localhost:11434"


class ProbeState(str, Enum):
    """Outcome category of a probe."""

    AVAILABLE = "available"
    NOT_RUNNING = "not_running"
    TIMEOUT = "timeout"
    UNHEALTHY = "unhealthy"
    INCOMPATIBLE_RESPONSE = "incompatible_response"


TRANSIENT_STATES = frozenset({ProbeState.NOT_RUNNING, ProbeState.TIMEOUT})


@dataclass(frozen=True)
class LocalModel:
    """A model served by a local endpoint."""

    id: str
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class ProbeStatus:
    """Result of probing a local endpoint."""

    state: ProbeState
    models: tuple[LocalModel, ...] = ()
    endpoint_url: Optional[str] = None
    latency_ms: Optional[int] = None
    status_code: Optional[int] = None
    message: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.state == ProbeState.AVAILABLE

    def __str__(self) -> str:
        if self.state == ProbeState.AVAILABLE:
            return (
                f"Available at {self.endpoint_url} ({len(self.models)} models, "
                f"{self.latency_ms}ms)"
            )
        if self.state == ProbeState.NOT_RUNNING:
            return "Not running (connection refused)"
        if self.state == ProbeState.TIMEOUT:
            return "Timed out"
        if self.state == ProbeState.UNHEALTHY:
            return f"Unhealthy (HTTP {self.status_code}): {self.message}"
        return f"Incompatible response: {self.message}"


@dataclass
class ProbeConfig:
    """Probe settings.

    Attributes:
        endpoint_url: Root URL of the local server.
        timeout: Per-request timeout in seconds.
        retry_count: Retries after a not-running or timed-out attempt.
        retry_delay: Base delay in seconds, doubled per retry and capped
            at ``timeout``.
    """

    endpoint_url: str = DEFAULT_LOCAL_ENDPOINT
    timeout: float = 5.0
    retry_count: int = 2
    retry_delay: float = 0.5
    extra_headers: dict[str, str] = field(default_factory=dict)

    def delay_for_attempt(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1``."""
        return min(self.retry_delay * (2**attempt), self.timeout)


def parse_openai_models(data: Any) -> Optional[list[LocalModel]]:
    """Parse ``{"data": [{"id": ...}]}`` from ``/v1/models``."""
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        return None
    return [
        LocalModel(id=entry["id"])
        for entry in data["data"]
        if isinstance(entry, dict) and isinstance(entry.get("id"), str)
    ]


def parse_ollama_tags(data: Any) -> Optional[list[LocalModel]]:
    """Parse ``{"models": [{"name": ...}]}`` from Ollama's ``/api/tags``."""
    if not isinstance(data, dict) or not isinstance(data.get("models"), list):
        return None
    return [
        LocalModel(id=entry["name"])
        for entry in data["models"]
        if isinstance(entry, dict) and isinstance(entry.get("name"), str)
    ]


class LocalProbeService:
    """Probes a local endpoint for liveness and served models."""

    def __init__(
        self,
        config: Optional[ProbeConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or ProbeConfig()
        self._client = client

    @property
    def _base(self) -> str:
        return self.config.endpoint_url.rstrip("/")

    async def _get(self, path: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(
                f"{self._base}{path}",
                headers=self.config.extra_headers,
                timeout=self.config.timeout,
            )
        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            return await client.get(f"{self._base}{path}", headers=self.config.extra_headers)

    def _classify(self, error: httpx.HTTPError) -> ProbeStatus:
        if isinstance(error, httpx.TimeoutException):
            return ProbeStatus(ProbeState.TIMEOUT)
        if isinstance(error, httpx.ConnectError):
            return ProbeStatus(ProbeState.NOT_RUNNING)
        return ProbeStatus(
            ProbeState.INCOMPATIBLE_RESPONSE, message=f"transport error: {error}"
        )

    async def check_health(self) -> ProbeStatus:
        """GET the endpoint root and report whether it answers."""
        start = time.monotonic()
        try:
            response = await self._get("/")
        except httpx.HTTPError as e:
            return self._classify(e)

        latency_ms = int((time.monotonic() - start) * 1000)
        if response.is_success:
            return ProbeStatus(
                ProbeState.AVAILABLE, endpoint_url=self.config.endpoint_url, latency_ms=latency_ms
            )
        return ProbeStatus(
            ProbeState.UNHEALTHY,
            status_code=response.status_code,
            message=response.text[:500] or f"HTTP {response.status_code}",
        )

    async def discover_models(self) -> ProbeStatus:
        """List models via ``/v1/models``, falling back to ``/api/tags``."""
        start = time.monotonic()
        try:
            response = await self._get("/v1/models")
            if response.is_success:
                models = parse_openai_models(_json_or_none(response))
                if models is not None:
                    return self._available(models, start)
        except httpx.HTTPError:
            logger.debug("/v1/models failed on %s", self._base, exc_info=True)

        start = time.monotonic()
        try:
            response = await self._get("/api/tags")
        except httpx.HTTPError as e:
            return self._classify(e)

        if not response.is_success:
            return ProbeStatus(
                ProbeState.UNHEALTHY,
                status_code=response.status_code,
                message=response.text[:500],
            )
        models = parse_ollama_tags(_json_or_none(response))
        if models is None:
            return ProbeStatus(
                ProbeState.INCOMPATIBLE_RESPONSE,
                message="neither /v1/models nor /api/tags returned a valid model list",
            )
        return self._available(models, start)

    def _available(self, models: list[LocalModel], start: float) -> ProbeStatus:
        return ProbeStatus(
            ProbeState.AVAILABLE,
            models=tuple(models),
            endpoint_url=self.config.endpoint_url,
            latency_ms=int((time.monotonic() - start) * 1000),
        )

    async def probe_with_retry(self) -> ProbeStatus:
        """Health check then model discovery, retrying transient failures."""
        attempts = self.config.retry_count + 1
        status = ProbeStatus(ProbeState.NOT_RUNNING)

        for attempt in range(attempts):
            status = await self.check_health()
            if status.is_available:
                return await self.discover_models()
            if status.state not in TRANSIENT_STATES:
                return status
            if attempt + 1 < attempts:
                delay = self.config.delay_for_attempt(attempt)
                logger.debug(
                    "Probe of %s: %s, retrying in %.2fs", self._base, status.state.value, delay
                )
                await asyncio.sleep(delay)

        return status

    async def probe(self) -> ProbeStatus:
        """Probe the configured endpoint."""
        return await self.probe_with_retry()


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
