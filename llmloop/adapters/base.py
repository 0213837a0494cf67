"""Base adapter for LLM provider integrations.

Every provider adapter implements one contract::

    stream = await adapter.send(messages, tools, options)

Awaiting ``send`` issues the HTTP request and waits for response headers.
Failures in that phase are raised as taxonomy errors (the request never
started, so the resilience layer may retry it). Once headers arrive the
adapter returns an ``EventStream``; anything that goes wrong after that is
delivered in-band as a ``StreamError`` and the stream always ends with
exactly one terminal event.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping, Optional

import httpx

from llmloop.events import (
    EventStream,
    FinishReason,
    NormalizedEvent,
    StreamEnd,
    StreamError,
    StreamStart,
    TextDelta,
    is_terminal,
)
from llmloop.exceptions import (
    AuthError,
    LLMLoopError,
    ProviderError,
    RateLimitError,
    RequestError,
    RequestTimeoutError,
)
from llmloop.models import Message, ModelReference, RequestOptions, ToolDefinition
from llmloop.observability import redact

logger = logging.getLogger("llmloop.adapters")

DEFAULT_TIMEOUT = httpx.Timeout(120.0, connect=10.0)


@dataclass
class AdapterConfig:
    """Hooks and settings shared by all provider adapters.

    Attributes:
        on_error: Optional callback for request failures raised before a
            stream starts. Signature: (error: Exception, context: dict) -> None
        on_stream_start: Optional callback invoked when a stream begins.
            Signature: (request_id: str, model: str, provider: str) -> None
        on_token: Optional callback invoked for each text delta.
            Signature: (token: str, request_id: str) -> None
        on_stream_end: Optional callback invoked when a stream completes.
            Signature: (request_id: str, finish_reason: FinishReason) -> None
        on_stream_error: Optional callback invoked when a stream fails.
            Signature: (error: str, request_id: str) -> None
        extra_headers: Headers added to every request.
    """

    on_error: Optional[Callable[[Exception, dict[str, Any]], None]] = None
    on_stream_start: Optional[Callable[[str, str, str], None]] = None
    on_token: Optional[Callable[[str, str], None]] = None
    on_stream_end: Optional[Callable[[str, FinishReason], None]] = None
    on_stream_error: Optional[Callable[[str, str], None]] = None
    extra_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


def extract_error_message(body: str) -> str:
    """Pull a human-readable message out of a vendor error body."""
    try:
        data = json.loads(body)
    except (ValueError, TypeError):
        return body.strip()[:500]

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return body.strip()[:500]


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """Read a ``Retry-After`` header given in seconds."""
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ProviderAdapter:
    """Base class for provider adapters.

    Subclasses implement ``send`` for their wire protocol. This base class
    owns the HTTP client, the error mappers, hook invocation and the guard
    that keeps every event stream well-formed.
    """

    provider = "base"

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: Optional[str] = None,
        name: Optional[str] = None,
        config: Optional[AdapterConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ):
        """Initialize the adapter.

        Args:
            model: Model identifier sent with every request.
            base_url: Endpoint root, without the API path.
            api_key: Resolved credential. Never logged.
            name: Provider identity used for circuit breaking and logs.
                Defaults to the adapter's provider family.
            config: Optional adapter configuration. Uses defaults if not provided.
            client: Optional shared httpx client. When omitted the adapter
                creates and owns one.
            timeout: Timeout for the adapter-owned client.
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._name = name or self.provider
        self._config = config or AdapterConfig()
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, model={self.model!r})"

    @property
    def name(self) -> str:
        """Provider identity, used as the circuit-breaker key."""
        return self._name

    @property
    def config(self) -> AdapterConfig:
        """The adapter configuration."""
        return self._config

    async def send(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        options: RequestOptions,
    ) -> EventStream:
        """Issue one request and return its normalized event stream."""
        raise NotImplementedError

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    def map_http_error(
        self, status_code: int, body: str, headers: Mapping[str, str]
    ) -> LLMLoopError:
        """Translate an HTTP error response into the error taxonomy."""
        detail = redact(extract_error_message(body) or f"HTTP {status_code}")
        message = f"{self._name} returned HTTP {status_code}: {detail}"

        if status_code in (401, 403):
            return AuthError(message, status_code=status_code)
        if status_code == 429:
            return RateLimitError(
                message,
                retry_after=parse_retry_after(headers),
                status_code=status_code,
            )
        if status_code == 408:
            return RequestTimeoutError(message, status_code=status_code)
        if status_code >= 500:
            return ProviderError(message, status_code=status_code)
        return RequestError(message, status_code=status_code)

    def map_transport_error(self, error: Exception) -> LLMLoopError:
        """Translate a transport failure raised before any response arrived."""
        if isinstance(error, httpx.TimeoutException):
            return RequestTimeoutError(f"{self._name}: request timed out")
        return ProviderError(f"{self._name}: connection failed: {redact(str(error))}")

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    def _check_conversation(self, messages: list[Message]) -> None:
        if not messages:
            raise RequestError(f"{self._name}: conversation must not be empty")

    async def _open(
        self, url: str, headers: dict[str, str], body: dict[str, Any]
    ) -> httpx.Response:
        """POST a request and return the streaming response once headers arrive."""
        client = self._get_client()
        request = client.build_request(
            "POST", url, headers={**self._config.extra_headers, **headers}, json=body
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.TransportError as e:
            error = self.map_transport_error(e)
            self._handle_error(error, {"url": url, "model": self.model})
            raise error from e

        if response.status_code >= 400:
            try:
                raw = await response.aread()
            finally:
                await response.aclose()
            error = self.map_http_error(
                response.status_code, raw.decode("utf-8", errors="replace"), response.headers
            )
            self._handle_error(error, {"url": url, "model": self.model})
            raise error

        return response

    def _guarded(
        self, response: httpx.Response, events: AsyncIterator[NormalizedEvent]
    ) -> EventStream:
        """Wrap vendor parsing so the stream is always well-formed."""
        return EventStream(self._guard(response, events))

    async def _guard(
        self, response: httpx.Response, events: AsyncIterator[NormalizedEvent]
    ) -> AsyncIterator[NormalizedEvent]:
        request_id = ""
        started = False
        try:
            async for event in events:
                if isinstance(event, StreamStart):
                    started = True
                    request_id = event.request_id
                    self._invoke_stream_start(request_id, event.model.full_name)
                elif isinstance(event, TextDelta):
                    self._invoke_on_token(event.text, request_id)
                elif isinstance(event, StreamEnd):
                    self._invoke_stream_end(request_id, event.finish_reason)
                elif isinstance(event, StreamError):
                    self._invoke_stream_error(event.error, request_id)
                yield event
                if is_terminal(event):
                    return
            error = "stream ended without a terminal event"
        except httpx.HTTPError as e:
            error = f"transport error: {redact(str(e)) or type(e).__name__}"
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Malformed %s stream payload", self._name, exc_info=True)
            error = f"malformed response: {redact(str(e))}"
        finally:
            await response.aclose()

        if not started:
            request_id = self._generate_id()
            yield StreamStart(request_id=request_id, model=ModelReference(self.model))
        self._invoke_stream_error(error, request_id)
        yield StreamError(error=error)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _handle_error(self, error: Exception, context: dict[str, Any]) -> None:
        """Invoke the on_error hook if configured."""
        if self._config.on_error:
            try:
                self._config.on_error(error, context)
            except Exception:
                logger.debug("on_error hook failed", exc_info=True)

    def _invoke_stream_start(self, request_id: str, model: str) -> None:
        """Invoke the on_stream_start hook if configured."""
        if self._config.on_stream_start:
            try:
                self._config.on_stream_start(request_id, model, self._name)
            except Exception:
                logger.debug("on_stream_start hook failed", exc_info=True)

    def _invoke_on_token(self, token: str, request_id: str) -> None:
        """Invoke the on_token hook if configured."""
        if self._config.on_token:
            try:
                self._config.on_token(token, request_id)
            except Exception:
                logger.debug("on_token hook failed", exc_info=True)

    def _invoke_stream_end(self, request_id: str, finish_reason: FinishReason) -> None:
        """Invoke the on_stream_end hook if configured."""
        if self._config.on_stream_end:
            try:
                self._config.on_stream_end(request_id, finish_reason)
            except Exception:
                logger.debug("on_stream_end hook failed", exc_info=True)

    def _invoke_stream_error(self, error: str, request_id: str) -> None:
        """Invoke the on_stream_error hook if configured."""
        if self._config.on_stream_error:
            try:
                self._config.on_stream_error(error, request_id)
            except Exception:
                logger.debug("on_stream_error hook failed", exc_info=True)

    def _generate_id(self) -> str:
        """Generate a unique ID for tracking."""
        return str(uuid.uuid4())
