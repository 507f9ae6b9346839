"""HTTP client for chat-completion APIs with streaming, fallback and cancellation."""

import asyncio
import json
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import httpx

from codehelm.exceptions import LLMAPIError, LLMError, RequestCancelledError
from codehelm.llm import (
    ChatResponse,
    Message,
    RateLimits,
    StreamCallback,
    ToolDefinition,
)
from codehelm.llm.providers import Provider, detect_provider
from codehelm.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_ERROR_TEXT = 300

_CONTEXT_LENGTH_MARKERS = (
    "context_length_exceeded",
    "context window",
    "prompt is too long",
    "tokens_exceeded",
    "maximum context length",
)
_RATE_LIMIT_MARKERS = ("429", "rate_limit", "rate limit", "too many requests")


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP date)."""
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def parse_api_error(
    status_code: int,
    body: bytes | str,
    headers: Mapping[str, str] | None = None,
) -> LLMAPIError:
    """Build an ``LLMAPIError`` from a non-200 response."""
    raw = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else str(body or "")
    detail = raw.strip()
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            kind = error.get("type") or error.get("code")
            detail = f"{kind}: {error['message']}" if kind else str(error["message"])
        elif isinstance(error, str) and error:
            detail = error
        elif payload.get("message"):
            detail = str(payload["message"])
    if len(detail) > MAX_ERROR_TEXT:
        detail = detail[:MAX_ERROR_TEXT] + "..."
    retry_after = _parse_retry_after((headers or {}).get("retry-after"))
    return LLMAPIError(
        f"API error {status_code}: {detail or 'empty response body'}",
        status_code=status_code,
        retry_after=retry_after,
    )


def is_context_length_error(error: BaseException | None) -> bool:
    """Whether an error means the request exceeded the model's context window."""
    if error is None:
        return False
    text = str(error).lower()
    return any(marker in text for marker in _CONTEXT_LENGTH_MARKERS)


def is_rate_limit_error(error: BaseException | None) -> bool:
    """Whether an error is a provider rate limit."""
    if error is None:
        return False
    if isinstance(error, LLMAPIError) and error.status_code == 429:
        return True
    text = str(error).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        pass


async def run_cancellable(aw: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """Await ``aw`` unless ``cancel_event`` fires first.

    Raises:
        RequestCancelledError: if the event is (or becomes) set before ``aw`` completes
    """
    if cancel_event is None:
        return await aw
    if cancel_event.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        elif isinstance(aw, asyncio.Future):
            aw.cancel()
        raise RequestCancelledError()

    work = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await cancel_task(work)
        raise
    finally:
        await cancel_task(waiter)

    if work in done:
        return work.result()
    await cancel_task(work)
    raise RequestCancelledError()


class _StreamGuard:
    """Callback wrapper that delivers ``done=True`` exactly once."""

    def __init__(self, callback: StreamCallback | None):
        self._callback = callback
        self.done = False

    def __call__(self, content: str, thinking: str, done: bool) -> None:
        if self.done:
            return
        if done:
            self.done = True
        if self._callback is not None:
            self._callback(content, thinking, done)

    def finish(self) -> None:
        if not self.done:
            self("", "", True)


class LLMClient:
    """Chat client bound to one provider wire format and one primary model."""

    def __init__(
        self,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        api_key: str = "",
        provider: Provider | str | None = None,
        timeout: float = 120.0,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.base_url = base_url
        self.api_key = api_key
        if isinstance(provider, Provider):
            self.provider = provider
        else:
            self.provider = detect_provider(provider or "", model, api_key)
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.retry_backoff = max(0.0, float(retry_backoff))
        self.fallback_models: list[str] = []
        self.fallback_timeout: float = timeout
        self.last_rate_limits = RateLimits()
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @classmethod
    def from_config(cls, config: Any, http_client: httpx.AsyncClient | None = None) -> "LLMClient":
        """Create a client from the ``model`` section of a ``Config``."""
        model_cfg = config.model
        client = cls(
            model=model_cfg.model,
            base_url=model_cfg.base_url,
            api_key=model_cfg.api_key,
            provider=model_cfg.provider or None,
            timeout=model_cfg.request_timeout,
            max_retries=model_cfg.max_retries,
            retry_backoff=model_cfg.retry_backoff,
            http_client=http_client,
        )
        if model_cfg.fallback_models:
            client.set_fallback_models(model_cfg.fallback_models, model_cfg.fallback_timeout)
        return client

    def set_fallback_models(self, models: list[str], timeout: float | None = None) -> None:
        """Configure models tried in order after the primary fails."""
        self.fallback_models = [m for m in (str(x).strip() for x in models or []) if m]
        if timeout is not None and timeout > 0:
            self.fallback_timeout = float(timeout)

    def _headers(self, stream: bool) -> dict[str, str]:
        headers: dict[str, str] = {}
        self.provider.set_headers(headers, self.api_key)
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    def _retry_delay(self, error: LLMAPIError, attempt: int) -> float:
        if error.retry_after is not None:
            return error.retry_after
        return self.retry_backoff * (2 ** (attempt - 1))

    async def _send(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        top_p: float | None,
        max_tokens: int | None,
    ) -> ChatResponse:
        body = self.provider.build_request_body(
            model, messages, tools, temperature, top_p, max_tokens, stream=False
        )
        url = self.provider.endpoint(self.base_url)
        attempt = 0
        while True:
            try:
                response = await self.client.post(url, content=body, headers=self._headers(False))
            except httpx.HTTPError as e:
                raise LLMAPIError(f"HTTP request failed: {e}") from e

            if response.status_code != 200:
                error = parse_api_error(response.status_code, response.content, response.headers)
                if response.status_code in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                    attempt += 1
                    delay = self._retry_delay(error, attempt)
                    log.warning(
                        "Retrying LLM request",
                        model=model,
                        status=response.status_code,
                        attempt=attempt,
                        delay=delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise error

            result = self.provider.parse_response_body(response.content)
            result.rate_limits = self.provider.parse_rate_limits(response.headers)
            return result

    async def _stream(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        top_p: float | None,
        max_tokens: int | None,
        callback: StreamCallback,
    ) -> ChatResponse:
        body = self.provider.build_request_body(
            model, messages, tools, temperature, top_p, max_tokens, stream=True
        )
        url = self.provider.endpoint(self.base_url)
        attempt = 0
        while True:
            error: LLMAPIError | None = None
            try:
                async with self.client.stream(
                    "POST", url, content=body, headers=self._headers(True)
                ) as response:
                    if response.status_code != 200:
                        raw = await response.aread()
                        error = parse_api_error(response.status_code, raw, response.headers)
                    else:
                        result = await self.provider.parse_sse_stream(response.aiter_lines(), callback)
                        result.rate_limits = self.provider.parse_rate_limits(response.headers)
                        return result
            except httpx.HTTPError as e:
                raise LLMAPIError(f"HTTP stream failed: {e}") from e

            if error.status_code in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                attempt += 1
                delay = self._retry_delay(error, attempt)
                log.warning(
                    "Retrying LLM stream",
                    model=model,
                    status=error.status_code,
                    attempt=attempt,
                    delay=delay,
                )
                await asyncio.sleep(delay)
                continue
            raise error

    async def _with_fallback(self, send: Callable[[str], Awaitable[ChatResponse]]) -> ChatResponse:
        """Run ``send`` against the primary model, then each fallback in order."""
        if not self.fallback_models:
            return await send(self.model)

        primary_error: Exception | None = None
        for index, model in enumerate([self.model, *self.fallback_models]):
            try:
                return await asyncio.wait_for(send(model), timeout=self.fallback_timeout)
            except asyncio.TimeoutError:
                error: Exception = LLMError(f"model {model} timed out after {self.fallback_timeout}s")
            except LLMError as e:
                error = e
            if primary_error is None:
                primary_error = error
            log.warning(
                "LLM model failed, trying next fallback",
                model=model,
                fallback_index=index,
                error=str(error),
            )
        raise LLMError(f"all models failed, primary error: {primary_error}") from primary_error

    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        max_tokens: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """Send a buffered chat request.

        Raises:
            RequestCancelledError: if ``cancel_event`` fires first
            LLMError: on transport/API failure of every configured model
        """

        async def send(model: str) -> ChatResponse:
            return await self._send(model, messages, tools, temperature, top_p, max_tokens)

        result = await run_cancellable(self._with_fallback(send), cancel_event)
        self.last_rate_limits = result.rate_limits
        return result

    async def chat_with_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        max_tokens: int | None = None,
        callback: StreamCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """Stream a chat request, forwarding deltas to ``callback``.

        The callback receives ``(content, thinking, done)``; ``done=True`` is
        delivered exactly once whether the stream finishes, fails or is
        cancelled. A fallback model restarts the stream from scratch.
        """
        guard = _StreamGuard(callback)

        async def send(model: str) -> ChatResponse:
            return await self._stream(model, messages, tools, temperature, top_p, max_tokens, guard)

        try:
            result = await run_cancellable(self._with_fallback(send), cancel_event)
        finally:
            guard.finish()
        self.last_rate_limits = result.rate_limits
        return result

    async def simple_query(
        self,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """One-shot user prompt without tools; returns the text content."""
        result = await self.chat(
            [Message(role="user", content=prompt)],
            temperature=temperature,
            max_tokens=max_tokens,
            cancel_event=cancel_event,
        )
        return result.content

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
