"""
Generation provider client.

Wraps every network interaction with the external provider behind one
interface with two implementations: a live HTTP client with bounded
retries, and a canned client used when no credential is configured.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ai_credit_gate import __version__
from ai_credit_gate.config.loader import ProviderConfig
from .errors import (
    ProviderError,
    ProviderHTTPError,
    ProviderNetworkError,
    ProviderResponseError,
    ProviderTimeoutError,
)
from .stream_decoder import StreamDecoder

logger = structlog.get_logger()

ChatMessage = Dict[str, str]

THEMES = ("light", "dark")

LANGUAGE_BY_EXTENSION = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "css": "css",
    "scss": "scss",
    "html": "html",
    "json": "json",
    "md": "markdown",
    "sql": "sql",
    "py": "python",
    "prisma": "prisma",
}


def detect_language(path: str) -> str:
    """Guess a language label from a file extension."""
    extension = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return LANGUAGE_BY_EXTENSION.get(extension, "plaintext")


@dataclass(frozen=True)
class GenerateOptions:
    """Optional generation knobs forwarded to the provider."""
    framework: Optional[str] = None
    styling: Optional[str] = None
    features: Tuple[str, ...] = ()
    theme: Optional[str] = None

    def __post_init__(self):
        """Validate option values."""
        if self.theme is not None and self.theme not in THEMES:
            raise ValueError(f"theme must be one of: {list(THEMES)}")
        if any(not isinstance(item, str) or not item for item in self.features):
            raise ValueError("features must be non-empty strings")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.framework:
            payload["framework"] = self.framework
        if self.styling:
            payload["styling"] = self.styling
        if self.features:
            payload["features"] = list(self.features)
        if self.theme:
            payload["theme"] = self.theme
        return payload


@dataclass(frozen=True)
class GenerationOutput:
    """Files produced by a successful generation."""
    files: Dict[str, str]
    preview: Optional[str] = None

    @property
    def output_size(self) -> int:
        return sum(len(content) for content in self.files.values())


@dataclass(frozen=True)
class ChatParams:
    """Per-call overrides for chat completions."""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by the provider."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ChatCompletion:
    """Non-streaming chat answer."""
    id: str
    content: str
    finish_reason: str
    usage: TokenUsage = field(default_factory=lambda: TokenUsage(0, 0))


def _validate_messages(messages: List[ChatMessage]) -> None:
    if not messages:
        raise ValueError("messages is required and cannot be empty")


def _validate_prompt(prompt: str) -> None:
    if not prompt or not prompt.strip():
        raise ValueError("prompt is required and cannot be empty")


class ProviderClient(ABC):
    """Interface shared by the live and canned provider clients."""

    @abstractmethod
    async def generate(
        self, prompt: str, options: Optional[GenerateOptions] = None
    ) -> GenerationOutput:
        """Generate a file set from a prompt.

        Raises:
            ProviderError: If the provider call ultimately fails
        """

    @abstractmethod
    async def chat_complete(
        self, messages: List[ChatMessage], params: Optional[ChatParams] = None
    ) -> ChatCompletion:
        """Single-shot chat completion."""

    @abstractmethod
    def chat_stream(
        self, messages: List[ChatMessage], params: Optional[ChatParams] = None
    ) -> AsyncIterator[str]:
        """Finite, lazy sequence of assistant text fragments.

        A failed stream cannot be resumed; issue a new call instead.
        """

    async def aclose(self) -> None:
        """Release network resources."""


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception()
    logger.warning(
        "provider_retry",
        attempt=retry_state.attempt_number,
        status_code=getattr(error, "status_code", None),
        error=str(error),
        sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
    )


class LiveProviderClient(ProviderClient):
    """HTTP client for the generation provider.

    Every attempt is bounded by ``timeout_seconds``. Retryable failures
    (network, timeout, 5xx, 429) are retried up to ``max_retries`` times,
    waiting ``retry_base_delay * 2 ** attempt`` seconds between attempts.
    Other 4xx responses abort immediately.
    """

    def __init__(
        self,
        config: ProviderConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the live client.

        Args:
            config: Provider connection and retry settings
            transport: Optional httpx transport (tests use MockTransport)
            sleep: Coroutine used for backoff waits
        """
        if not config.has_credentials:
            raise ValueError("api_key is required for the live provider client")
        self.config = config
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "X-Client": "ai-credit-gate",
                "X-Client-Version": __version__,
            },
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(multiplier=self.config.retry_base_delay, exp_base=2),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

    async def _with_retries(self, operation: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        async for attempt in self._retrying():
            with attempt:
                return await operation(*args)

    async def _send(self, request: httpx.Request, stream: bool = False) -> httpx.Response:
        """Send one attempt, translating transport failures into provider errors."""
        try:
            response = await asyncio.wait_for(
                self._http.send(request, stream=stream),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(
                f"Provider request exceeded {self.config.timeout_seconds}s"
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Provider request timed out: {e}")
        except httpx.TransportError as e:
            raise ProviderNetworkError(f"Provider connection failed: {str(e) or type(e).__name__}")

        if not response.is_success:
            if stream:
                await response.aread()
                await response.aclose()
            raise _http_error(response)
        return response

    async def _post_json(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        request = self._http.build_request("POST", endpoint, json=payload)
        response = await self._send(request)
        try:
            return response.json()
        except ValueError:
            raise ProviderResponseError(f"Provider returned invalid JSON from {endpoint}")

    async def _open_stream(self, payload: Dict[str, Any]) -> httpx.Response:
        request = self._http.build_request("POST", "/chat/completions", json=payload)
        return await self._send(request, stream=True)

    def _chat_payload(self, messages: List[ChatMessage], params: Optional[ChatParams]) -> Dict[str, Any]:
        params = params or ChatParams()
        return {
            "messages": messages,
            "model": params.model or self.config.model,
            "temperature": (
                params.temperature if params.temperature is not None else self.config.temperature
            ),
            "max_tokens": params.max_tokens or self.config.max_tokens,
        }

    async def generate(
        self, prompt: str, options: Optional[GenerateOptions] = None
    ) -> GenerationOutput:
        _validate_prompt(prompt)
        payload = {
            "prompt": prompt,
            "options": options.to_payload() if options else {},
        }
        started = time.monotonic()
        body = await self._with_retries(self._post_json, "/generate", payload)
        output = parse_generation_response(body)
        logger.info(
            "provider_generate_succeeded",
            file_count=len(output.files),
            output_size=output.output_size,
            elapsed_seconds=round(time.monotonic() - started, 3),
        )
        return output

    async def chat_complete(
        self, messages: List[ChatMessage], params: Optional[ChatParams] = None
    ) -> ChatCompletion:
        _validate_messages(messages)
        payload = self._chat_payload(messages, params)
        body = await self._with_retries(self._post_json, "/chat/completions", payload)
        return parse_chat_completion(body)

    async def chat_stream(
        self, messages: List[ChatMessage], params: Optional[ChatParams] = None
    ) -> AsyncIterator[str]:
        _validate_messages(messages)
        payload = self._chat_payload(messages, params)
        payload["stream"] = True

        # Only opening the stream is retried; nothing has been delivered yet.
        response = await self._with_retries(self._open_stream, payload)
        decoder = StreamDecoder()
        try:
            async for chunk in response.aiter_bytes():
                for fragment in decoder.feed(chunk):
                    yield fragment
                if decoder.finished:
                    return
            for fragment in decoder.flush():
                yield fragment
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Provider stream stalled: {e}")
        except httpx.TransportError as e:
            raise ProviderNetworkError(f"Provider stream interrupted: {str(e) or type(e).__name__}")
        finally:
            await response.aclose()


def _http_error(response: httpx.Response) -> ProviderHTTPError:
    try:
        body = response.json()
    except ValueError:
        body = None
    message = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
    return ProviderHTTPError(
        str(message) if message else f"HTTP {response.status_code}",
        response.status_code,
        details=body,
    )


def parse_generation_response(body: Any) -> GenerationOutput:
    """Validate a ``POST /generate`` body.

    Raises:
        ProviderResponseError: If the provider reports failure or sends no files
    """
    if not isinstance(body, dict):
        raise ProviderResponseError("Generation response is not an object", details=body)
    if not body.get("success"):
        raise ProviderResponseError(str(body.get("error") or "Generation failed"), details=body)

    data = body.get("data") or {}
    files = data.get("files") if isinstance(data, dict) else None
    if not isinstance(files, dict) or not files:
        raise ProviderResponseError("Generation response contains no files", details=body)
    if not all(isinstance(path, str) and isinstance(content, str) for path, content in files.items()):
        raise ProviderResponseError("Generation files must map paths to text", details=body)

    preview = data.get("preview")
    return GenerationOutput(
        files=dict(files),
        preview=preview if isinstance(preview, str) else None,
    )


def parse_chat_completion(body: Any) -> ChatCompletion:
    """Validate a non-streaming ``POST /chat/completions`` body."""
    try:
        choice = body["choices"][0]
        content = choice["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise ProviderResponseError("Chat completion response is malformed", details=body)

    usage = body.get("usage") or {}
    return ChatCompletion(
        id=str(body.get("id", "")),
        content=content,
        finish_reason=choice.get("finishReason") or choice.get("finish_reason") or "stop",
        usage=TokenUsage(
            prompt_tokens=int(usage.get("promptTokens", usage.get("prompt_tokens", 0))),
            completion_tokens=int(usage.get("completionTokens", usage.get("completion_tokens", 0))),
        ),
    )


class CannedProviderClient(ProviderClient):
    """Deterministic offline stand-in for the provider.

    Selected when no credential is configured so that the orchestrator can
    run without network access.
    """

    def __init__(self, fragment_delay: float = 0.0):
        self.fragment_delay = fragment_delay

    async def generate(
        self, prompt: str, options: Optional[GenerateOptions] = None
    ) -> GenerationOutput:
        _validate_prompt(prompt)
        framework = (options.framework if options else None) or "nextjs"
        files = {
            "app/page.tsx": (
                f"// Generated from prompt: {prompt[:50]}\n"
                "export default function HomePage() {\n"
                "  return (\n"
                "    <main>\n"
                "      <h1>Your AI generated site</h1>\n"
                "    </main>\n"
                "  );\n"
                "}\n"
            ),
            "app/layout.tsx": (
                "export const metadata = { title: 'AI generated site' };\n\n"
                "export default function RootLayout({ children }) {\n"
                "  return <html lang=\"en\"><body>{children}</body></html>;\n"
                "}\n"
            ),
            "app/globals.css": "body {\n  margin: 0;\n  font-family: sans-serif;\n}\n",
            "package.json": (
                '{\n  "name": "generated-site",\n  "version": "1.0.0",\n'
                f'  "private": true,\n  "description": "{framework} starter"\n}}\n'
            ),
        }
        return GenerationOutput(
            files=files,
            preview="<html><body>Preview placeholder</body></html>",
        )

    def _reply(self, messages: List[ChatMessage]) -> str:
        last = messages[-1].get("content", "") if messages else ""
        return (
            f'Offline reply to: "{last[:50]}". '
            "Configure a provider API key to receive real answers."
        )

    async def chat_complete(
        self, messages: List[ChatMessage], params: Optional[ChatParams] = None
    ) -> ChatCompletion:
        _validate_messages(messages)
        return ChatCompletion(
            id=f"canned-{len(messages)}",
            content=self._reply(messages),
            finish_reason="stop",
            usage=TokenUsage(prompt_tokens=100, completion_tokens=50),
        )

    async def chat_stream(
        self, messages: List[ChatMessage], params: Optional[ChatParams] = None
    ) -> AsyncIterator[str]:
        _validate_messages(messages)
        for word in self._reply(messages).split(" "):
            if self.fragment_delay:
                await asyncio.sleep(self.fragment_delay)
            yield word + " "


def build_provider_client(
    config: ProviderConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderClient:
    """Pick the live client when a credential is configured, else the canned one."""
    if config.has_credentials:
        return LiveProviderClient(config, transport=transport)
    logger.warning("provider_credentials_missing", fallback="canned")
    return CannedProviderClient()
