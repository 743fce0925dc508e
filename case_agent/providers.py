from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import get_settings

logger = logging.getLogger("case-agent")


class ProviderError(RuntimeError):
    """Raised when the chat-completions gateway fails or answers with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class ModelStream:
    """
    An open chunked model response: raw byte chunks plus a closer for the transport.

    Callers release it through `aclose`, which runs `close` at most once.
    """

    chunks: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]]
    closed: bool = field(default=False, init=False)

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.close()


class BaseProvider:
    """
    Chat-completions collaborator.

    `complete` returns the decoded completion object; `open_stream` returns the raw
    SSE byte stream once the upstream has answered with a success status.
    """

    async def complete(self, body: Dict[str, Any]) -> Dict[str, Any]:  # pragma: no cover - interface only
        raise NotImplementedError

    async def open_stream(self, body: Dict[str, Any]) -> ModelStream:  # pragma: no cover - interface only
        raise NotImplementedError


async def _noop_close() -> None:
    return None


class StubProvider(BaseProvider):
    """
    Deterministic provider for local development and tests.

    Echoes a short acknowledgement of the last user message; never calls tools.
    """

    def _reply(self, body: Dict[str, Any]) -> str:
        messages: List[Dict[str, Any]] = body.get("messages") or []
        last_user = next((m for m in reversed(messages) if m.get("role") == "user"), None)
        request_text = ""
        if last_user:
            content = str(last_user.get("content") or "")
            request_text = content.rsplit("User Request:", 1)[-1].strip()
        return f"Stub agent reply to: {request_text[:200]}"

    async def complete(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "model": "stub",
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": self._reply(body)},
                    "finish_reason": "stop",
                }
            ],
        }

    async def open_stream(self, body: Dict[str, Any]) -> ModelStream:
        words = self._reply(body).split(" ")

        async def chunks() -> AsyncIterator[bytes]:
            for i, word in enumerate(words):
                piece = word if i == 0 else f" {word}"
                frame = {"choices": [{"index": 0, "delta": {"content": piece}}]}
                yield f"data: {json.dumps(frame)}\n\n".encode("utf-8")
            yield b"data: [DONE]\n\n"

        return ModelStream(chunks=chunks(), close=_noop_close)


class GatewayProvider(BaseProvider):
    """
    OpenAI-compatible chat-completions gateway (one key, many models).
    """

    def __init__(self, api_key: str, url: str, timeout: float = 60.0) -> None:
        self.api_key = api_key
        self.url = url
        self.timeout = timeout

    def _headers(self, stream: bool) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    async def complete(self, body: Dict[str, Any]) -> Dict[str, Any]:  # pragma: no cover - network
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, headers=self._headers(stream=False), json=body)
        except httpx.HTTPError as exc:
            raise ProviderError(f"AI Gateway unreachable: {exc}") from exc

        if resp.status_code >= 400:
            logger.error("gateway error status=%s body=%s", resp.status_code, resp.text[:500])
            raise ProviderError(f"AI Gateway error: {resp.status_code}", status_code=resp.status_code)

        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise ProviderError("AI Gateway returned invalid JSON") from exc

    async def open_stream(self, body: Dict[str, Any]) -> ModelStream:  # pragma: no cover - network
        client = httpx.AsyncClient(timeout=self.timeout)
        try:
            request = client.build_request("POST", self.url, headers=self._headers(stream=True), json=body)
            resp = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise ProviderError(f"AI Gateway unreachable: {exc}") from exc

        if resp.status_code >= 400:
            error_text = (await resp.aread()).decode("utf-8", errors="replace")
            await resp.aclose()
            await client.aclose()
            logger.error("gateway stream error status=%s body=%s", resp.status_code, error_text[:500])
            raise ProviderError(f"AI Gateway error: {resp.status_code}", status_code=resp.status_code)

        async def close() -> None:
            await resp.aclose()
            await client.aclose()

        return ModelStream(chunks=resp.aiter_bytes(), close=close)


def build_provider() -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = get_settings()
    if settings.provider_name == "gateway":
        if not settings.ai_gateway_api_key:
            logger.warning("PROVIDER=gateway but no AI_GATEWAY_API_KEY set; using stub provider")
            return StubProvider()
        return GatewayProvider(
            api_key=settings.ai_gateway_api_key,
            url=settings.ai_gateway_url,
            timeout=settings.ai_timeout_seconds,
        )

    return StubProvider()
