from __future__ import annotations

from typing import Any

import httpx

from .config import settings
from .errors import ErrorCode, ProviderError


def _status_code(status: int) -> ErrorCode:
    if status in (401, 403):
        return ErrorCode.AUTH
    if status == 429:
        return ErrorCode.RATE_LIMIT
    if status == 402:
        return ErrorCode.BUDGET
    if status >= 500:
        return ErrorCode.TRANSIENT
    return ErrorCode.UNKNOWN


def _extract_text(payload: Any) -> str:
    # OpenAI-style chat completions put the reply under choices[0].message.content.
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"].strip()
    content = payload.get("content")
    if isinstance(content, list):
        texts = [p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text"]
        return "".join(texts).strip()
    return ""


class GatewayLLMClient:
    """Async client for an OpenAI-compatible chat gateway fronting every provider."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        max_tokens: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.llm_gateway_url).rstrip("/")
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds or settings.llm_timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def call(
        self,
        provider: str,
        credential: str,
        messages: list[dict[str, str]],
        model: str,
    ) -> str:
        body = {
            "model": f"{provider}/{model}",
            "messages": messages,
            "max_tokens": self._max_tokens,
        }
        headers = {"Authorization": f"Bearer {credential}"}
        try:
            resp = await self._client.post("/chat/completions", json=body, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ProviderError(
                f"{provider} API error {status}: {e.response.text[:500]}",
                _status_code(status),
            ) from e
        except httpx.RequestError as e:
            raise ProviderError(f"{provider} request failed: {e}", ErrorCode.TRANSIENT) from e

        text = _extract_text(resp.json())
        if not text:
            raise ProviderError(f"{provider} returned an empty response", ErrorCode.UNKNOWN)
        return text
