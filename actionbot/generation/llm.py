"""OpenAI-compatible chat completions client."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from actionbot.config import Config
from actionbot.errors import GenerationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatResult:
    text: str
    tokens: int = 0


class ChatClient:
    """POST {base_url}/chat/completions with a system and a user message."""

    def __init__(
        self,
        *,
        base_url: str = Config.LLM_BASE_URL,
        api_key: str = Config.LLM_API_KEY,
        model: str = Config.LLM_MODEL,
        max_tokens: int = Config.LLM_MAX_TOKENS,
        temperature: float = Config.LLM_TEMPERATURE,
        timeout_seconds: float = Config.LLM_TIMEOUT_SEC,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or "https://api.openai.com/v1").rstrip("/")
        self.api_key = api_key
        self.model = model or "gpt-4o-mini"
        self.max_tokens = max_tokens or 500
        self.temperature = temperature or 0.7
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(url, json=payload, headers=headers, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, json=payload, headers=headers)

    async def complete(self, system_prompt: str, user_prompt: str) -> ChatResult:
        if not self.api_key:
            raise GenerationError("LLM API key is not configured")

        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            resp = await self._post(f"{self.base_url}/chat/completions", payload, headers)
        except httpx.HTTPError as e:
            raise GenerationError(f"LLM request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationError(f"LLM returned non-JSON response (HTTP {resp.status_code})") from e

        if not isinstance(data, dict):
            raise GenerationError("LLM returned an unexpected response body")

        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise GenerationError(f"LLM API error: {message}")
        if resp.status_code >= 400:
            raise GenerationError(f"LLM HTTP {resp.status_code}: {resp.text[:200]}")

        choices = data.get("choices") or []
        if not choices:
            raise GenerationError("LLM returned no choices")

        content = ((choices[0] or {}).get("message") or {}).get("content") or ""
        if not content.strip():
            raise GenerationError("LLM returned empty content")

        usage = data.get("usage") or {}
        tokens = int(usage.get("total_tokens") or 0)
        logger.debug(f"LLM completion: model={self.model} tokens={tokens}")
        return ChatResult(text=content, tokens=tokens)
