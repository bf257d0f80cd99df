"""DeepSeek LLM adapter.

DeepSeek provides OpenAI-compatible API at https://api.deepseek.com
Models:
- deepseek-chat: Fast general-purpose model (DeepSeek V3)
- deepseek-reasoner: Reasoning model (DeepSeek R1) for complex tasks
"""

from __future__ import annotations

from typing import Any

import httpx

from featureforge.config import get_settings
from featureforge.llm.base import LLMAdapter
from featureforge.schemas import LLMMessage, LLMResponse


class DeepSeekAdapter(LLMAdapter):
    """DeepSeek API adapter using OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.deepseek_api_key
        self.base_url = base_url or settings.deepseek_base_url
        self.default_model = settings.deepseek_model_chat
        self.timeout = timeout

        if not self.api_key:
            raise ValueError("DeepSeek API key not configured")

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return "deepseek"

    @property
    def available_models(self) -> list[str]:
        return ["deepseek-chat", "deepseek-reasoner"]

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        """Send chat completion request to DeepSeek API."""
        payload = self._build_request(
            messages=messages,
            model=model or self.default_model,
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools,
            response_format=response_format,
        )
        return await self._post_chat(payload)
