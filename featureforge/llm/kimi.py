"""Kimi/Moonshot LLM adapter.

Moonshot AI provides OpenAI-compatible API at https://api.moonshot.cn/v1
Models:
- moonshot-v1-8k: Fast model with 8K context
- moonshot-v1-32k: Balanced model with 32K context
- moonshot-v1-128k: Long context model with 128K context
"""

from __future__ import annotations

from typing import Any

import httpx

from featureforge.config import get_settings
from featureforge.llm.base import LLMAdapter
from featureforge.schemas import LLMMessage, LLMResponse


class KimiAdapter(LLMAdapter):
    """Kimi/Moonshot API adapter using OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.kimi_api_key
        self.base_url = base_url or settings.kimi_base_url
        self.default_model = settings.kimi_model
        self.timeout = timeout

        if not self.api_key:
            raise ValueError("Kimi/Moonshot API key not configured")

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
        return "kimi"

    @property
    def available_models(self) -> list[str]:
        return ["moonshot-v1-8k", "moonshot-v1-32k", "moonshot-v1-128k"]

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        """Send chat completion request to Kimi API."""
        # Moonshot caps temperature at 1.0
        payload = self._build_request(
            messages=messages,
            model=model or self.default_model,
            temperature=min(temperature, 1.0),
            max_tokens=max_tokens,
            tools=tools,
            response_format=response_format,
        )
        return await self._post_chat(payload)
