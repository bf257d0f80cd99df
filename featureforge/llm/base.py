"""Abstract base classes for LLM adapters and agent-facing models."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from featureforge.schemas import AgentType, LLMMessage, LLMResponse


logger = logging.getLogger(__name__)


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters.

    All LLM providers (DeepSeek, Kimi, etc.) implement this interface
    to ensure consistent behavior across providers. Providers speak the
    OpenAI-compatible chat completions protocol over ``self._client``.
    """

    _client: httpx.AsyncClient

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'deepseek', 'kimi')."""
        ...

    @property
    @abstractmethod
    def available_models(self) -> list[str]:
        """Return list of available model names for this provider."""
        ...

    @abstractmethod
    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        """Send a chat completion request.

        Args:
            messages: List of conversation messages
            model: Model name (uses default if None)
            temperature: Sampling temperature (0-2)
            max_tokens: Maximum tokens in response
            tools: Optional list of tool definitions for function calling
            response_format: Optional response format (e.g., {"type": "json_object"})

        Returns:
            LLMResponse with content and/or tool calls; ``finish_reason`` is
            "error" when the provider could not be reached
        """
        ...

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _build_request(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float,
        max_tokens: int,
        tools: list[dict[str, Any]] | None,
        response_format: dict[str, str] | None,
    ) -> dict[str, Any]:
        """Build the API request payload.

        A tool message holding a whole step's ``tool_results`` is expanded
        into one wire message per call, preserving order.
        """
        wire: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "tool" and message.tool_results:
                for part in message.tool_results:
                    wire.append({
                        "role": "tool",
                        "tool_call_id": part.tool_call_id,
                        "name": part.tool_name,
                        "content": json.dumps(part.output, default=str),
                    })
            else:
                wire.append(message.model_dump(exclude_none=True, exclude={"tool_results"}))

        payload: dict[str, Any] = {
            "model": model,
            "messages": wire,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        if tools:
            payload["tools"] = tools

        if response_format:
            payload["response_format"] = response_format

        return payload

    async def _post_chat(self, payload: dict[str, Any]) -> LLMResponse:
        """POST a chat completion and parse the first choice."""
        model = payload["model"]
        start_time = time.perf_counter()

        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"{self.provider_name} returned {e.response.status_code}")
            return LLMResponse(
                content=None,
                model=model,
                usage={},
                finish_reason="error",
                raw_response={"error": str(e), "status_code": e.response.status_code},
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"{self.provider_name} request failed: {e}")
            return LLMResponse(
                content=None,
                model=model,
                usage={},
                finish_reason="error",
                raw_response={"error": str(e)},
            )

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        logger.debug(f"{self.provider_name}/{model} answered in {latency_ms}ms")

        # Parse response
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message", {})

        return LLMResponse(
            content=message.get("content"),
            tool_calls=message.get("tool_calls"),
            model=data.get("model", model),
            usage={k: v for k, v in (data.get("usage") or {}).items() if isinstance(v, int)},
            finish_reason=choice.get("finish_reason"),
            raw_response=data,
        )


class AgentModel(ABC):
    """A model bound to one route, as seen by the agent loop."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Identifier recorded on agent invocations."""
        ...

    @abstractmethod
    async def complete(
        self,
        system: str,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        """Run one model call over the conversation.

        Raises:
            ModelCallError: no provider produced a response
        """
        ...


class ModelSource(ABC):
    """Hands out models bound to the route for an agent type."""

    @abstractmethod
    def for_agent(self, agent_type: AgentType) -> AgentModel:
        ...
