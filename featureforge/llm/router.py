"""LLM Router for model selection and fallback logic.

Strategy:
- Orchestrators, coders and judges: reasoning model
- Explorers and the meta-judge: cheaper fast model
- On failure: fallback to the alternate provider; if that fails too the
  call raises ModelCallError so the step substrate retries it
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from featureforge.config import Settings, get_settings
from featureforge.errors import ModelCallError
from featureforge.llm.base import AgentModel, LLMAdapter, ModelSource
from featureforge.llm.deepseek import DeepSeekAdapter
from featureforge.llm.kimi import KimiAdapter
from featureforge.schemas import AgentType, LLMMessage, LLMResponse


logger = logging.getLogger(__name__)

ModelType = Literal["fast", "reasoning"]


class ModelRouter(ModelSource):
    """Routes LLM requests to appropriate providers with fallback logic."""

    # Agent-to-model mapping (what model should be used for each agent type)
    AGENT_MODEL_MAP: dict[str, ModelType] = {
        AgentType.ORCHESTRATOR.value: "reasoning",
        AgentType.EXPLORER.value: "fast",
        AgentType.CODER.value: "reasoning",
        AgentType.JUDGE.value: "reasoning",
        AgentType.META_JUDGE.value: "fast",
    }

    def __init__(
        self,
        settings: Settings | None = None,
        adapters: dict[str, LLMAdapter] | None = None,
    ):
        settings = settings or get_settings()
        self.primary_provider = settings.primary_provider
        self.fallback_provider = settings.fallback_provider

        # Initialize adapters lazily
        self._adapters: dict[str, LLMAdapter] = dict(adapters or {})
        self._settings = settings

    def _get_adapter(self, provider: str) -> LLMAdapter:
        """Get or create an adapter for a provider."""
        if provider not in self._adapters:
            if provider == "deepseek":
                self._adapters["deepseek"] = DeepSeekAdapter()
            elif provider == "kimi":
                self._adapters["kimi"] = KimiAdapter()
            else:
                raise ValueError(f"Unknown provider: {provider}")
        return self._adapters[provider]

    def model_for(self, provider: str, model_type: ModelType) -> str:
        if provider == "deepseek":
            if model_type == "reasoning":
                return self._settings.deepseek_model_reasoner
            return self._settings.deepseek_model_chat
        return self._settings.kimi_model

    def model_type_for(self, agent_type: AgentType) -> ModelType:
        return self.AGENT_MODEL_MAP.get(agent_type.value, "fast")

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model_type: ModelType = "fast",
        tools: list[dict[str, Any]] | None = None,
        allow_fallback: bool = True,
    ) -> tuple[LLMResponse, str, str]:
        """Route a chat completion request with fallback.

        Args:
            messages: Conversation messages, system message first
            model_type: Fast or reasoning route
            tools: Tool definitions
            allow_fallback: Whether to try fallback on failure

        Returns:
            Tuple of (response, provider_used, model_used)

        Raises:
            ModelCallError: every provider tried failed
        """
        providers = [self.primary_provider]
        if allow_fallback and self.fallback_provider != self.primary_provider:
            providers.append(self.fallback_provider)

        errors: list[str] = []
        for provider in providers:
            model = self.model_for(provider, model_type)
            logger.info(f"Routing {model_type} call to {provider}/{model}")
            try:
                adapter = self._get_adapter(provider)
                response = await adapter.chat_completion(
                    messages=messages,
                    model=model,
                    temperature=self._settings.llm_temperature,
                    max_tokens=self._settings.llm_max_tokens,
                    tools=tools,
                )
            except ValueError as e:
                # Provider not configured
                errors.append(f"{provider}: {e}")
                logger.warning(f"Provider {provider} unavailable: {e}")
                continue

            if response.finish_reason == "error":
                detail = (response.raw_response or {}).get("error", "unknown error")
                errors.append(f"{provider}: {detail}")
                logger.warning(f"Provider {provider} failed, trying fallback")
                continue

            return (response, provider, model)

        raise ModelCallError("All providers failed: " + "; ".join(errors))

    def for_agent(self, agent_type: AgentType) -> AgentModel:
        """Bind a route for one agent type."""
        return RoutedModel(self, self.model_type_for(agent_type))

    async def close(self) -> None:
        """Close all adapters."""
        for adapter in self._adapters.values():
            await adapter.close()


class RoutedModel(AgentModel):
    """AgentModel that sends every call through the router."""

    def __init__(self, router: ModelRouter, model_type: ModelType):
        self._router = router
        self._model_type = model_type

    @property
    def model_id(self) -> str:
        provider = self._router.primary_provider
        return f"{provider}/{self._router.model_for(provider, self._model_type)}"

    async def complete(
        self,
        system: str,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        conversation = [LLMMessage(role="system", content=system), *messages]
        response, _, _ = await self._router.chat_completion(
            messages=conversation,
            model_type=self._model_type,
            tools=tools,
        )
        return response

