from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from agentrelay.config import Settings
from agentrelay.logging import get_logger

logger = get_logger(__name__)


class LLMUnavailableError(RuntimeError):
    """No LLM endpoint is configured."""


@dataclass
class LLMResponse:
    content: str
    usage: Dict[str, int] = field(default_factory=dict)
    cost: float = 0.0
    model: str = ""


class LLMService:
    """Chat completions against OpenAI or any OpenAI-compatible endpoint.

    Cost is derived from token usage and the per-token prices in settings,
    so agents can report it back to the engine.
    """

    def __init__(self, settings: Settings, *, client: Optional[Any] = None) -> None:
        self.settings = settings
        self.model = settings.openai_model
        if client is not None:
            self.client = client
        elif settings.openai_api_key:
            self.client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                timeout=settings.http_timeout_seconds,
            )
        else:
            self.client = None

    @property
    def available(self) -> bool:
        return self.client is not None

    def cost_for(self, usage: Dict[str, int]) -> float:
        return (
            usage.get("prompt_tokens", 0) * self.settings.llm_prompt_cost_per_token
            + usage.get("completion_tokens", 0) * self.settings.llm_completion_cost_per_token
        )

    async def chat(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        if self.client is None:
            raise LLMUnavailableError("OPENAI_API_KEY is not configured")
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        completion = await self.client.chat.completions.create(**kwargs)

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("llm_completion_empty", model=self.model)
            content = ""
        else:
            content = first_choice.message.content or ""
        raw_usage = getattr(completion, "usage", None)
        usage = {
            "prompt_tokens": getattr(raw_usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(raw_usage, "completion_tokens", 0) or 0,
            "total_tokens": getattr(raw_usage, "total_tokens", 0) or 0,
        }
        return LLMResponse(content=content, usage=usage, cost=self.cost_for(usage), model=self.model)


__all__ = ["LLMResponse", "LLMService", "LLMUnavailableError"]
