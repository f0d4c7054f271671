"""
LLM Client — the single call site for column-mapping completions.

Wraps a LangChain chat model (OpenAI or Azure OpenAI) bound to JSON-object
response mode. Every failure mode at this boundary (provider error, timeout,
non-text content) surfaces as ExternalServiceError("llm", ...), so callers
never see provider-specific exception types.

Usage::

    client = LLMClient.from_settings(get_settings())
    completion = await client.complete(prompt)
    completion.content            # raw JSON text
    completion.prompt_tokens      # from the provider's usage metadata
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage

from catalog_pipeline.core.config import Settings
from catalog_pipeline.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pricing catalogue (public list prices, USD per 1K tokens)
# ---------------------------------------------------------------------------

# (input_price_per_1k, output_price_per_1k)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o":        (0.0025,  0.0100),
    "gpt-4o-mini":   (0.00015, 0.0006),
    "gpt-4-turbo":   (0.0100,  0.0300),
    "gpt-3.5-turbo": (0.0005,  0.0015),
}

_DEFAULT_PRICING = MODEL_PRICING["gpt-4o"]


def compute_cost(model: str, prompt_tokens: int, completion_tokens: int) -> Decimal:
    """USD cost of one call, as an exact Decimal."""
    price_in, price_out = MODEL_PRICING.get(model, _DEFAULT_PRICING)
    cost = (prompt_tokens / 1000.0 * price_in) + (completion_tokens / 1000.0 * price_out)
    return Decimal(str(round(cost, 9)))


@dataclass(frozen=True)
class LLMCompletion:
    content:           str
    model:             str
    prompt_tokens:     int = 0
    completion_tokens: int = 0

    @property
    def cost_usd(self) -> Decimal:
        return compute_cost(self.model, self.prompt_tokens, self.completion_tokens)


# ---------------------------------------------------------------------------
# LLMClient
# ---------------------------------------------------------------------------

class LLMClient:
    def __init__(
        self,
        chat_model: BaseChatModel,
        model_name: str,
        timeout_seconds: float = 60.0,
    ) -> None:
        # Closed-schema requests: the provider must answer with one JSON object
        self._llm = chat_model.bind(response_format={"type": "json_object"})
        self._model_name = model_name
        self._timeout = timeout_seconds

    @property
    def model_name(self) -> str:
        return self._model_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMClient":
        if settings.llm_provider == "azure_openai":
            from langchain_openai import AzureChatOpenAI
            chat_model: BaseChatModel = AzureChatOpenAI(
                azure_deployment=settings.azure_openai_deployment,
                azure_endpoint=settings.azure_openai_endpoint,
                api_key=settings.azure_openai_api_key,   # type: ignore[arg-type]
                api_version=settings.azure_openai_api_version,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
            )
        elif settings.llm_provider == "openai":
            from langchain_openai import ChatOpenAI
            chat_model = ChatOpenAI(
                model=settings.llm_model,
                api_key=settings.openai_api_key,   # type: ignore[arg-type]
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
            )
        else:
            raise ValueError(f"Unsupported llm_provider: {settings.llm_provider!r}")

        return cls(chat_model, settings.llm_model, settings.llm_timeout_seconds)

    async def complete(self, prompt: str) -> LLMCompletion:
        """
        Send one prompt and return the raw completion text plus usage.

        Raises:
            ExternalServiceError: provider failure, timeout or non-text reply.
        """
        t0 = time.perf_counter()
        try:
            message = await asyncio.wait_for(
                self._llm.ainvoke([HumanMessage(content=prompt)]),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("LLM timeout | model=%s timeout=%.0fs", self._model_name, self._timeout)
            raise ExternalServiceError("llm", f"timed out after {self._timeout:.0f}s") from exc
        except Exception as exc:
            logger.warning("LLM call failed | model=%s error=%s", self._model_name, exc)
            raise ExternalServiceError("llm", f"{type(exc).__name__}: {exc}") from exc

        if not isinstance(message.content, str):
            raise ExternalServiceError("llm", "completion content is not text")

        usage = getattr(message, "usage_metadata", None) or {}
        model = (getattr(message, "response_metadata", None) or {}).get("model_name") or self._model_name
        completion = LLMCompletion(
            content=message.content,
            model=model,
            prompt_tokens=int(usage.get("input_tokens", 0)),
            completion_tokens=int(usage.get("output_tokens", 0)),
        )
        logger.info(
            "LLM ok | model=%s prompt_tokens=%d completion_tokens=%d latency_ms=%.0f",
            completion.model, completion.prompt_tokens, completion.completion_tokens,
            (time.perf_counter() - t0) * 1000,
        )
        return completion
