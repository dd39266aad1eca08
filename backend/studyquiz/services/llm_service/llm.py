"""LLM provider factory and the streaming model invoker.

Usage:
    from studyquiz.services.llm_service.llm import ModelInvoker

    invoker = ModelInvoker()
    text = await invoker.invoke(
        system_prompt,
        [{"role": "user", "content": "Hello"}],
        temperature=0.2,
    )
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import warnings

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_nvidia_ai_endpoints import ChatNVIDIA
from langchain_ollama import ChatOllama

from studyquiz.core.config import settings
from studyquiz.core.errors import ModelUnavailableError

logger = logging.getLogger(__name__)

# Suppress warnings
warnings.simplefilter("ignore", UserWarning)

# ── Provider registry ─────────────────────────────────────────

_PROVIDERS: Dict[str, Callable[..., BaseChatModel]] = {}

# ── LLM instance cache (keyed on provider + temperature) ──────
_llm_cache: Dict[tuple, BaseChatModel] = {}
_LLM_CACHE_MAX = 16


def _register_providers():
    """Build the provider map lazily (called once on first ``get_chat_model``)."""
    if _PROVIDERS:
        return

    _PROVIDERS["ANTHROPIC"] = _build_anthropic
    _PROVIDERS["OLLAMA"] = _build_ollama
    _PROVIDERS["GOOGLE"] = _build_google
    _PROVIDERS["NVIDIA"] = _build_nvidia


# ── Builder functions ─────────────────────────────────────────


def _common_kwargs(temperature: float, max_tokens: Optional[int] = None) -> dict:
    """Shared kwargs for all providers."""
    kwargs = {
        "temperature": temperature,
        "timeout": settings.LLM_TIMEOUT,
    }
    if max_tokens:
        kwargs["max_tokens"] = max_tokens
    return kwargs


def _build_anthropic(temperature: float, max_tokens: Optional[int] = None):
    """Build Anthropic Claude client."""
    kw = _common_kwargs(temperature, max_tokens)
    kw.update(
        model=settings.ANTHROPIC_MODEL,
        api_key=settings.ANTHROPIC_API_KEY,
        streaming=True,
    )
    return ChatAnthropic(**kw)


def _build_ollama(temperature: float, max_tokens: Optional[int] = None):
    """Build Ollama client."""
    kw = _common_kwargs(temperature)
    kw["model"] = settings.OLLAMA_MODEL
    # Ollama names the output cap num_predict
    if max_tokens:
        kw["num_predict"] = max_tokens
    return ChatOllama(**kw)


def _build_google(temperature: float, max_tokens: Optional[int] = None):
    """Build Google Gemini client."""
    kw = _common_kwargs(temperature, max_tokens)
    kw.update(
        model=settings.GOOGLE_MODEL,
        google_api_key=settings.GOOGLE_API_KEY,
    )
    return ChatGoogleGenerativeAI(**kw)


def _build_nvidia(temperature: float, max_tokens: Optional[int] = None):
    """Build NVIDIA client."""
    kw = _common_kwargs(temperature, max_tokens)
    kw.update(
        model=settings.NVIDIA_MODEL,
        api_key=settings.NVIDIA_API_KEY,
        streaming=True,
        model_kwargs={"chat_template_kwargs": {"thinking": False}},  # disable 'thinking'
    )
    return ChatNVIDIA(**kw)


# ── Public API ────────────────────────────────────────────────


def get_chat_model(temperature: float, provider: Optional[str] = None) -> BaseChatModel:
    """Return a cached LangChain chat model for *temperature*.

    Args:
        temperature: Sampling temperature fixed by the call site.
        provider: Override the configured ``LLM_PROVIDER``.
    """
    _register_providers()

    active_provider = (provider or settings.LLM_PROVIDER).upper()
    builder = _PROVIDERS.get(active_provider)
    if builder is None:
        raise ValueError(f"Unknown LLM provider {active_provider!r}")

    cache_key = (active_provider, temperature, settings.LLM_MAX_TOKENS)
    cached = _llm_cache.get(cache_key)
    if cached is not None:
        return cached

    instance = builder(temperature=temperature, max_tokens=settings.LLM_MAX_TOKENS)
    if len(_llm_cache) >= _LLM_CACHE_MAX:
        _llm_cache.pop(next(iter(_llm_cache)))
    _llm_cache[cache_key] = instance
    return instance


def _to_messages(system_prompt: str, history: Sequence[Mapping[str, str]]) -> List[BaseMessage]:
    messages: List[BaseMessage] = [SystemMessage(content=system_prompt)]
    for turn in history:
        role = turn["role"]
        if role == "user":
            messages.append(HumanMessage(content=turn["content"]))
        elif role == "assistant":
            messages.append(AIMessage(content=turn["content"]))
        else:
            raise ValueError(f"Unsupported conversation role {role!r}")
    return messages


def _chunk_text(content: Any) -> str:
    """Text of one streamed chunk; some providers stream content blocks."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type", "text") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class ModelInvoker:
    """One streaming chat completion per ``invoke`` call.

    The model factory is injected so the app lifespan builds one invoker and
    tests can hand in a fake chat model. No retry happens here.
    """

    def __init__(self, model_factory: Optional[Callable[[float], BaseChatModel]] = None):
        self._model_factory = model_factory or get_chat_model

    async def invoke(
        self,
        system_prompt: str,
        history: Sequence[Mapping[str, str]],
        temperature: float,
    ) -> str:
        """Stream a completion for *history* and return the accumulated text.

        Raises:
            ModelUnavailableError: the provider call failed or timed out.
        """
        messages = _to_messages(system_prompt, history)
        try:
            llm = self._model_factory(temperature)
            chunks: List[str] = []
            async for chunk in llm.astream(messages):
                chunks.append(_chunk_text(chunk.content))
        except Exception as exc:
            logger.error("LLM stream failed: %s: %s", type(exc).__name__, exc)
            raise ModelUnavailableError(str(exc)) from exc

        text = "".join(chunks)
        logger.debug("LLM stream finished: %d chars, %d turns", len(text), len(history))
        return text
