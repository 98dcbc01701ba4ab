"""
Text-completion capability used by AI-powered healing.

The orchestrator only depends on ``CompletionClient.complete(prompt)``. The
default implementation talks to a crewai ``LLM`` (online models through
LiteLLM) or a langchain-ollama ``OllamaLLM`` (local models). Retries are the
orchestrator's job, so the client never retries and never raises.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from crewai.llm import LLM
from langchain_ollama import OllamaLLM

from ..core.healing_utils import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of one completion call."""
    ok: bool
    text: str = ""
    error: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def success(cls, text: str, prompt_tokens: int, completion_tokens: int) -> 'CompletionResult':
        return cls(ok=True, text=text, prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)

    @classmethod
    def failure(cls, error: str, prompt_tokens: int = 0) -> 'CompletionResult':
        return cls(ok=False, error=error, prompt_tokens=prompt_tokens)


class CompletionClient(Protocol):
    def complete(self, prompt: str) -> CompletionResult:
        ...


def get_llm(model_provider: str, model_name: str, api_key: Optional[str] = None):
    """
    Create the underlying model handle.

    Args:
        model_provider: "local" for Ollama, "online" for Gemini
        model_name: Model identifier (e.g., "llama3", "gemini/gemini-2.5-flash")
        api_key: API key for online models (optional, can use env var)

    Returns:
        OllamaLLM or crewai LLM instance
    """
    if model_provider == "local":
        logger.info(f"🤖 Creating OllamaLLM for model: {model_name}")
        return OllamaLLM(model=model_name)

    logger.info(f"🤖 Creating LLM for model: {model_name}")
    return LLM(
        api_key=api_key or os.getenv("GEMINI_API_KEY"),
        model=f"{model_name}",
        num_retries=0
    )


class LLMCompletionClient:
    """CompletionClient over a crewai LLM or an OllamaLLM."""

    def __init__(self, llm: Any, model_name: str = ""):
        self.llm = llm
        self.model_name = model_name

    def complete(self, prompt: str) -> CompletionResult:
        prompt_tokens = estimate_tokens(prompt)
        start = time.time()
        try:
            if isinstance(self.llm, OllamaLLM):
                response = self.llm.invoke(prompt)
            else:
                response = self.llm.call(prompt)
        except Exception as e:
            logger.warning(f"⚠️ Completion call to {self.model_name or 'model'} failed: {e}")
            return CompletionResult.failure(f"{type(e).__name__}: {e}", prompt_tokens)

        text = response if isinstance(response, str) else str(getattr(response, "content", response) or "")
        if not text.strip():
            return CompletionResult.failure("Empty completion", prompt_tokens)

        logger.debug(f"Completion from {self.model_name or 'model'} in {time.time() - start:.2f}s "
                     f"({len(text)} chars)")
        return CompletionResult.success(text, prompt_tokens, estimate_tokens(text))


def create_completion_client(settings) -> Optional[LLMCompletionClient]:
    """
    Build the completion client from application settings.

    Returns None when AI healing is disabled or an online provider has no API key.
    """
    if not getattr(settings, "AI_HEALING_ENABLED", True):
        logger.info("AI healing disabled; only rule-based and fallback repairs are available")
        return None

    if settings.MODEL_PROVIDER == "local":
        return LLMCompletionClient(get_llm("local", settings.LOCAL_MODEL), settings.LOCAL_MODEL)

    api_key = settings.GEMINI_API_KEY or os.getenv("GEMINI_API_KEY")
    if not api_key:
        logger.warning("⚠️ GEMINI_API_KEY not set; AI healing unavailable")
        return None
    return LLMCompletionClient(get_llm("online", settings.ONLINE_MODEL, api_key), settings.ONLINE_MODEL)
