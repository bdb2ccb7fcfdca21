"""Ollama local judge provider (OpenAI-compatible API)."""

import logging
import os

from leadpipe.llm.base import LLMProvider
from leadpipe.llm.openai import _chat_messages

logger = logging.getLogger(__name__)

_OLLAMA_BASE_URL = "http://localhost:11434/v1"


class OllamaProvider(LLMProvider):
    """Judge provider using a local Ollama instance via OpenAI-compatible API."""

    @property
    def provider_id(self) -> str:
        return "ollama"

    @property
    def default_model(self) -> str:
        return "llama3"

    @property
    def env_var(self) -> None:
        return None

    def complete(
        self,
        prompt: str,
        model: str | None = None,
        *,
        system: str | None = None,
        max_tokens: int = 500,
    ) -> str:
        try:
            import openai
        except ImportError:
            msg = (
                "openai is required for Ollama (OpenAI-compatible API). "
                "Install with: pip install 'lead-enrichment-pipeline[openai]'"
            )
            raise ImportError(msg) from None

        base_url = os.environ.get("OLLAMA_BASE_URL", _OLLAMA_BASE_URL)
        client = openai.OpenAI(base_url=base_url, api_key="ollama")
        use_model = model or self.default_model

        logger.debug("Sending judge prompt to Ollama (%s)", use_model)
        response = client.chat.completions.create(
            model=use_model,
            max_tokens=max_tokens,
            messages=_chat_messages(prompt, system),
        )

        return response.choices[0].message.content or ""
