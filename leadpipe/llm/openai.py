"""OpenAI judge provider."""

import logging

from leadpipe.llm.base import LLMProvider

logger = logging.getLogger(__name__)


def _chat_messages(prompt: str, system: str | None) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system}] if system is not None else []
    messages.append({"role": "user", "content": prompt})
    return messages


class OpenAIProvider(LLMProvider):
    """Judge provider using the OpenAI chat completions API."""

    @property
    def provider_id(self) -> str:
        return "openai"

    @property
    def default_model(self) -> str:
        return "gpt-4o-mini"

    @property
    def env_var(self) -> str:
        return "OPENAI_API_KEY"

    def complete(
        self,
        prompt: str,
        model: str | None = None,
        *,
        system: str | None = None,
        max_tokens: int = 500,
    ) -> str:
        api_key = self._require_api_key()

        try:
            import openai
        except ImportError:
            msg = (
                "openai is required for this judge provider. "
                "Install with: pip install 'lead-enrichment-pipeline[openai]'"
            )
            raise ImportError(msg) from None

        client = openai.OpenAI(api_key=api_key)
        use_model = model or self.default_model

        logger.debug("Sending judge prompt to OpenAI API (%s)", use_model)
        response = client.chat.completions.create(
            model=use_model,
            max_tokens=max_tokens,
            messages=_chat_messages(prompt, system),
        )

        return response.choices[0].message.content or ""
