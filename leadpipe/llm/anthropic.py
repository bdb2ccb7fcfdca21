"""Anthropic Claude judge provider."""

import logging

from leadpipe.llm.base import LLMProvider

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Judge provider using the Anthropic Messages API."""

    @property
    def provider_id(self) -> str:
        return "anthropic"

    @property
    def default_model(self) -> str:
        return "claude-3-5-haiku-latest"

    @property
    def env_var(self) -> str:
        return "ANTHROPIC_API_KEY"

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
            import anthropic
        except ImportError:
            msg = (
                "anthropic is required for AI qualification. "
                "Install with: pip install lead-enrichment-pipeline"
            )
            raise ImportError(msg) from None

        client = anthropic.Anthropic(api_key=api_key)
        use_model = model or self.default_model

        logger.debug("Sending judge prompt to Anthropic API (%s)", use_model)
        kwargs = {"system": system} if system is not None else {}
        message = client.messages.create(
            model=use_model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            **kwargs,
        )

        return "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )
