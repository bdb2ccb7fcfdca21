"""Abstract base class for judge providers."""

import os
from abc import ABC, abstractmethod

from leadpipe.core.errors import ConfigurationError


class LLMProvider(ABC):
    """Base class that every judge provider must implement.

    ``complete`` is blocking; async callers run it in a worker thread.
    """

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Unique identifier for this provider (e.g. 'anthropic')."""

    @abstractmethod
    def complete(
        self,
        prompt: str,
        model: str | None = None,
        *,
        system: str | None = None,
        max_tokens: int = 500,
    ) -> str:
        """Send a prompt to the model and return the raw response text.

        Args:
            prompt: The user message.
            model: Override the provider's default model. None uses default.
            system: Optional system prompt.
            max_tokens: Upper bound on the response length.

        Returns:
            Raw text response from the model.
        """

    @property
    @abstractmethod
    def default_model(self) -> str:
        """The default model ID used when no override is specified."""

    @property
    @abstractmethod
    def env_var(self) -> str | None:
        """Environment variable name for the API key, or None if not needed."""

    def _require_api_key(self) -> str:
        env_var = self.env_var
        api_key = os.environ.get(env_var) if env_var else None
        if not api_key:
            msg = f"{env_var} environment variable is required"
            raise ConfigurationError(msg)
        return api_key
