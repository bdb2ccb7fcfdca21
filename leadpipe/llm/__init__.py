"""Judge provider registry with lazy loading.

Usage:
    from leadpipe.llm import get_provider

    provider = get_provider("anthropic")
    raw = provider.complete(prompt, system=JUDGE_SYSTEM_PROMPT)
"""

import importlib

from leadpipe.llm.base import LLMProvider

__all__ = ["LLMProvider", "available_providers", "get_provider"]

# Lazy registry: maps provider name → (module_path, class_name)
_REGISTRY: dict[str, tuple[str, str]] = {
    "anthropic": ("leadpipe.llm.anthropic", "AnthropicProvider"),
    "openai": ("leadpipe.llm.openai", "OpenAIProvider"),
    "gemini": ("leadpipe.llm.gemini", "GeminiProvider"),
    "ollama": ("leadpipe.llm.ollama", "OllamaProvider"),
}


def get_provider(name: str) -> LLMProvider:
    """Instantiate and return a judge provider by name.

    Args:
        name: Provider identifier (anthropic, openai, gemini, ollama).

    Returns:
        An LLMProvider instance. Credentials are checked on first call,
        not here.

    Raises:
        ValueError: If the provider name is unknown.
    """
    if name not in _REGISTRY:
        valid = ", ".join(sorted(_REGISTRY))
        msg = f"Unknown LLM provider '{name}'. Available: {valid}"
        raise ValueError(msg)

    module_path, class_name = _REGISTRY[name]
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)
    return cls()  # type: ignore[no-any-return]


def available_providers() -> list[str]:
    """Return sorted list of registered provider names."""
    return sorted(_REGISTRY)
