"""Provider registry and discovery."""

from typing import Type
from .base import TranscriptProvider

DEFAULT_FORMAT = "codex"

# Registry of all available providers
_PROVIDERS: dict[str, Type[TranscriptProvider]] = {}


def register_provider(provider_class: Type[TranscriptProvider]) -> Type[TranscriptProvider]:
    """Decorator to register a provider class."""
    _PROVIDERS[provider_class.name] = provider_class
    return provider_class


def get_provider(name: str) -> TranscriptProvider | None:
    """Get an instance of a provider by name."""
    provider_class = _PROVIDERS.get(name)
    if provider_class:
        return provider_class()
    return None


def get_all_providers() -> list[TranscriptProvider]:
    """Get instances of all registered providers."""
    return [cls() for cls in _PROVIDERS.values()]


def provider_names() -> list[str]:
    return sorted(_PROVIDERS)


# Import providers to trigger registration
from . import codex  # noqa: F401, E402
from . import claude_code  # noqa: F401, E402
