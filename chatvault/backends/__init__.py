"""
Model backends for chatvault.
A backend turns a message list + system prompt into a stream of fragments.
"""
from chatvault.backends.base import BaseBackend
from chatvault.backends.anthropic import AnthropicBackend
from chatvault.backends.retry_wrapper import RetryableBackendWrapper

PROVIDERS = {
    "anthropic": AnthropicBackend,
}


def make_backend(backend_cfg: dict) -> BaseBackend:
    """Build the configured backend, wrapped with retries if max_retries > 0."""
    provider = backend_cfg.get("provider", "anthropic")
    cls = PROVIDERS.get(provider)
    if cls is None:
        raise ValueError(f"Unknown backend provider: {provider!r}")

    backend = cls(
        name=backend_cfg.get("name", provider),
        url=backend_cfg["url"],
        api_key=backend_cfg.get("api_key", ""),
        model=backend_cfg["model"],
        anthropic_version=backend_cfg.get("anthropic_version", "2023-06-01"),
        max_tokens=backend_cfg.get("max_tokens", 8192),
        temperature=backend_cfg.get("temperature", 0.3),
        top_p=backend_cfg.get("top_p", 1.0),
        timeout=backend_cfg.get("timeout", 120),
    )
    max_retries = backend_cfg.get("max_retries", 0)
    if max_retries > 0:
        return RetryableBackendWrapper(backend, max_retries=max_retries)
    return backend


__all__ = [
    "BaseBackend",
    "AnthropicBackend",
    "RetryableBackendWrapper",
    "make_backend",
]
