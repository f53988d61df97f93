"""
Provider routing.

The router maps a ``ModelConfig.provider`` name to the ``Provider`` that
knows that vendor's wire format.  It holds no per-request state.
"""

from __future__ import annotations

from chatloop.llm.providers.base import Provider


class ProviderRouter:
    """Registry of providers keyed by name."""

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register_provider(self, provider: Provider, name: str | None = None) -> None:
        """Register *provider* under *name* (defaults to ``provider.name``).  Overwrites any existing entry."""
        self._providers[name or provider.name] = provider

    def get(self, name: str) -> Provider:
        """
        Return the provider registered as *name*.

        Raises ``KeyError`` if *name* has not been registered.
        """
        if name not in self._providers:
            raise KeyError(
                f"Unknown provider {name!r}. "
                f"Registered: {list(self._providers)}"
            )
        return self._providers[name]

    @property
    def provider_names(self) -> list[str]:
        """Return the list of registered provider names."""
        return list(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers
