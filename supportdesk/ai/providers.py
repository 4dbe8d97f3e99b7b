"""Credential resolution for LLM providers."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderCredentials:
    """Container for credentials resolved for a provider."""

    provider: str
    api_key: str | None
    base_url: str | None = None
    organization: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


class ProviderRegistry:
    """Resolve provider credentials from explicit overrides or the environment."""

    _ENV_KEYS: Mapping[str, tuple[str, str | None]] = {
        # provider -> (api key variable, base url variable)
        "openai": ("OPENAI_API_KEY", "OPENAI_BASE_URL"),
    }

    def __init__(self, overrides: Mapping[str, Mapping[str, str]] | None = None):
        self._overrides = {k.lower(): dict(v) for k, v in (overrides or {}).items()}

    def get_credentials(self, provider: str) -> ProviderCredentials:
        """Return credentials for ``provider``.

        Overrides injected at construction win over environment variables so
        tests never depend on the host's configuration.
        """

        key = provider.lower()
        if key in self._overrides:
            override = self._overrides[key]
            return ProviderCredentials(
                provider=key,
                api_key=override.get("api_key"),
                base_url=override.get("base_url"),
                organization=override.get("organization"),
            )
        if key not in self._ENV_KEYS:
            raise ValueError(f"Unsupported LLM provider: {provider}")
        api_var, url_var = self._ENV_KEYS[key]
        return ProviderCredentials(
            provider=key,
            api_key=os.getenv(api_var) or None,
            base_url=(os.getenv(url_var) or None) if url_var else None,
            organization=(os.getenv("OPENAI_ORG_ID") or None) if key == "openai" else None,
        )

    def supported_providers(self) -> list[str]:
        return sorted(set(self._ENV_KEYS) | set(self._overrides))
