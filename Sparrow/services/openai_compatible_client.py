import os
from dataclasses import dataclass
from typing import Dict, Optional

from openai import AsyncOpenAI

from Sparrow.services.model_catalog import resolve_original_id

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# Bring-your-own-key providers, checked in this order after OpenRouter
_PROVIDER_CFG: Dict[str, Dict[str, object]] = {
    "anthropic": {"base_url": "https://api.anthropic.com/v1/", "markers": ("claude", "anthropic")},
    "google": {"base_url": "https://generativelanguage.googleapis.com/v1beta/openai/", "markers": ("gemini", "google")},
    "openai": {"base_url": None, "markers": ("openai",)},
}


@dataclass(frozen=True)
class ProviderSelection:
    provider: str            # "default" (system OpenRouter key) or the BYOK provider name
    api_key: Optional[str]
    base_url: Optional[str]
    model: str

    @property
    def is_byok(self) -> bool:
        return self.provider != "default"


def _clean_key(value: Optional[str]) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


# Pick the upstream endpoint for a request; never fails, falls back to the system OpenRouter key
def select_provider(
    model: Optional[str],
    *,
    openrouter_api_key: Optional[str] = None,
    openai_api_key: Optional[str] = None,
    anthropic_api_key: Optional[str] = None,
    google_api_key: Optional[str] = None,
) -> ProviderSelection:
    model_id = model or ""
    model_l = model_id.lower()

    openrouter_key = _clean_key(openrouter_api_key)
    if openrouter_key:
        return ProviderSelection("openrouter", openrouter_key, OPENROUTER_BASE_URL, model_id)

    byok_keys = {
        "anthropic": _clean_key(anthropic_api_key),
        "google": _clean_key(google_api_key),
        "openai": _clean_key(openai_api_key),
    }
    for provider, cfg in _PROVIDER_CFG.items():
        key = byok_keys[provider]
        if key and any(marker in model_l for marker in cfg["markers"]):
            return ProviderSelection(provider, key, cfg["base_url"], resolve_original_id(model_id))

    return ProviderSelection("default", os.getenv("OPENROUTER_API_KEY"), OPENROUTER_BASE_URL, model_id)


# Create an async OpenAI-compatible client for a provider selection
def get_async_openai_compatible_client(selection: ProviderSelection) -> AsyncOpenAI:
    if not selection.api_key:
        raise ValueError(f"Missing API key for provider '{selection.provider}'. Set OPENROUTER_API_KEY.")

    kwargs = {"api_key": selection.api_key}
    if selection.base_url:
        kwargs["base_url"] = selection.base_url
    return AsyncOpenAI(**kwargs)


# Client on the system OpenRouter key, used for side-calls such as title generation
def get_system_openrouter_client() -> AsyncOpenAI:
    return get_async_openai_compatible_client(
        ProviderSelection("default", os.getenv("OPENROUTER_API_KEY"), OPENROUTER_BASE_URL, "")
    )


# Client on the system OpenAI key (Responses API and file uploads for image generation)
def get_system_openai_client() -> AsyncOpenAI:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ValueError("Missing API key for provider 'openai'. Set OPENAI_API_KEY.")
    return AsyncOpenAI(api_key=api_key)
