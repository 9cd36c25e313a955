from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ModelInfo:
    id: str            # gateway (OpenRouter) id the client sends
    original_id: str   # provider-native id, used with a provider-specific key
    premium: bool = False


MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("openai/gpt-4o-mini", "gpt-4o-mini"),
    ModelInfo("openai/gpt-4.1", "gpt-4.1", premium=True),
    ModelInfo("openai/o4-mini", "o4-mini", premium=True),
    ModelInfo("openai/gpt-image-1", "gpt-image-1"),
    ModelInfo("anthropic/claude-3.5-haiku", "claude-3-5-haiku-20241022"),
    ModelInfo("anthropic/claude-sonnet-4", "claude-sonnet-4-20250514", premium=True),
    ModelInfo("google/gemini-2.0-flash-001", "gemini-2.0-flash"),
    ModelInfo("google/gemini-2.5-pro", "gemini-2.5-pro", premium=True),
    ModelInfo("meta-llama/llama-4-maverick", "llama-4-maverick"),
    ModelInfo("deepseek/deepseek-chat-v3-0324", "deepseek-chat"),
)

IMAGE_GENERATION_MODEL = "openai/gpt-image-1"
TITLE_MODEL = "google/gemini-2.0-flash-001"

_BY_ID = {m.id: m for m in MODELS}


def find_model(model_id: Optional[str]) -> Optional[ModelInfo]:
    if not model_id:
        return None
    return _BY_ID.get(model_id)


def is_premium(model_id: Optional[str]) -> bool:
    info = find_model(model_id)
    return bool(info and info.premium)


# Provider-native alias for a gateway id; unknown ids pass through unchanged
def resolve_original_id(model_id: str) -> str:
    info = find_model(model_id)
    return info.original_id if info else model_id
