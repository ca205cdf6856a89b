from __future__ import annotations

import os
from typing import Any, List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

_PLACEHOLDER_KEYS = {"dummy", "test", "placeholder", "changeme", "default_key"}

DEFAULT_GEN_MODEL = "gemini-2.5-flash"
DEFAULT_REPAIR_MODEL = "gemini-2.5-pro"
DEFAULT_OPENAI_MODELS = "gpt-4o-mini,gpt-4o"


def _is_placeholder_key(value: Optional[str]) -> bool:
    if not value:
        return True
    return value.strip().lower() in _PLACEHOLDER_KEYS


def openai_model_chain() -> List[str]:
    raw = os.getenv("TRANSFORM_OPENAI_MODELS", DEFAULT_OPENAI_MODELS)
    return [m.strip() for m in raw.split(",") if m.strip()]


def init_generator_llm(
    api_key: Optional[str] = None,
    provider: Optional[str] = None,
) -> Tuple[str, Any, Optional[str]]:
    """
    Returns (provider, client, warning).
    provider: "gemini" | "openai" | "none".
    For gemini the client is the configured `google.generativeai` module;
    models are built per call so generation and repair can use different ones.
    """
    requested = (provider or os.getenv("TRANSFORM_LLM_PROVIDER") or "").strip().lower()

    google_key = api_key if requested == "gemini" and api_key else (
        os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
    )
    if requested in {"", "gemini"} and google_key and not _is_placeholder_key(google_key):
        import google.generativeai as genai

        genai.configure(api_key=google_key)
        return "gemini", genai, None

    openai_key = api_key if requested == "openai" and api_key else os.getenv("TRANSFORM_OPENAI_API_KEY")
    if requested in {"", "openai"} and openai_key and not _is_placeholder_key(openai_key):
        from openai import OpenAI

        base_url = os.getenv("TRANSFORM_OPENAI_BASE_URL") or None
        client = OpenAI(api_key=openai_key, base_url=base_url, timeout=None)
        return "openai", client, None

    return "none", None, "No LLM API key configured (GOOGLE_API_KEY / TRANSFORM_OPENAI_API_KEY)."
