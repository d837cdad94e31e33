"""
Core LLM factory.

Both chat passes (SQL generation and answer composition) build their model
here, driven by:
- settings.llm_provider
- settings.sql_llm_model / settings.answer_llm_model

NOTE:
- Provider aliases: "gemini" -> "google"
- "openai_compatible" targets any OpenAI wire-compatible endpoint via
  settings.llm_provider_url
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Union

from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from app.config import settings
from app.smart_logger import SmartLogger

LLMProvider = Literal["openai", "google", "openai_compatible"]
ChatModel = Union[ChatOpenAI, ChatGoogleGenerativeAI]


def _normalize_provider(value: str) -> LLMProvider:
    v = (value or "").strip().lower()
    if v in {"google", "gemini", "genai"}:
        return "google"
    if v in {"openai"}:
        return "openai"
    if v in {"openai_compatible", "openai-compatible", "openai_compat"}:
        return "openai_compatible"
    raise ValueError(
        "Unsupported llm_provider={!r}. Allowed: 'openai', 'google' (alias: 'gemini'), "
        "'openai_compatible'.".format(value)
    )


def _filter_init_kwargs(cls: type, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pass only the kwargs the installed LangChain model class accepts.
    """
    # Pydantic-based models list their init keys as model fields; their
    # __init__ is just (**data), so the signature alone is not enough.
    model_fields = getattr(cls, "model_fields", None)
    if isinstance(model_fields, dict) and model_fields:
        allowed = set(model_fields.keys())
        return {k: v for k, v in kwargs.items() if k in allowed and v is not None}

    try:
        sig = inspect.signature(cls.__init__)
    except (TypeError, ValueError):
        return {k: v for k, v in kwargs.items() if v is not None}
    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
        return {k: v for k, v in kwargs.items() if v is not None}
    allowed = set(sig.parameters.keys())
    return {k: v for k, v in kwargs.items() if k in allowed and v is not None}


def _require_api_key(*, provider: LLMProvider) -> str:
    if provider == "openai":
        key = (settings.openai_api_key or "").strip()
        if not key or key.lower() == "dummy":
            raise ValueError("OPENAI_API_KEY is missing (llm_provider=openai)")
        return key
    if provider == "openai_compatible":
        # Dedicated key first, OPENAI_API_KEY as fallback
        key = (settings.openai_compatible_api_key or "").strip() or (settings.openai_api_key or "").strip()
        if not key or key.lower() == "dummy":
            raise ValueError("OPENAI_COMPATIBLE_API_KEY is missing (llm_provider=openai_compatible)")
        return key
    key = (settings.google_api_key or "").strip()
    if not key or key.lower() == "dummy":
        raise ValueError("GOOGLE_API_KEY is missing (llm_provider=google)")
    return key


@dataclass(frozen=True)
class LLMHandle:
    llm: ChatModel
    provider: LLMProvider
    model: str


def create_llm(
    *,
    purpose: str,
    model: str,
    temperature: float = 0.0,
    max_output_tokens: Optional[int] = None,
    provider: Optional[str] = None,
    provider_url: Optional[str] = None,
) -> LLMHandle:
    """
    Create a LangChain chat model for one chat pass.

    Args:
        purpose: for logging/diagnostics (not used for routing)
        model: fixed model identifier for the pass
        provider/provider_url: override settings.llm_provider/llm_provider_url
    """
    prov: LLMProvider = _normalize_provider(provider or settings.llm_provider)
    mdl = (model or "").strip()
    if not mdl:
        raise ValueError(f"model is empty (purpose={purpose})")

    if prov in {"openai", "openai_compatible"}:
        api_key = _require_api_key(provider=prov)
        base_url = (provider_url if provider_url is not None else settings.llm_provider_url or "").strip()
        if prov == "openai_compatible" and not base_url:
            raise ValueError("llm_provider_url is required when llm_provider=openai_compatible")
        raw_kwargs: Dict[str, Any] = {
            # Both legacy and current names; _filter_init_kwargs keeps the supported ones
            "model": mdl,
            "model_name": mdl,
            "api_key": api_key,
            "openai_api_key": api_key,
            "temperature": float(temperature),
            "max_tokens": int(max_output_tokens) if max_output_tokens is not None else None,
            "base_url": base_url or None,
            "openai_api_base": base_url or None,
        }
        llm = ChatOpenAI(**_filter_init_kwargs(ChatOpenAI, raw_kwargs))
        SmartLogger.log(
            "INFO",
            "llm.created",
            category="core.llm",
            params={"provider": prov, "model": mdl, "base_url": base_url or None, "purpose": purpose},
            max_inline_chars=500,
        )
        return LLMHandle(llm=llm, provider=prov, model=mdl)

    # google
    api_key = _require_api_key(provider=prov)
    raw_kwargs = {
        "model": mdl,
        "google_api_key": api_key,
        "temperature": float(temperature),
        "max_output_tokens": int(max_output_tokens) if max_output_tokens is not None else None,
    }
    llm = ChatGoogleGenerativeAI(**_filter_init_kwargs(ChatGoogleGenerativeAI, raw_kwargs))
    SmartLogger.log(
        "INFO",
        "llm.created",
        category="core.llm",
        params={"provider": prov, "model": mdl, "purpose": purpose},
        max_inline_chars=500,
    )
    return LLMHandle(llm=llm, provider=prov, model=mdl)
