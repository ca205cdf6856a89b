import logging
from typing import Any, Dict, Iterable, List, Tuple


def _response_text(response: Any) -> str:
    choices = getattr(response, "choices", None) if response is not None else None
    if not choices:
        return ""
    msg = getattr(choices[0], "message", None)
    content = getattr(msg, "content", None) if msg is not None else None
    return content if isinstance(content, str) else ""


def _unique_models(model_chain: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for model in model_chain or []:
        name = (model or "").strip()
        if name and name not in seen:
            seen.add(name)
            ordered.append(name)
    return ordered


def call_chat_with_fallback(
    llm_client: Any,
    messages: List[Dict[str, str]],
    model_chain: Iterable[str],
    *,
    call_kwargs: Dict[str, Any],
    logger: logging.Logger | None,
    context_tag: str,
) -> Tuple[Any, str]:
    """
    Tries each model of the chain in order and returns (response, model) for the
    first one that produces non-empty text. Re-raises the last error when every
    model fails.
    """
    models = _unique_models(model_chain)
    if not models:
        raise ValueError("No models provided for fallback.")
    last_exc: Exception | None = None
    for model in models:
        try:
            response = llm_client.chat.completions.create(
                model=model,
                messages=messages,
                **(call_kwargs or {}),
            )
            if not _response_text(response).strip():
                raise ValueError("EMPTY_COMPLETION")
            return response, model
        except Exception as exc:
            last_exc = exc
            message = (
                f"LLM_FALLBACK_WARNING context={context_tag} model={model} "
                f"error={type(exc).__name__} message={str(exc)[:200]}"
            )
            if logger:
                logger.warning(message)
            else:
                print(message)
    raise last_exc
