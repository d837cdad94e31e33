"""Upstream LLM token stream -> outbound text stream"""
from __future__ import annotations

from typing import Any, AsyncIterable, AsyncIterator, Callable, List

from app.smart_logger import SmartLogger


def llm_content_to_text(content: Any) -> str:
    """
    Normalize LangChain message (chunk) content to plain text.
    Gemini may emit dict/list parts (including 'thinking'); only 'text' is kept.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return str(content.get("text") or "") if content.get("type", "text") == "text" else ""
    if isinstance(content, list):
        return "".join(llm_content_to_text(part) for part in content)
    return str(content)


def chunk_to_delta(chunk: Any) -> str:
    """Incremental text of one streamed chunk. Whitespace-only deltas are kept."""
    if isinstance(chunk, str):
        return chunk
    if isinstance(chunk, dict):
        # OpenAI wire format: {"choices": [{"delta": {"content": "..."}}]}
        choices = chunk.get("choices") or []
        if not choices:
            return ""
        delta = (choices[0] or {}).get("delta") or {}
        return llm_content_to_text(delta.get("content"))
    text = llm_content_to_text(getattr(chunk, "content", None))
    if text:
        return text
    text_attr = getattr(chunk, "text", None)
    return text_attr if isinstance(text_attr, str) else ""


def response_to_text(response: Any) -> str:
    """Full text of a non-streaming completion"""
    return llm_content_to_text(getattr(response, "content", response))


async def transform_stream(
    upstream: AsyncIterable[Any],
    *,
    on_end: Callable[[str], None],
    extract: Callable[[Any], str] = chunk_to_delta,
    category: str = "chat.stream",
) -> AsyncIterator[str]:
    """
    Forward each non-empty delta as soon as it arrives; once the upstream is
    exhausted, hand the joined text to ``on_end``.

    An upstream error is logged and re-raised; ``on_end`` is not called then.
    """
    accumulated: List[str] = []
    chunk_count = 0
    try:
        async for chunk in upstream:
            chunk_count += 1
            delta = extract(chunk)
            if not delta:
                continue
            accumulated.append(delta)
            yield delta
    except Exception as exc:
        SmartLogger.log(
            "ERROR",
            "chat.stream.upstream_error",
            category=category,
            params={"error": str(exc), "chunks": chunk_count, "chars": sum(map(len, accumulated))},
        )
        raise

    final_text = "".join(accumulated)
    SmartLogger.log(
        "INFO",
        "chat.stream.completed",
        category=category,
        params={"chunks": chunk_count, "chars": len(final_text)},
    )
    on_end(final_text)
