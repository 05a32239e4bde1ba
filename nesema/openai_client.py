"""
Streaming wrapper for the OpenAI Chat Completions API.

Behaviour hierarchy:
1. If USE_OFFLINE_MODEL is set, yield a deterministic placeholder without any
   external calls.
2. If OPENAI_API_KEY is missing, yield a configuration message.
3. Otherwise stream the real OpenAI response.

Failures after streaming has started are logged and close the stream with an
interruption marker so the client always receives a terminated body.
"""

from typing import Dict, Iterator, List, Optional, Sequence
import hashlib

import structlog

from nesema.config import get_settings

# ``openai`` is imported lazily only when needed to avoid constructing a client
# in offline deterministic mode.

logger = structlog.get_logger(__name__)

NOT_CONFIGURED_MESSAGE = "OPENAI_API_KEY is not configured. Please add it to your environment variables."
INTERRUPTED_MARKER = "\n[AI response interrupted]"


def is_configured() -> bool:
    settings = get_settings()
    return settings.use_offline_model or bool(settings.openai_api_key)


def _deterministic_placeholder(messages: List[Dict[str, str]]) -> str:
    """Return a deterministic placeholder string based on the message content."""
    joined = "\n".join(f"{m.get('role')}:{m.get('content','')}" for m in messages)
    h = hashlib.sha1(joined.encode("utf-8")).hexdigest()[:12]
    return f"Offline response ({h})"


def build_messages(system_prompt: str, history: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
    """Prefix chat *history* with the system prompt in OpenAI message format."""
    messages = [{"role": "system", "content": system_prompt}]
    for item in history:
        role = item.get("role") if item.get("role") in {"user", "assistant"} else "user"
        messages.append({"role": role, "content": str(item.get("content") or "")})
    return messages


def stream_completion(
    system_prompt: str,
    messages: Sequence[Dict[str, str]] | str,
    max_tokens: Optional[int] = None,
) -> Iterator[str]:
    """Yield text chunks for a chat completion.

    Args:
        system_prompt: System instructions for the model.
        messages: Either a single user message or a list of chat messages.
        max_tokens: Completion cap; defaults to ``AI_MAX_TOKENS``.
    """
    settings = get_settings()
    history = [{"role": "user", "content": messages}] if isinstance(messages, str) else list(messages)
    payload = build_messages(system_prompt, history)

    if settings.use_offline_model:
        yield _deterministic_placeholder(payload)
        return
    if not settings.openai_api_key:
        yield NOT_CONFIGURED_MESSAGE
        return

    try:
        import openai

        client = openai.OpenAI(api_key=settings.openai_api_key)
        stream = client.chat.completions.create(
            model=settings.ai_model,
            messages=payload,
            max_tokens=max_tokens or settings.ai_max_tokens,
            stream=True,
        )
        for chunk in stream:
            if not chunk.choices:
                continue
            text = chunk.choices[0].delta.content
            if text:
                yield text
    except Exception:  # pragma: no cover - network errors / SDK issues
        logger.exception("ai_stream_failed", model=settings.ai_model)
        yield INTERRUPTED_MARKER


__all__ = ["stream_completion", "build_messages", "is_configured", "NOT_CONFIGURED_MESSAGE"]
