"""Chat completion wrapper for the resolver's JSON-only prompts."""

import structlog

from shoespecs.core.openai_client import get_openai_client

logger = structlog.get_logger(__name__)


async def chat_completion_json(
    messages: list[dict],
    model: str,
    temperature: float = 0.0,
    max_tokens: int | None = None,
) -> str:
    """Run one JSON-object-mode completion and return the message text.

    Errors are logged and re-raised; the caller records them on the row.
    """
    client = get_openai_client()
    prompt_chars = sum(len(str(m.get("content") or "")) for m in messages)
    try:
        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
    except Exception as exc:
        logger.error(
            "llm.completion_failed",
            model=model,
            prompt_chars=prompt_chars,
            error_name=type(exc).__name__,
            error=str(exc)[:200],
        )
        raise

    content = (response.choices[0].message.content or "").strip()
    logger.info("llm.completion", model=model, prompt_chars=prompt_chars, response_chars=len(content))
    return content
