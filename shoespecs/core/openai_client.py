"""AsyncOpenAI client used by the ambiguity resolver.

Created on first use so the runner and the per-article children never need
an API key.
"""

from openai import AsyncOpenAI

from shoespecs.core.config import require_llm_settings, settings

_openai_client: AsyncOpenAI | None = None


def get_openai_client() -> AsyncOpenAI:
    global _openai_client
    if _openai_client is None:
        require_llm_settings(settings)
        # Retries are left to the sweep: a failed call is recorded on the row.
        _openai_client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.RESOLVER_CALL_TIMEOUT,
            max_retries=0,
        )
    return _openai_client
