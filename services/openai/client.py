import os
import threading
from typing import Optional

from openai import AsyncOpenAI

_client: Optional[AsyncOpenAI] = None
_client_lock = threading.Lock()


def get_openai_client() -> AsyncOpenAI:
    """
    Singleton async OpenAI client.
    Reused across the app (chat, moderation, embeddings) to avoid re-initializing per request.
    """
    global _client
    if _client is not None:
        return _client

    with _client_lock:
        if _client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY is not set")
            _client = AsyncOpenAI(
                api_key=api_key,
                timeout=float(os.getenv("OPENAI_TIMEOUT_S", "60")),
                max_retries=int(os.getenv("OPENAI_MAX_RETRIES", "1")),
            )
    return _client
