from __future__ import annotations

import asyncio
import os
import random
from typing import Any, Dict, List, Optional, Sequence
import httpx

TAVILY_API_URL = os.getenv("TAVILY_API_URL", "https://api.tavily.com/search")
TAVILY_TIMEOUT_SEC = float(os.getenv("TAVILY_TIMEOUT_SEC", "10"))

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_RETRIES = 2

# Providers and wrappers disagree on field names; first non-empty alias wins.
RESULT_LIST_FIELDS = ("items", "results", "data")
TITLE_FIELDS = ("title", "headline")
SNIPPET_FIELDS = ("snippet", "summary", "excerpt", "content")
URL_FIELDS = ("url", "link")


class TavilyClientError(RuntimeError):
    """Raised when Tavily requests fail or are misconfigured."""


def tavily_api_key() -> str:
    return (os.getenv("TAVILY_API_KEY") or "").strip()


def is_configured() -> bool:
    return bool(tavily_api_key())


async def _backoff_sleep(attempt: int) -> None:
    await asyncio.sleep((0.6 * (2**attempt)) + random.random() * 0.3)


async def search(
    query: str,
    *,
    max_results: int,
    include_answer: bool = False,
    include_raw_content: bool = False,
    search_depth: str = "basic",
    topic: str = "finance",
) -> Dict[str, Any]:
    api_key = tavily_api_key()
    if not api_key:
        raise TavilyClientError("Missing TAVILY_API_KEY")

    payload = {
        "query": query,
        "max_results": int(max_results),
        "include_answer": bool(include_answer),
        "include_raw_content": bool(include_raw_content),
        "search_depth": search_depth if search_depth in {"basic", "advanced"} else "basic",
        "topic": topic,
    }

    timeout = httpx.Timeout(TAVILY_TIMEOUT_SEC)
    last_exc: Exception | None = None

    headers = {"Authorization": f"Bearer {api_key}"}

    async with httpx.AsyncClient(timeout=timeout) as client:
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await client.post(TAVILY_API_URL, json=payload, headers=headers)
                if response.status_code in RETRY_STATUS_CODES:
                    if attempt < MAX_RETRIES:
                        await _backoff_sleep(attempt)
                        continue
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException as exc:
                last_exc = exc
            except httpx.HTTPError as exc:
                last_exc = exc
                status = None
                if isinstance(exc, httpx.HTTPStatusError):
                    status = exc.response.status_code
                if status in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    await _backoff_sleep(attempt)
                    continue
                break
            except ValueError as exc:
                raise TavilyClientError("Tavily returned a non-JSON response") from exc

            if attempt < MAX_RETRIES:
                await _backoff_sleep(attempt)

    raise TavilyClientError(f"Tavily request failed: {type(last_exc).__name__ if last_exc else 'unknown'}")


def _first_text(item: Dict[str, Any], fields: Sequence[str]) -> str:
    for key in fields:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return " ".join(value.split())
    return ""


def extract_hits(results: Any, limit: int = 3, snippet_max_chars: int = 400) -> List[Dict[str, Optional[str]]]:
    """
    Normalize a search payload into ``{title, snippet, url}`` hits.
    Accepts the raw Tavily dict, an alternate wrapper, or a bare list.
    """
    if results is None:
        return []

    items: Any = results
    if isinstance(results, dict):
        items = []
        for key in RESULT_LIST_FIELDS:
            candidate = results.get(key)
            if isinstance(candidate, list):
                items = candidate
                break
    if not isinstance(items, list):
        return []

    hits: List[Dict[str, Optional[str]]] = []
    for item in items:
        if len(hits) >= max(0, limit):
            break
        if not isinstance(item, dict):
            continue
        snippet = _first_text(item, SNIPPET_FIELDS)
        if len(snippet) > snippet_max_chars:
            snippet = snippet[: snippet_max_chars - 3].rstrip() + "..."
        hits.append(
            {
                "title": _first_text(item, TITLE_FIELDS),
                "snippet": snippet,
                "url": _first_text(item, URL_FIELDS) or None,
            }
        )
    return hits
