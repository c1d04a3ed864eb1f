"""Content-safety gate for the latest user message.

The gate fails closed: if the classifier cannot be reached the request is
aborted with ``ModerationError`` instead of being let through.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from services.ai.chat.chat_models import StreamEvent, UIMessage

logger = logging.getLogger(__name__)

DEFAULT_DENIAL_MESSAGE = "Your message violates our guidelines. I can't answer that."
DENIAL_TEXT_ID = "moderation-denial-text"

_SELF_HARM_MESSAGE = (
    "I can't help with that. If you are thinking about harming yourself, please reach out "
    "to someone you trust or a local crisis line right away."
)

CATEGORY_DENIALS: Dict[str, str] = {
    "self-harm": _SELF_HARM_MESSAGE,
    "self-harm/intent": _SELF_HARM_MESSAGE,
    "self-harm/instructions": _SELF_HARM_MESSAGE,
    "illicit": "I can't help with illegal activities. I'm happy to talk about your portfolio instead.",
    "illicit/violent": "I can't help with illegal activities. I'm happy to talk about your portfolio instead.",
}


class ModerationError(RuntimeError):
    """Raised when the moderation classifier cannot produce a verdict."""


@dataclass(frozen=True)
class ModerationResult:
    flagged: bool
    denial_message: Optional[str] = None
    categories: List[str] = field(default_factory=list)


def latest_user_text(messages: Sequence[UIMessage]) -> str:
    for msg in reversed(messages):
        if msg.role == "user":
            return "".join(p.text or "" for p in msg.parts if p.type == "text")
    return ""


def denial_for_categories(categories: Sequence[str]) -> Optional[str]:
    for name in categories:
        message = CATEGORY_DENIALS.get(name)
        if message:
            return message
    return None


def build_denial_events(denial_message: Optional[str]) -> List[StreamEvent]:
    """Synthetic answer stream, protocol-identical to a short model reply."""
    return [
        StreamEvent.start(),
        StreamEvent.text_start(DENIAL_TEXT_ID),
        StreamEvent.text_delta(DENIAL_TEXT_ID, denial_message or DEFAULT_DENIAL_MESSAGE),
        StreamEvent.text_end(DENIAL_TEXT_ID),
        StreamEvent.finish("content_filter"),
    ]


def _flagged_categories(result: Any) -> List[str]:
    categories = getattr(result, "categories", None)
    if categories is None:
        return []
    if hasattr(categories, "model_dump"):
        raw = categories.model_dump(by_alias=True)
    elif isinstance(categories, dict):
        raw = categories
    else:
        return []
    return sorted(name for name, hit in raw.items() if hit)


class ModerationGate:
    def __init__(self, client: Any = None, *, model: Optional[str] = None):
        self._client = client
        self.model = model or os.getenv("OPENAI_MODERATION_MODEL") or "omni-moderation-latest"

    def _get_client(self) -> Any:
        if self._client is None:
            from services.openai.client import get_openai_client

            self._client = get_openai_client()
        return self._client

    async def check(self, text: str) -> ModerationResult:
        text = (text or "").strip()
        if not text:
            return ModerationResult(flagged=False)

        started = time.perf_counter()
        try:
            resp = await self._get_client().moderations.create(model=self.model, input=text)
        except Exception as exc:
            logger.warning("moderation.error err=%s", type(exc).__name__)
            raise ModerationError("Moderation classifier unavailable") from exc

        results = getattr(resp, "results", None) or []
        if not results:
            raise ModerationError("Moderation classifier returned no verdict")

        flagged = any(bool(getattr(r, "flagged", False)) for r in results)
        categories: List[str] = []
        for r in results:
            categories.extend(c for c in _flagged_categories(r) if c not in categories)

        logger.info(
            "moderation.done elapsed_ms=%s flagged=%s categories=%s",
            int((time.perf_counter() - started) * 1000),
            flagged,
            ",".join(categories) or "-",
        )
        if not flagged:
            return ModerationResult(flagged=False)
        return ModerationResult(
            flagged=True,
            denial_message=denial_for_categories(categories),
            categories=categories,
        )
