from __future__ import annotations

import asyncio
import base64
import inspect
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from services.ai.chat.chat_models import ConversationMessage, FilePart, ImagePart, TextPart

logger = logging.getLogger(__name__)


class ModelError(RuntimeError):
    """Raised when the inference provider fails before or during a stream."""


# ── Per-step model events ───────────────────────────────────────────────

@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class StepFinish:
    finish_reason: Optional[str]


ModelEvent = Union[TextDelta, ReasoningDelta, ToolCallRequest, StepFinish]


@dataclass
class OpenAIConfig:
    model: str
    temperature: float
    reasoning_effort: str

    @classmethod
    def from_env(cls) -> "OpenAIConfig":
        return cls(
            model=os.getenv("OPENAI_MODEL") or "gpt-4o-mini",
            temperature=float(os.getenv("AI_TEMPERATURE", "0.3")),
            reasoning_effort=(os.getenv("OPENAI_REASONING_EFFORT") or "low").strip().lower(),
        )


_IMAGE_SIGNATURES = (
    ("/9j/", "image/jpeg"),
    ("iVBOR", "image/png"),
    ("R0lGOD", "image/gif"),
    ("UklGR", "image/webp"),
)


def _image_url(part: ImagePart) -> str:
    value = part.image.strip()
    if value.startswith(("http://", "https://", "data:")):
        return value
    media_type = part.media_type
    if not media_type:
        media_type = next((mt for sig, mt in _IMAGE_SIGNATURES if value.startswith(sig)), "image/png")
    return f"data:{media_type};base64,{value}"


def _file_payload(part: FilePart) -> Dict[str, Any]:
    encoded = base64.b64encode(part.data).decode("ascii")
    return {
        "type": "file",
        "file": {"filename": part.name, "file_data": f"data:{part.media_type};base64,{encoded}"},
    }


class OpenAIStreamClient:
    def __init__(self, config: Optional[OpenAIConfig] = None, client: Any = None):
        self.config = config or OpenAIConfig.from_env()
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from services.openai.client import get_openai_client

            self._client = get_openai_client()
        return self._client

    @staticmethod
    def _model_supports_reasoning(model: str) -> bool:
        m = (model or "").lower()
        return m.startswith(("o1", "o3", "o4", "gpt-5"))

    # ── message formatting ──────────────────────────────────────────

    def to_provider_messages(
        self,
        system_prompt: str,
        conversation: Sequence[ConversationMessage],
    ) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for msg in conversation:
            if msg.role != "user":
                text = msg.text(sep="\n")
                if text:
                    out.append({"role": msg.role, "content": text})
                continue
            content: List[Dict[str, Any]] = []
            for part in msg.parts:
                if isinstance(part, TextPart):
                    content.append({"type": "text", "text": part.text})
                elif isinstance(part, ImagePart):
                    content.append({"type": "image_url", "image_url": {"url": _image_url(part)}})
                elif isinstance(part, FilePart):
                    content.append(_file_payload(part))
            if content:
                out.append({"role": "user", "content": content})
        return out

    @staticmethod
    def assistant_turn(text: str, calls: Sequence[ToolCallRequest]) -> Dict[str, Any]:
        return {
            "role": "assistant",
            "content": text or None,
            "tool_calls": [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": c.arguments or "{}"},
                }
                for c in calls
            ],
        }

    @staticmethod
    def tool_turn(call_id: str, result: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": call_id,
            "content": json.dumps(result, ensure_ascii=True, default=str),
        }

    # ── streaming ───────────────────────────────────────────────────

    def _request_kwargs(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
            kwargs["parallel_tool_calls"] = False
        if self._model_supports_reasoning(self.config.model):
            if self.config.reasoning_effort:
                kwargs["reasoning_effort"] = self.config.reasoning_effort
        else:
            kwargs["temperature"] = self.config.temperature
        return kwargs

    async def stream_step(
        self,
        *,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[ModelEvent]:
        """One model call. Yields deltas as they arrive, then tool calls, then ``StepFinish``."""
        started = time.perf_counter()
        logger.info("openai.step.start model=%s messages=%s tools=%s", self.config.model, len(messages), len(tools or []))
        try:
            stream = await self._get_client().chat.completions.create(**self._request_kwargs(messages, tools))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("openai.step.error phase=create err=%s", type(exc).__name__)
            raise ModelError("Model request failed") from exc

        calls: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        chunks = 0
        try:
            async for chunk in stream:
                if not getattr(chunk, "choices", None):
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None:
                    reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
                    if isinstance(reasoning, str) and reasoning:
                        yield ReasoningDelta(reasoning)
                    if delta.content:
                        chunks += 1
                        yield TextDelta(delta.content)
                    for tc in delta.tool_calls or []:
                        slot = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                        if tc.id:
                            slot["id"] = tc.id
                        fn = tc.function
                        if fn is not None:
                            if fn.name:
                                slot["name"] = fn.name
                            if fn.arguments:
                                slot["arguments"] += fn.arguments
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("openai.step.error phase=stream chunks=%s err=%s", chunks, type(exc).__name__)
            raise ModelError("Model stream interrupted") from exc
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                res = close()
                if inspect.isawaitable(res):
                    await res

        for idx in sorted(calls):
            slot = calls[idx]
            if not slot["name"]:
                continue
            call_id = slot["id"] or f"call_{uuid.uuid4().hex[:16]}"
            yield ToolCallRequest(id=call_id, name=slot["name"], arguments=slot["arguments"])

        logger.info(
            "openai.step.done elapsed_ms=%s text_chunks=%s tool_calls=%s finish_reason=%s",
            int((time.perf_counter() - started) * 1000),
            chunks,
            len(calls),
            finish_reason,
        )
        yield StepFinish(finish_reason)
