"""Chat orchestrator.

Flow:
  1. Moderate the latest user text (denial short-circuits the turn)
  2. Assemble the conversation (prior turns + image or uploaded holdings)
  3. Enrich uploaded holdings with web context and latest prices
  4. Tool loop (up to ``max_steps``): stream model output, run requested
     tools one at a time, feed results back
  5. ``finish`` (or a single ``error``) closes the stream
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from services.ai.chat.chat_models import (
    SSE_DONE,
    ChatRequest,
    ConversationMessage,
    StreamEvent,
    UploadedFile,
    format_sse,
)
from services.ai.chat.context_assembler import (
    assemble_conversation,
    build_system_prompt,
    process_upload,
    to_conversation,
)
from services.ai.chat.enrichment import EnrichmentFetcher
from services.ai.chat.moderation import (
    ModerationError,
    ModerationGate,
    build_denial_events,
    latest_user_text,
)
from services.ai.chat.openai_stream_client import (
    ModelError,
    OpenAIStreamClient,
    ReasoningDelta,
    TextDelta,
    ToolCallRequest,
)
from services.ai.chat.tool_registry import TOOL_TIMEOUTS, ChatToolRegistry, ToolResult

logger = logging.getLogger(__name__)

DisconnectFn = Callable[[], Awaitable[bool]]

TIMEOUT_MESSAGE = "Request timed out. Please retry."
FAILURE_MESSAGE = "Unable to process chat request right now."


@dataclass
class OrchestratorConfig:
    max_steps: int = 10
    request_timeout_s: float = 30.0
    tool_timeout_s: float = 15.0
    send_reasoning: bool = True

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        return cls(
            max_steps=max(1, int(os.getenv("CHAT_MAX_STEPS", "10"))),
            request_timeout_s=float(os.getenv("CHAT_REQUEST_TIMEOUT_S", "30")),
            tool_timeout_s=float(os.getenv("CHAT_TOOL_TIMEOUT_S", "15")),
            send_reasoning=(os.getenv("CHAT_SEND_REASONING") or "1") == "1",
        )


class _Blocks:
    """Tracks the open text/reasoning block so every start gets exactly one end."""

    def __init__(self, req_id: str):
        self._req_id = req_id
        self._seq = itertools.count(1)
        self._open: Optional[Tuple[str, str]] = None  # (kind, id)

    def delta(self, kind: str, text: str) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        if self._open is not None and self._open[0] != kind:
            events.extend(self.close())
        if self._open is None:
            block_id = f"{kind}-{self._req_id}-{next(self._seq)}"
            self._open = (kind, block_id)
            events.append(StreamEvent.text_start(block_id) if kind == "text" else StreamEvent.reasoning_start(block_id))
        block_id = self._open[1]
        events.append(
            StreamEvent.text_delta(block_id, text) if kind == "text" else StreamEvent.reasoning_delta(block_id, text)
        )
        return events

    def close(self) -> List[StreamEvent]:
        if self._open is None:
            return []
        kind, block_id = self._open
        self._open = None
        return [StreamEvent.text_end(block_id) if kind == "text" else StreamEvent.reasoning_end(block_id)]


def _parse_tool_args(raw: str) -> Optional[Dict[str, Any]]:
    if not (raw or "").strip():
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


class ChatOrchestrator:
    def __init__(
        self,
        *,
        model_client: Optional[OpenAIStreamClient] = None,
        tools: Optional[ChatToolRegistry] = None,
        moderation: Optional[ModerationGate] = None,
        enrichment: Optional[EnrichmentFetcher] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.model = model_client or OpenAIStreamClient()
        self.tools = tools
        self.moderation = moderation or ModerationGate()
        self.enrichment = enrichment
        self.config = config or OrchestratorConfig.from_env()

    # ── helpers ──────────────────────────────────────────────────────

    async def _safe_is_disconnected(self, fn: Optional[DisconnectFn]) -> bool:
        if fn is None:
            return False
        try:
            return bool(await fn())
        except Exception:
            return False

    async def _run_tool(self, req_id: str, call: ToolCallRequest, args: Optional[Dict[str, Any]]) -> ToolResult:
        if args is None:
            return ToolResult(
                ok=False,
                tool_name=call.name,
                error="Invalid tool arguments: expected a JSON object",
                data_gaps=["Invalid tool arguments"],
            )
        if self.tools is None:
            return ToolResult(
                ok=False,
                tool_name=call.name,
                error=f"Unsupported tool: {call.name}",
                data_gaps=["Unsupported tool"],
            )
        timeout = TOOL_TIMEOUTS.get(call.name, self.config.tool_timeout_s)
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(self.tools.execute(call.name, args), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("chat.tool.timeout req_id=%s tool=%s timeout_s=%s", req_id, call.name, timeout)
            return ToolResult(
                ok=False,
                tool_name=call.name,
                error=f"Tool timed out after {timeout}s",
                data_gaps=["Tool timed out"],
            )
        logger.info(
            "chat.tool.done req_id=%s tool=%s ok=%s elapsed_ms=%s",
            req_id,
            call.name,
            result.ok,
            int((time.perf_counter() - started) * 1000),
        )
        return result

    async def _assemble(
        self,
        req: ChatRequest,
        upload: Optional[UploadedFile],
        req_id: str,
    ) -> Tuple[ConversationMessage, ...]:
        prior = to_conversation(req.messages)
        outcome = None
        enrichment = None
        if upload is not None:
            outcome = await asyncio.to_thread(process_upload, upload)
            logger.info(
                "chat.upload req_id=%s file=%s status=%s holdings=%s",
                req_id,
                outcome.file_name,
                outcome.status,
                len(outcome.holdings),
            )
            if outcome.status == "holdings" and self.enrichment is not None:
                enrichment = await self.enrichment.fetch(outcome.tickers)
        return assemble_conversation(prior, image=req.image_base64, upload=outcome, enrichment=enrichment)

    # ── pipeline ─────────────────────────────────────────────────────

    async def _run(
        self,
        req: ChatRequest,
        *,
        upload: Optional[UploadedFile],
        is_disconnected: Optional[DisconnectFn],
        req_id: str,
    ) -> AsyncIterator[StreamEvent]:
        try:
            verdict = await self.moderation.check(latest_user_text(req.messages))
        except ModerationError:
            logger.warning("chat.moderation.unavailable req_id=%s", req_id)
            yield StreamEvent.start()
            yield StreamEvent.error("moderation", FAILURE_MESSAGE)
            return

        if verdict.flagged:
            logger.info("chat.moderation.denied req_id=%s categories=%s", req_id, ",".join(verdict.categories))
            for event in build_denial_events(verdict.denial_message):
                yield event
            return

        yield StreamEvent.start()

        try:
            conversation = await self._assemble(req, upload, req_id)
            messages = self.model.to_provider_messages(build_system_prompt(), conversation)
        except Exception:
            logger.exception("chat.assemble.error req_id=%s", req_id)
            yield StreamEvent.error("internal", FAILURE_MESSAGE)
            return

        tool_defs = self.tools.definitions() if self.tools is not None else []
        blocks = _Blocks(req_id)
        finish_reason = "stop"
        step = 0

        try:
            while step < self.config.max_steps:
                step += 1
                text_parts: List[str] = []
                calls: List[ToolCallRequest] = []

                async for item in self.model.stream_step(messages=messages, tools=tool_defs):
                    if await self._safe_is_disconnected(is_disconnected):
                        logger.info("chat.disconnected req_id=%s step=%s", req_id, step)
                        return
                    if isinstance(item, ReasoningDelta):
                        if self.config.send_reasoning:
                            for event in blocks.delta("reasoning", item.text):
                                yield event
                    elif isinstance(item, TextDelta):
                        text_parts.append(item.text)
                        for event in blocks.delta("text", item.text):
                            yield event
                    elif isinstance(item, ToolCallRequest):
                        calls.append(item)

                for event in blocks.close():
                    yield event

                logger.info("chat.step req_id=%s step=%s tool_calls=%s", req_id, step, len(calls))
                if not calls:
                    break

                messages.append(self.model.assistant_turn("".join(text_parts), calls))
                for call in calls:
                    if await self._safe_is_disconnected(is_disconnected):
                        logger.info("chat.disconnected req_id=%s step=%s", req_id, step)
                        return
                    args = _parse_tool_args(call.arguments)
                    yield StreamEvent.tool_call(call.id, call.name, args or {})
                    result = await self._run_tool(req_id, call, args)
                    payload = result.model_dump()
                    yield StreamEvent.tool_result(call.id, payload)
                    messages.append(self.model.tool_turn(call.id, payload))
            else:
                finish_reason = "step_cap"
                logger.info("chat.step_cap req_id=%s max_steps=%s", req_id, self.config.max_steps)
        except ModelError:
            logger.warning("chat.model.error req_id=%s step=%s", req_id, step)
            yield StreamEvent.error("model", FAILURE_MESSAGE)
            return

        yield StreamEvent.finish(finish_reason)

    async def stream_events(
        self,
        req: ChatRequest,
        *,
        upload: Optional[UploadedFile] = None,
        is_disconnected: Optional[DisconnectFn] = None,
    ) -> AsyncIterator[StreamEvent]:
        start = time.perf_counter()
        req_id = f"chat-{uuid.uuid4().hex[:12]}"
        logger.info(
            "chat.start req_id=%s messages=%s image=%s upload=%s",
            req_id,
            len(req.messages),
            bool(req.image_base64),
            upload.name if upload is not None else "-",
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.request_timeout_s
        inner = self._run(req, upload=upload, is_disconnected=is_disconnected, req_id=req_id)
        events = 0
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                try:
                    event = await asyncio.wait_for(inner.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                events += 1
                yield event
        except asyncio.TimeoutError:
            logger.warning("chat.timeout req_id=%s timeout_s=%s", req_id, self.config.request_timeout_s)
            yield StreamEvent.error("timeout", TIMEOUT_MESSAGE)
        except Exception:
            logger.exception("chat.error req_id=%s", req_id)
            yield StreamEvent.error("internal", FAILURE_MESSAGE)
        finally:
            await inner.aclose()
            logger.info(
                "chat.done req_id=%s events=%s elapsed_ms=%s",
                req_id,
                events,
                int((time.perf_counter() - start) * 1000),
            )

    async def stream_sse(
        self,
        req: ChatRequest,
        *,
        upload: Optional[UploadedFile] = None,
        is_disconnected: Optional[DisconnectFn] = None,
    ) -> AsyncIterator[str]:
        async for event in self.stream_events(req, upload=upload, is_disconnected=is_disconnected):
            yield format_sse(event)
        yield SSE_DONE
