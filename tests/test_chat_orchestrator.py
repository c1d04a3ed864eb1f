import asyncio
import json
import unittest

from services.ai.chat.chat_models import ChatRequest, UploadedFile
from services.ai.chat.chat_orchestrator import ChatOrchestrator, OrchestratorConfig
from services.ai.chat.context_assembler import HOLDINGS_TAG
from services.ai.chat.enrichment import EnrichmentConfig, EnrichmentFetcher, EnrichmentResult
from services.ai.chat.moderation import ModerationError, ModerationResult
from services.ai.chat.openai_stream_client import (
    ModelError,
    OpenAIStreamClient,
    ReasoningDelta,
    StepFinish,
    TextDelta,
    ToolCallRequest,
)
from services.ai.chat.tool_registry import ToolResult


class _FakeModel:
    """Scripted model: one list of events per step; the last script repeats."""

    def __init__(self, steps, *, delay_s=0.0, fail_on_step=None):
        self._steps = steps
        self._delay_s = delay_s
        self._fail_on_step = fail_on_step
        self.calls = []

    to_provider_messages = OpenAIStreamClient.to_provider_messages
    assistant_turn = staticmethod(OpenAIStreamClient.assistant_turn)
    tool_turn = staticmethod(OpenAIStreamClient.tool_turn)

    async def stream_step(self, *, messages, tools=None):
        step = len(self.calls)
        self.calls.append(list(messages))
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        script = self._steps[min(step, len(self._steps) - 1)]
        for item in script:
            if self._fail_on_step == step and isinstance(item, StepFinish):
                raise ModelError("stream reset")
            yield item


class _FakeModeration:
    def __init__(self, result=None, exc=None):
        self.result = result or ModerationResult(flagged=False)
        self.exc = exc
        self.calls = []

    async def check(self, text):
        self.calls.append(text)
        if self.exc is not None:
            raise self.exc
        return self.result


class _FakeTools:
    def __init__(self):
        self.calls = []
        self.active = 0
        self.max_active = 0

    def definitions(self):
        return [{"type": "function", "function": {"name": "web_search", "parameters": {}}}]

    async def execute(self, tool_name, arguments):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            self.calls.append((tool_name, arguments))
            return ToolResult(ok=True, tool_name=tool_name, data={"echo": arguments})
        finally:
            self.active -= 1


class _HangingTools(_FakeTools):
    def __init__(self):
        super().__init__()
        self.cancelled = False

    async def execute(self, tool_name, arguments):
        try:
            await asyncio.sleep(5.0)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ToolResult(ok=True, tool_name=tool_name)


async def _slow_search(query, *, max_results):
    await asyncio.sleep(5.0)
    return {"results": []}


class _FakeEnrichment:
    def __init__(self):
        self.tickers = None

    async def fetch(self, tickers):
        self.tickers = list(tickers)
        return EnrichmentResult(
            web_snippets=[{"ticker": "AAPL", "hits": [{"title": "t", "snippet": "s", "url": "u"}]}],
            prices={"AAPL": 190.0},
        )


def _request(text="how is AAPL doing?", **kwargs):
    return ChatRequest(messages=[{"role": "user", "parts": [{"type": "text", "text": text}]}], **kwargs)


def _orchestrator(model, *, moderation=None, tools=None, enrichment=None, **config):
    return ChatOrchestrator(
        model_client=model,
        tools=tools,
        moderation=moderation or _FakeModeration(),
        enrichment=enrichment,
        config=OrchestratorConfig(**{"max_steps": 10, "request_timeout_s": 5.0, "tool_timeout_s": 5.0, **config}),
    )


def _collect(orchestrator, req=None, **kwargs):
    async def _run():
        return [e async for e in orchestrator.stream_events(req or _request(), **kwargs)]

    return asyncio.run(_run())


def _types(events):
    return [e.type for e in events]


def _tool_call(call_id, query="AAPL news"):
    return ToolCallRequest(id=call_id, name="web_search", arguments=json.dumps({"query": query}))


class TestChatOrchestrator(unittest.TestCase):
    def test_plain_answer_streams_one_text_block(self) -> None:
        model = _FakeModel([[TextDelta("Hello "), TextDelta("world"), StepFinish("stop")]])
        events = _collect(_orchestrator(model))

        self.assertEqual(_types(events), ["start", "text-start", "text-delta", "text-delta", "text-end", "finish"])
        self.assertEqual(len({e.id for e in events[1:5]}), 1)
        self.assertEqual("".join(e.delta for e in events if e.type == "text-delta"), "Hello world")
        self.assertEqual(events[-1].finish_reason, "stop")

    def test_flagged_input_never_reaches_model(self) -> None:
        model = _FakeModel([[TextDelta("nope")]])
        moderation = _FakeModeration(ModerationResult(flagged=True, denial_message="Denied."))
        events = _collect(_orchestrator(model, moderation=moderation), _request("something bad"))

        self.assertEqual(_types(events), ["start", "text-start", "text-delta", "text-end", "finish"])
        self.assertEqual(events[2].delta, "Denied.")
        self.assertEqual(model.calls, [])
        self.assertEqual(moderation.calls, ["something bad"])

    def test_moderation_outage_fails_closed(self) -> None:
        model = _FakeModel([[TextDelta("nope")]])
        events = _collect(_orchestrator(model, moderation=_FakeModeration(exc=ModerationError("down"))))

        self.assertEqual(_types(events), ["start", "error"])
        self.assertEqual(events[-1].kind, "moderation")
        self.assertEqual(model.calls, [])

    def test_tools_run_one_at_a_time_and_feed_back(self) -> None:
        model = _FakeModel(
            [
                [TextDelta("Checking."), _tool_call("c1", "AAPL"), _tool_call("c2", "MSFT"), StepFinish("tool_calls")],
                [TextDelta("Done."), StepFinish("stop")],
            ]
        )
        tools = _FakeTools()
        events = _collect(_orchestrator(model, tools=tools))

        self.assertEqual(
            _types(events),
            [
                "start",
                "text-start", "text-delta", "text-end",
                "tool-call", "tool-result",
                "tool-call", "tool-result",
                "text-start", "text-delta", "text-end",
                "finish",
            ],
        )
        self.assertEqual(tools.max_active, 1)
        self.assertEqual(tools.calls, [("web_search", {"query": "AAPL"}), ("web_search", {"query": "MSFT"})])

        text_ids = [e.id for e in events if e.type == "text-start"]
        self.assertEqual(len(set(text_ids)), 2)
        self.assertEqual([e.id for e in events if e.type == "tool-result"], ["c1", "c2"])

        second_step = model.calls[1]
        self.assertEqual(second_step[-3]["role"], "assistant")
        self.assertEqual([m["tool_call_id"] for m in second_step[-2:]], ["c1", "c2"])

    def test_step_cap_finishes_gracefully(self) -> None:
        model = _FakeModel([[_tool_call("loop"), StepFinish("tool_calls")]])
        tools = _FakeTools()
        events = _collect(_orchestrator(model, tools=tools, max_steps=3))

        self.assertEqual(len(model.calls), 3)
        self.assertEqual(len(tools.calls), 3)
        self.assertEqual(events[-1].type, "finish")
        self.assertEqual(events[-1].finish_reason, "step_cap")
        self.assertNotIn("error", _types(events))

    def test_model_error_ends_stream_with_error(self) -> None:
        model = _FakeModel([[TextDelta("partial"), StepFinish("stop")]], fail_on_step=0)
        events = _collect(_orchestrator(model))

        self.assertEqual(_types(events), ["start", "text-start", "text-delta", "error"])
        self.assertEqual(events[-1].kind, "model")

    def test_overall_timeout(self) -> None:
        model = _FakeModel([[TextDelta("late"), StepFinish("stop")]], delay_s=1.0)
        events = _collect(_orchestrator(model, request_timeout_s=0.05))

        self.assertEqual(_types(events), ["start", "error"])
        self.assertEqual(events[-1].kind, "timeout")

    def test_disconnect_stops_stream(self) -> None:
        model = _FakeModel([[TextDelta("a"), TextDelta("b"), StepFinish("stop")]])

        async def _gone():
            return True

        events = _collect(_orchestrator(model), is_disconnected=_gone)
        self.assertEqual(_types(events), ["start"])

    def test_timeout_cancels_running_tool(self) -> None:
        model = _FakeModel([[_tool_call("c1"), StepFinish("tool_calls")]])
        tools = _HangingTools()
        events = _collect(_orchestrator(model, tools=tools, request_timeout_s=0.2))

        self.assertEqual(_types(events), ["start", "tool-call", "error"])
        self.assertEqual(events[-1].kind, "timeout")
        self.assertTrue(tools.cancelled)

    def test_slow_enrichment_still_leaves_time_for_the_model(self) -> None:
        model = _FakeModel([[TextDelta("Looks diversified."), StepFinish("stop")]])
        enrichment = EnrichmentFetcher(search=_slow_search, config=EnrichmentConfig(budget_s=0.05))
        upload = UploadedFile(
            name="pf.csv",
            data=b"ticker,qty\naapl,1\nmsft,2\nnvda,3\namzn,4\ngoog,5\ntsla,6\n",
        )
        events = _collect(
            _orchestrator(model, enrichment=enrichment, request_timeout_s=2.0),
            _request("review this"),
            upload=upload,
        )

        self.assertEqual(len(model.calls), 1)
        self.assertEqual(_types(events), ["start", "text-start", "text-delta", "text-end", "finish"])
        self.assertEqual(events[-1].finish_reason, "stop")

    def test_bad_tool_arguments_are_reported_not_executed(self) -> None:
        model = _FakeModel(
            [
                [ToolCallRequest(id="c1", name="web_search", arguments="{not json"), StepFinish("tool_calls")],
                [TextDelta("ok"), StepFinish("stop")],
            ]
        )
        tools = _FakeTools()
        events = _collect(_orchestrator(model, tools=tools))

        result = next(e for e in events if e.type == "tool-result")
        self.assertFalse(result.result["ok"])
        self.assertEqual(tools.calls, [])
        self.assertEqual(events[-1].type, "finish")

    def test_reasoning_block_closes_before_text(self) -> None:
        model = _FakeModel([[ReasoningDelta("hmm"), TextDelta("answer"), StepFinish("stop")]])
        events = _collect(_orchestrator(model))
        self.assertEqual(
            _types(events),
            ["start", "reasoning-start", "reasoning-delta", "reasoning-end", "text-start", "text-delta", "text-end", "finish"],
        )

        hidden = _collect(_orchestrator(model, send_reasoning=False))
        self.assertNotIn("reasoning-start", _types(hidden))

    def test_upload_is_parsed_and_enriched(self) -> None:
        model = _FakeModel([[TextDelta("Nice portfolio."), StepFinish("stop")]])
        enrichment = _FakeEnrichment()
        upload = UploadedFile(name="pf.csv", data=b"symbol,quantity\naapl,4\n")
        events = _collect(_orchestrator(model, enrichment=enrichment), _request("review this"), upload=upload)

        self.assertEqual(events[-1].type, "finish")
        self.assertEqual(enrichment.tickers, ["AAPL"])
        sent = model.calls[0]
        self.assertEqual(sent[0]["role"], "system")
        texts = [part["text"] for msg in sent[1:] for part in msg["content"]]
        self.assertEqual(texts[0], "review this")
        self.assertIn(HOLDINGS_TAG, "".join(texts[1:3]))
        self.assertTrue(texts[-2].startswith("Current web context for holdings:"))
        self.assertTrue(texts[-1].startswith("Latest prices (Finnhub):"))

    def test_sse_output_ends_with_done(self) -> None:
        model = _FakeModel([[TextDelta("hi"), StepFinish("stop")]])

        async def _run():
            return [chunk async for chunk in _orchestrator(model).stream_sse(_request())]

        chunks = asyncio.run(_run())
        self.assertEqual(chunks[-1], "data: [DONE]\n\n")
        self.assertEqual(json.loads(chunks[0][6:]), {"type": "start"})
        self.assertEqual(json.loads(chunks[-2][6:])["type"], "finish")


if __name__ == "__main__":
    unittest.main()
