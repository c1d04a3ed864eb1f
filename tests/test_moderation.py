import asyncio
import unittest
from types import SimpleNamespace

from services.ai.chat.chat_models import UIMessage
from services.ai.chat.moderation import (
    CATEGORY_DENIALS,
    DEFAULT_DENIAL_MESSAGE,
    DENIAL_TEXT_ID,
    ModerationError,
    ModerationGate,
    build_denial_events,
    latest_user_text,
)


class _FakeModerations:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    async def create(self, *, model, input):
        self.calls.append((model, input))
        if self.exc is not None:
            raise self.exc
        return self.response


def _client(moderations):
    return SimpleNamespace(moderations=moderations)


def _verdict(flagged, categories=None):
    return SimpleNamespace(results=[SimpleNamespace(flagged=flagged, categories=categories or {})])


class ModerationGateTests(unittest.TestCase):
    def test_clean_text_passes(self) -> None:
        mods = _FakeModerations(response=_verdict(False))
        gate = ModerationGate(_client(mods), model="omni-moderation-latest")
        result = asyncio.run(gate.check("how is my portfolio doing?"))
        self.assertFalse(result.flagged)
        self.assertEqual(mods.calls, [("omni-moderation-latest", "how is my portfolio doing?")])

    def test_flagged_category_picks_specific_denial(self) -> None:
        mods = _FakeModerations(response=_verdict(True, {"self-harm": True, "violence": False}))
        result = asyncio.run(ModerationGate(_client(mods)).check("bad"))
        self.assertTrue(result.flagged)
        self.assertEqual(result.categories, ["self-harm"])
        self.assertEqual(result.denial_message, CATEGORY_DENIALS["self-harm"])

    def test_flagged_without_known_category_uses_default(self) -> None:
        mods = _FakeModerations(response=_verdict(True, {"harassment": True}))
        result = asyncio.run(ModerationGate(_client(mods)).check("bad"))
        self.assertTrue(result.flagged)
        self.assertIsNone(result.denial_message)
        self.assertEqual(build_denial_events(result.denial_message)[2].delta, DEFAULT_DENIAL_MESSAGE)

    def test_classifier_failure_fails_closed(self) -> None:
        mods = _FakeModerations(exc=ConnectionError("down"))
        with self.assertRaises(ModerationError):
            asyncio.run(ModerationGate(_client(mods)).check("hello"))

    def test_empty_verdict_fails_closed(self) -> None:
        mods = _FakeModerations(response=SimpleNamespace(results=[]))
        with self.assertRaises(ModerationError):
            asyncio.run(ModerationGate(_client(mods)).check("hello"))

    def test_blank_text_skips_classifier(self) -> None:
        mods = _FakeModerations(exc=AssertionError("should not be called"))
        result = asyncio.run(ModerationGate(_client(mods)).check("   "))
        self.assertFalse(result.flagged)
        self.assertEqual(mods.calls, [])


class DenialStreamTests(unittest.TestCase):
    def test_denial_events_mirror_a_short_answer(self) -> None:
        events = build_denial_events("No.")
        self.assertEqual(
            [e.type for e in events],
            ["start", "text-start", "text-delta", "text-end", "finish"],
        )
        self.assertEqual({e.id for e in events[1:4]}, {DENIAL_TEXT_ID})
        self.assertEqual(events[2].delta, "No.")

    def test_latest_user_text_joins_text_parts(self) -> None:
        messages = [
            UIMessage(role="user", parts=[{"type": "text", "text": "old"}]),
            UIMessage(role="assistant", parts=[{"type": "text", "text": "reply"}]),
            UIMessage(
                role="user",
                parts=[
                    {"type": "text", "text": "part one "},
                    {"type": "file", "url": "data:image/png;base64,AAAA", "mediaType": "image/png"},
                    {"type": "text", "text": "part two"},
                ],
            ),
        ]
        self.assertEqual(latest_user_text(messages), "part one part two")
        self.assertEqual(latest_user_text([]), "")


if __name__ == "__main__":
    unittest.main()
