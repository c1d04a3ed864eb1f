import json
import unittest

from pydantic import ValidationError

from services.ai.chat.chat_models import (
    SSE_DONE,
    ChatRequest,
    ConversationMessage,
    Holding,
    StreamEvent,
    format_sse,
)


class ChatModelsTests(unittest.TestCase):
    def test_request_aliases_and_blank_fields(self) -> None:
        req = ChatRequest.model_validate(
            {
                "messages": [{"id": "m1", "role": "user", "parts": [{"type": "text", "text": "hi"}]}],
                "imageBase64": "   ",
                "fileName": "pf.csv",
            }
        )
        self.assertIsNone(req.image_base64)
        self.assertEqual(req.file_name, "pf.csv")
        self.assertEqual(req.messages[0].parts[0].text, "hi")

    def test_unknown_role_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            ChatRequest.model_validate({"messages": [{"role": "tool", "parts": []}]})

    def test_ui_parts_keep_unknown_fields(self) -> None:
        req = ChatRequest.model_validate(
            {"messages": [{"role": "assistant", "parts": [{"type": "step-start"}, {"type": "tool-web_search", "state": "done"}]}]}
        )
        self.assertEqual(req.messages[0].parts[1].type, "tool-web_search")

    def test_conversation_is_immutable(self) -> None:
        msg = ConversationMessage.user_text("a", "b")
        self.assertEqual(msg.text(), "ab")
        self.assertEqual(msg.text(sep=" "), "a b")
        with self.assertRaises(ValidationError):
            msg.role = "assistant"

    def test_holding_requires_ticker(self) -> None:
        with self.assertRaises(ValidationError):
            Holding(ticker="")
        self.assertEqual(Holding(ticker="AAPL").qty, 0.0)

    def test_sse_frame_omits_empty_fields(self) -> None:
        raw = format_sse(StreamEvent.text_delta("t1", "Hello"))
        self.assertTrue(raw.startswith("data: "))
        self.assertTrue(raw.endswith("\n\n"))
        self.assertEqual(json.loads(raw[len("data: "):]), {"type": "text-delta", "id": "t1", "delta": "Hello"})

    def test_error_and_finish_frames(self) -> None:
        err = json.loads(format_sse(StreamEvent.error("timeout", "late"))[6:])
        self.assertEqual(err, {"type": "error", "kind": "timeout", "message": "late"})
        fin = json.loads(format_sse(StreamEvent.finish("stop"))[6:])
        self.assertEqual(fin, {"type": "finish", "finish_reason": "stop"})
        self.assertEqual(SSE_DONE, "data: [DONE]\n\n")


if __name__ == "__main__":
    unittest.main()
