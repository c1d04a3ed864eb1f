from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


Role = Literal["system", "user", "assistant"]


# ── Holdings ────────────────────────────────────────────────────────────

class Holding(BaseModel):
    ticker: str = Field(min_length=1)
    qty: float = 0.0


# ── Model-facing conversation ───────────────────────────────────────────

class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Image as raw base64, a ``data:`` URL or an http(s) URL."""

    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    image: str
    media_type: Optional[str] = None


class FilePart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["file"] = "file"
    name: str
    media_type: str
    data: bytes


Part = Annotated[Union[TextPart, ImagePart, FilePart], Field(discriminator="type")]


class ConversationMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    parts: Tuple[Part, ...] = ()

    def text(self, sep: str = "") -> str:
        return sep.join(p.text for p in self.parts if isinstance(p, TextPart))

    @classmethod
    def user_text(cls, *texts: str) -> "ConversationMessage":
        return cls(role="user", parts=tuple(TextPart(text=t) for t in texts))


# ── Wire input (UI messages from the chat client) ───────────────────────

class UIMessagePart(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str
    text: Optional[str] = None
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    url: Optional[str] = None
    filename: Optional[str] = None


class UIMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    role: Role
    parts: List[UIMessagePart] = Field(default_factory=list)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[UIMessage] = Field(default_factory=list, max_length=200)
    image_base64: Optional[str] = Field(default=None, alias="imageBase64")
    file_name: Optional[str] = Field(default=None, alias="fileName", max_length=256)

    @field_validator("image_base64", "file_name")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        return v or None


@dataclass(frozen=True)
class UploadedFile:
    name: str
    data: bytes


# ── Outbound stream protocol ────────────────────────────────────────────

StreamEventType = Literal[
    "start",
    "text-start",
    "text-delta",
    "text-end",
    "reasoning-start",
    "reasoning-delta",
    "reasoning-end",
    "tool-call",
    "tool-result",
    "finish",
    "error",
]

ErrorKind = Literal["moderation", "model", "timeout", "internal"]


class StreamEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: StreamEventType
    id: Optional[str] = None
    delta: Optional[str] = None
    name: Optional[str] = None
    args: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    finish_reason: Optional[str] = None
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def start(cls) -> "StreamEvent":
        return cls(type="start")

    @classmethod
    def text_start(cls, id: str) -> "StreamEvent":
        return cls(type="text-start", id=id)

    @classmethod
    def text_delta(cls, id: str, delta: str) -> "StreamEvent":
        return cls(type="text-delta", id=id, delta=delta)

    @classmethod
    def text_end(cls, id: str) -> "StreamEvent":
        return cls(type="text-end", id=id)

    @classmethod
    def reasoning_start(cls, id: str) -> "StreamEvent":
        return cls(type="reasoning-start", id=id)

    @classmethod
    def reasoning_delta(cls, id: str, delta: str) -> "StreamEvent":
        return cls(type="reasoning-delta", id=id, delta=delta)

    @classmethod
    def reasoning_end(cls, id: str) -> "StreamEvent":
        return cls(type="reasoning-end", id=id)

    @classmethod
    def tool_call(cls, id: str, name: str, args: Dict[str, Any]) -> "StreamEvent":
        return cls(type="tool-call", id=id, name=name, args=args)

    @classmethod
    def tool_result(cls, id: str, result: Dict[str, Any]) -> "StreamEvent":
        return cls(type="tool-result", id=id, result=result)

    @classmethod
    def finish(cls, finish_reason: Optional[str] = None) -> "StreamEvent":
        return cls(type="finish", finish_reason=finish_reason)

    @classmethod
    def error(cls, kind: ErrorKind, message: str) -> "StreamEvent":
        return cls(type="error", kind=kind, message=message)


SSE_DONE = "data: [DONE]\n\n"


def format_sse(event: StreamEvent) -> str:
    payload = json.dumps(
        event.model_dump(exclude_none=True),
        separators=(",", ":"),
        ensure_ascii=True,
        default=str,
    )
    return f"data: {payload}\n\n"
