"""Builds the model-facing conversation for one chat request.

Layers, in order:
  1. Prior turns converted from UI messages
  2. Upload artifact (holdings block or a "could not parse" note)
     (or, without an upload, an attached image merged into the last turn)
  3. Enrichment context (web first, then prices)

Also assembles the system prompt (persona, tool manifest, upload rules).
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Literal, Optional, Sequence, Tuple

from services.ai.chat.chat_models import (
    ConversationMessage,
    FilePart,
    Holding,
    ImagePart,
    TextPart,
    UIMessage,
    UploadedFile,
)
from services.ai.chat.chat_prompts import (
    build_finance_system_prompt,
    build_tool_manifest_prompt,
    build_upload_rules_prompt,
)
from services.ai.chat.enrichment import EnrichmentResult
from services.ai.chat.file_parser import ParseError, UnsupportedFileType, parse_holdings_file
from services.ai.chat.holdings_normalizer import normalize_rows_to_holdings

logger = logging.getLogger(__name__)

HOLDINGS_TAG = "HOLDINGS_JSON"

UploadStatus = Literal["holdings", "unsupported", "unparsed"]


# ── Upload → holdings ──────────────────────────────────────────────────

@dataclass(frozen=True)
class UploadOutcome:
    file_name: str
    status: UploadStatus
    holdings: List[Holding] = field(default_factory=list)

    @property
    def tickers(self) -> List[str]:
        return [h.ticker for h in self.holdings]


def process_upload(upload: UploadedFile) -> UploadOutcome:
    """Parse + normalize an uploaded file. Never raises for bad input."""
    name = upload.name or "upload"
    try:
        rows = parse_holdings_file(upload.data, name)
    except UnsupportedFileType:
        logger.info("upload.unsupported file_ext=%s", name.rsplit(".", 1)[-1].lower() if "." in name else "-")
        return UploadOutcome(file_name=name, status="unsupported")
    except ParseError:
        logger.warning("upload.parse_error", exc_info=True)
        return UploadOutcome(file_name=name, status="unparsed")

    holdings = normalize_rows_to_holdings(rows)
    logger.info("upload.holdings rows=%s holdings=%s", len(rows), len(holdings))
    if not holdings:
        return UploadOutcome(file_name=name, status="unparsed")
    return UploadOutcome(file_name=name, status="holdings", holdings=holdings)


def holdings_block(holdings: Sequence[Holding]) -> str:
    payload = json.dumps({"holdings": [h.model_dump() for h in holdings]}, ensure_ascii=True)
    return f"<{HOLDINGS_TAG}>{payload}</{HOLDINGS_TAG}>"


def upload_message(outcome: UploadOutcome) -> ConversationMessage:
    if outcome.status == "holdings":
        return ConversationMessage.user_text(
            f"User uploaded file {outcome.file_name} with detected holdings:",
            holdings_block(outcome.holdings),
        )
    if outcome.status == "unsupported":
        return ConversationMessage.user_text(
            f"I uploaded a file named {outcome.file_name} but the server could not parse its type. "
            "Please upload CSV or XLSX."
        )
    return ConversationMessage.user_text(
        f"I uploaded a file named {outcome.file_name} but it could not be parsed into holdings. "
        "Expected ticker/symbol and qty/quantity columns."
    )


# ── UI messages → model messages ────────────────────────────────────────

def _decode_data_url(url: str) -> Optional[Tuple[str, bytes]]:
    if not url.startswith("data:") or "," not in url:
        return None
    header, encoded = url[5:].split(",", 1)
    media_type = header.split(";", 1)[0] or "application/octet-stream"
    try:
        data = base64.b64decode(encoded, validate=False) if ";base64" in header else encoded.encode("utf-8")
    except (binascii.Error, ValueError):
        return None
    return media_type, data


def to_conversation(messages: Sequence[UIMessage]) -> List[ConversationMessage]:
    out: List[ConversationMessage] = []
    for msg in messages:
        parts: list = []
        for part in msg.parts:
            if part.type == "text":
                if part.text:
                    parts.append(TextPart(text=part.text))
                continue
            if part.type != "file" or not part.url or msg.role != "user":
                continue
            media_type = part.media_type or ""
            if media_type.startswith("image/"):
                parts.append(ImagePart(image=part.url, media_type=media_type))
                continue
            decoded = _decode_data_url(part.url)
            if decoded is None:
                logger.info("assembler.file_part_skipped media_type=%s", media_type or "-")
                continue
            parts.append(
                FilePart(
                    name=part.filename or "attachment",
                    media_type=media_type or decoded[0],
                    data=decoded[1],
                )
            )
        if parts:
            out.append(ConversationMessage(role=msg.role, parts=tuple(parts)))
    return out


def merge_image_into_last_turn(
    messages: Sequence[ConversationMessage],
    image: str,
) -> List[ConversationMessage]:
    image_part = ImagePart(image=image)
    if not messages:
        return [ConversationMessage(role="user", parts=(image_part,))]

    last_text = messages[-1].text(sep=" ")
    parts: list = [TextPart(text=last_text)] if last_text else []
    parts.append(image_part)
    return [*messages[:-1], ConversationMessage(role="user", parts=tuple(parts))]


# ── Public API ──────────────────────────────────────────────────────────

def assemble_conversation(
    prior: Sequence[ConversationMessage],
    *,
    image: Optional[str] = None,
    upload: Optional[UploadOutcome] = None,
    enrichment: Optional[EnrichmentResult] = None,
) -> Tuple[ConversationMessage, ...]:
    """Final ordered message sequence handed to the model (immutable)."""
    messages: List[ConversationMessage] = list(prior)

    if upload is not None:
        if image:
            logger.warning("assembler.image_dropped reason=file_upload_takes_precedence")
        messages.append(upload_message(upload))
        if enrichment is not None:
            messages.extend(enrichment.messages())
    elif image:
        messages = merge_image_into_last_turn(messages, image)

    return tuple(messages)


def build_system_prompt(now: Optional[datetime] = None) -> str:
    """Build the full multi-layer system prompt."""
    parts: list[str] = []

    # Layer 1: base persona
    parts.append(build_finance_system_prompt().strip())

    # Layer 2: tool manifest
    parts.append(build_tool_manifest_prompt().strip())

    # Layer 3: uploaded holdings handling
    parts.append(build_upload_rules_prompt(HOLDINGS_TAG).strip())

    # Layer 4: clock
    ts = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M UTC")
    parts.append(f"<date_time>\n{ts}\n</date_time>")

    return "\n\n".join(parts)
