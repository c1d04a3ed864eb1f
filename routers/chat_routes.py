import json
import logging
import os
from typing import Any, List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from middleware.rate_limit import limiter
from services.ai.chat.chat_models import ChatRequest, UploadedFile
from services.ai.chat.chat_orchestrator import ChatOrchestrator
from services.ai.chat.enrichment import EnrichmentFetcher
from services.ai.chat.tool_registry import ChatToolRegistry

logger = logging.getLogger(__name__)

router = APIRouter()

CHAT_RATE_LIMIT = os.getenv("RATE_LIMIT_CHAT", "20/minute")

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "x-vercel-ai-ui-message-stream": "v1",
}


def get_chat_orchestrator(request: Request) -> ChatOrchestrator:
    """One orchestrator per request; the quote gate is shared through app state."""
    gate = getattr(request.app.state, "price_gate", None)
    return ChatOrchestrator(
        tools=ChatToolRegistry.from_env(),
        enrichment=EnrichmentFetcher.from_env(gate=gate),
    )


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": message})


def _messages_from_form(raw: Any) -> List[Any]:
    if not isinstance(raw, str) or not raw.strip():
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.info("chat.form.messages_ignored reason=malformed_json")
        return []
    return parsed if isinstance(parsed, list) else []


async def _read_multipart(request: Request) -> Tuple[ChatRequest, Optional[UploadedFile]]:
    form = await request.form()
    file_field = form.get("file")
    upload: Optional[UploadedFile] = None
    file_name = form.get("fileName") if isinstance(form.get("fileName"), str) else None
    if isinstance(file_field, UploadFile):
        data = await file_field.read()
        upload = UploadedFile(name=file_name or file_field.filename or "upload", data=data)

    image = form.get("imageBase64")
    try:
        req = ChatRequest(
            messages=_messages_from_form(form.get("messages")),
            imageBase64=image if isinstance(image, str) else None,
            fileName=file_name,
        )
    except ValidationError:
        # Messages that parse as JSON but not as UI messages are dropped like malformed ones.
        req = ChatRequest(messages=[], imageBase64=image if isinstance(image, str) else None, fileName=file_name)
    return req, upload


@router.post("/chat")
@limiter.limit(CHAT_RATE_LIMIT)
async def chat_stream(
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    content_type = (request.headers.get("content-type") or "").lower()
    upload: Optional[UploadedFile] = None

    if content_type.startswith("multipart/form-data"):
        try:
            req, upload = await _read_multipart(request)
        except Exception:
            logger.warning("chat.request.invalid_form")
            return _bad_request("Invalid form data")
    else:
        try:
            body = await request.json()
        except ValueError:
            return _bad_request("Invalid JSON")
        try:
            req = ChatRequest.model_validate(body)
        except ValidationError as exc:
            logger.info("chat.request.invalid errors=%s", len(exc.errors()))
            return _bad_request("Invalid request body")

    return StreamingResponse(
        orchestrator.stream_sse(req, upload=upload, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
