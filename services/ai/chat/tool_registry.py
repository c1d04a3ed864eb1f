"""Chat tool registry.

The fixed set of tools the model may call during a chat turn:

  * ``web_search``: recent web results via Tavily
  * ``vector_database_search``: passages from indexed documents (pgvector)

Every call returns a ``ToolResult``; bad arguments and provider failures are
reported inside the result instead of raising.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError, field_validator

from services.tavily import client as tavily_client
from services.vector.vector_store_service import VectorStoreService, VectorStoreUnavailable

logger = logging.getLogger(__name__)

SearchFn = Callable[..., Awaitable[Any]]


class ToolResult(BaseModel):
    ok: bool
    tool_name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    data_gaps: list[str] = Field(default_factory=list)
    error: Optional[str] = None


# ── Arg models ─────────────────────────────────────────────────────────

class WebSearchArgs(BaseModel):
    query: str = Field(min_length=1, max_length=400, description="Search query, e.g. 'NVDA earnings guidance'")
    max_results: int = Field(default=5, ge=1, le=10)

    @field_validator("query")
    @classmethod
    def _strip(cls, v: str) -> str:
        return (v or "").strip()


class VectorSearchArgs(BaseModel):
    query: str = Field(min_length=1, max_length=400, description="Natural-language question to match passages")
    symbol: Optional[str] = Field(default=None, max_length=32, description="Restrict to one ticker")
    limit: int = Field(default=5, ge=1, le=10)

    @field_validator("query")
    @classmethod
    def _strip(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("symbol")
    @classmethod
    def _normalize(cls, v: Optional[str]) -> Optional[str]:
        out = (v or "").strip().upper()
        return out or None


TOOL_ARGS: Dict[str, Type[BaseModel]] = {
    "web_search": WebSearchArgs,
    "vector_database_search": VectorSearchArgs,
}

TOOL_DESCRIPTIONS: Dict[str, str] = {
    "web_search": "Search the web for recent news, events and market commentary. Returns title, snippet and url per result.",
    "vector_database_search": "Search indexed filings and research documents for passages relevant to a question.",
}

# Per-tool timeout (seconds).
TOOL_TIMEOUTS: Dict[str, float] = {
    "web_search": 12.0,
    "vector_database_search": 10.0,
}


class ChatToolRegistry:
    def __init__(
        self,
        *,
        search: Optional[SearchFn] = None,
        vector_store: Optional[VectorStoreService] = None,
    ):
        self._search = search
        self._vector_store = vector_store

    @classmethod
    def from_env(cls) -> "ChatToolRegistry":
        return cls(
            search=tavily_client.search if tavily_client.is_configured() else None,
            vector_store=VectorStoreService(),
        )

    def definitions(self) -> List[Dict[str, Any]]:
        """Function-tool schemas in the OpenAI ``tools`` format."""
        out: List[Dict[str, Any]] = []
        for name, model in TOOL_ARGS.items():
            out.append(
                {
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": TOOL_DESCRIPTIONS[name],
                        "parameters": model.model_json_schema(),
                    },
                }
            )
        return out

    # ── dispatch ────────────────────────────────────────────────────

    async def execute(self, tool_name: str, arguments: Dict[str, Any]) -> ToolResult:
        try:
            if tool_name == "web_search":
                parsed = WebSearchArgs(**(arguments or {}))
                return await self._web_search(parsed)
            if tool_name == "vector_database_search":
                parsed = VectorSearchArgs(**(arguments or {}))
                return await self._vector_search(parsed)
            return ToolResult(
                ok=False,
                tool_name=tool_name,
                error=f"Unsupported tool: {tool_name}",
                data_gaps=["Unsupported tool"],
            )
        except ValidationError as exc:
            return ToolResult(
                ok=False,
                tool_name=tool_name,
                error=f"Invalid tool arguments: {exc.errors(include_url=False)}",
                data_gaps=["Invalid tool arguments"],
            )
        except Exception as exc:
            logger.exception("ChatToolRegistry.execute error tool=%s", tool_name)
            return ToolResult(
                ok=False,
                tool_name=tool_name,
                error=f"Tool execution failed: {type(exc).__name__}",
                data_gaps=["Tool execution failed"],
            )

    # ── tools ───────────────────────────────────────────────────────

    async def _web_search(self, args: WebSearchArgs) -> ToolResult:
        if self._search is None:
            return ToolResult(
                ok=False,
                tool_name="web_search",
                data={"query": args.query},
                data_gaps=["Web search unavailable"],
                error="Web search is not configured",
            )
        payload = await self._search(args.query, max_results=args.max_results)
        hits = tavily_client.extract_hits(payload, limit=args.max_results)
        if not hits:
            return ToolResult(
                ok=True,
                tool_name="web_search",
                data={"query": args.query, "results": []},
                data_gaps=["No results"],
            )
        return ToolResult(ok=True, tool_name="web_search", data={"query": args.query, "results": hits})

    async def _vector_search(self, args: VectorSearchArgs) -> ToolResult:
        if self._vector_store is None:
            return ToolResult(
                ok=False,
                tool_name="vector_database_search",
                data={"query": args.query},
                data_gaps=["Document search unavailable"],
                error="Document search is not configured",
            )
        try:
            passages = await self._vector_store.search(args.query, symbol=args.symbol, limit=args.limit)
        except VectorStoreUnavailable:
            return ToolResult(
                ok=False,
                tool_name="vector_database_search",
                data={"query": args.query},
                data_gaps=["Document search unavailable"],
                error="Document search is not configured",
            )
        data = {"query": args.query, "symbol": args.symbol, "passages": passages}
        gaps = [] if passages else ["No matching passages"]
        return ToolResult(ok=True, tool_name="vector_database_search", data=data, data_gaps=gaps)
