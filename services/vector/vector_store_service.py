import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from services.openai.client import get_openai_client

logger = logging.getLogger(__name__)

EMBEDDING_MODEL = "text-embedding-3-small"


class VectorStoreUnavailable(RuntimeError):
    """Raised when document search is requested but no database is configured."""


class VectorStoreService:
    def __init__(
        self,
        *,
        client: Any = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self._client = client
        self._session_factory = session_factory
        self._emb_cache: Dict[str, List[float]] = {}

    def _ai(self) -> Any:
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def _sessions(self) -> Callable[[], Session]:
        if self._session_factory is None:
            from database import get_session_factory

            self._session_factory = get_session_factory()
        if self._session_factory is None:
            raise VectorStoreUnavailable("DATABASE_URL is not configured")
        return self._session_factory

    async def get_embedding_cached(self, query: str) -> List[float]:
        key = (query or "").strip()
        if not key:
            return []
        if key in self._emb_cache:
            return self._emb_cache[key]
        response = await self._ai().embeddings.create(
            model=EMBEDDING_MODEL,
            input=[key.replace("\n", " ")],
        )
        vec = list(response.data[0].embedding)
        if vec:
            self._emb_cache[key] = vec
        return vec

    def _to_pgvector_literal(self, vec: List[float]) -> str:
        # pgvector accepts: '[1,2,3]'::vector
        return "[" + ",".join(f"{float(x):.8f}" for x in vec) + "]"

    def _query_chunks(
        self,
        query_vector: List[float],
        symbol: Optional[str],
        limit: int,
    ) -> List[Dict[str, Any]]:
        filter_clause = "WHERE symbol = :s" if symbol else ""
        stmt = text(f"""
            SELECT
                content,
                title,
                url,
                source,
                symbol,
                metadata_info,
                1 - (embedding <=> (:v)::vector) AS similarity
            FROM document_chunks
            {filter_clause}
            ORDER BY embedding <=> (:v)::vector
            LIMIT :l
        """)
        params: Dict[str, Any] = {
            "v": self._to_pgvector_literal(query_vector),
            "l": int(limit),
        }
        if symbol:
            params["s"] = symbol

        session = self._sessions()()
        try:
            rows = session.execute(stmt, params).mappings().all()
        finally:
            session.close()

        out: List[Dict[str, Any]] = []
        for r in rows:
            out.append({
                "content": r.get("content") or "",
                "title": r.get("title"),
                "url": r.get("url"),
                "source": r.get("source"),
                "symbol": r.get("symbol"),
                "metadata": dict(r.get("metadata_info") or {}),
                "score": round(float(r.get("similarity") or 0.0), 4),
            })
        return out

    async def search(
        self,
        query: str,
        *,
        symbol: Optional[str] = None,
        limit: int = 5,
    ) -> List[Dict[str, Any]]:
        """Top-``limit`` passages by cosine similarity, optionally restricted to one symbol."""
        query = (query or "").strip()
        if not query:
            return []
        self._sessions()
        query_vector = await self.get_embedding_cached(query)
        if not query_vector:
            return []
        sym = (symbol or "").strip().upper() or None
        results = await asyncio.to_thread(self._query_chunks, query_vector, sym, limit)
        logger.info("vector.search symbol=%s limit=%s hits=%s", sym or "-", limit, len(results))
        return results
