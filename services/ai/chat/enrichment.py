"""Best-effort external context for uploaded holdings.

Two sub-fetchers run side by side for each request:

  * web context: one news search per ticker (first ``web_max_tickers``)
  * price context: one quote per ticker (first ``price_max_tickers``),
    spaced by a ``FixedDelayGate`` to stay under the provider's per-minute cap

Neither sub-fetcher raises; a failing ticker or provider just drops out of the
resulting context block. Each sub-fetcher is also cut off after ``budget_s``
so a slow provider cannot use up the request deadline.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from services.ai.chat.chat_models import ConversationMessage
from services.tavily import client as tavily_client

logger = logging.getLogger(__name__)

SearchFn = Callable[..., Awaitable[Any]]
QuoteFn = Callable[[str], Awaitable[Optional[float]]]


class EnrichmentError(RuntimeError):
    """A single enrichment lookup failed; always recovered by the fetcher."""


class FixedDelayGate:
    """Spaces consecutive acquisitions at least ``interval_s`` apart.

    Slots are reserved before sleeping, so concurrent callers on one event
    loop queue up behind each other instead of firing together.
    """

    def __init__(
        self,
        interval_s: float = 1.2,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.interval_s = max(0.0, float(interval_s))
        self._clock = clock
        self._sleep = sleep
        self._next_slot: Optional[float] = None

    async def wait(self) -> None:
        now = self._clock()
        slot = now if self._next_slot is None else max(now, self._next_slot)
        self._next_slot = slot + self.interval_s
        delay = slot - now
        if delay > 0:
            await self._sleep(delay)


@dataclass(frozen=True)
class EnrichmentConfig:
    web_max_tickers: int = 6
    web_max_results: int = 3
    price_max_tickers: int = 5
    price_interval_s: float = 1.2
    # Per sub-fetcher wall-clock budget; must stay well under CHAT_REQUEST_TIMEOUT_S.
    budget_s: float = 8.0

    @classmethod
    def from_env(cls) -> "EnrichmentConfig":
        return cls(
            web_max_tickers=int(os.getenv("ENRICH_WEB_MAX_TICKERS", "6")),
            web_max_results=int(os.getenv("ENRICH_WEB_MAX_RESULTS", "3")),
            price_max_tickers=int(os.getenv("ENRICH_PRICE_MAX_TICKERS", "5")),
            price_interval_s=float(os.getenv("ENRICH_PRICE_INTERVAL_S", "1.2")),
            budget_s=float(os.getenv("ENRICH_BUDGET_S", "8")),
        )


@dataclass
class EnrichmentResult:
    web_snippets: List[Dict[str, Any]] = field(default_factory=list)
    prices: Dict[str, Optional[float]] = field(default_factory=dict)

    @property
    def web_text(self) -> Optional[str]:
        return format_web_context(self.web_snippets)

    @property
    def price_text(self) -> Optional[str]:
        return format_price_context(self.prices)

    def messages(self) -> List[ConversationMessage]:
        """Context messages in fixed order: web first, then prices."""
        out: List[ConversationMessage] = []
        if self.web_text:
            out.append(ConversationMessage.user_text(self.web_text))
        if self.price_text:
            out.append(ConversationMessage.user_text(self.price_text))
        return out


def normalize_tickers(tickers: Iterable[str]) -> List[str]:
    out: List[str] = []
    for t in tickers or []:
        sym = (t or "").strip().upper()
        if sym and sym not in out:
            out.append(sym)
    return out


def format_web_context(snippets: List[Dict[str, Any]]) -> Optional[str]:
    blocks: List[str] = []
    for entry in snippets:
        hits = entry.get("hits") or []
        if not hits:
            continue
        lines = "\n".join(
            f"- {h.get('title') or ''}\n  {h.get('snippet') or ''}\n  {h.get('url') or ''}" for h in hits
        )
        blocks.append(f"Web search for {entry['ticker']}:\n{lines}")
    if not blocks:
        return None
    return "Current web context for holdings:\n" + "\n\n".join(blocks)


def format_price_context(prices: Dict[str, Optional[float]]) -> Optional[str]:
    if not any(v is not None for v in prices.values()):
        return None
    return f"Latest prices (Finnhub): {json.dumps(prices)}"


def _default_quote_fn() -> Optional[QuoteFn]:
    from services.finnhub.finnhub_service import FinnhubService, finnhub_api_key

    if not finnhub_api_key():
        return None
    return FinnhubService().get_price


class EnrichmentFetcher:
    def __init__(
        self,
        *,
        search: Optional[SearchFn] = None,
        quote: Optional[QuoteFn] = None,
        gate: Optional[FixedDelayGate] = None,
        config: Optional[EnrichmentConfig] = None,
    ):
        self.config = config or EnrichmentConfig()
        self._search = search
        self._quote = quote
        self.gate = gate or FixedDelayGate(self.config.price_interval_s)

    @classmethod
    def from_env(cls, *, gate: Optional[FixedDelayGate] = None) -> "EnrichmentFetcher":
        config = EnrichmentConfig.from_env()
        return cls(
            search=tavily_client.search if tavily_client.is_configured() else None,
            quote=_default_quote_fn(),
            gate=gate or FixedDelayGate(config.price_interval_s),
            config=config,
        )

    # ── web ─────────────────────────────────────────────────────────

    async def _search_one(self, ticker: str) -> List[Dict[str, Any]]:
        if self._search is None:
            raise EnrichmentError("web search is not configured")
        try:
            payload = await self._search(
                f"{ticker} stock news",
                max_results=self.config.web_max_results,
            )
        except Exception as exc:
            raise EnrichmentError(f"web search failed for {ticker}") from exc
        return tavily_client.extract_hits(payload, limit=self.config.web_max_results)

    async def fetch_web_context(
        self,
        tickers: List[str],
        into: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """Per-ticker web hits, appended to ``into`` as they arrive."""
        snippets = into if into is not None else []
        if self._search is None:
            logger.info("enrich.web.skip reason=no_provider")
            return snippets
        for ticker in tickers[: self.config.web_max_tickers]:
            try:
                hits = await self._search_one(ticker)
            except EnrichmentError as exc:
                logger.warning(
                    "enrich.web.error ticker=%s err=%s",
                    ticker,
                    type(exc.__cause__).__name__ if exc.__cause__ else "EnrichmentError",
                )
                continue
            if hits:
                snippets.append({"ticker": ticker, "hits": hits})
        logger.info("enrich.web.done tickers=%s with_hits=%s", len(tickers), len(snippets))
        return snippets

    # ── prices ──────────────────────────────────────────────────────

    async def fetch_prices(
        self,
        tickers: List[str],
        into: Optional[Dict[str, Optional[float]]] = None,
    ) -> Dict[str, Optional[float]]:
        """Per-ticker latest price, written to ``into`` as they arrive."""
        out = into if into is not None else {}
        if self._quote is None:
            logger.info("enrich.prices.skip reason=no_credential")
            return out
        for symbol in tickers[: self.config.price_max_tickers]:
            await self.gate.wait()
            try:
                out[symbol] = await self._quote(symbol)
            except Exception as exc:
                logger.warning("enrich.prices.error ticker=%s err=%s", symbol, type(exc).__name__)
                out[symbol] = None
        logger.info(
            "enrich.prices.done tickers=%s priced=%s",
            len(out),
            sum(1 for v in out.values() if v is not None),
        )
        return out

    # ── both ────────────────────────────────────────────────────────

    async def _within_budget(self, name: str, work: Awaitable[Any]) -> None:
        try:
            await asyncio.wait_for(work, timeout=self.config.budget_s)
        except asyncio.TimeoutError:
            logger.warning("enrich.%s.budget_exceeded budget_s=%s", name, self.config.budget_s)
        except Exception as exc:
            logger.warning("enrich.%s.failed err=%s", name, type(exc).__name__)

    async def fetch(self, tickers: Iterable[str]) -> EnrichmentResult:
        """Both sub-fetchers side by side, each cut off at ``budget_s``.

        Whatever a sub-fetcher collected before its budget ran out is kept.
        """
        symbols = normalize_tickers(tickers)
        if not symbols:
            return EnrichmentResult()

        started = time.perf_counter()
        web: List[Dict[str, Any]] = []
        prices: Dict[str, Optional[float]] = {}
        await asyncio.gather(
            self._within_budget("web", self.fetch_web_context(symbols, into=web)),
            self._within_budget("prices", self.fetch_prices(symbols, into=prices)),
        )

        logger.info(
            "enrich.done elapsed_ms=%s web_blocks=%s prices=%s",
            int((time.perf_counter() - started) * 1000),
            len(web),
            len(prices),
        )
        return EnrichmentResult(web_snippets=list(web), prices=dict(prices))
