"""Turns heterogeneous spreadsheet rows into a canonical holdings list.

Column resolution uses an explicit, ordered list of header candidates and
falls back to a fixed column position when none of them is present:

  ticker: ``ticker`` → ``symbol`` → first column
  qty:    ``qty`` → ``quantity`` → second column

Ingestion is lenient: a quantity that is missing, blank or not a number
contributes zero instead of rejecting the file.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Sequence, Union

from services.ai.chat.chat_models import Holding
from utils.common_helpers import is_blank, safe_float

RawRow = Union[Mapping[Any, Any], Sequence[Any]]

TICKER_FIELDS = ("ticker", "symbol")
TICKER_POSITION = 0
QTY_FIELDS = ("qty", "quantity")
QTY_POSITION = 1

_MISSING = object()


def _resolve_field(row: RawRow, candidates: Sequence[str], position: int) -> Any:
    if isinstance(row, Mapping):
        for key in candidates:
            if key in row:
                return row[key]
        keys = list(row.keys())
        if len(keys) > position:
            return row[keys[position]]
        return _MISSING
    if isinstance(row, (list, tuple)) and len(row) > position:
        return row[position]
    return _MISSING


def _ticker_of(row: RawRow) -> str:
    raw = _resolve_field(row, TICKER_FIELDS, TICKER_POSITION)
    if raw is _MISSING or is_blank(raw):
        return ""
    return str(raw).strip().upper()


def _qty_of(row: RawRow) -> float:
    raw = _resolve_field(row, QTY_FIELDS, QTY_POSITION)
    if raw is _MISSING:
        return 0.0
    return safe_float(raw) or 0.0


def normalize_rows_to_holdings(rows: Iterable[RawRow]) -> List[Holding]:
    """Aggregate rows per upper-cased ticker, keeping first-seen order."""
    totals: Dict[str, float] = {}
    for row in rows or []:
        ticker = _ticker_of(row)
        if not ticker:
            continue
        totals[ticker] = totals.get(ticker, 0.0) + _qty_of(row)
    return [Holding(ticker=t, qty=q) for t, q in totals.items()]
