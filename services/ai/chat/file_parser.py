"""Uploaded holdings files → raw rows.

CSV/TXT are read as delimited text with a header row; XLS/XLSX use the first
sheet only. Cells are read as strings so that quantity coercion stays with
the holdings normalizer.
"""
from __future__ import annotations

import io
import logging
from typing import Any, Dict, List

import pandas as pd

logger = logging.getLogger(__name__)

DELIMITED_EXTENSIONS = {".csv", ".txt"}
EXCEL_EXTENSIONS = {".xls", ".xlsx"}
SUPPORTED_EXTENSIONS = DELIMITED_EXTENSIONS | EXCEL_EXTENSIONS


class ParseError(Exception):
    """Raised when an uploaded file cannot be read into rows."""


class UnsupportedFileType(ParseError):
    """Raised when the file extension is not one we know how to read."""


def file_extension(file_name: str) -> str:
    name = (file_name or "").strip().lower()
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def _frame_to_rows(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    frame = frame.dropna(how="all")
    frame.columns = [str(c).strip() for c in frame.columns]
    return frame.to_dict(orient="records")


def parse_holdings_file(data: bytes, file_name: str) -> List[Dict[str, Any]]:
    ext = file_extension(file_name)
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFileType(f"Unsupported file type: {ext or 'none'}")
    if not data:
        return []

    try:
        if ext in DELIMITED_EXTENSIONS:
            frame = pd.read_csv(
                io.BytesIO(data),
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                encoding="utf-8-sig",
            )
        else:
            frame = pd.read_excel(
                io.BytesIO(data),
                sheet_name=0,
                dtype=str,
                keep_default_na=False,
                engine="openpyxl" if ext == ".xlsx" else "xlrd",
            )
    except pd.errors.EmptyDataError:
        return []
    except Exception as exc:
        raise ParseError(f"Could not read {ext} file: {type(exc).__name__}") from exc

    rows = _frame_to_rows(frame)
    logger.info("upload.parsed ext=%s rows=%s columns=%s", ext, len(rows), len(frame.columns))
    return rows
