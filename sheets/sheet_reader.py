#!/usr/bin/env python3
"""
sheet_reader.py

Loads a Matrixify-style export (.xlsx/.xls or .csv) into a list of flat row
dicts. Empty cells come back as None so the rest of the code never has to
deal with NaN.
"""

from __future__ import annotations

import logging
import pathlib
import re
from datetime import datetime

import pandas as pd

EXCEL_SUFFIXES = {".xlsx", ".xlsm", ".xls"}
MATRIXIFY_DATETIME_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}) (\d{2}:\d{2}:\d{2}) ([+-]\d{2})(\d{2})$")


def to_iso_datetime(value) -> str | None:
    """Matrixify's `YYYY-MM-DD HH:MM:SS -0500` (or an Excel datetime) as ISO-8601; None if unparseable."""
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    match = MATRIXIFY_DATETIME_RE.match(text)
    if match:
        return f"{match.group(1)}T{match.group(2)}{match.group(3)}:{match.group(4)}"
    try:
        return pd.to_datetime(text, utc=True).isoformat()
    except (ValueError, TypeError):
        logging.warning(f"⚠️ Invalid DateTime value skipped: {text!r}")
        return None


def pick_sheet(available: list[str], wanted: list[str] | None) -> str:
    """Case-insensitive sheet selection; the first sheet when nothing is requested."""
    if not available:
        raise ValueError("Workbook has no sheets.")
    if not wanted:
        return available[0]
    by_name = {str(name).strip().lower(): name for name in available}
    for name in wanted:
        match = by_name.get(name.strip().lower())
        if match is not None:
            return match
    raise ValueError(f"Missing sheet {wanted[0]!r}. Found: {', '.join(map(str, available))}")


def frame_to_rows(df: pd.DataFrame) -> list[dict]:
    df = df.rename(columns=lambda c: str(c).strip())
    df = df.astype(object).where(pd.notna(df), None)
    return df.to_dict(orient="records")


def read_rows(path: str | pathlib.Path, sheet_names: list[str] | None = None) -> list[dict]:
    path = pathlib.Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    print(f"Loading rows from '{path}'...")
    if path.suffix.lower() in EXCEL_SUFFIXES:
        with pd.ExcelFile(path) as workbook:
            sheet = pick_sheet(workbook.sheet_names, sheet_names)
            df = workbook.parse(sheet, dtype=object)
        logging.info(f"Using sheet '{sheet}'")
    else:
        df = pd.read_csv(path, dtype=str, keep_default_na=True)

    rows = frame_to_rows(df)
    print(f"✅ Loaded {len(rows)} raw row(s)")
    return rows
