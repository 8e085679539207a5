#!/usr/bin/env python3
"""
report_writer.py

Per-run report file: one row per input record, the input columns echoed
back plus status columns. The whole file is rewritten on every flush so a
crash mid-run still leaves the finished rows on disk.
"""

from __future__ import annotations

import logging
import pathlib
import threading
from datetime import datetime

import pandas as pd


def default_report_path(kind: str, suffix: str = ".xlsx", directory: str = "reports") -> pathlib.Path:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return pathlib.Path(directory) / f"{kind}_report_{timestamp}{suffix}"


class ReportWriter:
    def __init__(self, path: str | pathlib.Path, checkpoint_every: int = 1):
        self.path = pathlib.Path(path)
        self.checkpoint_every = max(1, checkpoint_every)
        self.rows: list[dict] = []
        self._lock = threading.Lock()

    def append(self, row: dict) -> None:
        with self._lock:
            self.rows.append(row)
            if len(self.rows) % self.checkpoint_every == 0:
                self._write()

    def write(self, rows: list[dict] | None = None) -> None:
        """Replace the buffered rows (when given) and rewrite the file."""
        with self._lock:
            if rows is not None:
                self.rows = rows
            self._write()

    def flush(self) -> None:
        self.write()

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        df = pd.DataFrame(self.rows)
        if self.path.suffix.lower() == ".csv":
            df.to_csv(self.path, index=False)
        else:
            df.to_excel(self.path, index=False, sheet_name="Report")
        logging.debug(f"Report written: {self.path} ({len(self.rows)} rows)")
