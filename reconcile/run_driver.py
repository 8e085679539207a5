#!/usr/bin/env python3
"""
run_driver.py

Shared runner for every migration script.

Records are processed strictly one after another. Each record is wrapped in
a catch-all: an error is logged with the record's label, counted as failed,
and the run moves on to the next record. The summary at the end always
prints, and the exit code is non-zero when anything failed.
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from admin_api.errors import PreconditionSkip

CREATED = "CREATED"
UPDATED = "UPDATED"
SKIPPED = "SKIPPED"
FAILED = "FAILED"

# What to do when the record already exists on the target, per entity kind.
ON_EXISTING_DEFAULTS = {
    "company": "update",
    "company_sheet": "update",
    "customer": "update",
    "customer_sheet": "skip",
    "collection": "skip",
    "product": "update",
    "product_sheet": "skip",
}


@dataclass
class RecordResult:
    status: str
    identifier: str | None = None
    reason: str = ""
    # children (locations, contacts) that failed while the parent succeeded
    child_failures: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class RunStats:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def record(self, result: RecordResult) -> None:
        if result.status == CREATED:
            self.created += 1
        elif result.status == UPDATED:
            self.updated += 1
        elif result.status == SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        self.failed += result.child_failures

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def summary(self, label: str) -> str:
        return (
            f"\n📊 {label} completed.\n"
            f"   ✅ Created: {self.created}\n"
            f"   🔄 Updated: {self.updated}\n"
            f"   🔁 Skipped: {self.skipped}\n"
            f"   ❌ Failed:  {self.failed}"
        )


class RunDriver:
    def __init__(
        self,
        label: str,
        report=None,
        report_row: Callable[[Any], dict] | None = None,
        id_column: str = "Target ID",
        failures_path: str | pathlib.Path | None = None,
    ):
        self.label = label
        self.report = report
        self.report_row = report_row
        self.id_column = id_column
        self.failures_path = pathlib.Path(failures_path) if failures_path else None
        self.stats = RunStats()

    def run(self, records: Iterable, process: Callable[[Any], RecordResult],
            describe: Callable[[Any], str] = str) -> RunStats:
        total = len(records) if hasattr(records, "__len__") else "?"
        for index, record in enumerate(records, start=1):
            name = describe(record)
            logging.info(f"\n➡️  [{index}/{total}] {self.label}: {name}")
            try:
                result = process(record)
            except PreconditionSkip as e:
                logging.warning(f"🟡 Skipping {name}: {e}")
                result = RecordResult(SKIPPED, reason=str(e))
            except Exception as e:
                logging.error(f"❌ Failed {name}: {e}")
                self.stats.failed += 1
                self._write_report(record, RecordResult(FAILED, reason=str(e)))
                self._append_failure(index, name, e)
                continue

            self.stats.record(result)
            if result.child_failures:
                logging.warning(f"⚠️ {name}: {result.child_failures} child step(s) failed")
            self._write_report(record, result)

        print(self.stats.summary(self.label))
        return self.stats

    def _write_report(self, record, result: RecordResult) -> None:
        if self.report is None:
            return
        row = dict(self.report_row(record)) if self.report_row else {}
        row["Status"] = result.status
        row["Reason"] = result.reason
        row[self.id_column] = result.identifier or ""
        row.update(result.extra)
        self.report.append(row)

    def _append_failure(self, index: int, name: str, error: Exception) -> None:
        if self.failures_path is None:
            return
        entries = []
        if self.failures_path.exists():
            with open(self.failures_path, "r", encoding="utf-8") as f:
                entries = json.load(f)
        entries.append({
            "index": index,
            "record": name,
            "reason": str(error),
            "at": datetime.now().isoformat(timespec="seconds"),
        })
        self.failures_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.failures_path, "w", encoding="utf-8") as f:
            json.dump(entries, f, indent=2)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )


def load_manifest(path: str | pathlib.Path, list_key: str = "companies") -> list[str]:
    """
    Read record identifiers from a manifest file.

    `.json` files may hold a bare list or an object such as
    {"companies": [...]}; any other file is read as one identifier per line.
    """
    path = pathlib.Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Manifest not found: {path}")

    if path.suffix.lower() == ".json":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get(list_key, [])
        return [str(item).strip() for item in data if str(item).strip()]

    with open(path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip() and not line.startswith("#")]


def add_common_arguments(parser: argparse.ArgumentParser, kind: str | None = None) -> None:
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    if kind is not None:
        parser.add_argument(
            "--on-existing",
            choices=["skip", "update"],
            default=ON_EXISTING_DEFAULTS[kind],
            help=f"What to do when the record already exists on the target (default: {ON_EXISTING_DEFAULTS[kind]}).",
        )
