#!/usr/bin/env python3
"""
file_upload.py

Uploads the documents referenced by a sheet into the TARGET store's Files.

For every row and every configured file column (URL or local path):
  download / read → stagedUploadsCreate → POST to the staged target →
  fileCreate → poll until READY.
The File ID, URL and handle are written back next to the source column.

Rows run on a small thread pool (2 workers by default). A failing row is
marked FAILED and the others carry on. The report is rewritten every 10
finished rows and once more at the end.

Usage:
    python -m admin_api.file_upload documents.xlsx
    python -m admin_api.file_upload documents.xlsx --columns "Product Sellsheet" --workers 2
"""

from __future__ import annotations

import argparse
import logging
import mimetypes
import pathlib
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from urllib.parse import unquote, urlparse

import requests

from admin_api.errors import TransportError
from admin_api.shopify_client import ShopifyClient
from reconcile.row_grouper import is_empty
from reconcile.run_driver import RunStats, setup_logging
from sheets.report_writer import ReportWriter, default_report_path
from sheets.sheet_reader import read_rows

DEFAULT_FILE_COLUMNS = ("Product Sellsheet", "Shelftalker PDF File")
ID_COLUMN = "ID"
TIMEOUT_MESSAGE = "Timed out waiting for READY (try re-running poll later)"


def looks_like_url(value: str) -> bool:
    return urlparse(value).scheme in ("http", "https")


def filename_from_url(url: str) -> str:
    name = pathlib.PurePosixPath(unquote(urlparse(url).path)).name
    return name or "document"


def handle_from_url(url: str) -> str:
    """Shopify file handle: the CDN file name without its extension."""
    if not url:
        return ""
    return pathlib.PurePosixPath(urlparse(url).path).stem


def guess_mime_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


def load_source(source: str, session: requests.Session | None = None) -> tuple[bytes, str]:
    """Bytes and file name of a URL or a local path."""
    source = source.strip()
    if looks_like_url(source):
        http = session or requests
        try:
            resp = http.get(source, timeout=60)
        except requests.RequestException as e:
            raise TransportError(f"Download failed for {source}: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise TransportError(f"Download failed HTTP {resp.status_code} for {source}", status=resp.status_code)
        if not resp.content:
            raise TransportError(f"Downloaded empty file for {source}")
        return resp.content, filename_from_url(source)

    path = pathlib.Path(source)
    if not path.exists():
        raise FileNotFoundError(f"Local file not found: {path}")
    return path.read_bytes(), path.name


def report_columns(column: str) -> dict[str, str]:
    return {
        "id": f"{column} - Shopify File ID",
        "url": f"{column} - Shopify URL",
        "handle": f"{column} - Shopify Handle",
        "status": f"{column} - Shopify Status",
        "error": f"{column} - Error",
    }


class FileUploadPipeline:
    def __init__(
        self,
        client: ShopifyClient,
        columns=DEFAULT_FILE_COLUMNS,
        id_column: str = ID_COLUMN,
        workers: int = 2,
        checkpoint_every: int = 10,
        poll_timeout: float = 600,
    ):
        self.client = client
        self.columns = list(columns)
        self.id_column = id_column
        self.workers = workers
        self.checkpoint_every = checkpoint_every
        self.poll_timeout = poll_timeout
        self._session = requests.Session()
        self._lock = threading.Lock()
        self._processed = 0

    def upload_one(self, row_id, label: str, source: str) -> dict:
        content, filename = load_source(source, self._session)
        mime_type = guess_mime_type(filename)
        logging.info(f"⬆️  [{row_id}] {label}: {filename} ({len(content)} bytes)")

        target = self.client.staged_upload(filename, len(content), mime_type)
        self.client.upload_to_staged_target(target, content, filename, mime_type)
        created = self.client.file_create(
            target["resourceUrl"],
            alt=f"{row_id} - {label}",
            content_type="IMAGE" if mime_type.startswith("image/") else "FILE",
        )
        polled = self.client.wait_for_file_ready(created["id"], timeout=self.poll_timeout)
        return {
            "id": created["id"],
            "url": polled.get("url") or "",
            "handle": handle_from_url(polled.get("url") or ""),
            "status": polled.get("status") or "",
            "timed_out": polled.get("timed_out", False),
        }

    def process_row(self, row: dict) -> str:
        """Upload every file cell of `row`, writing results into it. Returns the row status."""
        row_id = row.get(self.id_column)
        try:
            uploaded = 0
            for column in self.columns:
                source = row.get(column)
                if is_empty(source):
                    continue
                names = report_columns(column)
                result = self.upload_one(row_id, column, str(source))
                row[names["id"]] = result["id"]
                row[names["url"]] = result["url"]
                row[names["handle"]] = result["handle"]
                row[names["status"]] = result["status"]
                if result["timed_out"]:
                    row[names["error"]] = TIMEOUT_MESSAGE
                uploaded += 1
            row["Row Status"] = "OK" if uploaded else "SKIPPED"
        except Exception as e:
            logging.error(f"❌ Row {row_id} failed: {e}")
            row["Row Status"] = "FAILED"
            row["Row Error"] = str(e)
            for column in self.columns:
                names = report_columns(column)
                if not is_empty(row.get(column)) and not row.get(names["id"]) and not row.get(names["error"]):
                    row[names["error"]] = str(e)
        return row["Row Status"]

    def run(self, rows: list[dict], report: ReportWriter) -> RunStats:
        report_rows = []
        for source_row in rows:
            row = dict(source_row)
            for column in self.columns:
                for name in report_columns(column).values():
                    row.setdefault(name, "")
            row["Row Status"] = ""
            row["Row Error"] = ""
            report_rows.append(row)

        stats = RunStats()
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = {executor.submit(self.process_row, row): row for row in report_rows}
            for future in as_completed(futures):
                status = future.result()
                with self._lock:
                    if status == "OK":
                        stats.created += 1
                    elif status == "SKIPPED":
                        stats.skipped += 1
                    else:
                        stats.failed += 1
                    self._processed += 1
                    if self._processed % self.checkpoint_every == 0:
                        report.write(report_rows)
                        logging.info(f"💾 Checkpoint report written ({self._processed}/{len(report_rows)})")

        report.write(report_rows)
        print(stats.summary("File upload"))
        print(f"📄 Report: {report.path}")
        return stats


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Upload sheet-referenced files to the TARGET store.")
    parser.add_argument("sheet", help="Path to the .xlsx/.csv sheet.")
    parser.add_argument("--columns", nargs="+", default=list(DEFAULT_FILE_COLUMNS),
                        help="Columns holding a URL or local path.")
    parser.add_argument("--id-column", default=ID_COLUMN, help="Column used to label uploads.")
    parser.add_argument("--workers", type=int, default=2, help="Parallel rows (default: 2).")
    parser.add_argument("--report", help="Report path (.xlsx or .csv).")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    print("🚀 Starting file upload ...")
    client = ShopifyClient("TARGET")
    rows = read_rows(args.sheet)
    pipeline = FileUploadPipeline(client, columns=args.columns, id_column=args.id_column, workers=args.workers)
    report = ReportWriter(args.report or default_report_path("files"))
    stats = pipeline.run(rows, report)
    return stats.exit_code


if __name__ == "__main__":
    sys.exit(main())
