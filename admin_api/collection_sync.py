#!/usr/bin/env python3
"""
collection_sync.py

Collections into the TARGET store, from either:

  sheet   a Matrixify "Collections" export. One collection spans several
          rows (one per product); rows are grouped by Handle. Products are
          resolved to TARGET ids by handle, unresolved ones are left out.
  store   the SOURCE store's collections, rule sets included, published to
          the TARGET channels whose app handle matches the source ones.

Existing collections (matched by handle) are skipped unless
--on-existing update is given.

Usage:
    python -m admin_api.collection_sync sheet collections.xlsx --dry-run
    python -m admin_api.collection_sync store --query "title:Summer*"
"""

from __future__ import annotations

import argparse
import logging
import sys

from admin_api.shopify_client import ShopifyClient
from reconcile.key_resolver import KeyResolver, RunContext
from reconcile.metafields import (
    connection_nodes,
    detect_metafield_columns,
    ensure_metafield_definitions,
    metafields_from_row,
    sanitize_metafields,
    to_bool,
)
from reconcile.row_grouper import ListField, MergeGroup, MergeSpec, group, is_empty
from reconcile.run_driver import (
    CREATED,
    SKIPPED,
    UPDATED,
    RecordResult,
    RunDriver,
    add_common_arguments,
    setup_logging,
)
from sheets.report_writer import ReportWriter, default_report_path
from sheets.sheet_reader import read_rows

SORT_ORDERS = {
    "alphabet": "ALPHA_ASC",
    "alphabet descending": "ALPHA_DESC",
    "best selling": "BEST_SELLING",
    "created": "CREATED",
    "created descending": "CREATED_DESC",
    "manual": "MANUAL",
    "price": "PRICE_ASC",
    "price descending": "PRICE_DESC",
}

SEO_KEYS = ("title_tag", "description_tag")
ONLINE_STORE = "online store"


def normalize_sort_order(value) -> str | None:
    if is_empty(value):
        return None
    text = str(value).strip()
    if text.upper() in SORT_ORDERS.values():
        return text.upper()
    sort_order = SORT_ORDERS.get(text.lower())
    if sort_order is None:
        logging.warning(f"⚠️ Unknown collection sort order {value!r}, skipping")
    return sort_order


def _position(value) -> int | None:
    if is_empty(value):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def product_from_row(row: dict) -> list[dict]:
    handle = row.get("Product: Handle")
    if is_empty(handle):
        return []
    return [{"handle": str(handle).strip(), "position": _position(row.get("Product: Position"))}]


def collection_merge_spec(metafield_columns) -> MergeSpec:
    return MergeSpec(
        scalars={
            "title": "Title",
            "descriptionHtml": "Body HTML",
            "sortOrder": lambda row: normalize_sort_order(row.get("Sort Order")),
            "templateSuffix": "Template Suffix",
            "published": lambda row: to_bool(row.get("Published")),
            "publishedScope": "Published Scope",
            "imageSrc": "Image Src",
            "imageAlt": "Image Alt Text",
            "seoTitle": lambda row: _first(row, "SEO: Title", "Metafield: title_tag [string]"),
            "seoDescription": lambda row: _first(row, "SEO: Description", "Metafield: description_tag [string]"),
        },
        lists=[
            ListField(
                "products",
                product_from_row,
                dedupe_key=lambda p: f"{p['handle']}::{'' if p['position'] is None else p['position']}",
                sort_key=lambda p: p["position"],
            ),
            ListField(
                "metafields",
                lambda row: metafields_from_row(row, metafield_columns),
                dedupe_key=lambda mf: (mf["namespace"], mf["key"]),
                keep="last",
            ),
        ],
    )


def _first(row: dict, *columns):
    for column in columns:
        if not is_empty(row.get(column)):
            return row[column]
    return None


def collection_key(row: dict) -> str | None:
    handle = row.get("Handle")
    return None if is_empty(handle) else str(handle).strip()


def build_collection_input(collection: MergeGroup) -> dict:
    fields = collection.fields
    collection_input = {
        "title": fields.get("title"),
        "handle": collection.key,
        "descriptionHtml": fields.get("descriptionHtml") or "",
    }
    if fields.get("sortOrder"):
        collection_input["sortOrder"] = fields["sortOrder"]
    if not is_empty(fields.get("templateSuffix")):
        collection_input["templateSuffix"] = str(fields["templateSuffix"])
    if not is_empty(fields.get("imageSrc")):
        collection_input["image"] = {"src": str(fields["imageSrc"]).strip()}
        if not is_empty(fields.get("imageAlt")):
            collection_input["image"]["altText"] = str(fields["imageAlt"]).strip()

    seo = {}
    if not is_empty(fields.get("seoTitle")):
        seo["title"] = str(fields["seoTitle"])
    if not is_empty(fields.get("seoDescription")):
        seo["description"] = str(fields["seoDescription"])
    if seo:
        collection_input["seo"] = seo

    metafields = sanitize_metafields(collection.lists.get("metafields"), "COLLECTION", collection.key)
    if metafields:
        collection_input["metafields"] = metafields
    return collection_input


def publication_targets(published, scope, publications: list[dict]) -> list[str]:
    """`web` → the Online Store publication; `global` → every publication."""
    if published is not True:
        return []
    scope = str(scope or "web").strip().lower()
    if scope == "web":
        for publication in publications:
            names = {
                str((publication.get("app") or {}).get("title") or "").lower(),
                str((publication.get("catalog") or {}).get("title") or "").lower(),
            }
            if ONLINE_STORE in names:
                return [publication["id"]]
        return []
    if scope == "global":
        return list(dict.fromkeys(p["id"] for p in publications))
    logging.info(f"ℹ️ Published Scope {scope!r} not handled, not publishing")
    return []


class _CollectionWriter:
    """Shared create / update / publish plumbing for both collection sources."""

    def __init__(self, target: ShopifyClient, context: RunContext | None, on_existing: str, dry_run: bool):
        self.target = target
        self.context = context or RunContext()
        self.resolver = KeyResolver(target, self.context)
        self.on_existing = on_existing
        self.dry_run = dry_run
        self._publications = None

    @property
    def publications(self) -> list[dict]:
        if self._publications is None:
            self._publications = self.target.list_publications()
            logging.info(f"✅ Fetched {len(self._publications)} TARGET publication(s)")
        return self._publications

    def write(self, collection_input: dict, product_handles: list[str], publish_to) -> RecordResult:
        handle = collection_input.get("handle")
        if is_empty(collection_input.get("title")) or is_empty(handle):
            raise ValueError("Missing required Title/Handle")

        existing_id = self.resolver.resolve("collection", handle)
        if existing_id and self.on_existing == "skip":
            logging.info(f"🔁 Already exists on TARGET (id={existing_id}), skipping")
            return RecordResult(SKIPPED, existing_id, reason="already exists")

        if self.dry_run:
            action = "update" if existing_id else "create"
            logging.info(f"[DRY RUN] Would {action} collection {handle}")
            return RecordResult(SKIPPED, existing_id, reason=f"dry run: would {action}")

        if existing_id:
            self.target.update_collection({"id": existing_id, **collection_input})
            logging.info(f"🔄 Updated collection {handle} ({existing_id})")
            return RecordResult(UPDATED, existing_id)

        if product_handles:
            product_ids = self.resolver.resolve_many("product", product_handles)
            missing = len(set(product_handles)) - len(product_ids)
            if missing:
                logging.warning(f"⚠️ {missing} product(s) of {handle} not found on TARGET, left out")
            if product_ids:
                collection_input = {**collection_input, "products": product_ids}

        created = self.target.create_collection(collection_input)
        self.resolver.remember("collection", handle, created["id"])
        logging.info(f"✅ Created collection: id={created['id']} title={created.get('title')!r}")

        publication_ids = publish_to()
        if publication_ids:
            self.target.publish(created["id"], publication_ids)
            logging.info(f"📢 Published to {len(publication_ids)} publication(s)")
        else:
            logging.info("ℹ️ No publish action taken")
        return RecordResult(CREATED, created["id"])


class CollectionSheetImport(_CollectionWriter):
    def __init__(self, target: ShopifyClient, context: RunContext | None = None,
                 on_existing: str = "skip", dry_run: bool = False):
        super().__init__(target, context, on_existing, dry_run)

    def load(self, rows: list[dict]) -> list[MergeGroup]:
        headers = list(rows[0].keys()) if rows else []
        columns = detect_metafield_columns(headers, skip_keys=SEO_KEYS)
        print(f"🔎 Detected {len(columns)} collection metafield column(s)")
        if not self.dry_run:
            ensure_metafield_definitions(self.target, "COLLECTION", columns)
        collections = group(rows, collection_key, collection_merge_spec(columns))
        print(f"✅ Parsed {len(collections)} collection(s) from sheet")
        return collections

    def process(self, collection: MergeGroup) -> RecordResult:
        fields = collection.fields
        handles = [p["handle"] for p in collection.lists.get("products", [])]
        return self.write(
            build_collection_input(collection),
            handles,
            lambda: publication_targets(fields.get("published"), fields.get("publishedScope"), self.publications),
        )


def collection_input_from_source(source: dict) -> dict:
    collection_input = {
        "title": source.get("title"),
        "handle": source.get("handle"),
        "descriptionHtml": source.get("descriptionHtml") or "",
        "templateSuffix": source.get("templateSuffix") or None,
    }
    if source.get("sortOrder"):
        collection_input["sortOrder"] = source["sortOrder"]
    if source.get("seo"):
        collection_input["seo"] = {
            "title": source["seo"].get("title") or None,
            "description": source["seo"].get("description") or None,
        }
    if source.get("ruleSet"):
        collection_input["ruleSet"] = {
            "appliedDisjunctively": source["ruleSet"].get("appliedDisjunctively"),
            "rules": [
                {"column": r.get("column"), "relation": r.get("relation"), "condition": r.get("condition")}
                for r in source["ruleSet"].get("rules") or []
            ],
        }
    metafields = [
        mf for mf in sanitize_metafields(source.get("metafields"), "COLLECTION", source.get("handle"))
        if not (mf["namespace"] == "global" and mf["key"] in SEO_KEYS)
    ]
    if metafields:
        collection_input["metafields"] = metafields
    return collection_input


class CollectionStoreSync(_CollectionWriter):
    def __init__(self, source: ShopifyClient, target: ShopifyClient, context: RunContext | None = None,
                 on_existing: str = "skip", dry_run: bool = False):
        super().__init__(target, context, on_existing, dry_run)
        self.source = source

    def matching_publications(self, source_collection: dict) -> list[str]:
        app_handles = {
            ((node.get("publication") or {}).get("app") or {}).get("handle")
            for node in connection_nodes(source_collection.get("resourcePublicationsV2"))
        }
        app_handles.discard(None)
        ids = []
        for handle in sorted(app_handles):
            found = [p["id"] for p in self.publications if (p.get("app") or {}).get("handle") == handle]
            if not found:
                logging.warning(f"⚠️ No TARGET publication for app handle {handle!r}, skipping")
            ids.extend(i for i in found if i not in ids)
        return ids

    def process(self, source_collection: dict) -> RecordResult:
        # rule-based collections pick their products themselves
        return self.write(
            collection_input_from_source(source_collection),
            [],
            lambda: self.matching_publications(source_collection),
        )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create collections on the TARGET store.")
    sub = parser.add_subparsers(dest="source", required=True)
    sheet = sub.add_parser("sheet", help="Import from a Matrixify collections export.")
    sheet.add_argument("path", help="Path to the .xlsx/.csv export.")
    store = sub.add_parser("store", help="Copy from the SOURCE store.")
    store.add_argument("--query", help="Optional collections search query on SOURCE.")
    for subparser in (sheet, store):
        subparser.add_argument("--dry-run", action="store_true", help="Match and report without writing anything.")
        subparser.add_argument("--report", help="Report path (.xlsx or .csv).")
        add_common_arguments(subparser, "collection")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    target = ShopifyClient("TARGET")
    report = ReportWriter(args.report or default_report_path("collections"))

    if args.source == "sheet":
        print("🚀 Starting collections import (Sheet → Shopify) ...")
        importer = CollectionSheetImport(target, on_existing=args.on_existing, dry_run=args.dry_run)
        records = importer.load(read_rows(args.path, ["Collections", "Custom Collections", "Smart Collections"]))
        report_row = lambda c: {"Handle": c.key, "Title": c.fields.get("title") or "", "Merged Rows": c.merged_rows}
        describe = lambda c: f"{c.fields.get('title')!r} (handle: {c.key})"
    else:
        print("🚀 Starting collections sync (SOURCE → TARGET) ...")
        source = ShopifyClient("SOURCE")
        importer = CollectionStoreSync(source, target, on_existing=args.on_existing, dry_run=args.dry_run)
        records = list(source.iter_collections(args.query))
        print(f"✅ Fetched {len(records)} collection(s) from SOURCE")
        report_row = lambda c: {"Handle": c.get("handle"), "Title": c.get("title")}
        describe = lambda c: f"{c.get('title')!r} (handle: {c.get('handle')})"

    driver = RunDriver("Collections", report=report, report_row=report_row, id_column="Collection ID")
    stats = driver.run(records, importer.process, describe)
    report.flush()
    return stats.exit_code


if __name__ == "__main__":
    sys.exit(main())
