#!/usr/bin/env python3
"""
product_sync.py

Products onto the TARGET store with `productSet`, keyed by handle, so a
re-run updates instead of duplicating. Two sources:

  store   mirrors the SOURCE store's products. Copied: scalars, SEO,
          options, variants (prices, SKU, barcode, option values,
          metafields), product images and metafields. Existing products are
          updated by default.
  sheet   a Matrixify "Products" export, one row per variant or image,
          grouped by Handle. Adds inventory per TARGET location, custom
          collections and publishing. Existing products are skipped unless
          --on-existing update is given.

Metafields that can not be copied by value (reserved namespace, references,
HS codes) are dropped. Failed products are appended to a JSON file for
follow-up.

Usage:
    python -m admin_api.product_sync store --query "vendor:Acme" --dry-run
    python -m admin_api.product_sync store --failures reports/product_failures.json
    python -m admin_api.product_sync sheet products.xlsx --on-existing update
"""

from __future__ import annotations

import argparse
import logging
import re
import sys

from admin_api.collection_sync import SEO_KEYS, publication_targets
from admin_api.errors import PreconditionSkip
from admin_api.shopify_client import ShopifyClient
from reconcile.key_resolver import KeyResolver, RunContext, looks_like_gid
from reconcile.metafields import (
    VARIANT_HEADER_RE,
    connection_nodes,
    detect_metafield_columns,
    ensure_metafield_definitions,
    is_reference_type,
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

BLOCKED_METAFIELD_KEYS = ("harmonized_system_code", "hs_code", "country_harmonized_system_codes")

PRODUCT_SHEETS = ["Products", "Product"]
PRODUCT_STATUSES = {"ACTIVE", "ARCHIVED", "DRAFT", "UNLISTED"}
INVENTORY_HEADER_RE = re.compile(r"^Inventory\s+(Available|On Hand):\s*(.+)$", re.IGNORECASE)

WEIGHT_UNITS = {
    "g": "GRAMS", "gram": "GRAMS", "grams": "GRAMS",
    "kg": "KILOGRAMS", "kilogram": "KILOGRAMS", "kilograms": "KILOGRAMS",
    "lb": "POUNDS", "lbs": "POUNDS", "pound": "POUNDS", "pounds": "POUNDS",
    "oz": "OUNCES", "ounce": "OUNCES", "ounces": "OUNCES",
}
INVENTORY_POLICIES = {"DENY": "DENY", "DENIED": "DENY", "NO": "DENY",
                      "CONTINUE": "CONTINUE", "ALLOW": "CONTINUE", "YES": "CONTINUE"}


def product_options(options) -> list[dict]:
    return [
        {
            "name": option.get("name"),
            "position": option.get("position"),
            "values": [{"name": value} for value in option.get("values") or [] if value],
        }
        for option in options or []
    ]


def variant_inputs(product: dict) -> list[dict]:
    label = product.get("handle")
    variants = []
    for index, variant in enumerate(connection_nodes(product.get("variants")), start=1):
        variant_input = {
            "sku": variant.get("sku") or None,
            "barcode": variant.get("barcode") or None,
            "position": variant.get("position") or index,
            "optionValues": [
                {"optionName": option.get("name"), "name": option.get("value")}
                for option in variant.get("selectedOptions") or []
            ],
            "metafields": sanitize_metafields(
                variant.get("metafields"), "VARIANT", label, blocked_keys=BLOCKED_METAFIELD_KEYS
            ),
        }
        if variant.get("taxable") is not None:
            variant_input["taxable"] = variant["taxable"]
        if variant.get("price") is not None:
            variant_input["price"] = str(variant["price"])
        if variant.get("compareAtPrice") is not None:
            variant_input["compareAtPrice"] = str(variant["compareAtPrice"])
        variants.append(variant_input)
    return variants


def image_files(product: dict) -> list[dict]:
    files = []
    for media in connection_nodes(product.get("media")):
        if media.get("mediaContentType") != "IMAGE":
            continue
        url = (media.get("originalSource") or {}).get("url")
        if not url:
            continue
        files.append({
            "originalSource": url,
            "alt": media.get("alt") or product.get("title") or "",
            "contentType": "IMAGE",
        })
    return files


def build_product_set_input(product: dict) -> dict:
    product_input = {
        "title": product.get("title"),
        "descriptionHtml": product.get("descriptionHtml") or None,
        "handle": product.get("handle"),
        "productType": product.get("productType") or None,
        "vendor": product.get("vendor") or None,
        "tags": product.get("tags") or [],
        "templateSuffix": product.get("templateSuffix") or None,
        "status": product.get("status") or "ACTIVE",
        "giftCard": bool(product.get("isGiftCard")),
    }

    seo = {k: v for k, v in (product.get("seo") or {}).items() if v}
    if seo:
        product_input["seo"] = seo

    metafields = sanitize_metafields(
        product.get("metafields"), "PRODUCT", product.get("handle"), blocked_keys=BLOCKED_METAFIELD_KEYS
    )
    if metafields:
        product_input["metafields"] = metafields

    options = product_options(product.get("options"))
    if options:
        product_input["productOptions"] = options
    variants = variant_inputs(product)
    if variants:
        product_input["variants"] = variants
    files = image_files(product)
    if files:
        product_input["files"] = files
    return product_input


class ProductSync:
    def __init__(self, target: ShopifyClient, context: RunContext | None = None,
                 on_existing: str = "update", dry_run: bool = False):
        self.target = target
        self.resolver = KeyResolver(target, context or RunContext())
        self.on_existing = on_existing
        self.dry_run = dry_run

    def process(self, product: dict) -> RecordResult:
        handle = (product.get("handle") or "").strip()
        if not handle:
            raise PreconditionSkip(f"product without handle: {product.get('id')} ({product.get('title')!r})")
        return self.write(handle, lambda: build_product_set_input(product))

    def write(self, handle: str, build) -> RecordResult:
        """Skip, dry-run or `productSet` the input `build()` returns, depending on what TARGET has."""
        existing_id = self.resolver.resolve("product", handle)
        if existing_id and self.on_existing == "skip":
            logging.info(f"🔁 Product {handle} exists on TARGET ({existing_id}), skipping")
            return RecordResult(SKIPPED, existing_id, reason="already exists")

        product_input = build()
        if self.dry_run:
            action = "update" if existing_id else "create"
            logging.info(f"[DRY RUN] Would {action} {handle} with {len(product_input.get('variants', []))} "
                         f"variant(s) and {len(product_input.get('files', []))} image(s)")
            return RecordResult(SKIPPED, existing_id, reason=f"dry run: would {action}")

        synced = self.target.product_set({"handle": handle}, product_input)
        self.resolver.remember("product", handle, synced["id"])
        logging.info(f"✅ Synced product → TARGET id={synced['id']}, handle={synced.get('handle')}, "
                     f"status={synced.get('status')}")
        return RecordResult(UPDATED if existing_id else CREATED, synced["id"])


# ---------------------------------------------------------------------------
# Sheet → store
# ---------------------------------------------------------------------------

def _first(row: dict, *columns):
    for column in columns:
        if not is_empty(row.get(column)):
            return row[column]
    return None


def _text(value) -> str | None:
    if is_empty(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _number(value) -> float | None:
    if is_empty(value):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def product_key(row: dict) -> str | None:
    return _text(_first(row, "Handle", "Product: Handle"))


def normalize_status(value) -> str | None:
    text = (_text(value) or "").upper()
    if not text:
        return None
    if text == "LIVE":
        return "ACTIVE"
    if text not in PRODUCT_STATUSES:
        logging.warning(f"⚠️ Unknown product status {value!r}, leaving unset")
        return None
    return text


def normalize_inventory_policy(value) -> str | None:
    return INVENTORY_POLICIES.get((_text(value) or "").upper())


def normalize_weight_unit(value) -> str | None:
    return WEIGHT_UNITS.get((_text(value) or "").lower())


def category_gid(value) -> str | None:
    text = _text(value)
    if not text:
        return None
    return text if looks_like_gid(text) else f"gid://shopify/TaxonomyCategory/{text}"


def split_list(value) -> list[str]:
    return [part.strip() for part in (_text(value) or "").split(",") if part.strip()]


def detect_inventory_columns(headers) -> dict[str, dict[str, str]]:
    """`Inventory Available: <location>` / `Inventory On Hand: <location>` → {location: {kind: column}}."""
    columns: dict[str, dict[str, str]] = {}
    for header in headers:
        match = INVENTORY_HEADER_RE.match(str(header).strip())
        if not match:
            continue
        kind = "available" if match.group(1).lower() == "available" else "on_hand"
        columns.setdefault(match.group(2).strip(), {})[kind] = header
    return columns


def selected_options(row: dict) -> list[dict]:
    selected = []
    for i in (1, 2, 3):
        name = _text(_first(row, f"Option{i} Name", f"Variant Option{i} Name"))
        value = _text(_first(row, f"Option{i} Value", f"Variant Option{i} Value"))
        if name and value:
            selected.append({"optionName": name, "name": value})
    return selected


def _quantity(value) -> int | None:
    number = _number(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def inventory_from_row(row: dict, inventory_columns: dict) -> dict[str, tuple[str, int]]:
    """location name -> (quantity name, quantity); on hand wins over available."""
    quantities = {}
    for location, columns in inventory_columns.items():
        for kind in ("on_hand", "available"):
            quantity = _quantity(row.get(columns.get(kind)))
            if quantity is not None:
                quantities[location] = (kind, quantity)
                break
    return quantities


def variant_from_row(row: dict, inventory_columns: dict, metafield_columns: list) -> list[dict]:
    options = selected_options(row)
    if not options:
        return []

    variant = {
        "id": _text(_first(row, "Variant ID", "Variant: ID")),
        "optionValues": options,
        "sku": _text(_first(row, "Variant SKU", "Variant: SKU", "SKU")),
        "barcode": _text(_first(row, "Variant Barcode", "Variant: Barcode")),
        "price": _text(_first(row, "Variant Price", "Variant: Price", "Price")),
        "compareAtPrice": _text(_first(row, "Variant Compare At Price", "Variant: Compare At Price")),
        "taxable": to_bool(_first(row, "Variant Taxable", "Variant: Taxable")),
        "inventoryPolicy": normalize_inventory_policy(_first(row, "Variant Inventory Policy",
                                                             "Variant: Inventory Policy")),
        "position": _quantity(_first(row, "Variant Position", "Variant: Position")),
        "image": _text(row.get("Variant Image")),
        "inventory": inventory_from_row(row, inventory_columns),
        "metafields": metafields_from_row(row, metafield_columns),
    }

    item = {"tracked": not is_empty(row.get("Variant Inventory Tracker"))}
    requires_shipping = to_bool(_first(row, "Variant Requires Shipping", "Variant: Requires Shipping"))
    if requires_shipping is not None:
        item["requiresShipping"] = requires_shipping
    for field, column in (("harmonizedSystemCode", "Variant HS Code"),
                          ("countryCodeOfOrigin", "Variant Country of Origin"),
                          ("provinceCodeOfOrigin", "Variant Province of Origin")):
        value = _text(row.get(column))
        if value:
            item[field] = value
    weight = _number(_first(row, "Variant Weight", "Weight Value"))
    unit = normalize_weight_unit(_first(row, "Variant Weight Unit", "Variant: Weight Unit", "Weight Unit"))
    if weight is not None and unit:
        item["measurement"] = {"weight": {"value": weight, "unit": unit}}
    variant["inventoryItem"] = item
    return [variant]


def variant_identity(variant: dict):
    if variant["id"]:
        return f"id:{variant['id']}"
    return tuple((o["optionName"], o["name"]) for o in variant["optionValues"])


def image_from_row(row: dict) -> list[dict]:
    src = _text(_first(row, "Image Src", "Image: Src", "Image URL"))
    if not src:
        return []
    return [{
        "src": src,
        "alt": _text(_first(row, "Image Alt Text", "Image: Alt Text")),
        "position": _quantity(_first(row, "Image Position", "Image: Position")),
    }]


def product_sheet_merge_spec(metafield_columns, variant_metafield_columns, inventory_columns) -> MergeSpec:
    return MergeSpec(
        scalars={
            "title": lambda row: _first(row, "Title", "Product: Title"),
            "descriptionHtml": lambda row: _first(row, "Body HTML", "Product: Description HTML"),
            "productType": lambda row: _first(row, "Type", "Product Type", "Product: Type"),
            "vendor": lambda row: _first(row, "Vendor", "Product: Vendor"),
            "tags": lambda row: _first(row, "Tags", "Product: Tags"),
            "status": lambda row: normalize_status(_first(row, "Status", "Product: Status")),
            "templateSuffix": lambda row: _first(row, "Template Suffix", "Product: Template Suffix"),
            "giftCard": lambda row: to_bool(_first(row, "Gift Card", "Product: Gift Card")),
            "category": lambda row: category_gid(row.get("Category: ID")),
            "collections": "Custom Collections",
            "published": lambda row: to_bool(row.get("Published")),
            "publishedScope": "Published Scope",
            "seoTitle": lambda row: _first(row, "SEO: Title", "Metafield: title_tag [string]"),
            "seoDescription": lambda row: _first(row, "SEO: Description", "Metafield: description_tag [string]"),
        },
        lists=[
            ListField(
                "variants",
                lambda row: variant_from_row(row, inventory_columns, variant_metafield_columns),
                dedupe_key=variant_identity,
            ),
            ListField(
                "images",
                image_from_row,
                dedupe_key=lambda img: (img["src"], img["alt"], img["position"]),
                sort_key=lambda img: img["position"],
            ),
            ListField(
                "metafields",
                lambda row: metafields_from_row(row, metafield_columns),
                dedupe_key=lambda mf: (mf["namespace"], mf["key"]),
                keep="last",
            ),
        ],
    )


def sheet_product_options(variants: list[dict]) -> list[dict]:
    """Option names in first-seen order, each with its values in first-seen order."""
    values: dict[str, list[str]] = {}
    for variant in variants:
        for option in variant["optionValues"]:
            seen = values.setdefault(option["optionName"], [])
            if option["name"] not in seen:
                seen.append(option["name"])
    return [
        {"name": name, "position": position, "values": [{"name": v} for v in option_values]}
        for position, (name, option_values) in enumerate(values.items(), start=1)
    ]


def is_default_title(variant: dict) -> bool:
    return variant["optionValues"] == [{"optionName": "Title", "name": "Default Title"}]


def sheet_variant_input(variant: dict, handle: str, location_ids: dict[str, str]) -> dict:
    variant_input = {"optionValues": variant["optionValues"], "inventoryItem": dict(variant["inventoryItem"])}
    for field in ("sku", "barcode", "price", "compareAtPrice", "inventoryPolicy", "position"):
        if variant.get(field) is not None:
            variant_input[field] = variant[field]
    if variant.get("taxable") is not None:
        variant_input["taxable"] = variant["taxable"]
    if variant.get("image"):
        variant_input["file"] = {"contentType": "IMAGE", "originalSource": variant["image"]}

    quantities = []
    for location, (name, quantity) in variant["inventory"].items():
        location_id = location_ids.get(location)
        if not location_id:
            logging.warning(f"⚠️ Unknown TARGET location {location!r}, inventory for {handle} skipped")
            continue
        quantities.append({"locationId": location_id, "name": name, "quantity": quantity})
    if quantities:
        variant_input["inventoryQuantities"] = quantities

    metafields = sanitize_metafields(
        variant["metafields"], "VARIANT", f"{handle} :: {variant.get('sku') or variant.get('id')}",
        blocked_keys=BLOCKED_METAFIELD_KEYS,
    )
    if metafields:
        variant_input["metafields"] = metafields
    return variant_input


def build_sheet_product_input(product: MergeGroup, location_ids: dict[str, str],
                              collection_ids: list[str]) -> dict:
    fields = product.fields
    handle = product.key
    product_input = {"handle": handle, "title": _text(fields.get("title"))}
    for name in ("descriptionHtml", "productType", "vendor", "templateSuffix"):
        if not is_empty(fields.get(name)):
            product_input[name] = str(fields[name])
    tags = split_list(fields.get("tags"))
    if tags:
        product_input["tags"] = tags
    if fields.get("status"):
        product_input["status"] = fields["status"]
    if fields.get("giftCard") is not None:
        product_input["giftCard"] = fields["giftCard"]
    if fields.get("category"):
        product_input["category"] = fields["category"]
    if collection_ids:
        product_input["collections"] = collection_ids

    seo = {}
    if not is_empty(fields.get("seoTitle")):
        seo["title"] = str(fields["seoTitle"])
    if not is_empty(fields.get("seoDescription")):
        seo["description"] = str(fields["seoDescription"])
    if seo:
        product_input["seo"] = seo

    metafields = sanitize_metafields(product.lists["metafields"], "PRODUCT", handle,
                                     blocked_keys=BLOCKED_METAFIELD_KEYS)
    if metafields:
        product_input["metafields"] = metafields

    # "Default Title" only stands when the product has no real variants
    variants = [v for v in product.lists["variants"] if not is_default_title(v)] or product.lists["variants"]
    if variants:
        product_input["productOptions"] = sheet_product_options(variants)
        product_input["variants"] = [sheet_variant_input(v, handle, location_ids) for v in variants]

    files = [
        {"originalSource": img["src"], "alt": img["alt"] or product_input["title"] or "", "contentType": "IMAGE"}
        for img in product.lists["images"]
    ]
    if files:
        product_input["files"] = files
    return product_input


class ProductSheetImport(ProductSync):
    def __init__(self, target: ShopifyClient, context: RunContext | None = None,
                 on_existing: str = "skip", dry_run: bool = False):
        super().__init__(target, context, on_existing, dry_run)
        self._locations = None
        self._publications = None

    def load(self, rows: list[dict]) -> list[MergeGroup]:
        headers = list(rows[0].keys()) if rows else []
        skip_keys = SEO_KEYS + BLOCKED_METAFIELD_KEYS
        product_columns = [c for c in detect_metafield_columns(headers, skip_keys=skip_keys)
                           if not is_reference_type(c.type)]
        variant_columns = [c for c in detect_metafield_columns(headers, skip_keys=BLOCKED_METAFIELD_KEYS,
                                                               pattern=VARIANT_HEADER_RE)
                           if not is_reference_type(c.type)]
        inventory_columns = detect_inventory_columns(headers)
        print(f"🔎 Detected {len(product_columns)} product and {len(variant_columns)} variant metafield "
              f"column(s), inventory for {len(inventory_columns)} location(s)")
        if not self.dry_run:
            ensure_metafield_definitions(self.target, "PRODUCT", product_columns)
            ensure_metafield_definitions(self.target, "PRODUCTVARIANT", variant_columns)
        products = group(rows, product_key, product_sheet_merge_spec(product_columns, variant_columns,
                                                                      inventory_columns))
        print(f"✅ Parsed {len(products)} product(s) from sheet")
        return products

    @property
    def locations(self) -> dict[str, str]:
        if self._locations is None:
            self._locations = {loc["name"]: loc["id"] for loc in self.target.list_locations()}
            logging.info(f"🏬 Fetched {len(self._locations)} TARGET location(s)")
        return self._locations

    @property
    def publications(self) -> list[dict]:
        if self._publications is None:
            self._publications = self.target.list_publications()
        return self._publications

    def collection_ids(self, product: MergeGroup) -> list[str]:
        handles = split_list(product.fields.get("collections"))
        ids = self.resolver.resolve_many("collection", handles)
        if len(ids) < len(set(handles)):
            logging.warning(f"⚠️ {len(set(handles)) - len(ids)} collection(s) of {product.key} "
                            f"not found on TARGET, left out")
        return ids

    def process(self, product: MergeGroup) -> RecordResult:
        if product.error:
            raise product.error
        if is_empty(product.fields.get("title")):
            raise PreconditionSkip(f"product {product.key} has no Title")

        needs_locations = any(v["inventory"] for v in product.lists["variants"])
        result = self.write(product.key, lambda: build_sheet_product_input(
            product,
            self.locations if needs_locations else {},
            self.collection_ids(product),
        ))
        if result.status != CREATED:
            return result

        publication_ids = publication_targets(product.fields.get("published"),
                                              product.fields.get("publishedScope"), self.publications)
        if publication_ids:
            self.target.publish(result.identifier, publication_ids)
            logging.info(f"📢 Published to {len(publication_ids)} publication(s)")
        else:
            logging.info("ℹ️ No publish action taken")
        return result


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create or update products on the TARGET store.")
    sub = parser.add_subparsers(dest="source", required=True)
    store = sub.add_parser("store", help="Mirror from the SOURCE store.")
    store.add_argument("--query", help="Optional products search query on SOURCE.")
    store.add_argument("--failures", default="reports/product_sync_failures.json",
                       help="JSON file that collects failed products.")
    add_common_arguments(store, "product")
    sheet = sub.add_parser("sheet", help="Import from a Matrixify products export.")
    sheet.add_argument("path", help="Path to the .xlsx/.csv export.")
    sheet.add_argument("--report", help="Report path (.xlsx or .csv).")
    add_common_arguments(sheet, "product_sheet")
    for subparser in (store, sheet):
        subparser.add_argument("--dry-run", action="store_true", help="Match and log without writing anything.")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    target = ShopifyClient("TARGET")
    if args.source == "sheet":
        print("🚀 Starting products import (Sheet → Shopify) ...")
        print(f"   TARGET_SHOP = {target.shop_url}")
        importer = ProductSheetImport(target, on_existing=args.on_existing, dry_run=args.dry_run)
        products = importer.load(read_rows(args.path, PRODUCT_SHEETS))
        report = ReportWriter(args.report or default_report_path("products"))
        driver = RunDriver(
            "Products import",
            report=report,
            report_row=lambda p: {"Handle": p.key, "Title": p.fields.get("title") or "", "Merged Rows": p.merged_rows},
            id_column="Product ID",
        )
        stats = driver.run(products, importer.process, lambda p: f"{p.fields.get('title')!r} (handle: {p.key})")
        report.flush()
        return stats.exit_code

    source = ShopifyClient("SOURCE")
    print("🚀 Starting product sync: SOURCE → TARGET")
    print(f"   SOURCE_SHOP = {source.shop_url}")
    print(f"   TARGET_SHOP = {target.shop_url}")
    if args.query:
        print(f"   PRODUCT_QUERY = {args.query!r}")

    sync = ProductSync(target, on_existing=args.on_existing, dry_run=args.dry_run)
    driver = RunDriver("Product sync", failures_path=args.failures)
    stats = driver.run(
        source.iter_products(args.query),
        sync.process,
        lambda p: f"{p.get('title')!r} (handle: {p.get('handle')})",
    )
    return stats.exit_code


if __name__ == "__main__":
    sys.exit(main())
