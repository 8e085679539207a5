#!/usr/bin/env python3
"""
customer_sync.py

Two ways customers land on the TARGET store:

1. Store → store (`CustomerSync`), driven by company_sync for every company
   contact. Existing customers get a full overwrite of their basic fields,
   tags = source tags + tier tag, then consent and metafields.

2. Sheet → store (`CustomerSheetImport`), a Matrixify "Customers" export.
   Rows are grouped into one customer each (several addresses per customer),
   metafield definitions are created up front, and customers are created.
   Existing customers are skipped unless --on-existing update is given.

Usage:
    python -m admin_api.customer_sync customers.xlsx --dry-run
    python -m admin_api.customer_sync customers.xlsx --on-existing update
"""

from __future__ import annotations

import argparse
import logging
import re
import sys

from admin_api.errors import MigrationError, PreconditionSkip
from admin_api.shopify_client import ShopifyClient
from reconcile.entity_matcher import (
    EntityMatcher,
    known_strategy,
    normalize_email,
    search_strategy,
)
from reconcile.key_resolver import RunContext, search_term
from reconcile.metafields import (
    detect_metafield_columns,
    ensure_metafield_definitions,
    merge_metafields,
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
from reconcile.tiers import tier_tag
from sheets.report_writer import ReportWriter, default_report_path
from sheets.sheet_reader import read_rows, to_iso_datetime

CUSTOMER_SHEETS = ["Customers", "Customer"]

PHONE_RE = re.compile(r"^\+?\d+$")

EMAIL_STATES = {"INVALID", "NOT_SUBSCRIBED", "PENDING", "REDACTED", "SUBSCRIBED", "UNSUBSCRIBED"}
SMS_STATES = EMAIL_STATES - {"INVALID"}
OPT_IN_LEVELS = {"CONFIRMED_OPT_IN", "SINGLE_OPT_IN", "UNKNOWN"}

ADDRESS_COLUMNS = {
    "firstName": "Address First Name",
    "lastName": "Address Last Name",
    "company": "Address Company",
    "phone": "Address Phone",
    "address1": "Address Line 1",
    "address2": "Address Line 2",
    "city": "Address City",
    "provinceCode": "Address Province Code",
    "countryCode": "Address Country Code",
    "zip": "Address Zip",
}

CUSTOMER_SCALARS = {
    "email": "Email",
    "firstName": "First Name",
    "lastName": "Last Name",
    "phone": lambda row: normalize_phone(row.get("Phone")),
    "locale": "Language",
    "note": "Note",
    "taxExempt": lambda row: to_bool(row.get("Tax Exempt")),
    "tags": "Tags",
    "multipassIdentifier": "Multipass Identifier",
    "emailMarketingStatus": "Email Marketing: Status",
    "emailMarketingLevel": "Email Marketing: Level",
    "emailMarketingUpdatedAt": "Email Marketing: Updated At",
    "smsMarketingStatus": "SMS Marketing: Status",
    "smsMarketingLevel": "SMS Marketing: Level",
    "smsMarketingUpdatedAt": "SMS Marketing: Updated At",
}


# ---------------------------------------------------------------------------
# Normalisers
# ---------------------------------------------------------------------------

def normalize_phone(raw) -> str | None:
    """E.164-ish: strip the Excel apostrophe and punctuation, prefix '+'."""
    if is_empty(raw):
        return None
    text = str(raw).strip()
    if text.startswith("'"):
        text = text[1:]
    text = re.sub(r"[()\-\s]", "", text)
    if not PHONE_RE.match(text):
        logging.warning(f"⚠️ Invalid phone skipped: {raw!r}")
        return None
    return text if text.startswith("+") else f"+{text}"


def normalize_state(value, allowed: set[str]) -> str | None:
    if is_empty(value):
        return None
    state = str(value).strip().upper()
    return state if state in allowed else None


def split_tags(value) -> list[str]:
    if is_empty(value):
        return []
    return [t.strip() for t in str(value).split(",") if t.strip()]


def consent_input(consent: dict | None, allowed: set[str]) -> dict | None:
    """Marketing consent as mutation input. NOT_SUBSCRIBED is sent as UNSUBSCRIBED."""
    if not consent or not consent.get("marketingState"):
        return None
    state = consent["marketingState"]
    if state == "NOT_SUBSCRIBED":
        state = "UNSUBSCRIBED"
    if state not in allowed:
        return None
    result = {"marketingState": state}
    if consent.get("marketingOptInLevel"):
        result["marketingOptInLevel"] = consent["marketingOptInLevel"]
    if consent.get("consentUpdatedAt"):
        result["consentUpdatedAt"] = consent["consentUpdatedAt"]
    return result


def default_address_input(customer: dict) -> list[dict] | None:
    address = customer.get("defaultAddress")
    if not address:
        return None
    return [{
        "address1": address.get("address1"),
        "address2": address.get("address2"),
        "city": address.get("city"),
        "countryCode": address.get("countryCodeV2"),
        "provinceCode": address.get("provinceCode"),
        "zip": address.get("zip"),
        "phone": address.get("phone"),
        "firstName": address.get("firstName") or customer.get("firstName"),
        "lastName": address.get("lastName") or customer.get("lastName"),
        "company": address.get("company"),
    }]


def find_by_email(target: ShopifyClient, raw) -> list[dict]:
    """Search hits whose email is exactly `raw`; the search index also returns prefix matches."""
    email = normalize_email(raw)
    if not email:
        return []
    found = target.find_customers(search_term("email", email))
    return [c for c in found if normalize_email(c.get("email")) == email]


def find_by_phone(target: ShopifyClient, raw) -> list[dict]:
    phone = normalize_phone(raw)
    if not phone:
        return []
    found = target.find_customers(search_term("phone", phone))
    return [c for c in found if normalize_phone(c.get("phone")) == phone]


# ---------------------------------------------------------------------------
# Store → store
# ---------------------------------------------------------------------------

class CustomerSync:
    def __init__(self, target: ShopifyClient, context: RunContext | None = None, on_existing: str = "update"):
        self.target = target
        self.context = context or RunContext()
        self.on_existing = on_existing
        self.matcher = EntityMatcher(self.context)

    def strategies(self):
        return [
            known_strategy(self.context, "customer", lambda c: normalize_email(c.get("email"))),
            search_strategy("email", self._search_email),
            search_strategy("phone", self._search_phone),
        ]

    def _search_email(self, customer):
        return find_by_email(self.target, customer.get("email"))

    def _search_phone(self, customer):
        return find_by_phone(self.target, customer.get("phone"))

    def upsert_from_source(self, customer: dict, tier: str | None = None) -> RecordResult:
        email = (customer.get("email") or "").strip()
        if not email:
            logging.warning(f"🟡 Source customer {customer.get('id')} has no email, skipping")
            return RecordResult(SKIPPED, reason="no email")

        existing = self.matcher.find_existing(customer, self.strategies())
        if existing:
            customer_id = existing["id"]
            target_metafields = []
            if self.on_existing == "skip":
                logging.info(f"🔁 Customer {email} exists ({customer_id}), leaving as is")
                status = SKIPPED
            else:
                self._update(customer, tier, customer_id)
                status = UPDATED
                target_metafields = self.target.get_metafields(customer_id)
        else:
            customer_id = self._create(customer, tier)
            status = CREATED
            target_metafields = []

        self.context.identifiers.set("customer", email.lower(), customer_id)

        if status != SKIPPED:
            source_metafields = sanitize_metafields(customer.get("metafields"), "CUSTOMER", email)
            merged = merge_metafields(source_metafields, target_metafields, customer_id)
            if merged:
                self.target.set_metafields(merged)
                logging.info(f"🏷️ Synced {len(merged)} metafield(s) for customer {email}")

        return RecordResult(status, customer_id)

    def _tags(self, customer: dict, tier: str | None) -> list[str]:
        tags = list(customer.get("tags") or [])
        if tier and tier_tag(tier) not in tags:
            tags.append(tier_tag(tier))
        return tags

    def _update(self, customer: dict, tier: str | None, customer_id: str) -> None:
        email = customer["email"].strip()
        customer_input = {
            "id": customer_id,
            "email": email,
            "firstName": customer.get("firstName") or None,
            "lastName": customer.get("lastName") or None,
            "phone": customer.get("phone") or None,
            "note": customer.get("note") or None,
            "tags": self._tags(customer, tier),
        }
        addresses = default_address_input(customer)
        if addresses:
            customer_input["addresses"] = addresses
        else:
            logging.info(f"ℹ️ No defaultAddress for {email}, skipping address update")

        self.target.update_customer(customer_input)
        logging.info(f"🔄 Updated existing customer on TARGET: {email} ({customer_id})")

        email_consent = consent_input(customer.get("emailMarketingConsent"), EMAIL_STATES)
        if email_consent:
            try:
                self.target.update_email_consent(customer_id, email_consent)
            except MigrationError as e:
                logging.warning(f"⚠️ Email consent sync failed for {email}: {e}")
        sms_consent = consent_input(customer.get("smsMarketingConsent"), SMS_STATES)
        if sms_consent:
            try:
                self.target.update_sms_consent(customer_id, sms_consent)
            except MigrationError as e:
                logging.warning(f"⚠️ SMS consent sync failed for {email}: {e}")

    def _create(self, customer: dict, tier: str | None) -> str:
        email = customer["email"].strip()
        customer_input = {"email": email, "tags": self._tags(customer, tier)}
        for field in ("firstName", "lastName", "phone", "note"):
            if customer.get(field):
                customer_input[field] = customer[field]
        email_consent = consent_input(customer.get("emailMarketingConsent"), EMAIL_STATES)
        if email_consent:
            customer_input["emailMarketingConsent"] = email_consent
        sms_consent = consent_input(customer.get("smsMarketingConsent"), SMS_STATES)
        if sms_consent:
            customer_input["smsMarketingConsent"] = sms_consent
        addresses = default_address_input(customer)
        if addresses:
            customer_input["addresses"] = addresses

        created = self.target.create_customer(customer_input)
        logging.info(f"✅ Created customer on TARGET: {email} ({created['id']})")
        return created["id"]


# ---------------------------------------------------------------------------
# Sheet → store
# ---------------------------------------------------------------------------

def customer_key(row: dict) -> str | None:
    """ID, then email, then phone, then first + last name."""
    if not is_empty(row.get("ID")):
        return f"id:{str(row['ID']).strip()}"
    if not is_empty(row.get("Email")):
        return f"email:{str(row['Email']).strip().lower()}"
    phone = normalize_phone(row.get("Phone"))
    if phone:
        return f"phone:{phone}"
    first, last = row.get("First Name"), row.get("Last Name")
    if not is_empty(first) or not is_empty(last):
        first = "" if is_empty(first) else str(first).strip().lower()
        last = "" if is_empty(last) else str(last).strip().lower()
        return f"name:{first}::{last}"
    return None


def address_from_row(row: dict) -> list[dict]:
    if all(is_empty(row.get(column)) for column in ADDRESS_COLUMNS.values()):
        return []
    address = {}
    for field, column in ADDRESS_COLUMNS.items():
        value = row.get(column)
        if field == "phone":
            value = normalize_phone(value)
        if not is_empty(value):
            address[field] = str(value).strip()
    address["_isDefault"] = to_bool(row.get("Address Is Default")) is True
    return [address]


def address_identity(address: dict):
    return tuple(sorted((k, v) for k, v in address.items() if k != "_isDefault"))


def customer_merge_spec(metafield_columns) -> MergeSpec:
    return MergeSpec(
        scalars=CUSTOMER_SCALARS,
        lists=[
            ListField(
                "addresses",
                address_from_row,
                dedupe_key=address_identity,
                sort_key=lambda a: 0 if a["_isDefault"] else 1,
            ),
            # a later row's value for the same namespace.key replaces the earlier one
            ListField(
                "metafields",
                lambda row: metafields_from_row(row, metafield_columns),
                dedupe_key=lambda mf: (mf["namespace"], mf["key"]),
                keep="last",
            ),
        ],
    )


def build_customer_input(customer: MergeGroup) -> dict:
    fields = customer.fields
    label = fields.get("email") or fields.get("phone") or customer.key
    customer_input = {}
    for name in ("email", "firstName", "lastName", "locale"):
        if not is_empty(fields.get(name)):
            customer_input[name] = str(fields[name]).strip()
    if fields.get("phone"):
        customer_input["phone"] = fields["phone"]
    if not is_empty(fields.get("note")):
        customer_input["note"] = str(fields["note"])
    if fields.get("taxExempt") is not None:
        customer_input["taxExempt"] = fields["taxExempt"]
    if not is_empty(fields.get("multipassIdentifier")):
        customer_input["multipassIdentifier"] = str(fields["multipassIdentifier"])

    tags = split_tags(fields.get("tags"))
    if tags:
        customer_input["tags"] = tags

    for prefix, allowed in (("email", EMAIL_STATES), ("sms", SMS_STATES)):
        state = normalize_state(fields.get(f"{prefix}MarketingStatus"), allowed)
        if not state:
            continue
        consent = {"marketingState": state}
        level = normalize_state(fields.get(f"{prefix}MarketingLevel"), OPT_IN_LEVELS)
        if level:
            consent["marketingOptInLevel"] = level
        updated_at = to_iso_datetime(fields.get(f"{prefix}MarketingUpdatedAt"))
        if updated_at:
            consent["consentUpdatedAt"] = updated_at
        customer_input[f"{prefix}MarketingConsent"] = consent

    metafields = sanitize_metafields(customer.lists.get("metafields"), "CUSTOMER", label)
    if metafields:
        customer_input["metafields"] = metafields

    addresses = [
        {k: v for k, v in address.items() if k != "_isDefault"}
        for address in customer.lists.get("addresses", [])
    ]
    addresses = [a for a in addresses if a]
    if addresses:
        customer_input["addresses"] = addresses
    return customer_input


class CustomerSheetImport:
    def __init__(self, target: ShopifyClient, context: RunContext | None = None,
                 on_existing: str = "skip", dry_run: bool = False):
        self.target = target
        self.context = context or RunContext()
        self.on_existing = on_existing
        self.dry_run = dry_run
        self.matcher = EntityMatcher(self.context)

    def load(self, rows: list[dict]) -> list[MergeGroup]:
        headers = list(rows[0].keys()) if rows else []
        self.metafield_columns = detect_metafield_columns(headers)
        print(f"🔎 Detected {len(self.metafield_columns)} customer metafield column(s)")
        if not self.dry_run:
            ensure_metafield_definitions(self.target, "CUSTOMER", self.metafield_columns)
        customers = group(rows, customer_key, customer_merge_spec(self.metafield_columns))
        print(f"✅ Parsed {len(customers)} customer(s) from sheet")
        return customers

    def strategies(self):
        return [
            known_strategy(self.context, "customer", lambda c: normalize_email(c.fields.get("email"))),
            search_strategy("email", lambda c: find_by_email(self.target, c.fields.get("email"))),
            search_strategy("phone", lambda c: find_by_phone(self.target, c.fields.get("phone"))),
        ]

    def _remember(self, customer: MergeGroup, customer_id: str) -> None:
        email = normalize_email(customer.fields.get("email"))
        if email:
            self.context.identifiers.set("customer", email, customer_id)

    def process(self, customer: MergeGroup) -> RecordResult:
        if is_empty(customer.fields.get("email")) and is_empty(customer.fields.get("phone")):
            raise PreconditionSkip("both Email and Phone are empty (cannot check existence safely)")

        customer_input = build_customer_input(customer)
        existing = self.matcher.find_existing(customer, self.strategies())

        if existing and self.on_existing == "skip":
            logging.info(f"🟡 Customer already exists → {existing['id']} (skipping)")
            return RecordResult(SKIPPED, existing["id"], reason="already exists")

        if self.dry_run:
            action = "update" if existing else "create"
            logging.info(f"[DRY RUN] Would {action} customer {customer_input.get('email') or customer_input.get('phone')}")
            return RecordResult(SKIPPED, existing["id"] if existing else None, reason=f"dry run: would {action}")

        if existing:
            # sheet addresses would be appended to the existing ones, not replace them
            customer_input.pop("addresses", None)
            customer_input["id"] = existing["id"]
            self.target.update_customer(customer_input)
            self._remember(customer, existing["id"])
            logging.info(f"🔄 Updated customer {existing['id']} (matched by {self.matcher.matched_by})")
            return RecordResult(UPDATED, existing["id"])

        created = self.target.create_customer(customer_input)
        self._remember(customer, created["id"])
        logging.info(f"✅ Created customer: id={created['id']} email={created.get('email') or 'n/a'} "
                     f"phone={created.get('phone') or 'n/a'}")
        return RecordResult(CREATED, created["id"])


def describe_customer(customer: MergeGroup) -> str:
    email = customer.fields.get("email") or "no-email"
    phone = customer.fields.get("phone") or "no-phone"
    return f"({email}, {phone})"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Import customers from a Matrixify sheet into the TARGET store.")
    parser.add_argument("sheet", help="Path to the .xlsx/.csv export.")
    parser.add_argument("--dry-run", action="store_true", help="Match and report without writing anything.")
    parser.add_argument("--report", help="Report path (.xlsx or .csv).")
    add_common_arguments(parser, "customer_sheet")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    print("🚀 Starting Customers import (Sheet → Shopify) ...")
    target = ShopifyClient("TARGET")
    print(f"   Target: {target.shop_url}")

    importer = CustomerSheetImport(target, RunContext(), on_existing=args.on_existing, dry_run=args.dry_run)
    customers = importer.load(read_rows(args.sheet, CUSTOMER_SHEETS))

    report = ReportWriter(args.report or default_report_path("customers"))
    driver = RunDriver(
        "Customers import",
        report=report,
        report_row=lambda c: {
            "Key": c.key,
            "Email": c.fields.get("email") or "",
            "Phone": c.fields.get("phone") or "",
            "Merged Rows": c.merged_rows,
        },
        id_column="Customer ID",
    )
    stats = driver.run(customers, importer.process, describe_customer)
    report.flush()
    return stats.exit_code


if __name__ == "__main__":
    sys.exit(main())
