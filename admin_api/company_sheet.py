#!/usr/bin/env python3
"""
company_sheet.py

Imports B2B companies from a Matrixify "Companies" export into the TARGET store.

The sheet has one row per company x location x contact permission. Rows are
grouped by the company "ID" column (rows without ID or Name are dropped):
  - company scalars come from the first row that has them
  - locations are keyed by "Location: ID" and need a "Location: Name"
  - every "Customer: Email" row is a contact, with an optional
    "Customer: Location Role" at the location of the same row
  - "Metafield: ns.key [type]" columns are company metafields (last row wins)

Per company:
  1. Match on TARGET: known this run, External ID (the sheet ID when the
     External ID column is blank), then name.
  2. Create it with its first location inlined, or update its scalars.
  3. Map every sheet location onto a TARGET location (external ID, then
     name) and create the missing ones.
  4. Link the main contact and every contact row's customer (the customers
     must already exist on TARGET), assign location roles, mark the main
     contact.
  5. Write the company metafields.
A failing location or contact is logged and counted; the rest carry on.

Usage:
    python -m admin_api.company_sheet companies.xlsx --dry-run
    python -m admin_api.company_sheet companies.xlsx --on-existing skip
"""

from __future__ import annotations

import argparse
import logging
import sys

from admin_api.company_sync import ensure_contact
from admin_api.customer_sync import find_by_email, normalize_phone
from admin_api.shopify_client import ShopifyClient
from reconcile.entity_matcher import (
    EntityMatcher,
    field_strategy,
    known_strategy,
    normalize_email,
    normalize_text,
    search_strategy,
)
from reconcile.key_resolver import RunContext, search_term
from reconcile.metafields import (
    connection_nodes,
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
from sheets.report_writer import ReportWriter, default_report_path
from sheets.sheet_reader import read_rows, to_iso_datetime

COMPANY_SHEETS = ["Companies", "Company"]

# CompanyAddressInput field -> column suffix after "Location: Shipping " / "Location: Billing "
SHEET_ADDRESS_COLUMNS = {
    "firstName": "First Name",
    "lastName": "Last Name",
    "address1": "Address 1",
    "address2": "Address 2",
    "city": "City",
    "zoneCode": "Province Code",
    "zip": "Zip",
    "countryCode": "Country Code",
    "phone": "Phone",
}

COMPANY_SCALARS = {
    "sheetId": lambda row: _text(row.get("ID")),
    "name": lambda row: _text(row.get("Name")),
    "externalId": lambda row: _text(row.get("External ID")),
    "note": lambda row: _text(row.get("Notes")),
    "customerSince": "Customer Since",
    "mainContactEmail": lambda row: normalize_email(row.get("Main Contact: Customer Email")),
}


def _text(value) -> str | None:
    if is_empty(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def company_key(row: dict) -> str | None:
    if _text(row.get("ID")) is None or _text(row.get("Name")) is None:
        return None
    return _text(row["ID"])


def tax_exempt_setting(value) -> bool | None:
    """'collect' means taxes are charged; 'do not collect' means the location is exempt."""
    text = (_text(value) or "").lower()
    if text == "collect":
        return False
    if text == "do not collect":
        return True
    return None


def split_list(value) -> list[str]:
    return [part.strip() for part in (_text(value) or "").split(",") if part.strip()]


def sheet_address(row: dict, kind: str) -> dict | None:
    """Shipping or billing address of the row; None without Address 1 and Country Code."""
    prefix = f"Location: {kind} "
    address = {field: _text(row.get(prefix + column)) for field, column in SHEET_ADDRESS_COLUMNS.items()}
    if not address["address1"] or not address["countryCode"]:
        return None
    address["recipient"] = (
        _text(row.get(prefix + "Recipient")) or address["firstName"] or address["lastName"]
    )
    return address


def location_from_row(row: dict) -> list[dict]:
    location_id = _text(row.get("Location: ID"))
    name = _text(row.get("Location: Name"))
    if not location_id or not name:
        return []
    return [{
        "id": location_id,
        "name": name,
        "externalId": _text(row.get("Location: External ID")),
        "phone": normalize_phone(row.get("Location: Phone")),
        "note": _text(row.get("Location: Notes")),
        "taxExempt": tax_exempt_setting(row.get("Location: Tax Setting")),
        "taxExemptions": split_list(row.get("Location: Tax Exemptions")),
        "taxRegistrationId": _text(row.get("Location: Tax ID")),
        "editableShippingAddress": to_bool(row.get("Location: Allow Shipping To Any Address")),
        "checkoutToDraft": to_bool(row.get("Location: Checkout To Draft")),
        "paymentTerms": _text(row.get("Location: Checkout Payment Terms")),
        "deposit": _text(row.get("Location: Checkout Payment Deposit")),
        "shipping": sheet_address(row, "Shipping"),
        "billing": sheet_address(row, "Billing"),
    }]


def contact_from_row(row: dict) -> list[dict]:
    email = normalize_email(row.get("Customer: Email"))
    if not email:
        return []
    return [{
        "email": email,
        "role": _text(row.get("Customer: Location Role")),
        "locationId": _text(row.get("Location: ID")),
    }]


def company_merge_spec(metafield_columns) -> MergeSpec:
    return MergeSpec(
        scalars=COMPANY_SCALARS,
        lists=[
            ListField("locations", location_from_row, dedupe_key=lambda loc: loc["id"]),
            ListField(
                "contacts",
                contact_from_row,
                dedupe_key=lambda c: (c["email"], c["role"], c["locationId"]),
            ),
            ListField(
                "metafields",
                lambda row: metafields_from_row(row, metafield_columns),
                dedupe_key=lambda mf: (mf["namespace"], mf["key"]),
                keep="last",
            ),
        ],
    )


def company_external_id(company: MergeGroup) -> str:
    return company.fields.get("externalId") or company.fields["sheetId"]


def sheet_location_input(location: dict, company_name: str, payment_terms_id: str | None) -> dict:
    """CompanyLocationInput for a sheet location."""
    result = {
        "name": location.get("name") or company_name,
        "externalId": location.get("externalId") or location["id"],
    }
    for field in ("phone", "note", "taxRegistrationId"):
        if location.get(field):
            result[field] = location[field]
    if location.get("taxExempt") is not None:
        result["taxExempt"] = location["taxExempt"]
    if location.get("taxExemptions"):
        result["taxExemptions"] = location["taxExemptions"]

    buyer_experience = {}
    for flag in ("checkoutToDraft", "editableShippingAddress"):
        if location.get(flag) is not None:
            buyer_experience[flag] = location[flag]
    if payment_terms_id:
        buyer_experience["paymentTermsTemplateId"] = payment_terms_id
        # a deposit only applies together with payment terms
        try:
            deposit = float(location["deposit"]) if location.get("deposit") else None
        except ValueError:
            logging.warning(f"⚠️ Ignoring non-numeric payment deposit {location['deposit']!r}")
            deposit = None
        if deposit is not None:
            buyer_experience["deposit"] = {"percentage": deposit}
    if buyer_experience:
        result["buyerExperienceConfiguration"] = buyer_experience

    shipping, billing = location.get("shipping"), location.get("billing")
    if shipping:
        result["shippingAddress"] = shipping
    if billing:
        result["billingAddress"] = billing
    if shipping:
        result["billingSameAsShipping"] = billing is None
    return result


class CompanySheetImport:
    def __init__(self, target: ShopifyClient, context: RunContext | None = None,
                 on_existing: str = "update", dry_run: bool = False):
        self.target = target
        self.context = context or RunContext()
        self.on_existing = on_existing
        self.dry_run = dry_run
        self.matcher = EntityMatcher(self.context)
        self._payment_terms = None

    def load(self, rows: list[dict]) -> list[MergeGroup]:
        headers = list(rows[0].keys()) if rows else []
        self.metafield_columns = detect_metafield_columns(headers)
        print(f"🔎 Detected {len(self.metafield_columns)} company metafield column(s)")
        if not self.dry_run:
            ensure_metafield_definitions(self.target, "COMPANY", self.metafield_columns)
        companies = group(rows, company_key, company_merge_spec(self.metafield_columns))
        print(f"✅ Parsed {len(companies)} company(ies) from sheet")
        return companies

    # --- matching ---

    def strategies(self):
        return [
            known_strategy(self.context, "company", lambda c: c.fields.get("sheetId")),
            search_strategy("external ID", self._by_external_id),
            search_strategy("name", self._by_name),
        ]

    def _by_external_id(self, company: MergeGroup) -> list:
        external_id = company_external_id(company)
        found = self.target.find_companies(search_term("external_id", external_id))
        return [c for c in found if normalize_text(c.get("externalId")) == external_id]

    def _by_name(self, company: MergeGroup) -> list:
        name = company.fields["name"]
        found = self.target.find_companies(search_term("name", name))
        return [c for c in found if normalize_text(c.get("name")) == name]

    def find_customer(self, email: str) -> str | None:
        matcher = EntityMatcher(self.context)
        customer = matcher.find_existing(email, [
            known_strategy(self.context, "customer", normalize_email),
            search_strategy("email", lambda e: find_by_email(self.target, e)),
        ])
        if customer is None:
            return None
        self.context.identifiers.set("customer", normalize_email(email), customer["id"])
        return customer["id"]

    @property
    def payment_terms(self) -> dict[str, str]:
        if self._payment_terms is None:
            self._payment_terms = {t["name"]: t["id"] for t in self.target.payment_terms_templates()}
        return self._payment_terms

    def payment_terms_id(self, location: dict) -> str | None:
        name = location.get("paymentTerms")
        if not name:
            return None
        terms_id = self.payment_terms.get(name)
        if not terms_id:
            logging.warning(f"⚠️ Payment terms {name!r} not found on TARGET, left unset")
        return terms_id

    # --- per company ---

    def process(self, company: MergeGroup) -> RecordResult:
        if company.error:
            raise company.error
        fields = company.fields
        name = fields["name"]

        existing = self.matcher.find_existing(company, self.strategies())
        if existing and self.on_existing == "skip":
            logging.info(f"🔁 Company {name} exists on TARGET ({existing['id']}), skipping")
            return RecordResult(SKIPPED, existing["id"], reason="already exists")

        if self.dry_run:
            action = "update" if existing else "create"
            logging.info(f"[DRY RUN] Would {action} company {name} with "
                         f"{len(company.lists['locations'])} location(s)")
            return RecordResult(SKIPPED, existing["id"] if existing else None, reason=f"dry run: would {action}")

        if existing:
            company_id = existing["id"]
            self.target.update_company(company_id, self._company_input(company))
            logging.info(f"🔄 Updated company {name} ({company_id}) matched by {self.matcher.matched_by}")
            status = UPDATED
        else:
            company_id = self._create(company)
            status = CREATED
        self.context.identifiers.set("company", fields["sheetId"], company_id)

        target_company = self.target.get_company(company_id)
        for node in connection_nodes(target_company.get("contacts")):
            linked = (node.get("customer") or {}).get("id")
            if linked:
                self.context.contacts.setdefault((company_id, linked), node["id"])

        failures = 0
        location_ids = {}
        target_locations = connection_nodes(target_company.get("locations"))
        for location in company.lists["locations"]:
            try:
                location_ids[location["id"]] = self._reconcile_location(location, company_id, name, target_locations)
            except Exception as e:
                failures += 1
                logging.error(f"❌ [{name}] location {location['name']}: {e}")

        roles = {r["name"]: r["id"] for r in connection_nodes(target_company.get("contactRoles"))}
        contact_ids = {}
        main_email = fields.get("mainContactEmail")
        emails = [main_email] if main_email else []
        emails += [c["email"] for c in company.lists["contacts"] if c["email"] not in emails]
        for email in emails:
            try:
                contact_id = self._link_contact(company_id, email)
            except Exception as e:
                failures += 1
                logging.error(f"❌ [{name}] contact {email}: {e}")
                continue
            if contact_id:
                contact_ids[email] = contact_id

        for contact in company.lists["contacts"]:
            if contact["email"] not in contact_ids or not contact["role"]:
                continue
            try:
                self._assign_role(contact, contact_ids[contact["email"]], roles, location_ids)
            except Exception as e:
                failures += 1
                logging.error(f"❌ [{name}] role {contact['role']!r} for {contact['email']}: {e}")

        if main_email:
            if main_email in contact_ids:
                self.target.assign_main_contact(company_id, contact_ids[main_email])
                logging.info(f"⭐ Main contact set: {main_email}")
            else:
                logging.warning(f"⚠️ Main contact {main_email} is not linked to {name}, not set")

        metafields = merge_metafields(
            sanitize_metafields(company.lists["metafields"], "COMPANY", name), [], company_id
        )
        if metafields:
            self.target.set_metafields(metafields)
            logging.info(f"🏷️ Set {len(metafields)} company metafield(s)")

        return RecordResult(status, company_id, child_failures=failures)

    def _company_input(self, company: MergeGroup) -> dict:
        fields = company.fields
        company_input = {"name": fields["name"], "externalId": company_external_id(company)}
        if fields.get("note"):
            company_input["note"] = fields["note"]
        customer_since = to_iso_datetime(fields.get("customerSince"))
        if customer_since:
            company_input["customerSince"] = customer_since
        return company_input

    def _create(self, company: MergeGroup) -> str:
        name = company.fields["name"]
        create_input = {"company": self._company_input(company)}
        locations = company.lists["locations"]
        if locations:
            first = locations[0]
            create_input["companyLocation"] = sheet_location_input(first, name, self.payment_terms_id(first))
        created = self.target.create_company(create_input)
        logging.info(f"✅ Created company {name} (sheet ID={company.fields['sheetId']}) id={created['id']}")
        return created["id"]

    # --- children ---

    def _reconcile_location(self, location: dict, company_id: str, company_name: str,
                            target_locations: list) -> str:
        external_id = location.get("externalId") or location["id"]
        matcher = EntityMatcher(self.context)
        match = matcher.find_existing(location, [
            field_strategy("external ID", target_locations, "externalId", lambda loc: external_id),
            field_strategy("name", target_locations, "name", lambda loc: loc.get("name")),
        ])
        if match:
            logging.debug(f"Location {location['name']} → {match['id']} (by {matcher.matched_by})")
            return match["id"]

        location_input = sheet_location_input(location, company_name, self.payment_terms_id(location))
        created = self.target.create_company_location(company_id, location_input)
        target_locations.append(created)
        logging.info(f"➕ Created location {location['name']} (sheet ID={location['id']}) id={created['id']}")
        return created["id"]

    def _link_contact(self, company_id: str, email: str) -> str | None:
        customer_id = self.find_customer(email)
        if not customer_id:
            logging.warning(f"⚠️ Customer not found on TARGET for {email}, not linked as contact")
            return None
        return ensure_contact(self.target, self.context, company_id, customer_id)

    def _assign_role(self, contact: dict, contact_id: str, roles: dict, location_ids: dict) -> None:
        role_id = roles.get(contact["role"])
        if not role_id:
            logging.warning(f"⚠️ Role {contact['role']!r} not found on TARGET company ({contact['email']})")
            return
        location_id = location_ids.get(contact["locationId"])
        if not location_id:
            logging.warning(f"⚠️ Location {contact['locationId']!r} not resolved ({contact['email']})")
            return
        self.target.assign_location_roles(location_id, [{
            "companyContactId": contact_id,
            "companyContactRoleId": role_id,
        }])
        logging.info(f"🎭 Assigned {contact['role']!r} to {contact['email']} at {location_id}")


def describe_company(company: MergeGroup) -> str:
    return f"{company.fields.get('name')!r} (sheet ID: {company.key})"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Import B2B companies from a Matrixify sheet into the TARGET store.")
    parser.add_argument("sheet", help="Path to the .xlsx/.csv export.")
    parser.add_argument("--dry-run", action="store_true", help="Match and report without writing anything.")
    parser.add_argument("--report", help="Report path (.xlsx or .csv).")
    add_common_arguments(parser, "company_sheet")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    print("🚀 Starting COMPANIES import (Sheet → Shopify) ...")
    target = ShopifyClient("TARGET")
    print(f"   Target: {target.shop_url}")

    importer = CompanySheetImport(target, RunContext(), on_existing=args.on_existing, dry_run=args.dry_run)
    companies = importer.load(read_rows(args.sheet, COMPANY_SHEETS))

    report = ReportWriter(args.report or default_report_path("company_sheet"))
    driver = RunDriver(
        "Companies import",
        report=report,
        report_row=lambda c: {"Sheet ID": c.key, "Name": c.fields.get("name") or "", "Merged Rows": c.merged_rows},
        id_column="Company ID",
    )
    stats = driver.run(companies, importer.process, describe_company)
    report.flush()
    return stats.exit_code


if __name__ == "__main__":
    sys.exit(main())
