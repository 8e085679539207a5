#!/usr/bin/env python3
"""
company_sync.py

Copies B2B companies from the SOURCE store to the TARGET store.

Per company:
  1. Fetch the source company and count its qualifying orders (tier).
  2. Match on TARGET by external ID, then by name.
  3. Create it (first location with a shipping address inlined) or update
     its scalars, then write merged metafields plus the forced tracking ones.
     Anything failing here aborts the company.
  4. Reconcile every other location (update or create, tax, addresses).
  5. For every contact: upsert the customer, link it to the company, mark
     the main contact, assign location roles.
A failing location or contact is logged and counted; the rest carry on.

Usage:
    python -m admin_api.company_sync 123456789 gid://shopify/Company/987
    python -m admin_api.company_sync --manifest companies.json --year 2025
"""

from __future__ import annotations

import argparse
import logging
import sys

from admin_api.customer_sync import CustomerSync
from admin_api.shopify_client import ShopifyClient
from reconcile.entity_matcher import EntityMatcher, field_strategy, normalize_text, search_strategy
from reconcile.key_resolver import RunContext, looks_like_gid, search_term
from reconcile.metafields import apply_forced, connection_nodes, merge_metafields, sanitize_metafields
from reconcile.run_driver import (
    CREATED,
    SKIPPED,
    UPDATED,
    RecordResult,
    RunDriver,
    add_common_arguments,
    load_manifest,
    setup_logging,
)
from reconcile.tiers import count_qualifying_orders, tier_for_count
from sheets.report_writer import ReportWriter, default_report_path

ADDRESS_FIELDS = (
    "firstName", "lastName", "address1", "address2", "city",
    "zoneCode", "zip", "countryCode", "phone", "recipient",
)


def company_gid(reference) -> str:
    reference = str(reference).strip()
    return reference if looks_like_gid(reference) else f"gid://shopify/Company/{reference}"


def address_input(address: dict | None) -> dict | None:
    if not address:
        return None
    return {field: address.get(field) for field in ADDRESS_FIELDS}


def buyer_experience_input(config: dict | None) -> dict | None:
    if not config:
        return None
    result = {}
    for flag in ("checkoutToDraft", "editableShippingAddress"):
        if isinstance(config.get(flag), bool):
            result[flag] = config[flag]
    deposit = config.get("deposit") or {}
    if deposit.get("__typename") == "DepositPercentage" and isinstance(deposit.get("percentage"), (int, float)):
        result["deposit"] = {"percentage": deposit["percentage"]}
    terms_id = (config.get("paymentTermsTemplate") or {}).get("id")
    if terms_id:
        result["paymentTermsTemplateId"] = terms_id
    return result or None


def location_create_input(location: dict, company_name: str) -> dict | None:
    """CompanyLocationInput, or None when the location has no shipping address."""
    shipping = address_input(location.get("shippingAddress"))
    if not shipping:
        return None
    billing = address_input(location.get("billingAddress"))

    result = {
        "name": location.get("name") or company_name,
        "externalId": location.get("externalId"),
        "shippingAddress": shipping,
        "billingSameAsShipping": billing is None,
    }
    if billing:
        result["billingAddress"] = billing

    tax = location.get("taxSettings")
    if tax:
        result["taxExempt"] = bool(tax.get("taxExempt"))
        if isinstance(tax.get("taxExemptions"), list):
            result["taxExemptions"] = tax["taxExemptions"]
        if tax.get("taxRegistrationId"):
            result["taxRegistrationId"] = tax["taxRegistrationId"]

    buyer_experience = buyer_experience_input(location.get("buyerExperienceConfiguration"))
    if buyer_experience:
        result["buyerExperienceConfiguration"] = buyer_experience
    return result


def location_update_input(location: dict, company_name: str) -> dict:
    result = {
        "name": location.get("name") or company_name,
        "externalId": location.get("externalId") or None,
        "note": location.get("note") or None,
        "phone": location.get("phone") or None,
        "locale": location.get("locale") or None,
    }
    buyer_experience = buyer_experience_input(location.get("buyerExperienceConfiguration"))
    if buyer_experience:
        result["buyerExperienceConfiguration"] = buyer_experience
    return result


def forced_company_metafields(source_company: dict, tier: str) -> list[dict]:
    return [
        {"namespace": "custom", "key": "source_company_id", "type": "single_line_text_field",
         "value": source_company["id"]},
        {"namespace": "custom", "key": "isActive", "type": "boolean", "value": "true"},
        {"namespace": "custom", "key": "level", "type": "single_line_text_field", "value": tier},
    ]


class CompanySync:
    def __init__(
        self,
        source: ShopifyClient,
        target: ShopifyClient,
        context: RunContext | None = None,
        on_existing: str = "update",
        tier_year: int | None = None,
    ):
        self.source = source
        self.target = target
        self.context = context or RunContext()
        self.on_existing = on_existing
        self.tier_year = tier_year
        self.matcher = EntityMatcher(self.context)
        self.customers = CustomerSync(target, self.context)

    # --- matching ---

    def strategies(self):
        return [
            search_strategy("external ID", self._by_external_id),
            search_strategy("name", self._by_name),
        ]

    def _by_external_id(self, company: dict) -> list:
        external_id = normalize_text(company.get("externalId") or company.get("id"))
        if not external_id:
            return []
        found = self.target.find_companies(search_term("external_id", external_id))
        return [c for c in found if normalize_text(c.get("externalId")) == external_id]

    def _by_name(self, company: dict) -> list:
        name = normalize_text(company.get("name"))
        if not name:
            return []
        found = self.target.find_companies(search_term("name", name))
        return [c for c in found if normalize_text(c.get("name")) == name]

    # --- per company ---

    def sync(self, reference) -> RecordResult:
        source_company = self.source.fetch_company(company_gid(reference))
        name = source_company.get("name")
        orders = self.source.iter_company_orders(source_company["id"])
        order_count = count_qualifying_orders(orders, self.tier_year)
        tier = tier_for_count(order_count)
        logging.info(f"🏢 {name}: {order_count} qualifying order(s) → {tier}")

        source_locations = connection_nodes(source_company.get("locations"))
        existing = self.matcher.find_existing(source_company, self.strategies())

        if existing:
            if self.on_existing == "skip":
                logging.info(f"🔁 Company {name} exists on TARGET ({existing['id']}), skipping")
                return RecordResult(SKIPPED, existing["id"], reason="already exists")
            company = existing
            self.target.update_company(company["id"], {
                "name": name,
                "note": source_company.get("note") or None,
                "externalId": source_company.get("externalId") or source_company["id"],
            })
            logging.info(f"🔄 Updated company {name} ({company['id']}) matched by {self.matcher.matched_by}")
            status = UPDATED
            target_metafields = self.target.get_metafields(company["id"])
            target_locations = connection_nodes(company.get("locations"))
            pending_locations = source_locations
        else:
            company, pending_locations = self._create(source_company, source_locations)
            status = CREATED
            target_metafields = []
            target_locations = []

        company_id = company["id"]
        self.context.identifiers.set("company", source_company["id"], company_id)
        for role in connection_nodes(company.get("contactRoles")):
            self.context.identifiers.set("role", f"{company_id}::{role['name']}", role["id"])

        source_metafields = sanitize_metafields(source_company.get("metafields"), "COMPANY", name)
        merged = merge_metafields(source_metafields, target_metafields, company_id)
        merged = apply_forced(merged, forced_company_metafields(source_company, tier), company_id)
        self.target.set_metafields(merged)
        logging.info(f"🏷️ Wrote {len(merged)} company metafield(s) (level={tier})")

        failures = 0
        for location in pending_locations:
            try:
                self._reconcile_location(location, company_id, name, target_locations)
            except Exception as e:
                failures += 1
                logging.error(f"❌ [{name}] location {location.get('name') or location.get('id')}: {e}")

        for contact in connection_nodes(source_company.get("contacts")):
            customer = contact.get("customer") or {}
            try:
                self._sync_contact(contact, source_company["id"], company_id, tier)
            except Exception as e:
                failures += 1
                logging.error(f"❌ [{name}] contact {customer.get('email') or contact.get('id')}: {e}")

        return RecordResult(status, company_id, child_failures=failures)

    def _create(self, source_company: dict, source_locations: list) -> tuple[dict, list]:
        name = source_company.get("name")
        company_input = {
            "name": name,
            "externalId": source_company.get("externalId") or source_company["id"],
        }
        if source_company.get("note"):
            company_input["note"] = source_company["note"]
        create_input = {"company": company_input}

        pending = list(source_locations)
        inline_source = None
        for location in source_locations:
            location_input = location_create_input(location, name)
            if location_input:
                create_input["companyLocation"] = location_input
                inline_source = location
                pending.remove(location)
                break
        if inline_source is None and source_locations:
            logging.warning(f"⚠️ {name}: no source location has a shipping address; creating company without one")

        company = self.target.create_company(create_input)
        logging.info(f"✅ Created company {name} ({company['id']})")

        created_locations = connection_nodes(company.get("locations"))
        if inline_source is not None and created_locations:
            self.context.identifiers.set("location", inline_source["id"], created_locations[0]["id"])
        return company, pending

    # --- children ---

    def _reconcile_location(self, location: dict, company_id: str, company_name: str, target_locations: list) -> None:
        label = location.get("name") or location.get("id")
        create_input = location_create_input(location, company_name)
        if create_input is None:
            logging.warning(f"⚠️ [{company_name}] location {label} has no shipping address, skipping")
            return

        matcher = EntityMatcher(self.context)
        match = matcher.find_existing(location, [
            field_strategy("external ID", target_locations, "externalId", lambda loc: loc.get("externalId")),
            field_strategy("name", target_locations, "name", lambda loc: loc.get("name")),
        ])

        if match is None:
            created = self.target.create_company_location(company_id, create_input)
            self.context.identifiers.set("location", location["id"], created["id"])
            logging.info(f"➕ Created location {label} ({created['id']})")
            return

        location_id = match["id"]
        self.context.identifiers.set("location", location["id"], location_id)
        self.target.update_company_location(location_id, location_update_input(location, company_name))
        self.target.assign_location_address(location_id, create_input["shippingAddress"], ["SHIPPING"])
        if create_input.get("billingAddress"):
            self.target.assign_location_address(location_id, create_input["billingAddress"], ["BILLING"])
        self._override_tax(location, location_id)
        logging.info(f"🔄 Updated location {label} ({location_id}) matched by {matcher.matched_by}")

    def _override_tax(self, location: dict, location_id: str) -> None:
        tax = location.get("taxSettings")
        if not tax:
            return
        current = self.target.get_location_tax_settings(location_id)
        source_exemptions = tax.get("taxExemptions") or []
        target_exemptions = current.get("taxExemptions") or []
        self.target.update_location_tax_settings(
            location_id,
            tax_registration_id=tax.get("taxRegistrationId"),
            tax_exempt=tax["taxExempt"] if isinstance(tax.get("taxExempt"), bool) else None,
            assign=[e for e in source_exemptions if e not in target_exemptions],
            remove=[e for e in target_exemptions if e not in source_exemptions],
        )
        logging.info(f"🧾 Synced tax settings for location {location_id}")

    def _sync_contact(self, contact: dict, source_company_id: str, company_id: str, tier: str) -> None:
        customer = contact.get("customer")
        if not customer:
            logging.warning(f"⚠️ Contact {contact.get('id')} has no customer, skipping")
            return

        result = self.customers.upsert_from_source(customer, tier)
        if not result.identifier:
            return
        contact_id = self.ensure_contact(company_id, result.identifier)

        if contact.get("isMainContact"):
            self.target.assign_main_contact(company_id, contact_id)
            logging.info(f"⭐ Main contact set: {customer.get('email')}")

        roles_by_location: dict[str, list] = {}
        for profile in customer.get("companyContactProfiles") or []:
            if (profile.get("company") or {}).get("id") != source_company_id:
                continue
            for assignment in connection_nodes(profile.get("roleAssignments")):
                source_location = assignment.get("companyLocation") or {}
                role_name = (assignment.get("role") or {}).get("name")
                location_id = self.context.identifiers.get("location", source_location.get("id"))
                role_id = self.context.identifiers.get("role", f"{company_id}::{role_name}")
                if not location_id or not role_id:
                    logging.warning(
                        f"⚠️ Role {role_name!r} at {source_location.get('name')!r} has no TARGET "
                        f"counterpart, skipping"
                    )
                    continue
                roles_by_location.setdefault(location_id, []).append({
                    "companyContactId": contact_id,
                    "companyContactRoleId": role_id,
                })

        for location_id, roles in roles_by_location.items():
            self.target.assign_location_roles(location_id, roles)
            logging.info(f"🔐 Assigned {len(roles)} role(s) at {location_id}")

    def ensure_contact(self, company_id: str, customer_id: str) -> str:
        return ensure_contact(self.target, self.context, company_id, customer_id)


def ensure_contact(target: ShopifyClient, context: RunContext, company_id: str, customer_id: str) -> str:
    """Reuse an existing company contact for the customer, else create the link."""
    cached = context.contacts.get((company_id, customer_id))
    if cached:
        return cached

    for node in target.list_company_contacts(company_id):
        linked = (node.get("customer") or {}).get("id")
        if linked:
            context.contacts.setdefault((company_id, linked), node["id"])
    if (company_id, customer_id) in context.contacts:
        return context.contacts[(company_id, customer_id)]

    contact_id = target.assign_customer_as_contact(company_id, customer_id)
    context.contacts[(company_id, customer_id)] = contact_id
    logging.info(f"🔗 Linked customer {customer_id} as contact {contact_id}")
    return contact_id


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Sync B2B companies from the SOURCE store to the TARGET store.")
    parser.add_argument("companies", nargs="*", help="Source company IDs or GIDs.")
    parser.add_argument("--manifest", help="JSON list / {\"companies\": [...]} or a text file with one ID per line.")
    parser.add_argument("--year", type=int, help="Calendar year whose orders set the tier (default: current year).")
    parser.add_argument("--report", help="Report path (.xlsx or .csv).")
    add_common_arguments(parser, "company")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    references = list(args.companies)
    if args.manifest:
        references.extend(load_manifest(args.manifest, "companies"))
    if not references:
        parser.error("Give at least one company ID or --manifest.")

    print(f"🚀 Syncing {len(references)} company(ies) SOURCE → TARGET ...")
    sync = CompanySync(
        ShopifyClient("SOURCE"),
        ShopifyClient("TARGET"),
        on_existing=args.on_existing,
        tier_year=args.year,
    )
    report = ReportWriter(args.report or default_report_path("companies"))
    driver = RunDriver(
        "Companies sync",
        report=report,
        report_row=lambda ref: {"Source Company": ref},
        id_column="Target Company ID",
    )
    stats = driver.run(references, sync.sync)
    report.flush()
    return stats.exit_code


if __name__ == "__main__":
    sys.exit(main())
