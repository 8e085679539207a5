#!/usr/bin/env python3
"""
discount_sync.py

Creates discounts on the TARGET store from a Matrixify "Discounts" export.

A discount can span several rows: a row with "Top Row" set opens a new
discount, the rows below it continue it. Continuation rows only add list
values (customers, products, countries) and fill columns left empty above.

Each merged discount is dispatched on (Method, Type) to a builder that
returns a DiscountPlan: the create mutation, its argument name and input.
The import is create-only; existing codes / automatic titles are skipped.

Usage:
    python -m admin_api.discount_sync discounts.xlsx
    python -m admin_api.discount_sync discounts.xlsx --report reports/discounts.xlsx
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
from dataclasses import dataclass
from typing import Callable

from admin_api.errors import ResolutionError
from admin_api.shopify_client import ShopifyClient
from reconcile.key_resolver import KeyResolver, RunContext
from reconcile.metafields import to_bool
from reconcile.row_grouper import CONTINUE, NEW_GROUP, ListField, MergeGroup, MergeSpec, group, is_empty
from reconcile.run_driver import CREATED, SKIPPED, RecordResult, RunDriver, add_common_arguments, setup_logging
from sheets.report_writer import ReportWriter, default_report_path
from sheets.sheet_reader import read_rows, to_iso_datetime

LIST_COLUMNS = (
    "Eligibility: Customer Values",
    "Applies To: Values",
    "Buy X Get Y: Customer Buys Values",
    "Free Shipping: Country Codes",
)
SINGLE_VALUED_COLUMNS = ("Applies To: Type", "Eligibility: Customer Type")

METHODS = {"code": "Code", "automatic": "Automatic"}
TYPES = {
    "amount off products": "basic",
    "amount off order": "basic",
    "buy x get y": "bxgy",
    "free shipping": "free_shipping",
    "app": "app",
}
VALUE_TYPES = {
    "percentage": "Percentage",
    "fixed amount": "Fixed Amount",
    "amount off each": "Amount Off Each",
    "free": "Free",
}

SPEND_RE = re.compile(r"spend\s*\$?\s*(\d+(?:\.\d+)?)", re.IGNORECASE)

# mutation -> (argument, input type, created node selection)
MUTATIONS = {
    "discountCodeBasicCreate": ("basicCodeDiscount", "DiscountCodeBasicInput", "codeDiscountNode { id }"),
    "discountCodeBxgyCreate": ("bxgyCodeDiscount", "DiscountCodeBxgyInput", "codeDiscountNode { id }"),
    "discountCodeFreeShippingCreate": (
        "freeShippingCodeDiscount", "DiscountCodeFreeShippingInput", "codeDiscountNode { id }"),
    "discountAutomaticBasicCreate": (
        "automaticBasicDiscount", "DiscountAutomaticBasicInput", "automaticDiscountNode { id }"),
    "discountAutomaticBxgyCreate": (
        "automaticBxgyDiscount", "DiscountAutomaticBxgyInput", "automaticDiscountNode { id }"),
    "discountAutomaticFreeShippingCreate": (
        "freeShippingAutomaticDiscount", "DiscountAutomaticFreeShippingInput", "automaticDiscountNode { id }"),
}


@dataclass
class DiscountPlan:
    mutation: str
    argument: str
    input: dict

    def document(self) -> str:
        argument, input_type, node = MUTATIONS[self.mutation]
        return f"""
        mutation {self.mutation}(${argument}: {input_type}!) {{
          {self.mutation}({argument}: ${argument}) {{
            {node}
            userErrors {{ field message code }}
          }}
        }}
        """


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------

def is_truthy(value) -> bool:
    return to_bool(value) is True


def split_list(value) -> list[str]:
    if is_empty(value):
        return []
    return [part.strip() for part in re.split(r"[,|]", str(value)) if part.strip()]


def to_int(value) -> int | None:
    if is_empty(value):
        return None
    try:
        return int(float(str(value).strip()))
    except ValueError:
        return None


def to_float(value) -> float | None:
    if is_empty(value):
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def to_money(value) -> str | None:
    if to_float(value) is None:
        return None
    return str(value).strip()


def text(discount: MergeGroup, column: str) -> str:
    value = discount.fields.get(column)
    return "" if is_empty(value) else str(value).strip()


def values(discount: MergeGroup, column: str) -> list[str]:
    return discount.lists.get(column) or split_list(discount.fields.get(column))


def normalize_value_type(value) -> str | None:
    if is_empty(value):
        return None
    raw = str(value).strip()
    return VALUE_TYPES.get(raw.lower(), raw)


def percentage(value) -> float | None:
    """Sheet percentages are percent points: 20 means 20%."""
    number = to_float(value)
    if number is None or number < 0:
        return None
    if number > 100:
        raise ValueError(f"Invalid percentage value {number} (must be 0-100 in sheet).")
    return number / 100


# ---------------------------------------------------------------------------
# Input pieces
# ---------------------------------------------------------------------------

def discount_key(row: dict):
    return NEW_GROUP if is_truthy(row.get("Top Row")) else CONTINUE


def discount_merge_spec() -> MergeSpec:
    return MergeSpec(
        scalars=None,
        lists=[ListField(column, lambda row, c=column: split_list(row.get(c))) for column in LIST_COLUMNS],
        single_valued=list(SINGLE_VALUED_COLUMNS),
    )


def build_context(discount: MergeGroup, resolver: KeyResolver) -> dict:
    customer_type = text(discount, "Eligibility: Customer Type").lower()
    references = values(discount, "Eligibility: Customer Values")
    if not customer_type or customer_type == "all":
        return {"all": "ALL"}
    if "segment" in customer_type:
        ids = resolver.resolve_many("segment", references)
        return {"customerSegments": {"add": ids}} if ids else {"all": "ALL"}
    if "customer" in customer_type:
        ids = resolver.resolve_many("customer", references)
        if not ids:
            raise ResolutionError(
                "No valid customers resolved for Eligibility: Customer Values. "
                "Cannot create customer-specific discount."
            )
        return {"customers": {"add": ids}}
    return {"all": "ALL"}


def build_combines_with(discount: MergeGroup) -> dict | None:
    flags = {
        "productDiscounts": to_bool(discount.fields.get("Combines with Product Discounts")),
        "orderDiscounts": to_bool(discount.fields.get("Combines with Order Discounts")),
        "shippingDiscounts": to_bool(discount.fields.get("Combines with Shipping Discounts")),
    }
    if all(flag is None for flag in flags.values()):
        return None
    return {name: bool(flag) for name, flag in flags.items()}


def purchase_type_flags(discount: MergeGroup) -> dict:
    raw = " ".join(text(discount, "Purchase Type").lower().split())
    if not raw:
        return {}
    one_time = "one-time" in raw or "one time" in raw
    subscription = "subscription" in raw
    if "both" in raw or (one_time and subscription):
        return {"appliesOnOneTimePurchase": True, "appliesOnSubscription": True}
    if subscription:
        return {"appliesOnOneTimePurchase": False, "appliesOnSubscription": True}
    if one_time:
        return {"appliesOnOneTimePurchase": True, "appliesOnSubscription": False}
    return {}


def build_minimum_requirement(discount: MergeGroup) -> dict | None:
    requirement = text(discount, "Minimum Requirement").lower()
    if not requirement or requirement == "none":
        return None
    if "amount" in requirement or "subtotal" in requirement:
        amount = to_money(discount.fields.get("Minimum Value"))
        return {"subtotal": {"greaterThanOrEqualToSubtotal": amount}} if amount else None
    if "quantity" in requirement:
        quantity = to_int(discount.fields.get("Minimum Value"))
        return {"quantity": {"greaterThanOrEqualToQuantity": str(quantity)}} if quantity is not None else None
    return None


def usage_fields(discount: MergeGroup) -> dict:
    result = {}
    usage_limit = to_int(discount.fields.get("Limit Total Times"))
    if usage_limit and usage_limit > 0:
        result["usageLimit"] = usage_limit
    once_per_customer = to_bool(discount.fields.get("Limit One Use Per Customer"))
    if once_per_customer is not None:
        result["appliesOncePerCustomer"] = once_per_customer
    per_order = to_int(discount.fields.get("Limit Uses Per Order"))
    if per_order and per_order > 0:
        result["usesPerOrderLimit"] = str(per_order)
    if purchase_type_flags(discount).get("appliesOnSubscription"):
        recurring = to_int(discount.fields.get("Purchase Type: Recurring Subscription Limit"))
        if recurring and recurring > 0:
            result["recurringCycleLimit"] = recurring
    return result


def item_kind(type_text: str) -> str:
    if "collection" in type_text:
        return "collection"
    if "variant" in type_text:
        return "variant"
    return "product"


def items_input(kind: str, ids: list[str]) -> dict:
    if kind == "collection":
        return {"collections": {"add": ids}}
    if kind == "variant":
        return {"products": {"productVariantsToAdd": ids}}
    return {"products": {"productsToAdd": ids}}


def resolve_items(resolver: KeyResolver, kind: str, references: list[str], label: str) -> list[str]:
    ids = resolver.resolve_many(kind, references)
    if references and not ids:
        raise ResolutionError(f"{label}={kind} but none resolved. Values={references}")
    return ids


def build_basic_items(discount: MergeGroup, resolver: KeyResolver) -> dict:
    type_text = text(discount, "Applies To: Type").lower()
    if not type_text or type_text == "all":
        return {"all": True}
    if not any(word in type_text for word in ("collection", "variant", "product")):
        return {"all": True}
    kind = item_kind(type_text)
    ids = resolve_items(resolver, kind, values(discount, "Applies To: Values"), "Applies To")
    return items_input(kind, ids)


def build_basic_value(discount: MergeGroup) -> dict | None:
    value_type = normalize_value_type(discount.fields.get("Value Type"))
    raw = discount.fields.get("Value")
    if value_type == "Percentage":
        pct = percentage(raw)
        return {"percentage": pct} if pct is not None else None
    if value_type in ("Fixed Amount", "Amount Off Each"):
        amount = to_money(raw)
        if not amount:
            return None
        return {"discountAmount": {"amount": amount, "appliesOnEachItem": value_type == "Amount Off Each"}}
    return None


def spend_amount(discount: MergeGroup) -> str | None:
    match = SPEND_RE.search(text(discount, "Summary"))
    return to_money(match.group(1)) if match else None


def build_customer_buys(discount: MergeGroup, resolver: KeyResolver) -> dict:
    amount = spend_amount(discount)
    buy_value = {"amount": amount} if amount else {"quantity": "1"}
    type_text = text(discount, "Buy X Get Y: Customer Buys Type").lower()
    kind = item_kind(type_text)
    ids = resolve_items(resolver, kind, values(discount, "Buy X Get Y: Customer Buys Values"), "BXGY customerBuys")
    return {"items": items_input(kind, ids), "value": buy_value}


def build_customer_gets(discount: MergeGroup, resolver: KeyResolver) -> dict:
    type_text = text(discount, "Applies To: Type").lower()
    if not type_text:
        raise ValueError("BXGY missing Applies To: Type/Values (needed for customerGets items).")
    kind = item_kind(type_text)
    ids = resolve_items(resolver, kind, values(discount, "Applies To: Values"), "BXGY customerGets")

    value_type = normalize_value_type(discount.fields.get("Value Type"))
    raw = discount.fields.get("Value")
    if value_type == "Free":
        effect = {"percentage": 1}
    elif value_type == "Percentage":
        pct = percentage(raw)
        if pct is None:
            raise ValueError(f"BXGY Value Type=Percentage but Value is invalid: {raw}")
        effect = {"percentage": pct}
    elif value_type in ("Amount Off Each", "Fixed Amount"):
        amount = to_money(raw)
        if not amount:
            raise ValueError(f"BXGY Value Type={value_type} but Value is invalid: {raw}")
        effect = {"amount": amount}
    else:
        raise ValueError(f"BXGY unsupported Value Type={raw!r}. Use Percentage / Amount Off Each / Free.")

    quantity = to_int(discount.fields.get("Buy X Get Y: Customer Gets Quantity")) or 1
    return {
        "items": items_input(kind, ids),
        "value": {"discountOnQuantity": {"quantity": str(quantity), "effect": effect}},
    }


def build_destination(discount: MergeGroup) -> dict:
    codes = [code.upper() for code in values(discount, "Free Shipping: Country Codes")]
    return {"countries": {"add": codes}} if codes else {"all": True}


# ---------------------------------------------------------------------------
# Builders, one per (method, type)
# ---------------------------------------------------------------------------

def _common(discount: MergeGroup, resolver: KeyResolver, method: str) -> dict:
    title = text(discount, "Title")
    starts_at = to_iso_datetime(discount.fields.get("Starts At"))
    if not title or not starts_at:
        raise ValueError(f"Missing required fields for {method}: title/startsAt.")
    base = {
        "title": title,
        "startsAt": starts_at,
        "endsAt": to_iso_datetime(discount.fields.get("Ends At")),
        "context": build_context(discount, resolver),
    }
    if method == "Code":
        code = text(discount, "Code")
        if not code:
            raise ValueError("Missing required field for Code discount: code.")
        base["code"] = code
    combines_with = build_combines_with(discount)
    if combines_with:
        base["combinesWith"] = combines_with
    return base


def _pick(fields: dict, *names) -> dict:
    return {name: fields[name] for name in names if name in fields}


def code_basic(discount, resolver) -> DiscountPlan:
    value = build_basic_value(discount)
    if not value:
        raise ValueError("Missing required fields for Code + Amount off: value.")
    data = _common(discount, resolver, "Code")
    data["customerGets"] = {"items": build_basic_items(discount, resolver), "value": value,
                            **purchase_type_flags(discount)}
    minimum = build_minimum_requirement(discount)
    if minimum:
        data["minimumRequirement"] = minimum
    data.update(_pick(usage_fields(discount), "usageLimit", "appliesOncePerCustomer", "recurringCycleLimit"))
    return DiscountPlan("discountCodeBasicCreate", "basicCodeDiscount", data)


def code_bxgy(discount, resolver) -> DiscountPlan:
    data = _common(discount, resolver, "Code")
    data["customerBuys"] = build_customer_buys(discount, resolver)
    data["customerGets"] = {**build_customer_gets(discount, resolver), **purchase_type_flags(discount)}
    data.update(usage_fields(discount))
    return DiscountPlan("discountCodeBxgyCreate", "bxgyCodeDiscount", data)


def code_free_shipping(discount, resolver) -> DiscountPlan:
    data = _common(discount, resolver, "Code")
    data["destination"] = build_destination(discount)
    minimum = build_minimum_requirement(discount)
    if minimum:
        data["minimumRequirement"] = minimum
    maximum = to_money(discount.fields.get("Free Shipping: Over Amount"))
    if maximum:
        data["maximumShippingPrice"] = maximum
    data.update(purchase_type_flags(discount))
    data.update(_pick(usage_fields(discount), "usageLimit", "appliesOncePerCustomer", "recurringCycleLimit"))
    return DiscountPlan("discountCodeFreeShippingCreate", "freeShippingCodeDiscount", data)


def automatic_basic(discount, resolver) -> DiscountPlan:
    value = build_basic_value(discount)
    if not value:
        raise ValueError("Missing required fields for Automatic + Amount off: value.")
    data = _common(discount, resolver, "Automatic")
    data["customerGets"] = {"items": build_basic_items(discount, resolver), "value": value,
                            **purchase_type_flags(discount)}
    minimum = build_minimum_requirement(discount)
    if minimum:
        data["minimumRequirement"] = minimum
    data.update(_pick(usage_fields(discount), "recurringCycleLimit"))
    return DiscountPlan("discountAutomaticBasicCreate", "automaticBasicDiscount", data)


def automatic_bxgy(discount, resolver) -> DiscountPlan:
    data = _common(discount, resolver, "Automatic")
    data["customerBuys"] = build_customer_buys(discount, resolver)
    data["customerGets"] = build_customer_gets(discount, resolver)
    if purchase_type_flags(discount):
        logging.warning(f"⚠️ [{data['title']}] Purchase Type is not supported on automatic BXGY, dropped")
    data.update(_pick(usage_fields(discount), "usesPerOrderLimit", "recurringCycleLimit"))
    return DiscountPlan("discountAutomaticBxgyCreate", "automaticBxgyDiscount", data)


def automatic_free_shipping(discount, resolver) -> DiscountPlan:
    data = _common(discount, resolver, "Automatic")
    data["destination"] = build_destination(discount)
    minimum = build_minimum_requirement(discount)
    if minimum:
        data["minimumRequirement"] = minimum
    maximum = to_money(discount.fields.get("Free Shipping: Over Amount"))
    if maximum:
        data["maximumShippingPrice"] = maximum
    data.update(purchase_type_flags(discount))
    data.update(_pick(usage_fields(discount), "recurringCycleLimit"))
    return DiscountPlan("discountAutomaticFreeShippingCreate", "freeShippingAutomaticDiscount", data)


BUILDERS: dict[tuple[str, str], Callable[[MergeGroup, KeyResolver], DiscountPlan]] = {
    ("Code", "basic"): code_basic,
    ("Code", "bxgy"): code_bxgy,
    ("Code", "free_shipping"): code_free_shipping,
    ("Automatic", "basic"): automatic_basic,
    ("Automatic", "bxgy"): automatic_bxgy,
    ("Automatic", "free_shipping"): automatic_free_shipping,
}


def plan_discount(discount: MergeGroup, resolver: KeyResolver) -> DiscountPlan:
    method = METHODS.get(text(discount, "Method").lower())
    if not method:
        raise ValueError(f"Invalid Method={discount.fields.get('Method')!r}")
    raw_type = text(discount, "Type")
    kind = TYPES.get(raw_type.lower())
    if kind == "app":
        raise ValueError("Sheet Type=App not supported by this mapping.")
    builder = BUILDERS.get((method, kind))
    if builder is None:
        raise ValueError(f"Unsupported sheet Type={raw_type!r} for Method={method}")
    return builder(discount, resolver)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

class DiscountImport:
    def __init__(self, target: ShopifyClient, context: RunContext | None = None):
        self.target = target
        self.resolver = KeyResolver(target, context or RunContext())

    def existing_id(self, discount: MergeGroup) -> str | None:
        method = METHODS.get(text(discount, "Method").lower())
        if method == "Code" and text(discount, "Code"):
            return self.target.code_discount_id(text(discount, "Code"))
        if method == "Automatic" and text(discount, "Title"):
            title = text(discount, "Title")
            for node in self.target.automatic_discounts_by_title(title):
                if ((node.get("automaticDiscount") or {}).get("title") or "").strip() == title:
                    return node["id"]
        return None

    def process(self, discount: MergeGroup) -> RecordResult:
        if discount.error:
            raise discount.error
        if text(discount, "Command").lower() == "delete":
            logging.info("🟡 Skipping: Command=DELETE (create only)")
            return RecordResult(SKIPPED, reason="Command=DELETE (create only)")

        existing = self.existing_id(discount)
        if existing:
            logging.info(f"🔁 Discount already exists (id={existing}), skipping")
            return RecordResult(SKIPPED, existing, reason=f"already exists (id={existing})")

        plan = plan_discount(discount, self.resolver)
        payload = self.target.mutate(plan.mutation, plan.document(), {plan.argument: plan.input})
        node = payload.get("codeDiscountNode") or payload.get("automaticDiscountNode") or {}
        logging.info(f"✅ Created discount {plan.input['title']!r} via {plan.mutation} ({node.get('id')})")
        return RecordResult(CREATED, node.get("id"), extra={"Mutation Used": plan.mutation})


def report_row(discount: MergeGroup) -> dict:
    row = dict(discount.fields)
    for column in LIST_COLUMNS:
        if discount.lists.get(column):
            row[column] = ", ".join(discount.lists[column])
    row["Merged Rows"] = discount.merged_rows
    row["Mutation Used"] = ""
    return row


def describe_discount(discount: MergeGroup) -> str:
    return f"{text(discount, 'Title') or 'untitled'} (rows {discount.merged_rows})"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create discounts on the TARGET store from a Matrixify export.")
    parser.add_argument("sheet", help="Path to the .xlsx/.csv export.")
    parser.add_argument("--report", help="Report path (.xlsx or .csv).")
    add_common_arguments(parser)
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    print("🚀 Starting Discounts import (Sheet → Shopify) [CREATE ONLY] ...")
    target = ShopifyClient("TARGET")
    rows = read_rows(args.sheet, ["Discounts", "Discount"])
    discounts = group(rows, discount_key, discount_merge_spec())
    print(f"✅ Grouped into {len(discounts)} discount(s) after merging multi-row entries")

    report = ReportWriter(args.report or default_report_path("discounts"))
    driver = RunDriver("Discounts import", report=report, report_row=report_row, id_column="NewDiscountId")
    stats = driver.run(discounts, DiscountImport(target).process, describe_discount)
    report.flush()
    return stats.exit_code


if __name__ == "__main__":
    sys.exit(main())
