#!/usr/bin/env python3
"""
metafields.py

Everything metafield-shaped that the sync scripts share:

- parsing `Metafield: namespace.key [type]` sheet headers once, up front,
  into MetafieldColumn descriptors
- turning a sheet row into metafield inputs
- the three-way merge used when a record already exists on the target:
  target values are the base, source values overwrite on collision,
  target-only keys survive, forced values are applied last
- dropping metafields that cannot be copied between stores by value
- making sure metafield definitions exist before values are written
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Iterable

from admin_api.errors import MigrationError
from reconcile.row_grouper import is_empty

ALLOWED_METAFIELD_TYPES = frozenset({
    "boolean", "color", "date", "date_time", "dimension", "id", "json", "link",
    "money", "multi_line_text_field", "number_decimal", "number_integer",
    "rating", "rich_text_field", "single_line_text_field", "url", "volume", "weight",

    "article_reference", "collection_reference", "company_reference",
    "customer_reference", "file_reference", "metaobject_reference",
    "mixed_reference", "page_reference", "product_reference",
    "product_taxonomy_value_reference", "variant_reference",

    "list.article_reference", "list.collection_reference", "list.color",
    "list.customer_reference", "list.date", "list.date_time", "list.dimension",
    "list.file_reference", "list.id", "list.link", "list.metaobject_reference",
    "list.mixed_reference", "list.number_decimal", "list.number_integer",
    "list.page_reference", "list.product_reference",
    "list.product_taxonomy_value_reference", "list.rating",
    "list.single_line_text_field", "list.url", "list.variant_reference",
    "list.volume", "list.weight",
})

RESERVED_NAMESPACES = ("shopify",)

HEADER_RE = re.compile(r"^Metafield:\s*([\w-]+)\.([\w-]+)\s*\[([^\]]+)\]$")
VARIANT_HEADER_RE = re.compile(r"^Variant\s+Metafield:\s*([\w-]+)\.([\w-]+)\s*\[([^\]]+)\]$")

TRUE_VALUES = {"true", "1", "yes", "y"}
FALSE_VALUES = {"false", "0", "no", "n"}


@dataclass(frozen=True)
class MetafieldColumn:
    namespace: str
    key: str
    type: str
    column: str

    @property
    def id(self) -> str:
        return f"{self.namespace}.{self.key}"


def to_bool(value) -> bool | None:
    if isinstance(value, bool):
        return value
    if is_empty(value):
        return None
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def parse_metafield_header(header: str, pattern: re.Pattern = HEADER_RE) -> MetafieldColumn | None:
    match = pattern.match(str(header).strip())
    if not match:
        return None
    namespace, key, mf_type = match.group(1), match.group(2), match.group(3).strip()
    if mf_type not in ALLOWED_METAFIELD_TYPES:
        logging.warning(f"⚠️ Unsupported metafield type skipped: {namespace}.{key} [{mf_type}]")
        return None
    return MetafieldColumn(namespace, key, mf_type, header)


def detect_metafield_columns(
    headers: Iterable[str],
    skip_keys: Iterable[str] = (),
    skip_namespaces: Iterable[str] = RESERVED_NAMESPACES,
    pattern: re.Pattern = HEADER_RE,
) -> list[MetafieldColumn]:
    """Single pass over the header row; feeds both definition setup and row merging."""
    skip_keys = set(skip_keys)
    skip_namespaces = set(skip_namespaces)
    columns = []
    seen = set()
    for header in headers:
        parsed = parse_metafield_header(header, pattern)
        if parsed is None or parsed.key in skip_keys or parsed.namespace in skip_namespaces:
            continue
        if parsed.id in seen:
            continue
        seen.add(parsed.id)
        columns.append(parsed)
    return columns


def list_value(raw) -> str | None:
    """List metafields take a JSON array; sheets usually hold a comma separated list."""
    text = str(raw).strip()
    if text.startswith("["):
        return text
    items = [item.strip() for item in text.split(",") if item.strip()]
    return json.dumps(items) if items else None


def metafields_from_row(row: dict, columns: list[MetafieldColumn]) -> list[dict]:
    values = []
    for column in columns:
        raw = row.get(column.column)
        if is_empty(raw):
            continue
        if column.type == "boolean":
            flag = to_bool(raw)
            if flag is None:
                continue
            value = "true" if flag else "false"
        elif column.type.startswith("list."):
            value = list_value(raw)
            if value is None:
                continue
        else:
            value = str(raw)
        values.append({
            "namespace": column.namespace,
            "key": column.key,
            "type": column.type,
            "value": value,
        })
    return values


def connection_nodes(connection) -> list:
    """Accept a GraphQL connection (edges or nodes) or a plain list and return its nodes."""
    if not connection:
        return []
    if isinstance(connection, list):
        return [n for n in connection if n]
    if "nodes" in connection:
        return [n for n in connection.get("nodes") or [] if n]
    return [e.get("node") for e in connection.get("edges") or [] if e and e.get("node")]


def is_complete(metafield: dict) -> bool:
    return bool(
        metafield
        and metafield.get("namespace")
        and metafield.get("key")
        and metafield.get("type")
        and metafield.get("value") is not None
    )


def _keyed(metafields) -> dict[str, dict]:
    keyed = {}
    for mf in connection_nodes(metafields):
        if not is_complete(mf):
            continue
        keyed[f"{mf['namespace']}.{mf['key']}"] = {
            "namespace": mf["namespace"],
            "key": mf["key"],
            "type": mf["type"],
            "value": str(mf["value"]),
        }
    return keyed


def merge_metafields(source, target, owner_id: str) -> list[dict]:
    """
    Merge source metafields over the target's existing ones.

    Source wins on a `namespace.key` collision (value and type), keys that
    only exist on the target are kept, incomplete entries on either side are
    ignored. Returns MetafieldsSetInput dicts owned by `owner_id`.
    """
    merged = _keyed(target)
    merged.update(_keyed(source))
    return [{"ownerId": owner_id, **mf} for mf in merged.values()]


def apply_forced(merged: list[dict], forced: list[dict], owner_id: str) -> list[dict]:
    """Overlay derived values after the merge so merge precedence can never drop them."""
    result = {f"{mf['namespace']}.{mf['key']}": mf for mf in merged}
    for mf in forced:
        result[f"{mf['namespace']}.{mf['key']}"] = {
            "ownerId": owner_id,
            "namespace": mf["namespace"],
            "key": mf["key"],
            "type": mf["type"],
            "value": str(mf["value"]),
        }
    return list(result.values())


def is_reference_type(mf_type: str | None) -> bool:
    return isinstance(mf_type, str) and mf_type.endswith("_reference")


def sanitize_metafields(
    metafields,
    owner_label: str,
    entity_label: str,
    blocked_keys: Iterable[str] = (),
) -> list[dict]:
    """Drop reserved-namespace, reference-typed and blocked metafields."""
    blocked_keys = set(blocked_keys)
    safe = []
    for mf in connection_nodes(metafields):
        if not is_complete(mf):
            continue
        name = f"{mf['namespace']}.{mf['key']}"
        if mf["namespace"] in RESERVED_NAMESPACES:
            logging.info(f"ℹ️ [{owner_label}] Skipping reserved namespace → {entity_label} :: {name}")
            continue
        if is_reference_type(mf["type"]):
            logging.info(f"ℹ️ [{owner_label}] Skipping reference metafield → {entity_label} :: {name} [{mf['type']}]")
            continue
        if mf["key"] in blocked_keys:
            continue
        safe.append({
            "namespace": mf["namespace"],
            "key": mf["key"],
            "type": mf["type"],
            "value": str(mf["value"]),
        })
    return safe


def ensure_metafield_definitions(client, owner_type: str, columns: list[MetafieldColumn]) -> int:
    """
    Create the definitions the sheet needs that the target lacks.

    Existing definitions with a different type are reported, never altered.
    A definition that fails to create is logged and the rest are still tried.
    Returns the number of definitions created.
    """
    if not columns:
        return 0

    existing = {}
    for definition in client.list_metafield_definitions(owner_type):
        type_name = (definition.get("type") or {}).get("name")
        existing[f"{definition.get('namespace')}.{definition.get('key')}"] = type_name

    created = 0
    for column in columns:
        if column.id in existing:
            if existing[column.id] != column.type:
                logging.warning(
                    f"⚠️ {owner_type} metafield {column.id} is defined as "
                    f"[{existing[column.id]}] on target but sheet says [{column.type}]"
                )
            continue

        logging.info(f"➕ Creating {owner_type} metafield definition: {column.id} [{column.type}]")
        try:
            client.create_metafield_definition({
                "ownerType": owner_type,
                "namespace": column.namespace,
                "key": column.key,
                "type": column.type,
                "name": column.key,
                "pin": True,
            })
            created += 1
        except MigrationError as e:
            logging.error(f"❌ Could not create metafield definition {column.id}: {e}")
    return created
