from __future__ import annotations

import logging

from admin_api.errors import UserErrorsError
from reconcile.metafields import (
    VARIANT_HEADER_RE,
    MetafieldColumn,
    apply_forced,
    connection_nodes,
    detect_metafield_columns,
    ensure_metafield_definitions,
    list_value,
    merge_metafields,
    metafields_from_row,
    parse_metafield_header,
    sanitize_metafields,
)

OWNER = "gid://shopify/Company/1"


def mf(namespace, key, value, mf_type="single_line_text_field"):
    return {"namespace": namespace, "key": key, "type": mf_type, "value": value}


def test_parse_metafield_header() -> None:
    column = parse_metafield_header("Metafield: custom.fabric [single_line_text_field]")
    assert column == MetafieldColumn("custom", "fabric", "single_line_text_field",
                                     "Metafield: custom.fabric [single_line_text_field]")
    assert column.id == "custom.fabric"
    assert parse_metafield_header("Title") is None
    assert parse_metafield_header("Metafield: custom.thing [made_up_type]") is None


def test_detect_metafield_columns_skips_reserved_keys_and_duplicates() -> None:
    headers = [
        "Handle",
        "Metafield: custom.fabric [single_line_text_field]",
        "Metafield: shopify.color-pattern [list.metaobject_reference]",
        "Metafield: global.title_tag [single_line_text_field]",
        "Metafield: custom.fabric [single_line_text_field] ",
        "Metafield: custom.is_new [boolean]",
    ]
    columns = detect_metafield_columns(headers, skip_keys=["title_tag"])
    assert [c.id for c in columns] == ["custom.fabric", "custom.is_new"]


def test_variant_headers_use_their_own_pattern() -> None:
    headers = ["Metafield: custom.fabric [single_line_text_field]", "Variant Metafield: custom.fit [single_line_text_field]"]

    [column] = detect_metafield_columns(headers, pattern=VARIANT_HEADER_RE)

    assert (column.namespace, column.key, column.column) == ("custom", "fit", headers[1])
    assert [c.key for c in detect_metafield_columns(headers)] == ["fabric"]


def test_list_values_become_json_arrays() -> None:
    assert list_value("Cold wash, Line dry") == '["Cold wash", "Line dry"]'
    assert list_value('["a", "b"]') == '["a", "b"]'
    assert list_value(" , ") is None

    column = MetafieldColumn("custom", "care", "list.single_line_text_field", "Care")
    assert metafields_from_row({"Care": "Hand wash"}, [column])[0]["value"] == '["Hand wash"]'

def test_metafields_from_row_normalises_booleans() -> None:
    columns = [
        MetafieldColumn("custom", "is_new", "boolean", "New"),
        MetafieldColumn("custom", "is_old", "boolean", "Old"),
        MetafieldColumn("custom", "fabric", "single_line_text_field", "Fabric"),
        MetafieldColumn("custom", "empty", "single_line_text_field", "Empty"),
    ]
    row = {"New": "Yes", "Old": "maybe", "Fabric": "Linen", "Empty": "  "}
    assert metafields_from_row(row, columns) == [
        mf("custom", "is_new", "true", "boolean"),
        mf("custom", "fabric", "Linen"),
    ]


def test_merge_source_wins_and_target_only_keys_survive() -> None:
    source = [
        mf("custom", "level", "Gold"),
        mf("custom", "count", "7", "number_integer"),
        {"namespace": "custom", "key": "broken", "type": None, "value": "x"},
    ]
    target = {"nodes": [
        mf("custom", "level", "Silver"),
        mf("custom", "count", "3"),
        mf("custom", "keep_me", "yes"),
        {"namespace": "custom", "key": "nulled", "type": "single_line_text_field", "value": None},
    ]}
    merged = {f"{m['namespace']}.{m['key']}": m for m in merge_metafields(source, target, OWNER)}

    assert set(merged) == {"custom.level", "custom.count", "custom.keep_me"}
    assert merged["custom.level"]["value"] == "Gold"
    assert merged["custom.count"]["type"] == "number_integer"
    assert merged["custom.keep_me"]["value"] == "yes"
    assert all(m["ownerId"] == OWNER for m in merged.values())


def test_forced_values_overwrite_after_merge() -> None:
    merged = merge_metafields([mf("custom", "level", "Platinum")], [], OWNER)
    forced = apply_forced(merged, [mf("custom", "level", "Bronze"), mf("custom", "isActive", "true", "boolean")], OWNER)
    by_key = {m["key"]: m for m in forced}
    assert by_key["level"]["value"] == "Bronze"
    assert by_key["isActive"] == {"ownerId": OWNER, **mf("custom", "isActive", "true", "boolean")}


def test_connection_nodes_accepts_edges_nodes_and_lists() -> None:
    node = {"id": 1}
    assert connection_nodes({"edges": [{"node": node}]}) == [node]
    assert connection_nodes({"nodes": [node, None]}) == [node]
    assert connection_nodes([node]) == [node]
    assert connection_nodes(None) == []


def test_sanitize_drops_reserved_references_and_blocked_keys() -> None:
    metafields = [
        mf("shopify", "color-pattern", "[]", "list.metaobject_reference"),
        mf("custom", "related", "gid://shopify/Product/1", "product_reference"),
        mf("custom", "hs_code", "6109"),
        mf("custom", "fabric", "Linen"),
    ]
    assert sanitize_metafields(metafields, "PRODUCT", "tee", blocked_keys=["hs_code"]) == [mf("custom", "fabric", "Linen")]


def test_ensure_definitions_creates_missing_and_reports_mismatches(make_client, caplog) -> None:
    def create(definition):
        if definition["key"] == "broken":
            raise UserErrorsError("metafieldDefinitionCreate", [{"message": "Key is invalid"}])
        return {"id": "def-1"}

    client = make_client(
        list_metafield_definitions=[{"namespace": "custom", "key": "fabric", "type": {"name": "multi_line_text_field"}}],
        create_metafield_definition=create,
    )
    columns = [
        MetafieldColumn("custom", "fabric", "single_line_text_field", "a"),
        MetafieldColumn("custom", "broken", "single_line_text_field", "b"),
        MetafieldColumn("custom", "is_new", "boolean", "c"),
    ]
    with caplog.at_level(logging.WARNING):
        created = ensure_metafield_definitions(client, "CUSTOMER", columns)

    assert created == 1
    attempted = [args[0]["key"] for args, _ in client.called("create_metafield_definition")]
    assert attempted == ["broken", "is_new"]
    last = client.called("create_metafield_definition")[-1][0][0]
    assert last["pin"] is True
    assert last["name"] == "is_new"
    assert "custom.fabric" in caplog.text


def test_ensure_definitions_without_columns_makes_no_calls(make_client) -> None:
    client = make_client()
    assert ensure_metafield_definitions(client, "COLLECTION", []) == 0
    assert client.calls == []
