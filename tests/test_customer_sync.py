from __future__ import annotations

import pytest

from admin_api.customer_sync import (
    EMAIL_STATES,
    CustomerSheetImport,
    CustomerSync,
    build_customer_input,
    consent_input,
    customer_key,
    customer_merge_spec,
    normalize_phone,
)
from admin_api.errors import PreconditionSkip, UserErrorsError
from reconcile.key_resolver import RunContext
from reconcile.metafields import detect_metafield_columns
from reconcile.row_grouper import group
from reconcile.run_driver import CREATED, SKIPPED, UPDATED

EXISTING_ID = "gid://shopify/Customer/5"


def source_customer(**extra) -> dict:
    customer = {
        "id": "gid://shopify/Customer/src-5",
        "email": "Buyer@Acme.test",
        "firstName": "Pat",
        "lastName": "Lee",
        "phone": "+15125550100",
        "note": "",
        "tags": ["wholesale"],
        "defaultAddress": {"address1": "1 Main St", "city": "Austin", "countryCodeV2": "US",
                           "provinceCode": "TX", "zip": "78701"},
        "emailMarketingConsent": {"marketingState": "NOT_SUBSCRIBED", "marketingOptInLevel": "SINGLE_OPT_IN",
                                  "consentUpdatedAt": "2024-01-01T00:00:00Z"},
        "smsMarketingConsent": {"marketingState": "SUBSCRIBED", "marketingOptInLevel": "CONFIRMED_OPT_IN"},
        "metafields": {"nodes": [
            {"namespace": "custom", "key": "buyer_type", "type": "single_line_text_field", "value": "Owner"},
        ]},
    }
    customer.update(extra)
    return customer


def test_existing_customer_is_fully_synced_and_never_created(make_client) -> None:
    target = make_client(
        find_customers=[{"id": EXISTING_ID, "email": "buyer@acme.test"}],
        get_metafields=[{"namespace": "custom", "key": "credit", "type": "number_integer", "value": "10"}],
    )
    sync = CustomerSync(target)

    result = sync.upsert_from_source(source_customer(), "Gold")

    assert result.status == UPDATED
    assert result.identifier == EXISTING_ID
    assert target.called("create_customer") == []

    [(args, _)] = target.called("update_customer")
    update = args[0]
    assert update["id"] == EXISTING_ID
    assert update["tags"] == ["wholesale", "Tier_Gold"]
    assert update["note"] is None
    assert update["addresses"][0]["countryCode"] == "US"

    email_consent = target.called("update_email_consent")[0][0][1]
    assert email_consent["marketingState"] == "UNSUBSCRIBED"
    assert target.called("update_sms_consent")[0][0][1]["marketingState"] == "SUBSCRIBED"

    [(mf_args, _)] = target.called("set_metafields")
    assert {m["key"] for m in mf_args[0]} == {"credit", "buyer_type"}
    assert sync.context.identifiers.get("customer", "buyer@acme.test") == EXISTING_ID


def test_tier_tag_is_not_duplicated(make_client) -> None:
    target = make_client(find_customers=[{"id": EXISTING_ID, "email": "buyer@acme.test"}])
    CustomerSync(target).upsert_from_source(source_customer(tags=["Tier_Gold"]), "Gold")
    assert target.called("update_customer")[0][0][0]["tags"] == ["Tier_Gold"]


def test_consent_failure_is_logged_not_raised(make_client) -> None:
    target = make_client(
        find_customers=[{"id": EXISTING_ID, "email": "buyer@acme.test"}],
        update_email_consent=UserErrorsError("customerEmailMarketingConsentUpdate", [{"message": "Not allowed"}]),
    )
    result = CustomerSync(target).upsert_from_source(source_customer(), "Gold")
    assert result.status == UPDATED
    assert len(target.called("update_sms_consent")) == 1


def test_customer_without_email_is_skipped(make_client) -> None:
    target = make_client()
    result = CustomerSync(target).upsert_from_source(source_customer(email="  "), "Gold")
    assert result.status == SKIPPED
    assert result.identifier is None
    assert target.calls == []


def test_new_customer_is_created_with_consent_and_address(make_client) -> None:
    target = make_client(create_customer={"id": "gid://shopify/Customer/9"})
    sync = CustomerSync(target)

    result = sync.upsert_from_source(source_customer(), "Bronze")

    assert result.status == CREATED
    customer_input = target.called("create_customer")[0][0][0]
    assert customer_input["email"] == "Buyer@Acme.test"
    assert customer_input["tags"] == ["wholesale", "Tier_Bronze"]
    assert customer_input["emailMarketingConsent"]["marketingState"] == "UNSUBSCRIBED"
    assert customer_input["addresses"][0]["city"] == "Austin"
    assert "note" not in customer_input


def test_customer_created_earlier_in_the_run_is_matched_without_search(make_client) -> None:
    target = make_client(create_customer={"id": "gid://shopify/Customer/9"})
    sync = CustomerSync(target)
    sync.upsert_from_source(source_customer(), "Bronze")

    result = sync.upsert_from_source(source_customer(email="buyer@acme.test"), "Bronze")

    assert result.status == UPDATED
    assert sync.matcher.matched_by == "known customer"
    assert len(target.called("create_customer")) == 1


def test_skip_policy_still_returns_the_customer_id(make_client) -> None:
    target = make_client(find_customers=[{"id": EXISTING_ID, "email": "buyer@acme.test"}])
    result = CustomerSync(target, on_existing="skip").upsert_from_source(source_customer(), "Gold")
    assert (result.status, result.identifier) == (SKIPPED, EXISTING_ID)
    assert target.called("update_customer") == []
    assert target.called("set_metafields") == []


def test_search_hit_with_a_different_email_is_not_a_match(make_client) -> None:
    target = make_client(
        find_customers=[{"id": "gid://shopify/Customer/8", "email": "buyer@acme.test.au", "phone": "+15125550199"}],
        create_customer={"id": "gid://shopify/Customer/9"},
    )

    result = CustomerSync(target).upsert_from_source(source_customer(), "Gold")

    assert (result.status, result.identifier) == (CREATED, "gid://shopify/Customer/9")
    assert target.called("update_customer") == []


def test_phone_search_compares_normalized_numbers(make_client) -> None:
    target = make_client(find_customers=[{"id": EXISTING_ID, "email": None, "phone": "1 (512) 555-0100"}])
    sync = CustomerSync(target)

    result = sync.upsert_from_source(source_customer(), "Gold")

    assert (result.status, result.identifier) == (UPDATED, EXISTING_ID)
    assert sync.matcher.matched_by == "phone"


@pytest.mark.parametrize(
    "raw, expected",
    [("'(512) 555-0100", "+5125550100"), ("+44 20 7946 0000", "+442079460000"), ("call me", None), (None, None)],
)
def test_normalize_phone(raw, expected) -> None:
    assert normalize_phone(raw) == expected


def test_consent_input_drops_unknown_states() -> None:
    assert consent_input({"marketingState": "BOGUS"}, EMAIL_STATES) is None
    assert consent_input(None, EMAIL_STATES) is None


@pytest.mark.parametrize(
    "row, key",
    [
        ({"ID": 42, "Email": "a@b.test"}, "id:42"),
        ({"Email": " A@B.test "}, "email:a@b.test"),
        ({"Phone": "512 555 0100"}, "phone:+5125550100"),
        ({"First Name": "Pat", "Last Name": "Lee"}, "name:pat::lee"),
        ({"Note": "nothing to key on"}, None),
    ],
)
def test_customer_key_precedence(row, key) -> None:
    assert customer_key(row) == key


SHEET_ROWS = [
    {
        "Email": "pat@acme.test", "First Name": "Pat", "Last Name": None, "Phone": None,
        "Tags": "wholesale, vip", "Email Marketing: Status": "subscribed",
        "Email Marketing: Updated At": "2024-05-01 10:00:00 -0500",
        "Address Line 1": "9 Side St", "Address City": "Dallas", "Address Country Code": "US",
        "Address Is Default": None,
        "Metafield: custom.buyer_type [single_line_text_field]": "Owner",
    },
    {
        "Email": "pat@acme.test", "First Name": None, "Last Name": "Lee", "Phone": None,
        "Tags": None, "Email Marketing: Status": None, "Email Marketing: Updated At": None,
        "Address Line 1": "1 Main St", "Address City": "Austin", "Address Country Code": "US",
        "Address Is Default": "TRUE",
        "Metafield: custom.buyer_type [single_line_text_field]": "Manager",
    },
]


def test_sheet_rows_merge_into_one_customer_input() -> None:
    columns = detect_metafield_columns(SHEET_ROWS[0].keys())
    [customer] = group(SHEET_ROWS, customer_key, customer_merge_spec(columns))
    customer_input = build_customer_input(customer)

    assert customer.rows == [1, 2]
    assert customer_input["firstName"] == "Pat"
    assert customer_input["lastName"] == "Lee"
    assert customer_input["tags"] == ["wholesale", "vip"]
    assert customer_input["emailMarketingConsent"] == {
        "marketingState": "SUBSCRIBED",
        "consentUpdatedAt": "2024-05-01T10:00:00-05:00",
    }
    assert [a["city"] for a in customer_input["addresses"]] == ["Austin", "Dallas"]
    assert all("_isDefault" not in a for a in customer_input["addresses"])
    assert customer_input["metafields"] == [
        {"namespace": "custom", "key": "buyer_type", "type": "single_line_text_field", "value": "Manager"},
    ]


def test_sheet_import_creates_new_customer_and_definitions(make_client) -> None:
    target = make_client(create_customer={"id": "gid://shopify/Customer/77", "email": "pat@acme.test"})
    importer = CustomerSheetImport(target)
    [customer] = importer.load(SHEET_ROWS)

    result = importer.process(customer)

    assert (result.status, result.identifier) == (CREATED, "gid://shopify/Customer/77")
    assert target.called("create_metafield_definition")[0][0][0]["ownerType"] == "CUSTOMER"
    [(search_args, search_kwargs)] = target.called("find_customers")
    assert search_args == ('email:"pat@acme.test"',)
    assert search_kwargs == {}


def test_sheet_import_skips_existing_by_default(make_client) -> None:
    target = make_client(find_customers=[{"id": EXISTING_ID, "email": "pat@acme.test"}])
    importer = CustomerSheetImport(target)
    [customer] = importer.load(SHEET_ROWS)

    result = importer.process(customer)

    assert (result.status, result.identifier) == (SKIPPED, EXISTING_ID)
    assert target.called("create_customer") == []


def test_sheet_import_update_policy_leaves_addresses_alone(make_client) -> None:
    target = make_client(find_customers=[{"id": EXISTING_ID, "email": "pat@acme.test"}])
    importer = CustomerSheetImport(target, on_existing="update")
    [customer] = importer.load(SHEET_ROWS)

    result = importer.process(customer)

    assert result.status == UPDATED
    update = target.called("update_customer")[0][0][0]
    assert update["id"] == EXISTING_ID
    assert "addresses" not in update


def test_sheet_import_dry_run_writes_nothing(make_client) -> None:
    target = make_client()
    importer = CustomerSheetImport(target, dry_run=True)
    [customer] = importer.load(SHEET_ROWS)

    result = importer.process(customer)

    assert result.status == SKIPPED
    assert result.reason == "dry run: would create"
    assert target.called("create_customer") == []
    assert target.called("list_metafield_definitions") == []


def test_sheet_customer_without_email_or_phone_is_skipped(make_client) -> None:
    importer = CustomerSheetImport(make_client())
    [customer] = importer.load([{"First Name": "Pat", "Last Name": "Lee", "Email": None, "Phone": None}])
    with pytest.raises(PreconditionSkip):
        importer.process(customer)


def test_sheet_import_does_not_pick_between_customers_sharing_a_phone(make_client) -> None:
    two = [
        {"id": "gid://shopify/Customer/1", "email": "a@acme.test", "phone": "+15125550100"},
        {"id": "gid://shopify/Customer/2", "email": "b@acme.test", "phone": "+15125550100"},
    ]
    target = make_client(
        find_customers=lambda search, first=2: two[:first],
        create_customer={"id": "gid://shopify/Customer/3"},
    )
    importer = CustomerSheetImport(target, on_existing="update")
    [customer] = importer.load([{"Email": None, "Phone": "+1 512 555 0100", "First Name": "Pat"}])

    result = importer.process(customer)

    assert target.called("update_customer") == []
    assert importer.matcher.matched_by is None
    assert result.status == CREATED


def test_sheet_rows_with_the_same_email_create_one_customer(make_client) -> None:
    target = make_client(create_customer={"id": "gid://shopify/Customer/77", "email": "a@x.test"})
    importer = CustomerSheetImport(target, on_existing="update")
    customers = importer.load([{"ID": "1", "Email": "a@x.test"}, {"ID": "2", "Email": "A@x.test "}])
    assert len(customers) == 2

    results = [importer.process(c) for c in customers]

    assert len(target.called("create_customer")) == 1
    assert [r.status for r in results] == [CREATED, UPDATED]
    assert results[1].identifier == "gid://shopify/Customer/77"
    assert importer.matcher.matched_by == "known customer"


def test_sheet_import_shares_the_run_context(make_client) -> None:
    context = RunContext()
    context.identifiers.set("customer", "pat@acme.test", EXISTING_ID)
    target = make_client()
    importer = CustomerSheetImport(target, context)
    [customer] = importer.load(SHEET_ROWS)

    result = importer.process(customer)

    assert (result.status, result.identifier) == (SKIPPED, EXISTING_ID)
    assert target.called("find_customers") == []
