from __future__ import annotations

import pytest

from admin_api.company_sheet import (
    CompanySheetImport,
    company_key,
    company_merge_spec,
    sheet_address,
    sheet_location_input,
    tax_exempt_setting,
)
from reconcile.key_resolver import RunContext
from reconcile.metafields import detect_metafield_columns
from reconcile.row_grouper import group
from reconcile.run_driver import CREATED, SKIPPED, UPDATED

COMPANY_ID = "gid://shopify/Company/100"
HQ_ID = "gid://shopify/CompanyLocation/201"
WAREHOUSE_ID = "gid://shopify/CompanyLocation/202"
ADMIN_ROLE = "gid://shopify/CompanyContactRole/1"
ORDERING_ROLE = "gid://shopify/CompanyContactRole/2"
PAT_ID = "gid://shopify/Customer/1"
SAM_ID = "gid://shopify/Customer/2"
NET_30 = "gid://shopify/PaymentTermsTemplate/4"

COLUMNS = [
    "ID", "Name", "External ID", "Notes", "Customer Since", "Main Contact: Customer Email",
    "Location: ID", "Location: Name", "Location: External ID", "Location: Phone", "Location: Notes",
    "Location: Tax Setting", "Location: Tax Exemptions", "Location: Tax ID",
    "Location: Allow Shipping To Any Address", "Location: Checkout To Draft",
    "Location: Checkout Payment Terms", "Location: Checkout Payment Deposit",
    "Location: Shipping First Name", "Location: Shipping Address 1", "Location: Shipping City",
    "Location: Shipping Province Code", "Location: Shipping Zip", "Location: Shipping Country Code",
    "Location: Shipping Recipient",
    "Location: Billing Address 1", "Location: Billing City", "Location: Billing Country Code",
    "Customer: Email", "Customer: Location Role",
    "Metafield: custom.segment [single_line_text_field]",
    "Metafield: custom.regions [list.single_line_text_field]",
    "Metafield: shopify.internal [single_line_text_field]",
]


def row(**values) -> dict:
    full = dict.fromkeys(COLUMNS)
    for name, value in values.items():
        assert name in full, name
        full[name] = value
    return full


SHEET = [
    row(**{
        "ID": 101, "Name": "Acme", "Notes": "Net 30 buyer", "Customer Since": "2024-05-01",
        "Main Contact: Customer Email": "Pat@Acme.test",
        "Location: ID": 11, "Location: Name": "HQ", "Location: Phone": "512 555 0100",
        "Location: Tax Setting": "Do not collect",
        "Location: Tax Exemptions": "CA_STATUS_CARD_EXEMPTION, CA_DIPLOMAT_EXEMPTION",
        "Location: Tax ID": "TX-9", "Location: Allow Shipping To Any Address": "yes",
        "Location: Checkout To Draft": "no", "Location: Checkout Payment Terms": "Net 30",
        "Location: Checkout Payment Deposit": "25",
        "Location: Shipping First Name": "Pat", "Location: Shipping Address 1": "1 Main St",
        "Location: Shipping City": "Austin", "Location: Shipping Province Code": "TX",
        "Location: Shipping Zip": "78701", "Location: Shipping Country Code": "US",
        "Customer: Email": "pat@acme.test", "Customer: Location Role": "Location admin",
        "Metafield: custom.segment [single_line_text_field]": "Retail",
        "Metafield: custom.regions [list.single_line_text_field]": "North, South",
        "Metafield: shopify.internal [single_line_text_field]": "x",
    }),
    row(**{
        "ID": 101, "Name": "Acme",
        "Location: ID": 12, "Location: Name": "Warehouse",
        "Location: Shipping Address 1": "9 Dock Rd", "Location: Shipping Country Code": "US",
        "Location: Shipping Recipient": "Receiving",
        "Location: Billing Address 1": "PO Box 7", "Location: Billing City": "Austin",
        "Location: Billing Country Code": "US",
        "Customer: Email": "sam@acme.test", "Customer: Location Role": "Ordering only",
        "Metafield: custom.segment [single_line_text_field]": "Wholesale",
    }),
    row(**{"ID": None, "Name": "No ID Inc"}),
]


def target_company(locations=({"id": HQ_ID, "name": "HQ", "externalId": "11"},)) -> dict:
    return {
        "id": COMPANY_ID,
        "name": "Acme",
        "externalId": "101",
        "contactRoles": {"nodes": [
            {"id": ADMIN_ROLE, "name": "Location admin"},
            {"id": ORDERING_ROLE, "name": "Ordering only"},
        ]},
        "locations": {"nodes": list(locations)},
        "contacts": {"nodes": []},
    }


def customers_by_email(search, first=2) -> list:
    return {
        'email:"pat@acme.test"': [{"id": PAT_ID, "email": "pat@acme.test"}],
        'email:"sam@acme.test"': [{"id": SAM_ID, "email": "sam@acme.test"}],
    }.get(search, [])


def contact_for(company_id, customer_id) -> str:
    return f"gid://shopify/CompanyContact/{customer_id.rsplit('/', 1)[1]}"


def sheet_client(make_client, **overrides):
    responses = {
        "create_company": {"id": COMPANY_ID, "name": "Acme"},
        "get_company": target_company(),
        "create_company_location": {"id": WAREHOUSE_ID, "name": "Warehouse", "externalId": "12"},
        "payment_terms_templates": [{"id": NET_30, "name": "Net 30"}],
        "find_customers": customers_by_email,
        "assign_customer_as_contact": contact_for,
    }
    responses.update(overrides)
    return make_client(**responses)


def test_rows_group_into_one_company_with_locations_and_contacts() -> None:
    columns = detect_metafield_columns(COLUMNS)
    [company] = group(SHEET, company_key, company_merge_spec(columns))

    assert company.key == "101"
    assert company.rows == [1, 2]
    assert company.fields["mainContactEmail"] == "pat@acme.test"
    assert [loc["id"] for loc in company.lists["locations"]] == ["11", "12"]
    assert company.lists["contacts"] == [
        {"email": "pat@acme.test", "role": "Location admin", "locationId": "11"},
        {"email": "sam@acme.test", "role": "Ordering only", "locationId": "12"},
    ]
    assert company.lists["metafields"] == [
        {"namespace": "custom", "key": "segment", "type": "single_line_text_field", "value": "Wholesale"},
        {"namespace": "custom", "key": "regions", "type": "list.single_line_text_field",
         "value": '["North", "South"]'},
    ]


def test_sheet_location_input_maps_tax_checkout_and_addresses() -> None:
    columns = detect_metafield_columns(COLUMNS)
    [company] = group(SHEET, company_key, company_merge_spec(columns))
    hq, warehouse = company.lists["locations"]

    hq_input = sheet_location_input(hq, "Acme", NET_30)
    assert hq_input["externalId"] == "11"
    assert hq_input["phone"] == "+5125550100"
    assert hq_input["taxExempt"] is True
    assert hq_input["taxExemptions"] == ["CA_STATUS_CARD_EXEMPTION", "CA_DIPLOMAT_EXEMPTION"]
    assert hq_input["buyerExperienceConfiguration"] == {
        "checkoutToDraft": False,
        "editableShippingAddress": True,
        "paymentTermsTemplateId": NET_30,
        "deposit": {"percentage": 25.0},
    }
    assert hq_input["shippingAddress"]["zoneCode"] == "TX"
    assert hq_input["shippingAddress"]["recipient"] == "Pat"
    assert hq_input["billingSameAsShipping"] is True
    assert "billingAddress" not in hq_input

    warehouse_input = sheet_location_input(warehouse, "Acme", None)
    assert warehouse_input["billingSameAsShipping"] is False
    assert warehouse_input["billingAddress"]["address1"] == "PO Box 7"
    assert warehouse_input["shippingAddress"]["recipient"] == "Receiving"
    assert "buyerExperienceConfiguration" not in warehouse_input


def test_deposit_needs_payment_terms() -> None:
    location = {"id": "11", "name": "HQ", "deposit": "25", "checkoutToDraft": None}
    assert "buyerExperienceConfiguration" not in sheet_location_input(location, "Acme", None)


@pytest.mark.parametrize("value, expected", [("collect", False), ("Do not collect", True), ("maybe", None), (None, None)])
def test_tax_exempt_setting(value, expected) -> None:
    assert tax_exempt_setting(value) is expected


def test_address_needs_address1_and_country() -> None:
    assert sheet_address(row(**{"Location: Shipping City": "Austin"}), "Shipping") is None


def test_new_company_is_created_with_locations_contacts_and_roles(make_client) -> None:
    target = sheet_client(make_client)
    importer = CompanySheetImport(target)
    [company] = importer.load(SHEET)

    result = importer.process(company)

    assert (result.status, result.identifier, result.child_failures) == (CREATED, COMPANY_ID, 0)
    assert target.called("create_metafield_definition")[0][0][0]["ownerType"] == "COMPANY"

    [(create_args, _)] = target.called("create_company")
    create_input = create_args[0]
    assert create_input["company"] == {
        "name": "Acme",
        "externalId": "101",
        "note": "Net 30 buyer",
        "customerSince": "2024-05-01T00:00:00+00:00",
    }
    assert create_input["companyLocation"]["externalId"] == "11"
    assert create_input["companyLocation"]["buyerExperienceConfiguration"]["paymentTermsTemplateId"] == NET_30

    [(location_args, _)] = target.called("create_company_location")
    assert location_args[0] == COMPANY_ID
    assert location_args[1]["externalId"] == "12"

    assert target.called("assign_location_roles") == [
        ((HQ_ID, [{"companyContactId": "gid://shopify/CompanyContact/1", "companyContactRoleId": ADMIN_ROLE}]), {}),
        ((WAREHOUSE_ID, [{"companyContactId": "gid://shopify/CompanyContact/2",
                          "companyContactRoleId": ORDERING_ROLE}]), {}),
    ]
    assert target.called("assign_main_contact") == [((COMPANY_ID, "gid://shopify/CompanyContact/1"), {})]
    assert len(target.called("assign_customer_as_contact")) == 2

    [(mf_args, _)] = target.called("set_metafields")
    assert {m["key"] for m in mf_args[0]} == {"segment", "regions"}
    assert all(m["ownerId"] == COMPANY_ID for m in mf_args[0])
    assert importer.context.identifiers.get("company", "101") == COMPANY_ID


def test_existing_company_is_updated_and_its_locations_reused(make_client) -> None:
    existing = {"id": COMPANY_ID, "name": "Acme", "externalId": "101"}
    target = sheet_client(
        make_client,
        find_companies=[existing],
        get_company=target_company([
            {"id": HQ_ID, "name": "HQ", "externalId": "11"},
            {"id": WAREHOUSE_ID, "name": "Warehouse", "externalId": None},
        ]),
    )
    importer = CompanySheetImport(target)
    [company] = importer.load(SHEET)

    result = importer.process(company)

    assert (result.status, result.identifier) == (UPDATED, COMPANY_ID)
    assert importer.matcher.matched_by == "external ID"
    assert target.called("create_company") == []
    assert target.called("create_company_location") == []
    assert target.called("update_company")[0][0][1]["externalId"] == "101"
    assert [args[0] for args, _ in target.called("assign_location_roles")] == [HQ_ID, WAREHOUSE_ID]


def test_skip_policy_leaves_existing_company_alone(make_client) -> None:
    target = sheet_client(make_client, find_companies=[{"id": COMPANY_ID, "name": "Acme", "externalId": "101"}])
    importer = CompanySheetImport(target, on_existing="skip")
    [company] = importer.load(SHEET)

    result = importer.process(company)

    assert (result.status, result.identifier) == (SKIPPED, COMPANY_ID)
    assert target.called("update_company") == []
    assert target.called("get_company") == []


def test_missing_customer_is_not_linked_and_main_contact_not_set(make_client) -> None:
    target = sheet_client(make_client, find_customers=[])
    importer = CompanySheetImport(target)
    [company] = importer.load(SHEET)

    result = importer.process(company)

    assert result.status == CREATED
    assert result.child_failures == 0
    assert target.called("assign_customer_as_contact") == []
    assert target.called("assign_location_roles") == []
    assert target.called("assign_main_contact") == []


def test_unknown_role_is_skipped_and_failed_location_is_counted(make_client) -> None:
    company_without_roles = target_company()
    company_without_roles["contactRoles"] = {"nodes": [{"id": ADMIN_ROLE, "name": "Location admin"}]}
    target = sheet_client(
        make_client,
        get_company=company_without_roles,
        create_company_location=RuntimeError("companyLocationCreate exploded"),
    )
    importer = CompanySheetImport(target)
    [company] = importer.load(SHEET)

    result = importer.process(company)

    assert result.status == CREATED
    assert result.child_failures == 1
    [(role_args, _)] = target.called("assign_location_roles")
    assert role_args[0] == HQ_ID


def test_company_created_earlier_in_the_run_is_known(make_client) -> None:
    context = RunContext()
    context.identifiers.set("company", "101", COMPANY_ID)
    target = sheet_client(make_client)
    importer = CompanySheetImport(target, context, on_existing="skip")
    [company] = importer.load(SHEET)

    result = importer.process(company)

    assert (result.status, result.identifier) == (SKIPPED, COMPANY_ID)
    assert importer.matcher.matched_by == "known company"
    assert target.called("find_companies") == []


def test_dry_run_writes_nothing(make_client) -> None:
    target = sheet_client(make_client)
    importer = CompanySheetImport(target, dry_run=True)
    [company] = importer.load(SHEET)

    result = importer.process(company)

    assert result.reason == "dry run: would create"
    assert target.called("list_metafield_definitions") == []
    assert target.called("create_company") == []
