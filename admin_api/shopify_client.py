#!/usr/bin/env python3
"""
shopify_client.py
Central GraphQL helper for the store migration scripts.

Reads the store from .env and exposes a `ShopifyClient` class:
    ShopifyClient()          -> SHOP_URL / SHOPIFY_ACCESS_TOKEN
    ShopifyClient("SOURCE")  -> SOURCE_SHOP / SOURCE_ACCESS_TOKEN
    ShopifyClient("TARGET")  -> TARGET_SHOP / TARGET_ACCESS_TOKEN
API_VERSION is shared and defaults to 2025-10.

Every mutation goes through `mutate()`, which checks the embedded
`userErrors` list and raises unless the errors are a known benign duplicate.
HTTP 429 and THROTTLED responses are retried with exponential backoff; every
other failure is raised as-is.
"""

from __future__ import annotations

import logging
import os
import time

import requests
from dotenv import load_dotenv

from admin_api.errors import TransportError, check_user_errors
from reconcile.metafields import connection_nodes

load_dotenv()

MAX_ATTEMPTS = 4
BASE_BACKOFF = 0.8
LOW_THROTTLE_BUDGET = 100
METAFIELDS_SET_BATCH = 25

COMPANY_ADDRESS_FIELDS = """
  firstName lastName address1 address2 city zip
  countryCode zoneCode phone recipient
"""

SOURCE_COMPANY_QUERY = f"""
query GetCompany($id: ID!) {{
  company(id: $id) {{
    id
    name
    externalId
    note
    customerSince
    metafields(first: 250) {{
      nodes {{ namespace key type value }}
    }}
    locations(first: 50) {{
      nodes {{
        id
        name
        externalId
        note
        phone
        locale
        taxSettings {{ taxExempt taxExemptions taxRegistrationId }}
        buyerExperienceConfiguration {{
          checkoutToDraft
          editableShippingAddress
          deposit {{ ... on DepositPercentage {{ __typename percentage }} }}
          paymentTermsTemplate {{ id }}
        }}
        shippingAddress {{ {COMPANY_ADDRESS_FIELDS} }}
        billingAddress {{ {COMPANY_ADDRESS_FIELDS} }}
      }}
    }}
    contacts(first: 100) {{
      nodes {{
        id
        isMainContact
        customer {{
          id
          email
          phone
          firstName
          lastName
          note
          tags
          defaultAddress {{
            address1 address2 city provinceCode countryCodeV2 zip phone
            firstName lastName company
          }}
          metafields(first: 50) {{
            nodes {{ namespace key type value }}
          }}
          emailMarketingConsent {{ marketingState marketingOptInLevel consentUpdatedAt }}
          smsMarketingConsent {{ marketingState marketingOptInLevel consentUpdatedAt }}
          companyContactProfiles {{
            company {{ id }}
            roleAssignments(first: 50) {{
              nodes {{
                companyLocation {{ id name }}
                role {{ id name }}
              }}
            }}
          }}
        }}
      }}
    }}
  }}
}}
"""

TARGET_COMPANY_FIELDS = """
  id
  name
  externalId
  contactRoles(first: 20) { nodes { id name } }
  locations(first: 50) { nodes { id name externalId } }
"""


class ShopifyClient:
    def __init__(self, prefix: str | None = None, session: requests.Session | None = None):
        if prefix:
            shop_var, token_var = f"{prefix}_SHOP", f"{prefix}_ACCESS_TOKEN"
        else:
            shop_var, token_var = "SHOP_URL", "SHOPIFY_ACCESS_TOKEN"

        self.shop_url = (os.getenv(shop_var) or "").rstrip("/")
        self.token = os.getenv(token_var)
        self.api_version = os.getenv("API_VERSION", "2025-10")
        if not all([self.shop_url, self.token]):
            raise EnvironmentError(f"Missing {shop_var} or {token_var} in .env")
        if not self.shop_url.startswith("http"):
            self.shop_url = f"https://{self.shop_url}"

        self.label = prefix or "SHOP"
        self.endpoint = f"{self.shop_url}/admin/api/{self.api_version}/graphql.json"
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self.token,
        })

    # ------------------------------------------------------------------
    # --- Transport ---
    # ------------------------------------------------------------------

    def graphql(self, query: str, variables: dict | None = None, label: str | None = None) -> dict:
        """Perform a GraphQL POST, retrying the same request on 429 / THROTTLED."""
        payload = {"query": query, "variables": variables or {}}
        label = label or self.label

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                resp = self.session.post(self.endpoint, json=payload, timeout=60)
            except requests.RequestException as e:
                raise TransportError(f"GraphQL request failed ({label}): {e}") from e

            if resp.status_code == 429:
                if attempt < MAX_ATTEMPTS:
                    self._backoff(attempt, resp.headers.get("Retry-After"), label, "HTTP 429")
                    continue
                raise TransportError(f"GraphQL HTTP 429 ({label}) after {attempt} attempts", status=429)

            if resp.status_code != 200:
                raise TransportError(f"GraphQL HTTP {resp.status_code} ({label}): {resp.text[:2000]}",
                                     status=resp.status_code)

            data = resp.json()
            if _is_throttled(data):
                if attempt < MAX_ATTEMPTS:
                    self._backoff(attempt, None, label, "THROTTLED")
                    continue
                raise TransportError(f"GraphQL THROTTLED ({label}) after {attempt} attempts", status=200)

            available = (data.get("extensions", {}).get("cost", {})
                         .get("throttleStatus", {}).get("currentlyAvailable"))
            if available is not None and available < LOW_THROTTLE_BUDGET:
                time.sleep(2)
            return data

        raise TransportError(f"GraphQL request gave up ({label})")

    def _backoff(self, attempt: int, retry_after, label: str, reason: str) -> None:
        try:
            extra = float(retry_after) if retry_after else 0.0
        except ValueError:
            extra = 0.0
        delay = BASE_BACKOFF * (2 ** (attempt - 1)) + extra
        logging.warning(f"⏳ {label} {reason}, retrying in {delay:.1f}s (attempt {attempt + 1})")
        time.sleep(delay)

    def data(self, query: str, variables: dict | None = None, label: str | None = None) -> dict:
        """Return the `data` payload, raising on top-level GraphQL errors."""
        response = self.graphql(query, variables, label)
        if response.get("errors"):
            messages = "; ".join(e.get("message", str(e)) for e in response["errors"])
            raise TransportError(f"GraphQL errors ({label or self.label}): {messages}")
        return response.get("data") or {}

    def mutate(self, operation: str, query: str, variables: dict | None = None) -> dict:
        """Run a mutation and return its payload; non-benign userErrors raise."""
        data = self.data(query, variables, label=operation)
        payload = data.get(operation) or {}
        if check_user_errors(operation, payload.get("userErrors")):
            messages = "; ".join(e.get("message", "") for e in payload["userErrors"])
            logging.info(f"ℹ️ {operation}: treated as already done ({messages})")
        return payload

    def paginate(self, query: str, variables: dict | None, path: tuple[str, ...]):
        """Yield every node of the connection found at `path`, following `endCursor`."""
        variables = dict(variables or {})
        while True:
            data = self.data(query, variables)
            connection = data
            for key in path:
                connection = (connection or {}).get(key)
            if not connection:
                return
            yield from connection_nodes(connection)
            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                return
            variables["cursor"] = page_info.get("endCursor")

    def search_nodes(self, connection: str, search: str, fields: str, first: int = 1) -> list:
        """Run `connection(first:, query:)` and return its nodes."""
        query = f"""
        query Search($q: String!, $first: Int!) {{
          {connection}(first: $first, query: $q) {{
            nodes {{ {fields} }}
          }}
        }}
        """
        data = self.data(query, {"q": search, "first": first}, label=f"{connection} search")
        return connection_nodes(data.get(connection))

    # ------------------------------------------------------------------
    # --- Metafields ---
    # ------------------------------------------------------------------

    def get_metafields(self, owner_id: str) -> list:
        query = """
        query OwnerMetafields($id: ID!) {
          node(id: $id) {
            ... on HasMetafields {
              metafields(first: 250) { nodes { namespace key type value } }
            }
          }
        }
        """
        node = self.data(query, {"id": owner_id}).get("node") or {}
        return connection_nodes(node.get("metafields"))

    def set_metafields(self, metafields: list) -> int:
        mutation = """
        mutation MetafieldsSet($metafields: [MetafieldsSetInput!]!) {
          metafieldsSet(metafields: $metafields) {
            metafields { id }
            userErrors { field message }
          }
        }
        """
        for start in range(0, len(metafields), METAFIELDS_SET_BATCH):
            batch = metafields[start:start + METAFIELDS_SET_BATCH]
            self.mutate("metafieldsSet", mutation, {"metafields": batch})
        return len(metafields)

    def list_metafield_definitions(self, owner_type: str) -> list:
        query = """
        query MetafieldDefinitions($ownerType: MetafieldOwnerType!, $cursor: String) {
          metafieldDefinitions(first: 250, ownerType: $ownerType, after: $cursor) {
            nodes { namespace key type { name } }
            pageInfo { hasNextPage endCursor }
          }
        }
        """
        return list(self.paginate(query, {"ownerType": owner_type}, ("metafieldDefinitions",)))

    def create_metafield_definition(self, definition: dict) -> dict:
        mutation = """
        mutation MetafieldDefinitionCreate($definition: MetafieldDefinitionInput!) {
          metafieldDefinitionCreate(definition: $definition) {
            createdDefinition { id namespace key }
            userErrors { field message }
          }
        }
        """
        payload = self.mutate("metafieldDefinitionCreate", mutation, {"definition": definition})
        return payload.get("createdDefinition") or {}

    # ------------------------------------------------------------------
    # --- Companies & locations ---
    # ------------------------------------------------------------------

    def fetch_company(self, company_id: str) -> dict:
        company = self.data(SOURCE_COMPANY_QUERY, {"id": company_id}, label="GetCompany").get("company")
        if not company:
            raise LookupError(f"Company not found on {self.label}: {company_id}")
        return company

    def get_company(self, company_id: str) -> dict:
        """TARGET-side company with its roles, locations and contacts' emails."""
        query = f"""
        query TargetCompany($id: ID!) {{
          company(id: $id) {{
            {TARGET_COMPANY_FIELDS}
            contacts(first: 250) {{ nodes {{ id customer {{ id email }} }} }}
          }}
        }}
        """
        company = self.data(query, {"id": company_id}, label="TargetCompany").get("company")
        if not company:
            raise LookupError(f"Company not found on {self.label}: {company_id}")
        return company

    def payment_terms_templates(self) -> list:
        query = """
        query PaymentTermsTemplates {
          paymentTermsTemplates { id name paymentTermsType dueInDays }
        }
        """
        return self.data(query).get("paymentTermsTemplates") or []

    def iter_company_orders(self, company_id: str):
        query = """
        query CompanyOrders($id: ID!, $cursor: String) {
          company(id: $id) {
            orders(first: 250, after: $cursor) {
              nodes { id createdAt displayFulfillmentStatus cancelledAt closedAt tags }
              pageInfo { hasNextPage endCursor }
            }
          }
        }
        """
        return self.paginate(query, {"id": company_id}, ("company", "orders"))

    def find_companies(self, search: str, first: int = 2) -> list:
        return self.search_nodes("companies", search, TARGET_COMPANY_FIELDS, first=first)

    def create_company(self, company_input: dict) -> dict:
        mutation = f"""
        mutation CompanyCreate($input: CompanyCreateInput!) {{
          companyCreate(input: $input) {{
            company {{ {TARGET_COMPANY_FIELDS} }}
            userErrors {{ field message code }}
          }}
        }}
        """
        payload = self.mutate("companyCreate", mutation, {"input": company_input})
        company = payload.get("company")
        if not company:
            raise TransportError("companyCreate returned no company")
        return company

    def update_company(self, company_id: str, company_input: dict) -> dict:
        mutation = """
        mutation CompanyUpdate($companyId: ID!, $input: CompanyInput!) {
          companyUpdate(companyId: $companyId, input: $input) {
            company { id name externalId }
            userErrors { field message }
          }
        }
        """
        payload = self.mutate("companyUpdate", mutation, {"companyId": company_id, "input": company_input})
        return payload.get("company") or {}

    def create_company_location(self, company_id: str, location_input: dict) -> dict:
        mutation = """
        mutation CompanyLocationCreate($companyId: ID!, $input: CompanyLocationInput!) {
          companyLocationCreate(companyId: $companyId, input: $input) {
            companyLocation { id name externalId }
            userErrors { field message code }
          }
        }
        """
        payload = self.mutate("companyLocationCreate", mutation,
                              {"companyId": company_id, "input": location_input})
        location = payload.get("companyLocation")
        if not location:
            raise TransportError("companyLocationCreate returned no location")
        return location

    def update_company_location(self, location_id: str, location_input: dict) -> dict:
        mutation = """
        mutation CompanyLocationUpdate($companyLocationId: ID!, $input: CompanyLocationUpdateInput!) {
          companyLocationUpdate(companyLocationId: $companyLocationId, input: $input) {
            companyLocation { id name }
            userErrors { field message }
          }
        }
        """
        payload = self.mutate("companyLocationUpdate", mutation,
                              {"companyLocationId": location_id, "input": location_input})
        return payload.get("companyLocation") or {}

    def assign_location_address(self, location_id: str, address: dict, address_types: list[str]) -> dict:
        mutation = """
        mutation CompanyLocationAssignAddress($locationId: ID!, $address: CompanyAddressInput!,
                                              $addressTypes: [CompanyAddressType!]!) {
          companyLocationAssignAddress(locationId: $locationId, address: $address, addressTypes: $addressTypes) {
            addresses { id }
            userErrors { field message }
          }
        }
        """
        return self.mutate("companyLocationAssignAddress", mutation,
                           {"locationId": location_id, "address": address, "addressTypes": address_types})

    def get_location_tax_settings(self, location_id: str) -> dict:
        query = """
        query LocationTax($id: ID!) {
          companyLocation(id: $id) {
            id
            taxSettings { taxExempt taxExemptions taxRegistrationId }
          }
        }
        """
        location = self.data(query, {"id": location_id}).get("companyLocation") or {}
        return location.get("taxSettings") or {}

    def update_location_tax_settings(self, location_id: str, tax_registration_id: str | None,
                                     tax_exempt: bool | None, assign: list, remove: list) -> dict:
        mutation = """
        mutation CompanyLocationTaxSettingsUpdate($companyLocationId: ID!, $taxRegistrationId: String,
                                                  $taxExempt: Boolean, $exemptionsToAssign: [TaxExemption!],
                                                  $exemptionsToRemove: [TaxExemption!]) {
          companyLocationTaxSettingsUpdate(companyLocationId: $companyLocationId,
                                           taxRegistrationId: $taxRegistrationId,
                                           taxExempt: $taxExempt,
                                           exemptionsToAssign: $exemptionsToAssign,
                                           exemptionsToRemove: $exemptionsToRemove) {
            companyLocation { id }
            userErrors { field message }
          }
        }
        """
        return self.mutate("companyLocationTaxSettingsUpdate", mutation, {
            "companyLocationId": location_id,
            "taxRegistrationId": tax_registration_id,
            "taxExempt": tax_exempt,
            "exemptionsToAssign": assign,
            "exemptionsToRemove": remove,
        })

    # ------------------------------------------------------------------
    # --- Company contacts & roles ---
    # ------------------------------------------------------------------

    def list_company_contacts(self, company_id: str) -> list:
        query = """
        query CompanyContacts($id: ID!, $cursor: String) {
          company(id: $id) {
            contacts(first: 250, after: $cursor) {
              nodes { id customer { id } }
              pageInfo { hasNextPage endCursor }
            }
          }
        }
        """
        return list(self.paginate(query, {"id": company_id}, ("company", "contacts")))

    def assign_customer_as_contact(self, company_id: str, customer_id: str) -> str:
        mutation = """
        mutation CompanyAssignCustomerAsContact($companyId: ID!, $customerId: ID!) {
          companyAssignCustomerAsContact(companyId: $companyId, customerId: $customerId) {
            companyContact { id }
            userErrors { field message }
          }
        }
        """
        payload = self.mutate("companyAssignCustomerAsContact", mutation,
                              {"companyId": company_id, "customerId": customer_id})
        contact = payload.get("companyContact") or {}
        if not contact.get("id"):
            raise TransportError("companyAssignCustomerAsContact returned no contact")
        return contact["id"]

    def assign_main_contact(self, company_id: str, contact_id: str) -> dict:
        mutation = """
        mutation CompanyAssignMainContact($companyId: ID!, $companyContactId: ID!) {
          companyAssignMainContact(companyId: $companyId, companyContactId: $companyContactId) {
            company { id }
            userErrors { field message }
          }
        }
        """
        return self.mutate("companyAssignMainContact", mutation,
                           {"companyId": company_id, "companyContactId": contact_id})

    def assign_location_roles(self, location_id: str, roles: list[dict]) -> dict:
        mutation = """
        mutation CompanyLocationAssignRoles($companyLocationId: ID!, $rolesToAssign: [CompanyLocationRoleAssign!]!) {
          companyLocationAssignRoles(companyLocationId: $companyLocationId, rolesToAssign: $rolesToAssign) {
            roleAssignments { id }
            userErrors { field message }
          }
        }
        """
        return self.mutate("companyLocationAssignRoles", mutation,
                           {"companyLocationId": location_id, "rolesToAssign": roles})

    # ------------------------------------------------------------------
    # --- Customers ---
    # ------------------------------------------------------------------

    def find_customers(self, search: str, first: int = 2) -> list:
        return self.search_nodes("customers", search, "id email phone tags", first=first)

    def create_customer(self, customer_input: dict) -> dict:
        mutation = """
        mutation CustomerCreate($input: CustomerInput!) {
          customerCreate(input: $input) {
            customer { id email phone }
            userErrors { field message }
          }
        }
        """
        payload = self.mutate("customerCreate", mutation, {"input": customer_input})
        customer = payload.get("customer")
        if not customer:
            raise TransportError("customerCreate returned no customer")
        return customer

    def update_customer(self, customer_input: dict) -> dict:
        mutation = """
        mutation CustomerUpdate($input: CustomerInput!) {
          customerUpdate(input: $input) {
            customer { id email phone }
            userErrors { field message }
          }
        }
        """
        payload = self.mutate("customerUpdate", mutation, {"input": customer_input})
        return payload.get("customer") or {}

    def update_email_consent(self, customer_id: str, consent: dict) -> dict:
        mutation = """
        mutation CustomerEmailMarketingConsentUpdate($input: CustomerEmailMarketingConsentUpdateInput!) {
          customerEmailMarketingConsentUpdate(input: $input) {
            customer { id }
            userErrors { field message }
          }
        }
        """
        return self.mutate("customerEmailMarketingConsentUpdate", mutation, {
            "input": {"customerId": customer_id, "emailMarketingConsent": consent},
        })

    def update_sms_consent(self, customer_id: str, consent: dict) -> dict:
        mutation = """
        mutation CustomerSmsMarketingConsentUpdate($input: CustomerSmsMarketingConsentUpdateInput!) {
          customerSmsMarketingConsentUpdate(input: $input) {
            customer { id }
            userErrors { field message }
          }
        }
        """
        return self.mutate("customerSmsMarketingConsentUpdate", mutation, {
            "input": {"customerId": customer_id, "smsMarketingConsent": consent},
        })

    # ------------------------------------------------------------------
    # --- Collections & publications ---
    # ------------------------------------------------------------------

    def iter_collections(self, search: str | None = None):
        query = """
        query Collections($cursor: String, $query: String) {
          collections(first: 50, after: $cursor, query: $query) {
            nodes {
              id
              title
              handle
              descriptionHtml
              sortOrder
              templateSuffix
              seo { title description }
              ruleSet {
                appliedDisjunctively
                rules { column relation condition }
              }
              metafields(first: 100) { nodes { namespace key type value } }
              resourcePublicationsV2(first: 50) {
                nodes { publication { id app { handle } } }
              }
            }
            pageInfo { hasNextPage endCursor }
          }
        }
        """
        return self.paginate(query, {"query": search}, ("collections",))

    def create_collection(self, collection_input: dict) -> dict:
        mutation = """
        mutation CollectionCreate($input: CollectionInput!) {
          collectionCreate(input: $input) {
            collection { id title handle }
            userErrors { field message }
          }
        }
        """
        payload = self.mutate("collectionCreate", mutation, {"input": collection_input})
        collection = payload.get("collection")
        if not collection:
            raise TransportError("collectionCreate returned no collection")
        return collection

    def update_collection(self, collection_input: dict) -> dict:
        mutation = """
        mutation CollectionUpdate($input: CollectionInput!) {
          collectionUpdate(input: $input) {
            collection { id title handle }
            userErrors { field message }
          }
        }
        """
        payload = self.mutate("collectionUpdate", mutation, {"input": collection_input})
        return payload.get("collection") or {}

    def list_publications(self) -> list:
        query = """
        query Publications($cursor: String) {
          publications(first: 250, after: $cursor) {
            nodes {
              id
              catalog { title }
              app { id title handle }
            }
            pageInfo { hasNextPage endCursor }
          }
        }
        """
        return list(self.paginate(query, {}, ("publications",)))

    def publish(self, resource_id: str, publication_ids: list[str]) -> dict:
        mutation = """
        mutation PublishablePublish($id: ID!, $input: [PublicationInput!]!) {
          publishablePublish(id: $id, input: $input) {
            userErrors { field message }
          }
        }
        """
        inputs = [{"publicationId": pid} for pid in publication_ids]
        return self.mutate("publishablePublish", mutation, {"id": resource_id, "input": inputs})

    # ------------------------------------------------------------------
    # --- Discounts ---
    # ------------------------------------------------------------------

    def code_discount_id(self, code: str) -> str | None:
        query = """
        query CodeDiscountByCode($code: String!) {
          codeDiscountNodeByCode(code: $code) { id }
        }
        """
        node = self.data(query, {"code": code}).get("codeDiscountNodeByCode")
        return node.get("id") if node else None

    def automatic_discounts_by_title(self, title: str) -> list:
        query = """
        query AutomaticDiscountsByTitle($query: String!) {
          automaticDiscountNodes(first: 5, query: $query) {
            nodes {
              id
              automaticDiscount {
                ... on DiscountAutomaticApp { title }
                ... on DiscountAutomaticBasic { title }
                ... on DiscountAutomaticBxgy { title }
                ... on DiscountAutomaticFreeShipping { title }
              }
            }
          }
        }
        """
        escaped = title.replace('"', '\\"')
        data = self.data(query, {"query": f'title:"{escaped}"'})
        return connection_nodes(data.get("automaticDiscountNodes"))

    # ------------------------------------------------------------------
    # --- Products ---
    # ------------------------------------------------------------------

    def iter_products(self, search: str | None = None):
        query = """
        query Products($cursor: String, $query: String) {
          products(first: 10, after: $cursor, query: $query) {
            nodes {
              id
              title
              handle
              descriptionHtml
              isGiftCard
              productType
              vendor
              status
              tags
              templateSuffix
              seo { title description }
              metafields(first: 250) { nodes { namespace key type value } }
              options(first: 10) { name position values }
              media(first: 50) {
                nodes {
                  alt
                  mediaContentType
                  ... on MediaImage { originalSource { url } }
                }
              }
              variants(first: 250) {
                nodes {
                  sku
                  barcode
                  position
                  price
                  compareAtPrice
                  taxable
                  selectedOptions { name value }
                  metafields(first: 100) { nodes { namespace key type value } }
                }
              }
            }
            pageInfo { hasNextPage endCursor }
          }
        }
        """
        return self.paginate(query, {"query": search}, ("products",))

    def list_locations(self) -> list:
        """Inventory locations (warehouses, shops), not company locations."""
        query = """
        query Locations($cursor: String) {
          locations(first: 250, after: $cursor) {
            nodes { id name isActive }
            pageInfo { hasNextPage endCursor }
          }
        }
        """
        return list(self.paginate(query, {}, ("locations",)))

    def product_set(self, identifier: dict, product_input: dict) -> dict:
        mutation = """
        mutation ProductSet($identifier: ProductSetIdentifiers, $input: ProductSetInput!, $synchronous: Boolean!) {
          productSet(identifier: $identifier, input: $input, synchronous: $synchronous) {
            product { id title handle status }
            userErrors { field message code }
          }
        }
        """
        payload = self.mutate("productSet", mutation,
                              {"identifier": identifier, "input": product_input, "synchronous": True})
        product = payload.get("product")
        if not product:
            raise TransportError("productSet returned no product")
        return product

    # ------------------------------------------------------------------
    # --- File Upload ---
    # ------------------------------------------------------------------

    def staged_upload(self, filename: str, size: int, mime_type: str) -> dict:
        mutation = """
        mutation StagedUploadsCreate($input: [StagedUploadInput!]!) {
          stagedUploadsCreate(input: $input) {
            stagedTargets { url resourceUrl parameters { name value } }
            userErrors { field message }
          }
        }
        """
        payload = self.mutate("stagedUploadsCreate", mutation, {"input": [{
            "filename": filename,
            "mimeType": mime_type,
            "fileSize": str(size),
            "httpMethod": "POST",
            "resource": "IMAGE" if mime_type.startswith("image/") else "FILE",
        }]})
        targets = payload.get("stagedTargets") or []
        if not targets or not targets[0].get("url") or not targets[0].get("resourceUrl"):
            raise TransportError("stagedUploadsCreate returned no staged target")
        return targets[0]

    def upload_to_staged_target(self, target: dict, content: bytes, filename: str, mime_type: str) -> None:
        form = {p["name"]: p["value"] for p in target.get("parameters") or []}
        try:
            resp = requests.post(target["url"], data=form,
                                 files={"file": (filename, content, mime_type)}, timeout=120)
        except requests.RequestException as e:
            raise TransportError(f"Staged upload failed for {filename}: {e}") from e
        if resp.status_code >= 400:
            raise TransportError(f"Staged upload failed HTTP {resp.status_code}: {resp.text[:300]}",
                                 status=resp.status_code)

    def file_create(self, resource_url: str, alt: str, content_type: str = "FILE") -> dict:
        mutation = """
        mutation FileCreate($files: [FileCreateInput!]!) {
          fileCreate(files: $files) {
            files { id fileStatus }
            userErrors { field message code }
          }
        }
        """
        payload = self.mutate("fileCreate", mutation, {"files": [{
            "alt": alt,
            "contentType": content_type,
            "originalSource": resource_url,
        }]})
        files = payload.get("files") or []
        if not files or not files[0].get("id"):
            raise TransportError("fileCreate did not return a file id")
        return files[0]

    def wait_for_file_ready(self, file_gid: str, timeout: float = 600, delay: float = 2.0,
                            max_delay: float = 15.0) -> dict:
        """
        Poll a file until it is READY. FAILED raises; running out of time is
        reported back with `timed_out` so the caller can record it.
        """
        logging.info(f"  > Waiting for file {file_gid} to be 'READY'...")
        query = """
        query CheckFileStatus($id: ID!) {
          node(id: $id) {
            ... on File {
              fileStatus
              fileErrors { code message }
              ... on GenericFile { url }
              ... on MediaImage { image { url } }
            }
          }
        }
        """
        start_time = time.time()
        while True:
            node = self.data(query, {"id": file_gid}).get("node")
            if not node:
                raise TransportError(f"Could not find file {file_gid} during polling.")

            status = node.get("fileStatus")
            url = node.get("url") or (node.get("image") or {}).get("url") or ""
            if status == "READY" and url:
                logging.info("  > File is 'READY'.")
                return {"status": status, "url": url.split("?")[0], "timed_out": False}
            if status == "FAILED":
                raise TransportError(f"File processing FAILED for {file_gid}: {node.get('fileErrors')}")
            if time.time() - start_time > timeout:
                logging.warning(f"  > ⚠️ Timed out waiting for {file_gid} (status {status})")
                return {"status": status, "url": url, "timed_out": True}

            time.sleep(delay)
            delay = min(delay * 1.3, max_delay)


def _is_throttled(response: dict) -> bool:
    for error in response.get("errors") or []:
        if (error.get("extensions") or {}).get("code") == "THROTTLED":
            return True
    return False
