#!/usr/bin/env python3
"""
key_resolver.py

Turns business keys (handles, SKUs, segment names, emails) into target-side
GIDs, memoised for the lifetime of one run.

The run-scoped state lives in a RunContext that is created by the CLI and
handed to every resolver, matcher and orchestrator of that run. Nothing is
kept at module level.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from reconcile.row_grouper import is_empty

GID_PREFIX = "gid://shopify/"

# kind -> (root connection, search field, selected fields)
LOOKUPS = {
    "product": ("products", "handle", "id handle"),
    "collection": ("collections", "handle", "id handle"),
    "variant": ("productVariants", "sku", "id sku"),
    "segment": ("segments", "name", "id name"),
    "customer": ("customers", "email", "id email"),
}

_MISSING = object()


def looks_like_gid(value) -> bool:
    return isinstance(value, str) and value.strip().startswith(GID_PREFIX)


def search_term(search_field: str, value: str) -> str:
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'{search_field}:"{escaped}"'


class IdentifierMap:
    """
    Append-only `kind -> {business key -> target id}` map.

    A cached miss (None) may later be filled by an id, e.g. after the run
    creates the entity. A known id is never replaced.
    """

    def __init__(self):
        self._maps: dict[str, dict[str, str | None]] = {}

    def __contains__(self, item) -> bool:
        kind, key = item
        return key in self._maps.get(kind, {})

    def get(self, kind: str, key: str, default=None):
        return self._maps.get(kind, {}).get(key, default)

    def set(self, kind: str, key: str, identifier: str | None) -> str | None:
        bucket = self._maps.setdefault(kind, {})
        current = bucket.get(key)
        if current is not None:
            if identifier is not None and identifier != current:
                logging.warning(f"⚠️ Keeping {kind} {key!r} → {current}; ignoring {identifier}")
            return current
        bucket[key] = identifier
        return identifier

    def items(self, kind: str) -> dict[str, str | None]:
        return dict(self._maps.get(kind, {}))


@dataclass
class RunContext:
    identifiers: IdentifierMap = field(default_factory=IdentifierMap)
    # (company id, customer id) -> company contact id
    contacts: dict[tuple[str, str], str] = field(default_factory=dict)


class KeyResolver:
    def __init__(self, client, context: RunContext):
        self.client = client
        self.context = context

    def resolve(self, kind: str, reference) -> str | None:
        """
        Return the target GID for `reference`, or None when the target has no match.

        GIDs pass through untouched. Lookup errors propagate.
        """
        if kind not in LOOKUPS:
            raise ValueError(f"Unknown resolver kind: {kind}")
        if is_empty(reference):
            return None
        value = str(reference).strip()
        if looks_like_gid(value):
            return value

        key = value.lower() if kind == "customer" else value
        cached = self.context.identifiers.get(kind, key, _MISSING)
        if cached is not _MISSING:
            return cached

        connection, search_field, fields = LOOKUPS[kind]
        nodes = self.client.search_nodes(connection, search_term(search_field, value), fields, first=1)
        identifier = nodes[0]["id"] if nodes else None
        if identifier is None:
            logging.warning(f"⚠️ No target {kind} found for {search_field} {value!r}")
        return self.context.identifiers.set(kind, key, identifier)

    def resolve_many(self, kind: str, references) -> list[str]:
        """Resolve every reference, dropping the ones that do not resolve."""
        resolved = []
        for reference in references or []:
            identifier = self.resolve(kind, reference)
            if identifier and identifier not in resolved:
                resolved.append(identifier)
        return resolved

    def remember(self, kind: str, reference, identifier: str) -> None:
        if is_empty(reference) or not identifier:
            return
        key = str(reference).strip()
        if kind == "customer":
            key = key.lower()
        self.context.identifiers.set(kind, key, identifier)
