#!/usr/bin/env python3
"""
entity_matcher.py

Finds the target record that corresponds to a source entity by trying an
ordered list of business-key strategies, most trustworthy first.

A strategy only wins with exactly one candidate. Zero candidates, or more
than one, falls through to the next strategy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from reconcile.key_resolver import RunContext


@dataclass(frozen=True)
class Strategy:
    name: str
    candidates: Callable[[Any], list]


def normalize_text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_email(value) -> str:
    return normalize_text(value).lower()


def field_strategy(name: str, records: list[dict], record_field: str,
                   value_fn: Callable[[Any], Any], normalize=normalize_text) -> Strategy:
    """Scan already-fetched target records for an exact field match."""

    def candidates(entity):
        wanted = normalize(value_fn(entity))
        if not wanted:
            return []
        return [r for r in records if normalize(r.get(record_field)) == wanted]

    return Strategy(name, candidates)


def search_strategy(name: str, search: Callable[[Any], list]) -> Strategy:
    """Wrap a remote search that returns a list of nodes."""
    return Strategy(name, lambda entity: search(entity) or [])


def known_strategy(context: RunContext, kind: str, key_fn: Callable[[Any], Any]) -> Strategy:
    """Match entities this run already created or resolved, before the target's search index sees them."""

    def candidates(entity):
        key = key_fn(entity)
        if not key:
            return []
        identifier = context.identifiers.get(kind, key)
        return [{"id": identifier}] if identifier else []

    return Strategy(f"known {kind}", candidates)


class EntityMatcher:
    def __init__(self, context: RunContext | None = None):
        self.context = context or RunContext()
        self.matched_by: str | None = None

    def find_existing(self, entity, strategies: list[Strategy]):
        self.matched_by = None
        for strategy in strategies:
            found = _unique(strategy.candidates(entity))
            if len(found) == 1:
                self.matched_by = strategy.name
                return found[0]
            if len(found) > 1:
                ids = [c.get("id") for c in found]
                logging.warning(f"⚠️ Ambiguous match by {strategy.name}: {ids}; trying next strategy")
        return None


def _unique(candidates: list) -> list:
    unique = []
    seen = set()
    for candidate in candidates:
        identifier = candidate.get("id") if isinstance(candidate, dict) else id(candidate)
        if identifier in seen:
            continue
        seen.add(identifier)
        unique.append(candidate)
    return unique
