#!/usr/bin/env python3
"""
row_grouper.py

Collapses the flat, multi-row layout of Matrixify-style exports into one
merged record per logical entity (one collection, one customer, one discount).

Rules applied per group:
- Scalars: the first row that supplies a non-empty value wins. Later rows
  only fill fields that are still empty.
- Lists: every row's contributions are concatenated, de-duplicated by a
  composite key and, when a sort key is declared, stable-sorted by it with
  missing positions last.
- Single-valued columns: more than one distinct non-empty value inside the
  same group marks that group with a GroupingError. Other groups are not
  affected.

The module holds no state between calls.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterable


class GroupingError(ValueError):
    """Rows in one merge group disagree on a column that must be single-valued."""


class _Marker:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self):
        return self.name


# Returned by a key function for "Top Row" style exports where the row itself
# says whether it opens a new entity or continues the previous one.
NEW_GROUP = _Marker("NEW_GROUP")
CONTINUE = _Marker("CONTINUE")


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and value.strip() == ""


def _identity(item):
    return item


@dataclass(frozen=True)
class ListField:
    name: str
    extract: Callable[[dict], Iterable[Any] | None]
    dedupe_key: Callable[[Any], Hashable] = _identity
    sort_key: Callable[[Any], Any] | None = None
    # "first" keeps the first occurrence of a duplicate, "last" replaces it in place.
    keep: str = "first"


@dataclass
class MergeSpec:
    # field name -> column name or callable(row). None merges every column under its own name.
    scalars: dict[str, str | Callable[[dict], Any]] | None = None
    lists: list[ListField] = field(default_factory=list)
    single_valued: list[str] = field(default_factory=list)


@dataclass
class MergeGroup:
    key: Any
    fields: dict[str, Any]
    lists: dict[str, list]
    rows: list[int]
    error: GroupingError | None = None

    @property
    def merged_rows(self) -> str:
        return ",".join(str(n) for n in self.rows)


def group(rows: list[dict], key_fn: Callable[[dict], Any], spec: MergeSpec) -> list[MergeGroup]:
    """Group `rows` by `key_fn` and merge each group according to `spec`."""
    buckets: dict[Any, list[tuple[int, dict]]] = {}
    current = None

    for number, row in enumerate(rows, start=1):
        key = key_fn(row)
        if key is None:
            logging.warning(f"Row {number}: no grouping key, dropped")
            continue
        if key is NEW_GROUP or (key is CONTINUE and current is None):
            current = number
            buckets[current] = []
        elif key is not CONTINUE:
            current = key
            buckets.setdefault(current, [])
        buckets[current].append((number, row))

    return [_merge(key, members, spec) for key, members in buckets.items()]


def _merge(key, members: list[tuple[int, dict]], spec: MergeSpec) -> MergeGroup:
    rows = [row for _, row in members]
    merged = MergeGroup(
        key=key,
        fields=_merge_scalars(rows, spec.scalars),
        lists={lf.name: _merge_list(rows, lf) for lf in spec.lists},
        rows=[number for number, _ in members],
    )

    for column in spec.single_valued:
        distinct = []
        for row in rows:
            value = row.get(column)
            if is_empty(value):
                continue
            text = str(value).strip()
            if text not in distinct:
                distinct.append(text)
        if len(distinct) > 1:
            merged.error = GroupingError(
                f"{column} differs across merged rows {merged.merged_rows}: {distinct}"
            )
            break

    return merged


def _merge_scalars(rows: list[dict], scalars) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if scalars is None:
        for row in rows:
            for column, value in row.items():
                if is_empty(fields.get(column)):
                    fields[column] = None if is_empty(value) else value
        return fields

    for name, source in scalars.items():
        fields[name] = None
        for row in rows:
            value = source(row) if callable(source) else row.get(source)
            if not is_empty(value):
                fields[name] = value
                break
    return fields


def _merge_list(rows: list[dict], list_field: ListField) -> list:
    items: list = []
    seen: dict[Hashable, int] = {}
    for row in rows:
        for item in list_field.extract(row) or ():
            dedupe = list_field.dedupe_key(item)
            if dedupe in seen:
                if list_field.keep == "last":
                    items[seen[dedupe]] = item
                continue
            seen[dedupe] = len(items)
            items.append(item)

    if list_field.sort_key is not None:
        sort_key = list_field.sort_key

        def ordering(item):
            value = sort_key(item)
            return (value is None, value if value is not None else 0)

        items = sorted(items, key=ordering)
    return items
