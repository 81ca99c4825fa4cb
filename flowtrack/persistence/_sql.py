"""Helpers shared by the SQL-backed repositories."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Mapping

from ..models import RunFilter

JSON_COLUMNS = frozenset({"input_params", "output_result", "metadata", "state"})

IDENTITY_INDEX = "idx_workflow_identity"


def encode_values(values: Mapping[str, Any], *, iso_datetimes: bool) -> dict[str, Any]:
    """Prepare column values for binding."""
    encoded: dict[str, Any] = {}
    for key, value in values.items():
        if key in JSON_COLUMNS:
            value = json.dumps(value)
        elif iso_datetimes and isinstance(value, datetime):
            value = value.isoformat()
        encoded[key] = value
    return encoded


def decode_row(row: Mapping[str, Any]) -> dict[str, Any]:
    """Turn a fetched row into model input, parsing JSON columns."""
    data = dict(row)
    for key in JSON_COLUMNS.intersection(data):
        if isinstance(data[key], str):
            data[key] = json.loads(data[key])
    return data


def run_filter_clause(
    run_filter: RunFilter, placeholder: Callable[[int], str]
) -> tuple[str, list[Any]]:
    """Build the WHERE/ORDER/LIMIT tail of a filtered run query.

    ``placeholder`` maps a 1-based parameter position to the backend's
    placeholder syntax.
    """
    conditions: list[str] = []
    params: list[Any] = []
    for column in ("ref_id", "ref_type", "status"):
        value = getattr(run_filter, column)
        if value is not None:
            params.append(value)
            conditions.append(f"{column} = {placeholder(len(params))}")

    where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
    params.extend([run_filter.limit, run_filter.offset])
    tail = (
        f"{where}ORDER BY created_at DESC "
        f"LIMIT {placeholder(len(params) - 1)} OFFSET {placeholder(len(params))}"
    )
    return tail, params


FIND_WORKFLOW_ORDER = "ORDER BY ref_id IS NULL, ref_type IS NULL, id LIMIT 1"
