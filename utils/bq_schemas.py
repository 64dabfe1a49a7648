"""BigQuery schema definitions.

**AUTO-GENERATED FROM DATACLASSES**
Do NOT manually edit schemas here. Update `utils.schemas` instead.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import MISSING, fields
from typing import Any, List, Tuple, get_args, get_origin, get_type_hints

from google.cloud import bigquery

from utils.schemas import AggregateRow


_BQ_TYPES = {
    str: "STRING",
    int: "INTEGER",
    float: "FLOAT",
    bool: "BOOLEAN",
    dict: "JSON",
    dt.datetime: "TIMESTAMP",
    dt.date: "DATE",
}


def _python_type_to_bq_type(python_type: Any) -> Tuple[str, bool]:
    """Convert a Python type annotation to (BigQuery type, nullable)."""
    nullable = False
    origin = get_origin(python_type)

    # Optional[X] -> X, nullable
    if origin is not None:
        args = get_args(python_type)
        if type(None) in args:
            nullable = True
            python_type = next(arg for arg in args if arg is not type(None))
            origin = get_origin(python_type)

    if origin is dict:
        return "JSON", nullable

    return _BQ_TYPES.get(python_type, "STRING"), nullable


def _dataclass_to_bq_schema(dataclass_type: type) -> List[bigquery.SchemaField]:
    """Auto-generate BigQuery schema from dataclass."""
    hints = get_type_hints(dataclass_type)
    schema_fields = []

    for field in fields(dataclass_type):
        bq_type, nullable = _python_type_to_bq_type(hints[field.name])
        has_default = field.default is not MISSING or field.default_factory is not MISSING
        mode = "NULLABLE" if nullable or has_default else "REQUIRED"
        schema_fields.append(bigquery.SchemaField(field.name, bq_type, mode=mode))

    return schema_fields


def aggregate_sentiment_schema() -> List[bigquery.SchemaField]:
    """Schema for the aggregate sentiment table.

    Auto-generated from `utils.schemas.AggregateRow` dataclass.
    """
    return _dataclass_to_bq_schema(AggregateRow)
