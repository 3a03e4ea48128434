from __future__ import annotations
from datetime import datetime
from stockledger.time_utils import parse_iso_datetime

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to send (security boundary)
    - required: fields that must be present and non-null
    Fields that are not columns of the model (quantities, store codes) pass
    through untouched; the service layer parses those.
    """
    writable_fields: set[str]
    required: set[str] = field(default_factory=set)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer", code=f"invalid_{col.key}")
            if 'e' in stripped.lower() or '.' in stripped:
                raise ValidationError(f"{col.key} must be a plain integer", code=f"invalid_{col.key}")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer", code=f"invalid_{col.key}")
        raise ValidationError(f"{col.key} must be an integer", code=f"invalid_{col.key}")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean", code=f"invalid_{col.key}")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime", code=f"invalid_{col.key}")
            return dt
        raise ValidationError(f"{col.key} must be a datetime", code=f"invalid_{col.key}")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - a policy allowlist (writable_fields) and its required fields
    - SQLAlchemy column metadata (type, String length) for fields that map
      onto a column of `model`
    Returns a cleaned dict with only allowed fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload", code="invalid_payload")

    missing = sorted(f for f in policy.required if payload.get(f) in (None, ""))
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            code="missing_required_fields",
        )

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}", code="field_not_allowed")

    cols = _columns_by_key(model)
    cleaned: dict = {}

    for k, raw in payload.items():
        col = cols.get(k)
        if col is None or raw is None:
            cleaned[k] = raw
            continue

        val = _coerce_value(col, raw)

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(
                    f"{k} exceeds max length {col.type.length}",
                    code=f"{k}_too_long",
                )

        cleaned[k] = val

    return cleaned


_MOVEMENT_FIELDS = {"store_code", "ingredient_id", "warehouse_id", "quantity", "unit", "note", "occurred_at"}

STOCK_IN_POLICY = ModelValidationPolicy(
    writable_fields=_MOVEMENT_FIELDS | {
        "batch_number",
        "expiration_date",
        "cost_per_unit_cents",
        "supplier_id",
        "reference_number",
        "temperature_condition",
        "quality_check",
    },
    required={"store_code", "ingredient_id", "warehouse_id", "quantity", "unit"},
)

STOCK_OUT_POLICY = ModelValidationPolicy(
    writable_fields=_MOVEMENT_FIELDS | {"batch_number", "recipe_id", "temperature_condition"},
    required={"store_code", "ingredient_id", "warehouse_id", "quantity", "unit"},
)

STOCK_TAKE_POLICY = ModelValidationPolicy(
    writable_fields={
        "store_code",
        "ingredient_id",
        "warehouse_id",
        "physical_count",
        "unit",
        "batch_number",
        "note",
        "occurred_at",
    },
    required={"store_code", "ingredient_id", "warehouse_id", "physical_count"},
)

TRANSFER_POLICY = ModelValidationPolicy(
    writable_fields={
        "store_code",
        "ingredient_id",
        "from_warehouse_id",
        "to_warehouse_id",
        "quantity",
        "unit",
        "batch_number",
        "note",
        "occurred_at",
    },
    required={"store_code", "ingredient_id", "from_warehouse_id", "to_warehouse_id", "quantity", "unit"},
)

WRITE_OFF_POLICY = ModelValidationPolicy(
    writable_fields=_MOVEMENT_FIELDS | {"batch_number", "reason"},
    required={"store_code", "ingredient_id", "warehouse_id", "quantity", "unit", "reason"},
)
