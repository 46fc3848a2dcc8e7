"""Entity validator applied to every subscription write."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models.subscription import BillingPeriod, SubscriptionStatus, SubscriptionType
from .timestamps import to_datetime


class HistoryEventSchema(BaseModel):
    action: str
    type: str
    date: datetime
    data: Optional[Dict[str, Any]] = None


class DatesSchema(BaseModel):
    model_config = ConfigDict(extra="allow")

    date_start: datetime
    date_order_next: datetime
    date_end: datetime
    date_created: datetime
    date_updated: datetime
    date_stopped: Optional[datetime] = None


class DataSchema(BaseModel):
    model_config = ConfigDict(extra="allow")

    product: Dict[str, Any]
    order: Optional[Dict[str, Any]] = None
    remote_data: Optional[Dict[str, Any]] = None


class SubscriptionSchema(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    user_id: str = Field(..., min_length=3)
    ip: str = Field(..., min_length=4)
    type: SubscriptionType = SubscriptionType.AUTOREFRESH
    period: BillingPeriod
    duration: float = Field(..., gt=0)
    cycles: int
    status: SubscriptionStatus
    order_origin_id: str = Field(..., min_length=3)
    order_item_name: str = Field(..., min_length=3)
    dates: DatesSchema
    price: float
    data: DataSchema
    history: List[HistoryEventSchema] = Field(default_factory=list)


def normalize_dates(document: Dict[str, Any]) -> Dict[str, Any]:
    """Convert date-like values of ``dates`` and ``history`` in place."""
    dates = document.get("dates")
    if isinstance(dates, dict):
        for key, value in list(dates.items()):
            try:
                dates[key] = to_datetime(value)
            except (TypeError, ValueError, OverflowError, OSError):
                # leave the raw value for the validator to report
                continue
    for event in document.get("history") or []:
        if isinstance(event, dict) and "date" in event:
            try:
                event["date"] = to_datetime(event["date"])
            except (TypeError, ValueError, OverflowError, OSError):
                continue
    return document


SCALAR_FIELDS = {
    "user_id",
    "ip",
    "type",
    "period",
    "duration",
    "cycles",
    "status",
    "order_origin_id",
    "order_item_name",
    "price",
}


def validate_document(document: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Check ``document`` against the entity rules.

    Returns:
        The top-level scalar fields coerced to their declared types,
        e.g. a ``"1"`` duration becomes ``1.0``

    Raises:
        ValidationError: the document breaks the entity rules
    """
    try:
        model = SubscriptionSchema.model_validate(dict(document))
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in item["loc"]), "message": item["msg"]}
            for item in exc.errors()
        ]
        summary = ", ".join(f"{item['field']}: {item['message']}" for item in errors)
        raise ValidationError(f"Invalid subscription ({summary})", errors) from exc
    return model.model_dump(include=SCALAR_FIELDS)
