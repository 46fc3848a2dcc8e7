"""Pydantic schemas for subscription API endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OrderConversionRequest(BaseModel):
    """A placed order whose subscription items become subscriptions."""

    order: Dict[str, Any]


class ImportSubscriptionsRequest(BaseModel):
    subscriptions: List[Dict[str, Any]] = Field(..., min_length=1)


class RenewalRunRequest(BaseModel):
    today: Optional[str] = None


class HistoryEventRequest(BaseModel):
    action: str = Field(..., min_length=1)
    type: str = "user"
    data: Optional[Dict[str, Any]] = None


class UpdateSubscriptionRequest(BaseModel):
    """Changes merged into a stored subscription, with an optional audit event."""

    changes: Dict[str, Any] = Field(default_factory=dict)
    event: Optional[HistoryEventRequest] = None
