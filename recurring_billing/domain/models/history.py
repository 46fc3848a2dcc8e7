"""Audit history events attached to subscriptions."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from ..timestamps import to_datetime, utcnow


@dataclass(frozen=True, slots=True)
class HistoryEvent:
    """
    One entry of a subscription's append-only history.

    Attributes:
        action: What happened (created, prolonged, suspended, error, ...)
        type: Who triggered it, ``user`` or ``automatic``
        date: When it happened
        data: Optional read-only event payload, copied on construction
    """

    action: str
    type: str
    date: datetime
    data: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        if self.data is not None:
            object.__setattr__(self, "data", MappingProxyType(copy.deepcopy(dict(self.data))))

    @property
    def has_data(self) -> bool:
        return self.data is not None

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {"action": self.action, "type": self.type, "date": self.date}
        if self.data is not None:
            document["data"] = copy.deepcopy(dict(self.data))
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "HistoryEvent":
        data = document.get("data")
        return cls(
            action=str(document.get("action") or "created"),
            type=str(document.get("type") or "user"),
            date=to_datetime(document.get("date")) or utcnow(),
            data=data,
        )


def new_history_event(
    action: Optional[str] = None,
    type: Optional[str] = None,
    data: Optional[Mapping[str, Any]] = None,
    date: Optional[datetime] = None,
) -> HistoryEvent:
    return HistoryEvent(
        action=action or "created",
        type=type or "user",
        date=date or utcnow(),
        data=data,
    )
