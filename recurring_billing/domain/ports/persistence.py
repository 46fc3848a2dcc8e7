from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..models import SubscriptionRecord


class SubscriptionRepository(Protocol):
    """Abstract document storage for subscription records.

    Filters map dotted document paths (or ``id``) to either a plain value
    for equality or an operator mapping using ``$lte``, ``$gte``, ``$lt``,
    ``$gt`` and ``$ne``. Sort keys are dotted paths, ``-`` prefixed for
    descending order.
    """

    def find(
        self,
        query: Optional[Mapping[str, Any]] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        sort: Optional[str] = None,
    ) -> List[SubscriptionRecord]:
        ...

    def find_by_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        ...

    def insert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        ...

    def update_by_id(
        self,
        subscription_id: str,
        changes: Dict[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> SubscriptionRecord:
        """Set top-level document fields of one record.

        ``expected`` is matched against the stored record in the same
        transaction; a mismatch raises ``ConflictError`` and writes nothing.
        """
        ...


class PersistenceGateway(SubscriptionRepository, Protocol):
    """Composite gateway combining every persistence concern used by the app."""

    def close(self) -> None:
        ...
