from __future__ import annotations

from typing import Any, Dict, Protocol

from ..models import SubscriptionRecord


class OrderService(Protocol):
    """Order management collaborator used for renewals and order linkage."""

    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        ...


class AgreementService(Protocol):
    """Payment provider handle for recurring charge authorizations."""

    async def suspend_agreement(self, agreement_id: str) -> Dict[str, Any]:
        ...

    async def reactivate_agreement(self, agreement_id: str) -> Dict[str, Any]:
        ...


class ChangeNotifier(Protocol):
    """Receives ``created`` and ``updated`` events after every save."""

    async def publish(self, kind: str, record: SubscriptionRecord) -> None:
        ...
