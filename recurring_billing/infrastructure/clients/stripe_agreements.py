"""Stripe integration for billing agreement suspension."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import stripe

from ...domain.errors import ExternalCallError, NotFoundError

logger = logging.getLogger(__name__)


class StripeAgreementService:
    """Pauses and resumes collection on the Stripe subscription behind an agreement."""

    def __init__(self, secret_key: Optional[str] = None) -> None:
        if secret_key:
            stripe.api_key = secret_key
        else:
            logger.warning("STRIPE_SECRET_KEY not configured; agreement calls will fail.")

    async def suspend_agreement(self, agreement_id: str) -> Dict[str, Any]:
        """
        Pause collection on a Stripe subscription.

        Args:
            agreement_id: Stripe subscription ID stored in the 'paid' history event

        Returns:
            Summary of the updated Stripe subscription

        Raises:
            NotFoundError: Stripe does not know the subscription
            ExternalCallError: Any other Stripe API failure
        """
        return await self._modify(
            "suspend_agreement", agreement_id, pause_collection={"behavior": "void"}
        )

    async def reactivate_agreement(self, agreement_id: str) -> Dict[str, Any]:
        return await self._modify("reactivate_agreement", agreement_id, pause_collection="")

    async def _modify(self, operation: str, agreement_id: str, **changes: Any) -> Dict[str, Any]:
        try:
            result = await asyncio.to_thread(stripe.Subscription.modify, agreement_id, **changes)
        except stripe.error.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                raise NotFoundError(f"Billing agreement {agreement_id} not found") from exc
            raise ExternalCallError(operation, str(exc)) from exc
        except stripe.error.StripeError as exc:
            logger.error("Stripe %s failed for %s: %s", operation, agreement_id, exc)
            raise ExternalCallError(operation, str(exc)) from exc

        logger.info("Stripe %s succeeded for %s", operation, agreement_id)
        return {
            "id": result["id"],
            "status": result["status"],
            "pause_collection": result.get("pause_collection"),
        }
