"""HTTP client for the order management service."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from fastapi.encoders import jsonable_encoder

from ...domain.errors import ExternalCallError

logger = logging.getLogger(__name__)


class HttpOrderService:
    """Creates renewal orders and writes subscription links back to orders."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("create_order", "POST", "/orders", order)

    async def update_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        order_id = order.get("id")
        if not order_id:
            raise ExternalCallError("update_order", "order has no id")
        return await self._request("update_order", "PUT", f"/orders/{order_id}", order)

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=jsonable_encoder(payload))
        except httpx.TimeoutException as exc:
            logger.error("Order service %s timed out: %s", operation, exc)
            raise ExternalCallError(operation, "request timed out") from exc
        except httpx.RequestError as exc:
            logger.error("Order service %s failed: %s", operation, exc)
            raise ExternalCallError(operation, str(exc)) from exc

        if response.status_code >= 400:
            detail = response.text
            try:
                detail = response.json().get("detail", detail)
            except (ValueError, AttributeError):
                pass
            logger.error("Order service %s returned %s: %s", operation, response.status_code, detail)
            raise ExternalCallError(operation, f"HTTP {response.status_code}: {detail}")

        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalCallError(operation, "response is not JSON") from exc
        if not isinstance(body, dict):
            raise ExternalCallError(operation, "response is not an object")
        return body
