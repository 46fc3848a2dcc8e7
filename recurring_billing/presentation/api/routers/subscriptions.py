from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder

from ....application.services.order_conversion import OrderConversionService
from ....application.services.renewal_service import RenewalService
from ....application.services.subscription_service import SubscriptionService
from ....core.dependencies import (
    get_order_conversion_service,
    get_renewal_service,
    get_subscription_service,
)
from ....domain.errors import (
    ConflictError,
    ExternalCallError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    SubscriptionError,
    ValidationError,
)
from ....domain.models import (
    BillingPeriod,
    OperationResult,
    RenewalBatchResult,
    RenewalOutcome,
    SubscriptionRecord,
    User,
    new_history_event,
)
from ....domain.timestamps import to_datetime
from ...api.dependencies import require_admin_user, require_user
from ...api.schemas.subscription_schemas import (
    ImportSubscriptionsRequest,
    OrderConversionRequest,
    RenewalRunRequest,
    UpdateSubscriptionRequest,
)

router = APIRouter(prefix="/api/subscriptions", tags=["Subscriptions"])


@router.get("")
async def list_subscriptions(
    query: Optional[str] = Query(default=None, description="JSON filter on document paths"),
    limit: int = Query(default=SubscriptionService.MAX_LIST_LIMIT, ge=1),
    offset: int = Query(default=0, ge=0),
    sort: Optional[str] = Query(default=None),
    full_data: bool = Query(default=False),
    user: User = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    if query:
        try:
            filters = json.loads(query)
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid query parameter.") from exc
        if not isinstance(filters, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Query must be a JSON object.")

    items = service.list_subscriptions(
        user, query=filters, limit=limit, offset=offset, sort=sort, full_data=full_data
    )
    if items is None:
        items = []
    return {"items": [_serialize_subscription(item) for item in items], "count": len(items)}


@router.get("/cycles/next-date")
async def next_order_date(
    period: BillingPeriod = Query(...),
    duration: float = Query(..., gt=0),
    start: Optional[str] = Query(default=None),
) -> Dict[str, Any]:
    try:
        start_dt = to_datetime(start) if start else None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid start parameter.") from exc
    result = SubscriptionService.next_order_date(period.value, duration, start_dt)
    return {"period": period.value, "duration": duration, "date_order_next": result.isoformat()}


@router.post("/from-order", status_code=status.HTTP_201_CREATED)
async def convert_order(
    payload: OrderConversionRequest,
    request: Request,
    user: User = Depends(require_user),
    service: OrderConversionService = Depends(get_order_conversion_service),
) -> Dict[str, Any]:
    order_user = (payload.order.get("user") or {}).get("id")
    if not user.is_admin and str(order_user) != str(user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")
    try:
        created = await service.convert(payload.order, _remote_address(request))
    except SubscriptionError as exc:
        raise _to_http_error(exc) from exc
    return {"items": [_serialize_subscription(item) for item in created], "count": len(created)}


@router.post("/import")
async def import_subscriptions(
    payload: ImportSubscriptionsRequest,
    user: User = Depends(require_admin_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> Dict[str, Any]:
    try:
        results = await service.import_subscriptions(user, payload.subscriptions)
    except PermissionDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    items = [_serialize_result(item) for item in results]
    return {"items": items, "count": len(items)}


@router.post("/renewals/run")
async def run_renewals(
    payload: Optional[RenewalRunRequest] = None,
    _: User = Depends(require_admin_user),
    service: RenewalService = Depends(get_renewal_service),
) -> Dict[str, Any]:
    today = None
    if payload and payload.today:
        try:
            today = to_datetime(payload.today)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid date.") from exc
    result = await service.run(today)
    return _serialize_batch(result)


@router.get("/{subscription_id}")
async def get_subscription(
    subscription_id: str,
    user: User = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> Dict[str, Any]:
    subscription = service.get_subscription(user, subscription_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found.")
    return _serialize_subscription(subscription)


@router.patch("/{subscription_id}")
async def update_subscription(
    subscription_id: str,
    payload: UpdateSubscriptionRequest,
    _: User = Depends(require_admin_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> Dict[str, Any]:
    event = None
    if payload.event is not None:
        event = new_history_event(payload.event.action, payload.event.type, payload.event.data)
    result = await service.update_subscription(subscription_id, payload.changes, event)
    if not result.success and result.subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found.")
    return _serialize_result(result)


@router.post("/{subscription_id}/suspend")
async def suspend_subscription(
    subscription_id: str,
    user: User = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> Dict[str, Any]:
    return _serialize_result(await service.suspend(user, subscription_id))


@router.post("/{subscription_id}/reactivate")
async def reactivate_subscription(
    subscription_id: str,
    user: User = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> Dict[str, Any]:
    return _serialize_result(await service.reactivate(user, subscription_id))


def _to_http_error(exc: SubscriptionError) -> HTTPException:
    if isinstance(exc, (ValidationError, InvalidTransitionError)):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, PermissionDeniedError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ExternalCallError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))


def _remote_address(request: Request) -> Optional[str]:
    if request.client is None:
        return None
    return f"{request.client.host}:{request.client.port}"


def _serialize_subscription(record: SubscriptionRecord) -> Dict[str, Any]:
    return jsonable_encoder(record.to_document())


def _serialize_result(result: OperationResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "error": result.error,
        "agreement": jsonable_encoder(result.agreement),
        "subscription": _serialize_subscription(result.subscription) if result.subscription else None,
    }


def _serialize_outcome(outcome: RenewalOutcome) -> Dict[str, Any]:
    return {
        "subscription_id": outcome.subscription_id,
        "success": outcome.success,
        "order_id": outcome.order_id,
        "error": outcome.error,
        "status": outcome.subscription.status if outcome.subscription else None,
    }


def _serialize_batch(result: RenewalBatchResult) -> Dict[str, Any]:
    items: List[Dict[str, Any]] = [_serialize_outcome(item) for item in result.outcomes]
    return {
        "run_at": result.run_at.isoformat(),
        "processed": result.processed,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "finished": result.finished,
        "items": items,
        "count": len(items),
    }
