from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .container import ApplicationContainer
from .logging import configure_logging
from ..application.services.auth_service import AuthService
from ..application.services.order_conversion import OrderConversionService
from ..application.services.renewal_service import RenewalService
from ..application.services.save_service import SubscriptionSaveService
from ..application.services.subscription_service import SubscriptionService
from ..domain.ports.services import AgreementService, OrderService
from ..infrastructure.clients.order_client import HttpOrderService
from ..infrastructure.clients.stripe_agreements import StripeAgreementService
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..presentation.api.routers import subscriptions as subscriptions_router
from ..presentation.websocket import routes as websocket_routes
from ..services.change_stream import ChangeStreamManager
from ..services.renewal_scheduler import RenewalScheduler, parse_run_at

logger = logging.getLogger(__name__)


def create_application(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(title="Recurring Billing Subscriptions", lifespan=_create_lifespan(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(subscriptions_router.router)
    app.include_router(websocket_routes.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: Optional[ApplicationContainer] = getattr(app.state, "container", None)
        if container is None:
            return {"ok": False}
        return {
            "ok": True,
            "scheduler_running": container.renewal_scheduler.is_running,
            "renewal_in_progress": container.renewal_service.is_running,
        }

    return app


def build_container(
    settings: Settings,
    *,
    order_service: Optional[OrderService] = None,
    agreement_service: Optional[AgreementService] = None,
) -> ApplicationContainer:
    """Wire persistence, external clients and services into one container."""
    persistence = SQLitePersistence(settings.database_path)
    if order_service is None:
        order_service = HttpOrderService(
            settings.order_service_url,
            token=settings.order_service_token,
            timeout=settings.order_service_timeout,
        )
    if agreement_service is None:
        agreement_service = StripeAgreementService(settings.stripe_secret_key)

    stream_manager = ChangeStreamManager()
    save_service = SubscriptionSaveService(persistence, stream_manager)
    renewal_service = RenewalService(persistence, save_service, order_service)
    return ApplicationContainer(
        settings=settings,
        persistence=persistence,
        order_service=order_service,
        agreement_service=agreement_service,
        stream_manager=stream_manager,
        auth_service=AuthService(settings.auth_token_secret),
        save_service=save_service,
        subscription_service=SubscriptionService(persistence, save_service, agreement_service),
        renewal_service=renewal_service,
        order_conversion_service=OrderConversionService(save_service, order_service),
        renewal_scheduler=RenewalScheduler(renewal_service, parse_run_at(settings.renewal_run_at)),
    )


async def close_container(container: ApplicationContainer) -> None:
    await container.renewal_scheduler.stop()
    close = getattr(container.order_service, "close", None)
    if close is not None:
        await close()
    container.persistence.close()


def _create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        container = build_container(settings)
        app.state.container = container  # type: ignore[attr-defined]

        if settings.renewal_scheduler_enabled:
            await container.renewal_scheduler.start()
        else:
            logger.info("Renewal scheduler disabled; renewals run only on demand.")

        try:
            yield
        finally:
            await close_container(container)

    return lifespan
