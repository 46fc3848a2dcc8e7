from dataclasses import dataclass

from ..application.services.auth_service import AuthService
from ..application.services.order_conversion import OrderConversionService
from ..application.services.renewal_service import RenewalService
from ..application.services.save_service import SubscriptionSaveService
from ..application.services.subscription_service import SubscriptionService
from .config import Settings
from ..domain.ports.persistence import PersistenceGateway
from ..domain.ports.services import AgreementService, OrderService
from ..services.change_stream import ChangeStreamManager
from ..services.renewal_scheduler import RenewalScheduler


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    persistence: PersistenceGateway
    order_service: OrderService
    agreement_service: AgreementService
    stream_manager: ChangeStreamManager
    auth_service: AuthService
    save_service: SubscriptionSaveService
    subscription_service: SubscriptionService
    renewal_service: RenewalService
    order_conversion_service: OrderConversionService
    renewal_scheduler: RenewalScheduler
