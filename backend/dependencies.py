"""Process-wide service graph, built once in the app lifespan and read by routes."""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request

from auth import internal_key_matches
from config import Settings
from services.addon_resolver import AddonResolver
from services.entitlement_sync import EntitlementSync
from services.errors import SubscriptionError
from services.plan_catalog import PlanCatalog
from services.plan_change_orchestrator import PlanChangeOrchestrator
from services.stripe_webhook_service import StripeWebhookReconciler
from services.subscription_repository import SubscriptionRepository
from services.subscription_service import SubscriptionService
from services.user_deletion_handler import UserDeletionHandler


@dataclass
class BillingServices:
    settings: Settings
    catalog: PlanCatalog
    repository: SubscriptionRepository
    entitlements: EntitlementSync
    resolver: AddonResolver
    orchestrator: PlanChangeOrchestrator
    subscriptions: SubscriptionService
    reconciler: StripeWebhookReconciler
    user_events: UserDeletionHandler


def build_services(settings: Settings, db, gateway, entitlement_client, catalog: PlanCatalog) -> BillingServices:
    """Wire every service against one db handle and one pair of gateways."""
    repository = SubscriptionRepository(db)
    entitlements = EntitlementSync(db, entitlement_client)
    resolver = AddonResolver(repository, gateway, entitlements, catalog, settings.frontend_url)
    orchestrator = PlanChangeOrchestrator(repository, gateway, resolver, entitlements, catalog, settings.frontend_url)
    subscriptions = SubscriptionService(repository, gateway, entitlements, catalog, settings.frontend_url)
    reconciler = StripeWebhookReconciler(repository, gateway, resolver, entitlements, catalog, subscriptions, db)
    user_events = UserDeletionHandler(repository, gateway, entitlements, db)
    return BillingServices(
        settings=settings,
        catalog=catalog,
        repository=repository,
        entitlements=entitlements,
        resolver=resolver,
        orchestrator=orchestrator,
        subscriptions=subscriptions,
        reconciler=reconciler,
        user_events=user_events,
    )


def get_services(request: Request) -> BillingServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise SubscriptionError("Service is starting up", error_code="SERVICE_UNAVAILABLE", status_code=503)
    return services


async def require_internal_key(
    x_internal_api_key: Optional[str] = Header(None, alias="x-internal-api-key"),
    services: BillingServices = Depends(get_services),
) -> None:
    """Service-to-service routes (e.g. user registration provisioning FREE)."""
    if not internal_key_matches(x_internal_api_key, services.settings.internal_api_key):
        raise SubscriptionError("Invalid internal API key", error_code="INVALID_INTERNAL_KEY", status_code=401)
