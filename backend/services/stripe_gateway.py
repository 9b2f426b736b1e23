"""Stripe Gateway - the payment processor contract used by the lifecycle services.

This gateway handles:
- Customers and payment methods (default method detection / promotion)
- Checkout and setup sessions
- Subscriptions: create, retrieve, price change, deferred (scheduled) change, cancel
- Subscription items for add-ons
- Webhook signature verification

Key Principles:
- One instance per process, created in the app lifespan (open/close), passed by reference
- Returns plain snapshots (BillingSubscription, SetupSession, CheckoutSession), never SDK objects
- Stripe failures are raised as BillingProviderError; callers decide whether they are fatal
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import stripe

from config import DUMMY_WEBHOOK_SECRETS
from models import BillingSubscription, CheckoutSession, SetupSession
from services.errors import BillingProviderError, WebhookVerificationError
from services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

# Stripe-level proration behaviours
PRORATION_CREATE = "create_prorations"
PRORATION_NONE = "none"
PRORATION_ALWAYS_INVOICE = "always_invoice"


def _to_unix(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value else None


class StripeGateway:
    """Stripe billing operations behind an explicit open/close lifecycle."""

    def __init__(self, api_key: str, catalog: PlanCatalog, webhook_secret: str = ""):
        self._api_key = (api_key or "").strip()
        self._webhook_secret = (webhook_secret or "").strip()
        self.catalog = catalog
        self._client: Optional[stripe.StripeClient] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def open(self) -> None:
        if not self._api_key:
            logger.error("STRIPE_SECRET_KEY / STRIPE_API_KEY is not set. Billing calls will fail.")
            return
        self._client = stripe.StripeClient(self._api_key, max_network_retries=2)
        mode = "test" if self._api_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", mode)

    def close(self) -> None:
        self._client = None
        logger.info("Stripe gateway closed")

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            raise BillingProviderError("Stripe gateway is not configured", operation="client")
        return self._client

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking SDK call off the event loop, normalizing Stripe errors."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            logger.error("STRIPE_CALL_FAILED operation=%s error=%s", operation, e.user_message or str(e))
            raise BillingProviderError(
                e.user_message or str(e),
                operation=operation,
                details={"code": getattr(e, "code", None)},
            ) from e

    def _snapshot(self, obj: Any) -> BillingSubscription:
        return BillingSubscription.from_stripe(obj, self.catalog.plan_price_refs())

    # =========================================================================
    # Customers & payment methods
    # =========================================================================

    async def get_or_create_customer(self, email: Optional[str], metadata: Optional[Dict[str, str]] = None) -> str:
        if email:
            existing = await self._call(
                "customers.list", self.client.customers.list, params={"email": email, "limit": 1}
            )
            if existing.data:
                logger.info("Found existing Stripe customer %s", existing.data[0].id)
                return existing.data[0].id

        params: Dict[str, Any] = {"metadata": metadata or {}}
        if email:
            params["email"] = email
        customer = await self._call("customers.create", self.client.customers.create, params=params)
        logger.info("Created Stripe customer %s", customer.id)
        return customer.id

    async def has_chargeable_method(self, customer_ref: str) -> bool:
        customer = await self._call(
            "customers.retrieve",
            self.client.customers.retrieve,
            customer_ref,
            params={"expand": ["invoice_settings.default_payment_method"]},
        )
        invoice_settings = customer.get("invoice_settings") or {}
        return bool(
            customer.get("default_payment_method")
            or invoice_settings.get("default_payment_method")
            or customer.get("default_source")
        )

    async def list_attachable_methods(self, customer_ref: str) -> List[str]:
        methods = await self._call(
            "payment_methods.list",
            self.client.payment_methods.list,
            params={"customer": customer_ref, "type": "card", "limit": 10},
        )
        return [m.id for m in methods.data]

    async def set_default_method(self, customer_ref: str, method_ref: str) -> None:
        await self._call(
            "customers.update",
            self.client.customers.update,
            customer_ref,
            params={"invoice_settings": {"default_payment_method": method_ref}},
        )
        logger.info("Default payment method %s set for customer %s", method_ref, customer_ref)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_checkout_session(
        self,
        customer_ref: str,
        price_ref: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        session = await self._call(
            "checkout.sessions.create",
            self.client.checkout.sessions.create,
            params={
                "mode": "subscription",
                "customer": customer_ref,
                "line_items": [{"price": price_ref, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
            },
        )
        return CheckoutSession(id=session.id, url=session.get("url"))

    async def create_setup_session(
        self,
        customer_ref: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> SetupSession:
        session = await self._call(
            "checkout.sessions.create",
            self.client.checkout.sessions.create,
            params={
                "mode": "setup",
                "customer": customer_ref,
                "payment_method_types": ["card"],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
            },
        )
        return SetupSession(
            id=session.id,
            url=session.get("url"),
            status=session.get("status"),
            customer=customer_ref,
            metadata=dict(session.get("metadata") or metadata),
        )

    async def get_setup_session(self, session_ref: str) -> SetupSession:
        session = await self._call(
            "checkout.sessions.retrieve",
            self.client.checkout.sessions.retrieve,
            session_ref,
            params={"expand": ["setup_intent"]},
        )
        setup_intent = session.get("setup_intent") or {}
        payment_method = setup_intent.get("payment_method") if hasattr(setup_intent, "get") else None
        if hasattr(payment_method, "get"):
            payment_method = payment_method.get("id")
        customer = session.get("customer")
        if hasattr(customer, "get"):
            customer = customer.get("id")
        return SetupSession(
            id=session.id,
            url=session.get("url"),
            status=session.get("status"),
            customer=customer,
            payment_method_ref=payment_method,
            metadata=dict(session.get("metadata") or {}),
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def create_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        metadata: Optional[Dict[str, str]] = None,
        addon_price_refs: Optional[List[str]] = None,
    ) -> BillingSubscription:
        items = [{"price": price_ref}] + [{"price": p} for p in (addon_price_refs or [])]
        subscription = await self._call(
            "subscriptions.create",
            self.client.subscriptions.create,
            params={
                "customer": customer_ref,
                "items": items,
                "payment_behavior": "error_if_incomplete",
                "proration_behavior": PRORATION_NONE,
                "metadata": metadata or {},
            },
        )
        logger.info("Created Stripe subscription %s for customer %s", subscription.id, customer_ref)
        return self._snapshot(subscription)

    async def get_subscription(self, subscription_ref: str) -> BillingSubscription:
        subscription = await self._call(
            "subscriptions.retrieve", self.client.subscriptions.retrieve, subscription_ref
        )
        return self._snapshot(subscription)

    async def update_subscription_price(
        self,
        subscription_ref: str,
        new_price_ref: str,
        proration_mode: str,
    ) -> BillingSubscription:
        current = await self.get_subscription(subscription_ref)
        if not current.item_ref:
            raise BillingProviderError(
                f"Subscription {subscription_ref} has no plan item", operation="subscriptions.update"
            )
        params: Dict[str, Any] = {
            "items": [{"id": current.item_ref, "price": new_price_ref}],
            "proration_behavior": proration_mode,
        }
        if proration_mode == PRORATION_ALWAYS_INVOICE:
            # Charge the difference now; a declined card fails the change instead of leaving it incomplete
            params["payment_behavior"] = "error_if_incomplete"
        updated = await self._call(
            "subscriptions.update", self.client.subscriptions.update, subscription_ref, params=params
        )
        logger.info(
            "Subscription %s price changed to %s (proration=%s)", subscription_ref, new_price_ref, proration_mode
        )
        return self._snapshot(updated)

    async def schedule_deferred_price_change(
        self,
        subscription_ref: str,
        new_price_ref: str,
        effective_at: Optional[datetime] = None,
    ) -> str:
        """Two-phase schedule: keep the current price until period end, then the new price once, then release."""
        schedule = await self._call(
            "subscription_schedules.create",
            self.client.subscription_schedules.create,
            params={"from_subscription": subscription_ref},
        )
        current_phase = schedule["phases"][0]
        plan_prices = self.catalog.plan_price_refs()
        current_items = []
        carried_items = []
        for item in current_phase["items"]:
            price = item["price"]
            price_id = price.get("id") if hasattr(price, "get") else price
            entry = {"price": price_id, "quantity": item.get("quantity") or 1}
            current_items.append(entry)
            if price_id not in plan_prices:
                carried_items.append(entry)
        end_date = _to_unix(effective_at) or current_phase["end_date"]
        await self._call(
            "subscription_schedules.update",
            self.client.subscription_schedules.update,
            schedule.id,
            params={
                "end_behavior": "release",
                "phases": [
                    {
                        "items": current_items,
                        "start_date": current_phase["start_date"],
                        "end_date": end_date,
                    },
                    {
                        "items": [{"price": new_price_ref, "quantity": 1}] + carried_items,
                        "iterations": 1,
                        "proration_behavior": PRORATION_NONE,
                    },
                ],
            },
        )
        logger.info(
            "Deferred price change scheduled subscription=%s schedule=%s new_price=%s",
            subscription_ref, schedule.id, new_price_ref,
        )
        return schedule.id

    async def release_schedule(self, schedule_ref: str) -> None:
        await self._call(
            "subscription_schedules.release", self.client.subscription_schedules.release, schedule_ref
        )
        logger.info("Subscription schedule %s released", schedule_ref)

    async def cancel_subscription(self, subscription_ref: str, at_period_end: bool = True) -> BillingSubscription:
        if at_period_end:
            subscription = await self._call(
                "subscriptions.update",
                self.client.subscriptions.update,
                subscription_ref,
                params={"cancel_at_period_end": True},
            )
        else:
            subscription = await self._call(
                "subscriptions.cancel", self.client.subscriptions.cancel, subscription_ref
            )
        logger.info("Subscription %s canceled (at_period_end=%s)", subscription_ref, at_period_end)
        return self._snapshot(subscription)

    # =========================================================================
    # Subscription items (add-ons)
    # =========================================================================

    async def add_subscription_item(
        self,
        subscription_ref: str,
        price_ref: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        item = await self._call(
            "subscription_items.create",
            self.client.subscription_items.create,
            params={
                "subscription": subscription_ref,
                "price": price_ref,
                "quantity": 1,
                "proration_behavior": PRORATION_ALWAYS_INVOICE,
                "payment_behavior": "error_if_incomplete",
                "metadata": metadata or {},
            },
        )
        return item.id

    async def remove_subscription_item(self, item_ref: str) -> None:
        await self._call(
            "subscription_items.delete",
            self.client.subscription_items.delete,
            item_ref,
            params={"proration_behavior": PRORATION_CREATE},
        )

    # =========================================================================
    # Catalog lookups
    # =========================================================================

    def price_ref_for_plan(self, plan_name: str) -> Optional[str]:
        return self.catalog.price_ref_for_plan(plan_name)

    def plan_name_for_price(self, price_ref: Optional[str]) -> Optional[str]:
        return self.catalog.plan_name_for_price(price_ref)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_and_parse_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event as a plain dict.

        Without a configured (non-placeholder) secret the payload is parsed
        unverified; development only.
        """
        secret = (secret if secret is not None else self._webhook_secret).strip()
        try:
            if secret and not secret.startswith(DUMMY_WEBHOOK_SECRETS):
                stripe.Webhook.construct_event(payload, signature or "", secret)
            else:
                logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            raise WebhookVerificationError("Invalid signature") from e
        except ValueError as e:
            logger.error("Webhook parse error: %s", e)
            raise WebhookVerificationError("Invalid payload") from e
        if not isinstance(event, dict) or not event.get("type"):
            raise WebhookVerificationError("Invalid payload")
        return event
