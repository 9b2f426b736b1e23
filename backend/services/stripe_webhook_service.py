"""Stripe Webhook Service - reconciles local subscription state with Stripe events.

Key Principles:
1. Idempotency: every event id is processed once (stripe_events ledger)
2. Signature verification: events must be signed when a secret is configured
3. Plan derivation: plan is derived from the subscription price ONLY
4. Acknowledge after dispatch: handler failures are recorded, never retried by Stripe

Events Handled:
- checkout.session.completed (first paid subscription)
- customer.subscription.created / customer.subscription.updated
- customer.subscription.deleted (replacement FREE subscription)
- invoice.payment_succeeded / invoice.paid
- invoice.payment_failed
- subscription_schedule.completed / subscription_schedule.released (deferred downgrades)
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from models import AuditAction, BillingSubscription, SubscriptionRecord, SubscriptionStatus
from services.addon_resolver import AddonResolver, cancel_addon_entries
from services.entitlement_sync import EntitlementSync
from services.errors import WebhookVerificationError
from services.plan_catalog import PlanCatalog
from services.subscription_repository import SubscriptionRepository
from services.subscription_service import SubscriptionService
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

EVENT_PROCESSING = "PROCESSING"
EVENT_PROCESSED = "PROCESSED"
EVENT_FAILED = "FAILED"


def _ref(value: Any) -> Optional[str]:
    """Expanded objects or bare ids."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _invoice_subscription_ref(invoice: Dict) -> Optional[str]:
    ref = _ref(invoice.get("subscription"))
    if ref:
        return ref
    # Newer API versions nest it under parent.subscription_details
    parent = invoice.get("parent") or {}
    return _ref((parent.get("subscription_details") or {}).get("subscription"))


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "user_id": metadata.get("user_id"),
        "customer": _ref(obj.get("customer")),
    }


class StripeWebhookReconciler:
    """Idempotent Stripe webhook handler."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway,
        resolver: AddonResolver,
        entitlements: EntitlementSync,
        catalog: PlanCatalog,
        subscriptions: SubscriptionService,
        db,
    ):
        self.repository = repository
        self.gateway = gateway
        self.resolver = resolver
        self.entitlements = entitlements
        self.catalog = catalog
        self.subscriptions = subscriptions
        self.db = db

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details). success is False only for payloads
            that could not be verified or parsed.
        """
        # Step 1: Verify signature
        try:
            event = self.gateway.verify_and_parse_webhook(payload, signature)
        except WebhookVerificationError as e:
            return False, e.message, {"error": e.message}

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s user_id=%s customer=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("user_id"), ctx.get("customer"),
        )

        # Step 2: Idempotency check
        existing = await self.db.stripe_events.find_one({"event_id": event_id})
        if existing and existing.get("status") == EVENT_PROCESSED:
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        # Step 3: Record event
        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc),
            "processed_at": None,
            "status": EVENT_PROCESSING,
            "error": None,
            "related_user_id": None,
            "related_subscription_id": None,
            "raw_minimal": self._extract_safe_data(event),
        }
        if existing:
            await self.db.stripe_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await self.db.stripe_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        # Step 4: Process event
        try:
            result = await self._handle_event(event)
            await self.db.stripe_events.update_one(
                {"event_id": event_id},
                {
                    "$set": {
                        "status": EVENT_PROCESSED,
                        "processed_at": datetime.now(timezone.utc),
                        "related_user_id": result.get("user_id"),
                        "related_subscription_id": result.get("subscription_id"),
                    }
                },
            )
            logger.info(
                "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s handled=%s",
                event_id, event_type, result.get("user_id"), result.get("handled"),
            )
            return True, "Processed", result

        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
                exc_info=True,
            )
            await self.db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {"status": EVENT_FAILED, "processed_at": datetime.now(timezone.utc), "error": str(e)}},
            )
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_id="SYSTEM",
                resource_type="stripe_event",
                resource_id=event_id,
                metadata={"event_type": event_type, "error": str(e)},
            )
            # Return 200 to prevent Stripe retries - the failure is on the ledger
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {}) or {}

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
            "subscription_schedule.completed": self._handle_schedule_finished,
            "subscription_schedule.released": self._handle_schedule_finished,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    def _snapshot(self, obj: Dict) -> BillingSubscription:
        return BillingSubscription.from_stripe(obj, self.catalog.plan_price_refs())

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """First paid subscription. Setup-mode sessions (payment method capture) are ignored."""
        mode = session.get("mode")
        if mode != "subscription":
            logger.info(f"Ignoring checkout mode: {mode}")
            return {"handled": False, "mode": mode}

        metadata = session.get("metadata") or {}
        subscription_ref = _ref(session.get("subscription"))
        customer_ref = _ref(session.get("customer"))
        if not subscription_ref:
            logger.warning("Checkout session %s completed without a subscription", session.get("id"))
            return {"handled": False, "reason": "no_subscription"}

        user_id = metadata.get("user_id")
        if not user_id:
            record = await self.repository.get_by_subscription_or_customer(subscription_ref, customer_ref)
            if record is None:
                logger.warning(
                    "Checkout session %s has no user_id and no matching record - dropped", session.get("id")
                )
                return {"handled": False, "reason": "unknown_user"}
            user_id = record.user_id

        snapshot = await self.gateway.get_subscription(subscription_ref)
        plan = self.catalog.plan_name_for_price(snapshot.price_ref)
        if not plan:
            # Unknown price: the paid plan cannot be derived, leave it on the ledger as FAILED
            raise ValueError(f"No plan configured for price {snapshot.price_ref}")

        def apply(rec: SubscriptionRecord) -> None:
            rec.apply_billing_snapshot(snapshot)
            rec.billing_customer_ref = customer_ref or rec.billing_customer_ref
            rec.plan_type = plan
            rec.pending_change = None
            rec.canceled_at = None

        record = await asyncio.shield(self.repository.upsert(
            user_id,
            create=lambda: SubscriptionRecord(
                user_id=user_id,
                username=metadata.get("username") or None,
                email=session.get("customer_email") or (session.get("customer_details") or {}).get("email"),
            ),
            apply=apply,
        ))
        logger.info("SUBSCRIPTION_ACTIVATED user_id=%s plan=%s subscription=%s", user_id, plan, subscription_ref)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CREATED,
            user_id=user_id,
            actor_id="STRIPE",
            metadata={"plan_type": plan, "billing_subscription_ref": subscription_ref, "source": "checkout"},
        )
        await self.entitlements.upsert(record)
        return {"handled": True, "user_id": user_id, "subscription_id": subscription_ref, "plan": plan}

    async def _handle_subscription_change(self, subscription: Dict, event: Dict) -> Dict:
        snapshot = self._snapshot(subscription)
        record = await self.repository.get_by_subscription_or_customer(snapshot.id, snapshot.customer)
        if record is None:
            logger.info("No local record for subscription %s - dropped", snapshot.id)
            return {"handled": False, "subscription_id": snapshot.id}

        status = SubscriptionStatus.from_processor(snapshot.status)
        if (
            record.billing_subscription_ref
            and record.billing_subscription_ref != snapshot.id
            and status == SubscriptionStatus.CANCELED
        ):
            # Late event for a subscription the record has already moved away from
            logger.info(
                "Ignoring update for superseded subscription %s (user_id=%s now on %s)",
                snapshot.id, record.user_id, record.billing_subscription_ref,
            )
            return {"handled": False, "user_id": record.user_id, "subscription_id": snapshot.id}

        before = {"plan_type": record.plan_type, "status": SubscriptionStatus(record.status).value}
        plan = self.catalog.plan_name_for_price(snapshot.price_ref) or record.plan_type
        removed = []
        if plan != record.plan_type:
            prune = await self.resolver.prune_incompatible(record, plan, persist=False)
            removed = prune.removed
        now = datetime.now(timezone.utc)

        def apply(rec: SubscriptionRecord) -> None:
            cancel_addon_entries(rec, removed, now)
            rec.apply_billing_snapshot(snapshot)
            rec.plan_type = plan
            rec.remap_addon_items(snapshot)
            if rec.pending_change and rec.pending_change.target_plan == plan:
                rec.pending_change = None

        await asyncio.shield(self.repository.save_with_retry(record, apply))
        after = {"plan_type": record.plan_type, "status": SubscriptionStatus(record.status).value}
        if before != after:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_RECONCILED,
                user_id=record.user_id,
                actor_id="STRIPE",
                before_state=before,
                after_state=after,
                metadata={"event_type": event.get("type"), "removed_addons": removed},
            )
        if record.is_active():
            await self.entitlements.update(record)
        return {"handled": True, "user_id": record.user_id, "subscription_id": snapshot.id, "plan": plan}

    async def _handle_subscription_deleted(self, subscription: Dict, event: Dict) -> Dict:
        subscription_ref = subscription.get("id")
        # No customer fallback: the record may already be on a newer subscription
        record = await self.repository.get_by_subscription_ref(subscription_ref)
        if record is None:
            logger.info("No local record for deleted subscription %s - dropped", subscription_ref)
            return {"handled": False, "subscription_id": subscription_ref}

        replaced = await self.subscriptions.replace_with_free(record)
        logger.info(
            "SUBSCRIPTION_DELETED user_id=%s subscription=%s replaced_with_free=%s",
            record.user_id, subscription_ref, replaced,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELED,
            user_id=record.user_id,
            actor_id="STRIPE",
            metadata={"billing_subscription_ref": subscription_ref, "replaced_with_free": replaced},
        )
        return {
            "handled": True,
            "user_id": record.user_id,
            "subscription_id": subscription_ref,
            "replaced_with_free": replaced,
        }

    async def _set_status_from_invoice(self, invoice: Dict, status: SubscriptionStatus) -> Dict:
        subscription_ref = _invoice_subscription_ref(invoice)
        record = await self.repository.get_by_subscription_ref(subscription_ref)
        if record is None:
            logger.info("Invoice %s for unknown subscription %s - dropped", invoice.get("id"), subscription_ref)
            return {"handled": False, "subscription_id": subscription_ref}

        if record.status != status:
            previous = SubscriptionStatus(record.status).value

            def apply(rec: SubscriptionRecord) -> None:
                rec.status = status

            await self.repository.save_with_retry(record, apply)
            logger.info(
                "SUBSCRIPTION_STATUS_CHANGED user_id=%s %s -> %s (invoice %s)",
                record.user_id, previous, status.value, invoice.get("id"),
            )
        return {"handled": True, "user_id": record.user_id, "subscription_id": subscription_ref}

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        """Self-heal: a paid invoice means the subscription is active."""
        return await self._set_status_from_invoice(invoice, SubscriptionStatus.ACTIVE)

    async def _handle_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        return await self._set_status_from_invoice(invoice, SubscriptionStatus.PAST_DUE)

    async def _handle_schedule_finished(self, schedule: Dict, event: Dict) -> Dict:
        """A deferred change took effect (completed) or the schedule let go of the subscription (released)."""
        subscription_ref = _ref(schedule.get("subscription")) or _ref(schedule.get("released_subscription"))
        record = await self.repository.get_by_subscription_ref(subscription_ref)
        if record is None:
            logger.info("Schedule %s for unknown subscription %s - dropped", schedule.get("id"), subscription_ref)
            return {"handled": False, "subscription_id": subscription_ref}

        schedule_id = schedule.get("id")
        pending = record.pending_change
        if pending and pending.schedule_ref and pending.schedule_ref != schedule_id:
            # A schedule this record already replaced; the current one is still live at Stripe
            logger.info(
                "Ignoring %s for replaced schedule %s (user_id=%s pending schedule %s)",
                event.get("type"), schedule_id, record.user_id, pending.schedule_ref,
            )
            return {"handled": False, "user_id": record.user_id, "subscription_id": subscription_ref}

        snapshot = await self.gateway.get_subscription(subscription_ref)
        from_plan = record.plan_type
        plan = self.catalog.plan_name_for_price(snapshot.price_ref) or from_plan
        prune = await self.resolver.prune_incompatible(record, plan, persist=False)
        now = datetime.now(timezone.utc)

        def apply(rec: SubscriptionRecord) -> None:
            cancel_addon_entries(rec, prune.removed, now)
            rec.apply_billing_snapshot(snapshot)
            rec.plan_type = plan
            rec.remap_addon_items(snapshot)
            rec.pending_change = None

        await asyncio.shield(self.repository.save_with_retry(record, apply))
        if plan != from_plan:
            logger.info("PLAN_DOWNGRADE_APPLIED user_id=%s %s -> %s", record.user_id, from_plan, plan)
            await create_audit_log(
                action=AuditAction.PLAN_DOWNGRADE_APPLIED,
                user_id=record.user_id,
                actor_id="STRIPE",
                before_state={"plan_type": from_plan},
                after_state={"plan_type": plan},
                metadata={"schedule_id": schedule_id, "removed_addons": prune.removed},
            )
        await self.entitlements.update(record)
        return {"handled": True, "user_id": record.user_id, "subscription_id": subscription_ref, "plan": plan}

    def _extract_safe_data(self, event: Dict) -> Dict:
        """Minimal, non-sensitive slice of the event for the ledger."""
        obj = event.get("data", {}).get("object", {}) or {}
        return {
            "object_id": obj.get("id"),
            "object_type": obj.get("object"),
            "customer": _ref(obj.get("customer")),
            "status": obj.get("status"),
            "livemode": event.get("livemode"),
        }
