"""Subscription Service - entry points that create, read and end a subscription.

This service handles:
- Checkout session creation for a first paid plan
- Zero-cost (FREE) provisioning for new users
- User-initiated cancellation (immediately or at period end)
- Status reads, re-synced from Stripe when the processor disagrees

Plan changes live in PlanChangeOrchestrator; add-ons in AddonResolver.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from models import AuditAction, SubscriptionRecord, SubscriptionStatus
from services.addon_resolver import cancel_addon_entries
from services.entitlement_sync import EntitlementSync
from services.errors import BillingProviderError, Conflict, NotFound, SubscriptionError, ValidationFailed
from services.plan_catalog import PlanCatalog
from services.subscription_repository import SubscriptionRepository
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class SubscriptionService:
    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway,
        entitlements: EntitlementSync,
        catalog: PlanCatalog,
        frontend_url: str = "http://localhost:5173",
    ):
        self.repository = repository
        self.gateway = gateway
        self.entitlements = entitlements
        self.catalog = catalog
        self.frontend_url = frontend_url.rstrip("/")

    def _price_for(self, plan: str) -> str:
        price_ref = self.catalog.price_ref_for_plan(plan)
        if not price_ref:
            raise SubscriptionError(
                f"Plan {plan} has no price configured", error_code="PLAN_NOT_CONFIGURED", status_code=500
            )
        return price_ref

    async def _require_record(self, user_id: str) -> SubscriptionRecord:
        record = await self.repository.get_by_user(user_id)
        if record is None:
            raise NotFound("No subscription found for this user", error_code="SUBSCRIPTION_NOT_FOUND")
        return record

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_checkout_session(
        self,
        user_id: str,
        username: Optional[str],
        email: Optional[str],
        plan_type: str,
    ) -> Dict[str, Any]:
        """Start a Stripe checkout. The plan is set later from the paid price (webhook)."""
        if not self.catalog.is_valid_plan(plan_type):
            raise ValidationFailed(
                f"Invalid plan: {plan_type}",
                error_code="INVALID_PLAN",
                details={"validPlans": self.catalog.plan_names()},
            )
        price_ref = self._price_for(plan_type)

        existing = await self.repository.get_by_user(user_id)
        if existing and existing.is_active():
            raise Conflict(
                "User already has an active subscription. Use plan change instead.",
                error_code="SUBSCRIPTION_ALREADY_EXISTS",
                details={"planType": existing.plan_type, "status": SubscriptionStatus(existing.status).value},
            )

        customer_ref = existing.billing_customer_ref if existing else None
        if not customer_ref:
            customer_ref = await self.gateway.get_or_create_customer(
                email, {"user_id": user_id, "username": username or ""}
            )

        session = await self.gateway.create_checkout_session(
            customer_ref,
            price_ref,
            success_url=f"{self.frontend_url}/pricing?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.frontend_url}/pricing?canceled=true",
            metadata={"user_id": user_id, "username": username or "", "plan_type": plan_type},
        )

        def apply(rec: SubscriptionRecord) -> None:
            rec.billing_customer_ref = customer_ref
            rec.status = SubscriptionStatus.INCOMPLETE

        await asyncio.shield(self.repository.upsert(
            user_id,
            create=lambda: SubscriptionRecord(user_id=user_id, username=username, email=email),
            apply=apply,
        ))
        logger.info("CHECKOUT_STARTED user_id=%s plan=%s session=%s", user_id, plan_type, session.id)
        await create_audit_log(
            action=AuditAction.CHECKOUT_STARTED,
            user_id=user_id,
            metadata={"plan_type": plan_type, "checkout_session_id": session.id},
        )
        return {"sessionId": session.id, "url": session.url}

    # =========================================================================
    # Zero-cost provisioning
    # =========================================================================

    async def provision_free_subscription(
        self,
        user_id: str,
        username: Optional[str],
        email: Optional[str],
    ) -> SubscriptionRecord:
        """Give a new user a FREE subscription and contract. Idempotent per user."""
        existing = await self.repository.get_by_user(user_id)
        if existing and existing.billing_subscription_ref:
            logger.info("Free provisioning skipped, user_id=%s already has a subscription", user_id)
            return existing

        free_plan = self.catalog.free_plan
        price_ref = self._price_for(free_plan)
        customer_ref = existing.billing_customer_ref if existing else None
        if not customer_ref:
            customer_ref = await self.gateway.get_or_create_customer(
                email, {"user_id": user_id, "username": username or ""}
            )
        snapshot = await self.gateway.create_subscription(
            customer_ref,
            price_ref,
            metadata={"user_id": user_id, "username": username or "", "plan_type": free_plan},
        )

        def apply(rec: SubscriptionRecord) -> None:
            rec.apply_billing_snapshot(snapshot)
            rec.billing_customer_ref = customer_ref
            rec.plan_type = free_plan

        record = await asyncio.shield(self.repository.upsert(
            user_id,
            create=lambda: SubscriptionRecord(user_id=user_id, username=username, email=email),
            apply=apply,
        ))
        logger.info("FREE_SUBSCRIPTION_PROVISIONED user_id=%s subscription=%s", user_id, snapshot.id)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CREATED,
            user_id=user_id,
            metadata={"plan_type": free_plan, "billing_subscription_ref": snapshot.id},
        )
        await self.entitlements.upsert(record)
        return record

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel_subscription(self, user_id: str, immediate: bool = False) -> Dict[str, Any]:
        """Cancel at period end (default) or now.

        An immediate cancel moves the user onto a fresh FREE subscription; if
        that cannot be created the record stays canceled.
        """
        record = await self._require_record(user_id)
        if not record.billing_subscription_ref:
            raise ValidationFailed(
                "User does not have a billing subscription", error_code="NO_BILLING_SUBSCRIPTION"
            )
        if record.status == SubscriptionStatus.CANCELED:
            raise Conflict("Subscription is already canceled", error_code="SUBSCRIPTION_ALREADY_CANCELED")

        if not immediate:
            snapshot = await self.gateway.cancel_subscription(record.billing_subscription_ref, at_period_end=True)

            def mark_period_end(rec: SubscriptionRecord) -> None:
                rec.cancel_at_period_end = True
                if snapshot.current_period_end:
                    rec.current_period_end = snapshot.current_period_end

            await asyncio.shield(self.repository.save_with_retry(record, mark_period_end))
        else:
            await self.gateway.cancel_subscription(record.billing_subscription_ref, at_period_end=False)
            await self.replace_with_free(record)

        logger.info("SUBSCRIPTION_CANCELED user_id=%s immediate=%s status=%s", user_id, immediate, record.status)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELED,
            user_id=user_id,
            metadata={"immediate": immediate, "status": SubscriptionStatus(record.status).value},
        )
        return {"immediate": immediate, "subscription": record.to_public()}

    async def replace_with_free(self, record: SubscriptionRecord) -> bool:
        """Move the record onto a new FREE subscription after its billing subscription ended.

        Add-on items died with the old subscription, so every add-on is canceled.
        Without a replacement the record is left canceled. The entitlement is
        downgraded to free either way. Returns whether a replacement was created.
        """
        free_plan = self.catalog.free_plan
        replacement = None
        try:
            replacement = await self.gateway.create_subscription(
                record.billing_customer_ref,
                self._price_for(free_plan),
                metadata={"user_id": record.user_id, "username": record.username or "", "plan_type": free_plan},
            )
        except SubscriptionError as e:
            logger.error("FREE_REPLACEMENT_FAILED user_id=%s error=%s", record.user_id, e)

        # Add-on items lived on the canceled subscription
        canceled_addons = record.active_addon_names()
        now = datetime.now(timezone.utc)

        def apply(rec: SubscriptionRecord) -> None:
            cancel_addon_entries(rec, canceled_addons, now)
            rec.pending_change = None
            rec.cancel_at_period_end = False
            if replacement:
                rec.apply_billing_snapshot(replacement)
                rec.plan_type = free_plan
                rec.canceled_at = None
            else:
                rec.status = SubscriptionStatus.CANCELED
                rec.canceled_at = now

        await asyncio.shield(self.repository.save_with_retry(record, apply))
        await self.entitlements.downgrade_to_free(record.user_id)
        if replacement:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_REPLACED_WITH_FREE,
                user_id=record.user_id,
                metadata={"billing_subscription_ref": replacement.id, "canceled_addons": canceled_addons},
            )
        return replacement is not None

    # =========================================================================
    # Status
    # =========================================================================

    async def get_subscription_status(self, user_id: str) -> Dict[str, Any]:
        record = await self._require_record(user_id)
        if record.billing_subscription_ref:
            try:
                snapshot = await self.gateway.get_subscription(record.billing_subscription_ref)
            except BillingProviderError as e:
                logger.warning("Status re-sync skipped for user_id=%s: %s", user_id, e)
                return record.to_public()

            status = SubscriptionStatus.from_processor(snapshot.status)
            drifted = (
                status != record.status
                or snapshot.cancel_at_period_end != record.cancel_at_period_end
                or (snapshot.current_period_end and snapshot.current_period_end != record.current_period_end)
            )
            if drifted:
                def resync(rec: SubscriptionRecord) -> None:
                    rec.status = status
                    rec.cancel_at_period_end = snapshot.cancel_at_period_end
                    if snapshot.current_period_start:
                        rec.current_period_start = snapshot.current_period_start
                    if snapshot.current_period_end:
                        rec.current_period_end = snapshot.current_period_end

                await self.repository.save_with_retry(record, resync)
                logger.info("SUBSCRIPTION_STATUS_RESYNCED user_id=%s status=%s", user_id, status.value)
        return record.to_public()
