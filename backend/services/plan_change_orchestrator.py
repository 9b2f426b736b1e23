"""Plan Change Orchestrator - upgrade / downgrade state machine.

A single change attempt moves through:

    IDLE -> AWAITING_PAYMENT_SETUP -> APPLYING -> APPLIED | FAILED

Upgrades (target price > current price) apply immediately with invoiced
proration once a chargeable payment method exists. Without one the attempt
suspends: a setup session is returned and complete_upgrade() resumes it. The
suspended state is never stored on the record, only in the setup session
metadata.

Downgrades never touch plan_type synchronously. They are scheduled at the
processor for the period end and recorded as pending_change; the
subscription_schedule webhooks apply them.

Once a processor mutation succeeded the local save is shielded from caller
cancellation.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from models import (
    AuditAction,
    BillingSubscription,
    PendingChange,
    PlanChangeResult,
    PlanChangeState,
    PlanChangeType,
    ProrationPreference,
    SetupRequired,
    SubscriptionRecord,
    SubscriptionStatus,
)
from services.addon_resolver import AddonResolver, cancel_addon_entries
from services.entitlement_sync import EntitlementSync
from services.errors import Conflict, NotFound, SubscriptionError, ValidationFailed
from services.payment_setup import (
    META_PENDING_UPGRADE,
    META_USER_ID,
    META_USERNAME,
    ensure_chargeable_method,
    resume_from_setup,
)
from services.plan_catalog import PlanCatalog
from services.stripe_gateway import PRORATION_ALWAYS_INVOICE, PRORATION_CREATE, PRORATION_NONE
from services.subscription_repository import SubscriptionRepository
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def proration_mode_for(preference: ProrationPreference, is_upgrade: bool) -> str:
    """Map a caller preference to the processor's proration behaviour.

    auto-prorate charges an upgrade's difference immediately.
    """
    if preference == ProrationPreference.NONE:
        return PRORATION_NONE
    if preference == ProrationPreference.ALWAYS_INVOICE:
        return PRORATION_ALWAYS_INVOICE
    return PRORATION_ALWAYS_INVOICE if is_upgrade else PRORATION_CREATE


class PlanChangeOrchestrator:
    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway,
        resolver: AddonResolver,
        entitlements: EntitlementSync,
        catalog: PlanCatalog,
        frontend_url: str = "http://localhost:5173",
    ):
        self.repository = repository
        self.gateway = gateway
        self.resolver = resolver
        self.entitlements = entitlements
        self.catalog = catalog
        self.frontend_url = frontend_url.rstrip("/")

    # =========================================================================
    # Entry points
    # =========================================================================

    async def request_plan_change(
        self,
        user_id: str,
        target_plan: str,
        proration_preference: str = ProrationPreference.AUTO_PRORATE.value,
    ) -> Union[PlanChangeResult, SetupRequired]:
        if not self.catalog.is_valid_plan(target_plan):
            raise ValidationFailed(
                f"Invalid plan: {target_plan}",
                error_code="INVALID_PLAN",
                details={"validPlans": self.catalog.plan_names()},
            )
        try:
            preference = ProrationPreference(proration_preference)
        except ValueError:
            raise ValidationFailed(
                f"Invalid proration preference: {proration_preference}",
                error_code="INVALID_PRORATION",
                details={"valid": [p.value for p in ProrationPreference]},
            )

        record = await self._load(user_id)
        if record.plan_type == target_plan:
            raise Conflict(f"User already has {target_plan} plan", error_code="SAME_PLAN")
        self._require_billing_subscription(record)

        comparison = self.catalog.compare_plans(record.plan_type, target_plan)
        self._transition(user_id, PlanChangeState.IDLE, from_plan=record.plan_type, to_plan=target_plan)

        if record.pending_change:
            await self._release_pending(record)

        if comparison.is_upgrade:
            setup = await self._require_payment_method(record, target_plan)
            if setup:
                return setup
            return await self._apply_immediate(record, target_plan, preference, is_upgrade=True)
        return await self._schedule_downgrade(record, target_plan, preference)

    async def complete_upgrade(self, user_id: str, setup_ref: str) -> Union[PlanChangeResult, SetupRequired]:
        """Resume a change suspended in AWAITING_PAYMENT_SETUP."""
        record = await self._load(user_id)
        self._require_billing_subscription(record)
        _, target_plan = await resume_from_setup(
            self.gateway, setup_ref, user_id, record.billing_customer_ref, META_PENDING_UPGRADE
        )
        if not self.catalog.is_valid_plan(target_plan):
            raise ValidationFailed(f"Invalid plan: {target_plan}", error_code="INVALID_PLAN")
        if record.plan_type == target_plan:
            raise Conflict(f"User already has {target_plan} plan", error_code="SAME_PLAN")

        logger.info("PAYMENT_SETUP_COMPLETED user_id=%s setup_session=%s target=%s", user_id, setup_ref, target_plan)
        if record.pending_change:
            await self._release_pending(record)

        comparison = self.catalog.compare_plans(record.plan_type, target_plan)
        if comparison.is_upgrade:
            return await self._apply_immediate(
                record, target_plan, ProrationPreference.AUTO_PRORATE, is_upgrade=True
            )
        return await self._schedule_downgrade(record, target_plan, ProrationPreference.AUTO_PRORATE)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _load(self, user_id: str) -> SubscriptionRecord:
        record = await self.repository.get_by_user(user_id)
        if record is None:
            raise NotFound("No subscription found for this user", error_code="SUBSCRIPTION_NOT_FOUND")
        return record

    @staticmethod
    def _require_billing_subscription(record: SubscriptionRecord) -> None:
        if not record.billing_subscription_ref:
            raise ValidationFailed(
                "User does not have a billing subscription. Please create one first using checkout.",
                error_code="NO_BILLING_SUBSCRIPTION",
            )

    @staticmethod
    def _transition(user_id: str, state: PlanChangeState, **context) -> None:
        details = " ".join(f"{k}={v}" for k, v in context.items())
        logger.info("PLAN_CHANGE_STATE user_id=%s state=%s %s", user_id, state.value, details)

    def _price_for(self, plan: str) -> str:
        price_ref = self.gateway.price_ref_for_plan(plan)
        if not price_ref:
            raise SubscriptionError(
                f"Plan {plan} has no price configured", error_code="PLAN_NOT_CONFIGURED", status_code=500
            )
        return price_ref

    async def _require_payment_method(self, record: SubscriptionRecord, target_plan: str) -> Optional[SetupRequired]:
        setup = await ensure_chargeable_method(
            self.gateway,
            record.billing_customer_ref,
            success_url=(
                f"{self.frontend_url}/app/pricing?setup=success&upgrade_to={target_plan}"
                "&session_id={CHECKOUT_SESSION_ID}"
            ),
            cancel_url=f"{self.frontend_url}/app/pricing?setup=canceled",
            metadata={
                META_USER_ID: record.user_id,
                META_USERNAME: record.username or "",
                META_PENDING_UPGRADE: target_plan,
            },
        )
        if setup:
            self._transition(
                record.user_id,
                PlanChangeState.AWAITING_PAYMENT_SETUP,
                to_plan=target_plan,
                setup_session=setup.setup_session_id,
            )
            await create_audit_log(
                action=AuditAction.PAYMENT_SETUP_REQUIRED,
                user_id=record.user_id,
                metadata={"target_plan": target_plan, "setup_session_id": setup.setup_session_id},
            )
        return setup

    async def _release_pending(self, record: SubscriptionRecord) -> None:
        """Drop a scheduled downgrade. The schedule may already be gone; that is only a warning."""
        pending = record.pending_change
        if pending.schedule_ref:
            try:
                await self.gateway.release_schedule(pending.schedule_ref)
            except SubscriptionError as e:
                logger.warning("Could not release schedule %s: %s", pending.schedule_ref, e)

        def clear(rec: SubscriptionRecord) -> None:
            rec.pending_change = None

        await asyncio.shield(self.repository.save_with_retry(record, clear))
        logger.info("PENDING_CHANGE_RELEASED user_id=%s target=%s", record.user_id, pending.target_plan)
        await create_audit_log(
            action=AuditAction.PENDING_CHANGE_RELEASED,
            user_id=record.user_id,
            metadata={"target_plan": pending.target_plan, "schedule_ref": pending.schedule_ref},
        )

    async def _apply_immediate(
        self,
        record: SubscriptionRecord,
        target_plan: str,
        preference: ProrationPreference,
        is_upgrade: bool,
        billing: Optional[BillingSubscription] = None,
    ) -> PlanChangeResult:
        from_plan = record.plan_type
        new_price = self._price_for(target_plan)
        self._transition(record.user_id, PlanChangeState.APPLYING, from_plan=from_plan, to_plan=target_plan)

        try:
            if billing is None:
                billing = await self.gateway.get_subscription(record.billing_subscription_ref)

            if billing.status == SubscriptionStatus.CANCELED.value:
                # Canceled processor subscriptions cannot be reactivated: start a new one
                # carrying the plan and whatever add-ons survive the new plan.
                prune = await self.resolver.prune_incompatible(
                    record, target_plan, persist=False, remove_items=False
                )
                addon_prices = [
                    e.billing_price_ref for e in record.active_addons
                    if e.is_active() and e.billing_price_ref
                ]
                snapshot = await self.gateway.create_subscription(
                    record.billing_customer_ref,
                    new_price,
                    metadata={"user_id": record.user_id, "username": record.username or "", "plan_type": target_plan},
                    addon_price_refs=addon_prices,
                )
                change_type = PlanChangeType.NEW_SUBSCRIPTION
                proration = PRORATION_NONE
            else:
                proration = proration_mode_for(preference, is_upgrade)
                snapshot = await self.gateway.update_subscription_price(
                    record.billing_subscription_ref, new_price, proration
                )
                prune = await self.resolver.prune_incompatible(record, target_plan, persist=False)
                change_type = PlanChangeType.UPGRADE
        except SubscriptionError as e:
            self._transition(record.user_id, PlanChangeState.FAILED, to_plan=target_plan, error=e.error_code)
            raise

        removed = prune.removed
        now = datetime.now(timezone.utc)

        def apply(rec: SubscriptionRecord) -> None:
            cancel_addon_entries(rec, removed, now)
            rec.apply_billing_snapshot(snapshot)
            rec.billing_price_ref = new_price
            rec.plan_type = target_plan
            rec.pending_change = None
            if change_type == PlanChangeType.NEW_SUBSCRIPTION:
                # Surviving add-ons now live on the new subscription's items
                rec.remap_addon_items(snapshot)
                rec.canceled_at = None

        await asyncio.shield(self.repository.save_with_retry(record, apply))
        self._transition(record.user_id, PlanChangeState.APPLIED, to_plan=target_plan, type=change_type.value)
        await create_audit_log(
            action=AuditAction.PLAN_UPGRADED,
            user_id=record.user_id,
            before_state={"plan_type": from_plan},
            after_state={"plan_type": target_plan, "status": record.status},
            metadata={"change_type": change_type.value, "proration": proration, "removed_addons": removed},
        )
        await self.entitlements.update(record)

        return PlanChangeResult(
            change_type=change_type,
            from_plan=from_plan,
            to_plan=target_plan,
            proration=proration,
            removed_addons=removed,
            subscription=record.to_public(),
        )

    async def _schedule_downgrade(
        self,
        record: SubscriptionRecord,
        target_plan: str,
        preference: ProrationPreference,
    ) -> Union[PlanChangeResult, SetupRequired]:
        from_plan = record.plan_type
        new_price = self._price_for(target_plan)
        billing = await self.gateway.get_subscription(record.billing_subscription_ref)

        if billing.status == SubscriptionStatus.CANCELED.value:
            # Nothing to attach a schedule to
            if self.catalog.plan_requires_payment(target_plan):
                setup = await self._require_payment_method(record, target_plan)
                if setup:
                    return setup
            return await self._apply_immediate(record, target_plan, preference, is_upgrade=False, billing=billing)

        effective_date = billing.current_period_end or record.current_period_end or datetime.now(timezone.utc)
        self._transition(record.user_id, PlanChangeState.APPLYING, from_plan=from_plan, to_plan=target_plan)
        try:
            schedule_ref = await self.gateway.schedule_deferred_price_change(
                record.billing_subscription_ref, new_price, effective_date
            )
        except SubscriptionError as e:
            self._transition(record.user_id, PlanChangeState.FAILED, to_plan=target_plan, error=e.error_code)
            raise

        pending = PendingChange(target_plan=target_plan, effective_date=effective_date, schedule_ref=schedule_ref)

        def apply(rec: SubscriptionRecord) -> None:
            rec.pending_change = pending

        await asyncio.shield(self.repository.save_with_retry(record, apply))
        self._transition(
            record.user_id, PlanChangeState.APPLIED,
            to_plan=target_plan, type=PlanChangeType.DOWNGRADE.value, effective=effective_date.isoformat(),
        )
        await create_audit_log(
            action=AuditAction.PLAN_DOWNGRADE_SCHEDULED,
            user_id=record.user_id,
            metadata={
                "from_plan": from_plan,
                "target_plan": target_plan,
                "effective_date": effective_date.isoformat(),
                "schedule_ref": schedule_ref,
            },
        )
        return PlanChangeResult(
            change_type=PlanChangeType.DOWNGRADE,
            from_plan=from_plan,
            to_plan=target_plan,
            effective_date=effective_date,
            proration=PRORATION_NONE,
            subscription=record.to_public(),
        )
