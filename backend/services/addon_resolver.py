"""Add-on Compatibility Resolver - purchase, cancel and prune add-ons against a plan.

Rules:
- An active add-on must be available for the record's current plan
- Billing item removal is best-effort (logged); the local entry is canceled regardless
- Every change to the active add-on set is pushed to the entitlement service
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from models import AddOnEntry, AddOnStatus, AuditAction, PruneResult, SetupRequired, SubscriptionRecord
from services.entitlement_sync import EntitlementSync
from services.errors import BillingProviderError, Conflict, NotFound, SubscriptionError, ValidationFailed
from services.payment_setup import (
    META_PENDING_ADDON,
    META_USER_ID,
    META_USERNAME,
    ensure_chargeable_method,
    resume_from_setup,
)
from services.plan_catalog import PlanCatalog
from services.subscription_repository import SubscriptionRepository
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def cancel_addon_entries(record: SubscriptionRecord, names: Iterable[str], when: Optional[datetime] = None) -> None:
    """Mark the active entries for ``names`` canceled. Safe to re-apply."""
    names = set(names)
    when = when or datetime.now(timezone.utc)
    for entry in record.active_addons:
        if entry.name in names and entry.is_active():
            entry.status = AddOnStatus.CANCELED
            entry.canceled_at = when


class AddonResolver:
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

    # =========================================================================
    # Pruning
    # =========================================================================

    async def prune_incompatible(
        self,
        record: SubscriptionRecord,
        new_plan: str,
        persist: bool = True,
        remove_items: bool = True,
    ) -> PruneResult:
        """Cancel every active add-on not available for ``new_plan``.

        With persist=False the record is only mutated in memory and the caller
        saves it together with its own changes (re-applying cancel_addon_entries
        on conflict). With remove_items=False billing items are left alone, for
        subscriptions the processor has already canceled.
        """
        removed: List[str] = []
        for entry in record.active_addons:
            if not entry.is_active() or self.catalog.is_addon_available_for_plan(entry.name, new_plan):
                continue
            if remove_items and entry.billing_item_ref:
                try:
                    await self.gateway.remove_subscription_item(entry.billing_item_ref)
                except BillingProviderError as e:
                    logger.warning(
                        "ADDON_ITEM_REMOVE_FAILED user_id=%s addon=%s item=%s error=%s",
                        record.user_id, entry.name, entry.billing_item_ref, e,
                    )
            removed.append(entry.name)

        if removed:
            now = datetime.now(timezone.utc)
            if persist:
                await asyncio.shield(
                    self.repository.save_with_retry(record, lambda r: cancel_addon_entries(r, removed, now))
                )
            else:
                cancel_addon_entries(record, removed, now)
            logger.info("ADDONS_PRUNED user_id=%s plan=%s removed=%s", record.user_id, new_plan, removed)
            await create_audit_log(
                action=AuditAction.ADDON_PRUNED,
                user_id=record.user_id,
                metadata={"plan": new_plan, "removed": removed},
            )

        return PruneResult(removed=removed, remaining=record.active_addon_names())

    # =========================================================================
    # Purchase / cancel
    # =========================================================================

    def _setup_urls(self, addon_name: str) -> Dict[str, str]:
        return {
            "success_url": (
                f"{self.frontend_url}/app/addons?setup=success&addon={addon_name}"
                "&session_id={CHECKOUT_SESSION_ID}"
            ),
            "cancel_url": f"{self.frontend_url}/app/addons?setup=canceled",
        }

    async def purchase(
        self,
        record: SubscriptionRecord,
        addon_name: str,
    ) -> Union[SubscriptionRecord, SetupRequired]:
        addon = self.catalog.get_addon(addon_name)
        if not addon:
            raise ValidationFailed(
                f"Unknown add-on: {addon_name}",
                error_code="INVALID_ADDON",
                details={"validAddOns": self.catalog.addon_names()},
            )
        if not record.is_active():
            raise ValidationFailed(
                "An active subscription is required to purchase add-ons",
                error_code="SUBSCRIPTION_NOT_ACTIVE",
                details={"status": record.status},
            )
        if not self.catalog.is_addon_available_for_plan(addon_name, record.plan_type):
            raise ValidationFailed(
                f"Add-on {addon_name} is not available for the {record.plan_type} plan",
                error_code="ADDON_NOT_AVAILABLE",
                details={"availableFor": sorted(addon.available_for), "currentPlan": record.plan_type},
            )
        if record.has_addon(addon_name):
            raise Conflict(f"Add-on {addon_name} is already active", error_code="ADDON_ALREADY_ACTIVE")
        if not record.billing_subscription_ref:
            raise ValidationFailed(
                "No billing subscription found. Please subscribe first.",
                error_code="NO_STRIPE_SUBSCRIPTION",
            )
        if not addon.stripe_price_id:
            raise SubscriptionError(
                f"Add-on {addon_name} has no price configured",
                error_code="ADDON_NOT_CONFIGURED",
                status_code=500,
            )

        setup = await ensure_chargeable_method(
            self.gateway,
            record.billing_customer_ref,
            metadata={
                META_USER_ID: record.user_id,
                META_USERNAME: record.username or "",
                META_PENDING_ADDON: addon_name,
            },
            **self._setup_urls(addon_name),
        )
        if setup:
            await create_audit_log(
                action=AuditAction.PAYMENT_SETUP_REQUIRED,
                user_id=record.user_id,
                metadata={"addon": addon_name, "setup_session_id": setup.setup_session_id},
            )
            return setup

        item_ref = await self.gateway.add_subscription_item(
            record.billing_subscription_ref,
            addon.stripe_price_id,
            metadata={"user_id": record.user_id, "addon": addon_name},
        )
        purchased_at = datetime.now(timezone.utc)

        def add_entry(rec: SubscriptionRecord) -> None:
            if any(e.billing_item_ref == item_ref for e in rec.active_addons if e.is_active()):
                return
            rec.active_addons = [e for e in rec.active_addons if e.name != addon_name or e.is_active()]
            rec.active_addons.append(AddOnEntry(
                name=addon_name,
                billing_item_ref=item_ref,
                billing_price_ref=addon.stripe_price_id,
                purchased_at=purchased_at,
            ))

        await asyncio.shield(self.repository.save_with_retry(record, add_entry))
        logger.info("ADDON_PURCHASED user_id=%s addon=%s item=%s", record.user_id, addon_name, item_ref)
        await create_audit_log(
            action=AuditAction.ADDON_PURCHASED,
            user_id=record.user_id,
            metadata={"addon": addon_name, "billing_item_ref": item_ref},
        )
        await self.entitlements.update(record)
        return record

    async def cancel(self, record: SubscriptionRecord, addon_name: str) -> SubscriptionRecord:
        if not self.catalog.is_valid_addon(addon_name):
            raise ValidationFailed(f"Unknown add-on: {addon_name}", error_code="INVALID_ADDON")
        entry = record.get_active_addon(addon_name)
        if entry is None:
            raise NotFound(f"Add-on {addon_name} is not active", error_code="ADDON_NOT_FOUND")

        if entry.billing_item_ref:
            try:
                await self.gateway.remove_subscription_item(entry.billing_item_ref)
            except BillingProviderError as e:
                logger.warning(
                    "ADDON_ITEM_REMOVE_FAILED user_id=%s addon=%s error=%s", record.user_id, addon_name, e
                )

        now = datetime.now(timezone.utc)
        await asyncio.shield(
            self.repository.save_with_retry(record, lambda r: cancel_addon_entries(r, [addon_name], now))
        )
        logger.info("ADDON_CANCELED user_id=%s addon=%s", record.user_id, addon_name)
        await create_audit_log(
            action=AuditAction.ADDON_CANCELED,
            user_id=record.user_id,
            metadata={"addon": addon_name},
        )
        await self.entitlements.update(record)
        return record

    async def complete_setup(
        self,
        record: SubscriptionRecord,
        setup_ref: str,
    ) -> Union[SubscriptionRecord, SetupRequired]:
        """Resume a purchase suspended on payment setup."""
        _, addon_name = await resume_from_setup(
            self.gateway, setup_ref, record.user_id, record.billing_customer_ref, META_PENDING_ADDON
        )
        logger.info("ADDON_SETUP_COMPLETED user_id=%s addon=%s", record.user_id, addon_name)
        return await self.purchase(record, addon_name)

    # =========================================================================
    # Read surfaces
    # =========================================================================

    def list_available(self, record: Optional[SubscriptionRecord] = None) -> Dict[str, Any]:
        plan = record.plan_type if record else self.catalog.free_plan
        addons = []
        for addon in self.catalog.addon_names():
            definition = self.catalog.get_addon(addon).to_dict()
            definition["availableForCurrentPlan"] = self.catalog.is_addon_available_for_plan(addon, plan)
            definition["active"] = bool(record and record.has_addon(addon))
            addons.append(definition)
        return {"currentPlan": plan, "addOns": addons}

    def list_mine(self, record: SubscriptionRecord) -> Dict[str, Any]:
        active = []
        for entry in record.active_addons:
            if not entry.is_active():
                continue
            definition = self.catalog.get_addon(entry.name)
            active.append({
                "name": entry.name,
                "displayName": definition.display_name if definition else entry.name,
                "price": definition.price if definition else None,
                "purchasedAt": entry.purchased_at.isoformat(),
                "status": AddOnStatus(entry.status).value,
            })
        return {"planType": record.plan_type, "activeAddOns": active, "count": len(active)}
