from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    CANCELED = "canceled"
    UNPAID = "unpaid"

    @classmethod
    def from_processor(cls, value: str) -> "SubscriptionStatus":
        """Map a processor status, folding the ones this service does not track."""
        try:
            return cls(value)
        except ValueError:
            return {"incomplete_expired": cls.CANCELED, "paused": cls.UNPAID}.get(value, cls.INCOMPLETE)

ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})

class AddOnStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PENDING = "pending"

class ProrationPreference(str, Enum):
    AUTO_PRORATE = "auto-prorate"
    NONE = "none"
    ALWAYS_INVOICE = "always-invoice"

class PlanChangeType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    NEW_SUBSCRIPTION = "new_subscription"

class PlanChangeState(str, Enum):
    """Lifecycle of a single plan change attempt.

    AWAITING_PAYMENT_SETUP is never persisted on the record; it only exists in
    the setup session metadata until complete_upgrade resumes it.
    """
    IDLE = "IDLE"
    AWAITING_PAYMENT_SETUP = "AWAITING_PAYMENT_SETUP"
    APPLYING = "APPLYING"
    APPLIED = "APPLIED"
    FAILED = "FAILED"

class AuditAction(str, Enum):
    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    CHECKOUT_STARTED = "CHECKOUT_STARTED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_RECONCILED = "SUBSCRIPTION_RECONCILED"
    SUBSCRIPTION_REPLACED_WITH_FREE = "SUBSCRIPTION_REPLACED_WITH_FREE"

    # Plan changes
    PLAN_UPGRADED = "PLAN_UPGRADED"
    PLAN_DOWNGRADE_SCHEDULED = "PLAN_DOWNGRADE_SCHEDULED"
    PLAN_DOWNGRADE_APPLIED = "PLAN_DOWNGRADE_APPLIED"
    PENDING_CHANGE_RELEASED = "PENDING_CHANGE_RELEASED"
    PAYMENT_SETUP_REQUIRED = "PAYMENT_SETUP_REQUIRED"

    # Add-ons
    ADDON_PURCHASED = "ADDON_PURCHASED"
    ADDON_CANCELED = "ADDON_CANCELED"
    ADDON_PRUNED = "ADDON_PRUNED"

    # Async / system
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"
    USER_SUBSCRIPTIONS_DELETED = "USER_SUBSCRIPTIONS_DELETED"
    ENTITLEMENT_SYNC_DEAD = "ENTITLEMENT_SYNC_DEAD"


def _now() -> datetime:
    return datetime.now(timezone.utc)

def _from_unix(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)

# ============================================================================
# SUBSCRIPTION RECORD
# ============================================================================

class AddOnEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    billing_item_ref: Optional[str] = None
    billing_price_ref: Optional[str] = None
    purchased_at: datetime = Field(default_factory=_now)
    status: AddOnStatus = AddOnStatus.ACTIVE
    canceled_at: Optional[datetime] = None

    def is_active(self) -> bool:
        return self.status == AddOnStatus.ACTIVE


class PendingChange(BaseModel):
    """A downgrade scheduled at the processor but not yet applied."""
    model_config = ConfigDict(extra="ignore")

    target_plan: str
    effective_date: datetime
    schedule_ref: Optional[str] = None


class SubscriptionRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    username: Optional[str] = None
    email: Optional[str] = None

    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    billing_price_ref: Optional[str] = None

    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    plan_type: str = "FREE"
    active_addons: List[AddOnEntry] = Field(default_factory=list)

    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    pending_change: Optional[PendingChange] = None

    version: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def is_active(self) -> bool:
        return SubscriptionStatus(self.status).value in ACTIVE_STATUSES

    def get_active_addon(self, name: str) -> Optional[AddOnEntry]:
        for entry in self.active_addons:
            if entry.name == name and entry.is_active():
                return entry
        return None

    def has_addon(self, name: str) -> bool:
        return self.get_active_addon(name) is not None

    def active_addon_names(self) -> List[str]:
        return [entry.name for entry in self.active_addons if entry.is_active()]

    def apply_billing_snapshot(self, snapshot: "BillingSubscription") -> None:
        """Copy processor-side state (refs, status, periods) onto the record."""
        self.billing_subscription_ref = snapshot.id
        if snapshot.customer:
            self.billing_customer_ref = snapshot.customer
        if snapshot.price_ref:
            self.billing_price_ref = snapshot.price_ref
        self.status = SubscriptionStatus.from_processor(snapshot.status)
        if snapshot.current_period_start:
            self.current_period_start = snapshot.current_period_start
        if snapshot.current_period_end:
            self.current_period_end = snapshot.current_period_end
        self.cancel_at_period_end = snapshot.cancel_at_period_end
        if snapshot.canceled_at:
            self.canceled_at = snapshot.canceled_at

    def remap_addon_items(self, snapshot: "BillingSubscription") -> None:
        """Point active add-ons at the snapshot's items carrying the same price."""
        by_price = {price: item for item, price in snapshot.item_prices.items()}
        for entry in self.active_addons:
            if entry.is_active() and entry.billing_price_ref in by_price:
                entry.billing_item_ref = by_price[entry.billing_price_ref]

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_public(self) -> Dict[str, Any]:
        """Read surface for callers outside the lifecycle services. Never exposes the schedule ref."""
        pending = None
        if self.pending_change:
            pending = {
                "targetPlan": self.pending_change.target_plan,
                "effectiveDate": self.pending_change.effective_date.isoformat(),
            }
        return {
            "planType": self.plan_type,
            "status": SubscriptionStatus(self.status).value,
            "isActive": self.is_active(),
            "currentPeriodStart": self.current_period_start.isoformat() if self.current_period_start else None,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "activeAddOns": self.active_addon_names(),
            "pendingChange": pending,
        }

# ============================================================================
# PROCESSOR SNAPSHOTS
# ============================================================================

class BillingSubscription(BaseModel):
    """Processor-side subscription state, independent of the SDK object shape."""
    model_config = ConfigDict(extra="ignore")

    id: str
    customer: Optional[str] = None
    status: str
    price_ref: Optional[str] = None
    item_ref: Optional[str] = None
    item_prices: Dict[str, str] = Field(default_factory=dict)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    schedule_ref: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Any, plan_price_refs: Optional[set] = None) -> "BillingSubscription":
        """Build from a Stripe subscription object or its JSON form.

        The plan item is the one whose price is a known plan price; add-on items
        share the subscription. Newer API versions carry periods on items.
        """
        items = (obj.get("items") or {}).get("data") or []
        item_prices = {}
        plan_item = None
        for item in items:
            price = item.get("price") or {}
            price_id = price.get("id") if hasattr(price, "get") else price
            item_prices[item.get("id")] = price_id
            if plan_item is None and (not plan_price_refs or price_id in plan_price_refs):
                plan_item = item
        if plan_item is None and items:
            plan_item = items[0]
        plan_item = plan_item or {}
        customer = obj.get("customer")
        if hasattr(customer, "get"):
            customer = customer.get("id")
        schedule = obj.get("schedule")
        if hasattr(schedule, "get"):
            schedule = schedule.get("id")
        return cls(
            id=obj.get("id"),
            customer=customer,
            status=obj.get("status") or SubscriptionStatus.INCOMPLETE.value,
            price_ref=item_prices.get(plan_item.get("id")),
            item_ref=plan_item.get("id"),
            item_prices=item_prices,
            current_period_start=_from_unix(obj.get("current_period_start") or plan_item.get("current_period_start")),
            current_period_end=_from_unix(obj.get("current_period_end") or plan_item.get("current_period_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=_from_unix(obj.get("canceled_at")),
            schedule_ref=schedule,
        )


class SetupSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    url: Optional[str] = None
    status: Optional[str] = None
    customer: Optional[str] = None
    payment_method_ref: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    def is_complete(self) -> bool:
        return self.status == "complete"


class CheckoutSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    url: Optional[str] = None

# ============================================================================
# OPERATION RESULTS
# ============================================================================

class SetupRequired(BaseModel):
    """Recoverable branch: caller must complete payment setup out of band, then resume."""
    model_config = ConfigDict(extra="ignore")

    setup_url: Optional[str] = None
    setup_session_id: str
    reason: str = "PAYMENT_METHOD_REQUIRED"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.reason,
            "message": "Payment method required. Please add a payment method first.",
            "setupUrl": self.setup_url,
            "setupSessionId": self.setup_session_id,
        }


class PruneResult(BaseModel):
    removed: List[str] = Field(default_factory=list)
    remaining: List[str] = Field(default_factory=list)


class PlanChangeResult(BaseModel):
    change_type: PlanChangeType
    from_plan: str
    to_plan: str
    effective_date: Optional[datetime] = None
    proration: Optional[str] = None
    removed_addons: List[str] = Field(default_factory=list)
    subscription: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "change": {
                "type": self.change_type.value,
                "from": self.from_plan,
                "to": self.to_plan,
            },
            "subscription": self.subscription,
        }
        if self.effective_date:
            body["change"]["effectiveDate"] = self.effective_date.isoformat()
        if self.proration:
            body["proration"] = {"behavior": self.proration}
        if self.removed_addons:
            body["removedAddOns"] = {
                "count": len(self.removed_addons),
                "names": self.removed_addons,
                "reason": f"These add-ons are not available for the {self.to_plan} plan",
            }
        return body

# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_now)
