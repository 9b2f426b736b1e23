"""
Pytest configuration and shared test helpers for backend tests.

Services run against an in-memory stand-in for the motor collections they use
and a fake Stripe gateway that keeps subscriptions in a dict; the SPACE client
is a mock so calls can be asserted.
"""
import copy
import json
import os
import sys
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import Settings
from database import database
from dependencies import build_services
from models import AddOnEntry, BillingSubscription, CheckoutSession, SetupSession, SubscriptionRecord
from services.errors import BillingProviderError, WebhookVerificationError
from services.plan_catalog import PlanCatalog, default_addon_definitions, default_plan_definitions

PLAN_PRICES = {"FREE": "price_free", "PRO": "price_pro", "STUDIO": "price_studio"}
ADDON_PRICES = {
    "decoratives": "price_decoratives",
    "promotedBeat": "price_promoted_beat",
    "extraDashboard": "price_extra_dashboard",
}


# ============================================================================
# In-memory collections
# ============================================================================

UNIQUE_FIELDS = {
    "subscriptions": ("user_id", "billing_subscription_ref"),
    "entitlement_outbox": ("user_id",),
    "stripe_events": ("event_id",),
}


def _matches(doc, flt):
    for key, cond in (flt or {}).items():
        value = doc.get(key)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$in":
                    ok = value in arg
                elif op == "$lte":
                    ok = value is not None and value <= arg
                elif op == "$lt":
                    ok = value is not None and value < arg
                elif op == "$ne":
                    ok = value != arg
                else:
                    raise NotImplementedError(op)
                if not ok:
                    return False
        elif value != cond:
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: d.get(key) or "", reverse=direction < 0)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return list(self._docs[:length] if length else self._docs)


class FakeCollection:
    def __init__(self, unique=()):
        self.docs = []
        self.unique = unique

    @staticmethod
    def _project(doc, projection):
        out = copy.deepcopy(doc)
        if projection and projection.get("_id") == 0:
            out.pop("_id", None)
        return out

    def _first(self, flt):
        return next((d for d in self.docs if _matches(d, flt)), None)

    def _check_unique(self, doc, ignore=None):
        for field in self.unique:
            value = doc.get(field)
            if value is None:
                continue
            for other in self.docs:
                if other is not ignore and other.get(field) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error: {field}")

    @staticmethod
    def _apply(doc, update, inserting=False):
        for key, value in update.get("$set", {}).items():
            doc[key] = copy.deepcopy(value)
        for key, value in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + value
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                doc[key] = copy.deepcopy(value)

    async def find_one(self, flt=None, projection=None):
        doc = self._first(flt)
        return self._project(doc, projection) if doc else None

    def find(self, flt=None, projection=None):
        return FakeCursor([self._project(d, projection) for d in self.docs if _matches(d, flt)])

    async def count_documents(self, flt=None):
        return len([d for d in self.docs if _matches(d, flt)])

    async def insert_one(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", uuid.uuid4().hex)
        self._check_unique(doc)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def replace_one(self, flt, replacement):
        old = self._first(flt)
        if old is None:
            return SimpleNamespace(matched_count=0, modified_count=0)
        new = copy.deepcopy(replacement)
        new["_id"] = old["_id"]
        self._check_unique(new, ignore=old)
        self.docs[self.docs.index(old)] = new
        return SimpleNamespace(matched_count=1, modified_count=1)

    async def update_one(self, flt, update, upsert=False):
        doc = self._first(flt)
        if doc is not None:
            before = copy.deepcopy(doc)
            self._apply(doc, update)
            return SimpleNamespace(matched_count=1, modified_count=int(doc != before), upserted_id=None)
        if upsert:
            new = {k: v for k, v in flt.items() if not isinstance(v, dict)}
            self._apply(new, update, inserting=True)
            result = await self.insert_one(new)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=result.inserted_id)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, flt, update):
        modified = 0
        for doc in self.docs:
            if _matches(doc, flt):
                self._apply(doc, update)
                modified += 1
        return SimpleNamespace(matched_count=modified, modified_count=modified)

    async def find_one_and_update(self, flt, update, upsert=False, return_document=ReturnDocument.BEFORE):
        doc = self._first(flt)
        if doc is not None:
            before = copy.deepcopy(doc)
            self._apply(doc, update)
            return before if return_document == ReturnDocument.BEFORE else copy.deepcopy(doc)
        if not upsert:
            return None
        new = {k: v for k, v in flt.items() if not isinstance(v, dict)}
        self._apply(new, update, inserting=True)
        await self.insert_one(new)
        return None if return_document == ReturnDocument.BEFORE else copy.deepcopy(self._first(flt))

    async def delete_one(self, flt):
        doc = self._first(flt)
        if doc is None:
            return SimpleNamespace(deleted_count=0)
        self.docs.remove(doc)
        return SimpleNamespace(deleted_count=1)

    async def create_index(self, *args, **kwargs):
        return None


class FakeDb:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(UNIQUE_FIELDS.get(name, ()))
        return self._collections[name]


# ============================================================================
# Fake Stripe gateway
# ============================================================================

class FakeStripeGateway:
    """Dict-backed stand-in for StripeGateway. Put operation names in .fail to make them raise."""

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog
        self.subscriptions = {}
        self.schedules = {}
        self.setup_sessions = {}
        self.has_default_method = True
        self.attachable_methods = []
        self.fail = set()
        self.calls = []
        self._seq = 0

    def _next(self, prefix):
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def _record(self, operation, *args):
        self.calls.append((operation,) + args)
        if operation in self.fail:
            raise BillingProviderError(f"Stripe {operation} failed", operation=operation)

    def called(self, operation):
        return [c for c in self.calls if c[0] == operation]

    # -------------------------------------------------------------- helpers
    def seed_subscription(self, customer, price_ref, status="active", addon_prices=(), period_end=None):
        sub_id = self._next("sub")
        items = {self._next("si"): price_ref}
        for price in addon_prices:
            items[self._next("si")] = price
        self.subscriptions[sub_id] = {
            "customer": customer,
            "status": status,
            "items": items,
            "period_start": datetime.now(timezone.utc),
            "period_end": period_end or datetime.now(timezone.utc) + timedelta(days=30),
            "cancel_at_period_end": False,
            "schedule": None,
        }
        return self.snapshot(sub_id)

    def snapshot(self, sub_id):
        sub = self.subscriptions[sub_id]
        plan_prices = self.catalog.plan_price_refs()
        plan_item = next((i for i, p in sub["items"].items() if p in plan_prices), None)
        return BillingSubscription(
            id=sub_id,
            customer=sub["customer"],
            status=sub["status"],
            price_ref=sub["items"].get(plan_item),
            item_ref=plan_item,
            item_prices=dict(sub["items"]),
            current_period_start=sub["period_start"],
            current_period_end=sub["period_end"],
            cancel_at_period_end=sub["cancel_at_period_end"],
            schedule_ref=sub["schedule"],
        )

    def subscription_object(self, sub_id):
        """The subscription as a webhook payload would carry it."""
        sub = self.subscriptions[sub_id]
        return {
            "id": sub_id,
            "object": "subscription",
            "customer": sub["customer"],
            "status": sub["status"],
            "cancel_at_period_end": sub["cancel_at_period_end"],
            "current_period_start": int(sub["period_start"].timestamp()),
            "current_period_end": int(sub["period_end"].timestamp()),
            "items": {"data": [{"id": i, "price": {"id": p}} for i, p in sub["items"].items()]},
        }

    def finish_setup(self, session_id, payment_method="pm_card_visa"):
        session = self.setup_sessions[session_id]
        self.setup_sessions[session_id] = session.model_copy(
            update={"status": "complete", "payment_method_ref": payment_method}
        )

    def complete_schedule(self, schedule_ref):
        """Phase 2 starts: the plan item switches to the scheduled price."""
        schedule = self.schedules[schedule_ref]
        sub = self.subscriptions[schedule["subscription"]]
        plan_prices = self.catalog.plan_price_refs()
        for item, price in list(sub["items"].items()):
            if price in plan_prices:
                sub["items"][item] = schedule["price"]
        sub["schedule"] = None
        schedule["status"] = "completed"
        return {
            "id": schedule_ref,
            "object": "subscription_schedule",
            "status": "completed",
            "subscription": schedule["subscription"],
        }

    # ------------------------------------------------------------ customers
    async def get_or_create_customer(self, email, metadata=None):
        self._record("get_or_create_customer", email)
        return f"cus_{(metadata or {}).get('user_id', 'anon')}"

    async def has_chargeable_method(self, customer_ref):
        self._record("has_chargeable_method", customer_ref)
        return self.has_default_method

    async def list_attachable_methods(self, customer_ref):
        self._record("list_attachable_methods", customer_ref)
        return list(self.attachable_methods)

    async def set_default_method(self, customer_ref, method_ref):
        self._record("set_default_method", customer_ref, method_ref)
        self.has_default_method = True

    # ------------------------------------------------------------- sessions
    async def create_checkout_session(self, customer_ref, price_ref, success_url, cancel_url, metadata):
        self._record("create_checkout_session", customer_ref, price_ref, metadata)
        session_id = self._next("cs")
        return CheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    async def create_setup_session(self, customer_ref, success_url, cancel_url, metadata):
        self._record("create_setup_session", customer_ref, metadata)
        session = SetupSession(
            id=self._next("cs_setup"),
            url="https://checkout.stripe.test/setup",
            status="open",
            customer=customer_ref,
            metadata=dict(metadata),
        )
        self.setup_sessions[session.id] = session
        return session

    async def get_setup_session(self, session_ref):
        self._record("get_setup_session", session_ref)
        return self.setup_sessions[session_ref]

    # -------------------------------------------------------- subscriptions
    async def create_subscription(self, customer_ref, price_ref, metadata=None, addon_price_refs=None):
        self._record("create_subscription", customer_ref, price_ref, tuple(addon_price_refs or ()))
        return self.seed_subscription(customer_ref, price_ref, addon_prices=addon_price_refs or ())

    async def get_subscription(self, subscription_ref):
        self._record("get_subscription", subscription_ref)
        return self.snapshot(subscription_ref)

    async def update_subscription_price(self, subscription_ref, new_price_ref, proration_mode):
        self._record("update_subscription_price", subscription_ref, new_price_ref, proration_mode)
        sub = self.subscriptions[subscription_ref]
        plan_prices = self.catalog.plan_price_refs()
        for item, price in list(sub["items"].items()):
            if price in plan_prices:
                sub["items"][item] = new_price_ref
        return self.snapshot(subscription_ref)

    async def schedule_deferred_price_change(self, subscription_ref, new_price_ref, effective_at):
        self._record("schedule_deferred_price_change", subscription_ref, new_price_ref, effective_at)
        schedule_ref = self._next("sub_sched")
        self.schedules[schedule_ref] = {
            "subscription": subscription_ref,
            "price": new_price_ref,
            "effective_at": effective_at,
            "status": "active",
        }
        self.subscriptions[subscription_ref]["schedule"] = schedule_ref
        return schedule_ref

    async def release_schedule(self, schedule_ref):
        self._record("release_schedule", schedule_ref)
        schedule = self.schedules[schedule_ref]
        schedule["status"] = "released"
        self.subscriptions[schedule["subscription"]]["schedule"] = None

    async def cancel_subscription(self, subscription_ref, at_period_end=True):
        self._record("cancel_subscription", subscription_ref, at_period_end)
        sub = self.subscriptions[subscription_ref]
        if at_period_end:
            sub["cancel_at_period_end"] = True
        else:
            sub["status"] = "canceled"
        return self.snapshot(subscription_ref)

    async def add_subscription_item(self, subscription_ref, price_ref, metadata=None):
        self._record("add_subscription_item", subscription_ref, price_ref)
        item = self._next("si")
        self.subscriptions[subscription_ref]["items"][item] = price_ref
        return item

    async def remove_subscription_item(self, item_ref):
        self._record("remove_subscription_item", item_ref)
        for sub in self.subscriptions.values():
            sub["items"].pop(item_ref, None)

    # -------------------------------------------------------------- catalog
    def price_ref_for_plan(self, plan_name):
        return self.catalog.price_ref_for_plan(plan_name)

    def plan_name_for_price(self, price_ref):
        return self.catalog.plan_name_for_price(price_ref)

    def verify_and_parse_webhook(self, payload, signature, secret=None):
        if signature == "invalid":
            raise WebhookVerificationError("Invalid signature")
        try:
            return json.loads(payload)
        except ValueError:
            raise WebhookVerificationError("Invalid payload")


# ============================================================================
# Builders
# ============================================================================

def make_catalog(extra_addons=()):
    plans = [replace(p, stripe_price_id=PLAN_PRICES[p.name]) for p in default_plan_definitions()]
    addons = [replace(a, stripe_price_id=ADDON_PRICES[a.name]) for a in default_addon_definitions()]
    return PlanCatalog(plans=plans, addons=addons + list(extra_addons))


def make_space_client():
    client = MagicMock()
    client.upsert_contract = AsyncMock()
    client.update_contract = AsyncMock()
    client.downgrade_to_free = AsyncMock()
    client.delete_contract = AsyncMock()
    client.get_contract = AsyncMock(return_value=None)
    client.free_plan = "FREE"
    return client


def stripe_event(event_type, obj, event_id=None) -> bytes:
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "livemode": False,
        "data": {"object": obj},
    }).encode()


async def seed_record(services, gateway, user_id="user-1", plan="PRO", addons=(), status="active"):
    """Stripe subscription plus a matching local record with the given active add-ons."""
    catalog = services.catalog
    addon_prices = [catalog.addon_price_ref(name) for name in addons]
    billing = gateway.seed_subscription(
        f"cus_{user_id}", catalog.price_ref_for_plan(plan), status=status, addon_prices=addon_prices
    )
    by_price = {price: item for item, price in billing.item_prices.items()}
    record = SubscriptionRecord(user_id=user_id, username=f"{user_id}-name", email=f"{user_id}@example.com")
    record.apply_billing_snapshot(billing)
    record.plan_type = plan
    record.active_addons = [
        AddOnEntry(name=name, billing_item_ref=by_price[price], billing_price_ref=price)
        for name, price in zip(addons, addon_prices)
    ]
    return await services.repository.insert(record)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDb()
    # Audit logs go through the global database handle
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def gateway(catalog):
    return FakeStripeGateway(catalog)


@pytest.fixture
def space():
    return make_space_client()


@pytest.fixture
def settings():
    return Settings(frontend_url="http://frontend.test", internal_api_key="internal-secret")


@pytest.fixture
def services(settings, fake_db, gateway, space, catalog):
    return build_services(settings, fake_db, gateway, space, catalog)


@pytest.fixture
def client(services):
    """TestClient for server:app with the service graph replaced by the fakes above."""
    from fastapi.testclient import TestClient
    from dependencies import get_services
    from server import app

    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()
