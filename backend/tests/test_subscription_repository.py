"""Subscription repository: version-checked saves, retry with re-applied mutation, upsert races."""
import pytest
from pymongo.errors import DuplicateKeyError

from models import SubscriptionRecord, SubscriptionStatus
from services.errors import ConcurrentUpdateError
from services.subscription_repository import SAVE_ATTEMPTS


@pytest.mark.asyncio
async def test_insert_then_save_increments_version(services):
    repo = services.repository
    record = await repo.insert(SubscriptionRecord(user_id="user-1", billing_customer_ref="cus_1"))
    assert record.version == 1

    record.plan_type = "PRO"
    await repo.save(record)

    stored = await repo.get_by_user("user-1")
    assert stored.version == 2
    assert stored.plan_type == "PRO"


@pytest.mark.asyncio
async def test_stale_save_raises_concurrent_update(services):
    repo = services.repository
    await repo.insert(SubscriptionRecord(user_id="user-1"))
    first = await repo.get_by_user("user-1")
    second = await repo.get_by_user("user-1")

    first.plan_type = "PRO"
    await repo.save(first)
    second.plan_type = "STUDIO"
    with pytest.raises(ConcurrentUpdateError) as exc_info:
        await repo.save(second)

    assert exc_info.value.status_code == 409
    assert (await repo.get_by_user("user-1")).plan_type == "PRO"


@pytest.mark.asyncio
async def test_save_with_retry_reapplies_mutation_on_fresh_state(services):
    repo = services.repository
    await repo.insert(SubscriptionRecord(user_id="user-1", status=SubscriptionStatus.ACTIVE))
    stale = await repo.get_by_user("user-1")
    concurrent = await repo.get_by_user("user-1")
    concurrent.plan_type = "PRO"
    await repo.save(concurrent)

    def mark_past_due(rec):
        rec.status = SubscriptionStatus.PAST_DUE

    result = await repo.save_with_retry(stale, mark_past_due)

    assert result is stale
    assert stale.plan_type == "PRO"
    assert stale.status == SubscriptionStatus.PAST_DUE
    assert stale.version == 3
    stored = await repo.get_by_user("user-1")
    assert (stored.plan_type, stored.status) == ("PRO", SubscriptionStatus.PAST_DUE)


@pytest.mark.asyncio
async def test_save_with_retry_gives_up_after_max_attempts(services, monkeypatch):
    repo = services.repository
    record = await repo.insert(SubscriptionRecord(user_id="user-1"))

    async def always_conflict(rec):
        raise ConcurrentUpdateError(rec.user_id, rec.version)

    monkeypatch.setattr(repo, "save", always_conflict)
    applied = []

    with pytest.raises(ConcurrentUpdateError):
        await repo.save_with_retry(record, lambda rec: applied.append(rec.user_id))
    assert len(applied) == SAVE_ATTEMPTS


@pytest.mark.asyncio
async def test_upsert_creates_then_updates(services):
    repo = services.repository

    created = await repo.upsert(
        "user-1",
        create=lambda: SubscriptionRecord(user_id="user-1", email="one@example.com"),
        apply=lambda rec: setattr(rec, "billing_customer_ref", "cus_1"),
    )
    updated = await repo.upsert(
        "user-1",
        create=lambda: SubscriptionRecord(user_id="user-1"),
        apply=lambda rec: setattr(rec, "plan_type", "PRO"),
    )

    assert created.version == 1
    assert updated.version == 2
    assert updated.email == "one@example.com"
    assert updated.billing_customer_ref == "cus_1"
    assert await services.repository.collection.count_documents({"user_id": "user-1"}) == 1


@pytest.mark.asyncio
async def test_upsert_insert_race_falls_back_to_update(services, monkeypatch):
    repo = services.repository
    await repo.insert(SubscriptionRecord(user_id="user-1", billing_customer_ref="cus_1"))
    original_get = repo.get_by_user
    lookups = []

    async def missing_first_time(user_id):
        lookups.append(user_id)
        if len(lookups) == 1:
            return None
        return await original_get(user_id)

    monkeypatch.setattr(repo, "get_by_user", missing_first_time)

    record = await repo.upsert(
        "user-1",
        create=lambda: SubscriptionRecord(user_id="user-1"),
        apply=lambda rec: setattr(rec, "plan_type", "STUDIO"),
    )

    assert record.plan_type == "STUDIO"
    assert record.billing_customer_ref == "cus_1"
    assert await repo.collection.count_documents({}) == 1


@pytest.mark.asyncio
async def test_lookup_by_subscription_or_customer(services):
    repo = services.repository
    await repo.insert(
        SubscriptionRecord(user_id="user-1", billing_customer_ref="cus_1", billing_subscription_ref="sub_1")
    )

    assert (await repo.get_by_subscription_ref("sub_1")).user_id == "user-1"
    assert await repo.get_by_subscription_ref(None) is None
    assert (await repo.get_by_subscription_or_customer("sub_new", "cus_1")).user_id == "user-1"
    assert await repo.get_by_subscription_or_customer("sub_new", None) is None


@pytest.mark.asyncio
async def test_duplicate_subscription_ref_is_rejected(services):
    repo = services.repository
    await repo.insert(SubscriptionRecord(user_id="user-1", billing_subscription_ref="sub_1"))

    with pytest.raises(DuplicateKeyError):
        await repo.insert(SubscriptionRecord(user_id="user-2", billing_subscription_ref="sub_1"))


@pytest.mark.asyncio
async def test_legacy_metadata_bag_is_dropped_on_save(services, fake_db):
    repo = services.repository
    await repo.insert(SubscriptionRecord(user_id="user-1", plan_type="STUDIO"))
    await fake_db.subscriptions.update_one(
        {"user_id": "user-1"}, {"$set": {"metadata": {"pendingPlan": "PRO", "scheduleId": "sub_sched_1"}}}
    )

    record = await repo.get_by_user("user-1")
    assert record.pending_change is None
    assert "metadata" not in record.to_document()

    await repo.save(record)
    assert "metadata" not in await fake_db.subscriptions.find_one({"user_id": "user-1"})
