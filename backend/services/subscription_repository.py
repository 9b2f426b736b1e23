"""Data access for subscription records (collection: subscriptions).

Every write is version-checked: save() only replaces the document whose
version matches the one read at load time, then increments it. Callers that
must not lose a write use save_with_retry(), which reloads and re-applies the
same mutation on conflict.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from pymongo.errors import DuplicateKeyError

from models import SubscriptionRecord
from services.errors import ConcurrentUpdateError, NotFound

logger = logging.getLogger(__name__)

SAVE_ATTEMPTS = 3

Mutation = Callable[[SubscriptionRecord], None]


class SubscriptionRepository:
    def __init__(self, db):
        self.db = db

    @property
    def collection(self):
        return self.db.subscriptions

    @staticmethod
    def _to_record(doc: Optional[dict]) -> Optional[SubscriptionRecord]:
        return SubscriptionRecord(**doc) if doc else None

    async def get_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        doc = await self.collection.find_one({"user_id": user_id}, {"_id": 0})
        return self._to_record(doc)

    async def get_by_subscription_ref(self, subscription_ref: Optional[str]) -> Optional[SubscriptionRecord]:
        if not subscription_ref:
            return None
        doc = await self.collection.find_one({"billing_subscription_ref": subscription_ref}, {"_id": 0})
        return self._to_record(doc)

    async def get_by_subscription_or_customer(
        self,
        subscription_ref: Optional[str],
        customer_ref: Optional[str],
    ) -> Optional[SubscriptionRecord]:
        """Subscription ref first; customer ref covers a webhook racing the local upsert."""
        record = await self.get_by_subscription_ref(subscription_ref)
        if record or not customer_ref:
            return record
        doc = await self.collection.find_one({"billing_customer_ref": customer_ref}, {"_id": 0})
        return self._to_record(doc)

    async def list_by_user(self, user_id: str) -> List[SubscriptionRecord]:
        cursor = self.collection.find({"user_id": user_id}, {"_id": 0})
        docs = await cursor.to_list(100)
        return [SubscriptionRecord(**d) for d in docs]

    async def insert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        record.version = 1
        await self.collection.insert_one(record.to_document())
        logger.info("SUBSCRIPTION_RECORD_CREATED user_id=%s plan=%s status=%s", record.user_id, record.plan_type, record.status)
        return record

    async def save(self, record: SubscriptionRecord) -> SubscriptionRecord:
        expected = record.version
        record.updated_at = datetime.now(timezone.utc)
        doc = record.to_document()
        doc["version"] = expected + 1
        result = await self.collection.replace_one({"user_id": record.user_id, "version": expected}, doc)
        if result.matched_count == 0:
            raise ConcurrentUpdateError(record.user_id, expected)
        record.version = expected + 1
        return record

    async def save_with_retry(self, record: SubscriptionRecord, apply: Mutation) -> SubscriptionRecord:
        """Apply a mutation and save; on version conflict reload and re-apply.

        The caller's record object is refreshed in place with the saved state.
        """
        original = record
        apply(record)
        for attempt in range(1, SAVE_ATTEMPTS + 1):
            try:
                await self.save(record)
                if record is not original:
                    for name in type(record).model_fields:
                        setattr(original, name, getattr(record, name))
                return original
            except ConcurrentUpdateError:
                if attempt == SAVE_ATTEMPTS:
                    raise
                logger.warning(
                    "SUBSCRIPTION_VERSION_CONFLICT user_id=%s attempt=%s - reloading", record.user_id, attempt
                )
                fresh = await self.get_by_user(record.user_id)
                if fresh is None:
                    raise NotFound(
                        f"Subscription for user {record.user_id} disappeared during update",
                        error_code="SUBSCRIPTION_NOT_FOUND",
                    )
                apply(fresh)
                record = fresh
        return original

    async def upsert(
        self,
        user_id: str,
        create: Callable[[], SubscriptionRecord],
        apply: Mutation,
    ) -> SubscriptionRecord:
        """Update the user's record, creating it first when absent."""
        record = await self.get_by_user(user_id)
        if record is not None:
            return await self.save_with_retry(record, apply)
        record = create()
        apply(record)
        try:
            return await self.insert(record)
        except DuplicateKeyError:
            logger.info("Subscription for user_id=%s created concurrently - updating instead", user_id)
            existing = await self.get_by_user(user_id)
            if existing is None:
                raise
            return await self.save_with_retry(existing, apply)

    async def delete(self, record: SubscriptionRecord) -> bool:
        result = await self.collection.delete_one(
            {"user_id": record.user_id, "billing_subscription_ref": record.billing_subscription_ref}
        )
        return result.deleted_count > 0
