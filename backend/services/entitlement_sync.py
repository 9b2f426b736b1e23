"""
Entitlement sync outbox (collection: entitlement_outbox).

Every entitlement change is written as the user's desired contract state
before it is pushed to SPACE. One entry per user; a newer desired state
replaces an older one and bumps its revision. The immediate push claims the
entry (PENDING -> RUNNING) exactly like the worker does, so only one push per
user is ever in flight; a state enqueued behind a running push stays PENDING.
A successful push marks its revision DONE; otherwise the worker in job_runner
redelivers it with backoff until it succeeds or goes DEAD.

Entitlement failures never propagate to the caller.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from models import SubscriptionRecord
from services.entitlement_client import EntitlementClient
from services.errors import EntitlementServiceError

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_RUNNING = "RUNNING"
STATUS_DONE = "DONE"
STATUS_FAILED = "FAILED"
STATUS_DEAD = "DEAD"

ACTION_UPSERT = "UPSERT"
ACTION_UPDATE = "UPDATE"
ACTION_DOWNGRADE = "DOWNGRADE"
ACTION_DELETE = "DELETE"

# Backoff seconds: attempt 1 => +10s, 2 => +30s, 3 => +2m, 4 => +10m, >=5 => DEAD
SYNC_BACKOFF = [10, 30, 120, 600]
MAX_ATTEMPTS = 5


class EntitlementSync:
    """Desired-state outbox in front of the SPACE client."""

    def __init__(self, db, client: EntitlementClient):
        self.db = db
        self.client = client

    @property
    def collection(self):
        return self.db.entitlement_outbox

    # ------------------------------------------------------------------ API
    async def upsert(self, record: SubscriptionRecord) -> bool:
        return await self._sync(record.user_id, ACTION_UPSERT, {
            "username": record.username,
            "plan": record.plan_type,
            "addons": record.active_addon_names(),
        })

    async def update(self, record: SubscriptionRecord, plan: Optional[str] = None) -> bool:
        return await self._sync(record.user_id, ACTION_UPDATE, {
            "username": record.username,
            "plan": plan or record.plan_type,
            "addons": record.active_addon_names(),
        })

    async def downgrade_to_free(self, user_id: str) -> bool:
        return await self._sync(user_id, ACTION_DOWNGRADE, {})

    async def delete(self, user_id: str) -> bool:
        return await self._sync(user_id, ACTION_DELETE, {})

    # ------------------------------------------------------------- delivery
    async def deliver(self, user_id: str, action: str, payload: Dict[str, Any]) -> None:
        if action == ACTION_UPSERT:
            await self.client.upsert_contract(user_id, payload.get("username"), payload["plan"], payload.get("addons", []))
        elif action == ACTION_UPDATE:
            try:
                await self.client.update_contract(user_id, payload["plan"], payload.get("addons", []))
            except EntitlementServiceError as e:
                if e.status != 404:
                    raise
                # The create this update replaced in the outbox never reached SPACE
                logger.info("SPACE contract missing for user_id=%s - creating it", user_id)
                await self.client.upsert_contract(
                    user_id, payload.get("username"), payload["plan"], payload.get("addons", [])
                )
        elif action == ACTION_DOWNGRADE:
            try:
                await self.client.downgrade_to_free(user_id)
            except EntitlementServiceError as e:
                if e.status != 404:
                    raise
                logger.info("SPACE contract missing for user_id=%s - creating it on the free plan", user_id)
                await self.client.upsert_contract(user_id, payload.get("username"), self.client.free_plan, [])
        elif action == ACTION_DELETE:
            await self.client.delete_contract(user_id)
        else:
            raise ValueError(f"Unknown entitlement action: {action}")

    async def _enqueue(self, user_id: str, action: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        now_iso = datetime.now(timezone.utc).isoformat()
        before = await self.collection.find_one_and_update(
            {"user_id": user_id},
            {
                "$set": {
                    "action": action,
                    "payload": payload,
                    "status": STATUS_PENDING,
                    "attempts": 0,
                    "next_run_at": now_iso,
                    "last_error": None,
                    "updated_at": now_iso,
                },
                "$inc": {"revision": 1},
                "$setOnInsert": {"created_at": now_iso},
            },
            upsert=True,
            return_document=ReturnDocument.BEFORE,
        )
        before = before or {}
        return {
            "revision": before.get("revision", 0) + 1,
            # An older state is being pushed right now; this one waits for the worker
            "contended": before.get("status") == STATUS_RUNNING,
        }

    async def _claim(self, user_id: str, entry: Dict[str, Any]) -> bool:
        """PENDING -> RUNNING for this revision only, the same claim the worker makes."""
        r = await self.collection.update_one(
            {"user_id": user_id, "revision": entry["revision"], "status": STATUS_PENDING},
            {"$set": {"status": STATUS_RUNNING, "updated_at": datetime.now(timezone.utc).isoformat()}},
        )
        return r.modified_count == 1

    async def _sync(self, user_id: str, action: str, payload: Dict[str, Any]) -> bool:
        entry = None
        try:
            entry = await self._enqueue(user_id, action, payload)
            if entry["contended"] or not await self._claim(user_id, entry):
                logger.info(
                    "ENTITLEMENT_SYNC_QUEUED user_id=%s action=%s revision=%s - another push in flight",
                    user_id, action, entry["revision"],
                )
                return False
        except Exception as e:
            logger.error("ENTITLEMENT_OUTBOX_WRITE_FAILED user_id=%s action=%s error=%s", user_id, action, e)
            entry = None

        try:
            await self.deliver(user_id, action, payload)
        except Exception as e:
            logger.warning(
                "ENTITLEMENT_SYNC_DEFERRED user_id=%s action=%s error=%s - queued for retry", user_id, action, e
            )
            await self._mark(user_id, entry, {"status": STATUS_PENDING, "last_error": str(e)})
            return False

        await self._mark(user_id, entry, {"status": STATUS_DONE})
        logger.info("ENTITLEMENT_SYNC_OK user_id=%s action=%s", user_id, action)
        return True

    async def _mark(self, user_id: str, entry: Optional[Dict[str, Any]], fields: Dict[str, Any]) -> None:
        """Release a claimed entry; a newer revision enqueued meanwhile is left for the worker."""
        if not entry:
            return
        fields = {**fields, "updated_at": datetime.now(timezone.utc).isoformat()}
        try:
            await self.collection.update_one(
                {"user_id": user_id, "revision": entry["revision"], "status": STATUS_RUNNING},
                {"$set": fields},
            )
        except Exception as e:
            logger.error("ENTITLEMENT_OUTBOX_WRITE_FAILED user_id=%s error=%s", user_id, e)

    async def due_entries(self, limit: int = 20) -> List[Dict[str, Any]]:
        now_iso = datetime.now(timezone.utc).isoformat()
        cursor = self.collection.find(
            {"status": {"$in": [STATUS_PENDING, STATUS_FAILED]}, "next_run_at": {"$lte": now_iso}}
        ).sort("next_run_at", 1).limit(limit)
        return await cursor.to_list(limit)
