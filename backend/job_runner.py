"""
Shared job runner for scheduled background jobs.
Used by server (scheduler). Each run_* returns a dict with "message" (and optionally "count").
"""
import logging
from datetime import datetime, timezone, timedelta

from models import AuditAction
from services.entitlement_sync import (
    EntitlementSync,
    MAX_ATTEMPTS,
    STATUS_DEAD,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    SYNC_BACKOFF,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# A RUNNING entry untouched for this long belonged to a worker that died mid-push
STALE_RUNNING_SECONDS = 300


async def run_entitlement_sync_worker(sync: EntitlementSync, limit: int = 20):
    """
    Process entitlement_outbox: claim due PENDING/FAILED entries, push the desired
    contract state to SPACE, retry with backoff or mark DEAD.
    """
    try:
        now = datetime.now(timezone.utc)
        now_iso = now.isoformat()
        entries = await sync.due_entries(limit)
        processed = 0
        for entry in entries:
            user_id = entry["user_id"]
            revision = entry.get("revision", 0)
            action = entry.get("action")
            attempts = entry.get("attempts", 0)
            # Atomic claim; a newer revision or another worker wins
            r = await sync.collection.update_one(
                {"user_id": user_id, "revision": revision, "status": {"$in": [STATUS_PENDING, STATUS_FAILED]}},
                {"$set": {"status": STATUS_RUNNING, "updated_at": now_iso}},
            )
            if r.modified_count == 0:
                continue
            try:
                await sync.deliver(user_id, action, entry.get("payload") or {})
                # Left RUNNING->PENDING by a newer enqueue: that revision is delivered next run
                await sync.collection.update_one(
                    {"user_id": user_id, "revision": revision, "status": STATUS_RUNNING},
                    {"$set": {"status": STATUS_DONE, "updated_at": datetime.now(timezone.utc).isoformat()}},
                )
                processed += 1
            except Exception as e:
                next_attempts = attempts + 1
                if next_attempts >= MAX_ATTEMPTS:
                    new_status = STATUS_DEAD
                    next_run_at = now_iso
                else:
                    new_status = STATUS_FAILED
                    delta = SYNC_BACKOFF[min(next_attempts - 1, len(SYNC_BACKOFF) - 1)]
                    next_run_at = (now + timedelta(seconds=delta)).isoformat()
                err_str = str(e)
                await sync.collection.update_one(
                    {"user_id": user_id, "revision": revision, "status": STATUS_RUNNING},
                    {"$set": {
                        "status": new_status,
                        "attempts": next_attempts,
                        "next_run_at": next_run_at,
                        "last_error": err_str,
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    }},
                )
                if new_status == STATUS_DEAD:
                    logger.error(f"ENTITLEMENT_SYNC_DEAD user_id={user_id} action={action} err={err_str}")
                    await create_audit_log(
                        action=AuditAction.ENTITLEMENT_SYNC_DEAD,
                        user_id=user_id,
                        resource_type="entitlement",
                        metadata={"action": action, "attempts": next_attempts, "error": err_str},
                    )
                else:
                    logger.warning(
                        f"Entitlement sync failed user_id={user_id} action={action} attempts={next_attempts} err={err_str}"
                    )
        return {"message": f"Entitlement sync worker: {processed} processed", "count": processed}
    except Exception as e:
        logger.error(f"Entitlement sync worker failed: {e}")
        raise


async def run_entitlement_sync_recovery(sync: EntitlementSync, stale_after_seconds: int = STALE_RUNNING_SECONDS):
    """Return RUNNING entries abandoned by a crashed worker to PENDING."""
    try:
        now = datetime.now(timezone.utc)
        cutoff = (now - timedelta(seconds=stale_after_seconds)).isoformat()
        r = await sync.collection.update_many(
            {"status": STATUS_RUNNING, "updated_at": {"$lt": cutoff}},
            {"$set": {"status": STATUS_PENDING, "next_run_at": now.isoformat(), "updated_at": now.isoformat()}},
        )
        if r.modified_count:
            logger.warning(f"Entitlement sync recovery: {r.modified_count} stale entries re-queued")
        return {"message": f"Entitlement sync recovery: {r.modified_count} re-queued", "count": r.modified_count}
    except Exception as e:
        logger.error(f"Entitlement sync recovery failed: {e}")
        raise


# Map scheduler job id -> run function
JOB_RUNNERS = {
    "entitlement_sync_worker": run_entitlement_sync_worker,
    "entitlement_sync_recovery": run_entitlement_sync_recovery,
}
