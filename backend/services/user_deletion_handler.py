"""User lifecycle events (users-events) - removes billing state for deleted users.

Event shape: {"type": "USER_DELETED", "payload": {"userId": "..."}}; a top-level
userId is accepted too. Delivery is owned by the caller (a broker consumer or an
internal endpoint): handle_message() never raises. Events that cannot be
processed go to the user_event_dead_letters collection instead of being retried.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from models import AuditAction
from services.entitlement_sync import EntitlementSync
from services.subscription_repository import SubscriptionRepository
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

EVENT_USER_DELETED = "USER_DELETED"
DLQ_TOPIC = "payments-interaction-dlq"


class UserDeletionHandler:
    def __init__(self, repository: SubscriptionRepository, gateway, entitlements: EntitlementSync, db):
        self.repository = repository
        self.gateway = gateway
        self.entitlements = entitlements
        self.db = db

    async def handle_message(self, raw: Union[bytes, str]) -> Dict[str, Any]:
        """Entry point for one raw broker message."""
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            event = json.loads(text)
        except ValueError as e:
            logger.error("Unparseable user event: %s", e)
            await self.send_to_dead_letter(text, f"Invalid JSON: {e}")
            return {"handled": False, "dead_lettered": True}
        if not isinstance(event, dict):
            await self.send_to_dead_letter(text, "Event is not an object")
            return {"handled": False, "dead_lettered": True}
        return await self.handle_event(event)

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type")
        if event_type != EVENT_USER_DELETED:
            logger.warning("Unknown user event type: %s", event_type)
            return {"handled": False, "event_type": event_type}

        user_id = self._user_id(event)
        if not user_id:
            await self.send_to_dead_letter(event, "USER_DELETED event without userId")
            return {"handled": False, "dead_lettered": True}

        try:
            return await self._delete_user(user_id)
        except Exception as e:
            logger.error("Error processing USER_DELETED for user %s: %s", user_id, e, exc_info=True)
            await self.send_to_dead_letter(event, str(e))
            return {"handled": False, "user_id": user_id, "dead_lettered": True}

    @staticmethod
    def _user_id(event: Dict[str, Any]) -> Optional[str]:
        payload = event.get("payload")
        if isinstance(payload, dict) and payload.get("userId"):
            return str(payload["userId"])
        if event.get("userId"):
            return str(event["userId"])
        return None

    async def _delete_user(self, user_id: str) -> Dict[str, Any]:
        logger.info("Processing USER_DELETED for user %s", user_id)
        records = await self.repository.list_by_user(user_id)
        logger.info("Found %d subscriptions for user %s", len(records), user_id)

        deleted = 0
        failed = []
        for record in records:
            try:
                if record.billing_subscription_ref:
                    try:
                        await self.gateway.cancel_subscription(record.billing_subscription_ref, at_period_end=False)
                        logger.info("Canceled Stripe subscription %s", record.billing_subscription_ref)
                    except Exception as e:
                        logger.warning(
                            "Could not cancel Stripe subscription %s for user %s: %s",
                            record.billing_subscription_ref, user_id, e,
                        )
                if await self.repository.delete(record):
                    deleted += 1
            except Exception as e:
                logger.error(
                    "Failed to delete subscription %s for user %s: %s", record.billing_subscription_ref, user_id, e
                )
                failed.append(record.billing_subscription_ref)

        # Once per user, whatever happened to the individual records
        contract_deleted = await self.entitlements.delete(user_id)

        await create_audit_log(
            action=AuditAction.USER_SUBSCRIPTIONS_DELETED,
            user_id=user_id,
            actor_id="users-events",
            resource_type="user",
            metadata={"deleted": deleted, "failed": failed, "contract_deleted": contract_deleted},
        )
        logger.info("Successfully processed USER_DELETED for user %s (deleted=%d failed=%d)", user_id, deleted, len(failed))
        return {"handled": True, "user_id": user_id, "deleted": deleted, "failed": failed}

    async def send_to_dead_letter(self, event: Any, reason: str) -> None:
        try:
            await self.db.user_event_dead_letters.insert_one({
                "original_event": event,
                "error": reason,
                "topic": DLQ_TOPIC,
                "timestamp": datetime.now(timezone.utc),
            })
            logger.warning("User event dead-lettered: %s", reason)
        except Exception as e:
            logger.error("Failed to dead-letter user event: %s", e)
