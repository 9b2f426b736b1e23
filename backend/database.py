from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
import logging

from config import Settings

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self, settings: Settings):
        try:
            self.client = AsyncIOMotorClient(settings.mongo_url)
            self.db = self.client[settings.db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {settings.db_name}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for lookups and uniqueness invariants."""
        try:
            # One record per user; subscription ref unique when present
            try:
                await self.db.subscriptions.create_index("user_id", unique=True)
                # Documents store an explicit null before the first subscription; sparse would still index it
                await self.db.subscriptions.create_index(
                    "billing_subscription_ref",
                    unique=True,
                    partialFilterExpression={"billing_subscription_ref": {"$type": "string"}},
                )
            except OperationFailure as e:
                logger.warning(f"Subscription unique index note: {e}")
            await self.db.subscriptions.create_index("billing_customer_ref")
            await self.db.subscriptions.create_index("status")

            # Entitlement outbox - one desired state per user, worker scans by status + next_run_at
            await self.db.entitlement_outbox.create_index("user_id", unique=True)
            await self.db.entitlement_outbox.create_index([("status", 1), ("next_run_at", 1)])

            # Stripe webhook idempotency - duplicate event_id must not process twice
            try:
                await self.db.stripe_events.create_index("event_id", unique=True)
            except OperationFailure:
                pass

            # User lifecycle dead letters and audit trail
            await self.db.user_event_dead_letters.create_index([("timestamp", -1)])
            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
