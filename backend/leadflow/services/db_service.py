# /leadflow/services/db_service.py

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from pymongo import ReturnDocument

from leadflow.config.settings import settings
from leadflow.models.conversation import ConversationRecord
from leadflow.models.domain import BusinessNumber, MessageLog
from leadflow.models.flow import END
from leadflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Constants
CLOSED_STATUS = "closed"
CANDIDATE_BATCH_LIMIT = 500


class DatabaseService:
    """
    Manages all interactions with MongoDB: business numbers, flow definitions,
    conversation records and the message log.

    Conversation record writes raise on failure so a turn never continues on
    state that was not persisted; log writes are best-effort.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    def _serialize_id(self, document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Convert ObjectId to string for model parsing."""
        if document and "_id" in document:
            document["_id"] = str(document["_id"])
        return document

    def _object_id(self, obj_id: str) -> ObjectId:
        if not obj_id or not ObjectId.is_valid(obj_id):
            raise ValueError(f"Invalid record id: {obj_id!r}")
        return ObjectId(obj_id)

    def _to_record(self, document: Optional[Dict[str, Any]]) -> Optional[ConversationRecord]:
        if not document:
            return None
        return ConversationRecord.model_validate(self._serialize_id(document))

    async def _safe_db_operation(self, operation, default_return: Any = None) -> Any:
        """
        Execute a best-effort database operation, logging instead of raising.
        """
        try:
            return await operation()
        except Exception as e:
            logger.exception(f"Database operation failed: {type(e).__name__}")
            database_operations_counter.labels(operation="db_error", status="failed").inc()
            return default_return

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("phone_numbers", [("phone_number_id", 1)], {"unique": True}),
            ("bot_flows", [("flow_id", 1)], {"unique": True}),
            ("bot_nodes", [("flow_id", 1), ("node_id", 1)], {"unique": True}),
            ("conversations", [("customer_phone", 1), ("business_number_id", 1), ("created_at", -1)], {}),
            ("conversations", [("follow_up_sent", 1), ("agent_contacted", 1), ("created_at", 1)], {}),
            ("conversations", [("conversation_state", 1), ("node_follow_up_sent", 1)], {}),
            ("conversations", [("conversation_state", 1), ("completion_follow_up_sent", 1)], {}),
            ("message_logs", [("wamid", 1)], {"unique": True}),
            ("message_logs", [("customer_phone", 1), ("timestamp", -1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Business Numbers ====================

    async def get_business_number(self, phone_number_id: str) -> Optional[BusinessNumber]:
        """Look up a business number and the flow it runs."""
        document = await self._safe_db_operation(
            lambda: self.db.phone_numbers.find_one({"phone_number_id": phone_number_id})
        )
        if not document:
            return None
        return BusinessNumber.model_validate(document)

    async def upsert_business_number(
        self, phone_number_id: str, active_flow_id: str, access_token_env: Optional[str] = None, name: str = ""
    ) -> None:
        update: Dict[str, Any] = {"phone_number_id": phone_number_id, "active_flow_id": active_flow_id}
        if access_token_env:
            update["access_token_env"] = access_token_env
        if name:
            update["name"] = name
        await self.db.phone_numbers.update_one({"phone_number_id": phone_number_id}, {"$set": update}, upsert=True)

    # ==================== Flow Definitions ====================

    async def get_flow_document(self, flow_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.bot_flows.find_one({"flow_id": flow_id})

    async def get_flow_nodes(self, flow_id: str) -> List[Dict[str, Any]]:
        return await self.db.bot_nodes.find({"flow_id": flow_id}).to_list(length=None)

    async def upsert_flow(self, flow_doc: Dict[str, Any], node_docs: List[Dict[str, Any]]) -> None:
        """Replace a flow definition and its nodes (used by the flow import script)."""
        flow_id = flow_doc["flow_id"]
        await self.db.bot_flows.update_one({"flow_id": flow_id}, {"$set": flow_doc}, upsert=True)
        await self.db.bot_nodes.delete_many({"flow_id": flow_id})
        if node_docs:
            await self.db.bot_nodes.insert_many([{**doc, "flow_id": flow_id} for doc in node_docs])
        logger.info(f"Flow {flow_id} stored with {len(node_docs)} nodes.")

    # ==================== Conversation Records ====================

    async def find_active_conversation(self, customer_phone: str, business_number_id: str) -> Optional[ConversationRecord]:
        """The current record: most recent non-closed record for the key pair."""
        database_operations_counter.labels(operation="find_conversation", status="attempted").inc()
        document = await self.db.conversations.find_one(
            {
                "customer_phone": customer_phone,
                "business_number_id": business_number_id,
                "status": {"$ne": CLOSED_STATUS},
            },
            sort=[("created_at", -1)],
        )
        return self._to_record(document)

    async def find_latest_conversation(self, customer_phone: str, business_number_id: str) -> Optional[ConversationRecord]:
        """Most recent record of any status, used to seed skip flags."""
        document = await self.db.conversations.find_one(
            {"customer_phone": customer_phone, "business_number_id": business_number_id},
            sort=[("created_at", -1)],
        )
        return self._to_record(document)

    async def get_conversation(self, record_id: str) -> Optional[ConversationRecord]:
        document = await self.db.conversations.find_one({"_id": self._object_id(record_id)})
        return self._to_record(document)

    async def insert_conversation(self, record: ConversationRecord) -> ConversationRecord:
        result = await self.db.conversations.insert_one(record.to_document())
        record.id = str(result.inserted_id)
        database_operations_counter.labels(operation="create_conversation", status="success").inc()
        return record

    async def save_conversation(self, record: ConversationRecord, now: Optional[datetime] = None) -> ConversationRecord:
        """Persist the whole record and bump updated_at."""
        record.updated_at = now or self._now_utc()
        if record.id is None:
            return await self.insert_conversation(record)
        await self.db.conversations.replace_one({"_id": self._object_id(record.id)}, record.to_document())
        database_operations_counter.labels(operation="save_conversation", status="success").inc()
        return record

    async def claim_stall_follow_up(self, record_id: str, now: datetime) -> Optional[ConversationRecord]:
        """
        Atomically set follow_up_sent. Returns the claimed record, or None if
        another sweep already claimed it. updated_at is left alone: the
        cool-off window is measured from the customer's last turn.
        """
        document = await self.db.conversations.find_one_and_update(
            {"_id": self._object_id(record_id), "follow_up_sent": {"$ne": True}},
            {"$set": {"follow_up_sent": True, "follow_up_sent_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_record(document)

    async def set_conversation_flags(self, record_id: str, flags: Dict[str, Any]) -> None:
        """Scheduler bookkeeping ($set only, updated_at untouched)."""
        await self.db.conversations.update_one({"_id": self._object_id(record_id)}, {"$set": flags})
        database_operations_counter.labels(operation="set_conversation_flags", status="success").inc()

    async def get_stall_follow_up_candidates(self, cutoff: datetime) -> List[ConversationRecord]:
        """Records nobody has confirmed an agent contact for, created at or before `cutoff`."""
        cursor = self.db.conversations.find({
            "agent_contacted": {"$ne": True},
            "follow_up_sent": {"$ne": True},
            "created_at": {"$lte": cutoff},
        }).limit(CANDIDATE_BATCH_LIMIT)
        return [self._to_record(doc) for doc in await cursor.to_list(length=None)]

    async def get_node_follow_up_candidates(self) -> List[ConversationRecord]:
        cursor = self.db.conversations.find({
            "conversation_state": {"$ne": END},
            "node_follow_up_sent": False,
            "last_node_sent_at": {"$ne": None},
            "status": {"$ne": CLOSED_STATUS},
        }).limit(CANDIDATE_BATCH_LIMIT)
        return [self._to_record(doc) for doc in await cursor.to_list(length=None)]

    async def get_completion_follow_up_candidates(self) -> List[ConversationRecord]:
        cursor = self.db.conversations.find({
            "conversation_state": END,
            "completion_follow_up_sent": False,
            "ended_at": {"$ne": None},
            "status": {"$ne": CLOSED_STATUS},
        }).limit(CANDIDATE_BATCH_LIMIT)
        return [self._to_record(doc) for doc in await cursor.to_list(length=None)]

    # ==================== Message Logging ====================

    async def log_message(self, message: MessageLog) -> None:
        """Log an inbound or outbound message. Duplicate wamids are ignored."""
        async def _insert():
            try:
                await self.db.message_logs.insert_one(message.model_dump())
            except Exception as e:
                if "duplicate key" in str(e).lower():
                    logger.info(f"Message {message.wamid} already logged.")
                    return
                raise

        await self._safe_db_operation(_insert)

    async def update_message_status(self, wamid: str, status: str, failure_reason: Optional[str] = None) -> bool:
        """Reconcile a delivery status callback with the logged message."""
        update: Dict[str, Any] = {"status": status, "status_updated_at": self._now_utc()}
        if failure_reason:
            update["failure_reason"] = failure_reason
        result = await self._safe_db_operation(
            lambda: self.db.message_logs.update_one({"wamid": wamid}, {"$set": update})
        )
        return bool(result and result.matched_count > 0)


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
