# /chatflow/services/db_service.py

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from chatflow.config.settings import settings
from chatflow.models.flow import Flow
from chatflow.models.session import FlowSession, SessionStatus
from chatflow.utils.circuit_breaker import CircuitBreaker
from chatflow.utils.metrics import database_operations_counter
from chatflow.workflows.errors import PersistenceError
from chatflow.workflows.stores import FlowStore, SessionStore

logger = logging.getLogger(__name__)

# Constants
DEFAULT_QUERY_LIMIT = 100
FLOWS_COLLECTION = "chatbot_flows"
SESSIONS_COLLECTION = "chatbot_flow_sessions"


class DatabaseService:
    """
    Owns the MongoDB client and the collections the flow engine persists to.
    Flow and session documents are keyed by string ids so they can be passed
    around without ObjectId conversions.
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
            self.circuit_breaker = CircuitBreaker("database")
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    @staticmethod
    def new_id() -> str:
        return str(ObjectId())

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _safe_db_operation(self, operation, default_return: Any = None) -> Any:
        """
        Runs a read through the circuit breaker; failures are logged and
        `default_return` comes back instead.
        """
        try:
            return await self.circuit_breaker.call(operation)
        except Exception as e:
            logger.exception(f"Database operation failed: {type(e).__name__}")
            database_operations_counter.labels(operation="db_error", status="failed").inc()
            return default_return

    async def _read(self, name: str, operation) -> Any:
        """
        Runs a read the flow engine depends on. Unlike `_safe_db_operation`,
        failures raise PersistenceError so they are never mistaken for a
        missing document.
        """
        try:
            result = await self.circuit_breaker.call(operation)
        except Exception as e:
            logger.error(f"Database read '{name}' failed: {type(e).__name__}: {e}")
            database_operations_counter.labels(operation=name, status="failed").inc()
            raise PersistenceError(name) from e
        database_operations_counter.labels(operation=name, status="success").inc()
        return result

    async def _write(self, name: str, operation) -> Any:
        """Runs a write through the circuit breaker. Failures raise PersistenceError."""
        try:
            result = await self.circuit_breaker.call(operation)
        except Exception as e:
            logger.error(f"Database write '{name}' failed: {type(e).__name__}: {e}")
            database_operations_counter.labels(operation=name, status="failed").inc()
            raise PersistenceError(name) from e
        database_operations_counter.labels(operation=name, status="success").inc()
        return result

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            (FLOWS_COLLECTION, [("organization_id", 1), ("is_active", 1), ("created_at", 1)], {}),
            (FLOWS_COLLECTION, [("organization_id", 1), ("updated_at", -1)], {}),
            (SESSIONS_COLLECTION, [("customer_id", 1), ("status", 1)], {}),
            (SESSIONS_COLLECTION, [("flow_id", 1), ("started_at", -1)], {}),
            (SESSIONS_COLLECTION, [("status", 1), ("resume_at", 1)], {}),
            ("customers", [("organization_id", 1), ("customer_id", 1)], {}),
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

    # ==================== Customer Operations ====================

    async def assign_agent(self, organization_id: str, customer_id: str, agent_id: Optional[str]) -> bool:
        """Hands the customer's conversation over to a human agent."""
        result = await self._write(
            "assign_agent",
            lambda: self.db.customers.update_one(
                {"organization_id": organization_id, "customer_id": customer_id},
                {"$set": {
                    "assigned_agent_id": agent_id,
                    "bot_paused": True,
                    "assigned_at": self._now_utc(),
                }},
                upsert=True,
            )
        )
        return bool(result and (result.modified_count or result.upserted_id))

    async def add_customer_tag(self, organization_id: str, customer_id: str, tag: str) -> bool:
        result = await self._write(
            "add_tag",
            lambda: self.db.customers.update_one(
                {"organization_id": organization_id, "customer_id": customer_id},
                {"$addToSet": {"tags": tag}},
                upsert=True,
            )
        )
        return bool(result and (result.modified_count or result.upserted_id))


def _flow_from_doc(doc: Optional[Dict[str, Any]]) -> Optional[Flow]:
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return Flow.model_validate(doc)


def _session_from_doc(doc: Optional[Dict[str, Any]]) -> Optional[FlowSession]:
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return FlowSession.model_validate(doc)


def _session_to_doc(session: FlowSession) -> Dict[str, Any]:
    doc = session.model_dump(mode="python", exclude={"id"})
    doc["status"] = session.status.value
    return doc


class MongoFlowStore(FlowStore):
    def __init__(self, database: DatabaseService):
        self.database = database
        self.collection = database.db[FLOWS_COLLECTION]

    async def get(self, flow_id: str, organization_id: Optional[str] = None) -> Optional[Flow]:
        query: Dict[str, Any] = {"_id": flow_id}
        if organization_id:
            query["organization_id"] = organization_id
        doc = await self.database._read("get_flow", lambda: self.collection.find_one(query))
        return _flow_from_doc(doc)

    async def list_for_organization(self, organization_id: str) -> List[Flow]:
        docs = await self.database._safe_db_operation(
            lambda: self.collection.find({"organization_id": organization_id})
            .sort("updated_at", -1)
            .to_list(length=DEFAULT_QUERY_LIMIT),
            default_return=[],
        )
        return [_flow_from_doc(doc) for doc in docs]

    async def list_active(self, organization_id: str) -> List[Flow]:
        docs = await self.database._read(
            "list_active_flows",
            lambda: self.collection.find({"organization_id": organization_id, "is_active": True})
            .sort("created_at", 1)
            .to_list(length=None),
        )
        return [_flow_from_doc(doc) for doc in docs]

    async def create(self, flow: Flow) -> Flow:
        now = self.database._now_utc()
        doc = flow.model_dump(mode="python", by_alias=True, exclude={"id"})
        doc["trigger_type"] = flow.trigger_type.value
        doc.update({"_id": flow.id or self.database.new_id(), "created_at": now, "updated_at": now})
        await self.database._write("create_flow", lambda: self.collection.insert_one(doc))
        return _flow_from_doc(doc)

    async def update(self, flow_id: str, organization_id: str, fields: Dict[str, Any]) -> Optional[Flow]:
        changes = dict(fields)
        changes["updated_at"] = self.database._now_utc()
        result = await self.database._write(
            "update_flow",
            lambda: self.collection.update_one(
                {"_id": flow_id, "organization_id": organization_id}, {"$set": changes}
            ),
        )
        if not result.matched_count:
            return None
        return await self.get(flow_id, organization_id)

    async def delete(self, flow_id: str, organization_id: str) -> bool:
        result = await self.database._write(
            "delete_flow",
            lambda: self.collection.delete_one({"_id": flow_id, "organization_id": organization_id}),
        )
        return result.deleted_count > 0


class MongoSessionStore(SessionStore):
    def __init__(self, database: DatabaseService):
        self.database = database
        self.collection = database.db[SESSIONS_COLLECTION]

    async def get(self, session_id: str) -> Optional[FlowSession]:
        doc = await self.database._read("get_session", lambda: self.collection.find_one({"_id": session_id}))
        return _session_from_doc(doc)

    async def create(self, session: FlowSession) -> FlowSession:
        doc = _session_to_doc(session)
        doc.update({"_id": session.id or self.database.new_id(), "updated_at": self.database._now_utc()})
        await self.database._write("create_session", lambda: self.collection.insert_one(doc))
        return _session_from_doc(doc)

    async def get_active_for_customer(self, customer_id: str, organization_id: Optional[str] = None) -> Optional[FlowSession]:
        query: Dict[str, Any] = {"customer_id": customer_id, "status": SessionStatus.ACTIVE.value}
        if organization_id:
            query["organization_id"] = organization_id
        doc = await self.database._read(
            "get_active_session", lambda: self.collection.find_one(query, sort=[("started_at", -1)])
        )
        return _session_from_doc(doc)

    async def save(self, session: FlowSession) -> None:
        session.updated_at = self.database._now_utc()
        doc = _session_to_doc(session)
        await self.database._write(
            "save_session", lambda: self.collection.replace_one({"_id": session.id}, doc, upsert=True)
        )

    async def save_progress(self, session: FlowSession) -> None:
        changes = {
            "current_node": session.current_node,
            "variables": dict(session.variables),
            "resume_at": session.resume_at,
            "updated_at": self.database._now_utc(),
        }
        await self.database._write(
            "save_progress", lambda: self.collection.update_one({"_id": session.id}, {"$set": changes})
        )

    async def list_for_flow(self, flow_id: str, limit: int = DEFAULT_QUERY_LIMIT) -> List[FlowSession]:
        docs = await self.database._safe_db_operation(
            lambda: self.collection.find({"flow_id": flow_id}).sort("started_at", -1).to_list(length=limit),
            default_return=[],
        )
        return [_session_from_doc(doc) for doc in docs]

    async def count_by_status(self, flow_id: str) -> Dict[str, int]:
        pipeline = [
            {"$match": {"flow_id": flow_id}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]
        rows = await self.database._safe_db_operation(
            lambda: self.collection.aggregate(pipeline).to_list(length=None), default_return=[]
        )
        return {row["_id"]: row["count"] for row in rows}

    async def list_pending_delays(self) -> List[FlowSession]:
        docs = await self.database._safe_db_operation(
            lambda: self.collection.find(
                {"status": SessionStatus.ACTIVE.value, "resume_at": {"$ne": None}}
            ).to_list(length=None),
            default_return=[],
        )
        return [_session_from_doc(doc) for doc in docs]


# Globally accessible instance
db_service = DatabaseService(settings.mongo_atlas_uri)
