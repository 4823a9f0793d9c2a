from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from bson.errors import InvalidId
import urllib.parse
import threading
import asyncio
import re
from typing import Optional, List, Dict, Any
from datetime import datetime
import weakref
from pymongo import ASCENDING, DESCENDING, TEXT, ReturnDocument
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import FlowDBException

# Models
from models.flow_data import FlowData
from models.execution_log_data import ExecutionLogData, ExecutionStep
from models.contact_profile import ContactProfile, CompletedFlowData, GeneratedMessageData
from models.engine_config_data import EngineConfig
from models.classification_data import ClassifierRule
from models.knowledge_data import KnowledgeItem, PriceRecord

"""
Database class for flow operations
"""
class FlowDB:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo credentials
        self.username = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_USERNAME"))
        self.password = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_PASSWORD"))
        self.auth_source = self.environment_utils.get_env_variable("MONGO_AUTH_SOURCE")
        self.host = self.environment_utils.get_env_variable("MONGO_HOST")
        self.port = int(self.environment_utils.get_env_variable("MONGO_PORT"))
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # MongoDB client - will be initialized lazily on first use
        # Use a dictionary keyed by event loop ID to support multiple event loops
        self._clients = {}  # {loop_id: (client, db, collections_dict)}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _build_connection_uri(self) -> str:
        if self.username and self.password:
            return f"mongodb://{self.username}:{self.password}@{self.host}:{self.port}/?authSource={self.auth_source}"
        return f"mongodb://{self.host}:{self.port}/"

    def _get_client_for_current_loop(self):
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Returns a dictionary with 'client', 'db', and 'collections' for the current event loop.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        # Check if we already have a client for this event loop
        if loop_id in self._clients:
            return self._clients[loop_id]

        # Need to create a new client for this event loop
        with self._client_lock:
            # Double-check after acquiring lock (another thread might have created it)
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = AsyncIOMotorClient(
                self._build_connection_uri(),
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            db = client[self.db_name]

            client_data = {
                'client': client,
                'db': db,
                'collections': self._initialize_collections_for_client(db),
                'loop': weakref.ref(loop)  # Weak reference to avoid circular references
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="FlowDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )

            return client_data

    def _initialize_collections_for_client(self, db):
        """
        Initialize MongoDB collections for a given database instance
        Returns a dictionary of collections
        """
        return {
            'flows': db.flows,
            'execution_logs': db.execution_logs,
            'contact_profiles': db.contact_profiles,
            'completed_flows': db.completed_flows,
            'engine_config': db.engine_config,
            'classifier_rules': db.classifier_rules,
            'learned_qa_pairs': db.learned_qa_pairs,
            'faq_entries': db.faq_entries,
            'product_prices': db.product_prices,
            'conversation_messages': db.conversation_messages,
            'generated_messages': db.generated_messages,
            'leads': db.leads,
            'tickets': db.tickets
        }

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="FlowDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )

            self._clients.clear()

            self.log_util.info(
                service_name="FlowDB",
                message="All MongoDB clients closed"
            )

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Handle database operation errors with appropriate logging and exception wrapping.

        Args:
            operation_name: Name of the operation that failed
            error: The exception that occurred
        """
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="FlowDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        else:
            self.log_util.error(
                service_name="FlowDB",
                message=f"Error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database error: {str(error)}",
                status_code=500
            )

    @staticmethod
    def _to_object_id(document_id: str) -> Any:
        """Documents imported from JSON may carry plain string IDs."""
        try:
            return ObjectId(document_id)
        except (InvalidId, TypeError):
            return document_id

    @staticmethod
    def _with_id(document: Dict[str, Any]) -> Dict[str, Any]:
        document["id"] = str(document.pop("_id"))
        return document

    async def ensure_indexes(self) -> None:
        """
        Create the indexes the engine relies on (text search, uniqueness of completions).
        """
        client_data = self._get_client_for_current_loop()
        collections = client_data['collections']
        try:
            await collections['flows'].create_index([("isActive", ASCENDING), ("isDefault", ASCENDING), ("priority", ASCENDING)])
            await collections['execution_logs'].create_index([("flow_id", ASCENDING), ("started_at", DESCENDING)])
            await collections['execution_logs'].create_index([("contact_id", ASCENDING), ("started_at", DESCENDING)])
            await collections['contact_profiles'].create_index([("contact_id", ASCENDING)], unique=True)
            await collections['completed_flows'].create_index([("contact_id", ASCENDING), ("flow_id", ASCENDING)], unique=True)
            await collections['learned_qa_pairs'].create_index([("question", TEXT), ("answer", TEXT)])
            await collections['faq_entries'].create_index([("title", TEXT), ("question", TEXT), ("answer", TEXT)])
            await collections['conversation_messages'].create_index([("session_id", ASCENDING), ("created_at", DESCENDING)])
            self.log_util.info(service_name="FlowDB", message="MongoDB indexes ensured ✅")
        except Exception as e:
            self._handle_db_operation("ensure_indexes", e)

    # Flow operations
    async def get_active_flows(self) -> List[FlowData]:
        """
        Get every active flow, non-default flows first by priority, default flows last.
        Raises FlowDBException so callers can keep their previous snapshot.
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flows'].find({"isActive": True}).sort(
                [("isDefault", ASCENDING), ("priority", ASCENDING), ("_id", ASCENDING)]
            )
            flows: List[FlowData] = []
            async for flow_dict in cursor:
                flows.append(FlowData.model_validate(self._with_id(flow_dict)))
            return flows
        except Exception as e:
            self._handle_db_operation("get_active_flows", e)

    async def get_flows(self) -> List[FlowData]:
        """
        Get all flows, active or not
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flows'].find({}).sort([("priority", ASCENDING), ("_id", ASCENDING)])
            flows: List[FlowData] = []
            async for flow_dict in cursor:
                flows.append(FlowData.model_validate(self._with_id(flow_dict)))
            return flows
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting flows: {str(e)}")
            return []

    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        """
        Get a flow by ID
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].find_one({"_id": self._to_object_id(flow_id)})
            if result is None:
                return None
            return FlowData.model_validate(self._with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting flow: {str(e)}")
            return None

    async def increment_flow_stats(self, flow_id: str, field: str) -> bool:
        """
        Increment times_triggered or times_completed on a flow
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].update_one(
                {"_id": self._to_object_id(flow_id)},
                {"$inc": {field: 1}}
            )
            return result.modified_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error incrementing flow stats: {str(e)}")
            return False

    # Execution log operations
    async def create_execution_log(self, execution_log: ExecutionLogData) -> Optional[str]:
        """
        Insert a running execution log and return its ID
        """
        client_data = self._get_client_for_current_loop()
        try:
            log_dict = execution_log.model_dump(exclude={"id"})
            result = await client_data['collections']['execution_logs'].insert_one(log_dict)
            if result.inserted_id is None:
                self.log_util.error(service_name="FlowDB", message="Failed to create execution log")
                return None
            return str(result.inserted_id)
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error creating execution log: {str(e)}")
            return None

    async def append_execution_step(self, log_id: str, step: ExecutionStep) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['execution_logs'].update_one(
                {"_id": self._to_object_id(log_id)},
                {"$push": {"steps": step.model_dump()}}
            )
            return result.modified_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error appending execution step: {str(e)}")
            return False

    async def update_execution_log_variables(self, log_id: str, variables: Dict[str, Any]) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['execution_logs'].update_one(
                {"_id": self._to_object_id(log_id)},
                {"$set": {"variables": variables}}
            )
            return result.matched_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error updating execution log variables: {str(e)}")
            return False

    async def finalize_execution_log(self, log_id: str, status: str, final_node_id: Optional[str] = None,
                                     final_node_type: Optional[str] = None, error_message: Optional[str] = None,
                                     error_node_id: Optional[str] = None) -> bool:
        """
        Move a running log to a terminal status.
        Only a log still in running status is updated, so a log is finalized at most once.

        Returns:
            True when this call finalized the log
        """
        client_data = self._get_client_for_current_loop()
        collection = client_data['collections']['execution_logs']
        try:
            existing = await collection.find_one({"_id": self._to_object_id(log_id)}, {"started_at": 1, "status": 1})
            if existing is None or existing.get("status") != "running":
                return False

            completed_at = datetime.utcnow()
            update = {
                "status": status,
                "completed_at": completed_at,
                "final_node_id": final_node_id,
                "final_node_type": final_node_type,
                "error_message": error_message,
                "error_node_id": error_node_id,
            }
            if existing.get("started_at"):
                update["total_duration_ms"] = int((completed_at - existing["started_at"]).total_seconds() * 1000)

            result = await collection.update_one(
                {"_id": self._to_object_id(log_id), "status": "running"},
                {"$set": update}
            )
            return result.modified_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error finalizing execution log: {str(e)}")
            return False

    async def get_execution_log(self, log_id: str) -> Optional[ExecutionLogData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['execution_logs'].find_one({"_id": self._to_object_id(log_id)})
            if result is None:
                return None
            return ExecutionLogData.model_validate(self._with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting execution log: {str(e)}")
            return None

    async def get_execution_logs(self, flow_id: Optional[str] = None, contact_id: Optional[str] = None,
                                 status: Optional[str] = None, limit: int = 50, skip: int = 0) -> List[ExecutionLogData]:
        """
        List execution logs, newest first
        """
        client_data = self._get_client_for_current_loop()
        try:
            query: Dict[str, Any] = {}
            if flow_id:
                query["flow_id"] = flow_id
            if contact_id:
                query["contact_id"] = contact_id
            if status:
                query["status"] = status

            cursor = client_data['collections']['execution_logs'].find(query).sort("started_at", DESCENDING).skip(skip).limit(limit)
            logs: List[ExecutionLogData] = []
            async for log_dict in cursor:
                logs.append(ExecutionLogData.model_validate(self._with_id(log_dict)))
            return logs
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting execution logs: {str(e)}")
            return []

    async def get_execution_log_stats(self, flow_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Count logs per status and average duration of finished runs
        """
        client_data = self._get_client_for_current_loop()
        try:
            pipeline: List[Dict[str, Any]] = []
            if flow_id:
                pipeline.append({"$match": {"flow_id": flow_id}})
            pipeline.append({"$group": {
                "_id": "$status",
                "count": {"$sum": 1},
                "avg_duration_ms": {"$avg": "$total_duration_ms"}
            }})

            cursor = client_data['collections']['execution_logs'].aggregate(pipeline)
            by_status: Dict[str, Any] = {}
            total = 0
            async for doc in cursor:
                by_status[doc["_id"]] = {"count": doc["count"], "avg_duration_ms": doc.get("avg_duration_ms")}
                total += doc["count"]

            return {"total": total, "by_status": by_status}
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting execution log stats: {str(e)}")
            return {"total": 0, "by_status": {}}

    # Contact profile operations
    async def get_contact_profile(self, contact_id: str) -> Optional[ContactProfile]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['contact_profiles'].find_one({"contact_id": contact_id})
            if result is None:
                return None
            return ContactProfile.model_validate(self._with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting contact profile: {str(e)}")
            return None

    async def save_contact_profile_fields(self, contact_id: str, fields: Dict[str, Any], name: Optional[str] = None) -> Optional[ContactProfile]:
        """
        Merge fields into the contact profile, creating it when missing
        """
        client_data = self._get_client_for_current_loop()
        try:
            update_fields: Dict[str, Any] = {f"fields.{key}": value for key, value in fields.items()}
            update_fields["updated_at"] = datetime.utcnow()
            if name:
                update_fields["name"] = name

            result = await client_data['collections']['contact_profiles'].find_one_and_update(
                {"contact_id": contact_id},
                {"$set": update_fields, "$setOnInsert": {"contact_id": contact_id, "created_at": datetime.utcnow()}},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            return ContactProfile.model_validate(self._with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error saving contact profile: {str(e)}")
            return None

    # Completed flow operations
    async def mark_flow_completed(self, contact_id: str, flow_id: str, flow_slug: Optional[str] = None) -> Optional[CompletedFlowData]:
        """
        Record a completion; repeated completions bump the counter on the same record
        """
        client_data = self._get_client_for_current_loop()
        try:
            now = datetime.utcnow()
            result = await client_data['collections']['completed_flows'].find_one_and_update(
                {"contact_id": contact_id, "flow_id": flow_id},
                {
                    "$set": {"last_completed_at": now, "flow_slug": flow_slug},
                    "$inc": {"completion_count": 1},
                    "$setOnInsert": {"first_completed_at": now}
                },
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            return CompletedFlowData.model_validate(self._with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error marking flow completed: {str(e)}")
            return None

    async def has_completed_flow(self, contact_id: str, flow_id: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['completed_flows'].find_one(
                {"contact_id": contact_id, "flow_id": flow_id}, {"_id": 1}
            )
            return result is not None
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error checking completed flow: {str(e)}")
            return False

    # Engine config operations
    async def get_engine_config(self) -> Optional[EngineConfig]:
        """
        Get the engine config document. Raises FlowDBException so the cache can fall back.
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['engine_config'].find_one({"_id": "engine"})
            if result is None:
                return None
            result.pop("_id", None)
            return EngineConfig.model_validate(result)
        except Exception as e:
            self._handle_db_operation("get_engine_config", e)

    async def save_engine_config(self, config: EngineConfig) -> Optional[EngineConfig]:
        client_data = self._get_client_for_current_loop()
        try:
            config_dict = config.model_dump()
            config_dict["updated_at"] = datetime.utcnow()
            result = await client_data['collections']['engine_config'].find_one_and_update(
                {"_id": "engine"},
                {"$set": config_dict},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            result.pop("_id", None)
            return EngineConfig.model_validate(result)
        except Exception as e:
            self._handle_db_operation("save_engine_config", e)

    # Classifier operations
    async def get_classifier_rules(self) -> List[ClassifierRule]:
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['classifier_rules'].find({"is_active": True}).sort("priority", DESCENDING)
            rules: List[ClassifierRule] = []
            async for rule_dict in cursor:
                rules.append(ClassifierRule.model_validate(self._with_id(rule_dict)))
            return rules
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting classifier rules: {str(e)}")
            return []

    # Knowledge operations
    async def search_learned_pairs(self, text: str, min_quality: float, limit: int) -> List[KnowledgeItem]:
        """
        Full-text search over approved learned Q&A pairs
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['learned_qa_pairs'].find(
                {"$text": {"$search": text}, "is_active": True, "quality_score": {"$gte": min_quality}},
                {"score": {"$meta": "textScore"}, "question": 1, "answer": 1, "quality_score": 1}
            ).sort([("score", {"$meta": "textScore"})]).limit(limit)
            items: List[KnowledgeItem] = []
            async for doc in cursor:
                items.append(KnowledgeItem(
                    source="learned",
                    question=doc.get("question", ""),
                    answer=doc.get("answer", ""),
                    score=float(doc.get("score", 0)),
                    quality_score=doc.get("quality_score")
                ))
            return items
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error searching learned pairs: {str(e)}")
            return []

    async def search_faq_entries(self, text: str, limit: int) -> List[KnowledgeItem]:
        """
        Full-text search over curated FAQ entries
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['faq_entries'].find(
                {"$text": {"$search": text}, "is_active": {"$ne": False}},
                {"score": {"$meta": "textScore"}, "title": 1, "question": 1, "answer": 1}
            ).sort([("score", {"$meta": "textScore"})]).limit(limit)
            items: List[KnowledgeItem] = []
            async for doc in cursor:
                items.append(KnowledgeItem(
                    source="faq",
                    title=doc.get("title"),
                    question=doc.get("question", ""),
                    answer=doc.get("answer", ""),
                    score=float(doc.get("score", 0))
                ))
            return items
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error searching FAQ entries: {str(e)}")
            return []

    async def find_product_prices(self, product_name: Optional[str], variant: Optional[str] = None, limit: int = 5) -> List[PriceRecord]:
        client_data = self._get_client_for_current_loop()
        try:
            query: Dict[str, Any] = {"is_active": True}
            if product_name:
                query["product_name"] = {"$regex": re.escape(product_name), "$options": "i"}
            if variant:
                query["variant"] = {"$regex": re.escape(variant), "$options": "i"}

            cursor = client_data['collections']['product_prices'].find(query).sort("price", ASCENDING).limit(limit)
            prices: List[PriceRecord] = []
            async for doc in cursor:
                doc.pop("_id", None)
                prices.append(PriceRecord.model_validate(doc))
            return prices
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error finding product prices: {str(e)}")
            return []

    async def get_recent_messages(self, session_id: str, limit: int) -> List[Dict[str, Any]]:
        """
        Last messages of a conversation, oldest first
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['conversation_messages'].find(
                {"session_id": session_id}, {"_id": 0, "direction": 1, "content": 1, "created_at": 1}
            ).sort("created_at", DESCENDING).limit(limit)
            messages = [doc async for doc in cursor]
            messages.reverse()
            return messages
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting recent messages: {str(e)}")
            return []

    async def save_generated_message(self, message: GeneratedMessageData) -> Optional[str]:
        client_data = self._get_client_for_current_loop()
        try:
            message_dict = message.model_dump(exclude={"id"})
            result = await client_data['collections']['generated_messages'].insert_one(message_dict)
            if message.session_id:
                await client_data['collections']['conversation_messages'].insert_one({
                    "session_id": message.session_id,
                    "contact_id": message.contact_id,
                    "direction": "outbound",
                    "content": message.text,
                    "is_ai_generated": True,
                    "created_at": message.created_at
                })
            return str(result.inserted_id)
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error saving generated message: {str(e)}")
            return None

    # Action side effects
    async def save_lead(self, contact_id: str, data: Dict[str, Any]) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            await client_data['collections']['leads'].update_one(
                {"contact_id": contact_id},
                {"$set": {**data, "updated_at": datetime.utcnow()}, "$setOnInsert": {"created_at": datetime.utcnow()}},
                upsert=True
            )
            return True
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error saving lead: {str(e)}")
            return False

    async def create_ticket(self, contact_id: str, data: Dict[str, Any]) -> Optional[str]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['tickets'].insert_one({
                "contact_id": contact_id,
                "status": "open",
                **data,
                "created_at": datetime.utcnow()
            })
            return str(result.inserted_id)
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error creating ticket: {str(e)}")
            return None
