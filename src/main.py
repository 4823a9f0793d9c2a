import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db import FlowDB

# Services
from services.session_store import SessionStore
from services.flow_event_service import FlowEventService
from services.config_cache_service import ConfigCacheService
from services.flow_service import FlowService
from services.classifier_service import ClassifierService
from services.completion_service import CompletionService
from services.whatsapp_flow_service import WhatsAppFlowService
from services.execution_log_service import ExecutionLogService
from services.trigger_identification_service import TriggerIdentificationService
from services.reply_validation_service import ReplyValidationService
from services.process_internal_node_service import ProcessInternalNodeService
from services.webhook_node_service import WebhookNodeService
from services.action_service import ActionService
from services.node_identification_service import NodeIdentificationService
from services.interruption_service import InterruptionService
from services.knowledge_retrieval_service import KnowledgeRetrievalService
from services.response_pacing_service import ResponsePacingService
from services.knowledge_fallback_service import KnowledgeFallbackService
from services.user_state_service import UserStateService

# APIs
from apis.flow_api import create_flow_api
from apis.webhook_message_api import create_webhook_message_api
from apis.flow_logs_api import create_flow_logs_api
from apis.engine_config_api import create_engine_config_api
from apis.session_api import create_session_api
from apis.flow_monitor_api import create_flow_monitor_api

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

# Shared state
session_store = SessionStore(log_util=log_util)
flow_event_service = FlowEventService(log_util=log_util)
config_cache_service = ConfigCacheService(
    log_util=log_util,
    flow_db=flow_db,
    ttl_seconds=environment_utils.get_env_variable("CONFIG_CACHE_TTL_SECONDS")
)

# Flow catalogue and classification
flow_service = FlowService(
    log_util=log_util,
    flow_db=flow_db,
    reload_interval_seconds=environment_utils.get_env_variable("FLOW_RELOAD_SECONDS")
)
classifier_service = ClassifierService(
    log_util=log_util,
    flow_db=flow_db,
    reload_interval_seconds=environment_utils.get_env_variable("FLOW_RELOAD_SECONDS")
)

# Outbound providers
completion_service = CompletionService(log_util=log_util, environment_utils=environment_utils)
whatsapp_flow_service = WhatsAppFlowService(log_util=log_util, environment_utils=environment_utils)

execution_log_service = ExecutionLogService(
    log_util=log_util,
    flow_db=flow_db,
    flow_event_service=flow_event_service
)

trigger_identification_service = TriggerIdentificationService(log_util=log_util, flow_service=flow_service)
reply_validation_service = ReplyValidationService(log_util=log_util)
process_internal_node_service = ProcessInternalNodeService(log_util=log_util)
webhook_node_service = WebhookNodeService(log_util=log_util)
action_service = ActionService(
    log_util=log_util,
    flow_db=flow_db,
    notify_webhook_url=environment_utils.get_env_variable("NOTIFY_WEBHOOK_URL")
)

# Initialize NodeIdentificationService
node_identification_service = NodeIdentificationService(
    log_util=log_util,
    flow_db=flow_db,
    session_store=session_store,
    flow_service=flow_service,
    whatsapp_flow_service=whatsapp_flow_service,
    completion_service=completion_service,
    execution_log_service=execution_log_service,
    process_internal_node_service=process_internal_node_service,
    webhook_node_service=webhook_node_service,
    action_service=action_service,
    max_steps=environment_utils.get_env_variable("MAX_STEPS_PER_INVOCATION"),
    message_pacing_seconds=environment_utils.get_env_variable("MESSAGE_PACING_SECONDS")
)

interruption_service = InterruptionService(
    log_util=log_util,
    classifier_service=classifier_service,
    flow_service=flow_service
)

# Knowledge fallback
knowledge_retrieval_service = KnowledgeRetrievalService(log_util=log_util, flow_db=flow_db)
response_pacing_service = ResponsePacingService(
    log_util=log_util,
    flow_db=flow_db,
    whatsapp_flow_service=whatsapp_flow_service
)
knowledge_fallback_service = KnowledgeFallbackService(
    log_util=log_util,
    flow_db=flow_db,
    knowledge_retrieval_service=knowledge_retrieval_service,
    completion_service=completion_service,
    response_pacing_service=response_pacing_service
)

user_state_service = UserStateService(
    log_util=log_util,
    flow_db=flow_db,
    session_store=session_store,
    flow_service=flow_service,
    trigger_identification_service=trigger_identification_service,
    reply_validation_service=reply_validation_service,
    node_identification_service=node_identification_service,
    interruption_service=interruption_service,
    knowledge_fallback_service=knowledge_fallback_service,
    execution_log_service=execution_log_service,
    config_cache_service=config_cache_service,
    classifier_service=classifier_service,
    whatsapp_flow_service=whatsapp_flow_service
)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    try:
        await flow_db.ensure_indexes()
    except Exception as e:
        log_util.error(service_name="FlowEngineService", message=f"Index creation failed, continuing: {e}")

    flows = await flow_service.reload_flows()
    log_util.info(service_name="FlowEngineService", message=f"Loaded {len(flows)} active flows")

    try:
        rule_count = await classifier_service.load_rules()
        log_util.info(service_name="FlowEngineService", message=f"Loaded {rule_count} classifier rules")
    except Exception as e:
        log_util.error(service_name="FlowEngineService", message=f"Classifier rules not loaded, continuing: {e}")

    log_util.info(service_name="FlowEngineService", message="Application startup complete")

    yield

    # Shutdown
    flow_db.close()
    log_util.info(service_name="FlowEngineService", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="flow engine service",
    description="Conversational flow engine with classification, interruption handling and knowledge fallback",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inbound messages from the channel gateway
app.include_router(create_webhook_message_api(
    log_util=log_util,
    user_state_service=user_state_service,
    session_store=session_store
))

# Flow management APIs
app.include_router(create_flow_api(
    log_util=log_util,
    flow_service=flow_service,
    trigger_identification_service=trigger_identification_service,
    classifier_service=classifier_service
))

# Execution logs
app.include_router(create_flow_logs_api(log_util=log_util, flow_db=flow_db))

# Engine configuration
app.include_router(create_engine_config_api(log_util=log_util, config_cache_service=config_cache_service))

# Live sessions
app.include_router(create_session_api(
    log_util=log_util,
    session_store=session_store,
    user_state_service=user_state_service
))

# Execution monitor
app.include_router(create_flow_monitor_api(
    log_util=log_util,
    flow_event_service=flow_event_service,
    session_store=session_store
))

# Health check endpoint
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "flow_engine_service",
        "active_sessions": session_store.active_count()
    }

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="FlowEngineService", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": str(exc),
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="FlowEngineService", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        },
        headers={"Content-Type": "application/json"}
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
