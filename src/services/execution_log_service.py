"""
Execution Log Service
Persists one ExecutionLogData per flow run and mirrors every transition to the
monitor event stream. Every write is best-effort: failures are logged, never raised.
"""
import time
import traceback
from typing import Optional, Dict, Any

from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Services
from services.flow_event_service import FlowEventService

# Models
from models.flow_data import FlowData
from models.execution_log_data import ExecutionLogData, ExecutionStep
from models.classification_data import ClassificationResult

OUTPUT_LIMIT = 500
EVENT_OUTPUT_LIMIT = 200

FINAL_EVENTS = {
    "completed": "flow_completed",
    "transferred": "flow_transferred",
    "failed": "flow_failed",
}


def _truncate(value: Any, limit: int) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text[:limit]


class ExecutionLogService:
    def __init__(self, log_util: LogUtil, flow_db: FlowDB, flow_event_service: FlowEventService):
        self.log_util = log_util
        self.flow_db = flow_db
        self.flow_event_service = flow_event_service

    async def start_run(
        self,
        contact_id: str,
        flow: FlowData,
        trigger_message: str,
        classification: Optional[ClassificationResult] = None
    ) -> Optional[str]:
        """
        Create a running log for a new flow run.

        Returns:
            The log ID, or None when the log could not be written
        """
        trigger_type = flow.triggerConfig.type if flow.triggerConfig is not None else None
        log_id = None
        try:
            log_id = await self.flow_db.create_execution_log(ExecutionLogData(
                flow_id=flow.id or "",
                flow_name=flow.name,
                flow_slug=flow.slug,
                contact_id=contact_id,
                trigger_type=trigger_type,
                trigger_message=trigger_message,
                classification=classification.model_dump() if classification else None
            ))
        except Exception as e:
            self.log_util.error(
                service_name="ExecutionLogService",
                message=f"[EXECUTION_LOG] ❌ Could not create log for flow {flow.slug}: {str(e)}\n{traceback.format_exc()}"
            )

        self.flow_event_service.emit("flow_started", {
            "execution_log_id": log_id,
            "flow_id": flow.id,
            "flow_slug": flow.slug,
            "contact_id": contact_id,
            "trigger_type": trigger_type,
            "trigger_message": _truncate(trigger_message, EVENT_OUTPUT_LIMIT)
        })
        return log_id

    def node_started(self, log_id: Optional[str], contact_id: str, flow: FlowData, node: Any) -> None:
        self.flow_event_service.emit("node_started", {
            "execution_log_id": log_id,
            "flow_id": flow.id,
            "contact_id": contact_id,
            "node_id": node.id,
            "node_type": node.type
        })

    async def add_step(
        self,
        log_id: Optional[str],
        contact_id: str,
        node: Any,
        started_at: float,
        output: Any = None,
        status: str = "success"
    ) -> None:
        """
        Append a step. started_at is a time.monotonic() reading taken before the node ran.
        """
        duration_ms = int((time.monotonic() - started_at) * 1000)
        step = ExecutionStep(
            node_id=node.id,
            node_type=node.type,
            node_name=node.name,
            status=status,
            output=_truncate(output, OUTPUT_LIMIT),
            duration_ms=duration_ms
        )
        if log_id:
            try:
                await self.flow_db.append_execution_step(log_id, step)
            except Exception as e:
                self.log_util.error(
                    service_name="ExecutionLogService",
                    message=f"[EXECUTION_LOG] ❌ Could not append step {node.id} to {log_id}: {str(e)}"
                )

        self.flow_event_service.emit("node_completed", {
            "execution_log_id": log_id,
            "contact_id": contact_id,
            "node_id": node.id,
            "node_type": node.type,
            "status": status,
            "duration_ms": duration_ms,
            "output": _truncate(output, EVENT_OUTPUT_LIMIT)
        })

    async def update_variables(self, log_id: Optional[str], variables: Dict[str, Any]) -> None:
        if not log_id:
            return
        try:
            await self.flow_db.update_execution_log_variables(log_id, variables)
        except Exception as e:
            self.log_util.error(
                service_name="ExecutionLogService",
                message=f"[EXECUTION_LOG] ❌ Could not update variables of {log_id}: {str(e)}"
            )

    async def finalize(
        self,
        log_id: Optional[str],
        contact_id: str,
        status: str,
        final_node: Any = None,
        error_message: Optional[str] = None
    ) -> bool:
        """
        Move the log to completed, transferred or failed.
        A log is finalized once; later calls are ignored and return False.
        """
        if not log_id:
            return False

        final_node_id = final_node.id if final_node is not None else None
        final_node_type = final_node.type if final_node is not None else None
        try:
            finalized = await self.flow_db.finalize_execution_log(
                log_id,
                status,
                final_node_id=final_node_id,
                final_node_type=final_node_type,
                error_message=error_message,
                error_node_id=final_node_id if status == "failed" else None
            )
        except Exception as e:
            self.log_util.error(
                service_name="ExecutionLogService",
                message=f"[EXECUTION_LOG] ❌ Could not finalize {log_id}: {str(e)}"
            )
            return False

        if not finalized:
            self.log_util.debug(
                service_name="ExecutionLogService",
                message=f"[EXECUTION_LOG] Log {log_id} already finalized, ignoring {status}"
            )
            return False

        self.log_util.info(
            service_name="ExecutionLogService",
            message=f"[EXECUTION_LOG] Log {log_id} finalized as {status} for {contact_id}"
        )
        self.flow_event_service.emit(FINAL_EVENTS.get(status, "flow_failed"), {
            "execution_log_id": log_id,
            "contact_id": contact_id,
            "status": status,
            "final_node_id": final_node_id,
            "error_message": error_message
        })
        return True
