from typing import Optional
from fastapi import APIRouter, Query
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Exceptions
from exceptions.flow_exception import FlowException


def create_flow_logs_api(
    log_util: LogUtil,
    flow_db: FlowDB
) -> APIRouter:
    """
    Read-only access to execution logs for the operator dashboard.
    """
    router = APIRouter(
        prefix="/flow-logs",
        tags=["flow-logs"],
    )

    @router.get("/list")
    async def get_execution_logs(
        flow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = Query(50, ge=1, le=200),
        skip: int = Query(0, ge=0)
    ):
        try:
            logs = await flow_db.get_execution_logs(flow_id=flow_id, contact_id=contact_id, status=status, limit=limit, skip=skip)
            return {
                "count": len(logs),
                "logs": [log.model_dump(exclude={"steps", "variables"}) for log in logs]
            }
        except FlowException as e:
            log_util.error(service_name="FlowLogsAPI", message=f"Error listing execution logs: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowLogsAPI", message=f"Error listing execution logs: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/detail/{log_id}")
    async def get_execution_log(log_id: str):
        try:
            log = await flow_db.get_execution_log(log_id)
            if log is None:
                raise HTTPException(status_code=404, detail=f"Execution log {log_id} not found")
            return log.model_dump()
        except HTTPException:
            raise
        except FlowException as e:
            log_util.error(service_name="FlowLogsAPI", message=f"Error getting execution log: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowLogsAPI", message=f"Error getting execution log: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/stats")
    async def get_execution_log_stats(flow_id: Optional[str] = None):
        try:
            return await flow_db.get_execution_log_stats(flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowLogsAPI", message=f"Error getting execution log stats: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowLogsAPI", message=f"Error getting execution log stats: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
