from fastapi import APIRouter
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.config_cache_service import ConfigCacheService

# Models
from models.engine_config_data import EngineConfig

# Exceptions
from exceptions.flow_exception import FlowException


def create_engine_config_api(
    log_util: LogUtil,
    config_cache_service: ConfigCacheService
) -> APIRouter:
    router = APIRouter(
        prefix="/engine-config",
        tags=["engine-config"],
    )

    @router.get("")
    async def get_engine_config():
        try:
            config = await config_cache_service.get_config()
            return config.model_dump()
        except FlowException as e:
            log_util.error(service_name="EngineConfigAPI", message=f"Error getting engine config: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="EngineConfigAPI", message=f"Error getting engine config: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.put("")
    async def update_engine_config(config: EngineConfig):
        """
        Replace the engine configuration. The cache is invalidated so the next
        message sees the new values.
        """
        try:
            saved = await config_cache_service.update_config(config)
            return saved.model_dump()
        except FlowException as e:
            log_util.error(service_name="EngineConfigAPI", message=f"Error updating engine config: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="EngineConfigAPI", message=f"Error updating engine config: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
