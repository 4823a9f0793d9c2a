import time
from typing import Optional

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Models
from models.engine_config_data import EngineConfig


class ConfigCacheService:
    """
    TTL cache over the engine_config document.
    A failed reload keeps serving the last good config (or defaults when none was ever loaded).
    """
    def __init__(self, log_util: LogUtil, flow_db: FlowDB, ttl_seconds: int = 60):
        self.log_util = log_util
        self.flow_db = flow_db
        self.ttl_seconds = ttl_seconds
        self._config: Optional[EngineConfig] = None
        self._loaded_at: Optional[float] = None

    def _is_fresh(self) -> bool:
        return (
            self._config is not None
            and self._loaded_at is not None
            and time.monotonic() - self._loaded_at < self.ttl_seconds
        )

    async def get_config(self) -> EngineConfig:
        if self._is_fresh():
            return self._config

        try:
            config = await self.flow_db.get_engine_config()
            self._config = config or EngineConfig()
            self.log_util.info(
                service_name="ConfigCacheService",
                message=f"[CONFIG] Engine config loaded ({'stored' if config else 'defaults'})"
            )
        except Exception as e:
            self.log_util.error(
                service_name="ConfigCacheService",
                message=f"[CONFIG] ❌ Failed to load engine config, serving {'cached' if self._config else 'defaults'}: {str(e)}"
            )
            if self._config is None:
                self._config = EngineConfig()
        self._loaded_at = time.monotonic()
        return self._config

    def invalidate(self) -> None:
        self._loaded_at = None

    async def update_config(self, config: EngineConfig) -> EngineConfig:
        saved = await self.flow_db.save_engine_config(config)
        self.invalidate()
        self.log_util.info(service_name="ConfigCacheService", message="[CONFIG] ✅ Engine config updated, cache invalidated")
        return saved or config
