"""
System log service - writes engine events to both the process log and the
tenant-visible system_logs sink.

Sink writes are best-effort: a failing sink must never mask the failure
being reported.
"""
import logging
from typing import Any, Optional

from crmbridge.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class SystemLogService:
    def __init__(self, storage):
        self._storage = storage

    async def log(
        self,
        level: str,
        message: str,
        tenant_id: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
        source: str = "system",
    ) -> None:
        logger.log(
            _LEVELS.get(level, logging.INFO),
            "[%s] %s", source, message,
            extra={"tenant_id": tenant_id},
        )
        try:
            await self._storage.create_system_log({
                "tenant_id": tenant_id,
                "level": level,
                "message": message,
                "data": data,
                "source": source,
                "correlation_id": get_correlation_id(),
            })
        except Exception as e:
            logger.warning("System log write failed: %s", str(e))

    async def info(self, message: str, **kwargs) -> None:
        await self.log("info", message, **kwargs)

    async def warning(self, message: str, **kwargs) -> None:
        await self.log("warning", message, **kwargs)

    async def error(self, message: str, **kwargs) -> None:
        await self.log("error", message, **kwargs)
