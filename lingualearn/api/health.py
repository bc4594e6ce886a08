from fastapi import APIRouter, Depends

from lingualearn.api.deps import Services, get_services
from lingualearn.core.settings import settings
from lingualearn.storage.store import get_store_runtime_status

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    store_status = await get_store_runtime_status(services.store)
    return {
        "status": "ok" if store_status["connected"] else "degraded",
        "service": "lingualearn-api",
        "env": settings.app_env,
        "active_sessions": services.manager.active_count(),
        "store": store_status,
    }
