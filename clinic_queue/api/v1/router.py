"""
Router principal de la API v1.
Agrupa todos los sub-routers de la versión 1.
"""

from fastapi import APIRouter

from clinic_queue.api.v1.monitoring import router as monitoring_router
from clinic_queue.api.v1.queue import router as queue_router

api_v1_router = APIRouter()

api_v1_router.include_router(
    queue_router,
    prefix="/queue",
    tags=["Cola de Atención"],
)

api_v1_router.include_router(
    monitoring_router,
    prefix="/monitoring",
    tags=["Monitoreo"],
)
