"""
Endpoints de monitoreo de las colas.
"""

from fastapi import APIRouter, Depends

from clinic_queue.schemas.queue import QueueStatistics
from clinic_queue.services.queue_service import QueueService, get_queue_service

router = APIRouter()


@router.get(
    "/queues",
    response_model=QueueStatistics,
    summary="Estadísticas de colas",
    description="Colas activas, total en espera y estado por clínica registrada.",
)
async def queue_statistics(
    service: QueueService = Depends(get_queue_service),
) -> QueueStatistics:
    return await service.get_queue_statistics()
