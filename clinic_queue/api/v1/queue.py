"""
Endpoints de la cola de atención por clínica.

POST   /queue/checkin                          — Check-in (walk-in o cita)
POST   /queue/call-next                        — Llamar al siguiente ticket
GET    /queue/me                               — Posición de un ticket
GET    /queue/status/{clinic_id}               — Atendiendo ahora + en espera
GET    /queue/state/{clinic_id}                — Estado completo con tickets
GET    /queue/stream/{clinic_id}               — Stream SSE en tiempo real
GET    /queue/clinics                          — Clínicas con actividad
GET    /queue/events/{clinic_id}               — Bitácora de movimientos
DELETE /queue/{clinic_id}/tickets/{ticket_id}  — Retirar ticket (inasistencia)
"""

from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from clinic_queue.schemas.queue import (
    ActiveClinicsResponse,
    CallNextRequest,
    CallNextResult,
    CheckInRequest,
    CheckInResult,
    PositionSnapshot,
    QueueEventOut,
    QueueItem,
    QueueState,
    QueueStatus,
)
from clinic_queue.services.broadcast_service import Subscription, format_sse
from clinic_queue.services.queue_service import QueueService, get_queue_service

router = APIRouter()


# ── POST /checkin ─────────────────────────────────────

@router.post(
    "/checkin",
    response_model=CheckInResult,
    summary="Check-in de un paciente",
    description=(
        "Asigna un número de ticket y retorna la posición actual en la cola. "
        "Si no se envía ticket_id (walk-in) se genera uno."
    ),
)
async def check_in(
    data: CheckInRequest,
    service: QueueService = Depends(get_queue_service),
) -> CheckInResult:
    return await service.check_in(
        data.clinic_id,
        ticket_id=data.ticket_id,
        patient_id=data.patient_id,
        contact=data.contact,
        doctor=data.doctor,
    )


# ── POST /call-next ───────────────────────────────────

@router.post(
    "/call-next",
    response_model=CallNextResult,
    summary="Llamar al siguiente paciente",
    description="Retira el ticket más antiguo y actualiza 'atendiendo ahora'. Con la cola vacía retorna ticket_id nulo.",
)
async def call_next(
    data: CallNextRequest,
    service: QueueService = Depends(get_queue_service),
) -> CallNextResult:
    return await service.call_next(data.clinic_id, doctor=data.doctor)


# ── GET /me ───────────────────────────────────────────

@router.get(
    "/me",
    response_model=PositionSnapshot,
    summary="Posición de un ticket",
    description="position=0 y queued=false si el ticket ya fue atendido o no está en cola.",
)
async def my_position(
    ticket_id: str = Query(..., min_length=1, max_length=64),
    clinic_id: str | None = Query(None, max_length=64),
    service: QueueService = Depends(get_queue_service),
) -> PositionSnapshot:
    return await service.get_position(ticket_id, clinic_id)


# ── GET /status, /state ───────────────────────────────

@router.get("/status/{clinic_id}", response_model=QueueStatus)
async def queue_status(
    clinic_id: str,
    service: QueueService = Depends(get_queue_service),
) -> QueueStatus:
    """Ticket atendiendo ahora y cantidad de pacientes en espera."""
    return await service.get_status(clinic_id)


@router.get("/state/{clinic_id}", response_model=QueueState)
async def queue_state(
    clinic_id: str,
    service: QueueService = Depends(get_queue_service),
) -> QueueState:
    """Estado completo de la cola con los datos de cada ticket."""
    return await service.get_queue_state(clinic_id)


# ── GET /stream ───────────────────────────────────────

async def sse_events(request: Request, subscription: Subscription) -> AsyncIterator[str]:
    """Convierte la suscripción en frames SSE hasta que el cliente se desconecta."""
    try:
        async for message in subscription.stream():
            if await request.is_disconnected():
                break
            yield format_sse(message)
    finally:
        subscription.close()


@router.get(
    "/stream/{clinic_id}",
    summary="Stream en tiempo real de la cola",
    description=(
        "Server-Sent Events: 'queue-event' con QUEUE_STATE_UPDATE tras cada cambio "
        "y 'heartbeat' periódico. No reenvía eventos pasados: consultar /state al conectar."
    ),
)
async def stream_queue(
    clinic_id: str,
    request: Request,
    service: QueueService = Depends(get_queue_service),
) -> StreamingResponse:
    subscription = service.broadcaster.subscribe(clinic_id)
    return StreamingResponse(
        sse_events(request, subscription),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── GET /clinics, /events ─────────────────────────────

@router.get("/clinics", response_model=ActiveClinicsResponse)
async def active_clinics(
    service: QueueService = Depends(get_queue_service),
) -> ActiveClinicsResponse:
    """Clínicas que han tenido actividad en la cola."""
    clinics = await service.list_active_clinics()
    return ActiveClinicsResponse(clinics=sorted(clinics))


@router.get("/events/{clinic_id}", response_model=list[QueueEventOut])
async def queue_events(
    clinic_id: str,
    after_id: int | None = Query(None, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    service: QueueService = Depends(get_queue_service),
) -> list[QueueEventOut]:
    """Bitácora de ENQUEUE/DEQUEUE/REMOVE para auditoría y replay."""
    return await service.list_events(clinic_id, after_id=after_id, limit=limit)


# ── DELETE /{clinic_id}/tickets/{ticket_id} ───────────

@router.delete("/{clinic_id}/tickets/{ticket_id}", response_model=QueueItem)
async def remove_ticket(
    clinic_id: str,
    ticket_id: str,
    service: QueueService = Depends(get_queue_service),
) -> QueueItem:
    """Retira un ticket de la cola (inasistencia)."""
    return await service.remove_ticket(clinic_id, ticket_id)
