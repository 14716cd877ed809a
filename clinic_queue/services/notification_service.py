"""
Disparador de notificaciones de la cola.

Después de cada operación de la cola decide si corresponde avisar al
paciente y construye el evento; la entrega (email/SMS/WhatsApp) la hace un
worker desacoplado.

Reglas:
- Check-in: si `position - now_serving == QUEUE_N3_AWAY_OFFSET` → N3_AWAY
- Call-next: NOW_SERVING para el paciente llamado (si tiene patient_id),
  y N3_AWAY para quien queda en la posición QUEUE_N3_AWAY_OFFSET.

La emisión es best-effort: un fallo nunca afecta a la operación de cola.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable

from clinic_queue.config import get_settings
from clinic_queue.schemas.queue import NotificationEvent, QueueItem

settings = get_settings()
logger = logging.getLogger(__name__)

N3_AWAY = "N3_AWAY"
NOW_SERVING = "NOW_SERVING"

NotificationSink = Callable[[NotificationEvent], Awaitable[None]]


# ── Render del payload ───────────────────────────────

def render_payload(event_type: str, clinic_id: str, item: QueueItem) -> str:
    """Construye el JSON que consume el notificador (asunto, cuerpo y paciente)."""
    name = item.patient_name or "Paciente"
    queue_number = str(item.queue_number)

    if event_type == N3_AWAY:
        subject = "Faltan 3 turnos para su atención"
        body = (
            f"Por favor regrese a la sala de espera. "
            f"Su número de ticket es {queue_number}."
        )
    else:
        subject = "Es su turno"
        body = (
            f"{name}, por favor pase al consultorio. "
            f"Su número de ticket es {queue_number}."
        )

    return json.dumps(
        {
            "subject": subject,
            "body": body,
            "clinic_id": clinic_id,
            "doctor_id": item.doctor_id or "",
            "doctor_name": item.doctor_name or "",
            "patient": {
                "name": name,
                "email": item.email or "",
                "phone": item.phone or "",
                "ticket_id": item.ticket_id,
                "queue_number": queue_number,
            },
        },
        ensure_ascii=False,
    )


def build_event(event_type: str, clinic_id: str, item: QueueItem) -> NotificationEvent | None:
    """Evento listo para despachar; None si el ticket no tiene paciente."""
    if not item.patient_id:
        return None
    return NotificationEvent(
        type=event_type,
        clinic_id=clinic_id,
        ticket_id=item.ticket_id,
        patient_id=item.patient_id,
        channel=settings.NOTIFICATION_CHANNEL,
        payload=render_payload(event_type, clinic_id, item),
        timestamp=int(time.time() * 1000),
    )


# ── Despacho desacoplado ─────────────────────────────

async def celery_sink(event: NotificationEvent) -> None:
    """Encola la entrega en Celery (sin esperar el resultado)."""
    from clinic_queue.tasks.notification_tasks import deliver_queue_event_task

    await asyncio.to_thread(
        deliver_queue_event_task.delay, event.model_dump(mode="json")
    )


class NotificationDispatcher:
    """
    Hand-off unidireccional: `emit()` deja el evento en un buffer acotado y
    retorna de inmediato; un worker en segundo plano lo entrega al sink.
    """

    def __init__(self, sink: NotificationSink | None = None, buffer_size: int | None = None):
        self._sink = sink or celery_sink
        self._queue: asyncio.Queue[NotificationEvent] = asyncio.Queue(
            maxsize=buffer_size or settings.NOTIFICATION_BUFFER
        )
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def emit(self, event: NotificationEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"Buffer de notificaciones lleno, descartando {event.type} "
                f"para ticket {event.ticket_id}"
            )
            return False
        return True

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def drain(self) -> None:
        """Espera a que el worker procese todo lo encolado."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._sink(event)
                logger.info(f"Notificación {event.type} despachada para ticket {event.ticket_id}")
            except Exception as exc:
                logger.error(
                    f"Error despachando notificación {event.type} "
                    f"(ticket {event.ticket_id}): {exc}"
                )
            finally:
                self._queue.task_done()


class NotificationTrigger:
    """Evalúa los resultados de la cola contra los umbrales y emite eventos."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        n3_away_offset: int | None = None,
        n3_after_call_next: bool | None = None,
    ):
        self.dispatcher = dispatcher
        self.n3_away_offset = (
            settings.QUEUE_N3_AWAY_OFFSET if n3_away_offset is None else n3_away_offset
        )
        self.n3_after_call_next = (
            settings.QUEUE_N3_AWAY_AFTER_CALL_NEXT
            if n3_after_call_next is None
            else n3_after_call_next
        )

    def after_check_in(
        self, clinic_id: str, item: QueueItem, position: int, now_serving: int
    ) -> None:
        if position - now_serving == self.n3_away_offset:
            self._emit(N3_AWAY, clinic_id, item)

    def after_call_next(
        self, clinic_id: str, served: QueueItem, at_offset: QueueItem | None = None
    ) -> None:
        self._emit(NOW_SERVING, clinic_id, served)
        if self.n3_after_call_next and at_offset is not None:
            self._emit(N3_AWAY, clinic_id, at_offset)

    def _emit(self, event_type: str, clinic_id: str, item: QueueItem) -> None:
        try:
            event = build_event(event_type, clinic_id, item)
            if event is None:
                logger.info(f"Ticket {item.ticket_id} sin paciente, no se notifica {event_type}")
                return
            self.dispatcher.emit(event)
        except Exception as exc:
            logger.error(f"Error construyendo notificación {event_type}: {exc}")
