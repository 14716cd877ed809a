"""
Tareas Celery para entregar las notificaciones de la cola.
Reciben el NotificationEvent serializado y lo envían por el canal indicado.
"""

import asyncio
import json
import logging

from clinic_queue.schemas.queue import NotificationEvent
from clinic_queue.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def deliver_queue_event(data: dict) -> dict:
    """
    Entrega un evento N3_AWAY / NOW_SERVING.
    SMS y WHATSAPP salen por Twilio; EMAIL no tiene transporte en este
    servicio y se omite.
    """
    from clinic_queue.services.sms_service import send_message

    event = NotificationEvent.model_validate(data)
    payload = json.loads(event.payload)
    patient = payload.get("patient", {})
    channel = event.channel.upper()

    if channel == "EMAIL":
        logger.info(
            f"Canal EMAIL sin transporte configurado, omitiendo {event.type} "
            f"para ticket {event.ticket_id}"
        )
        return {"status": "skipped", "channel": "email"}

    phone = patient.get("phone")
    if not phone:
        logger.warning(f"Paciente sin teléfono, no se puede enviar {event.type} ({event.ticket_id})")
        return {"status": "skipped", "channel": channel.lower()}

    message = f"{payload.get('subject', '')}. {payload.get('body', '')}".strip(". ")
    result = await send_message(phone, message, channel=channel.lower())
    logger.info(
        f"Notificación {event.type} enviada para ticket {event.ticket_id} "
        f"({result.get('channel', channel.lower())})"
    )
    return result


@celery_app.task(
    bind=True,
    max_retries=2,
    default_retry_delay=30,
    name="notifications.deliver_queue_event",
)
def deliver_queue_event_task(self, data: dict):
    """Envía una notificación de la cola (best-effort, con reintentos)."""
    try:
        return asyncio.run(deliver_queue_event(data))
    except Exception as exc:
        logger.error(f"Error en notificación de cola: {exc}")
        raise self.retry(exc=exc)
