"""
Servicio de colas por clínica: operaciones atómicas y consultas.

Operaciones atómicas (check-in, call-next, retiro):
- Se ejecutan bajo un lock por clínica (`ClinicLocks`) y en una única
  transacción que además bloquea la fila de la clínica (SELECT FOR UPDATE),
  así ningún observador ve estados intermedios y clínicas distintas no
  compiten entre sí.
- Si el almacenamiento falla, la transacción se revierte completa y se
  responde 503 para que el cliente reintente.
- La difusión en tiempo real y las notificaciones se disparan después de
  liberar el lock.

Consultas (posición, estado, clínicas activas, bitácora):
- Usan su propia sesión, no toman locks y nunca bloquean a los escritores.
"""

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from functools import lru_cache

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_queue.core.exceptions import (
    ConflictException,
    NotFoundException,
    ServiceUnavailableException,
    ValidationException,
)
from clinic_queue.models.queue_event import QueueEventType
from clinic_queue.models.queue_ticket import QueueTicket
from clinic_queue.schemas.queue import (
    CallNextResult,
    CheckInResult,
    ContactInfo,
    DoctorContext,
    PositionSnapshot,
    QueueEventOut,
    QueueItem,
    QueueState,
    QueueStatistics,
    QueueStatus,
)
from clinic_queue.services import ticket_store
from clinic_queue.services.broadcast_service import ClinicBroadcaster
from clinic_queue.services.notification_service import (
    NotificationDispatcher,
    NotificationTrigger,
)

logger = logging.getLogger(__name__)

# ── Eventos difundidos a los suscriptores ────────────
CHECKED_IN = "CHECKED_IN"
NOW_SERVING = "NOW_SERVING"
REMOVED = "REMOVED"

_STORE_ERRORS = (SQLAlchemyError, OSError)
_BROADCAST_KEY = "queue_broadcast"
_DOCTOR_FIELDS = {"doctor_id", "doctor_name", "doctor_speciality"}


class ClinicLocks:
    """Arena de locks por clínica; se crean al primer uso y no se eliminan."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def for_clinic(self, clinic_id: str) -> asyncio.Lock:
        lock = self._locks.get(clinic_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[clinic_id] = lock
        return lock


def _require(value: str | None, field: str) -> str:
    if value is None or not value.strip():
        raise ValidationException(f"{field} es requerido")
    return value.strip()


def _to_item(ticket: QueueTicket, position: int) -> QueueItem:
    return QueueItem(
        ticket_id=ticket.ticket_id,
        patient_id=ticket.patient_id,
        patient_name=ticket.name,
        email=ticket.email,
        phone=ticket.phone,
        position=position,
        queue_number=ticket.sequence,
        doctor_id=ticket.doctor_id,
        doctor_name=ticket.doctor_name,
        doctor_speciality=ticket.doctor_speciality,
        created_at=ticket.created_at,
    )


async def _read_state(db: AsyncSession, clinic_id: str) -> QueueState:
    queue = await ticket_store.get_queue(db, clinic_id)
    tickets = await ticket_store.list_tickets(db, clinic_id)
    return QueueState(
        clinic_id=clinic_id,
        now_serving=queue.now_serving if queue else 0,
        total_waiting=len(tickets),
        queue_items=[_to_item(t, i) for i, t in enumerate(tickets, start=1)],
    )


class QueueService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: ClinicBroadcaster,
        notifier: NotificationTrigger,
        locks: ClinicLocks | None = None,
    ):
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.locks = locks or ClinicLocks()

    # ── Sesiones ─────────────────────────────────────

    @asynccontextmanager
    async def _atomic(self, clinic_id: str, operation: str):
        """
        Lock de la clínica + una transacción; todo o nada.
        El snapshot preparado con `_stage_broadcast` se publica tras el commit
        y antes de soltar el lock, así los suscriptores reciben los estados en
        el mismo orden en que se confirmaron.
        """
        async with self.locks.for_clinic(clinic_id):
            try:
                async with self.session_factory() as db:
                    async with db.begin():
                        yield db
            except IntegrityError as exc:
                logger.warning(f"Conflicto de integridad en {operation} ({clinic_id}): {exc}")
                raise ConflictException("El ticket ya está registrado en la cola") from exc
            except _STORE_ERRORS as exc:
                logger.error(f"Fallo del almacenamiento en {operation} ({clinic_id}): {exc}")
                raise ServiceUnavailableException() from exc

            payload = db.info.pop(_BROADCAST_KEY, None)
            if payload is not None:
                delivered = self.broadcaster.publish(clinic_id, payload)
                logger.debug(f"{operation} de {clinic_id} difundido a {delivered} suscriptores")

    @asynccontextmanager
    async def _reading(self):
        try:
            async with self.session_factory() as db:
                yield db
        except _STORE_ERRORS as exc:
            logger.error(f"Fallo del almacenamiento en consulta: {exc}")
            raise ServiceUnavailableException() from exc

    # ── Operaciones atómicas ─────────────────────────

    async def check_in(
        self,
        clinic_id: str,
        ticket_id: str | None = None,
        patient_id: str | None = None,
        contact: ContactInfo | None = None,
        doctor: DoctorContext | None = None,
    ) -> CheckInResult:
        """
        Registra un ticket al final de la cola y retorna su posición.
        Sin ticket_id (walk-in) se genera un UUID. Un ticket que ya está en
        la cola se rechaza con 409 sin modificar el estado.
        """
        clinic_id = _require(clinic_id, "clinic_id")
        ticket_id = str(uuid.uuid4()) if ticket_id is None else _require(ticket_id, "ticket_id")
        if patient_id is not None:
            patient_id = patient_id.strip() or None
        contact_data = contact.model_dump() if contact else {}
        doctor_data = doctor.model_dump() if doctor else {}

        async with self._atomic(clinic_id, "check-in") as db:
            queue = await ticket_store.lock_queue(db, clinic_id)
            if await ticket_store.get_ticket(db, clinic_id, ticket_id):
                raise ConflictException(
                    f"El ticket {ticket_id} ya está en la cola de {clinic_id}"
                )

            sequence = ticket_store.allocate_sequence(queue)
            ticket = await ticket_store.add_ticket(
                db,
                clinic_id=clinic_id,
                ticket_id=ticket_id,
                sequence=sequence,
                patient_id=patient_id,
                contact=contact_data,
                doctor=doctor_data,
            )
            await ticket_store.append_event(
                db, clinic_id, QueueEventType.ENQUEUE, ticket_id, sequence
            )
            # La nueva secuencia es la mayor: la posición es el largo de la cola
            position = await ticket_store.count_waiting(db, clinic_id)
            now_serving = queue.now_serving
            item = _to_item(ticket, position)
            await self._stage_broadcast(db, clinic_id, CHECKED_IN, ticket_id)

        logger.info(
            f"Check-in {ticket_id} en {clinic_id}: ticket #{sequence}, posición {position}"
        )
        self.notifier.after_check_in(clinic_id, item, position, now_serving)

        return CheckInResult(
            clinic_id=clinic_id,
            ticket_id=ticket_id,
            position=position,
            queue_number=sequence,
        )

    async def call_next(
        self, clinic_id: str, doctor: DoctorContext | None = None
    ) -> CallNextResult:
        """
        Atiende al ticket más antiguo: lo retira de la cola y fija
        now_serving a su número. Con la cola vacía no hay efectos.
        Si se indica el doctor que llama, reemplaza al del check-in en el
        aviso NOW_SERVING.
        """
        clinic_id = _require(clinic_id, "clinic_id")
        calling_doctor = (
            doctor.model_dump(include=_DOCTOR_FIELDS, exclude_none=True) if doctor else {}
        )
        served: QueueItem | None = None
        at_offset: QueueItem | None = None

        async with self._atomic(clinic_id, "call-next") as db:
            queue = await ticket_store.lock_queue(db, clinic_id, create=False)
            ticket = await ticket_store.pop_oldest(db, clinic_id) if queue else None

            if ticket is None:
                result = CallNextResult(
                    clinic_id=clinic_id,
                    now_serving=queue.now_serving if queue else 0,
                )
            else:
                # SET (no INCR): siempre coincide con un número de ticket real
                queue.now_serving = ticket.sequence
                await ticket_store.append_event(
                    db, clinic_id, QueueEventType.DEQUEUE, ticket.ticket_id, ticket.sequence
                )
                served = _to_item(ticket, 0).model_copy(update=calling_doctor)
                offset = self.notifier.n3_away_offset
                next_at_offset = await ticket_store.ticket_at_position(db, clinic_id, offset)
                if next_at_offset is not None:
                    at_offset = _to_item(next_at_offset, offset)
                result = CallNextResult(
                    clinic_id=clinic_id,
                    ticket_id=ticket.ticket_id,
                    patient_id=ticket.patient_id,
                    served_sequence=ticket.sequence,
                    now_serving=ticket.sequence,
                )
                await self._stage_broadcast(db, clinic_id, NOW_SERVING, ticket.ticket_id)

        if served is None:
            logger.info(f"Call-next en {clinic_id}: cola vacía")
            return result

        logger.info(
            f"Call-next en {clinic_id}: atendiendo ticket #{result.served_sequence} "
            f"({result.ticket_id})"
        )
        self.notifier.after_call_next(clinic_id, served, at_offset)
        return result

    async def remove_ticket(self, clinic_id: str, ticket_id: str) -> QueueItem:
        """Retira un ticket en espera (inasistencia) sin mover now_serving."""
        clinic_id = _require(clinic_id, "clinic_id")
        ticket_id = _require(ticket_id, "ticket_id")

        async with self._atomic(clinic_id, "remove") as db:
            await ticket_store.lock_queue(db, clinic_id, create=False)
            ticket = await ticket_store.get_ticket(db, clinic_id, ticket_id)
            if ticket is None:
                raise NotFoundException(
                    detail=f"El ticket {ticket_id} no está en la cola de {clinic_id}"
                )
            position = await ticket_store.ticket_rank(db, clinic_id, ticket.sequence) + 1
            removed = _to_item(ticket, position)
            await ticket_store.delete_ticket(db, ticket)
            await ticket_store.append_event(
                db, clinic_id, QueueEventType.REMOVE, ticket_id, ticket.sequence
            )
            await self._stage_broadcast(db, clinic_id, REMOVED, ticket_id)

        logger.info(f"Ticket {ticket_id} retirado de {clinic_id} (posición {position})")
        return removed

    # ── Consultas ────────────────────────────────────

    async def get_position(
        self, ticket_id: str, clinic_id: str | None = None
    ) -> PositionSnapshot:
        """Posición 1-based del ticket; 0 si ya fue atendido o no existe."""
        ticket_id = _require(ticket_id, "ticket_id")
        if clinic_id is not None:
            clinic_id = clinic_id.strip() or None

        async with self._reading() as db:
            ticket = await ticket_store.find_ticket(db, ticket_id, clinic_id)
            if ticket is None:
                queue = await ticket_store.get_queue(db, clinic_id) if clinic_id else None
                return PositionSnapshot(
                    clinic_id=clinic_id,
                    ticket_id=ticket_id,
                    now_serving=queue.now_serving if queue else 0,
                )

            rank = await ticket_store.ticket_rank(db, ticket.clinic_id, ticket.sequence)
            queue = await ticket_store.get_queue(db, ticket.clinic_id)
            return PositionSnapshot(
                clinic_id=ticket.clinic_id,
                ticket_id=ticket_id,
                position=rank + 1,
                now_serving=queue.now_serving if queue else 0,
                queue_number=ticket.sequence,
                queued=True,
            )

    async def get_status(self, clinic_id: str) -> QueueStatus:
        clinic_id = _require(clinic_id, "clinic_id")
        async with self._reading() as db:
            queue = await ticket_store.get_queue(db, clinic_id)
            total_waiting = await ticket_store.count_waiting(db, clinic_id)
        return QueueStatus(
            clinic_id=clinic_id,
            now_serving=queue.now_serving if queue else 0,
            total_waiting=total_waiting,
        )

    async def get_queue_state(self, clinic_id: str) -> QueueState:
        """Estado completo: status + tickets en espera con sus datos."""
        clinic_id = _require(clinic_id, "clinic_id")
        async with self._reading() as db:
            return await _read_state(db, clinic_id)

    async def list_active_clinics(self) -> set[str]:
        async with self._reading() as db:
            return set(await ticket_store.list_clinic_ids(db))

    async def list_events(
        self, clinic_id: str, after_id: int | None = None, limit: int = 100
    ) -> list[QueueEventOut]:
        clinic_id = _require(clinic_id, "clinic_id")
        async with self._reading() as db:
            entries = await ticket_store.list_events(db, clinic_id, after_id, limit)
        return [
            QueueEventOut(
                id=e.id,
                clinic_id=e.clinic_id,
                event_type=e.event_type.value,
                ticket_id=e.ticket_id,
                sequence=e.sequence,
                created_at=e.created_at,
            )
            for e in entries
        ]

    async def get_queue_statistics(self) -> QueueStatistics:
        async with self._reading() as db:
            rows = await ticket_store.list_queue_counts(db)
        clinic_queues = [
            QueueStatus(clinic_id=cid, now_serving=serving, total_waiting=waiting)
            for cid, serving, waiting in rows
        ]
        return QueueStatistics(
            total_active_queues=sum(1 for q in clinic_queues if q.total_waiting > 0),
            total_waiting=sum(q.total_waiting for q in clinic_queues),
            clinic_queues=clinic_queues,
        )

    # ── Difusión ─────────────────────────────────────

    async def _stage_broadcast(
        self, db: AsyncSession, clinic_id: str, event: str, ticket_id: str | None
    ) -> None:
        """
        Arma el QUEUE_STATE_UPDATE con el estado de la misma transacción;
        `_atomic` lo publica después del commit. Sin suscriptores no se lee nada.
        """
        if self.broadcaster.channel(clinic_id).subscriber_count == 0:
            return
        state = await _read_state(db, clinic_id)
        payload = {
            "type": "QUEUE_STATE_UPDATE",
            "event": event,
            "ticket_id": ticket_id,
            "timestamp": int(time.time() * 1000),
            **state.model_dump(mode="json"),
        }
        db.info[_BROADCAST_KEY] = json.dumps(payload, ensure_ascii=False)


@lru_cache
def get_queue_service() -> QueueService:
    """Instancia única del servicio para la aplicación FastAPI."""
    from clinic_queue.database import async_session_factory

    return QueueService(
        session_factory=async_session_factory,
        broadcaster=ClinicBroadcaster(),
        notifier=NotificationTrigger(NotificationDispatcher()),
    )
