"""
Ticket Store: primitivas de persistencia de las colas por clínica.

Contiene solo operaciones atómicas simples sobre una sesión; no coordina
transiciones de varios pasos (eso lo hace `queue_service`). Todas las
consultas filtran por clinic_id para que las clínicas no se interfieran.
"""

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_queue.models.clinic_queue import ClinicQueue
from clinic_queue.models.queue_event import QueueEventLog, QueueEventType
from clinic_queue.models.queue_ticket import QueueTicket


# ── Contador y puntero por clínica ───────────────────

def _insert_for(db: AsyncSession):
    """`INSERT` con soporte ON CONFLICT según el dialecto de la sesión."""
    if db.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def lock_queue(
    db: AsyncSession, clinic_id: str, create: bool = True
) -> ClinicQueue | None:
    """
    Obtiene la fila de la clínica con SELECT FOR UPDATE.
    Si `create` es True y no existe, la registra (ON CONFLICT DO NOTHING
    para no fallar si otro proceso la creó en paralelo).
    """
    if create:
        insert = _insert_for(db)
        await db.execute(
            insert(ClinicQueue)
            .values(clinic_id=clinic_id, last_sequence=0, now_serving=0)
            .on_conflict_do_nothing(index_elements=["clinic_id"])
        )

    result = await db.execute(
        select(ClinicQueue)
        .where(ClinicQueue.clinic_id == clinic_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_queue(db: AsyncSession, clinic_id: str) -> ClinicQueue | None:
    result = await db.execute(
        select(ClinicQueue).where(ClinicQueue.clinic_id == clinic_id)
    )
    return result.scalar_one_or_none()


def allocate_sequence(queue: ClinicQueue) -> int:
    """Incrementa el contador (la fila debe estar bloqueada)."""
    queue.last_sequence += 1
    return queue.last_sequence


# ── Tickets ──────────────────────────────────────────

async def add_ticket(
    db: AsyncSession,
    *,
    clinic_id: str,
    ticket_id: str,
    sequence: int,
    patient_id: str | None = None,
    contact: dict | None = None,
    doctor: dict | None = None,
) -> QueueTicket:
    """Crea la membresía + metadatos del ticket en una sola fila."""
    ticket = QueueTicket(
        clinic_id=clinic_id,
        ticket_id=ticket_id,
        patient_id=patient_id,
        sequence=sequence,
        **(contact or {}),
        **(doctor or {}),
    )
    db.add(ticket)
    await db.flush()
    return ticket


async def get_ticket(
    db: AsyncSession, clinic_id: str, ticket_id: str
) -> QueueTicket | None:
    result = await db.execute(
        select(QueueTicket).where(
            QueueTicket.clinic_id == clinic_id,
            QueueTicket.ticket_id == ticket_id,
        )
    )
    return result.scalar_one_or_none()


async def find_ticket(
    db: AsyncSession, ticket_id: str, clinic_id: str | None = None
) -> QueueTicket | None:
    """Busca un ticket en espera; sin clinic_id busca en todas las clínicas."""
    query = select(QueueTicket).where(QueueTicket.ticket_id == ticket_id)
    if clinic_id:
        query = query.where(QueueTicket.clinic_id == clinic_id)
    result = await db.execute(query.order_by(QueueTicket.created_at).limit(1))
    return result.scalar_one_or_none()


async def pop_oldest(db: AsyncSession, clinic_id: str) -> QueueTicket | None:
    """Extrae el ticket de menor secuencia (el más antiguo) y lo elimina."""
    result = await db.execute(
        select(QueueTicket)
        .where(QueueTicket.clinic_id == clinic_id)
        .order_by(QueueTicket.sequence)
        .limit(1)
        .with_for_update()
    )
    ticket = result.scalar_one_or_none()
    if ticket is None:
        return None
    await delete_ticket(db, ticket)
    return ticket


async def delete_ticket(db: AsyncSession, ticket: QueueTicket) -> None:
    await db.delete(ticket)
    await db.flush()


async def ticket_rank(db: AsyncSession, clinic_id: str, sequence: int) -> int:
    """Cantidad de tickets delante (rank 0-based por secuencia ascendente)."""
    result = await db.execute(
        select(func.count(QueueTicket.id)).where(
            QueueTicket.clinic_id == clinic_id,
            QueueTicket.sequence < sequence,
        )
    )
    return result.scalar_one()


async def ticket_at_position(
    db: AsyncSession, clinic_id: str, position: int
) -> QueueTicket | None:
    """Ticket en la posición 1-based indicada, o None."""
    if position < 1:
        return None
    result = await db.execute(
        select(QueueTicket)
        .where(QueueTicket.clinic_id == clinic_id)
        .order_by(QueueTicket.sequence)
        .offset(position - 1)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_waiting(db: AsyncSession, clinic_id: str) -> int:
    result = await db.execute(
        select(func.count(QueueTicket.id)).where(QueueTicket.clinic_id == clinic_id)
    )
    return result.scalar_one()


async def list_tickets(db: AsyncSession, clinic_id: str) -> list[QueueTicket]:
    """Tickets en espera en orden FIFO."""
    result = await db.execute(
        select(QueueTicket)
        .where(QueueTicket.clinic_id == clinic_id)
        .order_by(QueueTicket.sequence)
    )
    return list(result.scalars().all())


# ── Bitácora ─────────────────────────────────────────

async def append_event(
    db: AsyncSession,
    clinic_id: str,
    event_type: QueueEventType,
    ticket_id: str,
    sequence: int,
) -> QueueEventLog:
    entry = QueueEventLog(
        clinic_id=clinic_id,
        event_type=event_type,
        ticket_id=ticket_id,
        sequence=sequence,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_events(
    db: AsyncSession,
    clinic_id: str,
    after_id: int | None = None,
    limit: int = 100,
) -> list[QueueEventLog]:
    """Eventos de la clínica en orden de inserción (para replay desde `after_id`)."""
    query = select(QueueEventLog).where(QueueEventLog.clinic_id == clinic_id)
    if after_id is not None:
        query = query.where(QueueEventLog.id > after_id)
    result = await db.execute(query.order_by(QueueEventLog.id).limit(limit))
    return list(result.scalars().all())


# ── Registro de clínicas ─────────────────────────────

async def list_clinic_ids(db: AsyncSession) -> list[str]:
    result = await db.execute(select(ClinicQueue.clinic_id).order_by(ClinicQueue.clinic_id))
    return list(result.scalars().all())


async def list_queue_counts(db: AsyncSession) -> list[tuple[str, int, int]]:
    """(clinic_id, now_serving, en espera) para todas las clínicas registradas."""
    result = await db.execute(
        select(
            ClinicQueue.clinic_id,
            ClinicQueue.now_serving,
            func.count(QueueTicket.id),
        )
        .outerjoin(QueueTicket, QueueTicket.clinic_id == ClinicQueue.clinic_id)
        .group_by(ClinicQueue.clinic_id, ClinicQueue.now_serving)
        .order_by(ClinicQueue.clinic_id)
    )
    return [(row[0], row[1], row[2]) for row in result.all()]
