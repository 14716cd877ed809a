"""
Modelo QueueTicket — Ticket en espera dentro de la cola de una clínica.

La fila es a la vez la membresía en la cola (ordenada por `sequence`) y los
metadatos del ticket: se crea en el check-in y se elimina cuando el paciente
es llamado, por lo que ambos nunca existen por separado.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from clinic_queue.database import Base


class QueueTicket(Base):
    __tablename__ = "queue_tickets"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    clinic_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("clinic_queues.clinic_id"), nullable=False
    )
    ticket_id: Mapped[str] = mapped_column(
        String(64), nullable=False,
        comment="ID de cita o ticket (opaco, provisto por el llamador)"
    )
    patient_id: Mapped[str | None] = mapped_column(String(64))
    sequence: Mapped[int] = mapped_column(
        BigInteger, nullable=False,
        comment="Número de ticket estable; define el orden FIFO"
    )

    # ── Contacto del paciente ────────────────────────
    name: Mapped[str | None] = mapped_column(String(200))
    phone: Mapped[str | None] = mapped_column(String(30))
    email: Mapped[str | None] = mapped_column(String(255))

    # ── Contexto del doctor ──────────────────────────
    doctor_id: Mapped[str | None] = mapped_column(String(64))
    doctor_name: Mapped[str | None] = mapped_column(String(200))
    doctor_speciality: Mapped[str | None] = mapped_column(String(100))
    clinic_name: Mapped[str | None] = mapped_column(String(200))
    clinic_address: Mapped[str | None] = mapped_column(String(300))

    # ── Timestamps ───────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Índices ──────────────────────────────────────
    __table_args__ = (
        UniqueConstraint("clinic_id", "ticket_id", name="uq_queue_ticket_clinic_ticket"),
        UniqueConstraint("clinic_id", "sequence", name="uq_queue_ticket_clinic_sequence"),
        Index("idx_queue_ticket_ticket", "ticket_id"),
    )

    def __repr__(self) -> str:
        return f"<QueueTicket {self.clinic_id}#{self.sequence} ticket={self.ticket_id}>"
