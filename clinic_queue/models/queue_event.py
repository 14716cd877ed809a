"""
Modelo QueueEventLog — Bitácora append-only de movimientos de la cola.

Registra cada ENQUEUE (check-in), DEQUEUE (llamado) y REMOVE (retiro por
inasistencia) para auditoría y replay. No tiene política de retención:
la purga debe configurarse externamente.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Enum, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_queue.database import Base


class QueueEventType(str, enum.Enum):
    """Tipos de movimiento registrados en la bitácora."""
    ENQUEUE = "ENQUEUE"
    DEQUEUE = "DEQUEUE"
    REMOVE = "REMOVE"


class QueueEventLog(Base):
    __tablename__ = "queue_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    clinic_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[QueueEventType] = mapped_column(
        Enum(QueueEventType, name="queue_event_type"), nullable=False
    )
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("idx_queue_events_clinic", "clinic_id", "id"),
    )

    def __repr__(self) -> str:
        return f"<QueueEventLog {self.clinic_id} {self.event_type.value} #{self.sequence}>"
