"""
Modelo ClinicQueue — Contador de tickets y puntero "atendiendo ahora" por clínica.

Una fila por clínica con actividad; el conjunto de filas es el registro de
clínicas activas. `last_sequence` se incrementa bajo SELECT FOR UPDATE para
evitar duplicados en concurrencia.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from clinic_queue.database import Base


class ClinicQueue(Base):
    __tablename__ = "clinic_queues"

    clinic_id: Mapped[str] = mapped_column(
        String(64), primary_key=True,
        comment="Identificador opaco de la clínica"
    )
    last_sequence: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0,
        comment="Último número de ticket asignado (nunca se reutiliza)"
    )
    now_serving: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0,
        comment="Número de ticket del último paciente llamado"
    )

    # ── Timestamps ───────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<ClinicQueue {self.clinic_id} seq={self.last_sequence} "
            f"serving={self.now_serving}>"
        )
