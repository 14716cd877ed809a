"""
Schemas para la cola de atención por clínica.

Flujo:
1. Recepción hace check-in → CheckInResult (posición y número de ticket)
2. El doctor llama al siguiente → CallNextResult
3. El paciente consulta su posición → PositionSnapshot
4. Las pantallas se suscriben al stream y reciben QUEUE_STATE_UPDATE
"""

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, field_validator


# ── Check-in ─────────────────────────────────────────

class ContactInfo(BaseModel):
    """Datos de contacto del paciente, provistos por el llamador."""
    name: str | None = Field(None, max_length=200)
    phone: str | None = Field(None, max_length=30)
    email: EmailStr | None = None


class DoctorContext(BaseModel):
    """Contexto del doctor/consultorio asociado al ticket (opcional)."""
    doctor_id: str | None = Field(None, max_length=64)
    doctor_name: str | None = Field(None, max_length=200)
    doctor_speciality: str | None = Field(None, max_length=100)
    clinic_name: str | None = Field(None, max_length=200)
    clinic_address: str | None = Field(None, max_length=300)


class CheckInRequest(BaseModel):
    """Check-in de un paciente en la cola de una clínica."""
    clinic_id: str = Field(..., min_length=1, max_length=64)
    ticket_id: str | None = Field(
        None, max_length=64,
        description="ID de la cita; si se omite (walk-in) se genera un UUID"
    )
    patient_id: str | None = Field(None, max_length=64)
    contact: ContactInfo = Field(default_factory=ContactInfo)
    doctor: DoctorContext = Field(default_factory=DoctorContext)

    @field_validator("clinic_id")
    @classmethod
    def strip_clinic_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("clinic_id no puede estar vacío")
        return value


class CheckInResult(BaseModel):
    """Resultado de un check-in exitoso."""
    clinic_id: str
    ticket_id: str
    position: int = Field(..., ge=1, description="Posición viva en la cola (1 = siguiente)")
    queue_number: int = Field(..., ge=1, description="Número de ticket estable")


# ── Call-next ────────────────────────────────────────

class CallNextRequest(BaseModel):
    clinic_id: str = Field(..., min_length=1, max_length=64)
    doctor: DoctorContext | None = Field(
        None, description="Doctor que llama; reemplaza al del check-in en el aviso NOW_SERVING"
    )


class CallNextResult(BaseModel):
    """Ticket atendido; `ticket_id` es None si la cola estaba vacía."""
    clinic_id: str
    ticket_id: str | None = None
    patient_id: str | None = None
    served_sequence: int | None = None
    now_serving: int = 0

    @property
    def is_empty(self) -> bool:
        return self.ticket_id is None


# ── Consultas ────────────────────────────────────────

class PositionSnapshot(BaseModel):
    """Posición de un ticket; position=0 significa que no está en cola."""
    clinic_id: str | None = None
    ticket_id: str
    position: int = Field(0, ge=0)
    now_serving: int = 0
    queue_number: int = 0
    queued: bool = False


class QueueStatus(BaseModel):
    clinic_id: str
    now_serving: int = 0
    total_waiting: int = 0


class QueueItem(BaseModel):
    """Un ticket en espera con sus metadatos."""
    ticket_id: str
    patient_id: str | None = None
    patient_name: str | None = None
    email: str | None = None
    phone: str | None = None
    position: int
    queue_number: int
    doctor_id: str | None = None
    doctor_name: str | None = None
    doctor_speciality: str | None = None
    created_at: datetime | None = None


class QueueState(QueueStatus):
    """Estado completo de la cola (status + tickets en orden)."""
    queue_items: list[QueueItem] = []


class ActiveClinicsResponse(BaseModel):
    clinics: list[str] = []


class QueueEventOut(BaseModel):
    """Registro de la bitácora de la cola."""
    id: int
    clinic_id: str
    event_type: str
    ticket_id: str
    sequence: int
    created_at: datetime | None = None


class QueueStatistics(BaseModel):
    """Resumen de todas las colas activas para monitoreo."""
    total_active_queues: int = 0
    total_waiting: int = 0
    clinic_queues: list[QueueStatus] = []


# ── Notificaciones ───────────────────────────────────

class NotificationEvent(BaseModel):
    """Evento que se entrega al notificador externo (email/SMS/WhatsApp)."""
    type: str = Field(..., description="N3_AWAY o NOW_SERVING")
    clinic_id: str
    ticket_id: str
    patient_id: str
    channel: str = "EMAIL"
    payload: str = Field(..., description="JSON renderizado: subject, body y datos del paciente")
    timestamp: int = Field(..., description="Epoch en milisegundos")
