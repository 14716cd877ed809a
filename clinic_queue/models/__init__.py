"""
Modelos SQLAlchemy — exportar todos para que Alembic los detecte.
"""

from clinic_queue.models.clinic_queue import ClinicQueue
from clinic_queue.models.queue_ticket import QueueTicket
from clinic_queue.models.queue_event import QueueEventLog, QueueEventType
