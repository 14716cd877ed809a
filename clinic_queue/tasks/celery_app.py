"""
Configuración de Celery para tareas asíncronas.
"""

from celery import Celery

from clinic_queue.config import get_settings

settings = get_settings()

celery_app = Celery(
    "clinic_queue",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["clinic_queue.tasks.notification_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_ignore_result=True,
)
