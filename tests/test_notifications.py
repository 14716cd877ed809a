"""
Tests del disparador de notificaciones (N3_AWAY / NOW_SERVING) y su despacho.
"""

import json

from clinic_queue.schemas.queue import (
    ContactInfo,
    DoctorContext,
    NotificationEvent,
    QueueItem,
)
from clinic_queue.services.notification_service import (
    N3_AWAY,
    NOW_SERVING,
    NotificationDispatcher,
    NotificationTrigger,
    build_event,
    render_payload,
)
from clinic_queue.services.queue_service import QueueService


async def _check_in_patients(queue_service, tickets):
    for ticket_id in tickets:
        await queue_service.check_in(
            "gp-1",
            ticket_id=ticket_id,
            patient_id=f"p-{ticket_id}",
            contact=ContactInfo(name=f"Paciente {ticket_id}", phone="+51987654321"),
        )


# ── Reglas del disparador ────────────────────────────

async def test_n3_away_fires_once_at_offset(queue_service, sink):
    await _check_in_patients(queue_service, ["A", "B", "C", "D", "E"])
    await queue_service.notifier.dispatcher.drain()

    n3 = sink.of_type(N3_AWAY)
    assert [e.ticket_id for e in n3] == ["C"]
    assert n3[0].patient_id == "p-C"
    assert n3[0].clinic_id == "gp-1"


async def test_call_next_emits_now_serving_and_n3_for_third(queue_service, sink):
    await _check_in_patients(queue_service, ["A", "B", "C", "D", "E"])
    await queue_service.call_next("gp-1")
    await queue_service.notifier.dispatcher.drain()

    assert [e.ticket_id for e in sink.of_type(NOW_SERVING)] == ["A"]
    assert [e.ticket_id for e in sink.of_type(N3_AWAY)] == ["C", "D"]


async def test_now_serving_skipped_without_patient(queue_service, sink):
    await queue_service.check_in("gp-1", ticket_id="walk-in")
    result = await queue_service.call_next("gp-1")
    await queue_service.notifier.dispatcher.drain()

    assert result.ticket_id == "walk-in"
    assert sink.events == []


async def test_n3_after_call_next_can_be_disabled(session_factory, broadcaster, dispatcher, sink):
    service = QueueService(
        session_factory=session_factory,
        broadcaster=broadcaster,
        notifier=NotificationTrigger(dispatcher, n3_after_call_next=False),
    )
    await _check_in_patients(service, ["A", "B", "C", "D", "E"])
    await service.call_next("gp-1")
    await dispatcher.drain()

    assert [e.ticket_id for e in sink.of_type(N3_AWAY)] == ["C"]
    assert [e.ticket_id for e in sink.of_type(NOW_SERVING)] == ["A"]


async def test_n3_away_at_check_in_uses_now_serving(queue_service, sink):
    await _check_in_patients(queue_service, ["A", "B"])
    await queue_service.call_next("gp-1")
    await queue_service.call_next("gp-1")
    await _check_in_patients(queue_service, ["C", "D", "E", "F", "G", "H"])
    await queue_service.notifier.dispatcher.drain()

    assert (await queue_service.get_status("gp-1")).now_serving == 2
    # G queda en la posición 5: 5 - 2 == 3
    assert [e.ticket_id for e in sink.of_type(N3_AWAY)] == ["G"]


async def test_now_serving_names_the_calling_doctor(queue_service, sink):
    await queue_service.check_in(
        "gp-1",
        ticket_id="A",
        patient_id="p-A",
        doctor=DoctorContext(doctor_id="d-1", doctor_name="Dr. Ramos"),
    )
    await queue_service.check_in(
        "gp-1",
        ticket_id="B",
        patient_id="p-B",
        doctor=DoctorContext(doctor_id="d-1", doctor_name="Dr. Ramos"),
    )
    await queue_service.call_next(
        "gp-1", doctor=DoctorContext(doctor_id="d-2", doctor_name="Dra. Vega")
    )
    await queue_service.call_next("gp-1")
    await queue_service.notifier.dispatcher.drain()

    payloads = {e.ticket_id: json.loads(e.payload) for e in sink.of_type(NOW_SERVING)}
    assert payloads["A"]["doctor_id"] == "d-2"
    assert payloads["A"]["doctor_name"] == "Dra. Vega"
    assert payloads["B"]["doctor_name"] == "Dr. Ramos"


# ── Despacho ─────────────────────────────────────────

async def test_sink_failure_does_not_affect_queue():
    delivered = []

    async def flaky_sink(event: NotificationEvent) -> None:
        if event.ticket_id == "A":
            raise RuntimeError("SMTP caído")
        delivered.append(event.ticket_id)

    dispatcher = NotificationDispatcher(sink=flaky_sink, buffer_size=10)
    dispatcher.start()
    trigger = NotificationTrigger(dispatcher)
    for ticket_id in ("A", "B"):
        trigger.after_call_next("gp-1", QueueItem(
            ticket_id=ticket_id, patient_id=f"p-{ticket_id}", position=0, queue_number=1,
        ))
    await dispatcher.drain()
    await dispatcher.stop()

    assert delivered == ["B"]


def test_emit_drops_when_buffer_full():
    dispatcher = NotificationDispatcher(sink=None, buffer_size=1)
    item = QueueItem(ticket_id="A", patient_id="p-A", position=0, queue_number=1)
    event = build_event(NOW_SERVING, "gp-1", item)

    assert dispatcher.emit(event) is True
    assert dispatcher.emit(event) is False
    assert dispatcher.pending == 1


def test_build_event_requires_patient():
    item = QueueItem(ticket_id="A", position=1, queue_number=4)
    assert build_event(N3_AWAY, "gp-1", item) is None


def test_event_carries_rendered_payload():
    item = QueueItem(
        ticket_id="A",
        patient_id="p-A",
        patient_name="Ana Quispe",
        phone="+51987654321",
        email="ana@example.com",
        position=0,
        queue_number=7,
        doctor_id="d-1",
        doctor_name="Dr. Ramos",
    )
    event = build_event(NOW_SERVING, "gp-1", item)

    assert event.type == NOW_SERVING
    assert event.channel == "EMAIL"
    assert event.timestamp > 0
    payload = json.loads(event.payload)
    assert payload["subject"] == "Es su turno"
    assert "Ana Quispe" in payload["body"]
    assert payload["doctor_name"] == "Dr. Ramos"
    assert payload["patient"] == {
        "name": "Ana Quispe",
        "email": "ana@example.com",
        "phone": "+51987654321",
        "ticket_id": "A",
        "queue_number": "7",
    }


def test_n3_payload_mentions_ticket_number():
    item = QueueItem(ticket_id="C", patient_id="p-C", position=3, queue_number=12)
    payload = json.loads(render_payload(N3_AWAY, "gp-1", item))

    assert payload["subject"] == "Faltan 3 turnos para su atención"
    assert "12" in payload["body"]
    assert payload["patient"]["name"] == "Paciente"
    assert payload["doctor_id"] == ""


def test_zero_offset_is_respected():
    dispatcher = NotificationDispatcher(sink=None, buffer_size=5)
    trigger = NotificationTrigger(dispatcher, n3_away_offset=0)
    item = QueueItem(ticket_id="A", patient_id="p-A", position=2, queue_number=4)

    trigger.after_check_in("gp-1", item, position=2, now_serving=2)
    trigger.after_check_in("gp-1", item, position=5, now_serving=2)

    assert trigger.n3_away_offset == 0
    assert dispatcher.pending == 1
