"""
Tests de las primitivas del Ticket Store sobre SQLite.
"""

from clinic_queue.models.queue_event import QueueEventType
from clinic_queue.services import ticket_store


async def _enqueue(db, clinic_id: str, ticket_id: str, **kwargs):
    queue = await ticket_store.lock_queue(db, clinic_id)
    sequence = ticket_store.allocate_sequence(queue)
    return await ticket_store.add_ticket(
        db, clinic_id=clinic_id, ticket_id=ticket_id, sequence=sequence, **kwargs
    )


async def test_lock_queue_registers_clinic_once(db_session):
    first = await ticket_store.lock_queue(db_session, "gp-1")
    second = await ticket_store.lock_queue(db_session, "gp-1")
    await db_session.commit()

    assert first is second
    assert first.last_sequence == 0
    assert first.now_serving == 0
    assert await ticket_store.list_clinic_ids(db_session) == ["gp-1"]


async def test_lock_queue_without_create_returns_none(db_session):
    assert await ticket_store.lock_queue(db_session, "unknown", create=False) is None
    assert await ticket_store.list_clinic_ids(db_session) == []


async def test_sequences_are_per_clinic_and_increasing(db_session):
    a = await _enqueue(db_session, "gp-1", "A")
    b = await _enqueue(db_session, "gp-1", "B")
    x = await _enqueue(db_session, "gp-2", "X")
    await db_session.commit()

    assert (a.sequence, b.sequence) == (1, 2)
    assert x.sequence == 1


async def test_add_ticket_stores_contact_and_doctor(db_session):
    ticket = await _enqueue(
        db_session, "gp-1", "A",
        patient_id="p-1",
        contact={"name": "Ana Quispe", "phone": "+51987654321", "email": None},
        doctor={"doctor_id": "d-1", "doctor_name": "Dr. Ramos"},
    )
    await db_session.commit()

    stored = await ticket_store.get_ticket(db_session, "gp-1", "A")
    assert stored is ticket
    assert stored.name == "Ana Quispe"
    assert stored.doctor_name == "Dr. Ramos"
    assert stored.patient_id == "p-1"


async def test_pop_oldest_is_fifo(db_session):
    for ticket_id in ("A", "B", "C"):
        await _enqueue(db_session, "gp-1", ticket_id)

    popped = await ticket_store.pop_oldest(db_session, "gp-1")
    await db_session.commit()

    assert popped.ticket_id == "A"
    assert [t.ticket_id for t in await ticket_store.list_tickets(db_session, "gp-1")] == ["B", "C"]
    assert await ticket_store.count_waiting(db_session, "gp-1") == 2


async def test_pop_oldest_on_empty_clinic(db_session):
    await ticket_store.lock_queue(db_session, "gp-1")
    assert await ticket_store.pop_oldest(db_session, "gp-1") is None


async def test_rank_and_position_lookup(db_session):
    for ticket_id in ("A", "B", "C", "D"):
        await _enqueue(db_session, "gp-1", ticket_id)
    await db_session.commit()

    c = await ticket_store.get_ticket(db_session, "gp-1", "C")
    assert await ticket_store.ticket_rank(db_session, "gp-1", c.sequence) == 2
    assert (await ticket_store.ticket_at_position(db_session, "gp-1", 3)).ticket_id == "C"
    assert await ticket_store.ticket_at_position(db_session, "gp-1", 5) is None
    assert await ticket_store.ticket_at_position(db_session, "gp-1", 0) is None


async def test_find_ticket_across_clinics(db_session):
    await _enqueue(db_session, "gp-2", "T-9")
    await db_session.commit()

    found = await ticket_store.find_ticket(db_session, "T-9")
    assert found.clinic_id == "gp-2"
    assert await ticket_store.find_ticket(db_session, "T-9", "gp-1") is None


async def test_event_log_replay_from_id(db_session):
    await ticket_store.lock_queue(db_session, "gp-1")
    first = await ticket_store.append_event(db_session, "gp-1", QueueEventType.ENQUEUE, "A", 1)
    await ticket_store.append_event(db_session, "gp-1", QueueEventType.DEQUEUE, "A", 1)
    await ticket_store.append_event(db_session, "gp-2", QueueEventType.ENQUEUE, "X", 1)
    await db_session.commit()

    events = await ticket_store.list_events(db_session, "gp-1")
    assert [e.event_type for e in events] == [QueueEventType.ENQUEUE, QueueEventType.DEQUEUE]

    replay = await ticket_store.list_events(db_session, "gp-1", after_id=first.id)
    assert [e.event_type for e in replay] == [QueueEventType.DEQUEUE]


async def test_list_queue_counts_includes_empty_clinics(db_session):
    await _enqueue(db_session, "gp-1", "A")
    await _enqueue(db_session, "gp-1", "B")
    await ticket_store.lock_queue(db_session, "gp-2")
    await db_session.commit()

    assert await ticket_store.list_queue_counts(db_session) == [
        ("gp-1", 0, 2),
        ("gp-2", 0, 0),
    ]
