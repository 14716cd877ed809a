"""Create clinic_queues, queue_tickets and queue_events tables

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "a1c2e3f4b5d6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "clinic_queues",
        sa.Column("clinic_id", sa.String(64), primary_key=True),
        sa.Column("last_sequence", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("now_serving", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "queue_tickets",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "clinic_id", sa.String(64),
            sa.ForeignKey("clinic_queues.clinic_id"), nullable=False,
        ),
        sa.Column("ticket_id", sa.String(64), nullable=False),
        sa.Column("patient_id", sa.String(64), nullable=True),
        sa.Column("sequence", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("phone", sa.String(30), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("doctor_id", sa.String(64), nullable=True),
        sa.Column("doctor_name", sa.String(200), nullable=True),
        sa.Column("doctor_speciality", sa.String(100), nullable=True),
        sa.Column("clinic_name", sa.String(200), nullable=True),
        sa.Column("clinic_address", sa.String(300), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("clinic_id", "ticket_id", name="uq_queue_ticket_clinic_ticket"),
        sa.UniqueConstraint("clinic_id", "sequence", name="uq_queue_ticket_clinic_sequence"),
    )
    op.create_index("idx_queue_ticket_ticket", "queue_tickets", ["ticket_id"])

    op.create_table(
        "queue_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("clinic_id", sa.String(64), nullable=False),
        sa.Column(
            "event_type",
            sa.Enum("ENQUEUE", "DEQUEUE", "REMOVE", name="queue_event_type"),
            nullable=False,
        ),
        sa.Column("ticket_id", sa.String(64), nullable=False),
        sa.Column("sequence", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_queue_events_clinic", "queue_events", ["clinic_id", "id"])


def downgrade() -> None:
    op.drop_index("idx_queue_events_clinic", table_name="queue_events")
    op.drop_table("queue_events")
    op.drop_index("idx_queue_ticket_ticket", table_name="queue_tickets")
    op.drop_table("queue_tickets")
    op.drop_table("clinic_queues")
    op.execute("DROP TYPE IF EXISTS queue_event_type")
