"""dossier workflow schema: dossiers, holds, tasks, claims, events, notifications

Revision ID: 7d2b9e4f1a6c
Revises: 3a1f0c2d4e5b
Create Date: 2026-09-04 16:45:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "7d2b9e4f1a6c"
down_revision = "3a1f0c2d4e5b"
branch_labels = None
depends_on = None

PHASES = ("CREATED", "INTAKE", "WASHING", "PRAYER", "BURIAL", "REPATRIATION", "COMPLETED")
EVENT_TYPES = (
    "DOSSIER_CREATED",
    "FLOW_CHANGED",
    "DOSSIER_ACTIVATED",
    "STATUS_AUTO_CHANGED",
    "STATUS_FORCED",
    "DOSSIER_CANCELLED",
    "DOSSIER_DELETED",
    "HOLD_SET",
    "HOLD_LIFTED",
    "CLAIM_REQUESTED",
    "CLAIM_APPROVED",
    "CLAIM_REJECTED",
    "DOSSIER_RELEASED",
    "TASK_STATUS_CHANGED",
)
ENUM_NAMES = (
    "dossier_flow",
    "dossier_status",
    "dossier_phase",
    "assignment_status",
    "hold_type",
    "task_status",
    "claim_status",
    "dossier_event_type",
    "recipient_type",
    "delivery_status",
)


def upgrade():
    op.create_table(
        "dossier",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(length=20), nullable=False),
        sa.Column("deceased_name", sa.String(length=160), nullable=False),
        sa.Column("date_of_death", sa.Date(), nullable=True),
        sa.Column("flow", sa.Enum("LOC", "REP", "UNSET", name="dossier_flow"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("CREATED", "INTAKE", "OPERATIONAL", "COMPLETED", "CLOSED", name="dossier_status"),
            nullable=False,
        ),
        sa.Column("phase", sa.Enum(*PHASES, name="dossier_phase"), nullable=False),
        sa.Column("legal_hold", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("insurer_hold", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("assigned_org_id", sa.Integer(), nullable=True),
        sa.Column(
            "assignment_status",
            sa.Enum("UNASSIGNED", "PENDING_CLAIM", "ASSIGNED", name="assignment_status"),
            nullable=False,
        ),
        sa.Column("family_org_id", sa.Integer(), nullable=True),
        sa.Column("insurer_org_id", sa.Integer(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_by_user_id", sa.Integer(), nullable=True),
        sa.Column("delete_reason", sa.String(length=500), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["assigned_org_id"], ["organization.id"]),
        sa.ForeignKeyConstraint(["family_org_id"], ["organization.id"]),
        sa.ForeignKeyConstraint(["insurer_org_id"], ["organization.id"]),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["deleted_by_user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference"),
    )
    with op.batch_alter_table("dossier", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_dossier_created_at"), ["created_at"], unique=False)
    op.create_index("ix_dossier_status_phase", "dossier", ["status", "phase"])
    op.create_index("ix_dossier_assigned_status", "dossier", ["assigned_org_id", "assignment_status"])

    op.create_table(
        "dossier_hold",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("dossier_id", sa.Integer(), nullable=False),
        sa.Column("hold_type", sa.Enum("LEGAL", "INSURER", name="hold_type"), nullable=False),
        sa.Column("reason", sa.String(length=500), nullable=False),
        sa.Column("authority", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("reference", sa.String(length=80), nullable=False, server_default=""),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("placed_by_user_id", sa.Integer(), nullable=True),
        sa.Column("placed_at", sa.DateTime(), nullable=False),
        sa.Column("lifted_by_user_id", sa.Integer(), nullable=True),
        sa.Column("lifted_at", sa.DateTime(), nullable=True),
        sa.Column("lift_reason", sa.String(length=500), nullable=True),
        sa.ForeignKeyConstraint(["dossier_id"], ["dossier.id"]),
        sa.ForeignKeyConstraint(["placed_by_user_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["lifted_by_user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("dossier_hold", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_dossier_hold_dossier_id"), ["dossier_id"], unique=False)
    op.create_index(
        "ix_dossier_hold_active_type",
        "dossier_hold",
        ["dossier_id", "hold_type"],
        unique=True,
        sqlite_where=sa.text("active = 1"),
        postgresql_where=sa.text("active"),
    )

    op.create_table(
        "dossier_task",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("dossier_id", sa.Integer(), nullable=False),
        # type already created with the dossier table
        sa.Column("phase", postgresql.ENUM(*PHASES, name="dossier_phase", create_type=False), nullable=False),
        sa.Column("task_type", sa.String(length=60), nullable=False),
        sa.Column("title", sa.String(length=160), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False, server_default=""),
        sa.Column(
            "status",
            sa.Enum("OPEN", "IN_PROGRESS", "DONE", "CANCELLED", name="task_status"),
            nullable=False,
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("archived_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["dossier_id"], ["dossier.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dossier_id", "phase", "task_type", name="uq_dossier_task_phase_type"),
    )
    op.create_index("ix_dossier_task_dossier_phase_status", "dossier_task", ["dossier_id", "phase", "status"])

    op.create_table(
        "dossier_claim",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("dossier_id", sa.Integer(), nullable=False),
        sa.Column("requesting_org_id", sa.Integer(), nullable=False),
        sa.Column("requested_by_user_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(length=500), nullable=False, server_default=""),
        sa.Column(
            "status",
            sa.Enum("PENDING", "APPROVED", "REJECTED", name="claim_status"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("decided_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["dossier_id"], ["dossier.id"]),
        sa.ForeignKeyConstraint(["requesting_org_id"], ["organization.id"]),
        sa.ForeignKeyConstraint(["requested_by_user_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["decided_by_user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("dossier_claim", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_dossier_claim_dossier_id"), ["dossier_id"], unique=False)
    op.create_index(
        "ix_dossier_claim_pending",
        "dossier_claim",
        ["dossier_id"],
        unique=True,
        sqlite_where=sa.text("status = 'PENDING'"),
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "dossier_event",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("dossier_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.Enum(*EVENT_TYPES, name="dossier_event_type"), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("actor_role", sa.String(length=30), nullable=False, server_default=""),
        sa.Column("org_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("description <> ''", name="ck_dossier_event_description"),
        sa.ForeignKeyConstraint(["dossier_id"], ["dossier.id"]),
        sa.ForeignKeyConstraint(["actor_user_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["org_id"], ["organization.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dossier_event_dossier_created", "dossier_event", ["dossier_id", "created_at"])

    op.create_table(
        "notification_intent",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("dossier_id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=True),
        sa.Column("trigger_event", sa.String(length=60), nullable=False),
        sa.Column(
            "recipient_type",
            sa.Enum("FAMILY", "FUNERAL_DIRECTOR", "INSURER", "REQUESTER", "ADMIN", name="recipient_type"),
            nullable=False,
        ),
        sa.Column("recipient_org_id", sa.Integer(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "SENT", "FAILED", name="delivery_status"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["dossier_id"], ["dossier.id"]),
        sa.ForeignKeyConstraint(["event_id"], ["dossier_event.id"]),
        sa.ForeignKeyConstraint(["recipient_org_id"], ["organization.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("notification_intent", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_notification_intent_dossier_id"), ["dossier_id"], unique=False)
    op.create_index("ix_notification_intent_status_created", "notification_intent", ["status", "created_at"])


def downgrade():
    op.drop_index("ix_notification_intent_status_created", table_name="notification_intent")
    with op.batch_alter_table("notification_intent", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_notification_intent_dossier_id"))
    op.drop_table("notification_intent")

    op.drop_index("ix_dossier_event_dossier_created", table_name="dossier_event")
    op.drop_table("dossier_event")

    op.drop_index("ix_dossier_claim_pending", table_name="dossier_claim")
    with op.batch_alter_table("dossier_claim", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_dossier_claim_dossier_id"))
    op.drop_table("dossier_claim")

    op.drop_index("ix_dossier_task_dossier_phase_status", table_name="dossier_task")
    op.drop_table("dossier_task")

    op.drop_index("ix_dossier_hold_active_type", table_name="dossier_hold")
    with op.batch_alter_table("dossier_hold", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_dossier_hold_dossier_id"))
    op.drop_table("dossier_hold")

    op.drop_index("ix_dossier_assigned_status", table_name="dossier")
    op.drop_index("ix_dossier_status_phase", table_name="dossier")
    with op.batch_alter_table("dossier", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_dossier_created_at"))
    op.drop_table("dossier")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in ENUM_NAMES:
            op.execute(sa.text(f"DROP TYPE IF EXISTS {name}"))
