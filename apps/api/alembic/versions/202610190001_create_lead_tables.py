"""create lead tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_user",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_crm_user"),
    )
    op.create_table(
        "crm_service",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_crm_service"),
    )
    op.create_table(
        "crm_lead_source",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_crm_lead_source"),
        sa.UniqueConstraint("slug", name="uq_crm_lead_source_slug"),
    )

    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("occupation", sa.Text(), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("country", sa.String(length=64), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("service_id", sa.Uuid(), nullable=True),
        sa.Column("lead_source_id", sa.Uuid(), nullable=True),
        sa.Column("inquiry_status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("inquiry_type", sa.String(length=32), nullable=True),
        sa.Column("inquiry_country", sa.String(length=64), nullable=True),
        sa.Column("lead_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("budget_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("budget_currency", sa.String(length=8), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("tag_values", sa.Text(), nullable=False, server_default=""),
        sa.Column("assigned_to", sa.Uuid(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_follow_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_activities_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(
            ["service_id"], ["crm_service.id"], name="fk_crm_lead_service_id_crm_service", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["lead_source_id"],
            ["crm_lead_source.id"],
            name="fk_crm_lead_lead_source_id_crm_lead_source",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["assigned_to"], ["crm_user.id"], name="fk_crm_lead_assigned_to_crm_user", ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_crm_lead"),
    )
    op.create_index("ix_crm_lead_status_priority", "crm_lead", ["inquiry_status", "priority"], unique=False)
    op.create_index("ix_crm_lead_assigned_to", "crm_lead", ["assigned_to"], unique=False)
    op.create_index("ix_crm_lead_created_at", "crm_lead", ["created_at"], unique=False)

    op.create_table(
        "crm_lead_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("category", sa.String(length=32), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("cost", sa.Numeric(8, 2), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(
            ["lead_id"], ["crm_lead.id"], name="fk_crm_lead_activity_lead_id_crm_lead", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_crm_lead_activity"),
    )
    op.create_index("ix_crm_lead_activity_lead_status", "crm_lead_activity", ["lead_id", "status"], unique=False)
    op.create_index("ix_crm_lead_activity_scheduled_at", "crm_lead_activity", ["scheduled_at"], unique=False)
    op.create_index("ix_crm_lead_activity_due_at", "crm_lead_activity", ["due_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_lead_activity_due_at", table_name="crm_lead_activity")
    op.drop_index("ix_crm_lead_activity_scheduled_at", table_name="crm_lead_activity")
    op.drop_index("ix_crm_lead_activity_lead_status", table_name="crm_lead_activity")
    op.drop_table("crm_lead_activity")
    op.drop_index("ix_crm_lead_created_at", table_name="crm_lead")
    op.drop_index("ix_crm_lead_assigned_to", table_name="crm_lead")
    op.drop_index("ix_crm_lead_status_priority", table_name="crm_lead")
    op.drop_table("crm_lead")
    op.drop_table("crm_lead_source")
    op.drop_table("crm_service")
    op.drop_table("crm_user")
