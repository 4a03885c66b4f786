"""create_attachment_outbox_audit

Revision ID: 0001a7c2e9b4
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


revision = "0001a7c2e9b4"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "attachment",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("owner_type", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("mime_type", sa.String(length=128), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("fallback_bytes", sa.LargeBinary(), nullable=True),
        sa.Column("fallback_encoding", sa.String(length=16), nullable=True),
        sa.Column("fallback_available", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("external_id", sa.String(length=512), nullable=True),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending_upload"),
        sa.Column("uploaded_by", sa.String(length=64), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_attachment_owner", "attachment", ["organization_id", "owner_type", "owner_id"], unique=False)
    op.create_index("idx_attachment_status", "attachment", ["status"], unique=False)
    op.create_index("idx_attachment_external_id", "attachment", ["external_id"], unique=False)

    op.create_table(
        "outbox_event",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_outbox_event_pending", "outbox_event", ["processed", "created_at"], unique=False)
    op.create_index("idx_outbox_event_entity", "outbox_event", ["entity_type", "entity_id"], unique=False)

    op.create_table(
        "audit_event",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_event_entity", "audit_event", ["entity_type", "entity_id"], unique=False)
    op.create_index("idx_audit_event_type_created", "audit_event", ["event_type", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_audit_event_type_created", table_name="audit_event")
    op.drop_index("idx_audit_event_entity", table_name="audit_event")
    op.drop_table("audit_event")

    op.drop_index("idx_outbox_event_entity", table_name="outbox_event")
    op.drop_index("idx_outbox_event_pending", table_name="outbox_event")
    op.drop_table("outbox_event")

    op.drop_index("idx_attachment_external_id", table_name="attachment")
    op.drop_index("idx_attachment_status", table_name="attachment")
    op.drop_index("idx_attachment_owner", table_name="attachment")
    op.drop_table("attachment")
