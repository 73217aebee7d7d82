"""retention lifecycle schema

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "3f1a9c2e7b10"
down_revision = None
branch_labels = None
depends_on = None

_ENUMS = {
    "retentionphase": ("active", "semi_active", "final"),
    "finaldisposition": ("destroy", "archive_permanent", "sample"),
    "conditionlogic": ("and_", "or_"),
    "runfrequency": ("daily", "weekly", "monthly"),
    "transitionstatus": ("pending", "processing", "completed", "failed"),
    "remindertype": (
        "contract_renewal",
        "license_expiry",
        "certification_renewal",
        "document_review",
        "retention_expiry",
        "custom",
    ),
    "notificationchannel": ("email", "in_app"),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*_ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    # UTC epoch milliseconds
    return [
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=True),
    ]


def upgrade() -> None:
    # --- Enums ---
    for name, values in _ENUMS.items():
        sa.Enum(*values, name=name).create(op.get_bind(), checkfirst=True)

    # --- Documents ---
    op.create_table(
        "documents",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("filename", sa.String(500), nullable=False),
        sa.Column("extension", sa.String(32), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("content_text", sa.Text(), nullable=True),
        sa.Column("folder", sa.String(500), nullable=True),
        sa.Column("document_type", sa.String(80), nullable=True),
        sa.Column("status", sa.String(40), nullable=False),
        sa.Column("phase", _enum("retentionphase"), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("retention_category", sa.String(40), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("is_locked", sa.Boolean(), nullable=True),
        sa.Column("retention_extended_years", sa.Integer(), nullable=True),
        sa.Column("expiry_notified_at", sa.BigInteger(), nullable=True),
        sa.Column("disposition_outcome", sa.String(40), nullable=True),
        sa.Column("disposed_at", sa.BigInteger(), nullable=True),
        sa.Column("uploaded_at", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_documents_phase", "documents", ["phase"])
    op.create_index(
        "ix_documents_retention_category", "documents", ["retention_category"]
    )
    op.create_index("ix_documents_folder", "documents", ["folder"])

    # --- Retention Categories ---
    op.create_table(
        "retention_categories",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("code", sa.String(40), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("active_phase_years", sa.Integer(), nullable=False),
        sa.Column("semi_active_phase_years", sa.Integer(), nullable=False),
        sa.Column("final_disposition", _enum("finaldisposition"), nullable=False),
        sa.Column("sample_percentage", sa.Integer(), nullable=True),
        sa.Column("sample_criteria", sa.Text(), nullable=True),
        sa.Column("legal_reference", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_retention_categories_code"),
    )

    # --- Classification Rules ---
    op.create_table(
        "classification_rules",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("condition_logic", _enum("conditionlogic"), nullable=False),
        sa.Column("actions", sa.JSON(), nullable=False),
        sa.Column("run_on_upload", sa.Boolean(), nullable=True),
        sa.Column("documents_classified", sa.Integer(), nullable=True),
        sa.Column("last_run_at", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_classification_rules_priority", "classification_rules", ["priority"]
    )

    # --- Auto-archive Rules ---
    op.create_table(
        "auto_archive_rules",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("source_folder", sa.String(500), nullable=True),
        sa.Column("source_type", sa.String(80), nullable=True),
        sa.Column("source_status", sa.String(40), nullable=True),
        sa.Column("source_age_days", sa.Integer(), nullable=True),
        sa.Column("source_tags", sa.JSON(), nullable=True),
        sa.Column("target_folder", sa.String(500), nullable=True),
        sa.Column("target_status", sa.String(40), nullable=True),
        sa.Column("target_locked", sa.Boolean(), nullable=True),
        sa.Column("run_frequency", _enum("runfrequency"), nullable=False),
        sa.Column("last_run_at", sa.BigInteger(), nullable=True),
        sa.Column("next_run_at", sa.BigInteger(), nullable=True),
        sa.Column("documents_processed", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_auto_archive_rules_next_run_at", "auto_archive_rules", ["next_run_at"]
    )

    # --- Transition Tasks ---
    op.create_table(
        "transition_tasks",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("document_id", sa.UUID(), nullable=False),
        sa.Column("current_phase", _enum("retentionphase"), nullable=False),
        sa.Column("target_phase", _enum("retentionphase"), nullable=False),
        sa.Column("retention_category", sa.String(40), nullable=False),
        sa.Column("scheduled_for", sa.BigInteger(), nullable=False),
        sa.Column("status", _enum("transitionstatus"), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.BigInteger(), nullable=True),
        sa.Column("completed_at", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_transition_tasks_document_id", "transition_tasks", ["document_id"]
    )
    op.create_index("ix_transition_tasks_status", "transition_tasks", ["status"])
    op.create_index(
        "ix_transition_tasks_scheduled_for", "transition_tasks", ["scheduled_for"]
    )

    # --- Reminders ---
    op.create_table(
        "reminders",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("document_id", sa.UUID(), nullable=False),
        sa.Column("reminder_type", _enum("remindertype"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reminder_date", sa.BigInteger(), nullable=False),
        sa.Column("days_before_alert", sa.Integer(), nullable=False),
        sa.Column("repeat_interval_days", sa.Integer(), nullable=True),
        sa.Column("notify_email", sa.Boolean(), nullable=True),
        sa.Column("notify_in_app", sa.Boolean(), nullable=True),
        sa.Column("notify_users", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("last_notified_at", sa.BigInteger(), nullable=True),
        sa.Column("acknowledged_at", sa.BigInteger(), nullable=True),
        sa.Column("acknowledged_by", sa.String(120), nullable=True),
        sa.Column("created_by", sa.String(120), nullable=False),
        sa.Column("parent_reminder_id", sa.UUID(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reminders_document_id", "reminders", ["document_id"])
    op.create_index("ix_reminders_reminder_date", "reminders", ["reminder_date"])

    # --- Audit Events ---
    op.create_table(
        "audit_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("document_id", sa.String(36), nullable=True),
        sa.Column("actor_id", sa.String(120), nullable=False),
        sa.Column("outcome", sa.String(40), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_events_document_id", "audit_events", ["document_id"])
    op.create_index("ix_audit_events_action", "audit_events", ["action"])

    # --- Notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("recipient_id", sa.String(120), nullable=False),
        sa.Column("channel", _enum("notificationchannel"), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notifications_recipient_id", "notifications", ["recipient_id"]
    )
    op.create_index("ix_notifications_is_read", "notifications", ["is_read"])


def downgrade() -> None:
    op.drop_index("ix_notifications_is_read", table_name="notifications")
    op.drop_index("ix_notifications_recipient_id", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_audit_events_action", table_name="audit_events")
    op.drop_index("ix_audit_events_document_id", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("ix_reminders_reminder_date", table_name="reminders")
    op.drop_index("ix_reminders_document_id", table_name="reminders")
    op.drop_table("reminders")

    op.drop_index("ix_transition_tasks_scheduled_for", table_name="transition_tasks")
    op.drop_index("ix_transition_tasks_status", table_name="transition_tasks")
    op.drop_index("ix_transition_tasks_document_id", table_name="transition_tasks")
    op.drop_table("transition_tasks")

    op.drop_index("ix_auto_archive_rules_next_run_at", table_name="auto_archive_rules")
    op.drop_table("auto_archive_rules")

    op.drop_index("ix_classification_rules_priority", table_name="classification_rules")
    op.drop_table("classification_rules")

    op.drop_table("retention_categories")

    op.drop_index("ix_documents_folder", table_name="documents")
    op.drop_index("ix_documents_retention_category", table_name="documents")
    op.drop_index("ix_documents_phase", table_name="documents")
    op.drop_table("documents")

    for enum_name in reversed(list(_ENUMS)):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
