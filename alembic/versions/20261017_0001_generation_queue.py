"""Create generation queue tables: requests, attempts, download tasks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_index", sa.Integer(), nullable=False),
        sa.Column("prompt_text", sa.Text(), nullable=False),
        sa.Column("tail_slug", sa.String(), nullable=False),
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("submit_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("done_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('queued','submitting','in_progress','done','failed','timeout')",
            name="ck_requests_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_index", name="uq_requests_request_index"),
        sa.UniqueConstraint("fingerprint", name="uq_requests_fingerprint"),
    )
    op.create_index("ix_requests_status", "requests", ["status"], unique=False)
    op.create_index("idx_requests_queue", "requests", ["status", "request_index"], unique=False)

    op.create_table(
        "attempts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("take_index", sa.Integer(), nullable=False),
        sa.Column("operation_id", sa.String(), nullable=False),
        sa.Column("scene_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("locator", sa.Text(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("duration_sec", sa.Integer(), nullable=True),
        sa.Column("last_poll_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("downloaded", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("file_path", sa.String(), nullable=True),
        sa.Column("submission_round", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["request_id"], ["requests.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("operation_id", name="uq_attempts_operation_id"),
    )
    op.create_index("ix_attempts_request_id", "attempts", ["request_id"], unique=False)
    op.create_index("ix_attempts_status", "attempts", ["status"], unique=False)
    op.create_index(
        "idx_attempts_request_take",
        "attempts",
        ["request_id", "take_index"],
        unique=False,
    )

    op.create_table(
        "download_tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("attempt_id", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("retries", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "state IN ('queued','running','done','failed')",
            name="ck_download_tasks_state",
        ),
        sa.ForeignKeyConstraint(["request_id"], ["requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["attempt_id"], ["attempts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("attempt_id", name="uq_download_tasks_attempt_id"),
    )
    op.create_index("ix_download_tasks_request_id", "download_tasks", ["request_id"], unique=False)
    op.create_index("idx_download_tasks_state", "download_tasks", ["state", "id"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_download_tasks_state", table_name="download_tasks")
    op.drop_index("ix_download_tasks_request_id", table_name="download_tasks")
    op.drop_table("download_tasks")
    op.drop_index("idx_attempts_request_take", table_name="attempts")
    op.drop_index("ix_attempts_status", table_name="attempts")
    op.drop_index("ix_attempts_request_id", table_name="attempts")
    op.drop_table("attempts")
    op.drop_index("idx_requests_queue", table_name="requests")
    op.drop_index("ix_requests_status", table_name="requests")
    op.drop_table("requests")
