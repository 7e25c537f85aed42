"""Create the question assignment lifecycle table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "question_assignments",
        sa.Column("assignment_id", sa.String(length=64), nullable=False),
        sa.Column("question_id", sa.String(length=128), nullable=False),
        sa.Column("person_id", sa.String(length=128), nullable=False),
        sa.Column("unique_link_token", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reminder_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recording_id", sa.String(length=128), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("assignment_id"),
        sa.UniqueConstraint("unique_link_token"),
    )
    op.create_index(
        "ix_question_assignments_question_id",
        "question_assignments",
        ["question_id"],
        unique=False,
    )
    op.create_index(
        "ix_question_assignments_person_id",
        "question_assignments",
        ["person_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_question_assignments_person_id", table_name="question_assignments")
    op.drop_index("ix_question_assignments_question_id", table_name="question_assignments")
    op.drop_table("question_assignments")
