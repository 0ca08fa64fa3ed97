"""initial schema

Revision ID: 3b1f6c2d9a10
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b1f6c2d9a10"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="student"),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "role IN ('admin', 'instructor', 'student')", name="ck_users_role"
        ),
    )

    op.create_table(
        "courses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "instructor_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column("slug", sa.String(length=255), nullable=False, unique=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0.00"),
        sa.Column(
            "total_lesson_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.Integer(), nullable=False),
    )
    op.create_index("ix_courses_instructor_id", "courses", ["instructor_id"])

    op.create_table(
        "lessons",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "course_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("courses.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_lessons_course_id", "lessons", ["course_id"])

    op.create_table(
        "enrollments",
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            primary_key=True,
        ),
        sa.Column(
            "course_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("courses.id"),
            primary_key=True,
        ),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="enrolled"),
        sa.Column(
            "progress_percentage", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "payment_status", sa.String(length=32), nullable=False, server_default="pending"
        ),
        sa.Column(
            "payment_amount", sa.Numeric(10, 2), nullable=False, server_default="0.00"
        ),
        sa.Column("enrolled_at", sa.Integer(), nullable=False),
        sa.Column("completed_at", sa.Integer(), nullable=True),
        sa.Column("last_activity_at", sa.Integer(), nullable=True),
        sa.CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100",
            name="ck_enrollments_progress_range",
        ),
        sa.CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)"
            " OR status = 'refunded'",
            name="ck_enrollments_completed_at",
        ),
    )
    op.create_index("ix_enrollments_course_id", "enrollments", ["course_id"])

    op.create_table(
        "progress_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("course_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "lesson_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("lessons.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.Integer(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "lesson_id", name="uq_progress_events_user_lesson"
        ),
        sa.ForeignKeyConstraint(
            ["user_id", "course_id"],
            ["enrollments.user_id", "enrollments.course_id"],
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_progress_events_user_course", "progress_events", ["user_id", "course_id"]
    )

    op.create_table(
        "certificates",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column(
            "course_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("courses.id"),
            nullable=False,
        ),
        sa.Column("certificate_code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("issued_at", sa.Integer(), nullable=False),
        sa.UniqueConstraint("user_id", "course_id", name="uq_certificates_user_course"),
    )

    op.create_table(
        "course_reviews",
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            primary_key=True,
        ),
        sa.Column(
            "course_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("courses.id"),
            primary_key=True,
        ),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_course_reviews_rating"),
    )

    op.create_table(
        "analytics_snapshots",
        sa.Column("metric_type", sa.String(length=64), primary_key=True),
        sa.Column("dimension", sa.String(length=128), primary_key=True),
        sa.Column("period", sa.String(length=32), primary_key=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("computed_at", sa.Integer(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("analytics_snapshots")
    op.drop_table("course_reviews")
    op.drop_table("certificates")
    op.drop_index("ix_progress_events_user_course", table_name="progress_events")
    op.drop_table("progress_events")
    op.drop_index("ix_enrollments_course_id", table_name="enrollments")
    op.drop_table("enrollments")
    op.drop_index("ix_lessons_course_id", table_name="lessons")
    op.drop_table("lessons")
    op.drop_index("ix_courses_instructor_id", table_name="courses")
    op.drop_table("courses")
    op.drop_table("users")
