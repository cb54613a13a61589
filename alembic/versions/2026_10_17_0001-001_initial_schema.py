"""initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-17

All 4 tables as defined in app/models/database_models.py:
users, documents, document_fields, templates.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── Enum types ────────────────────────────────────────────────────────
    # SQLAlchemy stores enum member names, not values
    document_status = sa.Enum("UPLOADED", "VERIFIED", "TEMPLATED", name="documentstatus")
    document_status.create(op.get_bind(), checkfirst=True)

    processing_status = sa.Enum(
        "PENDING", "QUEUED", "PROCESSING", "COMPLETED", "FAILED",
        name="processingstatus",
    )
    processing_status.create(op.get_bind(), checkfirst=True)

    # ── users ─────────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True, index=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # ── documents ─────────────────────────────────────────────────────────
    op.create_table(
        "documents",
        sa.Column("id", sa.Integer, primary_key=True, index=True),
        sa.Column("user_id", sa.String(255), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("file_type", sa.String(50), nullable=False),
        sa.Column("storage_path", sa.String(512), nullable=False),
        sa.Column("metadata_json", sa.JSON, nullable=True),
        sa.Column("status", sa.Enum("UPLOADED", "VERIFIED", "TEMPLATED", name="documentstatus", create_type=False), nullable=False),
        sa.Column("xml_content", sa.Text, nullable=True),
        sa.Column(
            "processing_status",
            sa.Enum("PENDING", "QUEUED", "PROCESSING", "COMPLETED", "FAILED", name="processingstatus", create_type=False),
            nullable=False,
        ),
        sa.Column("processing_result", sa.JSON, nullable=True),
        sa.Column("template_id", sa.Integer, nullable=True, index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # ── document_fields ───────────────────────────────────────────────────
    op.create_table(
        "document_fields",
        sa.Column("id", sa.Integer, primary_key=True, index=True),
        sa.Column("document_id", sa.Integer, sa.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("field_name", sa.String(255), nullable=False),
        sa.Column("field_value", sa.Text, nullable=True),
        sa.Column("field_tag", sa.String(255), nullable=False),
        sa.Column("position", sa.Integer, nullable=True),
        sa.Column("run_formatting", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # ── templates ─────────────────────────────────────────────────────────
    op.create_table(
        "templates",
        sa.Column("id", sa.Integer, primary_key=True, index=True),
        sa.Column("user_id", sa.String(255), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("original_document_id", sa.Integer, sa.ForeignKey("documents.id", ondelete="SET NULL"), nullable=True, index=True),
        sa.Column("storage_path", sa.String(512), nullable=False),
        sa.Column("tag_metadata", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("templates")
    op.drop_table("document_fields")
    op.drop_table("documents")
    op.drop_table("users")

    op.execute("DROP TYPE IF EXISTS processingstatus")
    op.execute("DROP TYPE IF EXISTS documentstatus")
