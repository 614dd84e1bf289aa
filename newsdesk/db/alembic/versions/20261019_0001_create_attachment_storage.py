"""Create articles, attachments, blob storage and orphaned file tables.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "articles",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("attachment_ids", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "attachments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("article_id", sa.Uuid(), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("blob_ref", sa.Text(), nullable=False),
        sa.Column("backend", sa.String(length=32), nullable=False),
        sa.Column("mime_type", sa.String(length=255), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_attachments_article_id", "attachments", ["article_id"])
    op.create_index("ix_attachments_backend_blob_ref", "attachments", ["backend", "blob_ref"])

    op.create_table(
        "blob_files",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("content_type", sa.String(length=255), nullable=True),
        sa.Column("length", sa.Integer(), nullable=False),
        sa.Column("chunk_size", sa.Integer(), nullable=False),
        sa.Column(
            "uploaded_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "blob_chunks",
        sa.Column("file_id", sa.String(length=32), nullable=False),
        sa.Column("n", sa.Integer(), nullable=False),
        sa.Column("data", sa.LargeBinary(), nullable=False),
        sa.ForeignKeyConstraint(["file_id"], ["blob_files.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("file_id", "n"),
    )

    op.create_table(
        "orphaned_files",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("file_id", sa.String(length=255), nullable=False),
        sa.Column("storage_type", sa.String(length=32), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column(
            "resolved",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_orphaned_files_file_id", "orphaned_files", ["file_id"])
    op.create_index(
        "ix_orphaned_files_resolved_storage_type",
        "orphaned_files",
        ["resolved", "storage_type"],
    )
    op.create_index("ix_orphaned_files_entity_type", "orphaned_files", ["entity_type"])


def downgrade() -> None:
    op.drop_index("ix_orphaned_files_entity_type", table_name="orphaned_files")
    op.drop_index("ix_orphaned_files_resolved_storage_type", table_name="orphaned_files")
    op.drop_index("ix_orphaned_files_file_id", table_name="orphaned_files")
    op.drop_table("orphaned_files")
    op.drop_table("blob_chunks")
    op.drop_table("blob_files")
    op.drop_index("ix_attachments_backend_blob_ref", table_name="attachments")
    op.drop_index("ix_attachments_article_id", table_name="attachments")
    op.drop_table("attachments")
    op.drop_table("articles")
