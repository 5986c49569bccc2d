"""Create chatbot, knowledge manifest, vector outbox and chat history tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_ragbot_initial"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        )
    ]
    if updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
                onupdate=sa.func.now(),
            )
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "chatbots",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        sa.Column("model", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
    )

    op.create_table(
        "knowledge_sources",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("chatbot_id", UUID, nullable=False),
        sa.Column("label", sa.String(length=500), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("uri", sa.Text(), nullable=False),
        sa.Column("canonical_url", sa.Text(), nullable=True),
        sa.Column("original_url", sa.Text(), nullable=True),
        sa.Column("extraction_method", sa.String(length=64), nullable=True),
        sa.Column("text_quality", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("current_revision", sa.String(length=64), nullable=True),
        sa.Column("last_ingestion_job_id", UUID, nullable=True),
        sa.Column("last_ingested_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["chatbot_id"], ["chatbots.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("chatbot_id", "uri", name="uq_knowledge_source_chatbot_uri"),
    )
    op.create_index("ix_knowledge_sources_chatbot_id", "knowledge_sources", ["chatbot_id"])
    op.create_index(
        "ix_knowledge_sources_last_ingestion_job_id",
        "knowledge_sources",
        ["last_ingestion_job_id"],
    )

    op.create_table(
        "ingestion_jobs",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("chatbot_id", UUID, nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("knowledge_source_id", UUID, nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("requested_by", sa.String(length=120), nullable=True),
        sa.Column("total_chunks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("succeeded_vectors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_vectors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("staged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["chatbot_id"], ["chatbots.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_ingestion_jobs_chatbot_id", "ingestion_jobs", ["chatbot_id"])
    op.create_index("ix_ingestion_jobs_status", "ingestion_jobs", ["status"])
    op.create_index(
        "ix_ingestion_jobs_knowledge_source_id", "ingestion_jobs", ["knowledge_source_id"]
    )

    op.create_table(
        "knowledge_chunks",
        sa.Column("chunk_id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("chatbot_id", UUID, nullable=False),
        sa.Column("knowledge_source_id", UUID, nullable=False),
        sa.Column("source_type", sa.String(length=8), nullable=False),
        sa.Column("uri", sa.Text(), nullable=True),
        sa.Column("canonical_url", sa.Text(), nullable=True),
        sa.Column("original_url", sa.Text(), nullable=True),
        sa.Column("extraction_method", sa.String(length=64), nullable=True),
        sa.Column("text_quality", sa.String(length=32), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("source_revision", sa.String(length=64), nullable=False),
        sa.Column("page_no", sa.Integer(), nullable=True),
        sa.Column("start_offset", sa.Integer(), nullable=False),
        sa.Column("end_offset", sa.Integer(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("text_hash", sa.String(length=64), nullable=False),
        sa.Column("embedding_model", sa.String(length=128), nullable=False),
        sa.Column("embedding_dimensions", sa.Integer(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by_job_id", UUID, nullable=True),
        sa.Column("updated_by_job_id", UUID, nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["chatbot_id"], ["chatbots.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["knowledge_source_id"], ["knowledge_sources.id"], ondelete="CASCADE"
        ),
    )
    op.create_index("ix_knowledge_chunks_chatbot_id", "knowledge_chunks", ["chatbot_id"])
    op.create_index(
        "ix_knowledge_chunks_knowledge_source_id", "knowledge_chunks", ["knowledge_source_id"]
    )
    op.create_index(
        "ix_knowledge_chunks_source_active",
        "knowledge_chunks",
        ["knowledge_source_id", "deleted_at"],
    )

    op.create_table(
        "vector_outbox",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("job_id", UUID, nullable=False),
        sa.Column("chatbot_id", UUID, nullable=False),
        sa.Column("operation", sa.String(length=8), nullable=False),
        sa.Column("chunk_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["ingestion_jobs.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "job_id", "operation", "chunk_id", name="uq_vector_outbox_job_op_chunk"
        ),
    )
    op.create_index("ix_vector_outbox_job_id", "vector_outbox", ["job_id"])
    op.create_index("ix_vector_outbox_chatbot_id", "vector_outbox", ["chatbot_id"])
    op.create_index("ix_vector_outbox_status", "vector_outbox", ["status"])

    op.create_table(
        "chat_sessions",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("chatbot_id", UUID, nullable=False),
        sa.Column("user_id", sa.String(length=120), nullable=True),
        sa.ForeignKeyConstraint(["chatbot_id"], ["chatbots.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_chat_sessions_chatbot_id", "chat_sessions", ["chatbot_id"])

    op.create_table(
        "chat_messages",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_timestamps(updated=False),
        sa.Column("session_id", UUID, nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("response_json", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["chat_sessions.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_chat_messages_session_id", "chat_messages", ["session_id"])


def downgrade() -> None:
    op.drop_index("ix_chat_messages_session_id", table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_index("ix_chat_sessions_chatbot_id", table_name="chat_sessions")
    op.drop_table("chat_sessions")
    op.drop_index("ix_vector_outbox_status", table_name="vector_outbox")
    op.drop_index("ix_vector_outbox_chatbot_id", table_name="vector_outbox")
    op.drop_index("ix_vector_outbox_job_id", table_name="vector_outbox")
    op.drop_table("vector_outbox")
    op.drop_index("ix_knowledge_chunks_source_active", table_name="knowledge_chunks")
    op.drop_index("ix_knowledge_chunks_knowledge_source_id", table_name="knowledge_chunks")
    op.drop_index("ix_knowledge_chunks_chatbot_id", table_name="knowledge_chunks")
    op.drop_table("knowledge_chunks")
    op.drop_index("ix_ingestion_jobs_knowledge_source_id", table_name="ingestion_jobs")
    op.drop_index("ix_ingestion_jobs_status", table_name="ingestion_jobs")
    op.drop_index("ix_ingestion_jobs_chatbot_id", table_name="ingestion_jobs")
    op.drop_table("ingestion_jobs")
    op.drop_index(
        "ix_knowledge_sources_last_ingestion_job_id", table_name="knowledge_sources"
    )
    op.drop_index("ix_knowledge_sources_chatbot_id", table_name="knowledge_sources")
    op.drop_table("knowledge_sources")
    op.drop_table("chatbots")
