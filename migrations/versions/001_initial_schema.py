"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Video containers, the storage indexes and one ledger table per task kind.
For databases created with api.database.create_tables(), use
'alembic stamp 001' to mark as current.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# (table, key/payload columns) for every task kind
TASK_TABLES = [
    (
        "media_formatting_tasks",
        [
            sa.Column("container_id", sa.String(64), primary_key=True),
            sa.Column("filename", sa.String(255), primary_key=True),
        ],
    ),
    (
        "subtitle_formatting_tasks",
        [
            sa.Column("container_id", sa.String(64), primary_key=True),
            sa.Column("filename", sa.String(255), primary_key=True),
        ],
    ),
    (
        "gcs_upload_file_deleting_tasks",
        [
            sa.Column("filename", sa.String(255), primary_key=True),
            sa.Column("upload_session_url", sa.Text, nullable=False, server_default=""),
        ],
    ),
    ("gcs_key_deleting_tasks", [sa.Column("key", sa.String(512), primary_key=True)]),
    ("r2_key_deleting_tasks", [sa.Column("key", sa.String(512), primary_key=True)]),
    (
        "storage_start_recording_tasks",
        [
            sa.Column("r2_dirname", sa.String(512), primary_key=True),
            sa.Column("account_id", sa.String(64), nullable=False),
            sa.Column("total_bytes", sa.BigInteger, nullable=False),
            sa.Column("start_time_ms", sa.BigInteger, nullable=False),
        ],
    ),
    (
        "storage_end_recording_tasks",
        [
            sa.Column("r2_dirname", sa.String(512), primary_key=True),
            sa.Column("account_id", sa.String(64), nullable=False),
            sa.Column("end_time_ms", sa.BigInteger, nullable=False),
        ],
    ),
    (
        "uploaded_recording_tasks",
        [
            sa.Column("gcs_key", sa.String(512), primary_key=True),
            sa.Column("account_id", sa.String(64), nullable=False),
            sa.Column("total_bytes", sa.BigInteger, nullable=False),
        ],
    ),
    (
        "video_container_writing_to_file_tasks",
        [
            sa.Column("container_id", sa.String(64), primary_key=True),
            sa.Column("version", sa.Integer, primary_key=True),
        ],
    ),
    (
        "video_container_syncing_tasks",
        [
            sa.Column("container_id", sa.String(64), primary_key=True),
            sa.Column("version", sa.Integer, primary_key=True),
        ],
    ),
]


def upgrade() -> None:
    """Create all tables for the video container service."""
    # Containers; the aggregate is a JSON document in `data`
    op.create_table(
        "video_containers",
        sa.Column("container_id", sa.String(64), primary_key=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("season_id", sa.String(64), nullable=True),
        sa.Column("episode_id", sa.String(64), nullable=True),
        sa.Column("data", sa.Text, nullable=False),
        sa.Column("created_time_ms", sa.BigInteger, nullable=False),
    )
    op.create_index("ix_video_containers_account_id", "video_containers", ["account_id"])

    # Storage indexes
    op.create_table("gcs_files", sa.Column("filename", sa.String(255), primary_key=True))
    op.create_table("r2_keys", sa.Column("key", sa.String(512), primary_key=True))

    # Task ledger
    for name, columns in TASK_TABLES:
        op.create_table(
            name,
            *columns,
            sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
            sa.Column("execution_time_ms", sa.BigInteger, nullable=False),
            sa.Column("created_time_ms", sa.BigInteger, nullable=False),
            sa.CheckConstraint("retry_count >= 0", name=f"ck_{name}_retry_count"),
        )
        op.create_index(f"ix_{name}_execution_time_ms", name, ["execution_time_ms"])


def downgrade() -> None:
    """Drop all tables."""
    for name, _ in reversed(TASK_TABLES):
        op.drop_index(f"ix_{name}_execution_time_ms", table_name=name)
        op.drop_table(name)
    op.drop_table("r2_keys")
    op.drop_table("gcs_files")
    op.drop_index("ix_video_containers_account_id", table_name="video_containers")
    op.drop_table("video_containers")
