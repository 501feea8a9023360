import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


async def configure_database(db: Database = database):
    """
    Configure database-specific settings after connection.
    For PostgreSQL, this is a no-op. SQLite gets a busy timeout so concurrent
    writers wait instead of failing immediately.
    """
    if str(db.url).startswith("sqlite"):
        await db.execute("PRAGMA busy_timeout = 5000")


# Video containers. The aggregate (tracks, playlist state, processing state,
# failures) is stored as JSON in `data`; see api.video_container.
video_containers = sa.Table(
    "video_containers",
    metadata,
    sa.Column("container_id", sa.String(64), primary_key=True),
    sa.Column("account_id", sa.String(64), nullable=False),
    sa.Column("season_id", sa.String(64), nullable=True),
    sa.Column("episode_id", sa.String(64), nullable=True),
    sa.Column("data", sa.Text, nullable=False),
    sa.Column("created_time_ms", sa.BigInteger, nullable=False),
    sa.Index("ix_video_containers_account_id", "account_id"),
)

# Index of primary-store objects allocated by this service
gcs_files = sa.Table(
    "gcs_files",
    metadata,
    sa.Column("filename", sa.String(255), primary_key=True),
)

# Index of publish-store keys (files or directory prefixes) claimed by this service
r2_keys = sa.Table(
    "r2_keys",
    metadata,
    sa.Column("key", sa.String(512), primary_key=True),
)


def _task_table(name: str, *columns: sa.Column) -> sa.Table:
    """
    Build a task ledger table.

    Every task kind shares the retry bookkeeping columns:
    - retry_count: number of claims so far
    - execution_time_ms: next eligible attempt (INDEXED, drives list-due)
    - created_time_ms: first insertion, used for stuck-task detection
    """
    return sa.Table(
        name,
        metadata,
        *columns,
        sa.Column(
            "retry_count",
            sa.Integer,
            sa.CheckConstraint("retry_count >= 0", name=f"ck_{name}_retry_count"),
            nullable=False,
            default=0,
        ),
        sa.Column("execution_time_ms", sa.BigInteger, nullable=False),
        sa.Column("created_time_ms", sa.BigInteger, nullable=False),
        sa.Index(f"ix_{name}_execution_time_ms", "execution_time_ms"),
    )


media_formatting_tasks = _task_table(
    "media_formatting_tasks",
    sa.Column("container_id", sa.String(64), primary_key=True),
    sa.Column("filename", sa.String(255), primary_key=True),
)

subtitle_formatting_tasks = _task_table(
    "subtitle_formatting_tasks",
    sa.Column("container_id", sa.String(64), primary_key=True),
    sa.Column("filename", sa.String(255), primary_key=True),
)

gcs_upload_file_deleting_tasks = _task_table(
    "gcs_upload_file_deleting_tasks",
    sa.Column("filename", sa.String(255), primary_key=True),
    sa.Column("upload_session_url", sa.Text, nullable=False, default=""),
)

gcs_key_deleting_tasks = _task_table(
    "gcs_key_deleting_tasks",
    sa.Column("key", sa.String(512), primary_key=True),
)

r2_key_deleting_tasks = _task_table(
    "r2_key_deleting_tasks",
    sa.Column("key", sa.String(512), primary_key=True),
)

storage_start_recording_tasks = _task_table(
    "storage_start_recording_tasks",
    sa.Column("r2_dirname", sa.String(512), primary_key=True),
    sa.Column("account_id", sa.String(64), nullable=False),
    sa.Column("total_bytes", sa.BigInteger, nullable=False),
    sa.Column("start_time_ms", sa.BigInteger, nullable=False),
)

storage_end_recording_tasks = _task_table(
    "storage_end_recording_tasks",
    sa.Column("r2_dirname", sa.String(512), primary_key=True),
    sa.Column("account_id", sa.String(64), nullable=False),
    sa.Column("end_time_ms", sa.BigInteger, nullable=False),
)

uploaded_recording_tasks = _task_table(
    "uploaded_recording_tasks",
    sa.Column("gcs_key", sa.String(512), primary_key=True),
    sa.Column("account_id", sa.String(64), nullable=False),
    sa.Column("total_bytes", sa.BigInteger, nullable=False),
)

video_container_writing_to_file_tasks = _task_table(
    "video_container_writing_to_file_tasks",
    sa.Column("container_id", sa.String(64), primary_key=True),
    sa.Column("version", sa.Integer, primary_key=True),
)

video_container_syncing_tasks = _task_table(
    "video_container_syncing_tasks",
    sa.Column("container_id", sa.String(64), primary_key=True),
    sa.Column("version", sa.Integer, primary_key=True),
)


def create_tables(url: str = DATABASE_URL):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(url)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
