# state_db.py
import os
import sqlite3
from pathlib import Path

DEFAULT_DB = Path(__file__).resolve().with_name("summaries.db")
DB_PATH = Path(os.getenv("SUMMARY_DB_PATH", str(DEFAULT_DB))).expanduser()


def init_db(db_path: str | Path | None = None) -> None:
    """Create required tables if they don't exist."""
    path = Path(db_path) if db_path is not None else DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(path) as conn:
        # One row per conversation; summarized_ids is a JSON list
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS summarization_state (
                conversation_id TEXT PRIMARY KEY,
                summarized_ids TEXT NOT NULL,
                pending_token_count INTEGER NOT NULL DEFAULT 0,
                updated_at REAL NOT NULL
            )
            """
        )
        # Append-only summaries, ordered by ordinal within a conversation
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS summary_records (
                conversation_id TEXT NOT NULL,
                ordinal INTEGER NOT NULL,
                text TEXT NOT NULL,
                created_at REAL NOT NULL,
                source_message_count INTEGER NOT NULL,
                source_token_count INTEGER NOT NULL,
                PRIMARY KEY (conversation_id, ordinal)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS installation_settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        conn.commit()
