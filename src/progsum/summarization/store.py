"""Persistence for per-conversation summarization state and installation config.

Tables are created by state_db.init_db(); SqliteStateStore calls it once on
construction so a fresh database file works out of the box.
"""

from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from progsum.state_db import DB_PATH, init_db

from .errors import PersistenceFailure
from .models import Configuration, Identifier, SummarizationState, SummaryRecord

_CONFIG_KEY = "progressive_summarization"


class StateStore(Protocol):
    """What the controller needs from the host's keyed persistent store."""

    def load_state(self, conversation_id: str) -> SummarizationState | None:
        ...

    def save_state(self, conversation_id: str, state: SummarizationState) -> None:
        ...

    def load_config(self) -> Configuration | None:
        ...

    def save_config(self, config: Configuration) -> None:
        ...


def _ids_to_json(ids: set[Identifier]) -> str:
    ordered = sorted(ids, key=lambda i: (isinstance(i, str), str(i)))
    return json.dumps(ordered)


class SqliteStateStore:
    """sqlite-backed StateStore. Every save writes all state fields in one transaction."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = str(db_path) if db_path is not None else str(DB_PATH)
        init_db(self.db_path)

    # ==================== Database Connection ====================

    @contextmanager
    def _get_connection(self, conversation_id: str | None = None) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and rolls back otherwise.

        sqlite errors are re-raised as PersistenceFailure.
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise PersistenceFailure(conversation_id, f"cannot open {self.db_path}: {exc}") from exc
        try:
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceFailure(conversation_id, str(exc)) from exc
        finally:
            conn.close()

    # ==================== Conversation State ====================

    def load_state(self, conversation_id: str) -> SummarizationState | None:
        """Return the stored state for *conversation_id*, or None if never saved."""
        with self._get_connection(conversation_id) as conn:
            row = conn.execute(
                "SELECT summarized_ids, pending_token_count FROM summarization_state WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            if row is None:
                return None
            records = conn.execute(
                """
                SELECT text, created_at, source_message_count, source_token_count
                FROM summary_records
                WHERE conversation_id = ?
                ORDER BY ordinal ASC
                """,
                (conversation_id,),
            ).fetchall()

        try:
            ids = json.loads(row["summarized_ids"])
        except json.JSONDecodeError as exc:
            raise PersistenceFailure(conversation_id, f"corrupt summarized_ids: {exc}") from exc

        return SummarizationState(
            summaries=[self._row_to_record(r) for r in records],
            summarized_ids=set(ids),
            pending_token_count=int(row["pending_token_count"]),
        )

    def save_state(self, conversation_id: str, state: SummarizationState) -> None:
        """Persist summaries, summarized ids and the pending count together."""
        with self._get_connection(conversation_id) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO summarization_state
                (conversation_id, summarized_ids, pending_token_count, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    _ids_to_json(state.summarized_ids),
                    state.pending_token_count,
                    time.time(),
                ),
            )
            # Rows on disk may lag the in-memory list (an earlier save can have failed),
            # so the record list is rewritten whole.
            conn.execute(
                "DELETE FROM summary_records WHERE conversation_id = ?",
                (conversation_id,),
            )
            conn.executemany(
                """
                INSERT INTO summary_records
                (conversation_id, ordinal, text, created_at, source_message_count, source_token_count)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        conversation_id,
                        ordinal,
                        record.text,
                        record.created_at,
                        record.source_message_count,
                        record.source_token_count,
                    )
                    for ordinal, record in enumerate(state.summaries)
                ],
            )

    def _row_to_record(self, row: sqlite3.Row) -> SummaryRecord:
        return SummaryRecord(
            text=row["text"],
            created_at=row["created_at"],
            source_message_count=row["source_message_count"],
            source_token_count=row["source_token_count"],
        )

    # ==================== Installation Config ====================

    def load_config(self) -> Configuration | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM installation_settings WHERE key = ?",
                (_CONFIG_KEY,),
            ).fetchone()
        if row is None:
            return None
        try:
            data = json.loads(row["value"])
            return Configuration(
                token_threshold=int(data["token_threshold"]),
                enabled=bool(data["enabled"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise PersistenceFailure(None, f"corrupt summarization config: {exc}") from exc

    def save_config(self, config: Configuration) -> None:
        payload = json.dumps({"token_threshold": config.token_threshold, "enabled": config.enabled})
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO installation_settings (key, value) VALUES (?, ?)",
                (_CONFIG_KEY, payload),
            )


class InMemoryStateStore:
    """Dict-backed StateStore for hosts without persistence, and for tests."""

    def __init__(self) -> None:
        self._states: dict[str, SummarizationState] = {}
        self._config: Configuration | None = None

    def load_state(self, conversation_id: str) -> SummarizationState | None:
        state = self._states.get(conversation_id)
        return state.copy() if state is not None else None

    def save_state(self, conversation_id: str, state: SummarizationState) -> None:
        self._states[conversation_id] = state.copy()

    def load_config(self) -> Configuration | None:
        if self._config is None:
            return None
        return Configuration(self._config.token_threshold, self._config.enabled)

    def save_config(self, config: Configuration) -> None:
        self._config = Configuration(config.token_threshold, config.enabled)
