import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional

import pandas as pd
import pytz
from loguru import logger

from src.errors import PersistenceFailure
from src.models import PRIZE_KEYS, DrawRecord

TABLE = "lottery_draws"

RecordMerge = Callable[[DrawRecord, DrawRecord], DrawRecord]


@contextmanager
def get_db_connection(db_path: str) -> Iterator[sqlite3.Connection]:
    """
    Connection to the record store, committed on success and always closed.

    Raises:
        PersistenceFailure: If the database cannot be opened
    """
    try:
        # Use a reasonable timeout to wait on busy DB instead of failing fast
        conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    except sqlite3.Error as e:
        logger.error(f"Error connecting to database at {db_path}: {e}")
        raise PersistenceFailure(f"Database connection failed: {e}") from e

    try:
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
        except sqlite3.Error as e:
            logger.debug(f"PRAGMA setup skipped: {e}")
        yield conn
    finally:
        conn.close()


def initialize_database(db_path: str) -> None:
    """Create the draw table and its indexes. Idempotent."""
    try:
        with get_db_connection(db_path) as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TABLE} (
                    date TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    source TEXT,
                    complete INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT
                )
                """
            )
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_complete ON {TABLE}(complete, date)")
        logger.info(f"Record store initialized at {db_path}")
    except sqlite3.Error as e:
        logger.error(f"Database error during initialization: {e}")
        raise PersistenceFailure(f"Could not initialize record store: {e}") from e


def _row_to_record(payload: str) -> DrawRecord:
    return DrawRecord.from_dict(json.loads(payload))


def _read(conn: sqlite3.Connection, date_iso: str) -> Optional[DrawRecord]:
    row = conn.execute(f"SELECT payload FROM {TABLE} WHERE date = ?", (date_iso,)).fetchone()
    return _row_to_record(row[0]) if row else None


def get_draw(db_path: str, date_iso: str) -> Optional[DrawRecord]:
    """
    Retrieve the record for one draw date.

    Returns:
        DrawRecord or None if the date has no record yet

    Raises:
        PersistenceFailure: On any database or decoding error
    """
    try:
        with get_db_connection(db_path) as conn:
            return _read(conn, date_iso)
    except sqlite3.Error as e:
        logger.error(f"Failed to get draw {date_iso}: {e}")
        raise PersistenceFailure(f"Read failed for {date_iso}: {e}") from e
    except (ValueError, KeyError) as e:
        raise PersistenceFailure(f"Stored record for {date_iso} is corrupt: {e}") from e


def upsert_draw(db_path: str, record: DrawRecord, merge: Optional[RecordMerge] = None) -> DrawRecord:
    """
    Write a whole record in a single transaction.

    When `merge` is given, the row is re-read under the write lock and the
    incoming record is merged into it, so two writers racing on one date both
    land their contributions.

    Returns:
        DrawRecord: What was actually persisted
    """
    try:
        with get_db_connection(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if merge is not None:
                    current = _read(conn, record.date)
                    if current is not None:
                        record = merge(current, record)

                record.updated_at = datetime.now(pytz.UTC).isoformat()
                conn.execute(
                    f"""
                    INSERT INTO {TABLE} (date, payload, source, complete, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(date) DO UPDATE SET
                        payload = excluded.payload,
                        source = excluded.source,
                        complete = excluded.complete,
                        updated_at = excluded.updated_at
                    """,
                    (
                        record.date,
                        json.dumps(record.to_dict(), ensure_ascii=False),
                        record.source.value if record.source else None,
                        1 if record.diagnostics.complete else 0,
                        record.updated_at,
                    ),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        logger.debug(f"Upserted draw {record.date} (complete={record.diagnostics.complete})")
        return record
    except sqlite3.Error as e:
        logger.error(f"SQLite error during upsert of {record.date}: {e}")
        raise PersistenceFailure(f"Write failed for {record.date}: {e}") from e


def list_draw_dates(db_path: str, cutoff: Optional[str] = None, limit: int = 400, offset: int = 0) -> List[str]:
    """Draw dates on or after `cutoff`, newest first, paginated by offset."""
    query = f"SELECT date FROM {TABLE}"
    params: list = []
    if cutoff:
        query += " WHERE date >= ?"
        params.append(cutoff)
    query += " ORDER BY date DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    try:
        with get_db_connection(db_path) as conn:
            return [row[0] for row in conn.execute(query, params).fetchall()]
    except sqlite3.Error as e:
        logger.error(f"Failed to list draw dates: {e}")
        raise PersistenceFailure(f"Date listing failed: {e}") from e


def count_draws(db_path: str, complete: Optional[bool] = None) -> int:
    query = f"SELECT COUNT(*) FROM {TABLE}"
    params: tuple = ()
    if complete is not None:
        query += " WHERE complete = ?"
        params = (1 if complete else 0,)
    try:
        with get_db_connection(db_path) as conn:
            return int(conn.execute(query, params).fetchone()[0])
    except sqlite3.Error as e:
        logger.error(f"Failed to count draws: {e}")
        raise PersistenceFailure(f"Count failed: {e}") from e


def draws_frame(db_path: str, cutoff: Optional[str] = None) -> pd.DataFrame:
    """
    One row per stored draw with per-category counts, newest first.

    Columns: date, source, complete, updated_at and one `<category>_count`
    column per prize category.
    """
    query = f"SELECT date, source, complete, updated_at, payload FROM {TABLE}"
    params: tuple = ()
    if cutoff:
        query += " WHERE date >= ?"
        params = (cutoff,)
    query += " ORDER BY date DESC"

    try:
        with get_db_connection(db_path) as conn:
            df = pd.read_sql_query(query, conn, params=params)
    except (sqlite3.Error, pd.errors.DatabaseError) as e:
        logger.error(f"SQLite error retrieving draws frame: {e}")
        raise PersistenceFailure(f"Report query failed: {e}") from e

    prizes = df["payload"].map(lambda p: (json.loads(p).get("prizes") or {}))
    for key in PRIZE_KEYS:
        df[f"{key}_count"] = prizes.map(lambda block, k=key: len(block.get(k) or []))
    df["complete"] = df["complete"].astype(bool)
    return df.drop(columns=["payload"])
