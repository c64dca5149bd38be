from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from mobile_sync.sqltext import fq_table
from mobile_sync.TableSyncSpec import EPOCH, SyncCursor

LOG = logging.getLogger(__name__)


class SyncMetadataStore:
    """
    Per-table cursors in a small bookkeeping table.
    • get_cursor() returns the epoch sentinel for unseeded tables.
    • advance_cursor() upserts with GREATEST(existing, new): the stored timestamp
      never moves backwards. Callers invoke it only after the data commit.
    """

    def __init__(self, conn, table: str = "_sync_metadata", schema: str = "public",
                 logger: Optional[logging.Logger] = None):
        self.conn = conn
        self.table = table
        self.schema = schema
        self.log = logger or LOG

    @property
    def fq(self) -> str:
        return fq_table(self.schema, self.table)

    def ensure_tables(self) -> None:
        with self.conn.cursor() as c:
            c.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.fq} (
                    table_name VARCHAR(100) PRIMARY KEY,
                    last_sync_timestamp TIMESTAMPTZ NOT NULL DEFAULT '1970-01-01 00:00:00+00',
                    last_sync_record_count INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
        self.conn.commit()
        self.log.debug("Ensured cursor table %s", self.fq)

    def get_cursor(self, table_name: str) -> SyncCursor:
        with self.conn.cursor() as c:
            c.execute(
                f"SELECT last_sync_timestamp, last_sync_record_count FROM {self.fq} WHERE table_name = %s",
                (table_name,),
            )
            row = c.fetchone()
        self.conn.commit()
        if not row or row[0] is None:
            self.log.info("Cursor %s: unseeded (epoch)", table_name)
            return SyncCursor(table_name)
        cursor = SyncCursor(table_name, row[0], int(row[1] or 0))
        self.log.info("Cursor %s: %s (%d rows last run)", table_name, cursor.last_sync_timestamp,
                      cursor.last_sync_record_count)
        return cursor

    def advance_cursor(self, table_name: str, timestamp: datetime, record_count: int) -> None:
        if timestamp is None:
            timestamp = EPOCH
        with self.conn.cursor() as c:
            c.execute(
                f"""
                INSERT INTO {self.fq} AS m (table_name, last_sync_timestamp, last_sync_record_count, updated_at)
                VALUES (%s, %s, %s, NOW())
                ON CONFLICT (table_name) DO UPDATE SET
                    last_sync_timestamp = GREATEST(m.last_sync_timestamp, EXCLUDED.last_sync_timestamp),
                    last_sync_record_count = EXCLUDED.last_sync_record_count,
                    updated_at = NOW()
                """,
                (table_name, timestamp, record_count),
            )
        self.conn.commit()
        self.log.info("Cursor %s advanced to >= %s (%d rows)", table_name, timestamp, record_count)
