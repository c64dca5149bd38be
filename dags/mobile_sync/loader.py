from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import psycopg2
import psycopg2.extras as extras

from mobile_sync.errors import ConstraintViolation, SyncError
from mobile_sync.sqltext import (
    build_clear_sql,
    build_insert_values_sql,
    build_prune_sql,
    build_upsert_values_sql,
    col_list,
    qi,
)
from mobile_sync.TableSyncSpec import StagedRow

LOG = logging.getLogger(__name__)

_BATCH_SP = "sync_batch"
_ROW_SP = "sync_row"


def _first_line(e: BaseException) -> str:
    text = str(e).strip()
    return text.splitlines()[0] if text else repr(e)


def chunked(rows: Iterable[StagedRow], size: int) -> Iterator[List[StagedRow]]:
    page: List[StagedRow] = []
    for r in rows:
        page.append(r)
        if len(page) >= size:
            yield page
            page = []
    if page:
        yield page


@dataclass
class MergeResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0          # mobile-owned at destination (guarded) or already present
    failed: int = 0
    deleted: int = 0
    batches: int = 0
    failures: List[ConstraintViolation] = field(default_factory=list)

    def absorb(self, other: "MergeResult") -> "MergeResult":
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.deleted += other.deleted
        self.batches += other.batches
        self.failures.extend(other.failures)
        return self


class StagingUpsertLoader:
    """
    Batched writer over one destination connection.
    • Each batch is one execute_values statement inside a savepoint.
    • A rejected batch is rolled back to its savepoint and replayed row by row,
      each row under its own savepoint; a rejected row becomes a ConstraintViolation
      and the rest of the batch still loads.
    • merge() commits per batch; replace() is a single transaction.
    """

    def __init__(self, conn, schema: str = "public", batch_size: int = 1_000,
                 logger: Optional[logging.Logger] = None):
        self.conn = conn
        self.schema = schema
        self.batch_size = batch_size
        self.log = logger or LOG

    # ------------------------ Core batch writer ------------------------

    def _write_row(self, c, sql: str, cols: Sequence[str], row: StagedRow, table: str,
                   key_columns: Sequence[str], returning: bool, result: MergeResult) -> None:
        c.execute(f"SAVEPOINT {_ROW_SP}")
        try:
            res = extras.execute_values(c, sql, [tuple(row.get(k) for k in cols)], fetch=returning)
        except psycopg2.Error as e:
            c.execute(f"ROLLBACK TO SAVEPOINT {_ROW_SP}")
            key = {k: row.get(k) for k in key_columns} if key_columns else dict(row)
            violation = ConstraintViolation(table, key, _first_line(e))
            self.log.warning("Row rejected by %s: %s", table, violation)
            result.failed += 1
            result.failures.append(violation)
            return
        c.execute(f"RELEASE SAVEPOINT {_ROW_SP}")
        self._count(res, 1, returning, result)

    @staticmethod
    def _count(res: Optional[List[Tuple[Any, ...]]], offered: int, returning: bool, result: MergeResult) -> None:
        if not returning:
            result.inserted += offered
            return
        flags = [bool(r[0]) for r in (res or [])]
        ins = sum(flags)
        result.inserted += ins
        result.updated += len(flags) - ins
        result.skipped += offered - len(flags)

    def _write_batch(self, sql: str, batch: List[StagedRow], table: str,
                     key_columns: Sequence[str], returning: bool) -> MergeResult:
        result = MergeResult(batches=1)
        cols = list(batch[0].keys())
        values = [tuple(r.get(k) for k in cols) for r in batch]
        t0 = time.perf_counter()
        with self.conn.cursor() as c:
            c.execute(f"SAVEPOINT {_BATCH_SP}")
            try:
                res = extras.execute_values(c, sql, values, page_size=len(values), fetch=returning)
            except psycopg2.Error as e:
                c.execute(f"ROLLBACK TO SAVEPOINT {_BATCH_SP}")
                self.log.warning(
                    "Batch of %d rejected by %s (%s); replaying row by row", len(batch), table, _first_line(e)
                )
                for row in batch:
                    self._write_row(c, sql, cols, row, table, key_columns, returning, result)
            else:
                c.execute(f"RELEASE SAVEPOINT {_BATCH_SP}")
                self._count(res, len(batch), returning, result)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Batch on %s: %s (%.3fs)", table, result, time.perf_counter() - t0)
        return result

    # ------------------------ Operations ------------------------

    def merge(self, table: str, rows: Iterable[StagedRow], key_columns: Sequence[str],
              guard_source: bool = True) -> MergeResult:
        """Upsert on key_columns; commits after each batch."""
        total = MergeResult()
        sql_cache: Dict[Tuple[str, ...], str] = {}
        t0 = time.perf_counter()
        for batch in chunked(rows, self.batch_size):
            cols = tuple(batch[0].keys())
            if cols not in sql_cache:
                sql_cache[cols] = build_upsert_values_sql(self.schema, table, list(cols), list(key_columns), guard_source)
            total.absorb(self._write_batch(sql_cache[cols], batch, table, key_columns, returning=True))
            self.conn.commit()
            self.log.info(
                "Batch committed on %s (batches=%d, inserted=%d, updated=%d, skipped=%d, failed=%d)",
                table, total.batches, total.inserted, total.updated, total.skipped, total.failed,
            )
        self.log.info("merge %s done: %s (%.3fs)", table, self._summary(total), time.perf_counter() - t0)
        return total

    def insert(self, table: str, rows: Iterable[StagedRow], key_columns: Sequence[str] = (),
               commit: bool = True) -> MergeResult:
        """Plain append; commit=False leaves the transaction open for replace()."""
        total = MergeResult()
        for batch in chunked(rows, self.batch_size):
            sql = build_insert_values_sql(self.schema, table, list(batch[0].keys()))
            total.absorb(self._write_batch(sql, batch, table, key_columns, returning=False))
            if commit:
                self.conn.commit()
        return total

    def insert_row(self, table: str, row: StagedRow, key_columns: Sequence[str] = ()) -> Optional[ConstraintViolation]:
        """Single guarded insert inside the caller's transaction; returns the violation, if any."""
        result = MergeResult()
        sql = build_insert_values_sql(self.schema, table, list(row.keys()))
        with self.conn.cursor() as c:
            self._write_row(c, sql, list(row.keys()), row, table, key_columns, False, result)
        return result.failures[0] if result.failures else None

    def clear(self, table: str, guard_source: bool = True) -> int:
        with self.conn.cursor() as c:
            c.execute(build_clear_sql(self.schema, table, guard_source))
            removed = c.rowcount
        self.log.info("Cleared %d desktop-owned row(s) from %s (uncommitted)", removed, table)
        return removed

    def replace(self, table: str, rows: Iterable[StagedRow], key_columns: Sequence[str] = (),
                guard_source: bool = True) -> MergeResult:
        """
        Constraint-free full reload in one transaction: clear desktop-owned rows,
        insert everything. Zero rows loaded out of a non-empty input rolls back
        and raises, leaving the destination untouched.
        """
        t0 = time.perf_counter()
        try:
            deleted = self.clear(table, guard_source)
            total = self.insert(table, rows, key_columns, commit=False)
            total.deleted = deleted
            offered = total.inserted + total.failed
            if offered and not total.inserted:
                raise SyncError(
                    f"{table}: replace loaded 0 of {offered} row(s); rolled back",
                    context={"first_failure": str(total.failures[0]) if total.failures else None},
                )
            self.conn.commit()
        except Exception:
            self.log.error("replace on %s failed; rolling back", table, exc_info=True)
            self.conn.rollback()
            raise
        self.log.info("✅ replace %s committed: %s (%.3fs)", table, self._summary(total), time.perf_counter() - t0)
        return total

    def _key_types(self, table: str, key_columns: Sequence[str]) -> List[Tuple[str, str]]:
        with self.conn.cursor() as c:
            c.execute(
                """
                SELECT column_name, udt_name
                FROM information_schema.columns
                WHERE table_schema = %s AND table_name = %s AND column_name = ANY(%s)
                """,
                (self.schema, table, list(key_columns)),
            )
            tmap = {r[0]: r[1] for r in c.fetchall()}
        result = [(col, tmap.get(col, "text")) for col in key_columns]
        LOG.debug("Key types for %s.%s -> %s", self.schema, table, result)
        return result

    def prune(self, table: str, key_columns: Sequence[str], kept_keys: Iterable[Tuple[Any, ...]],
              guard_source: bool = True) -> int:
        """
        Delete desktop-owned destination rows whose key is not in kept_keys
        (temp key table + anti-join). Returns the number of rows removed.
        """
        keys = list(kept_keys)
        temp_table = f"tmp_keep_{table}_{uuid.uuid4().hex[:8]}"
        self.log.info("Creating temp table for kept keys: %s (%d keys)", temp_table, len(keys))
        try:
            with self.conn.cursor() as d:
                cols_def = ", ".join(f"{qi(c)} {t}" for c, t in self._key_types(table, key_columns))
                d.execute(f"CREATE TEMP TABLE {qi(temp_table)} ({cols_def}) ON COMMIT DROP")
                if keys:
                    extras.execute_values(
                        d, f"INSERT INTO {qi(temp_table)} ({col_list(key_columns)}) VALUES %s", keys, page_size=10_000
                    )
                d.execute(f"CREATE INDEX ON {qi(temp_table)} ({col_list(key_columns)})")
                d.execute(build_prune_sql(self.schema, table, temp_table, list(key_columns), guard_source))
                removed = d.rowcount
            self.conn.commit()
        except Exception:
            self.log.error("prune on %s failed; rolling back", table, exc_info=True)
            self.conn.rollback()
            raise
        self.log.info("Pruned %s row(s) from %s", removed, table)
        return removed

    @staticmethod
    def _summary(r: MergeResult) -> str:
        return (f"inserted={r.inserted} updated={r.updated} skipped={r.skipped} "
                f"failed={r.failed} deleted={r.deleted} batches={r.batches}")
