import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import sql

from mobile_sync.errors import SyncError
from mobile_sync.fk_cache import ForeignKeyCache
from mobile_sync.registry import TableSyncRegistry
from mobile_sync.sqltext import json_sanitize
from mobile_sync.TableSyncSpec import SOURCE_COLUMN, OnMissing, SourceTag, TableSyncSpec

logger = logging.getLogger(__name__)

# ============================== Helper funcs ===============================

_EMPTY_MD5 = "d41d8cd98f00b204e9800998ecf8427e"
_UNCOMPARED = {SOURCE_COLUMN, "created_at", "updated_at"}


def _desktop_owned_where(columns: Sequence[str]) -> Tuple[Optional[sql.SQL], Tuple]:
    if SOURCE_COLUMN not in columns:
        return None, ()
    return (
        sql.SQL("{col} IS DISTINCT FROM %s").format(col=sql.Identifier(SOURCE_COLUMN)),
        (SourceTag.MOBILE.value,),
    )


def _compose_where(where_sql: Optional[sql.SQL]) -> sql.Composable:
    if where_sql is not None:
        return sql.SQL(" ").join([sql.SQL("WHERE"), where_sql])
    return sql.SQL("")

# ============================== DatabaseComparator ===============================


class DatabaseComparator:
    """Compare a desktop mirror table with its cloud counterpart (desktop-owned rows only)."""

    def __init__(self, spec: TableSyncSpec, schema: str = "public", fk_cache: Optional[ForeignKeyCache] = None):
        self.spec = spec
        self.schema = schema
        self.fk_cache = fk_cache
        self.mismatched_data: Dict[str, List[str]] = {}
        self.is_consistent = True
        self.fk_filtered = 0

    @property
    def table_key(self) -> str:
        return f"{self.schema}.{self.spec.source_table} -> {self.schema}.{self.spec.target_table}"

    # ---------- Metadata ----------
    def get_table_columns(self, cursor, table: str) -> List[str]:
        cursor.execute(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            ORDER BY ordinal_position
            """,
            (self.schema, table),
        )
        cols = [r[0] for r in cursor.fetchall()]
        logger.info("Columns for %s.%s: %s", self.schema, table, cols)
        return cols

    def column_pairs(self, src_cols: Sequence[str], dst_cols: Sequence[str]) -> List[Tuple[str, str]]:
        """(desktop column, cloud column) pairs that should hold identical values."""
        spec = self.spec
        derived = set(spec.lookups) | set(spec.column_defaults)
        dst_set = set(dst_cols)
        pairs = []
        for c in src_cols:
            if c in spec.column_skip_list or c in _UNCOMPARED:
                continue
            d = spec.column_rename_map.get(c, c)
            if d in dst_set and d not in derived:
                pairs.append((c, d))
        return pairs

    def get_row_count(self, cursor, table: str, where_sql: Optional[sql.SQL] = None, params: Tuple = ()) -> int:
        q = sql.SQL("SELECT COUNT(*) FROM {sch}.{tbl} {where_clause}").format(
            sch=sql.Identifier(self.schema),
            tbl=sql.Identifier(table),
            where_clause=_compose_where(where_sql),
        )
        try:
            cursor.execute(q, params or None)
            row = cursor.fetchone()
            return int(row[0]) if row else 0
        except psycopg2.Error as e:
            logger.error("Error counting rows in %s.%s: %s", self.schema, table, e)
            cursor.connection.rollback()
            return -1

    # ---------- FK filter ----------
    def filter_deps(self, src_cols: Sequence[str]) -> List[Tuple[Any, str]]:
        """(dependency, desktop column) for every FK the forward load can drop rows on."""
        inverse = {d: s for s, d in self.spec.column_rename_map.items()}
        out = []
        for dep in self.spec.foreign_key_deps:
            src = inverse.get(dep.column, dep.column)
            if dep.on_missing is OnMissing.IGNORE or dep.column in self.spec.lookups or src not in src_cols:
                continue
            out.append((dep, src))
        return out

    def count_fk_filtered(self, src_cur, dst_cur, src_cols: Sequence[str]) -> int:
        """
        Desktop-owned rows the forward FK policy drops; these never reach the cloud.
        Referent keys come from the cloud store, as they do during a sync.
        """
        deps = self.filter_deps(src_cols)
        if not deps:
            return 0
        cache = self.fk_cache
        if cache is None:
            cache = ForeignKeyCache(dst_cur.connection, TableSyncRegistry(), self.schema, logger=logger)
            cache.preload({(d.referenced_table, d.referenced_column) for d, _ in deps})
        nullable = self.get_nullable_columns(dst_cur, self.spec.target_table)
        where_sql, params = _desktop_owned_where(src_cols)
        q = sql.SQL("SELECT {cols} FROM {sch}.{tbl} {where}").format(
            cols=sql.SQL(", ").join(sql.Identifier(s) for _, s in deps),
            sch=sql.Identifier(self.schema),
            tbl=sql.Identifier(self.spec.source_table),
            where=_compose_where(where_sql),
        )
        src_cur.execute(q, params or None)
        filtered = 0
        for values in src_cur:
            row = {dep.column: v for (dep, _), v in zip(deps, values)}
            checked, _ = cache.check(self.spec, row, nullable)
            if checked is None:
                filtered += 1
        logger.info("FK-filtered desktop rows in %s: %d", self.spec.source_table, filtered)
        return filtered

    def get_nullable_columns(self, cursor, table: str) -> List[str]:
        cursor.execute(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s AND is_nullable = 'YES'
            """,
            (self.schema, table),
        )
        return [r[0] for r in cursor.fetchall()]

    # ---------- Hashing ----------
    @staticmethod
    def _concat_text_exprs(columns: Sequence[str]) -> sql.Composable:
        parts = [sql.SQL("COALESCE({}::text, 'NULL')").format(sql.Identifier(c)) for c in columns]
        return sql.SQL(" || '||' || ").join(parts)

    def generate_table_hash(self, cursor, table: str, columns: Sequence[str],
                            where_sql: Optional[sql.SQL] = None, params: Tuple = (),
                            order_by_cols: Optional[Sequence[str]] = None) -> Optional[str]:
        concat_cols = self._concat_text_exprs(columns)
        if order_by_cols:
            inner = sql.SQL("SELECT md5({c}) AS row_hash FROM {sch}.{tbl} {where} ORDER BY {ob}").format(
                c=concat_cols, sch=sql.Identifier(self.schema), tbl=sql.Identifier(table),
                where=_compose_where(where_sql),
                ob=sql.SQL(", ").join(sql.Identifier(c) for c in order_by_cols),
            )
            order = sql.SQL("")
        else:
            inner = sql.SQL("SELECT md5({c}) AS row_hash FROM {sch}.{tbl} {where}").format(
                c=concat_cols, sch=sql.Identifier(self.schema), tbl=sql.Identifier(table),
                where=_compose_where(where_sql),
            )
            order = sql.SQL("ORDER BY row_hash")
        q = sql.SQL("SELECT md5(string_agg(row_hash, '' {order})) FROM ({inner}) t").format(order=order, inner=inner)
        try:
            cursor.execute(q, params or None)
            row = cursor.fetchone()
            return row[0] if row and row[0] else _EMPTY_MD5
        except psycopg2.Error as e:
            logger.error("Error hashing %s.%s: %s", self.schema, table, e)
            cursor.connection.rollback()
            return None

    def generate_column_hash(self, cursor, table: str, column: str,
                             order_by_cols: Optional[Sequence[str]] = None,
                             where_sql: Optional[sql.SQL] = None, params: Tuple = ()) -> Optional[str]:
        value = sql.SQL("COALESCE({}::text, 'NULL')").format(sql.Identifier(column))
        ob = (sql.SQL(", ").join(sql.Identifier(c) for c in order_by_cols) if order_by_cols else value)
        q = sql.SQL("SELECT md5(string_agg({v}, '' ORDER BY {ob})) FROM {sch}.{tbl} {where}").format(
            v=value, ob=ob, sch=sql.Identifier(self.schema), tbl=sql.Identifier(table),
            where=_compose_where(where_sql),
        )
        try:
            cursor.execute(q, params or None)
            row = cursor.fetchone()
            return row[0] if row and row[0] else _EMPTY_MD5
        except psycopg2.Error as e:
            logger.error("Error hashing column %s.%s.%s: %s", self.schema, table, column, e)
            cursor.connection.rollback()
            return None

    # ---------- Orchestration ----------
    def _result(self) -> Dict[str, Any]:
        return json_sanitize({
            "mismatched_data": self.mismatched_data,
            "is_consistent": self.is_consistent,
            "fk_filtered": {self.table_key: self.fk_filtered},
        })

    def _mismatch(self, details: List[str]) -> Dict[str, Any]:
        self.is_consistent = False
        self.mismatched_data[self.table_key] = details
        return self._result()

    def run_comparison(self, desktop_conn, cloud_conn) -> Dict[str, Any]:
        spec = self.spec
        self.mismatched_data = {self.table_key: []}
        self.is_consistent = True
        self.fk_filtered = 0

        with desktop_conn.cursor() as src_cur, cloud_conn.cursor() as dst_cur:
            src_cols = self.get_table_columns(src_cur, spec.source_table)
            dst_cols = self.get_table_columns(dst_cur, spec.target_table)
            if not src_cols or not dst_cols:
                logger.error("❌ One of the tables does not exist.")
                return self._mismatch(["Table missing in one database"])

            pairs = self.column_pairs(src_cols, dst_cols)
            if not pairs:
                return self._mismatch(["No comparable columns"])
            src_where, src_params = _desktop_owned_where(src_cols)
            dst_where, dst_params = _desktop_owned_where(dst_cols)

            src_cnt = self.get_row_count(src_cur, spec.source_table, src_where, src_params)
            dst_cnt = self.get_row_count(dst_cur, spec.target_table, dst_where, dst_params)
            logger.info("Row counts -> desktop: %s, cloud: %s", src_cnt, dst_cnt)
            if src_cnt != dst_cnt:
                self.fk_filtered = self.count_fk_filtered(src_cur, dst_cur, src_cols)
                if self.fk_filtered and src_cnt - self.fk_filtered == dst_cnt:
                    # Filtered rows are still in the desktop hash; counts are the only comparable check.
                    logger.info("✅ Row counts reconcile after %d FK-filtered desktop row(s).", self.fk_filtered)
                    return self._result()
                logger.error("❌ Row count mismatch: desktop=%s, cloud=%s, fk_filtered=%s",
                             src_cnt, dst_cnt, self.fk_filtered)
                detail = f"Row count mismatch (src={src_cnt}, dst={dst_cnt})"
                if self.fk_filtered:
                    detail = f"Row count mismatch (src={src_cnt}, dst={dst_cnt}, fk_filtered={self.fk_filtered})"
                return self._mismatch([detail])

            inverse = {d: s for s, d in pairs}
            keys = [k for k in spec.key_columns if k in inverse] if spec.enforce_uniqueness else []
            src_order = [inverse[k] for k in keys] or None
            dst_order = keys or None
            src_hash = self.generate_table_hash(src_cur, spec.source_table, [s for s, _ in pairs],
                                                src_where, src_params, src_order)
            dst_hash = self.generate_table_hash(dst_cur, spec.target_table, [d for _, d in pairs],
                                                dst_where, dst_params, dst_order)
            logger.info("Desktop hash: %s / Cloud hash: %s", src_hash, dst_hash)
            if src_hash is not None and src_hash == dst_hash:
                logger.info("✅ Tables are consistent.")
                return self._result()

            logger.error("❌ MISMATCH at table level. Checking columns hash ...")
            mismatched_cols = []
            for s, d in pairs:
                sh = self.generate_column_hash(src_cur, spec.source_table, s, src_order, src_where, src_params)
                dh = self.generate_column_hash(dst_cur, spec.target_table, d, dst_order, dst_where, dst_params)
                if sh != dh:
                    logger.error("  ❌ Column mismatch: %s", d)
                    mismatched_cols.append(d)
            return self._mismatch(mismatched_cols or ["Unknown mismatch despite equal counts"])


def summarize_results(payload: Dict[str, Any], *, raise_on_inconsistency: bool = False) -> str:
    """
    Accepts either {"mismatched_data": {table: [details...]}, ...} or {table: [details...]}.
    Returns a one-line summary and optionally raises SyncError on inconsistencies.
    """
    payload = json_sanitize(payload)
    mismatched = payload.get("mismatched_data", payload)
    if not isinstance(mismatched, dict):
        raise SyncError("Invalid mismatched_data payload (expected dict)")

    inconsistent: Dict[str, List[str]] = {}
    for tbl, details in mismatched.items():
        if isinstance(details, (list, tuple, set)):
            vals = [str(d) for d in details if d not in (None, "", False, True)]
        else:
            vals = [str(details)] if details not in (None, "", False, True) else []
        if vals:
            inconsistent[str(tbl)] = sorted(set(vals))

    logger.info("\n%s\n📊 CONSISTENCY CHECK SUMMARY\n%s", "=" * 50, "=" * 50)
    if not inconsistent:
        logger.info("🎉 All checked tables are consistent!")
        return "0 table(s) mismatched"

    n = len(inconsistent)
    logger.warning("🚨 Found inconsistencies in %d table(s):", n)
    for table, details in sorted(inconsistent.items()):
        logger.warning("  - Table: '%s'  (%d issue%s)", table, len(details), "" if len(details) == 1 else "s")
        for d in details:
            logger.warning("    • %s", d)
    summary = f"{n} table(s) mismatched"
    if raise_on_inconsistency:
        raise SyncError(f"Database consistency check failed: {summary}")
    return summary
