from __future__ import annotations

import json
import logging
from typing import Any, List, Sequence

from mobile_sync.TableSyncSpec import SOURCE_COLUMN, SourceTag

# Module-level logger for helpers
LOG = logging.getLogger(__name__)

# ============================== Helpers (module-level; stateless) ===============================


def json_sanitize(value: Any) -> Any:
    """
    Ensure value is JSON-serializable (safe for Airflow XCom push).
    - Converts datetime/date/Decimal and other exotic types via default=str.
    - Round-trips through JSON to guarantee primitives only.
    """
    return json.loads(json.dumps(value, default=str))


def qi(ident: str) -> str:
    q = '"' + ident.replace('"', '""') + '"'
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Quoted identifier: raw=%r quoted=%r", ident, q)
    return q


def fq_table(schema: str, table: str) -> str:
    return f"{qi(schema)}.{qi(table)}"


def col_list(cols: Sequence[str]) -> str:
    return ", ".join(qi(c) for c in cols)


def desktop_owned_predicate(alias: str) -> str:
    # NULL counts as desktop-owned: rows predating the source column.
    return f"{alias}.{qi(SOURCE_COLUMN)} IS DISTINCT FROM '{SourceTag.MOBILE.value}'"


def build_insert_values_sql(schema: str, table: str, cols: List[str]) -> str:
    sql = f"INSERT INTO {fq_table(schema, table)} ({col_list(cols)}) VALUES %s"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated INSERT SQL: %s", sql)
    return sql


def build_upsert_values_sql(
    schema: str, table: str, cols: List[str], key_cols: List[str], guard_source: bool
) -> str:
    """
    INSERT .. ON CONFLICT (key) DO UPDATE, returning one flag per written row
    (True = inserted, False = updated). With guard_source the update only
    fires when the existing row is not mobile-owned; guarded rows return nothing.
    """
    set_cols = [c for c in cols if c not in key_cols]
    if set_cols:
        set_list = ", ".join(f"{qi(c)} = EXCLUDED.{qi(c)}" for c in set_cols)
        action = f"DO UPDATE SET {set_list}"
        if guard_source:
            action += f" WHERE {desktop_owned_predicate('t')}"
    else:
        action = "DO NOTHING"
    sql = (
        f"INSERT INTO {fq_table(schema, table)} AS t ({col_list(cols)}) VALUES %s "
        f"ON CONFLICT ({col_list(key_cols)}) {action} "
        f"RETURNING (xmax = 0) AS inserted"
    )
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated UPSERT SQL: %s", sql)
    return sql


def build_clear_sql(schema: str, table: str, guard_source: bool) -> str:
    sql = f"DELETE FROM {fq_table(schema, table)} t"
    if guard_source:
        sql += f" WHERE {desktop_owned_predicate('t')}"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated CLEAR SQL: %s", sql)
    return sql


def build_prune_sql(schema: str, table: str, temp_table: str, key_cols: List[str], guard_source: bool) -> str:
    pred = " AND ".join(f"d.{qi(c)} = k.{qi(c)}" for c in key_cols)
    sql = (
        f"DELETE FROM {fq_table(schema, table)} d "
        f"WHERE NOT EXISTS (SELECT 1 FROM {qi(temp_table)} k WHERE {pred})"
    )
    if guard_source:
        sql += f" AND {desktop_owned_predicate('d')}"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Anti-join DELETE SQL: %s", sql)
    return sql
