from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List

import pendulum
import psycopg2

# Airflow
from airflow.decorators import dag, task
from airflow.exceptions import AirflowException
from airflow.hooks.base import BaseHook
from airflow.models import Variable

from mobile_sync.alerts import send_discord_alert
from mobile_sync.comparator import DatabaseComparator, summarize_results
from mobile_sync.registry import TableSyncRegistry
from mobile_sync.sqltext import json_sanitize
from mobile_sync.TableSyncSpec import Direction

log = logging.getLogger(__name__)

# ----------------------------- helpers -----------------------------


def _conn_uri(var_name: str, default_id: str) -> str:
    conn_id = Variable.get(var_name, default_var=default_id)
    return BaseHook.get_connection(conn_id).get_uri()


def run_db_comparison_callable(target_table: str) -> Dict[str, Any]:
    """Compare ONE forward table (desktop mirror vs desktop-owned cloud rows)."""
    spec = TableSyncRegistry().resolve(target_table, Direction.FORWARD)
    schema = Variable.get("MOBILE_SYNC_SCHEMA", default_var="public")
    try:
        desktop_conn = psycopg2.connect(_conn_uri("MOBILE_SYNC_DESKTOP_CONN_ID", "powerca_desktop"))
        cloud_conn = psycopg2.connect(_conn_uri("MOBILE_SYNC_CLOUD_CONN_ID", "powerca_cloud"))
    except Exception as e:
        raise AirflowException(f"Failed to connect to databases: {e}")
    try:
        return json_sanitize(DatabaseComparator(spec, schema).run_comparison(desktop_conn, cloud_conn))
    finally:
        desktop_conn.close()
        cloud_conn.close()

# ----------------------------- DAG -----------------------------


@dag(
    dag_id="mobile_sync_consistency_check",
    schedule="0 10 * * *",
    start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
    catchup=False,
    max_active_runs=1,
    tags=["mobile_sync", "database_comparison"],
    description="Desktop mirror vs cloud consistency check for forward-synced tables",
)
def mobile_sync_consistency_check():

    @task
    def list_tables() -> List[str]:
        tables = [s.target_table for s in TableSyncRegistry().load_order(Direction.FORWARD)]
        log.info("Tables to compare: %s", tables)
        return tables

    @task
    def compare_all(tables: List[str]) -> Dict[str, Any]:
        merged: Dict[str, List[str]] = defaultdict(list)
        for table in tables or []:
            log.info("▶️ Comparing table %s", table)
            try:
                res = run_db_comparison_callable(table)
            except Exception as e:
                log.exception("❌ Error comparing %s: %s", table, e)
                merged[table].append(f"ERROR: {e}")
                continue
            for tbl_key, issues in (res.get("mismatched_data") or {}).items():
                vals = [str(x) for x in (issues or []) if x not in (None, "", False, True)]
                if vals:
                    merged[tbl_key].extend(vals)
            log.info("✅ Done table %s: %s", table, "consistent" if res.get("is_consistent", True) else "mismatch")

        merged = {tbl: sorted(set(vals)) for tbl, vals in merged.items() if vals}
        payload = {"mismatched_data": merged, "is_consistent": len(merged) == 0}
        log.info("📦 Payload: %s", {"is_consistent": payload["is_consistent"], "count": len(merged)})
        return json_sanitize(payload)

    @task
    def summarize(payload: Dict[str, Any]) -> str:
        return str(summarize_results(payload, raise_on_inconsistency=False))

    @task(do_xcom_push=False)
    def alert_if_needed(payload: Dict[str, Any], summary: str) -> None:
        if bool(payload.get("is_consistent", True)):
            log.info("🎉 Tables are consistent. No alert.")
            return
        lines: List[str] = []
        for tbl, issues in sorted((payload.get("mismatched_data") or {}).items()):
            issues_txt = " | ".join(issues[:10]) + ("" if len(issues) <= 10 else " | …")
            lines.append(f"- `{tbl}`: {issues_txt}")
        message = "❗ **Desktop/cloud inconsistency detected**\n" + summary + "\n" + "\n".join(lines)
        send_discord_alert(message, Variable.get("DISCORD_WEBHOOK", default_var=""))

    payload = compare_all(list_tables())
    alert_if_needed(payload, summarize(payload))


mobile_sync_consistency_check()
