from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict

import pendulum

from airflow.decorators import dag, task
from airflow.exceptions import AirflowException, AirflowFailException
from airflow.hooks.base import BaseHook
from airflow.models import Variable
from airflow.models.param import Param
from airflow.operators.python import get_current_context

from mobile_sync.alerts import format_run_alert, send_discord_alert
from mobile_sync.config import SyncSettings, load_settings
from mobile_sync.orchestrator import EXIT_OK, RunOrchestrator
from mobile_sync.results import RunSummary, StageName, StageResult, TableResult, TableState
from mobile_sync.sqltext import json_sanitize
from mobile_sync.TableSyncSpec import SyncMode

log = logging.getLogger(__name__)

# ------------------------ Settings (DAG-layer) ------------------------


def _settings() -> SyncSettings:
    """
    .env / environment first, then Airflow Connections and Variables on top.
    Connection ids come from Variables so each deployment can point elsewhere.
    """
    base = load_settings()
    desktop_id = Variable.get("MOBILE_SYNC_DESKTOP_CONN_ID", default_var="powerca_desktop")
    cloud_id = Variable.get("MOBILE_SYNC_CLOUD_CONN_ID", default_var="powerca_cloud")
    try:
        desktop_uri = BaseHook.get_connection(desktop_id).get_uri()
        cloud_uri = BaseHook.get_connection(cloud_id).get_uri()
    except Exception as e:
        raise AirflowException(f"Failed to resolve Airflow connections {desktop_id!r}/{cloud_id!r}: {e}")
    return replace(
        base,
        desktop=replace(base.desktop, uri=desktop_uri),
        cloud=replace(base.cloud, uri=cloud_uri),
        discord_webhook=Variable.get("DISCORD_WEBHOOK", default_var=base.discord_webhook),
        batch_size=int(Variable.get("MOBILE_SYNC_BATCH_SIZE", default_var=str(base.batch_size))),
    )


def _mode(default: str) -> SyncMode:
    ctx = get_current_context()
    raw = ((ctx.get("params") or {}).get("mode") or default).strip().lower()
    try:
        return SyncMode(raw)
    except ValueError:
        raise AirflowFailException(f"Unknown sync mode {raw!r} (expected 'full' or 'incremental')")


def _run_stage(stage: StageName, default_mode: str) -> Dict[str, Any]:
    mode = _mode(default_mode)
    log.info("Running stage %s in %s mode", stage.value, mode.value)
    try:
        orchestrator = RunOrchestrator(_settings())
    except Exception as e:
        log.exception("Could not configure stage %s: %s", stage.value, e)
        kind = "ConfigError" if isinstance(e, (AirflowException, ValueError)) else type(e).__name__
        return json_sanitize(StageResult(stage, error=str(e), error_kind=kind).to_dict())
    try:
        result = orchestrator.run_stage(stage, mode)
    finally:
        orchestrator.connections.close()
    payload = result.to_dict()
    log.info("Stage %s result: %s", stage.value, payload)
    return json_sanitize(payload)


def _summary_from_payloads(mode: str, payloads: Dict[str, Any]) -> RunSummary:
    """Rebuild a RunSummary-shaped view from the stage XComs for reporting."""
    summary = RunSummary(mode)
    for name in (StageName.REFRESH, StageName.FORWARD, StageName.REVERSE):
        p = payloads.get(name.value)
        if p is None:
            summary.stages.append(StageResult(name, error="stage did not report (upstream task failed)",
                                              error_kind="MissingResult"))
            continue
        stage = StageResult(name, error=p.get("error"), error_kind=p.get("error_kind"),
                            details=p.get("details") or {})
        for t in p.get("tables") or []:
            stage.tables.append(TableResult(
                table=t["table"], mode=t.get("mode", ""), state=TableState(t["state"]),
                considered=t.get("considered", 0), inserted=t.get("inserted", 0), updated=t.get("updated", 0),
                skipped=t.get("skipped", 0), filtered=t.get("filtered", 0), failed=t.get("failed", 0),
                deleted=t.get("deleted", 0), error=t.get("error"),
            ))
        summary.stages.append(stage)
    return summary

# ------------------------ DAG creation helpers ------------------------


def _build_mobile_sync_dag(dag_id: str, mode: str, schedule: str, description: str):

    @dag(
        dag_id=dag_id,
        schedule=schedule,
        start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
        catchup=False,
        max_active_runs=1,
        params={"mode": Param(mode, type="string", enum=["full", "incremental"])},
        tags=["mobile_sync", mode],
        description=description,
    )
    def sync_dag():

        @task
        def refresh_mirrors() -> Dict[str, Any]:
            return _run_stage(StageName.REFRESH, mode)

        @task
        def forward_sync() -> Dict[str, Any]:
            return _run_stage(StageName.FORWARD, mode)

        # Reverse cursors are independent of the forward tables: always attempt it.
        @task(trigger_rule="all_done")
        def reverse_sync() -> Dict[str, Any]:
            return _run_stage(StageName.REVERSE, mode)

        @task(trigger_rule="all_done", do_xcom_push=False)
        def report(refresh: Dict[str, Any], forward: Dict[str, Any], reverse: Dict[str, Any]) -> None:
            summary = _summary_from_payloads(
                _mode(mode).value,
                {"refresh": refresh, "forward": forward, "reverse": reverse},
            )
            code = RunOrchestrator.exit_code(summary)
            log.info("Run exit code: %d (ok=%s)", code, summary.ok)
            if code == EXIT_OK:
                log.info("🎉 Mobile sync run OK; no alerting.")
                return
            settings = load_settings()
            webhook = Variable.get("DISCORD_WEBHOOK", default_var=settings.discord_webhook)
            send_discord_alert(format_run_alert(summary, label=dag_id), webhook)
            raise AirflowFailException(f"Mobile sync finished with exit code {code}")

        r = refresh_mirrors()
        f = forward_sync()
        v = reverse_sync()
        r >> f >> v
        report(r, f, v)

    return sync_dag()

# ------------------------ DAG registration ------------------------

_DAGS = (
    ("mobile_sync_incremental", "incremental", "*/15 * * * *",
     "Desktop ⇄ cloud mobile sync (incremental, every 15 minutes)"),
    ("mobile_sync_full", "full", "0 2 * * 0",
     "Desktop ⇄ cloud mobile sync (full reload, weekly)"),
)

for _dag_id, _mode_name, _schedule, _description in _DAGS:
    dag_obj = _build_mobile_sync_dag(_dag_id, _mode_name, _schedule, _description)
    try:
        dag_obj.fileloc = __file__
    except Exception:
        pass
    globals()[dag_obj.dag_id] = dag_obj
