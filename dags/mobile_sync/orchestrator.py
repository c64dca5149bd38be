from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Iterable, Optional, Union

import pendulum
import psycopg2

from mobile_sync.config import CLOUD, DESKTOP, SyncSettings
from mobile_sync.connections import ConnectionManager
from mobile_sync.engine import ForwardSyncEngine
from mobile_sync.errors import ConfigError, ConnectivityError, MirrorRefreshError
from mobile_sync.registry import TableSyncRegistry
from mobile_sync.results import RunSummary, StageName, StageResult
from mobile_sync.reverse import ReverseSyncEngine
from mobile_sync.sqltext import fq_table, qi
from mobile_sync.TableSyncSpec import Direction, SyncMode

LOG = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONNECTIVITY = 2
EXIT_CONFIG = 3
EXIT_MIRROR_PREREQUISITE = 4

STAGE_ORDER = (StageName.REFRESH, StageName.FORWARD, StageName.REVERSE)


class RunOrchestrator:
    """
    refresh mirrors -> forward -> reverse, each stage isolated.
    • A failed refresh or forward stage still lets reverse run (independent cursors).
    • Only configuration and connectivity problems stop the run before the stages.
    • Overlapping runs are prevented by the scheduler (max_active_runs=1), not here.
    """

    def __init__(
        self,
        settings: SyncSettings,
        registry: Optional[TableSyncRegistry] = None,
        connections: Optional[ConnectionManager] = None,
        cancel: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.log = logger or logging.getLogger(__name__)
        self._registry = registry
        self._owns_connections = connections is None
        self.connections = connections or ConnectionManager.from_settings(settings, logger=self.log)
        self._cancel = cancel or threading.Event()

    @property
    def registry(self) -> TableSyncRegistry:
        if self._registry is None:
            self._registry = TableSyncRegistry()
        return self._registry

    def cancel(self) -> None:
        self.log.warning("Cancellation requested; stopping before the next table")
        self._cancel.set()

    # ------------------------ Stages ------------------------

    def refresh_mirrors(self) -> StageResult:
        fn = self.settings.refresh_function
        stage = StageResult(StageName.REFRESH, details={"function": fn})
        with self.connections.acquire(DESKTOP) as desktop:
            with desktop.cursor() as c:
                c.execute(
                    "SELECT 1 FROM pg_proc p JOIN pg_namespace n ON n.oid = p.pronamespace "
                    "WHERE p.proname = %s LIMIT 1",
                    (fn,),
                )
                if c.fetchone() is None:
                    raise MirrorRefreshError(f"Mirror refresh function {fn}() not found on desktop store",
                                             context={"function": fn})
                t0 = time.perf_counter()
                c.execute(f"SELECT {qi(fn)}()")
            desktop.commit()
            self.log.info("🔄 %s() completed (%.3fs)", fn, time.perf_counter() - t0)

            counts: Dict[str, Any] = {}
            for spec in self.registry.load_order(Direction.FORWARD):
                try:
                    with desktop.cursor() as c:
                        c.execute(f"SELECT COUNT(*) FROM {fq_table(self.settings.schema, spec.source_table)}")
                        counts[spec.source_table] = int(c.fetchone()[0])
                    desktop.commit()
                except psycopg2.Error:
                    desktop.rollback()
                    counts[spec.source_table] = None
                    self.log.warning("Could not count mirror table %s", spec.source_table, exc_info=True)
            self.log.info("Mirror row counts: %s", counts)
            stage.details["mirror_counts"] = counts
        return stage

    def _forward_engine(self, desktop, cloud) -> ForwardSyncEngine:
        s = self.settings
        return ForwardSyncEngine(
            desktop, cloud, self.registry, schema=s.schema, batch_size=s.batch_size,
            metadata_table=s.forward_metadata_table, cancel=self._cancel, logger=self.log,
        )

    def _reverse_engine(self, cloud, desktop) -> ReverseSyncEngine:
        s = self.settings
        return ReverseSyncEngine(
            cloud, desktop, self.registry, schema=s.schema,
            metadata_table=s.reverse_metadata_table, cancel=self._cancel, logger=self.log,
        )

    def run_stage(self, stage: StageName, mode: SyncMode = SyncMode.INCREMENTAL,
                  tables: Optional[Iterable[str]] = None) -> StageResult:
        t0 = time.perf_counter()
        self.log.info("===== Stage %s (mode=%s) =====", stage.value, mode.value)
        try:
            if stage is StageName.REFRESH:
                result = self.refresh_mirrors()
            elif stage is StageName.FORWARD:
                with self.connections.acquire(DESKTOP) as desktop, self.connections.acquire(CLOUD) as cloud:
                    result = self._forward_engine(desktop, cloud).run(mode, tables)
            else:
                with self.connections.acquire(CLOUD) as cloud, self.connections.acquire(DESKTOP) as desktop:
                    result = self._reverse_engine(cloud, desktop).run(tables)
        except Exception as e:
            self.log.error("Stage %s failed: %s", stage.value, e, exc_info=True)
            result = StageResult(stage, error=str(e) or repr(e), error_kind=type(e).__name__)
        result.elapsed = time.perf_counter() - t0
        return result

    # ------------------------ Run ------------------------

    def run(self, mode: Union[SyncMode, str] = SyncMode.INCREMENTAL,
            tables: Optional[Iterable[str]] = None) -> RunSummary:
        mode = SyncMode(mode)
        t0 = time.perf_counter()
        summary = RunSummary(mode.value, started_at=pendulum.now("UTC").to_iso8601_string())
        try:
            self.registry
            self.connections.open()
        except (ConfigError, ConnectivityError) as e:
            self.log.error("Run aborted before any stage: %s", e)
            summary.error = str(e)
            summary.error_kind = type(e).__name__
            summary.elapsed = time.perf_counter() - t0
            return summary
        try:
            wanted = list(tables) if tables else None
            for stage in STAGE_ORDER:
                summary.stages.append(self.run_stage(stage, mode, wanted))
        finally:
            if self._owns_connections:
                self.connections.close()
        summary.elapsed = time.perf_counter() - t0
        self.log.info("Run finished: ok=%s exit_code=%d (%.3fs)", summary.ok, self.exit_code(summary), summary.elapsed)
        return summary

    @staticmethod
    def exit_code(summary: RunSummary) -> int:
        kinds = {summary.error_kind} | {s.error_kind for s in summary.stages}
        if ConnectivityError.__name__ in kinds:
            return EXIT_CONNECTIVITY
        if ConfigError.__name__ in kinds:
            return EXIT_CONFIG
        if MirrorRefreshError.__name__ in kinds:
            return EXIT_MIRROR_PREREQUISITE
        return EXIT_OK if summary.ok else EXIT_FAILED
