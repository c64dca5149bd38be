from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import pendulum
import psycopg2.extras as extras

from mobile_sync.config import CLOUD, DESKTOP
from mobile_sync.errors import SchemaDriftWarning
from mobile_sync.fk_cache import ForeignKeyCache, normalize_key
from mobile_sync.loader import StagingUpsertLoader
from mobile_sync.metadata import SyncMetadataStore
from mobile_sync.registry import TableSyncRegistry
from mobile_sync.results import StageName, StageResult, TableResult, TableState
from mobile_sync.schema import SchemaValidator, TimestampCapability
from mobile_sync.sqltext import col_list, fq_table, qi
from mobile_sync.TableSyncSpec import (
    SOURCE_COLUMN,
    ColumnLookup,
    Direction,
    SourceTag,
    StagedRow,
    SyncMode,
    TableSyncSpec,
)

LOG = logging.getLogger(__name__)

BOOKKEEPING_COLUMNS = ("created_at", "updated_at")


def max_timestamp(row: Dict[str, Any], columns: Sequence[str]) -> Optional[datetime]:
    found = [row[c] for c in columns if row.get(c) is not None]
    return max(found) if found else None


@dataclass
class ProjectionPlan:
    """Per-table transform, computed once from the live catalogs."""
    columns: List[str]                          # destination column order of every staged row
    renames: Dict[str, str]
    skip: frozenset
    lookups: Dict[str, ColumnLookup]
    defaults: Dict[str, Any]
    inject: List[str]                           # bookkeeping columns filled when absent
    has_source: bool
    nullable: List[str] = field(default_factory=list)
    drift: List[SchemaDriftWarning] = field(default_factory=list)


class ForwardSyncEngine:
    """
    Desktop mirror tables -> cloud tables, one table at a time in FK-safe order.
    • Full mode: constraint-free tables are replaced in one transaction;
      uniqueness tables are merged then pruned to the source key set.
    • Incremental mode: rows with updated_at/created_at past the cursor are merged.
    • A failed table is rolled back on both sides and the next table proceeds.
    """

    def __init__(
        self,
        desktop,
        cloud,
        registry: Optional[TableSyncRegistry] = None,
        schema: str = "public",
        batch_size: int = 1_000,
        metadata_table: str = "_sync_metadata",
        validator: Optional[SchemaValidator] = None,
        fk_cache: Optional[ForeignKeyCache] = None,
        metadata: Optional[SyncMetadataStore] = None,
        loader: Optional[StagingUpsertLoader] = None,
        cancel: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = lambda: pendulum.now("UTC"),
        logger: Optional[logging.Logger] = None,
    ):
        self.log = logger or logging.getLogger(__name__)
        self.desktop = desktop
        self.cloud = cloud
        self.registry = registry or TableSyncRegistry()
        self.schema = schema
        self.batch_size = batch_size
        self.validator = validator or SchemaValidator.for_stores(desktop, cloud, schema=schema, logger=self.log)
        self.fk_cache = fk_cache or ForeignKeyCache(cloud, self.registry, schema, Direction.FORWARD, logger=self.log)
        self.metadata = metadata or SyncMetadataStore(cloud, metadata_table, schema, logger=self.log)
        self.loader = loader or StagingUpsertLoader(cloud, schema, batch_size, logger=self.log)
        self.cancel = cancel or threading.Event()
        self.clock = clock
        self._lookup_maps: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._desktop_tz = None

    # ------------------------ Run ------------------------

    def prepare(self) -> None:
        specs = self.registry.for_direction(Direction.FORWARD)
        self.metadata.ensure_tables()
        self.validator.load(specs)
        self.fk_cache.preload()
        self._lookup_maps.clear()
        self._desktop_tz = None

    # ------------------------ Desktop time zone ------------------------

    def desktop_timezone(self):
        """
        Zone of the desktop session, read once per run.
        Desktop bookkeeping columns are TIMESTAMP without time zone, so their
        values are wall-clock times in this zone.
        """
        if self._desktop_tz is None:
            with self.desktop.cursor() as c:
                c.execute("SELECT current_setting('TimeZone'), EXTRACT(TIMEZONE FROM now())")
                row = c.fetchone()
            self.desktop.commit()
            name, offset = (row[0], row[1]) if row else ("UTC", 0)
            try:
                self._desktop_tz = pendulum.timezone(name or "UTC")
            except (ValueError, KeyError):
                self.log.warning("Desktop TimeZone %r not recognised; using fixed offset %ss", name, offset)
                self._desktop_tz = pendulum.tz.fixed_timezone(int(offset or 0))
            self.log.info("Desktop session time zone: %s", self._desktop_tz.name)
        return self._desktop_tz

    def as_desktop_time(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return pendulum.instance(value, tz=self.desktop_timezone())
        return value

    def run(self, mode: SyncMode = SyncMode.INCREMENTAL, tables: Optional[Iterable[str]] = None) -> StageResult:
        t0 = time.perf_counter()
        stage = StageResult(StageName.FORWARD)
        self.prepare()
        wanted = set(tables) if tables else None
        order = self.registry.load_order(Direction.FORWARD)
        self.log.info("Forward sync (%s) over %d table(s)", mode.value, len(order))
        for spec in order:
            if wanted and spec.target_table not in wanted and spec.source_table not in wanted:
                continue
            stage.tables.append(self.sync_table(spec, mode))
        stage.elapsed = time.perf_counter() - t0
        self.log.info(
            "Forward sync done: %d ok, %d failed (%.3fs)",
            sum(1 for t in stage.tables if t.ok), sum(1 for t in stage.tables if not t.ok), stage.elapsed,
        )
        return stage

    # ------------------------ Mode resolution ------------------------

    def effective_mode(self, spec: TableSyncSpec, requested: SyncMode) -> Tuple[SyncMode, Optional[SchemaDriftWarning]]:
        if requested is SyncMode.FULL:
            return SyncMode.FULL, None
        if not spec.supports_incremental:
            self.log.info("%s: incremental not supported; using full", spec.target_table)
            return SyncMode.FULL, None
        if not spec.enforce_uniqueness:
            self.log.info("%s: constraint-free table is replaced; using full", spec.target_table)
            return SyncMode.FULL, None
        cap = self.validator.timestamp_capability(spec.source_table, DESKTOP)
        if not cap.has_either:
            warning = SchemaDriftWarning(spec.target_table, "no updated_at/created_at column; forced to full mode")
            self.log.warning("%s", warning)
            return SyncMode.FULL, warning
        return SyncMode.INCREMENTAL, None

    # ------------------------ Transform ------------------------

    def plan(self, spec: TableSyncSpec) -> ProjectionPlan:
        src_cols = self.validator.ordered_columns(DESKTOP, spec.source_table)
        if not src_cols:
            raise SchemaDriftWarning(spec.source_table, "source table not found on desktop store")
        dst_cols = self.validator.ordered_columns(CLOUD, spec.target_table)
        if not dst_cols:
            raise SchemaDriftWarning(spec.target_table, "destination table not found on cloud store")
        dst_set = set(dst_cols)
        drift: List[SchemaDriftWarning] = []

        skip = frozenset(spec.column_skip_list)
        renames = dict(spec.column_rename_map)
        for src, dst in renames.items():
            if dst not in dst_set:
                drift.append(SchemaDriftWarning(spec.target_table, f"rename target {dst!r} missing", source_column=src))
        lookups = {}
        for col, lk in spec.lookups.items():
            if col in dst_set:
                lookups[col] = lk
            else:
                drift.append(SchemaDriftWarning(spec.target_table, f"lookup column {col!r} missing"))
        defaults = {}
        for col, value in spec.column_defaults.items():
            if col in dst_set:
                defaults[col] = value
            else:
                drift.append(SchemaDriftWarning(spec.target_table, f"default column {col!r} missing"))

        produced = {renames.get(c, c) for c in src_cols if c not in skip}
        produced |= set(lookups) | set(defaults)
        has_source = SOURCE_COLUMN in dst_set
        inject = [c for c in BOOKKEEPING_COLUMNS if c in dst_set]
        produced |= set(inject)
        if has_source:
            produced.add(SOURCE_COLUMN)

        columns = [c for c in dst_cols if c in produced]
        missing_keys = [k for k in spec.key_columns if k not in columns]
        if spec.enforce_uniqueness and missing_keys:
            raise SchemaDriftWarning(spec.target_table, "key column(s) not projected", keys=missing_keys)
        nullable = [c for c in columns if self.validator.is_nullable(CLOUD, spec.target_table, c)]
        for w in drift:
            self.log.warning("%s", w)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Projection for %s: %s", spec.target_table, columns)
        return ProjectionPlan(columns, renames, skip, lookups, defaults, inject, has_source, nullable, drift)

    def _lookup_map(self, lk: ColumnLookup) -> Dict[str, Any]:
        key = (lk.from_table, lk.match_on, lk.select_column)
        if key not in self._lookup_maps:
            with self.cloud.cursor() as c:
                c.execute(
                    f"SELECT {qi(lk.match_on)}, {qi(lk.select_column)} FROM {fq_table(self.schema, lk.from_table)} "
                    f"WHERE {qi(lk.select_column)} IS NOT NULL"
                )
                mapping: Dict[str, Any] = {}
                for match, value in c.fetchall():
                    mapping.setdefault(normalize_key(match), value)
            self.cloud.commit()
            self._lookup_maps[key] = mapping
            self.log.info("Lookup %s.%s by %s: %d value(s)", lk.from_table, lk.select_column, lk.match_on, len(mapping))
        return self._lookup_maps[key]

    def transform(self, plan: ProjectionPlan, row: Dict[str, Any], now: datetime) -> StagedRow:
        out = {plan.renames.get(k, k): v for k, v in row.items() if k not in plan.skip}
        for col, lk in plan.lookups.items():
            match = out.get(lk.match_on)
            if match is not None:
                found = self._lookup_map(lk).get(normalize_key(match))
                if found is not None:
                    out[col] = found
        for col, value in plan.defaults.items():
            if out.get(col) is None:
                out[col] = value
        if plan.has_source:
            out[SOURCE_COLUMN] = SourceTag.DESKTOP.value
        for col in plan.inject:
            if out.get(col) is None:
                out[col] = now
        return {c: out.get(c) for c in plan.columns}

    # ------------------------ Extract ------------------------

    def _extract(self, spec: TableSyncSpec, mode: SyncMode, cursor_ts: Optional[datetime],
                 cap: TimestampCapability) -> Iterator[Dict[str, Any]]:
        src_cols = self.validator.ordered_columns(DESKTOP, spec.source_table)
        sql = f"SELECT {col_list(src_cols)} FROM {fq_table(self.schema, spec.source_table)}"
        params: Tuple[Any, ...] = ()
        # An unseeded cursor reads everything, including rows with no timestamp yet.
        if mode is SyncMode.INCREMENTAL and cursor_ts is not None:
            preds = [f"{qi(c)} > %s" for c in cap.columns]
            sql += " WHERE " + " OR ".join(preds)
            params = tuple(cursor_ts for _ in cap.columns)
            order = (f"GREATEST({col_list(cap.columns)})" if cap.has_both else qi(cap.columns[0]))
            sql += f" ORDER BY {order}"
        self.log.info("Source SQL for %s: %s (params=%r)", spec.source_table, sql, params)
        src_cur = self.desktop.cursor(name=f"mobile_sync_{spec.source_table}", cursor_factory=extras.RealDictCursor)
        src_cur.itersize = self.batch_size
        try:
            src_cur.execute(sql, params)
            for row in src_cur:
                yield dict(row)
        finally:
            src_cur.close()

    # ------------------------ Per table ------------------------

    def sync_table(self, spec: TableSyncSpec, requested: SyncMode) -> TableResult:
        t0 = time.perf_counter()
        result = TableResult(spec.target_table, mode=requested.value)
        if self.cancel.is_set():
            result.state = TableState.SKIPPED
            self.log.info("⏭️ %s skipped: run cancelled", spec.target_table)
            return result
        try:
            mode, warning = self.effective_mode(spec, requested)
            result.mode = mode.value
            if warning:
                result.warn(warning)
            cap = self.validator.timestamp_capability(spec.source_table, DESKTOP)
            cursor = self.metadata.get_cursor(spec.target_table)
            self.log.info(
                "▶️ %s -> %s mode=%s cursor=%s",
                spec.source_table, spec.target_table, mode.value, cursor.last_sync_timestamp,
            )

            result.state = TableState.TRANSFORMING
            plan = self.plan(spec)
            for w in plan.drift:
                result.warn(w)
            guard = plan.has_source
            now = self.clock()
            high_water: List[Optional[datetime]] = [None]
            kept_keys: List[Tuple[Any, ...]] = []
            since = cursor.last_sync_timestamp if cursor.is_seeded else None

            def staged() -> Iterator[StagedRow]:
                result.state = TableState.EXTRACTING
                for raw in self._extract(spec, mode, since, cap):
                    result.considered += 1
                    ts = max_timestamp(raw, cap.columns)
                    if ts is not None and (high_water[0] is None or ts > high_water[0]):
                        high_water[0] = ts
                    if raw.get(SOURCE_COLUMN) == SourceTag.MOBILE.value:
                        result.skipped += 1
                        continue
                    result.state = TableState.TRANSFORMING
                    row = self.transform(plan, raw, now)
                    result.state = TableState.FK_FILTERING
                    checked, violations = self.fk_cache.check(spec, row, plan.nullable)
                    if checked is None:
                        result.filtered += 1
                        result.failures.append(str(violations[-1]))
                        if LOG.isEnabledFor(logging.DEBUG):
                            LOG.debug("Filtered %s row: %s", spec.target_table, violations[-1])
                        continue
                    if violations:
                        result.warnings.extend(str(v) for v in violations)
                    if spec.key_columns:
                        kept_keys.append(tuple(checked.get(k) for k in spec.key_columns))
                    result.state = TableState.LOADING
                    yield checked

            if not spec.enforce_uniqueness:
                merged = self.loader.replace(spec.target_table, staged(), spec.key_columns, guard_source=guard)
            else:
                merged = self.loader.merge(spec.target_table, staged(), spec.key_columns, guard_source=guard)
                if mode is SyncMode.FULL:
                    merged.deleted += self.loader.prune(spec.target_table, spec.key_columns, kept_keys, guard_source=guard)

            result.inserted += merged.inserted
            result.updated += merged.updated
            result.skipped += merged.skipped
            result.failed += merged.failed
            result.deleted += merged.deleted
            result.failures.extend(str(f) for f in merged.failures)
            self.desktop.commit()

            result.state = TableState.CURSOR_ADVANCE
            if not cap.has_either:
                self.metadata.advance_cursor(spec.target_table, now, result.considered)
            elif high_water[0] is not None:
                self.metadata.advance_cursor(spec.target_table, self.as_desktop_time(high_water[0]),
                                             result.considered)
            else:
                self.log.info("%s: no rows extracted; cursor unchanged", spec.target_table)
            result.state = TableState.DONE
        except Exception as e:
            self.log.error("❌ %s failed; rolling back", spec.target_table, exc_info=True)
            self._rollback_both()
            result.fail(e)
        result.elapsed = time.perf_counter() - t0
        self.log.info(
            "%s %s: considered=%d inserted=%d updated=%d skipped=%d filtered=%d failed=%d deleted=%d (%.3fs)",
            "✅" if result.ok else "❌", spec.target_table, result.considered, result.inserted, result.updated,
            result.skipped, result.filtered, result.failed, result.deleted, result.elapsed,
        )
        return result

    def _rollback_both(self) -> None:
        for name, conn in ((DESKTOP, self.desktop), (CLOUD, self.cloud)):
            try:
                conn.rollback()
            except Exception:
                self.log.debug("Rollback on %s connection failed", name, exc_info=True)
