from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, time as dtime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import pendulum
import psycopg2
import psycopg2.extras as extras

from mobile_sync.config import CLOUD, DESKTOP
from mobile_sync.errors import ConstraintViolation, SchemaDriftWarning, TranslationFailure
from mobile_sync.loader import StagingUpsertLoader, _first_line
from mobile_sync.metadata import SyncMetadataStore
from mobile_sync.registry import TableSyncRegistry
from mobile_sync.results import StageName, StageResult, TableResult, TableState
from mobile_sync.schema import SchemaValidator
from mobile_sync.sqltext import col_list, fq_table, qi
from mobile_sync.TableSyncSpec import SOURCE_COLUMN, Direction, SourceTag, StagedRow, TableSyncSpec

LOG = logging.getLogger(__name__)

# ============================== Fiscal periods ===============================
#
# Desktop year_id encodes an April..March fiscal year as start*10000 + end,
# e.g. 20242025 = 2024-04-01 .. 2025-03-31.


def fiscal_year_id(day: date) -> int:
    start = day.year if day.month >= 4 else day.year - 1
    return start * 10000 + start + 1


def fiscal_year_bounds(year_id: Any) -> Tuple[date, date]:
    try:
        value = int(Decimal(str(year_id).strip()))
    except Exception as e:
        raise ValueError(f"year_id {year_id!r} is not numeric") from e
    start, end = divmod(value, 10000)
    if end != start + 1 or start < 1900:
        raise ValueError(f"year_id {year_id!r} does not encode an April-March period")
    return date(start, 4, 1), date(end, 3, 31)


# ============================== Value coercion ===============================


def as_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = pendulum.parse(str(value).strip())
    return date(parsed.year, parsed.month, parsed.day)


def combine_time(day: date, value: Any) -> Optional[datetime]:
    """Cloud stores TIME-of-day; the desktop wants a full TIMESTAMP on the work date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, dtime):
        return datetime.combine(day, value)
    return datetime.combine(day, dtime.fromisoformat(str(value).strip()))


def half_day_value(flag: Any) -> Decimal:
    f = (str(flag).strip().upper() if flag is not None else "")
    if f in ("F", "Y"):
        return Decimal("1")
    if f == "H":
        return Decimal("0.5")
    return Decimal("0")


def staff_from_createdby(createdby: Any) -> Optional[int]:
    m = re.match(r"^\s*(\d+)", str(createdby or ""))
    return int(m.group(1)) if m else None


# ============================== Desktop lookups ===============================


class DesktopLookup:
    """
    Read-only parent-record lookups against the desktop store, cached for the run.
    next_id() hands out MAX(column)+1 values, continuing locally after the first read.
    """

    def __init__(self, conn, schema: str = "public", logger: Optional[logging.Logger] = None):
        self.conn = conn
        self.schema = schema
        self.log = logger or LOG
        self._cache: Dict[Tuple[Any, ...], Any] = {}
        self._next_ids: Dict[Tuple[str, str], int] = {}

    def _one(self, cache_key: Tuple[Any, ...], sql: str, params: Tuple[Any, ...]) -> Any:
        if cache_key not in self._cache:
            with self.conn.cursor(cursor_factory=extras.RealDictCursor) as c:
                c.execute(sql, params)
                row = c.fetchone()
            self._cache[cache_key] = dict(row) if row else None
        return self._cache[cache_key]

    def job_header(self, job_id: Any) -> Optional[Dict[str, Any]]:
        return self._one(
            ("jobcard_head", job_id),
            f"SELECT org_id, loc_id, year_id FROM {fq_table(self.schema, 'jobcard_head')} WHERE job_id = %s LIMIT 1",
            (job_id,),
        )

    def task_exists(self, job_id: Any, task_id: Any) -> bool:
        return self._one(
            ("jobcard_det", job_id, task_id),
            f"SELECT 1 AS found FROM {fq_table(self.schema, 'jobcard_det')} WHERE job_id = %s AND task_id = %s LIMIT 1",
            (job_id, task_id),
        ) is not None

    def staff(self, staff_id: Any) -> Optional[Dict[str, Any]]:
        return self._one(
            ("mbstaff", staff_id),
            f"SELECT org_id, loc_id FROM {fq_table(self.schema, 'mbstaff')} WHERE staff_id = %s LIMIT 1",
            (staff_id,),
        )

    def schedule_for(self, day: date) -> Optional[Any]:
        row = self._one(
            ("atschedule", day),
            f"SELECT attschedule_id FROM {fq_table(self.schema, 'atschedule')} "
            f"WHERE %s BETWEEN attschfrom AND attschto ORDER BY attschfrom DESC LIMIT 1",
            (day,),
        )
        return row["attschedule_id"] if row else None

    def exists(self, table: str, key: Mapping[str, Any]) -> bool:
        """Natural-key presence check; not cached, it must see this run's inserts."""
        pred = " AND ".join(f"{qi(k)} IS NOT DISTINCT FROM %s" for k in key)
        with self.conn.cursor() as c:
            c.execute(f"SELECT 1 FROM {fq_table(self.schema, table)} WHERE {pred} LIMIT 1", tuple(key.values()))
            return c.fetchone() is not None

    def next_id(self, table: str, column: str) -> int:
        slot = (table, column)
        if slot not in self._next_ids:
            with self.conn.cursor() as c:
                c.execute(f"SELECT COALESCE(MAX({qi(column)}), 0) FROM {fq_table(self.schema, table)}")
                self._next_ids[slot] = int(c.fetchone()[0]) + 1
        value = self._next_ids[slot]
        self._next_ids[slot] = value + 1
        return value


# ============================== Translators ===============================

TranslateFn = Callable[[Dict[str, Any], DesktopLookup, TableSyncSpec], StagedRow]


@dataclass(frozen=True)
class Translator:
    translate: TranslateFn
    id_column: Optional[str] = None     # desktop surrogate allocated after the existence check


def translate_workdiary(row: Dict[str, Any], lookup: DesktopLookup, spec: TableSyncSpec) -> StagedRow:
    key = {k: row.get(k) for k in ("wd_id", "staff_id", "job_id", "task_id", "date")}
    job_id, task_id = row.get("job_id"), row.get("task_id")
    if job_id is None:
        raise TranslationFailure(spec.target_table, key, "job_id", "time-log entry has no job_id")
    if task_id is None:
        raise TranslationFailure(spec.target_table, key, "task_id", "time-log entry has no task_id")
    work_date = as_date(row.get("date"))
    if work_date is None:
        raise TranslationFailure(spec.target_table, key, "date", "time-log entry has no work date")

    head = lookup.job_header(job_id)
    if head is None:
        raise TranslationFailure(spec.target_table, key, "jobcard_head", f"job {job_id} not found on desktop")
    if not lookup.task_exists(job_id, task_id):
        raise TranslationFailure(spec.target_table, key, "jobcard_det", f"task {task_id} not found for job {job_id}")
    try:
        start, end = fiscal_year_bounds(head.get("year_id"))
    except ValueError as e:
        raise TranslationFailure(spec.target_table, key, "year_id", str(e)) from e
    if not (start <= work_date <= end):
        raise TranslationFailure(
            spec.target_table, key, "year_id",
            f"work date {work_date} outside fiscal period {head.get('year_id')} ({start}..{end})",
        )

    return {
        "org_id": head.get("org_id"),
        "loc_id": head.get("loc_id"),
        "year_id": head.get("year_id"),
        "work_dt": work_date,
        "sporgid": row.get("staff_id"),
        "job_id": job_id,
        "task_id": task_id,
        "work_det": row.get("tasknotes"),
        "manhrs_from": combine_time(work_date, row.get("timefrom")),
        "manhrs_to": combine_time(work_date, row.get("timeto")),
        "work_man_min": row.get("minutes") or 0,
        "work_id": row.get("wd_id"),
    }


def translate_learequest(row: Dict[str, Any], lookup: DesktopLookup, spec: TableSyncSpec) -> StagedRow:
    key = {k: row.get(k) for k in ("learequest_id", "staff_id", "createdby", "fromdate", "todate")}
    staff_id = row.get("staff_id")
    if staff_id is None:
        staff_id = staff_from_createdby(row.get("createdby"))
    if staff_id is None:
        raise TranslationFailure(spec.target_table, key, "staff_id", "leave request has no staff_id or numeric createdby")
    staff = lookup.staff(staff_id)
    if staff is None:
        raise TranslationFailure(spec.target_table, key, "mbstaff", f"staff {staff_id} not found on desktop")

    from_d, to_d = as_date(row.get("fromdate")), as_date(row.get("todate"))
    if from_d is None or to_d is None:
        raise TranslationFailure(spec.target_table, key, "fromdate", "leave request has no date range")
    if to_d < from_d:
        raise TranslationFailure(spec.target_table, key, "todate", f"todate {to_d} before fromdate {from_d}")

    schedule = lookup.schedule_for(from_d)
    if schedule is None:
        raise TranslationFailure(spec.target_table, key, "atschedule", f"no attendance schedule covers {from_d}")
    year_id = fiscal_year_id(from_d)
    _, period_end = fiscal_year_bounds(year_id)
    if to_d > period_end:
        raise TranslationFailure(
            spec.target_table, key, "year_id", f"leave {from_d}..{to_d} spans fiscal periods (period {year_id})"
        )

    return {
        "attschedule_id": schedule,
        "org_id": staff.get("org_id"),
        "loc_id": staff.get("loc_id"),
        "staff_id": staff_id,
        "year_id": year_id,
        "leareqdocdate": as_date(row.get("requestdate")) or from_d,
        "leareqfrom": from_d,
        "leareqto": to_d,
        "leareqdays": (to_d - from_d).days + 1,
        "leareqreason": row.get("leaveremarks"),
        "leareq_fhvalue": half_day_value(row.get("fhvalue")),
        "leareq_shvalue": half_day_value(row.get("shvalue")),
        "leareqapp": row.get("approval_status"),
    }


def translate_passthrough(row: Dict[str, Any], lookup: DesktopLookup, spec: TableSyncSpec) -> StagedRow:
    out = {spec.column_rename_map.get(k, k): v for k, v in row.items()
           if k not in ("created_at", "updated_at") and k not in spec.column_skip_list}
    return out


DEFAULT_TRANSLATORS: Dict[str, Translator] = {
    "daily_work": Translator(translate_workdiary, id_column="dw_id"),
    "atleaverequest": Translator(translate_learequest, id_column="learequest_id"),
}

# ============================== Engine ===============================

_ROW_SP = "reverse_row"
ROW_INSERTED = "inserted"
ROW_PRESENT = "present"


class ReverseSyncEngine:
    """
    Mobile-origin cloud rows -> desktop operational tables.
    • Rows are read in timestamp order, translated, checked for presence by the
      natural key, then inserted one by one under a savepoint.
    • The cursor stops just below the earliest failed row, so failures are retried.
    """

    def __init__(
        self,
        cloud,
        desktop,
        registry: Optional[TableSyncRegistry] = None,
        schema: str = "public",
        metadata_table: str = "_reverse_sync_metadata",
        validator: Optional[SchemaValidator] = None,
        metadata: Optional[SyncMetadataStore] = None,
        loader: Optional[StagingUpsertLoader] = None,
        lookup: Optional[DesktopLookup] = None,
        translators: Optional[Mapping[str, Translator]] = None,
        cancel: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.log = logger or logging.getLogger(__name__)
        self.cloud = cloud
        self.desktop = desktop
        self.registry = registry or TableSyncRegistry()
        self.schema = schema
        self.validator = validator or SchemaValidator.for_stores(desktop, cloud, schema=schema, logger=self.log)
        self.metadata = metadata or SyncMetadataStore(desktop, metadata_table, schema, logger=self.log)
        self.loader = loader or StagingUpsertLoader(desktop, schema, logger=self.log)
        self.lookup = lookup or DesktopLookup(desktop, schema, logger=self.log)
        self.translators = dict(DEFAULT_TRANSLATORS if translators is None else translators)
        self.cancel = cancel or threading.Event()

    def prepare(self) -> None:
        self.metadata.ensure_tables()
        self.validator.load(self.registry.for_direction(Direction.REVERSE))

    def run(self, tables: Optional[Iterable[str]] = None) -> StageResult:
        t0 = time.perf_counter()
        stage = StageResult(StageName.REVERSE)
        self.prepare()
        wanted = set(tables) if tables else None
        for spec in self.registry.load_order(Direction.REVERSE):
            if wanted and spec.target_table not in wanted and spec.source_table not in wanted:
                continue
            stage.tables.append(self.sync_table(spec))
        stage.elapsed = time.perf_counter() - t0
        self.log.info("Reverse sync done over %d table(s) (%.3fs)", len(stage.tables), stage.elapsed)
        return stage

    # ------------------------ Helpers ------------------------

    def _fit(self, table: str, row: StagedRow) -> StagedRow:
        """Project onto live desktop columns and truncate strings to the column width."""
        out: StagedRow = {}
        for col, value in row.items():
            info = self.validator.column(DESKTOP, table, col)
            if info is None:
                continue
            if isinstance(value, str) and info.max_length and len(value) > info.max_length:
                if LOG.isEnabledFor(logging.DEBUG):
                    LOG.debug("Truncating %s.%s from %d to %d chars", table, col, len(value), info.max_length)
                value = value[: info.max_length]
            out[col] = value
        return out

    def _extract(self, spec: TableSyncSpec, ts_expr: Optional[str], since) -> List[Dict[str, Any]]:
        cols = self.validator.ordered_columns(CLOUD, spec.source_table)
        sql = (
            f"SELECT {col_list(cols)} FROM {fq_table(self.schema, spec.source_table)} "
            f"WHERE {qi(SOURCE_COLUMN)} = %s"
        )
        params: List[Any] = [SourceTag.MOBILE.value]
        # An unseeded cursor reads everything, including rows with no timestamp yet.
        if ts_expr and since is not None:
            sql += f" AND {ts_expr} > %s"
            params.append(since)
        if ts_expr:
            sql += f" ORDER BY {ts_expr} ASC"
        self.log.info("Reverse source SQL for %s: %s", spec.source_table, sql)
        with self.cloud.cursor(cursor_factory=extras.RealDictCursor) as c:
            c.execute(sql, tuple(params))
            rows = [dict(r) for r in c.fetchall()]
        self.cloud.commit()
        return rows

    def _row_ref(self, spec: TableSyncSpec, row: Dict[str, Any]) -> Dict[str, Any]:
        cols = self.validator.ordered_columns(CLOUD, spec.source_table)
        return {cols[0]: row.get(cols[0])} if cols else {}

    def _apply_row(self, spec: TableSyncSpec, translator: Translator, row: Dict[str, Any]) -> str:
        staged = translator.translate(row, self.lookup, spec)
        for col, value in spec.column_defaults.items():
            if staged.get(col) is None:
                staged[col] = value
        staged = self._fit(spec.target_table, staged)

        key = {k: staged.get(k) for k in spec.key_columns}
        if key and self.lookup.exists(spec.target_table, key):
            return ROW_PRESENT
        if translator.id_column:
            staged[translator.id_column] = self.lookup.next_id(spec.target_table, translator.id_column)
        violation = self.loader.insert_row(spec.target_table, staged, spec.key_columns)
        if violation is not None:
            raise violation
        return ROW_INSERTED

    def _sync_row(self, spec: TableSyncSpec, translator: Translator, row: Dict[str, Any]):
        """
        One mobile row under its own savepoint.
        Returns ROW_INSERTED / ROW_PRESENT, or the row-level failure after rolling
        back to the savepoint; the rest of the table carries on.
        """
        with self.desktop.cursor() as c:
            c.execute(f"SAVEPOINT {_ROW_SP}")
        try:
            outcome = self._apply_row(spec, translator, row)
        except (TranslationFailure, ConstraintViolation) as e:
            failure: Exception = e
        except (ValueError, TypeError, ArithmeticError) as e:
            failure = TranslationFailure(spec.target_table, self._row_ref(spec, row), "value", _first_line(e))
        except psycopg2.Error as e:
            failure = ConstraintViolation(spec.target_table, self._row_ref(spec, row), _first_line(e))
        else:
            with self.desktop.cursor() as c:
                c.execute(f"RELEASE SAVEPOINT {_ROW_SP}")
            return outcome
        with self.desktop.cursor() as c:
            c.execute(f"ROLLBACK TO SAVEPOINT {_ROW_SP}")
        self.log.warning("Row not synced: %s", failure)
        return failure

    # ------------------------ Per table ------------------------

    def sync_table(self, spec: TableSyncSpec) -> TableResult:
        t0 = time.perf_counter()
        result = TableResult(spec.target_table, mode="incremental")
        if self.cancel.is_set():
            result.state = TableState.SKIPPED
            self.log.info("⏭️ %s skipped: run cancelled", spec.target_table)
            return result
        translator = self.translators.get(spec.target_table, Translator(translate_passthrough))
        try:
            if SOURCE_COLUMN not in self.validator.live_columns(CLOUD, spec.source_table):
                raise SchemaDriftWarning(spec.source_table, "no source column on cloud table; cannot select mobile rows")
            if not self.validator.has_table(DESKTOP, spec.target_table):
                raise SchemaDriftWarning(spec.target_table, "destination table not found on desktop store")
            cap = self.validator.timestamp_capability(spec.source_table, CLOUD)
            ts_cols = cap.columns
            ts_expr = None
            if cap.has_either:
                ts_expr = f"COALESCE({col_list(ts_cols)})" if cap.has_both else qi(ts_cols[0])
            else:
                warning = SchemaDriftWarning(spec.source_table, "no timestamp column; reading every mobile row")
                self.log.warning("%s", warning)
                result.warn(warning)

            cursor = self.metadata.get_cursor(spec.target_table)
            since = cursor.last_sync_timestamp if cursor.is_seeded else None
            result.state = TableState.EXTRACTING
            rows = self._extract(spec, ts_expr, since)
            self.log.info("▶️ %s -> %s: %d mobile row(s) since %s",
                          spec.source_table, spec.target_table, len(rows), cursor.last_sync_timestamp)

            synced_ts: List[datetime] = []
            first_failed: Optional[datetime] = None
            undated_failure = False
            result.state = TableState.LOADING
            for row in rows:
                result.considered += 1
                ts = next((row[c] for c in ts_cols if row.get(c) is not None), None)
                outcome = self._sync_row(spec, translator, row)
                if isinstance(outcome, Exception):
                    result.failed += 1
                    result.failures.append(str(outcome))
                    if ts is None:
                        undated_failure = True
                    elif first_failed is None or ts < first_failed:
                        first_failed = ts
                    continue
                if outcome == ROW_PRESENT:
                    result.skipped += 1
                else:
                    result.inserted += 1
                if ts is not None:
                    synced_ts.append(ts)
            self.desktop.commit()

            result.state = TableState.CURSOR_ADVANCE
            # A failed row without a timestamp is only re-read while the cursor is unseeded.
            eligible = [] if undated_failure else [
                t for t in synced_ts if first_failed is None or t < first_failed
            ]
            if eligible:
                self.metadata.advance_cursor(spec.target_table, max(eligible), result.inserted)
            else:
                self.log.info("%s: nothing new synced below the first failure; cursor unchanged", spec.target_table)
            result.state = TableState.DONE
        except Exception as e:
            self.log.error("❌ Reverse %s failed; rolling back", spec.target_table, exc_info=True)
            for conn in (self.desktop, self.cloud):
                try:
                    conn.rollback()
                except Exception:
                    self.log.debug("Rollback failed", exc_info=True)
            result.fail(e)
        result.elapsed = time.perf_counter() - t0
        self.log.info(
            "%s reverse %s: considered=%d inserted=%d skipped=%d failed=%d (%.3fs)",
            "✅" if result.ok else "❌", spec.target_table, result.considered, result.inserted,
            result.skipped, result.failed, result.elapsed,
        )
        return result
