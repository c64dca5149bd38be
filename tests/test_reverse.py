"""
test_reverse.py - Mobile-origin rows flowing back into desktop operational tables.
"""

from datetime import date, datetime, time
from decimal import Decimal

import psycopg2
import pytest

from conftest import FakeConnection, FakeLookup, MemoryLoader, MemoryMetadata, make_validator, table_source, ts
from mobile_sync.config import CLOUD, DESKTOP
from mobile_sync.errors import TranslationFailure
from mobile_sync.registry import TableSyncRegistry
from mobile_sync.results import TableState
from mobile_sync.reverse import (
    DesktopLookup,
    ReverseSyncEngine,
    combine_time,
    fiscal_year_bounds,
    fiscal_year_id,
    half_day_value,
    staff_from_createdby,
    translate_learequest,
)

CATALOG = {
    CLOUD: {
        "workdiary": ["wd_id", "staff_id", "job_id", "task_id", "date", "tasknotes", "timefrom", "timeto",
                      "minutes", "source", "updated_at", "created_at"],
    },
    DESKTOP: {
        "daily_work": ["dw_id", "org_id", "loc_id", "year_id", "work_dt", "sporgid", "job_id", "task_id",
                       ("work_det", True, 10), "manhrs_from", "manhrs_to", "work_man_min", "work_id",
                       "jobdet_slno"],
    },
}

HEADER = {"org_id": 1, "loc_id": 2, "year_id": 20242025}


def _entry(wd_id, job_id, updated, day=date(2024, 6, 10), **extra):
    row = {"wd_id": wd_id, "staff_id": 3, "job_id": job_id, "task_id": 7, "date": day,
           "tasknotes": "Audit fieldwork", "timefrom": time(9, 0), "timeto": time(11, 0), "minutes": 120,
           "source": "M", "updated_at": updated, "created_at": ts(1)}
    row.update(extra)
    return row


class Harness:
    def __init__(self, cloud_rows, jobs=None, reject=None, catalog=CATALOG):
        self.cloud_rows = cloud_rows
        self.cloud = FakeConnection([("FROM", table_source({"workdiary": cloud_rows}))], "cloud")
        self.desktop = FakeConnection(name="desktop")
        self.loader = MemoryLoader(reject=reject)
        self.lookup = FakeLookup(self.loader, jobs=jobs or {5: HEADER}, tasks={(5, 7), (6, 7)})
        self.metadata = MemoryMetadata()
        self.catalog = catalog

    def engine(self, metadata=None):
        return ReverseSyncEngine(
            self.cloud, self.desktop, TableSyncRegistry(),
            validator=make_validator(self.catalog),
            metadata=metadata or self.metadata,
            loader=self.loader,
            lookup=self.lookup,
        )

    def run(self, metadata=None):
        return self.engine(metadata).run(["daily_work"]).tables[0]


class TestReverseSync:

    def test_mobile_entry_is_translated_and_inserted(self):
        h = Harness([_entry(1, 5, ts(8)), _entry(2, 5, ts(9), source="D")])
        result = h.run()
        assert result.state is TableState.DONE
        assert (result.considered, result.inserted) == (1, 1)
        row = h.loader.tables["daily_work"][0]
        assert row["dw_id"] == 101
        assert row["org_id"] == 1 and row["year_id"] == 20242025
        assert row["sporgid"] == 3
        assert row["manhrs_from"] == datetime(2024, 6, 10, 9, 0)
        assert row["work_det"] == "Audit fiel"
        assert row["jobdet_slno"] == 1
        assert row["work_id"] == 1
        assert h.metadata.cursors["daily_work"] == ts(8)
        assert h.desktop.commits == 1

    def test_second_run_inserts_nothing(self):
        h = Harness([_entry(1, 5, ts(8))])
        h.run()
        assert h.run().considered == 0

        replay = h.run(metadata=MemoryMetadata())
        assert replay.considered == 1
        assert replay.skipped == 1
        assert replay.inserted == 0
        assert len(h.loader.tables["daily_work"]) == 1

    def test_translation_failure_holds_cursor_below_failed_row(self):
        rows = [_entry(1, 5, ts(8)), _entry(2, 6, ts(9)), _entry(3, 5, ts(10), task_id=7, minutes=30,
                                                                 timefrom=time(13, 0))]
        h = Harness(rows)
        result = h.run()
        assert (result.inserted, result.failed) == (2, 1)
        assert "job 6 not found on desktop" in result.failures[0]
        assert h.metadata.cursors["daily_work"] == ts(8)

        h.lookup.jobs[6] = HEADER
        retry = h.run()
        assert retry.considered == 2
        assert (retry.inserted, retry.skipped) == (1, 1)
        assert h.metadata.cursors["daily_work"] == ts(10)

    def test_work_date_outside_fiscal_period_is_rejected(self):
        h = Harness([_entry(1, 5, ts(8), day=date(2025, 4, 2))])
        result = h.run()
        assert result.failed == 1
        assert "outside fiscal period" in result.failures[0]
        assert h.metadata.advances == []

    def test_rejected_insert_counts_as_failure(self):
        h = Harness([_entry(1, 5, ts(8))], reject=lambda table, row: True)
        result = h.run()
        assert result.failed == 1
        assert result.inserted == 0
        assert h.metadata.advances == []

    def test_table_without_timestamps_reads_every_mobile_row(self):
        catalog = {
            CLOUD: {"workdiary": [c for c in CATALOG[CLOUD]["workdiary"] if c not in ("updated_at", "created_at")]},
            DESKTOP: CATALOG[DESKTOP],
        }
        h = Harness([_entry(1, 5, None, created_at=None)], catalog=catalog)
        result = h.run()
        assert result.inserted == 1
        assert any("no timestamp column" in w for w in result.warnings)
        assert h.metadata.advances == []

    def test_missing_source_column_fails_table(self):
        catalog = {
            CLOUD: {"workdiary": [c for c in CATALOG[CLOUD]["workdiary"] if c != "source"]},
            DESKTOP: CATALOG[DESKTOP],
        }
        result = Harness([], catalog=catalog).run()
        assert result.state is TableState.FAILED
        assert "no source column" in result.error

    def test_malformed_time_fails_only_its_row(self):
        rows = [_entry(1, 5, ts(8)), _entry(2, 5, ts(9), timefrom="9.30 am"),
                _entry(3, 5, ts(10), timefrom=time(13, 0))]
        h = Harness(rows)
        result = h.run()
        assert result.state is TableState.DONE
        assert (result.considered, result.inserted, result.failed) == (3, 2, 1)
        assert "9.30 am" in result.failures[0]
        assert "'wd_id': 2" in result.failures[0]
        assert h.metadata.cursors["daily_work"] == ts(8)
        assert len(h.desktop.statements("ROLLBACK TO SAVEPOINT reverse_row")) == 1
        assert len(h.desktop.statements("RELEASE SAVEPOINT reverse_row")) == 2
        assert h.desktop.rollbacks == 0

    def test_database_error_on_one_row_is_isolated(self):
        h = Harness([_entry(1, 6, ts(8)), _entry(2, 5, ts(9))])
        known = h.lookup.job_header

        def job_header(job_id):
            if job_id == 6:
                raise psycopg2.DataError("invalid input syntax for type integer\nLINE 1: ...")
            return known(job_id)

        h.lookup.job_header = job_header
        result = h.run()
        assert result.state is TableState.DONE
        assert (result.inserted, result.failed) == (1, 1)
        assert "invalid input syntax for type integer" in result.failures[0]
        assert h.metadata.advances == []
        assert h.desktop.commits == 1

    def test_first_run_reads_rows_without_timestamps(self):
        h = Harness([_entry(1, 5, None, created_at=None), _entry(2, 5, ts(8), timefrom=time(13, 0))])
        result = h.run()
        assert (result.considered, result.inserted) == (2, 2)
        assert not h.cloud.statements("> %s")
        assert h.metadata.cursors["daily_work"] == ts(8)

        again = h.run()
        assert again.considered == 0
        assert len(h.cloud.statements("> %s")) == 1

    def test_failed_row_without_timestamp_keeps_cursor_unseeded(self):
        h = Harness([_entry(1, 6, None, created_at=None), _entry(2, 5, ts(8))])
        result = h.run()
        assert (result.inserted, result.failed) == (1, 1)
        assert h.metadata.advances == []

        h.lookup.jobs[6] = HEADER
        retry = h.run()
        assert (retry.inserted, retry.skipped) == (1, 1)
        assert h.metadata.cursors["daily_work"] == ts(8)


class TestDesktopLookup:

    def test_exists_matches_nulls_in_natural_key(self):
        conn = FakeConnection([("IS NOT DISTINCT FROM", [(1,)])])
        lookup = DesktopLookup(conn)
        assert lookup.exists("daily_work", {"job_id": 5, "manhrs_from": None}) is True
        sql, params = conn.executed[-1]
        assert sql == ('SELECT 1 FROM "public"."daily_work" WHERE "job_id" IS NOT DISTINCT FROM %s '
                       'AND "manhrs_from" IS NOT DISTINCT FROM %s LIMIT 1')
        assert params == (5, None)

        conn.rules = [("IS NOT DISTINCT FROM", [])]
        assert lookup.exists("daily_work", {"job_id": 5, "manhrs_from": None}) is False
        assert len(conn.statements("daily_work")) == 2

    def test_next_id_starts_at_one_on_empty_table(self):
        conn = FakeConnection([("MAX(", [(0,)])])
        lookup = DesktopLookup(conn, schema="ops")
        assert [lookup.next_id("daily_work", "dw_id") for _ in range(3)] == [1, 2, 3]
        assert conn.statements() == ['SELECT COALESCE(MAX("dw_id"), 0) FROM "ops"."daily_work"']

    def test_next_id_continues_after_existing_max(self):
        conn = FakeConnection([('MAX("dw_id")', [(41,)]), ('MAX("learequest_id")', [(Decimal("7"),)])])
        lookup = DesktopLookup(conn)
        assert lookup.next_id("daily_work", "dw_id") == 42
        assert lookup.next_id("atleaverequest", "learequest_id") == 8
        assert lookup.next_id("daily_work", "dw_id") == 43
        assert len(conn.executed) == 2

    def test_schedule_for_day_is_cached(self):
        conn = FakeConnection([("atschedule", [{"attschedule_id": 11}])])
        lookup = DesktopLookup(conn)
        day = date(2024, 6, 10)
        assert lookup.schedule_for(day) == 11
        assert lookup.schedule_for(day) == 11
        sql, params = conn.executed[0]
        assert "WHERE %s BETWEEN attschfrom AND attschto ORDER BY attschfrom DESC LIMIT 1" in sql
        assert params == (day,)
        assert len(conn.executed) == 1

        conn.rules = [("atschedule", [])]
        assert lookup.schedule_for(date(2030, 1, 1)) is None

    def test_job_header_and_missing_job(self):
        conn = FakeConnection([("jobcard_head", lambda sql, params: [HEADER] if params == (5,) else [])])
        lookup = DesktopLookup(conn)
        assert lookup.job_header(5) == HEADER
        assert lookup.job_header(5) == HEADER
        assert lookup.job_header(9) is None
        sql, params = conn.executed[0]
        assert sql == 'SELECT org_id, loc_id, year_id FROM "public"."jobcard_head" WHERE job_id = %s LIMIT 1'
        assert len(conn.executed) == 2


class TestLeaveRequestTranslation:

    def _lookup(self):
        return FakeLookup(
            MemoryLoader(),
            staff={3: {"org_id": 1, "loc_id": 2}},
            schedules=[(11, date(2024, 4, 1), date(2025, 3, 31))],
        )

    def _spec(self):
        return TableSyncRegistry().resolve("atleaverequest")

    def test_staff_from_createdby_and_half_days(self):
        row = {"learequest_id": 9, "staff_id": None, "createdby": "3-john", "fromdate": "2024-06-10",
               "todate": "2024-06-12", "fhvalue": "H", "shvalue": None, "leaveremarks": "Family"}
        out = translate_learequest(row, self._lookup(), self._spec())
        assert out["staff_id"] == 3
        assert out["attschedule_id"] == 11
        assert out["year_id"] == 20242025
        assert out["leareqdays"] == 3
        assert out["leareqdocdate"] == date(2024, 6, 10)
        assert out["leareq_fhvalue"] == Decimal("0.5")
        assert out["leareq_shvalue"] == Decimal("0")

    def test_leave_spanning_fiscal_periods_fails(self):
        row = {"staff_id": 3, "fromdate": date(2025, 3, 30), "todate": date(2025, 4, 2)}
        lookup = self._lookup()
        lookup.schedules.append((12, date(2025, 4, 1), date(2026, 3, 31)))
        with pytest.raises(TranslationFailure) as exc:
            translate_learequest(row, lookup, self._spec())
        assert exc.value.lookup == "year_id"

    def test_unknown_staff_fails(self):
        with pytest.raises(TranslationFailure) as exc:
            translate_learequest({"staff_id": 99, "fromdate": date(2024, 6, 1), "todate": date(2024, 6, 1)},
                                 self._lookup(), self._spec())
        assert exc.value.lookup == "mbstaff"


class TestFiscalHelpers:

    def test_fiscal_year_id(self):
        assert fiscal_year_id(date(2025, 3, 31)) == 20242025
        assert fiscal_year_id(date(2025, 4, 1)) == 20252026

    def test_fiscal_year_bounds(self):
        assert fiscal_year_bounds(20242025) == (date(2024, 4, 1), date(2025, 3, 31))
        assert fiscal_year_bounds(Decimal("20242025")) == (date(2024, 4, 1), date(2025, 3, 31))
        with pytest.raises(ValueError):
            fiscal_year_bounds(2024)
        with pytest.raises(ValueError):
            fiscal_year_bounds("abc")

    def test_value_coercion(self):
        assert combine_time(date(2024, 6, 10), "09:30") == datetime(2024, 6, 10, 9, 30)
        assert half_day_value("f") == Decimal("1")
        assert staff_from_createdby("12 - abc") == 12
        assert staff_from_createdby("admin") is None
