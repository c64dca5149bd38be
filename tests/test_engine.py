"""
test_engine.py - Forward (desktop -> cloud) sync behaviour over in-memory stores.
"""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import psycopg2

from conftest import (
    FakeConnection,
    MemoryLoader,
    MemoryMetadata,
    StaticForeignKeyCache,
    make_validator,
    table_source,
    ts,
)
from mobile_sync.config import CLOUD, DESKTOP
from mobile_sync.engine import ForwardSyncEngine, max_timestamp
from mobile_sync.registry import TableSyncRegistry
from mobile_sync.results import TableState
from mobile_sync.TableSyncSpec import ColumnLookup, ForeignKeyDep, SyncMode, TableSyncSpec

NOW = ts(12, day=2)

PARENT = TableSyncSpec("mbparent", "parent", key_columns=("parent_id",))
TIME_LOG = TableSyncSpec(
    "time_log", "time_log", key_columns=("id",),
    column_skip_list=("internal_flag",),
    foreign_key_deps=(ForeignKeyDep("parent_id", "parent", "parent_id"),),
)
NOTES = TableSyncSpec("notes", "notes", enforce_uniqueness=False)

CATALOG = {
    DESKTOP: {
        "mbparent": ["parent_id", "name"],
        "time_log": ["id", "parent_id", "hours", "internal_flag", "source", "updated_at", "created_at"],
        "notes": ["note_id", "body", "updated_at"],
    },
    CLOUD: {
        "parent": ["parent_id", "name", "client_id", "source"],
        "time_log": ["id", "parent_id", "hours", "source", "updated_at", "created_at"],
        "notes": ["note_id", "body", "source", "updated_at"],
    },
}


def _log_row(i, hours, updated, parent_id=1, **extra):
    row = {"id": i, "parent_id": parent_id, "hours": hours, "internal_flag": "x", "source": None,
           "updated_at": updated, "created_at": ts(1)}
    row.update(extra)
    return row


class Harness:
    def __init__(self, desktop_tables, cloud_tables=None, cursors=None, specs=(PARENT, TIME_LOG, NOTES),
                 catalog=CATALOG, desktop_rules=()):
        self.registry = TableSyncRegistry(list(specs))
        self.desktop = FakeConnection(list(desktop_rules) + [("FROM", table_source(desktop_tables))], "desktop")
        self.cloud = FakeConnection(name="cloud")
        self.loader = MemoryLoader(cloud_tables)
        self.metadata = MemoryMetadata(cursors)
        self.cancel = threading.Event()
        self.engine = ForwardSyncEngine(
            self.desktop, self.cloud, self.registry,
            validator=make_validator(catalog),
            fk_cache=StaticForeignKeyCache(self.registry, {("parent", "parent_id"): [1, 2]}),
            metadata=self.metadata,
            loader=self.loader,
            cancel=self.cancel,
            clock=lambda: NOW,
        )

    def run(self, mode=SyncMode.INCREMENTAL, tables=None):
        return self.engine.run(mode, tables)

    def cloud_rows(self, table):
        return sorted(self.loader.tables.get(table, []), key=lambda r: str(r))


class TestIncremental:

    def test_only_changed_row_is_updated_and_cursor_moves_to_its_timestamp(self):
        h = Harness(
            {"time_log": [_log_row(1, 2, ts(8)), _log_row(2, 5, ts(10))]},
            {"time_log": [
                {"id": 1, "parent_id": 1, "hours": 2, "source": "D"},
                {"id": 2, "parent_id": 1, "hours": 3, "source": "D"},
            ]},
            cursors={"time_log": ts(9)},
        )
        result = h.run(tables=["time_log"]).tables[0]
        assert result.state is TableState.DONE
        assert (result.considered, result.updated, result.inserted) == (1, 1, 0)
        assert h.metadata.cursors["time_log"] == ts(10)
        row = next(r for r in h.loader.tables["time_log"] if r["id"] == 2)
        assert row["hours"] == 5
        assert row["source"] == "D"
        assert "internal_flag" not in row

    def test_mobile_owned_cloud_row_is_not_overwritten(self):
        h = Harness(
            {"time_log": [_log_row(2, 5, ts(10))]},
            {"time_log": [{"id": 2, "parent_id": 1, "hours": 3, "source": "M"}]},
            cursors={"time_log": ts(9)},
        )
        result = h.run(tables=["time_log"]).tables[0]
        assert result.skipped == 1
        assert result.updated == 0
        assert h.loader.tables["time_log"][0]["hours"] == 3

    def test_rows_with_missing_parent_are_filtered(self):
        h = Harness({"time_log": [_log_row(1, 2, ts(10)), _log_row(2, 4, ts(11), parent_id=99)]})
        result = h.run(tables=["time_log"]).tables[0]
        assert result.inserted == 1
        assert result.filtered == 1
        assert result.failures[0].startswith("Invalid parent_id=99")
        assert [r["id"] for r in h.loader.tables["time_log"]] == [1]

    def test_desktop_rows_tagged_mobile_are_skipped(self):
        h = Harness({"time_log": [_log_row(1, 2, ts(10), source="M")]})
        result = h.run(tables=["time_log"]).tables[0]
        assert result.skipped == 1
        assert h.loader.tables.get("time_log", []) == []

    def test_unseeded_cursor_reads_rows_without_timestamps(self):
        row = _log_row(1, 2, None, created_at=None)
        h = Harness({"time_log": [row, _log_row(2, 3, ts(7))]})
        result = h.run(tables=["time_log"]).tables[0]
        assert result.inserted == 2
        assert h.metadata.cursors["time_log"] == ts(7)
        assert h.loader.tables["time_log"][0]["updated_at"] == NOW

    def test_nothing_extracted_leaves_cursor_unchanged(self):
        h = Harness({"time_log": [_log_row(1, 2, ts(8))]}, cursors={"time_log": ts(9)})
        h.run(tables=["time_log"])
        assert h.metadata.advances == []
        assert h.metadata.cursors["time_log"] == ts(9)

    def test_naive_desktop_timestamps_advance_cursor_in_desktop_zone(self):
        h = Harness(
            {"time_log": [_log_row(1, 2, datetime(2025, 6, 1, 10, 0), created_at=None),
                          _log_row(2, 3, datetime(2025, 6, 1, 9, 0), created_at=None)]},
            desktop_rules=[("current_setting('TimeZone')", [("Asia/Kolkata", Decimal("19800"))])],
        )
        result = h.run(tables=["time_log"]).tables[0]
        assert result.inserted == 2
        _, cursor, _ = h.metadata.advances[0]
        assert cursor.utcoffset() == timedelta(hours=5, minutes=30)
        assert cursor == datetime(2025, 6, 1, 4, 30, tzinfo=timezone.utc)
        assert len(h.desktop.statements("current_setting")) == 1

    def test_unrecognised_desktop_zone_uses_session_offset(self):
        h = Harness(
            {"time_log": [_log_row(1, 2, datetime(2025, 6, 1, 10, 0), created_at=None)]},
            desktop_rules=[("current_setting('TimeZone')", [("<+0530>-05:30", Decimal("19800"))])],
        )
        h.run(tables=["time_log"])
        _, cursor, _ = h.metadata.advances[0]
        assert cursor == datetime(2025, 6, 1, 4, 30, tzinfo=timezone.utc)


class TestModeResolution:

    def test_table_without_timestamps_is_forced_to_full_with_warning(self):
        h = Harness({"mbparent": [{"parent_id": 1, "name": "a"}]})
        result = h.run(tables=["parent"]).tables[0]
        assert result.mode == "full"
        assert any("forced to full" in w for w in result.warnings)
        assert ("prune", "parent") in h.loader.calls
        assert h.metadata.cursors["parent"] == NOW

    def test_constraint_free_table_is_replaced_but_keeps_mobile_rows(self):
        h = Harness(
            {"notes": [{"note_id": 1, "body": "new", "updated_at": ts(3)}]},
            {"notes": [
                {"note_id": 7, "body": "old", "source": "D"},
                {"note_id": 8, "body": "phone", "source": "M"},
            ]},
        )
        result = h.run(tables=["notes"]).tables[0]
        assert result.mode == "full"
        assert h.loader.calls == [("replace", "notes")]
        assert result.deleted == 1
        assert sorted(r["note_id"] for r in h.loader.tables["notes"]) == [1, 8]


class TestFull:

    def test_full_prunes_vanished_desktop_rows_and_is_idempotent(self):
        desktop = {"time_log": [_log_row(1, 2, ts(8)), _log_row(2, 5, ts(10))]}
        cloud = {"time_log": [
            {"id": 3, "parent_id": 1, "hours": 1, "source": "D"},
            {"id": 4, "parent_id": 1, "hours": 1, "source": "M"},
        ]}
        h = Harness(desktop, cloud)
        first = h.run(SyncMode.FULL, ["time_log"]).tables[0]
        assert (first.inserted, first.deleted) == (2, 1)
        snapshot = h.cloud_rows("time_log")
        assert sorted(r["id"] for r in snapshot) == [1, 2, 4]

        second = h.run(SyncMode.FULL, ["time_log"]).tables[0]
        assert (second.inserted, second.deleted) == (0, 0)
        assert h.cloud_rows("time_log") == snapshot


class TestLookupsAndIsolation:

    def test_lookup_fills_destination_column_from_cloud(self):
        spec = TableSyncSpec(
            "mbparent", "parent", key_columns=("parent_id",),
            lookups={"client_id": ColumnLookup("client_map", "parent_id", "client_id")},
        )
        h = Harness({"mbparent": [{"parent_id": 1, "name": "a"}, {"parent_id": 2, "name": "b"}]}, specs=[spec])
        h.cloud.rules.append(('SELECT "parent_id", "client_id"', [(1, 77)]))
        h.run(SyncMode.FULL)
        by_id = {r["parent_id"]: r for r in h.loader.tables["parent"]}
        assert by_id[1]["client_id"] == 77
        assert by_id[2]["client_id"] is None
        assert len(h.cloud.statements('SELECT "parent_id", "client_id"')) == 1

    def test_failed_table_rolls_back_and_next_table_runs(self):
        h = Harness(
            {"time_log": [_log_row(1, 2, ts(10))]},
            desktop_rules=[('"mbparent"', psycopg2.OperationalError("relation is locked"))],
        )
        stage = h.run()
        parent, time_log = stage.tables[0], stage.tables[1]
        assert parent.state is TableState.FAILED
        assert "relation is locked" in parent.error
        assert h.desktop.rollbacks >= 1 and h.cloud.rollbacks >= 1
        assert time_log.state is TableState.DONE
        assert time_log.inserted == 1
        assert not stage.ok

    def test_cancellation_skips_remaining_tables(self):
        h = Harness({"time_log": [_log_row(1, 2, ts(10))]})
        h.cancel.set()
        stage = h.run()
        assert all(t.state is TableState.SKIPPED for t in stage.tables)
        assert h.loader.calls == []
        assert stage.ok


def test_max_timestamp_ignores_nulls():
    assert max_timestamp({"updated_at": None, "created_at": ts(3)}, ("updated_at", "created_at")) == ts(3)
    assert max_timestamp({"updated_at": None}, ("updated_at",)) is None
