"""
conftest.py - pytest fixtures and in-memory fakes for mobile_sync tests.

No live PostgreSQL is needed: FakeConnection records every statement and answers
from scripted rules; MemoryLoader / MemoryMetadata / FakeLookup stand in for the
database-backed collaborators of the engines.
"""

import re
from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import pytest

from mobile_sync.errors import ConstraintViolation, SyncError
from mobile_sync.fk_cache import ForeignKeyCache, normalize_key
from mobile_sync.loader import MergeResult
from mobile_sync.schema import ColumnInfo, SchemaValidator
from mobile_sync.TableSyncSpec import EPOCH, SyncCursor


def ts(hour, day=1, month=6, year=2025):
    return datetime(year, month, day, hour, 0, tzinfo=timezone.utc)


# ============================== psycopg2 fakes ===============================


class FakeCursor:
    def __init__(self, conn, name=None, cursor_factory=None):
        self.conn = conn
        self.name = name
        self.cursor_factory = cursor_factory
        self.itersize = 2000
        self.rowcount = -1
        self._rows = []
        self.closed = False

    @property
    def connection(self):
        return self.conn

    def execute(self, sql, params=None):
        self.conn.executed.append((sql, params))
        result = self.conn.respond(sql, params)
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, int) and not isinstance(result, bool):
            self._rows, self.rowcount = [], result
        else:
            self._rows = list(result or [])
            self.rowcount = len(self._rows)

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def __iter__(self):
        while self._rows:
            yield self._rows.pop(0)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeConnection:
    """
    rules: list of (substring, result) matched in order against str(sql).
    result may be rows, an int rowcount, an exception instance, or a
    callable(sql, params) returning any of those.
    """

    def __init__(self, rules=None, name="fake"):
        self.rules = list(rules or [])
        self.name = name
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0
        self.status = psycopg2.extensions.TRANSACTION_STATUS_IDLE

    def cursor(self, name=None, cursor_factory=None):
        return FakeCursor(self, name=name, cursor_factory=cursor_factory)

    def respond(self, sql, params):
        text = str(sql)
        for pattern, result in self.rules:
            if pattern in text:
                return result(text, params) if callable(result) else result
        return None

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def get_transaction_status(self):
        return self.status

    def statements(self, needle=""):
        return [str(s) for s, _ in self.executed if needle in str(s)]


def fake_execute_values(cur, sql, argslist, template=None, page_size=100, fetch=False):
    cur.execute(sql, [tuple(a) for a in argslist])
    return cur.fetchall() if fetch else None


@pytest.fixture
def patch_execute_values(monkeypatch):
    monkeypatch.setattr(psycopg2.extras, "execute_values", fake_execute_values)
    return fake_execute_values


# ============================== Table-backed desktop/cloud fakes ===============================

_FROM_RE = re.compile(r'FROM "[^"]+"\."([^"]+)"')


def table_source(tables):
    """
    Responder serving SELECTs over in-memory tables (lists of dict rows).
    Understands the forward incremental predicate (col > %s OR ...) and the
    reverse mobile filter ("source" = %s AND <ts> > %s).
    """

    def respond(sql, params):
        m = _FROM_RE.search(sql)
        if not m or m.group(1) not in tables:
            return []
        rows = [dict(r) for r in tables[m.group(1)]]
        params = list(params or [])
        if '"source" = %s' in sql:
            tag = params.pop(0)
            rows = [r for r in rows if r.get("source") == tag]
        if "> %s" in sql and params:
            since = params[0]

            def stamp(r):
                return r.get("updated_at") or r.get("created_at")

            rows = [r for r in rows if stamp(r) is not None and stamp(r) > since]
            rows.sort(key=stamp)
        return rows

    return respond


def make_validator(catalog):
    """
    catalog: {store: {table: [col | (col, nullable) | (col, nullable, max_length)]}}
    """
    v = SchemaValidator({})
    for store, tables in catalog.items():
        for table, cols in tables.items():
            info = {}
            for c in cols:
                if isinstance(c, str):
                    c = (c, True)
                name, nullable = c[0], c[1]
                max_length = c[2] if len(c) > 2 else None
                info[name] = ColumnInfo(name, "text", nullable, None, max_length)
            v._cache[(store, table)] = info
    return v


class StaticForeignKeyCache(ForeignKeyCache):
    def __init__(self, registry, keys):
        super().__init__(None, registry)
        self._keys = {k: frozenset(normalize_key(v) for v in vals) for k, vals in keys.items()}

    def preload(self, referents=None):
        return self


# ============================== Collaborator fakes ===============================


class MemoryMetadata:
    def __init__(self, seed=None):
        self.cursors = dict(seed or {})
        self.advances = []

    def ensure_tables(self):
        pass

    def get_cursor(self, table_name):
        if table_name not in self.cursors:
            return SyncCursor(table_name)
        return SyncCursor(table_name, self.cursors[table_name], 0)

    def advance_cursor(self, table_name, timestamp, record_count):
        self.advances.append((table_name, timestamp, record_count))
        current = self.cursors.get(table_name, EPOCH)
        self.cursors[table_name] = max(current, timestamp)


class MemoryLoader:
    """Mirrors StagingUpsertLoader semantics over dict rows, including the source guard."""

    def __init__(self, tables=None, reject=None):
        self.tables = {k: [dict(r) for r in v] for k, v in (tables or {}).items()}
        self.reject = reject or (lambda table, row: False)
        self.calls = []

    def _find(self, table, key_columns, row):
        for existing in self.tables.setdefault(table, []):
            if all(existing.get(k) == row.get(k) for k in key_columns):
                return existing
        return None

    def _violation(self, table, row, key_columns):
        return ConstraintViolation(table, {k: row.get(k) for k in key_columns}, "rejected by test")

    def merge(self, table, rows, key_columns, guard_source=True):
        self.calls.append(("merge", table))
        result = MergeResult()
        for row in rows:
            if self.reject(table, row):
                result.failed += 1
                result.failures.append(self._violation(table, row, key_columns))
                continue
            existing = self._find(table, key_columns, row)
            if existing is None:
                self.tables[table].append(dict(row))
                result.inserted += 1
            elif guard_source and existing.get("source") == "M":
                result.skipped += 1
            else:
                existing.update(row)
                result.updated += 1
        return result

    def replace(self, table, rows, key_columns=(), guard_source=True):
        self.calls.append(("replace", table))
        before = list(self.tables.setdefault(table, []))
        kept = [r for r in before if guard_source and r.get("source") == "M"]
        result = MergeResult(deleted=len(before) - len(kept))
        self.tables[table] = kept
        for row in rows:
            if self.reject(table, row):
                result.failed += 1
                result.failures.append(self._violation(table, row, key_columns))
                continue
            self.tables[table].append(dict(row))
            result.inserted += 1
        if result.failed and not result.inserted:
            self.tables[table] = before
            raise SyncError(f"{table}: replace loaded 0 rows; rolled back")
        return result

    def prune(self, table, key_columns, kept_keys, guard_source=True):
        self.calls.append(("prune", table))
        keep = set(kept_keys)
        before = self.tables.setdefault(table, [])
        after = [
            r for r in before
            if tuple(r.get(k) for k in key_columns) in keep or (guard_source and r.get("source") == "M")
        ]
        self.tables[table] = after
        return len(before) - len(after)

    def insert_row(self, table, row, key_columns=()):
        self.calls.append(("insert_row", table))
        if self.reject(table, row):
            return self._violation(table, row, key_columns)
        self.tables.setdefault(table, []).append(dict(row))
        return None


class FakeLookup:
    """DesktopLookup stand-in backed by dicts; exists() reads the MemoryLoader's tables."""

    def __init__(self, loader, jobs=None, tasks=(), staff=None, schedules=()):
        self.loader = loader
        self.jobs = dict(jobs or {})
        self.tasks = set(tasks)
        self.staff_rows = dict(staff or {})
        self.schedules = list(schedules)
        self.ids = {}

    def job_header(self, job_id):
        return self.jobs.get(job_id)

    def task_exists(self, job_id, task_id):
        return (job_id, task_id) in self.tasks

    def staff(self, staff_id):
        return self.staff_rows.get(staff_id)

    def schedule_for(self, day):
        for sched_id, start, end in self.schedules:
            if start <= day <= end:
                return sched_id
        return None

    def exists(self, table, key):
        return any(all(r.get(k) == v for k, v in key.items()) for r in self.loader.tables.get(table, []))

    def next_id(self, table, column):
        value = self.ids.get((table, column), 100) + 1
        self.ids[(table, column)] = value
        return value


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.put = []
        self.closed_all = False

    def getconn(self):
        return self.conn

    def putconn(self, conn, close=False):
        self.put.append((conn, close))

    def closeall(self):
        self.closed_all = True


class FakeConnectionManager:
    def __init__(self, conns, open_error=None):
        self.conns = conns
        self.open_error = open_error
        self.opened = False
        self.closed = False

    def open(self, stores=None):
        if self.open_error:
            raise self.open_error
        self.opened = True
        return self

    def close(self):
        self.closed = True

    @contextmanager
    def acquire(self, store):
        yield self.conns[store]
