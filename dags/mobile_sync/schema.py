from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from mobile_sync.config import CLOUD, DESKTOP
from mobile_sync.TableSyncSpec import Direction, TableSyncSpec

LOG = logging.getLogger(__name__)

_COLUMNS_SQL = """
    SELECT table_name, column_name, data_type, is_nullable, column_default, character_maximum_length
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = ANY(%s)
    ORDER BY table_name, ordinal_position
"""


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool
    default: Optional[str] = None
    max_length: Optional[int] = None


@dataclass(frozen=True)
class TimestampCapability:
    has_updated_at: bool
    has_created_at: bool

    @property
    def has_either(self) -> bool:
        return self.has_updated_at or self.has_created_at

    @property
    def has_both(self) -> bool:
        return self.has_updated_at and self.has_created_at

    @property
    def columns(self) -> Tuple[str, ...]:
        cols = []
        if self.has_updated_at:
            cols.append("updated_at")
        if self.has_created_at:
            cols.append("created_at")
        return tuple(cols)


class SchemaValidator:
    """
    Live catalog snapshot for both stores, loaded once per sync pass.
    Answers column-existence and timestamp questions from the cache; a table not
    covered by load() is fetched on first use and cached as well.
    """

    def __init__(self, conns: Mapping[str, object], schema: str = "public", logger: Optional[logging.Logger] = None):
        self.conns = dict(conns)
        self.schema = schema
        self.log = logger or LOG
        self._cache: Dict[Tuple[str, str], Dict[str, ColumnInfo]] = {}

    @classmethod
    def for_stores(cls, desktop, cloud, schema: str = "public", **kwargs) -> "SchemaValidator":
        return cls({DESKTOP: desktop, CLOUD: cloud}, schema=schema, **kwargs)

    # ------------------------ Loading ------------------------

    def load(self, specs: Iterable[TableSyncSpec]) -> "SchemaValidator":
        wanted: Dict[str, set] = {DESKTOP: set(), CLOUD: set()}
        for spec in specs:
            if spec.direction.includes(Direction.FORWARD):
                wanted[DESKTOP].add(spec.source_table)
                wanted[CLOUD].add(spec.target_table)
                for lk in spec.lookups.values():
                    wanted[CLOUD].add(lk.from_table)
            if spec.direction.includes(Direction.REVERSE):
                wanted[CLOUD].add(spec.source_table)
                wanted[DESKTOP].add(spec.target_table)
        for store, tables in wanted.items():
            if tables and store in self.conns:
                self._fetch(store, sorted(tables))
        return self

    def _fetch(self, store: str, tables: List[str]) -> None:
        t0 = time.perf_counter()
        conn = self.conns[store]
        with conn.cursor() as c:
            c.execute(_COLUMNS_SQL, (self.schema, list(tables)))
            rows = c.fetchall()
        conn.commit()
        found: Dict[str, Dict[str, ColumnInfo]] = {t: {} for t in tables}
        for table_name, column_name, data_type, is_nullable, default, max_len in rows:
            found.setdefault(table_name, {})[column_name] = ColumnInfo(
                name=column_name,
                data_type=(data_type or "").lower(),
                nullable=(is_nullable == "YES"),
                default=default,
                max_length=int(max_len) if max_len is not None else None,
            )
        for table, cols in found.items():
            self._cache[(store, table)] = cols
            if not cols:
                self.log.warning("Table %s.%s not found on %s store", self.schema, table, store)
        self.log.info("Loaded %s catalog for %d table(s) (%.3fs)", store, len(tables), time.perf_counter() - t0)

    def _columns(self, store: str, table: str) -> Dict[str, ColumnInfo]:
        if (store, table) not in self._cache:
            self._fetch(store, [table])
        return self._cache[(store, table)]

    # ------------------------ Queries ------------------------

    def has_table(self, store: str, table: str) -> bool:
        return bool(self._columns(store, table))

    def live_columns(self, store: str, table: str) -> FrozenSet[str]:
        return frozenset(self._columns(store, table))

    def ordered_columns(self, store: str, table: str) -> List[str]:
        return list(self._columns(store, table))

    def column(self, store: str, table: str, name: str) -> Optional[ColumnInfo]:
        return self._columns(store, table).get(name)

    def is_nullable(self, store: str, table: str, name: str) -> bool:
        info = self.column(store, table, name)
        return bool(info and info.nullable)

    def timestamp_capability(self, table: str, store: str = DESKTOP) -> TimestampCapability:
        cols = self._columns(store, table)
        return TimestampCapability(has_updated_at="updated_at" in cols, has_created_at="created_at" in cols)
