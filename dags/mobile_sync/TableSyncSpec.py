from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Tuple

import pendulum

# ============================== Enums ===============================


class Direction(str, Enum):
    FORWARD = "forward"    # desktop mirror -> cloud
    REVERSE = "reverse"    # cloud (mobile-origin) -> desktop operational
    BOTH = "both"

    def includes(self, other: "Direction") -> bool:
        return self is other or self is Direction.BOTH


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class OnMissing(str, Enum):
    FILTER = "filter"      # drop the row, count it
    NULLIFY = "nullify"    # null the column if nullable, else filter
    IGNORE = "ignore"      # destination constraint relaxed; load unchanged


class SourceTag(str, Enum):
    DESKTOP = "D"
    MOBILE = "M"


SOURCE_COLUMN = "source"
EPOCH: datetime = pendulum.datetime(1970, 1, 1, tz="UTC")

# ============================== Config model ===============================


@dataclass(frozen=True)
class ForeignKeyDep:
    column: str
    referenced_table: str
    referenced_column: str
    on_missing: OnMissing = OnMissing.FILTER


@dataclass(frozen=True)
class ColumnLookup:
    from_table: str        # cloud table, already synced earlier in load order
    match_on: str          # column present on both the row and from_table
    select_column: str


@dataclass(frozen=True)
class TableSyncSpec:
    source_table: str
    target_table: str
    key_columns: Tuple[str, ...] = ()
    column_skip_list: Tuple[str, ...] = ()
    column_rename_map: Mapping[str, str] = field(default_factory=dict)
    foreign_key_deps: Tuple[ForeignKeyDep, ...] = ()
    supports_incremental: bool = True
    direction: Direction = Direction.FORWARD
    enforce_uniqueness: bool = True     # False -> constraint-free, replace-and-reload
    nullable_columns: Tuple[str, ...] = ()
    column_defaults: Mapping[str, Any] = field(default_factory=dict)
    lookups: Mapping[str, ColumnLookup] = field(default_factory=dict)
    comments: str = ""

    @property
    def dependencies(self) -> Tuple[str, ...]:
        seen: Dict[str, None] = {}
        for dep in self.foreign_key_deps:
            seen.setdefault(dep.referenced_table, None)
        return tuple(seen)


@dataclass(frozen=True)
class SyncCursor:
    table_name: str
    last_sync_timestamp: datetime = EPOCH
    last_sync_record_count: int = 0

    @property
    def is_seeded(self) -> bool:
        return self.last_sync_timestamp > EPOCH


# Transformed record ready for load: destination column -> value.
# Every row of one load batch carries the same keys.
StagedRow = Dict[str, Any]
