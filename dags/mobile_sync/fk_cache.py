from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from mobile_sync.errors import ForeignKeyViolation
from mobile_sync.registry import TableSyncRegistry
from mobile_sync.sqltext import fq_table, qi
from mobile_sync.TableSyncSpec import Direction, OnMissing, StagedRow, TableSyncSpec

LOG = logging.getLogger(__name__)


def normalize_key(value: Any) -> str:
    """Decimal('12.0') / 12 / '12' compare equal; non-integral values keep their text."""
    if isinstance(value, Decimal) and value == value.to_integral_value():
        value = int(value)
    elif isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


class ForeignKeyCache:
    """
    Valid referent keys, read once from the destination store before loading.
    • preload() issues one SELECT DISTINCT per (table, column) referent.
    • The snapshot is never refreshed mid-run; a row whose parent is only
      written later in the same run is filtered now and loads next run.
    """

    def __init__(
        self,
        conn,
        registry: TableSyncRegistry,
        schema: str = "public",
        direction: Direction = Direction.FORWARD,
        logger: Optional[logging.Logger] = None,
    ):
        self.conn = conn
        self.registry = registry
        self.schema = schema
        self.direction = direction
        self.log = logger or LOG
        self._keys: Dict[Tuple[str, str], FrozenSet[str]] = {}

    def preload(self, referents: Optional[Iterable[Tuple[str, str]]] = None) -> "ForeignKeyCache":
        pairs = list(referents) if referents is not None else self.registry.referenced_keys(self.direction)
        t0 = time.perf_counter()
        with self.conn.cursor() as c:
            for table, column in pairs:
                c.execute(f"SELECT DISTINCT {qi(column)} FROM {fq_table(self.schema, table)}")
                keys: Set[str] = {normalize_key(r[0]) for r in c.fetchall() if r[0] is not None}
                self._keys[(table, column)] = frozenset(keys)
                self.log.info("FK cache: %s.%s -> %d key(s)", table, column, len(keys))
        self.conn.commit()
        self.log.info("FK cache preloaded %d referent(s) (%.3fs)", len(pairs), time.perf_counter() - t0)
        return self

    def is_valid(self, table: str, value: Any, column: Optional[str] = None) -> bool:
        if value is None:
            return True
        if column is None:
            matches = [keys for (t, _), keys in self._keys.items() if t == table]
            if not matches:
                return False
            return any(normalize_key(value) in keys for keys in matches)
        return normalize_key(value) in self._keys.get((table, column), frozenset())

    def check(
        self, spec: TableSyncSpec, row: StagedRow, nullable: Iterable[str] = ()
    ) -> Tuple[Optional[StagedRow], List[ForeignKeyViolation]]:
        """
        Apply every dependency policy of spec to row.
        Returns (row or None when filtered, violations seen). A nullified row is
        returned as a copy with the offending column set to None.
        """
        nullable_set = set(spec.nullable_columns) | set(nullable)
        out = row
        violations: List[ForeignKeyViolation] = []
        for dep in spec.foreign_key_deps:
            if dep.on_missing is OnMissing.IGNORE or dep.column not in out:
                continue
            value = out[dep.column]
            if self.is_valid(dep.referenced_table, value, dep.referenced_column):
                continue
            violations.append(ForeignKeyViolation(spec.target_table, dep.column, value, dep.referenced_table))
            if dep.on_missing is OnMissing.NULLIFY and dep.column in nullable_set:
                if out is row:
                    out = dict(row)
                out[dep.column] = None
                continue
            return None, violations
        return out, violations
