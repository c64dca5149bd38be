from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from mobile_sync.errors import ConfigError
from mobile_sync.TableSyncSpec import (
    ColumnLookup,
    Direction,
    ForeignKeyDep,
    OnMissing,
    TableSyncSpec,
)

LOG = logging.getLogger(__name__)

# ============================== Default registry ===============================
#
# Forward: desktop mirror tables (refreshed by sync_views_to_tables()) -> cloud tables.
# Reverse: mobile-originable cloud tables -> desktop operational tables.
# FK policies mirror what the cloud schema still enforces; "ignore" marks a
# destination constraint that was dropped to match desktop laxity.

_ORG = ForeignKeyDep("org_id", "orgmaster", "org_id")
_LOC = ForeignKeyDep("loc_id", "locmaster", "loc_id")
_STAFF = ForeignKeyDep("staff_id", "mbstaff", "staff_id")
_JOB = ForeignKeyDep("job_id", "jobshead", "job_id")

DEFAULT_SPECS: Tuple[TableSyncSpec, ...] = (
    # ---- masters (small, always reloaded) ----
    TableSyncSpec("orgmaster", "orgmaster", key_columns=("org_id",), supports_incremental=False),
    TableSyncSpec("locmaster", "locmaster", key_columns=("loc_id",), foreign_key_deps=(_ORG,),
                  supports_incremental=False),
    TableSyncSpec("conmaster", "conmaster", key_columns=("con_id",), foreign_key_deps=(_ORG, _LOC),
                  supports_incremental=False),
    TableSyncSpec(
        "climaster", "climaster", key_columns=("client_id",),
        foreign_key_deps=(_ORG, _LOC, ForeignKeyDep("con_id", "conmaster", "con_id", OnMissing.IGNORE)),
        supports_incremental=False,
        comments="con_id allows 0/NULL on desktop; cloud FK dropped",
    ),
    TableSyncSpec("cliunimaster", "cliunimaster", key_columns=("cliu_id",), supports_incremental=False),
    TableSyncSpec("taskmaster", "taskmaster", key_columns=("task_id",), supports_incremental=False),
    TableSyncSpec("jobmaster", "jobmaster", key_columns=("job_id",), supports_incremental=False),
    TableSyncSpec(
        "mbstaff", "mbstaff", key_columns=("staff_id",),
        foreign_key_deps=(_ORG, _LOC, ForeignKeyDep("con_id", "conmaster", "con_id", OnMissing.IGNORE)),
        supports_incremental=False,
    ),
    # ---- transactional ----
    TableSyncSpec(
        "jobshead", "jobshead", key_columns=("job_id",),
        column_skip_list=("jctincharge", "jt_id", "tc_id"),
        foreign_key_deps=(_ORG, _LOC, ForeignKeyDep("client_id", "climaster", "client_id", OnMissing.IGNORE)),
        enforce_uniqueness=False,
        comments="desktop repeats job_id per staff/org assignment; cloud PK dropped",
    ),
    TableSyncSpec(
        "jobtasks", "jobtasks", key_columns=("job_id", "task_id", "staff_id"),
        column_skip_list=("jt_id",),
        foreign_key_deps=(_JOB, _STAFF, ForeignKeyDep("task_id", "taskmaster", "task_id", OnMissing.IGNORE)),
        enforce_uniqueness=False,
        nullable_columns=("client_id",),
        lookups={"client_id": ColumnLookup("jobshead", "job_id", "client_id")},
        comments="jt_id is generated by the cloud store",
    ),
    TableSyncSpec(
        "taskchecklist", "taskchecklist", key_columns=("job_id",),
        column_skip_list=("tc_id",),
        foreign_key_deps=(ForeignKeyDep("job_id", "jobshead", "job_id", OnMissing.IGNORE),),
        enforce_uniqueness=False,
    ),
    TableSyncSpec(
        "workdiary", "workdiary", key_columns=("staff_id", "job_id", "date"),
        column_skip_list=("wd_id",),
        foreign_key_deps=(_JOB, _STAFF),
        enforce_uniqueness=False,
        nullable_columns=("task_id", "client_id"),
    ),
    TableSyncSpec(
        "mbreminder", "reminder", key_columns=("rem_id",),
        foreign_key_deps=(_STAFF, ForeignKeyDep("client_id", "climaster", "client_id", OnMissing.IGNORE)),
    ),
    TableSyncSpec(
        "mbremdetail", "remdetail", key_columns=("remd_id",),
        foreign_key_deps=(ForeignKeyDep("staff_id", "mbstaff", "staff_id", OnMissing.IGNORE),),
        enforce_uniqueness=False,
        comments="remd_id does not exist on the cloud side",
    ),
    TableSyncSpec("learequest", "learequest", key_columns=("learequest_id",)),
    # ---- reverse (mobile-originable) ----
    TableSyncSpec(
        "workdiary", "daily_work",
        key_columns=("org_id", "job_id", "task_id", "sporgid", "work_dt", "manhrs_from"),
        direction=Direction.REVERSE,
        column_defaults={"jobdet_slno": 1, "work_det": "Mobile entry"},
        comments="time-log entries keyed on the desktop by job/task/staff/date",
    ),
    TableSyncSpec(
        "learequest", "atleaverequest",
        key_columns=("staff_id", "leareqfrom", "leareqto"),
        direction=Direction.REVERSE,
        column_defaults={"leareqreason": "Mobile leave request", "leareqapp": "P"},
    ),
)

# ============================== Registry ===============================


class TableSyncRegistry:
    """
    Static, validated view over the table specs.
    • Built once per run; raises ConfigError before any I/O when the graph is unusable.
    • load_order(direction) is a stable topological sort: referenced masters first,
      ties broken by registration order.
    """

    def __init__(self, specs: Iterable[TableSyncSpec] = DEFAULT_SPECS):
        self._specs: Tuple[TableSyncSpec, ...] = tuple(specs)
        self._validate()
        self._orders: Dict[Direction, List[TableSyncSpec]] = {
            d: self._topological_order(d) for d in (Direction.FORWARD, Direction.REVERSE)
        }
        LOG.info(
            "Registry ready: forward=%s reverse=%s",
            [s.target_table for s in self._orders[Direction.FORWARD]],
            [s.target_table for s in self._orders[Direction.REVERSE]],
        )

    @property
    def specs(self) -> Tuple[TableSyncSpec, ...]:
        return self._specs

    def for_direction(self, direction: Direction) -> List[TableSyncSpec]:
        return [s for s in self._specs if s.direction.includes(direction)]

    def resolve(self, table_name: str, direction: Optional[Direction] = None) -> TableSyncSpec:
        candidates = self.for_direction(direction) if direction else list(self._specs)
        for spec in candidates:
            if spec.target_table == table_name:
                return spec
        for spec in candidates:
            if spec.source_table == table_name:
                return spec
        raise ConfigError(f"No table sync spec registered for {table_name!r}",
                          context={"direction": direction.value if direction else None})

    def load_order(self, direction: Direction) -> List[TableSyncSpec]:
        if direction is Direction.BOTH:
            raise ConfigError("load_order needs a concrete direction (forward or reverse)")
        return list(self._orders[direction])

    def referenced_keys(self, direction: Optional[Direction] = None) -> List[Tuple[str, str]]:
        specs = self.for_direction(direction) if direction else self._specs
        out: Dict[Tuple[str, str], None] = {}
        for spec in specs:
            for dep in spec.foreign_key_deps:
                if dep.on_missing is not OnMissing.IGNORE:
                    out.setdefault((dep.referenced_table, dep.referenced_column), None)
        return list(out)

    # ------------------------ Validation ------------------------

    def _validate(self) -> None:
        targets: Dict[Direction, Set[str]] = {}
        for direction in (Direction.FORWARD, Direction.REVERSE):
            seen: Set[str] = set()
            for spec in self.for_direction(direction):
                if spec.target_table in seen:
                    raise ConfigError(
                        f"Target table {spec.target_table!r} registered twice",
                        context={"direction": direction.value},
                    )
                seen.add(spec.target_table)
            targets[direction] = seen

        for spec in self._specs:
            if spec.enforce_uniqueness and not spec.key_columns:
                raise ConfigError(f"{spec.target_table}: enforce_uniqueness requires key_columns")
            for dep in spec.foreign_key_deps:
                for direction, known in targets.items():
                    if spec.direction.includes(direction) and dep.referenced_table not in known:
                        raise ConfigError(
                            f"{spec.target_table}.{dep.column} references table {dep.referenced_table!r} "
                            f"not registered for {direction.value} sync"
                        )
                if dep.referenced_table == spec.target_table:
                    raise ConfigError(f"{spec.target_table} depends on itself via {dep.column}")

    def _topological_order(self, direction: Direction) -> List[TableSyncSpec]:
        specs = self.for_direction(direction)
        in_direction = {s.target_table for s in specs}
        pending = list(specs)
        emitted: Set[str] = set()
        ordered: List[TableSyncSpec] = []

        while pending:
            for i, spec in enumerate(pending):
                deps = [d for d in spec.dependencies if d in in_direction]
                if all(d in emitted for d in deps):
                    ordered.append(pending.pop(i))
                    emitted.add(spec.target_table)
                    break
            else:
                stuck = sorted(s.target_table for s in pending)
                raise ConfigError(
                    "Foreign-key dependency cycle between tables",
                    context={"direction": direction.value, "tables": stuck},
                )

        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Load order (%s): %s", direction.value, [s.target_table for s in ordered])
        return ordered
