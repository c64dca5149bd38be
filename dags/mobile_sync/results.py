from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from mobile_sync.errors import SyncError
from mobile_sync.sqltext import json_sanitize


class TableState(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    TRANSFORMING = "transforming"
    FK_FILTERING = "fk_filtering"
    LOADING = "loading"
    CURSOR_ADVANCE = "cursor_advance"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageName(str, Enum):
    REFRESH = "refresh"
    FORWARD = "forward"
    REVERSE = "reverse"


@dataclass
class TableResult:
    table: str
    mode: str = ""
    state: TableState = TableState.PENDING
    considered: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    filtered: int = 0
    failed: int = 0
    deleted: int = 0
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state in (TableState.DONE, TableState.SKIPPED)

    def warn(self, warning: SyncError) -> None:
        self.warnings.append(str(warning))

    def fail(self, error: BaseException) -> None:
        self.state = TableState.FAILED
        self.error = str(error) or repr(error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "mode": self.mode,
            "state": self.state.value,
            "considered": self.considered,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "filtered": self.filtered,
            "failed": self.failed,
            "deleted": self.deleted,
            "error": self.error,
            "warnings": list(self.warnings),
            "failures": self.failures[:20],
            "elapsed": round(self.elapsed, 3),
        }


@dataclass
class StageResult:
    stage: StageName
    tables: List[TableResult] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None     # exception class name of a stage-level failure
    details: Dict[str, Any] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and all(t.ok for t in self.tables)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "ok": self.ok,
            "error": self.error,
            "error_kind": self.error_kind,
            "details": self.details,
            "tables": [t.to_dict() for t in self.tables],
            "elapsed": round(self.elapsed, 3),
        }


@dataclass
class RunSummary:
    mode: str
    stages: List[StageResult] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None     # run-level fatal (connectivity, config)
    started_at: Optional[str] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and all(s.ok for s in self.stages)

    def stage(self, name: StageName) -> Optional[StageResult]:
        for s in self.stages:
            if s.stage is name:
                return s
        return None

    def failed_tables(self) -> List[TableResult]:
        return [t for s in self.stages for t in s.tables if not t.ok]

    def to_dict(self) -> Dict[str, Any]:
        return json_sanitize({
            "mode": self.mode,
            "ok": self.ok,
            "error": self.error,
            "error_kind": self.error_kind,
            "started_at": self.started_at,
            "elapsed": round(self.elapsed, 3),
            "stages": [s.to_dict() for s in self.stages],
        })
