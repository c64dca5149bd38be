from __future__ import annotations

from typing import Any, Dict

# ============================== Error taxonomy ===============================
#
# Fatal:      ConnectivityError, ConfigError, MirrorRefreshError -> abort the run / stage.
# Non-fatal:  SchemaDriftWarning, ForeignKeyViolation, ConstraintViolation,
#             TranslationFailure -> recorded on the table result, processing continues.


class SyncError(Exception):
    """Base class; carries a context dict rendered after the message."""

    def __init__(self, message: str, context: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class ConnectivityError(SyncError):
    """A store could not be reached at run start."""

    def __init__(self, store: str, attempts: int, cause: str) -> None:
        super().__init__(
            f"Could not connect to {store} store after {attempts} attempt(s)",
            context={"store": store, "attempts": attempts, "cause": cause},
        )
        self.store = store
        self.attempts = attempts


class ConfigError(SyncError):
    """Registry or settings are unusable (cycle, unresolved reference, duplicate target...)."""


class MirrorRefreshError(SyncError):
    """The desktop mirror-refresh function is missing or failed."""


class SchemaDriftWarning(SyncError):
    """A declared column or timestamp column is absent at runtime; the table degrades safely."""

    def __init__(self, table: str, detail: str, **context: Any) -> None:
        super().__init__(f"{table}: {detail}", context=context)
        self.table = table
        self.detail = detail


class ForeignKeyViolation(SyncError):
    def __init__(self, table: str, column: str, value: Any, referenced_table: str) -> None:
        super().__init__(
            f"Invalid {column}={value} (no matching {referenced_table})",
            context={"table": table},
        )
        self.table = table
        self.column = column
        self.value = value
        self.referenced_table = referenced_table


class ConstraintViolation(SyncError):
    """The destination rejected one row; key identifies it for triage."""

    def __init__(self, table: str, key: Dict[str, Any], cause: str) -> None:
        super().__init__(f"{table}: row rejected by destination", context={"key": key, "cause": cause})
        self.table = table
        self.key = key
        self.cause = cause


class TranslationFailure(SyncError):
    """A mobile-origin row cannot be mapped onto desktop identifiers."""

    def __init__(self, table: str, row_key: Dict[str, Any], lookup: str, detail: str) -> None:
        super().__init__(f"{table}: {detail}", context={"row": row_key, "lookup": lookup})
        self.table = table
        self.row_key = row_key
        self.lookup = lookup
        self.detail = detail
