from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv
from psycopg2.extensions import make_dsn

from mobile_sync.errors import ConfigError

LOG = logging.getLogger(__name__)

DESKTOP = "desktop"
CLOUD = "cloud"

# ============================== Settings model ===============================


@dataclass(frozen=True)
class StoreSettings:
    host: str = "localhost"
    port: int = 5432
    dbname: str = "postgres"
    user: str = "postgres"
    password: str | None = None
    sslmode: str | None = None
    connect_timeout: int = 10
    pool_min: int = 1
    pool_max: int = 4
    uri: str | None = None              # wins over the discrete fields (Airflow connection URI)

    def dsn(self) -> str:
        if self.uri:
            return self.uri
        params = {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "connect_timeout": self.connect_timeout,
        }
        if self.password:
            params["password"] = self.password
        if self.sslmode:
            params["sslmode"] = self.sslmode
        return make_dsn(**params)


@dataclass(frozen=True)
class SyncSettings:
    desktop: StoreSettings = field(default_factory=StoreSettings)
    cloud: StoreSettings = field(default_factory=StoreSettings)
    schema: str = "public"
    batch_size: int = 1_000
    connect_attempts: int = 3
    connect_backoff: float = 2.0        # seconds; doubled per attempt
    refresh_function: str = "sync_views_to_tables"
    forward_metadata_table: str = "_sync_metadata"
    reverse_metadata_table: str = "_reverse_sync_metadata"
    discord_webhook: str = ""
    log_level: str = "INFO"

    def store(self, name: str) -> StoreSettings:
        if name == DESKTOP:
            return self.desktop
        if name == CLOUD:
            return self.cloud
        raise ConfigError(f"Unknown store {name!r}")


# ============================== Loading ===============================


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from e


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from e


def _store_from_env(env: Mapping[str, str], prefix: str, default_db: str, default_port: int) -> StoreSettings:
    return StoreSettings(
        host=env.get(f"{prefix}_HOST", "localhost"),
        port=_int(env, f"{prefix}_PORT", default_port),
        dbname=env.get(f"{prefix}_NAME", default_db),
        user=env.get(f"{prefix}_USER", "postgres"),
        password=env.get(f"{prefix}_PASSWORD") or None,
        sslmode=env.get(f"{prefix}_SSLMODE") or None,
        connect_timeout=_int(env, f"{prefix}_CONNECT_TIMEOUT", 10),
        pool_min=_int(env, f"{prefix}_POOL_MIN", 1),
        pool_max=_int(env, f"{prefix}_POOL_MAX", 4),
        uri=env.get(f"{prefix}_URI") or None,
    )


def load_settings(env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> SyncSettings:
    """
    Build SyncSettings from a .env file (python-dotenv) and the process environment.
    Pass env explicitly to bypass both (tests, Airflow-resolved values).
    """
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    settings = SyncSettings(
        desktop=_store_from_env(env, "DESKTOP_DB", "powerca", 5432),
        cloud=_store_from_env(env, "CLOUD_DB", "postgres", 6543),
        schema=env.get("SYNC_SCHEMA", "public"),
        batch_size=_int(env, "SYNC_BATCH_SIZE", 1_000),
        connect_attempts=_int(env, "SYNC_CONNECT_ATTEMPTS", 3),
        connect_backoff=_float(env, "SYNC_CONNECT_BACKOFF", 2.0),
        refresh_function=env.get("SYNC_REFRESH_FUNCTION", "sync_views_to_tables"),
        discord_webhook=env.get("DISCORD_WEBHOOK", ""),
        log_level=env.get("SYNC_LOG_LEVEL", "INFO").upper(),
    )
    if settings.batch_size <= 0:
        raise ConfigError("SYNC_BATCH_SIZE must be positive", context={"value": settings.batch_size})
    if settings.connect_attempts <= 0:
        raise ConfigError("SYNC_CONNECT_ATTEMPTS must be positive", context={"value": settings.connect_attempts})
    LOG.info(
        "Settings loaded: desktop=%s:%s/%s cloud=%s:%s/%s batch_size=%d",
        settings.desktop.host, settings.desktop.port, settings.desktop.dbname,
        settings.cloud.host, settings.cloud.port, settings.cloud.dbname,
        settings.batch_size,
    )
    return settings


def configure_logging(level: str = "INFO") -> None:
    """Standalone runs only; under Airflow the task logger is already configured."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
