from mobile_sync.config import SyncSettings, load_settings
from mobile_sync.orchestrator import RunOrchestrator
from mobile_sync.registry import TableSyncRegistry
from mobile_sync.TableSyncSpec import Direction, SyncMode

__all__ = [
    "Direction",
    "RunOrchestrator",
    "SyncMode",
    "SyncSettings",
    "TableSyncRegistry",
    "load_settings",
]
