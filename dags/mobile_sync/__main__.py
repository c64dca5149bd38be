from __future__ import annotations

import logging
import os
import sys

from mobile_sync.alerts import format_run_alert, send_discord_alert
from mobile_sync.config import configure_logging, load_settings
from mobile_sync.errors import ConfigError
from mobile_sync.orchestrator import EXIT_CONFIG, EXIT_OK, RunOrchestrator
from mobile_sync.TableSyncSpec import SyncMode

LOG = logging.getLogger("mobile_sync")


def main() -> int:
    """
    Standalone run outside Airflow (service wrappers, cron).
    Mode comes from SYNC_MODE (incremental | full); the process exit status is the run's exit code.
    """
    try:
        settings = load_settings()
        configure_logging(settings.log_level)
        mode = SyncMode(os.environ.get("SYNC_MODE", SyncMode.INCREMENTAL.value).strip().lower())
    except (ConfigError, ValueError) as e:
        configure_logging()
        LOG.error("Invalid configuration: %s", e)
        return EXIT_CONFIG

    summary = RunOrchestrator(settings).run(mode)
    code = RunOrchestrator.exit_code(summary)
    if code != EXIT_OK:
        send_discord_alert(format_run_alert(summary), settings.discord_webhook)
    return code


if __name__ == "__main__":
    sys.exit(main())
