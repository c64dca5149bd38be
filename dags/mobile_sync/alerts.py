import logging
from typing import List, Optional

import requests

from mobile_sync.results import RunSummary

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # Discord message hard limit (approx)


def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 20] + "\n… (truncated)"


def send_discord_alert(message: str, webhook_url: Optional[str], username: Optional[str] = "Mobile Sync Alert",
                       avatar_url: Optional[str] = None) -> bool:
    """
    Posts a plain Discord webhook message; returns True when Discord accepted it.
    Append '?wait=true' to the webhook URL for a 200 JSON response; otherwise Discord returns 204.
    """
    if not webhook_url:
        log.warning("No Discord webhook URL configured (DISCORD_WEBHOOK), skipping alert.")
        return False

    payload = {
        "content": _truncate_for_discord(message),
        "username": username,
    }
    if avatar_url:
        payload["avatar_url"] = avatar_url

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        log.exception("Exception while sending Discord alert: %s", e)
        return False

    if response.status_code in (200, 204):
        log.info("Discord alert sent successfully (status %s).", response.status_code)
        return True
    log.error("Failed to send Discord alert: status=%s body=%s", response.status_code, response.text)
    return False


def format_run_alert(summary: RunSummary, label: str = "mobile_sync") -> str:
    lines: List[str] = [f"❗️ **{label}** run ({summary.mode}) finished with problems"]
    if summary.error:
        lines.append(f"- Aborted: {summary.error}")
    for stage in summary.stages:
        if stage.error:
            lines.append(f"- Stage `{stage.stage.value}` failed: {stage.error}")
    for t in summary.failed_tables():
        lines.append(f"- Table `{t.table}` {t.state.value}: {t.error or 'see logs'}")
    rejected = [
        t for s in summary.stages for t in s.tables
        if t.ok and (t.failed or t.filtered)
    ]
    for t in rejected:
        lines.append(f"- Table `{t.table}`: {t.failed} failed, {t.filtered} filtered of {t.considered}")
    return "\n".join(lines)
