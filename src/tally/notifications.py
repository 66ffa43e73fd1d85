"""ntfy alerts for failed invoice jobs."""

import base64
import logging
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from .config import Config
    from .db import ScheduledJob

logger = logging.getLogger("tally.notifications")


def _send_ntfy(
    config: "Config", message: str,
    title: str | None = None,
    priority: int | None = None,
    tags: str | None = None,
) -> bool:
    """Send a notification via ntfy. Returns True on success."""
    if not config.ntfy.enabled:
        logger.debug("ntfy not enabled, skipping notification")
        return False

    if not config.ntfy.topic:
        logger.warning("No ntfy topic configured")
        return False

    url = f"{config.ntfy.server_url.rstrip('/')}/{config.ntfy.topic}"
    headers = {}
    if config.ntfy.token:
        headers["Authorization"] = f"Bearer {config.ntfy.token}"
    elif config.ntfy.username:
        credentials = base64.b64encode(
            f"{config.ntfy.username}:{config.ntfy.password}".encode()
        ).decode()
        headers["Authorization"] = f"Basic {credentials}"
    if title:
        headers["Title"] = title
    headers["Priority"] = str(priority if priority is not None else config.ntfy.priority)
    if tags:
        headers["Tags"] = tags

    try:
        response = httpx.post(url, content=message, headers=headers, timeout=10)
        response.raise_for_status()
        return True
    except Exception as e:
        logger.error("Failed to send ntfy notification: %s", e)
        return False


def format_failed_jobs(jobs: list["ScheduledJob"], max_attempts: int) -> str:
    lines = []
    for job in jobs:
        exhausted = " (no attempts left)" if job.attempts >= max_attempts else ""
        lines.append(
            f"Job {job.id} (rule {job.rule_id}) attempt {job.attempts}/{max_attempts}"
            f"{exhausted}: {job.error_message or 'unknown error'}"
        )
    return "\n".join(lines)


def notify_failed_jobs(config: "Config", jobs: list["ScheduledJob"]) -> bool:
    """Post a summary of failed jobs. Never raises."""
    if not jobs:
        return False
    message = format_failed_jobs(jobs, config.scheduler.max_attempts)
    sent = _send_ntfy(
        config, message,
        title=f"tally: {len(jobs)} invoice job(s) failed",
        tags="warning",
    )
    if sent:
        logger.info("Sent failed job alert for %d job(s)", len(jobs))
    return sent
