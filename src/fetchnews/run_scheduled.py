"""Run any scheduled summaries that are due right now.

Usage:
    python -m fetchnews.run_scheduled

Meant for cron: lists the user's scheduled summaries, performs one due
check in the configured timezone and exits.
"""
from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from fetchnews.logging_config import configure_logging
from fetchnews.models.config import ConfigError, load_client_config
from fetchnews.orchestration.client import NewsClient
from fetchnews.services.audio import SimulatedAudioTransport

log = logging.getLogger("fetchnews.run_scheduled")


async def _run(client: NewsClient) -> list[str]:
    definitions = await client.schedules.refresh()
    enabled = [d for d in definitions if d.enabled]
    log.info("Scheduled summaries: %d known, %d enabled", len(definitions), len(enabled))
    return await client.schedules.check_due()


def main() -> None:
    configure_logging()

    config_dir = Path(__file__).resolve().parents[2] / "config"
    if not config_dir.is_dir():
        config_dir = Path("config")

    try:
        cfg = load_client_config(config_dir)
    except ConfigError as e:
        log.error("Configuration error: %s", e)
        sys.exit(1)

    client = NewsClient.from_config(cfg, SimulatedAudioTransport())
    try:
        fired = asyncio.run(_run(client))
    finally:
        client.close()

    log.info("Scheduled summaries run: %d", len(fired))
    for schedule_id in fired:
        log.info("Ran schedule %s", schedule_id, extra={"schedule_id": schedule_id})


if __name__ == "__main__":
    main()
