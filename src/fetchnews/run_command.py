"""Fetch one summary for the given topics and print it.

Usage:
    python -m fetchnews.run_command tech sports
    FETCHNEWS_WORD_COUNT=1000 python -m fetchnews.run_command science

Reads config/client.json (plus FETCHNEWS_* overrides) and talks to the
configured news API. Audio is loaded through the simulated transport, so
the printed audio URLs are what a player would fetch.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path

from fetchnews.logging_config import configure_logging
from fetchnews.models.config import ConfigError, load_client_config
from fetchnews.models.domain import Session
from fetchnews.orchestration.client import NewsClient
from fetchnews.services.audio import SimulatedAudioTransport

log = logging.getLogger("fetchnews.run_command")


def _config_dir() -> Path:
    # Works from a source checkout and from the repo root
    config_dir = Path(__file__).resolve().parents[2] / "config"
    if not config_dir.is_dir():
        config_dir = Path("config")
    return config_dir


def render_session(session: Session) -> str:
    lines = [f"{session.title} ({session.id})", "", session.summary_text]
    for section in session.sections:
        lines += ["", f"== {section.topic.title()} ==", section.summary_text]
        if section.audio_ref:
            lines.append(f"audio: {section.audio_ref}")
        for article in section.articles:
            lines.append(f"  - {article.title} [{article.source}] {article.url}")
    if session.audio_ref:
        lines += ["", f"audio: {session.audio_ref}"]
    return "\n".join(lines)


async def _run(client: NewsClient, topics: list[str]) -> int:
    for topic in topics:
        client.orchestrator.toggle_topic(topic)
    session = await client.fetch()
    if session is None:
        error = client.orchestrator.last_error
        log.error("Fetch failed: %s", error if error else "rejected")
        if error is not None:
            print(error.user_message(), file=sys.stderr)
        return 1
    print(render_session(session))
    return 0


def main() -> None:
    configure_logging()

    topics = [t.strip() for t in sys.argv[1:] if t.strip()]
    if not topics:
        log.error("No topics provided. Usage: python -m fetchnews.run_command TOPIC [TOPIC ...]")
        sys.exit(1)

    try:
        cfg = load_client_config(_config_dir())
    except ConfigError as e:
        log.error("Configuration error: %s", e)
        sys.exit(1)

    word_count = os.environ.get("FETCHNEWS_WORD_COUNT", "").strip()
    client = NewsClient.from_config(cfg, SimulatedAudioTransport())
    if word_count.isdigit():
        client.orchestrator.set_length(int(word_count))

    try:
        code = asyncio.run(_run(client, topics))
    finally:
        client.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
