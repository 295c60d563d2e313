"""FetchNews client core.

The four coordinators (fetch, playback, feedback, schedule) share one
current session and are wired together by ``fetchnews.orchestration.client``.
"""
from __future__ import annotations

__version__ = "0.1.0"
