from __future__ import annotations

import logging
import re
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

log = logging.getLogger(__name__)

# Strip Unicode control characters that could confuse display:
# - Bidirectional overrides (U+202A-202E, U+2066-2069) reverse text rendering
# - Zero-width chars (U+200B-200F, U+FEFF) can hide content
# - Other C0/C1 controls (except tab, newline, carriage return)
_CONTROL_CHAR_RE = re.compile(
    r"[\u200b-\u200f\u202a-\u202e\u2060-\u2069\ufeff\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]"
)
_WHITESPACE_RUN_RE = re.compile(r"[ \t]+")
_HTML_TAG_RE = re.compile(r"<[^>]+>")


def sanitize_text(text: str) -> str:
    """Normalize Unicode and strip dangerous control characters."""
    text = unicodedata.normalize("NFC", text)
    return _CONTROL_CHAR_RE.sub("", text)


def condense_whitespace(text: str) -> str:
    """Collapse runs of spaces/tabs while keeping paragraph breaks."""
    lines = [_WHITESPACE_RUN_RE.sub(" ", line).strip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def strip_html(text: str) -> str:
    return _HTML_TAG_RE.sub("", text)


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple, set)):
        return [v for v in value if isinstance(v, str) and v]
    return []


class FetchPhase(Enum):
    IDLE = "idle"
    GATHERING = "gathering"
    SUMMARIZING = "summarizing"
    SYNTHESIZING = "synthesizing"

    @property
    def ordinal(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = [FetchPhase.IDLE, FetchPhase.GATHERING, FetchPhase.SUMMARIZING, FetchPhase.SYNTHESIZING]


class Reaction(Enum):
    NONE = "none"
    LIKE = "like"
    DISLIKE = "dislike"


# Word counts the summarize endpoint accepts
WORD_COUNTS = (200, 1000, 2000)


@dataclass(frozen=True, slots=True)
class Article:
    id: str
    title: str
    url: str
    source: str
    summary_text: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Article:
        """Decode an API article, filling missing fields the way the server omits them."""
        return cls(
            id=_str_or_none(data.get("id")) or str(uuid.uuid4()),
            title=condense_whitespace(sanitize_text(data.get("title") or "Untitled")),
            url=data.get("url") or "",
            source=data.get("source") or "",
            summary_text=condense_whitespace(strip_html(sanitize_text(data.get("summary") or ""))),
        )


@dataclass(frozen=True, slots=True)
class TopicSection:
    topic: str
    summary_text: str = ""
    articles: tuple[Article, ...] = ()
    audio_ref: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TopicSection:
        raw_articles = data.get("articles")
        articles = tuple(
            Article.from_dict(a) for a in raw_articles if isinstance(a, dict)
        ) if isinstance(raw_articles, list) else ()
        return cls(
            topic=str(data.get("topic") or "general"),
            summary_text=condense_whitespace(sanitize_text(data.get("summary") or "")),
            articles=articles,
            audio_ref=_str_or_none(data.get("audioUrl")),
        )


@dataclass(frozen=True, slots=True)
class Session:
    """One successful fetch. Published once, never mutated afterwards."""
    id: str
    summary_text: str
    sections: tuple[TopicSection, ...] = ()
    articles: tuple[Article, ...] = ()
    audio_ref: str | None = None
    title: str = "Summary"
    topics: frozenset[str] = frozenset()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def section_for(self, topic: str) -> TopicSection | None:
        for section in self.sections:
            if section.topic == topic:
                return section
        return None

    def index_of(self, topic: str) -> int | None:
        for i, section in enumerate(self.sections):
            if section.topic == topic:
                return i
        return None


@dataclass(slots=True)
class FetchPreferences:
    word_count: int = 200
    good_news_only: bool = False
    country: str = "us"
    excluded_sources: list[str] = field(default_factory=list)
    voice: str = "Alloy"
    playback_rate: float = 1.0

    def __post_init__(self) -> None:
        if self.word_count not in WORD_COUNTS:
            # Snap to the nearest supported length
            self.word_count = min(WORD_COUNTS, key=lambda wc: abs(wc - self.word_count))
        self.playback_rate = max(0.5, min(2.0, float(self.playback_rate)))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FetchPreferences:
        return cls(
            word_count=int(data.get("word_count", 200)),
            good_news_only=bool(data.get("good_news_only", False)),
            country=str(data.get("country", "us")),
            excluded_sources=_str_list(data.get("excluded_sources")),
            voice=str(data.get("voice", "Alloy")),
            playback_rate=float(data.get("playback_rate", 1.0)),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "wordCount": self.word_count,
            "goodNewsOnly": self.good_news_only,
            "country": self.country,
            "excludedSources": list(self.excluded_sources),
            "voice": self.voice,
        }


# ──────────────────────────────────────────────────────────────────────
# Feedback
# ──────────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class FeedbackEntry:
    reaction: Reaction = Reaction.NONE
    comment: str | None = None
    submitted: bool = False
    # Transient; never written to or read from storage
    submitting: bool = False


@dataclass(slots=True)
class FeedbackState:
    """All feedback for one session, keyed by topic."""
    session_id: str
    entries: dict[str, FeedbackEntry] = field(default_factory=dict)
    expanded_topic: str | None = None

    def entry(self, topic: str) -> FeedbackEntry:
        if topic not in self.entries:
            self.entries[topic] = FeedbackEntry()
        return self.entries[topic]

    @property
    def submitted_topics(self) -> set[str]:
        return {t for t, e in self.entries.items() if e.submitted}

    def to_blob(self) -> dict[str, Any]:
        return {
            "topicFeedback": {
                t: e.reaction.value for t, e in self.entries.items() if e.reaction is not Reaction.NONE
            },
            "expandedTopic": self.expanded_topic,
            "topicComments": {t: e.comment for t, e in self.entries.items() if e.comment},
            "submittedTopics": sorted(self.submitted_topics),
        }

    @classmethod
    def from_blob(cls, session_id: str, blob: dict[str, Any] | None) -> FeedbackState:
        state = cls(session_id=session_id)
        if not isinstance(blob, dict):
            return state
        reactions = blob.get("topicFeedback")
        if isinstance(reactions, dict):
            for topic, value in reactions.items():
                try:
                    state.entry(topic).reaction = Reaction(value)
                except ValueError:
                    log.warning("Ignoring unknown stored reaction %r for topic %s", value, topic)
        comments = blob.get("topicComments")
        if isinstance(comments, dict):
            for topic, comment in comments.items():
                if isinstance(comment, str) and comment:
                    state.entry(topic).comment = comment
        for topic in _str_list(blob.get("submittedTopics")):
            state.entry(topic).submitted = True
        expanded = blob.get("expandedTopic")
        if isinstance(expanded, str) and not state.entry(expanded).submitted:
            state.expanded_topic = expanded
        return state


# ──────────────────────────────────────────────────────────────────────
# Scheduled summaries
# ──────────────────────────────────────────────────────────────────────

DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_time_of_day(value: str) -> int | None:
    """Return minutes since midnight for an ``HH:MM`` string, or None."""
    m = _TIME_RE.match(value.strip()) if isinstance(value, str) else None
    if not m:
        return None
    return int(m.group(1)) * 60 + int(m.group(2))


def normalize_day(value: str) -> str | None:
    """Canonical day name for "monday", "Mon", "thurs" and the like, or None."""
    key = value.strip().lower() if isinstance(value, str) else ""
    if len(key) < 3:
        return None
    for name in DAY_NAMES:
        if name.lower().startswith(key):
            return name
    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class ScheduleDefinition:
    id: str
    name: str = "Daily Fetch"
    time: str = "08:00"
    topics: list[str] = field(default_factory=list)
    custom_topics: list[str] = field(default_factory=list)
    days_of_week: set[str] = field(default_factory=set)
    enabled: bool = False
    last_run_at: datetime | None = None
    word_count: int = 200

    @property
    def minute_of_day(self) -> int | None:
        return parse_time_of_day(self.time)

    def all_topics(self) -> set[str]:
        return set(self.topics) | set(self.custom_topics)

    def runs_on(self, day_name: str) -> bool:
        return not self.days_of_week or day_name in self.days_of_week

    @classmethod
    def from_dict(cls, data: Any) -> ScheduleDefinition | None:
        """Decode a stored schedule, defaulting every optional field.

        Records written by older backends use ``isEnabled``/``days``/``lastRun``;
        newer ones may use ``enabled``/``daysOfWeek``/``lastRunAt``. Returns None
        only when the record has no usable id or time.
        """
        if not isinstance(data, dict):
            return None
        sid = data.get("id") or data.get("_id")
        if sid is None or str(sid).strip() == "":
            return None
        time_str = str(data.get("time") or "08:00")
        if parse_time_of_day(time_str) is None:
            log.warning("Skipping schedule %s with unparseable time %r", sid, time_str)
            return None
        raw_days = _str_list(data.get("daysOfWeek", data.get("days")))
        days = {d for d in map(normalize_day, raw_days) if d}
        if raw_days and not days:
            # An empty set would mean every day
            log.warning("Skipping schedule %s with unrecognized days %r", sid, raw_days)
            return None
        enabled = data.get("enabled", data.get("isEnabled", False))
        try:
            word_count = int(data.get("wordCount", 200))
        except (TypeError, ValueError):
            word_count = 200
        return cls(
            id=str(sid),
            name=str(data.get("name") or "Daily Fetch"),
            time=time_str,
            topics=_str_list(data.get("topics")),
            custom_topics=_str_list(data.get("customTopics")),
            days_of_week=days,
            enabled=bool(enabled),
            last_run_at=_parse_timestamp(data.get("lastRunAt", data.get("lastRun"))),
            word_count=word_count,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "time": self.time,
            "topics": list(self.topics),
            "customTopics": list(self.custom_topics),
            "days": [d for d in DAY_NAMES if d in self.days_of_week],
            "isEnabled": self.enabled,
            "lastRun": self.last_run_at.isoformat() if self.last_run_at else None,
            "wordCount": self.word_count,
        }


# ──────────────────────────────────────────────────────────────────────
# Playback
# ──────────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class PlaybackState:
    current_topic_index: int = 0
    position_seconds: float = 0.0
    duration_seconds: float = 0.0
    is_playing: bool = False
    can_play: bool = False
