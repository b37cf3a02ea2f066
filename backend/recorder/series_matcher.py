"""
Series Matcher.

Decides which entries of a fresh EPG batch are new episodes of a series rule.

Two signals are used, in priority order:
1. Time pattern - the rule's most recent past recordings define a canonical
   time of day; any future entry airing within the tolerance of it matches,
   whatever its title.
2. Title - the normalized series name is compared with the normalized program
   title using the rule's match mode.

The noise-stripping and rerun heuristics are ordered rule tables so they can
be extended without touching the matching control flow.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from recorder.entities import (
    EpgEntry,
    RecordingStatus,
    ScheduledRecording,
    SeriesMatchMode,
    SeriesRecording,
)

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def _char_class(*ranges: tuple[int, int]) -> str:
    """Build a regex character class from inclusive code point ranges."""
    parts = []
    for low, high in ranges:
        parts.append(re.escape(chr(low)) if low == high else f"{re.escape(chr(low))}-{re.escape(chr(high))}")
    return "[" + "".join(parts) + "]"


# Ordered (name, pattern) table applied to titles before comparison.
TITLE_NOISE_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("bracketed_tag", re.compile(
        r"[\[\(\{]\s*(?:NEW|HD|FHD|UHD|SD|4K|8K|LIVE|HEVC|HDR)\s*[\]\)\}]",
        re.IGNORECASE,
    )),
    ("superscript_subscript", re.compile(_char_class((0x00B2, 0x00B3), (0x00B9, 0x00B9), (0x2070, 0x209F)))),
    ("modifier_letters", re.compile(_char_class((0x1D00, 0x1DBF)))),
    ("astral_symbols", re.compile(_char_class((0x10000, 0x10FFFF)))),
    ("misc_symbols", re.compile(_char_class((0x2600, 0x27BF), (0x2B00, 0x2BFF)))),
    ("joiners_and_selectors", re.compile(_char_class((0xFE00, 0xFE0F), (0x200D, 0x200D)))),
]

_WHITESPACE_RE = re.compile(r"\s+")

# Substrings in a title or description that mark a rerun.
RERUN_MARKERS: tuple[str, ...] = ("repeat", "rerun", "encore", "previously aired")

ACTIVE_STATUSES = (RecordingStatus.SCHEDULED, RecordingStatus.RECORDING)


def normalize_title(title: str) -> str:
    """Strip metadata markers and decorative characters, collapse whitespace."""
    if not title:
        return ""
    text = title
    for _name, pattern in TITLE_NOISE_PATTERNS:
        text = pattern.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def minute_of_day(value: datetime) -> float:
    return value.hour * 60 + value.minute + value.second / 60.0


def circular_minute_distance(a: float, b: float) -> float:
    diff = abs(a - b) % MINUTES_PER_DAY
    return min(diff, MINUTES_PER_DAY - diff)


def describe_recurrence(start_times: Sequence[datetime]) -> str:
    """Describe how often episodes air from the average gap between start times."""
    if not start_times:
        return "No episodes"
    if len(start_times) == 1:
        return "One episode"

    ordered = sorted(start_times)
    gaps = [(b - a).total_seconds() for a, b in zip(ordered, ordered[1:])]
    avg_days = sum(gaps) / len(gaps) / 86400

    if avg_days < 0.75:
        return "Multiple daily"
    if avg_days <= 1.5:
        return "Daily"
    if 6 <= avg_days <= 8:
        return "Weekly"
    if 27 <= avg_days <= 32:
        return "Monthly"
    return f"Every {round(avg_days)} days"


@dataclass
class MatcherConfig:
    """Tunable constants for series matching."""
    time_pattern_tolerance_minutes: int = 15
    history_window: int = 3
    upcoming_window: int = 5
    rerun_markers: tuple[str, ...] = RERUN_MARKERS


@dataclass
class MatchResult:
    """Outcome of matching one EPG batch against one series rule."""
    new_recordings: list[ScheduledRecording] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)  # (title, reason)
    matched_by: dict[str, str] = field(default_factory=dict)  # recording id -> "time_pattern" | "title"
    time_pattern: Optional[float] = None


class SeriesMatcher:
    """Matches EPG entries against series rules and materializes recordings."""

    def __init__(self, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()
        self._rerun_rules = [
            re.compile(re.escape(marker), re.IGNORECASE)
            for marker in self.config.rerun_markers
            if marker
        ]

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    def derive_time_pattern(
        self,
        history: Iterable[ScheduledRecording],
        now: datetime,
    ) -> Optional[float]:
        """
        Canonical minute of day from the rule's most recent past recordings.

        Returns None when the rule has no past recordings yet.
        """
        past = sorted(
            (r for r in history if r.start_time < now),
            key=lambda r: r.start_time,
            reverse=True,
        )[: self.config.history_window]
        if not past:
            return None

        minutes = [minute_of_day(r.start_time) for r in past]
        anchor = minutes[0]
        # Offsets wrapped into [-720, 720) so 23:55 and 00:05 average to midnight
        offsets = [((m - anchor + MINUTES_PER_DAY / 2) % MINUTES_PER_DAY) - MINUTES_PER_DAY / 2 for m in minutes]
        return (anchor + sum(offsets) / len(offsets)) % MINUTES_PER_DAY

    def matches_time_pattern(self, start_time: datetime, pattern: Optional[float]) -> bool:
        if pattern is None:
            return False
        distance = circular_minute_distance(minute_of_day(start_time), pattern)
        return distance <= self.config.time_pattern_tolerance_minutes

    def title_matches(self, rule: SeriesRecording, title: str) -> bool:
        name = normalize_title(rule.series_name).casefold()
        candidate = normalize_title(title).casefold()
        if not name or not candidate:
            return False
        if rule.match_mode == SeriesMatchMode.CONTAINS:
            return name in candidate
        if rule.match_mode == SeriesMatchMode.STARTS_WITH:
            return candidate.startswith(name)
        return candidate == name

    def is_rerun(self, entry: EpgEntry) -> bool:
        text = f"{entry.title or ''}\n{entry.description or ''}"
        return any(rule.search(text) for rule in self._rerun_rules)

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    def match(
        self,
        rule: SeriesRecording,
        entries: Iterable[EpgEntry],
        history: Sequence[ScheduledRecording],
        now: datetime,
    ) -> MatchResult:
        """
        Match a batch of EPG entries for the rule's channel.

        Mutates the rule: accepted episode titles join the dedup set and
        ``last_checked_utc`` is set to ``now``.

        Args:
            rule: The series rule.
            entries: Fresh EPG entries for the rule's channel.
            history: All recordings owned by the rule, any status.
            now: Current UTC time.

        Returns:
            MatchResult with the recordings to schedule.
        """
        result = MatchResult()
        result.time_pattern = self.derive_time_pattern(history, now)
        active_keys = {
            (r.start_time, r.title) for r in history if r.status in ACTIVE_STATUSES
        }

        for entry in sorted(entries, key=lambda e: e.start_time):
            if self.matches_time_pattern(entry.start_time, result.time_pattern):
                matched_by = "time_pattern"
            elif self.title_matches(rule, entry.title):
                matched_by = "title"
            else:
                continue

            if entry.start_time <= now:
                result.skipped.append((entry.title, "in the past"))
                continue
            if entry.end_time <= entry.start_time:
                result.skipped.append((entry.title, "invalid time window"))
                continue
            if rule.is_already_recorded(entry.title):
                result.skipped.append((entry.title, "already recorded"))
                continue
            if (entry.start_time, entry.title) in active_keys:
                result.skipped.append((entry.title, "already scheduled"))
                continue
            if rule.only_new_episodes and self.is_rerun(entry):
                result.skipped.append((entry.title, "rerun"))
                continue

            recording = ScheduledRecording(
                title=entry.title,
                description=entry.description or "",
                channel_id=rule.channel_id,
                channel_name=rule.channel_name,
                stream_url=rule.stream_url,
                start_time=entry.start_time,
                end_time=entry.end_time,
                pre_buffer_minutes=rule.pre_buffer_minutes,
                post_buffer_minutes=rule.post_buffer_minutes,
                is_epg_based=True,
                epg_program_id=entry.program_id,
                series_id=rule.id,
                is_series_recording=True,
                recorder_args=rule.custom_recorder_args,
                created_at=now,
            )
            rule.mark_as_recorded(entry.title, now)
            active_keys.add((entry.start_time, entry.title))
            result.new_recordings.append(recording)
            result.matched_by[recording.id] = matched_by
            logger.debug(
                "[SERIES] '%s' matched '%s' at %s via %s",
                rule.series_name, entry.title, entry.start_time, matched_by,
            )

        rule.last_checked_utc = now
        return result

    def update_projection(
        self,
        rule: SeriesRecording,
        recordings: Iterable[ScheduledRecording],
        now: datetime,
    ) -> None:
        """Recompute the rule's next recording and recurrence pattern."""
        upcoming = sorted(
            (
                r for r in recordings
                if r.series_id == rule.id
                and r.status == RecordingStatus.SCHEDULED
                and r.start_time > now
            ),
            key=lambda r: r.start_time,
        )[: self.config.upcoming_window]

        if upcoming:
            rule.next_recording_time = upcoming[0].start_time
            rule.next_recording_title = upcoming[0].title
        else:
            rule.next_recording_time = None
            rule.next_recording_title = None
        rule.recurrence_pattern = describe_recurrence([r.start_time for r in upcoming])
