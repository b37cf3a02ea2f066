"""
Recording entity model.

Value types for a single scheduled recording and a recurring series rule,
plus the EPG entry tuple consumed from the program guide. Everything here is
pure data and derived predicates; no I/O.

All timestamps are naive UTC datetimes.
"""
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from recorder.errors import InvalidTransitionError, ValidationError

DEFAULT_PRE_BUFFER_MINUTES = 2
DEFAULT_POST_BUFFER_MINUTES = 5
DEFAULT_START_TOLERANCE = timedelta(minutes=2)
DEFAULT_MISSED_GRACE = timedelta(minutes=5)

_INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


class RecordingStatus(str, Enum):
    """Lifecycle status of a scheduled recording."""
    SCHEDULED = "scheduled"
    RECORDING = "recording"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    MISSED = "missed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    RecordingStatus.COMPLETED,
    RecordingStatus.FAILED,
    RecordingStatus.CANCELLED,
    RecordingStatus.MISSED,
})

ALLOWED_TRANSITIONS = {
    RecordingStatus.SCHEDULED: {
        RecordingStatus.RECORDING,
        RecordingStatus.CANCELLED,
        RecordingStatus.MISSED,
    },
    RecordingStatus.RECORDING: {
        RecordingStatus.COMPLETED,
        RecordingStatus.FAILED,
        RecordingStatus.CANCELLED,
    },
}


class SeriesMatchMode(str, Enum):
    """How a series rule compares its name against program titles."""
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    EXACT = "exact"


def new_id() -> str:
    return uuid.uuid4().hex


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def parse_datetime(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).rstrip("Z"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)
    return parsed


def sanitize_filename(name: str, fallback: str = "Recording") -> str:
    """Replace characters that are invalid in file names with underscores."""
    parts = [p for p in _INVALID_FILENAME_CHARS_RE.split(name or "") if p]
    cleaned = "_".join(parts).strip().rstrip(".")
    return cleaned or fallback


@dataclass
class EpgEntry:
    """A single program from the guide for one channel."""
    channel_id: str
    title: str
    start_time: datetime
    end_time: datetime
    description: str = ""
    program_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "channel_id": self.channel_id,
            "title": self.title,
            "start_time": format_datetime(self.start_time),
            "end_time": format_datetime(self.end_time),
            "description": self.description,
            "program_id": self.program_id,
        }


@dataclass
class ScheduledRecording:
    """One concrete recording intent."""
    title: str
    channel_id: str
    start_time: datetime
    end_time: datetime
    channel_name: str = ""
    stream_url: str = ""
    description: str = ""
    pre_buffer_minutes: int = DEFAULT_PRE_BUFFER_MINUTES
    post_buffer_minutes: int = DEFAULT_POST_BUFFER_MINUTES
    output_file_path: str = ""
    is_epg_based: bool = False
    epg_program_id: Optional[str] = None
    series_id: Optional[str] = None
    is_series_recording: bool = False
    recorder_args: Optional[str] = None
    status: RecordingStatus = RecordingStatus.SCHEDULED
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def __post_init__(self):
        if self.start_time >= self.end_time:
            raise ValidationError("Start time must be before end time")
        if self.pre_buffer_minutes < 0 or self.post_buffer_minutes < 0:
            raise ValidationError("Buffer minutes cannot be negative")
        self.status = RecordingStatus(self.status)
        self.channel_id = str(self.channel_id)

    # -------------------------------------------------------------------------
    # Derived values
    # -------------------------------------------------------------------------

    @property
    def adjusted_start(self) -> datetime:
        return self.start_time - timedelta(minutes=self.pre_buffer_minutes)

    @property
    def adjusted_end(self) -> datetime:
        return self.end_time + timedelta(minutes=self.post_buffer_minutes)

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    @property
    def duration_text(self) -> str:
        minutes = int(self.duration.total_seconds() // 60)
        if minutes < 60:
            return f"{minutes}m"
        return f"{minutes // 60}h {minutes % 60}m"

    @property
    def status_text(self) -> str:
        return self.status.value.capitalize()

    @property
    def time_range_text(self) -> str:
        fmt = "%m/%d/%Y %H:%M"
        return f"{self.start_time.strftime(fmt)} - {self.end_time.strftime(fmt)} UTC ({self.duration_text})"

    @property
    def can_cancel(self) -> bool:
        return self.status in (RecordingStatus.SCHEDULED, RecordingStatus.RECORDING)

    @property
    def can_edit(self) -> bool:
        return self.status == RecordingStatus.SCHEDULED

    # -------------------------------------------------------------------------
    # Poll predicates
    # -------------------------------------------------------------------------

    def should_start_now(self, now: datetime, tolerance: timedelta = DEFAULT_START_TOLERANCE) -> bool:
        """True while inside the start window [start - pre, start - pre + tolerance]."""
        adjusted = self.adjusted_start
        return (
            self.status == RecordingStatus.SCHEDULED
            and adjusted <= now <= adjusted + tolerance
        )

    def should_stop_now(self, now: datetime) -> bool:
        return self.status == RecordingStatus.RECORDING and now >= self.adjusted_end

    def is_missed(self, now: datetime, grace: timedelta = DEFAULT_MISSED_GRACE) -> bool:
        return self.status == RecordingStatus.SCHEDULED and now > self.adjusted_start + grace

    def is_overdue(self, now: datetime, overrun_grace: timedelta) -> bool:
        return self.status == RecordingStatus.RECORDING and now > self.adjusted_end + overrun_grace

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def transition(self, new_status: RecordingStatus, error: Optional[str] = None) -> None:
        """Move to ``new_status``, refusing anything the lifecycle does not allow."""
        new_status = RecordingStatus(new_status)
        if new_status not in ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(
                f"Cannot move recording '{self.title}' from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        if error is not None:
            self.error_message = error

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "channel_id": self.channel_id,
            "channel_name": self.channel_name,
            "stream_url": self.stream_url,
            "start_time": format_datetime(self.start_time),
            "end_time": format_datetime(self.end_time),
            "pre_buffer_minutes": self.pre_buffer_minutes,
            "post_buffer_minutes": self.post_buffer_minutes,
            "output_file_path": self.output_file_path,
            "is_epg_based": self.is_epg_based,
            "epg_program_id": self.epg_program_id,
            "series_id": self.series_id,
            "is_series_recording": self.is_series_recording,
            "recorder_args": self.recorder_args,
            "status": self.status.value,
            "created_at": format_datetime(self.created_at),
            "started_at": format_datetime(self.started_at),
            "stopped_at": format_datetime(self.stopped_at),
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduledRecording":
        return cls(
            id=str(data.get("id") or new_id()),
            title=data.get("title", ""),
            description=data.get("description") or "",
            channel_id=str(data.get("channel_id", "")),
            channel_name=data.get("channel_name") or "",
            stream_url=data.get("stream_url") or "",
            start_time=parse_datetime(data["start_time"]),
            end_time=parse_datetime(data["end_time"]),
            pre_buffer_minutes=int(data.get("pre_buffer_minutes", DEFAULT_PRE_BUFFER_MINUTES)),
            post_buffer_minutes=int(data.get("post_buffer_minutes", DEFAULT_POST_BUFFER_MINUTES)),
            output_file_path=data.get("output_file_path") or "",
            is_epg_based=bool(data.get("is_epg_based", False)),
            epg_program_id=data.get("epg_program_id"),
            series_id=data.get("series_id"),
            is_series_recording=bool(data.get("is_series_recording", False)),
            recorder_args=data.get("recorder_args"),
            status=RecordingStatus(data.get("status", RecordingStatus.SCHEDULED.value)),
            created_at=parse_datetime(data.get("created_at")) or datetime.utcnow(),
            started_at=parse_datetime(data.get("started_at")),
            stopped_at=parse_datetime(data.get("stopped_at")),
            error_message=data.get("error_message"),
        )


@dataclass
class SeriesRecording:
    """A standing rule that schedules every future episode of a show on a channel."""
    series_name: str
    channel_id: str
    channel_name: str = ""
    stream_url: str = ""
    match_mode: SeriesMatchMode = SeriesMatchMode.CONTAINS
    only_new_episodes: bool = True
    pre_buffer_minutes: int = DEFAULT_PRE_BUFFER_MINUTES
    post_buffer_minutes: int = DEFAULT_POST_BUFFER_MINUTES
    custom_recorder_args: Optional[str] = None
    output_directory: Optional[str] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_checked_utc: Optional[datetime] = None
    last_recorded_utc: Optional[datetime] = None
    recorded_episode_titles: set[str] = field(default_factory=set)
    next_recording_time: Optional[datetime] = None
    next_recording_title: Optional[str] = None
    recurrence_pattern: str = "Unknown"

    def __post_init__(self):
        if not self.series_name or not self.series_name.strip():
            raise ValidationError("Series name is required")
        self.match_mode = SeriesMatchMode(self.match_mode)
        self.channel_id = str(self.channel_id)
        self.recorded_episode_titles = set(self.recorded_episode_titles)

    @property
    def status_text(self) -> str:
        return "Active" if self.is_active else "Paused"

    def next_recording_display(self, now: Optional[datetime] = None) -> str:
        if self.next_recording_time is None:
            return "No upcoming episodes"
        now = now or datetime.utcnow()
        when = self.next_recording_time
        clock = when.strftime("%H:%M")
        if when.date() == now.date():
            return f"Today at {clock}"
        if when.date() == (now + timedelta(days=1)).date():
            return f"Tomorrow at {clock}"
        if (when - now).total_seconds() < 7 * 86400:
            return f"{when.strftime('%a')} {clock}"
        return f"{when.strftime('%b')} {when.day}, {clock}"

    def is_match(self, program_title: str) -> bool:
        """Raw case-insensitive comparison of a title against the series name."""
        if not program_title or not program_title.strip():
            return False
        title = program_title.casefold()
        name = self.series_name.casefold()
        if self.match_mode == SeriesMatchMode.CONTAINS:
            return name in title
        if self.match_mode == SeriesMatchMode.STARTS_WITH:
            return title.startswith(name)
        return title == name

    def is_already_recorded(self, episode_title: str) -> bool:
        return episode_title in self.recorded_episode_titles

    def mark_as_recorded(self, episode_title: str, when: Optional[datetime] = None) -> None:
        self.recorded_episode_titles.add(episode_title)
        self.last_recorded_utc = when or datetime.utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "series_name": self.series_name,
            "channel_id": self.channel_id,
            "channel_name": self.channel_name,
            "stream_url": self.stream_url,
            "match_mode": self.match_mode.value,
            "only_new_episodes": self.only_new_episodes,
            "pre_buffer_minutes": self.pre_buffer_minutes,
            "post_buffer_minutes": self.post_buffer_minutes,
            "custom_recorder_args": self.custom_recorder_args,
            "output_directory": self.output_directory,
            "is_active": self.is_active,
            "created_at": format_datetime(self.created_at),
            "last_checked_utc": format_datetime(self.last_checked_utc),
            "last_recorded_utc": format_datetime(self.last_recorded_utc),
            "recorded_episode_titles": sorted(self.recorded_episode_titles),
            "next_recording_time": format_datetime(self.next_recording_time),
            "next_recording_title": self.next_recording_title,
            "recurrence_pattern": self.recurrence_pattern,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SeriesRecording":
        return cls(
            id=str(data.get("id") or new_id()),
            series_name=data.get("series_name", ""),
            channel_id=str(data.get("channel_id", "")),
            channel_name=data.get("channel_name") or "",
            stream_url=data.get("stream_url") or "",
            match_mode=SeriesMatchMode(data.get("match_mode", SeriesMatchMode.CONTAINS.value)),
            only_new_episodes=bool(data.get("only_new_episodes", True)),
            pre_buffer_minutes=int(data.get("pre_buffer_minutes", DEFAULT_PRE_BUFFER_MINUTES)),
            post_buffer_minutes=int(data.get("post_buffer_minutes", DEFAULT_POST_BUFFER_MINUTES)),
            custom_recorder_args=data.get("custom_recorder_args"),
            output_directory=data.get("output_directory"),
            is_active=bool(data.get("is_active", True)),
            created_at=parse_datetime(data.get("created_at")) or datetime.utcnow(),
            last_checked_utc=parse_datetime(data.get("last_checked_utc")),
            last_recorded_utc=parse_datetime(data.get("last_recorded_utc")),
            recorded_episode_titles=set(data.get("recorded_episode_titles") or []),
            next_recording_time=parse_datetime(data.get("next_recording_time")),
            next_recording_title=data.get("next_recording_title"),
            recurrence_pattern=data.get("recurrence_pattern") or "Unknown",
        )


def build_output_path(
    recording: ScheduledRecording,
    directory: str,
    timezone: Optional[str] = None,
    extension: str = ".ts",
) -> str:
    """
    Derive the output file for a recording from channel, title and start time.

    Args:
        recording: The recording to name.
        directory: Target directory.
        timezone: IANA timezone used for the timestamp (UTC when empty).
        extension: File extension including the dot.

    Returns:
        ``<directory>/<channel>_<title>_<YYYY-MM-DD_HH-MM><extension>``
    """
    start = recording.start_time
    if timezone:
        start = start.replace(tzinfo=ZoneInfo("UTC")).astimezone(ZoneInfo(timezone))
    stamp = start.strftime("%Y-%m-%d_%H-%M")
    channel = sanitize_filename(recording.channel_name or recording.channel_id, fallback="Channel")
    title = sanitize_filename(recording.title)
    return str(Path(directory) / f"{channel}_{title}_{stamp}{extension}")
