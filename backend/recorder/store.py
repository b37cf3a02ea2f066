"""
Recording Store.

Durable persistence for scheduled recordings and series rules, namespaced by
session key (the active account or playlist). Each collection lives in its
own JSON file holding ``{session_key: [entity, ...]}``.

Older installs wrote a flat list per file; such files are migrated in place
under the current session key the first time they are read.
"""
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional

from recorder.entities import RecordingStatus, ScheduledRecording, SeriesRecording
from recorder.errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

RECORDINGS_FILE_NAME = "scheduled_recordings.json"
SERIES_FILE_NAME = "series_recordings.json"
DEFAULT_RETENTION_DAYS = 7
PLAYLIST_SESSION_PREFIX = "m3u_"
ACCOUNT_SESSION_PREFIX = "xtream_"


def session_key_for_account(host: str, port: int, username: str) -> str:
    """Session key for an Xtream account."""
    return f"{ACCOUNT_SESSION_PREFIX}{(host or '').strip().lower()}_{port}_{username}"


def session_key_for_playlist(playlist_id: str) -> str:
    """Session key for a playlist-only (M3U) profile."""
    return f"{PLAYLIST_SESSION_PREFIX}{playlist_id}"


class RecordingStore:
    """
    Thread-safe store for both entity collections of one session.

    Entities handed out are the live in-memory objects; callers mutate them
    inside ``mutate()`` so the change is persisted when the block exits.
    """

    def __init__(
        self,
        data_dir: Path,
        session_key: str,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ):
        self.data_dir = Path(data_dir)
        self.recordings_file = self.data_dir / RECORDINGS_FILE_NAME
        self.series_file = self.data_dir / SERIES_FILE_NAME
        self.retention_days = retention_days
        self._lock = threading.RLock()
        self._session_key = session_key
        self._recordings: dict[str, ScheduledRecording] = {}
        self._series: dict[str, SeriesRecording] = {}
        # Raw entries of the other sessions, written back untouched
        self._other_recordings: dict[str, list] = {}
        self._other_series: dict[str, list] = {}
        # Sessions switched away from while the last save was failing
        self._unsaved: dict[str, tuple[list, list]] = {}
        self.dirty = False
        self.last_error: Optional[str] = None
        self.reload()

    @property
    def session_key(self) -> str:
        return self._session_key

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    @contextmanager
    def locked(self) -> Iterator["RecordingStore"]:
        """Hold the store lock without saving."""
        with self._lock:
            yield self

    @contextmanager
    def mutate(self) -> Iterator["RecordingStore"]:
        """Hold the store lock for a read-modify-write and save on exit."""
        with self._lock:
            yield self
            self.save()

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def reload(self) -> None:
        """Re-read both files for the current session key."""
        with self._lock:
            now = datetime.utcnow()
            rec_map, rec_migrated = self._read_keyed_file(self.recordings_file)
            series_map, series_migrated = self._read_keyed_file(self.series_file)
            for key, (rec_entries, series_entries) in self._unsaved.items():
                rec_map[key] = rec_entries
                series_map[key] = series_entries

            self._recordings = {}
            pruned = 0
            for data in rec_map.pop(self._session_key, []):
                try:
                    recording = ScheduledRecording.from_dict(data)
                except (KeyError, TypeError, ValueError, ValidationError) as e:
                    logger.warning(f"[STORE] Skipping unreadable recording entry: {e}")
                    continue
                if self._is_expired(recording, now):
                    pruned += 1
                    continue
                self._recordings[recording.id] = recording

            self._series = {}
            for data in series_map.pop(self._session_key, []):
                try:
                    rule = SeriesRecording.from_dict(data)
                except (KeyError, TypeError, ValueError, ValidationError) as e:
                    logger.warning(f"[STORE] Skipping unreadable series entry: {e}")
                    continue
                self._series[rule.id] = rule

            self._other_recordings = rec_map
            self._other_series = series_map

            logger.info(
                f"[STORE] Loaded {len(self._recordings)} recordings and {len(self._series)} "
                f"series rules for session {self._session_key} (pruned {pruned})"
            )

            if rec_migrated or series_migrated or pruned:
                self.save()

    def _read_keyed_file(self, path: Path) -> tuple[dict[str, list], bool]:
        """
        Read a collection file as ``{session_key: [entries]}``.

        Returns:
            (mapping, migrated) where migrated is True when a legacy flat list
            was converted and the file needs rewriting.
        """
        if not path.exists():
            return {}, False
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            error = PersistenceError(f"Failed to read {path}: {e}")
            logger.error(f"[STORE] {error}")
            self.last_error = str(error)
            self._quarantine(path)
            return {}, False

        if isinstance(data, list):
            logger.info(f"[STORE] Migrating legacy list format in {path.name} to session {self._session_key}")
            return {self._session_key: data}, True
        if isinstance(data, dict):
            return {str(k): v for k, v in data.items() if isinstance(v, list)}, False

        logger.error(f"[STORE] Unexpected content in {path}, ignoring")
        self._quarantine(path)
        return {}, False

    def _quarantine(self, path: Path) -> None:
        """Move an unreadable file aside so the next save does not destroy it."""
        target = path.with_name(path.name + ".corrupt")
        try:
            os.replace(path, target)
            logger.warning(f"[STORE] Moved unreadable file to {target}")
        except OSError as e:
            logger.error(f"[STORE] Could not move unreadable file {path}: {e}")

    def _is_expired(self, recording: ScheduledRecording, now: datetime) -> bool:
        return (
            recording.status.is_terminal
            and recording.end_time < now - timedelta(days=self.retention_days)
        )

    # -------------------------------------------------------------------------
    # Saving
    # -------------------------------------------------------------------------

    def save(self) -> bool:
        """
        Write both collections.

        Failures are logged and leave the in-memory state authoritative; the
        store stays dirty so the next save retries.
        """
        with self._lock:
            recordings = dict(self._other_recordings)
            recordings[self._session_key] = [r.to_dict() for r in self._recordings.values()]
            series = dict(self._other_series)
            series[self._session_key] = [s.to_dict() for s in self._series.values()]
            try:
                self._write_json(self.recordings_file, recordings)
                self._write_json(self.series_file, series)
            except PersistenceError as e:
                logger.error(f"[STORE] {e}")
                self.dirty = True
                self.last_error = str(e)
                return False
            self.dirty = False
            self._unsaved.clear()
            self.last_error = None
            return True

    def _write_json(self, path: Path, payload: dict) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def switch_session(self, session_key: str) -> None:
        """Persist the current session and load a disjoint view for another."""
        with self._lock:
            if session_key == self._session_key:
                return
            if not self.save():
                # Keep the unsaved state of this session for the next successful save
                logger.warning(f"[STORE] Session {self._session_key} not saved, keeping it in memory")
                self._unsaved[self._session_key] = (
                    [r.to_dict() for r in self._recordings.values()],
                    [s.to_dict() for s in self._series.values()],
                )
            logger.info(f"[STORE] Switching session {self._session_key} -> {session_key}")
            self._session_key = session_key
            self.reload()

    # -------------------------------------------------------------------------
    # Recordings
    # -------------------------------------------------------------------------

    def list_recordings(self, status: Optional[RecordingStatus] = None) -> list[ScheduledRecording]:
        with self._lock:
            recordings = list(self._recordings.values())
        if status is not None:
            recordings = [r for r in recordings if r.status == status]
        return recordings

    def get_recording(self, recording_id: str) -> Optional[ScheduledRecording]:
        with self._lock:
            return self._recordings.get(recording_id)

    def add_recording(self, recording: ScheduledRecording) -> None:
        with self._lock:
            if recording.id in self._recordings:
                raise ValidationError(f"Recording {recording.id} already exists")
            self._recordings[recording.id] = recording

    def replace_recording(self, recording: ScheduledRecording) -> None:
        with self._lock:
            if recording.id not in self._recordings:
                raise KeyError(recording.id)
            self._recordings[recording.id] = recording

    def remove_recordings(self, recording_ids) -> int:
        with self._lock:
            removed = 0
            for recording_id in list(recording_ids):
                if self._recordings.pop(recording_id, None) is not None:
                    removed += 1
            return removed

    def children_of(self, series_id: str) -> list[ScheduledRecording]:
        with self._lock:
            return [r for r in self._recordings.values() if r.series_id == series_id]

    # -------------------------------------------------------------------------
    # Series rules
    # -------------------------------------------------------------------------

    def list_series(self, active_only: bool = False) -> list[SeriesRecording]:
        with self._lock:
            rules = list(self._series.values())
        if active_only:
            rules = [r for r in rules if r.is_active]
        return rules

    def get_series(self, series_id: str) -> Optional[SeriesRecording]:
        with self._lock:
            return self._series.get(series_id)

    def add_series(self, rule: SeriesRecording) -> None:
        with self._lock:
            if rule.id in self._series:
                raise ValidationError(f"Series rule {rule.id} already exists")
            self._series[rule.id] = rule

    def replace_series(self, rule: SeriesRecording) -> None:
        with self._lock:
            if rule.id not in self._series:
                raise KeyError(rule.id)
            self._series[rule.id] = rule

    def remove_series(self, series_id: str) -> Optional[SeriesRecording]:
        with self._lock:
            return self._series.pop(series_id, None)
