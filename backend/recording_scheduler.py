"""
Recording Scheduler.

Background service that drives scheduled recordings and series rules:
- Runs a recording loop that starts, stops and expires recordings
- Runs a series loop that pulls fresh EPG data and schedules new episodes
- Supervises recorder processes through the ProcessSupervisor
- Persists every state change through the RecordingStore
- Publishes lifecycle events and writes the activity journal

The store lock is only held for in-memory mutation; recorder processes are
started and stopped on worker threads so a slow recorder never blocks the
event loop or other API calls.
"""
import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional

from config import RecorderSettings
from notifications import EventType, NotificationHub
from recorder.command_builder import RecorderCommandBuilder
from recorder.conflicts import find_conflicts, has_conflict
from recorder.entities import (
    EpgEntry,
    RecordingStatus,
    ScheduledRecording,
    SeriesRecording,
    build_output_path,
    sanitize_filename,
)
from recorder.errors import (
    ConfigurationError,
    InvalidTransitionError,
    MatchError,
    ProcessStopError,
    SchedulerError,
    ValidationError,
)
from recorder.process_supervisor import ProcessSupervisor, RecorderEvent, RecorderHandle
from recorder.series_matcher import RERUN_MARKERS, MatcherConfig, SeriesMatcher
from recorder.sources import EpgProvider, StreamResolver, build_sources
from recorder.store import RecordingStore

logger = logging.getLogger(__name__)

RESUMED_SUFFIX = "_resumed"
MANUAL_ID_PREFIX = "manual_"

# Statuses removed by delete_completed_recordings(); missed entries age out on load
DELETABLE_STATUSES = (
    RecordingStatus.COMPLETED,
    RecordingStatus.FAILED,
    RecordingStatus.CANCELLED,
)


@dataclass
class TickSummary:
    """Recording ids touched by one recording tick."""
    missed: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    resumed: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    killed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def matcher_config_from_settings(settings: RecorderSettings) -> MatcherConfig:
    extra = tuple(m.strip() for m in settings.extra_rerun_markers if m and m.strip())
    return MatcherConfig(
        time_pattern_tolerance_minutes=settings.time_pattern_tolerance_minutes,
        history_window=settings.time_pattern_history,
        upcoming_window=settings.upcoming_window,
        rerun_markers=RERUN_MARKERS + extra,
    )


class RecordingScheduler:
    """
    Public scheduling API plus the two polling loops.

    Constructed explicitly with its collaborators; the FastAPI app keeps the
    instance on ``app.state``.
    """

    def __init__(
        self,
        store: RecordingStore,
        supervisor: ProcessSupervisor,
        settings: RecorderSettings,
        matcher: Optional[SeriesMatcher] = None,
        epg_provider: Optional[EpgProvider] = None,
        stream_resolver: Optional[StreamResolver] = None,
        notifications: Optional[NotificationHub] = None,
        journal: Optional[Callable[..., Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        _check_timing(settings)
        self.store = store
        self.supervisor = supervisor
        self.settings = settings
        self.matcher = matcher or SeriesMatcher(matcher_config_from_settings(settings))
        self.epg_provider = epg_provider
        self.stream_resolver = stream_resolver
        self.notifications = notifications or NotificationHub()
        self._journal = journal
        self._clock = clock or datetime.utcnow

        self._running = False
        self._recording_task: Optional[asyncio.Task] = None
        self._series_task: Optional[asyncio.Task] = None
        self._recording_lock = asyncio.Lock()
        self._series_lock = asyncio.Lock()

        self.supervisor.on_event(self._on_recorder_event)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the recording and series loops."""
        if self._running:
            logger.warning("[SCHEDULER] Already running")
            return

        self._running = True
        self._recording_task = asyncio.create_task(self._recording_loop())
        self._series_task = asyncio.create_task(self._series_loop())
        logger.info(
            f"[SCHEDULER] Started (poll={self.settings.recording_poll_interval_seconds}s, "
            f"series refresh={self.settings.series_refresh_interval_hours}h, "
            f"session={self.store.session_key})"
        )

    async def stop(self) -> None:
        """Cancel both loops and stop every running recorder."""
        if not self._running:
            return

        logger.info("[SCHEDULER] Stopping")
        self._running = False

        for task in (self._recording_task, self._series_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._recording_task = None
        self._series_task = None

        await asyncio.to_thread(self.supervisor.shutdown)
        if not self.store.save():
            logger.error(f"[SCHEDULER] Final save failed: {self.store.last_error}")
        logger.info("[SCHEDULER] Stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def apply_settings(self, settings: RecorderSettings) -> None:
        """Push updated settings into the running scheduler and its collaborators."""
        _check_timing(settings)
        self.settings = settings
        self.supervisor.builder = RecorderCommandBuilder(settings.ffmpeg_path, settings.ffmpeg_args_template)
        self.supervisor.stop_grace_seconds = settings.stop_grace_seconds
        self.supervisor.max_manual_recordings = settings.max_manual_recordings
        self.supervisor.max_scheduled_recordings = settings.max_scheduled_recordings
        self.store.retention_days = settings.retention_days
        self.matcher = SeriesMatcher(matcher_config_from_settings(settings))
        logger.info("[SCHEDULER] Settings applied")

    async def reconfigure(self, settings: RecorderSettings) -> None:
        """
        Apply settings and rebuild the EPG provider and stream resolver when
        the Xtream account changed. The old provider's client is closed.
        """
        account_changed = _account_of(settings) != _account_of(self.settings)
        self.apply_settings(settings)
        if not account_changed:
            return

        await self.close_sources()
        self.epg_provider, self.stream_resolver = build_sources(settings)
        if self.epg_provider is None:
            logger.info("[SCHEDULER] Xtream account removed, EPG refresh disabled")
        else:
            logger.info(f"[SCHEDULER] Xtream account changed to {settings.xtream_host}:{settings.xtream_port}")

    async def close_sources(self) -> None:
        close = getattr(self.epg_provider, "close", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            logger.warning(f"[SCHEDULER] Failed to close EPG provider: {e}")

    async def _recording_loop(self) -> None:
        logger.info("[SCHEDULER] Recording loop started")
        while self._running:
            try:
                await self.run_recording_tick()
            except Exception as e:
                logger.exception(f"[SCHEDULER] Error in recording loop: {e}")

            try:
                await asyncio.sleep(self.settings.recording_poll_interval_seconds)
            except asyncio.CancelledError:
                break
        logger.info("[SCHEDULER] Recording loop stopped")

    async def _series_loop(self) -> None:
        logger.info("[SCHEDULER] Series loop started")

        # Give the EPG source time to come up before the first refresh
        try:
            await asyncio.sleep(self.settings.series_initial_delay_seconds)
        except asyncio.CancelledError:
            return

        while self._running:
            try:
                await self.run_series_tick()
            except Exception as e:
                logger.exception(f"[SCHEDULER] Error in series loop: {e}")

            try:
                await asyncio.sleep(self.settings.series_refresh_interval_hours * 3600)
            except asyncio.CancelledError:
                break
        logger.info("[SCHEDULER] Series loop stopped")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock()

    @property
    def start_tolerance(self) -> timedelta:
        return timedelta(minutes=self.settings.start_tolerance_minutes)

    @property
    def missed_grace(self) -> timedelta:
        return timedelta(minutes=self.settings.missed_grace_minutes)

    @property
    def overrun_grace(self) -> timedelta:
        return timedelta(minutes=self.settings.overrun_grace_minutes)

    def _log_activity(
        self,
        category: str,
        action_type: str,
        entity_name: str,
        description: str,
        entity_id: Optional[str] = None,
        user_initiated: bool = False,
    ) -> None:
        if self._journal is None:
            return
        try:
            self._journal(
                category=category,
                action_type=action_type,
                entity_name=entity_name,
                description=description,
                entity_id=entity_id,
                user_initiated=user_initiated,
            )
        except Exception as e:
            logger.error(f"[SCHEDULER] Failed to write journal entry: {e}")

    def _output_path_for(self, recording: ScheduledRecording) -> str:
        directory = None
        if recording.series_id:
            rule = self.store.get_series(recording.series_id)
            if rule and rule.output_directory:
                directory = rule.output_directory
        directory = directory or str(self.settings.get_recording_directory())
        return build_output_path(recording, directory, self.settings.file_name_timezone or None)

    def _is_late_join(self, recording: ScheduledRecording, now: datetime) -> bool:
        """
        An EPG-based recording scheduled after its start window opened, for a
        program that is still airing, starts immediately instead of being missed.
        """
        return (
            recording.status == RecordingStatus.SCHEDULED
            and recording.is_epg_based
            and recording.created_at > recording.adjusted_start
            and recording.adjusted_start <= now < recording.end_time
        )

    def _validate_window(self, recording: ScheduledRecording, now: datetime) -> None:
        if recording.end_time <= now:
            raise ValidationError(f"Recording '{recording.title}' ends in the past")
        if not recording.is_epg_based:
            if recording.start_time <= now - timedelta(minutes=recording.pre_buffer_minutes):
                raise ValidationError(f"Recording '{recording.title}' starts in the past")

    # -------------------------------------------------------------------------
    # Recording API
    # -------------------------------------------------------------------------

    def schedule_recording(self, recording: ScheduledRecording, user_initiated: bool = True) -> str:
        """
        Add a recording to the schedule.

        Overlaps with other scheduled recordings are logged but do not block.

        Returns:
            The recording id.

        Raises:
            ValidationError: The window is in the past or the id is taken.
        """
        now = self._now()
        if recording.status != RecordingStatus.SCHEDULED:
            raise ValidationError("New recordings must be in the scheduled state")
        self._validate_window(recording, now)

        with self.store.mutate() as store:
            if not recording.output_file_path:
                recording.output_file_path = self._output_path_for(recording)
            conflicts = find_conflicts(store.list_recordings(), recording.start_time, recording.end_time, recording.id)
            store.add_recording(recording)

        if conflicts:
            logger.warning(
                f"[SCHEDULER] '{recording.title}' overlaps {len(conflicts)} scheduled recording(s): "
                f"{', '.join(c.title for c in conflicts)}"
            )
        logger.info(
            f"[SCHEDULER] Scheduled '{recording.title}' on {recording.channel_name or recording.channel_id} "
            f"from {recording.start_time} to {recording.end_time}"
        )
        self._log_activity(
            "recording", "scheduled", recording.title,
            f"Scheduled for {recording.time_range_text}",
            entity_id=recording.id, user_initiated=user_initiated,
        )
        self.notifications.publish(EventType.SCHEDULE_CHANGED, recording=recording)
        return recording.id

    def cancel_recording(self, recording_id: str) -> Optional[ScheduledRecording]:
        """
        Cancel a scheduled or in-progress recording.

        An in-progress recorder is stopped in the background; this returns
        without waiting for it.

        Returns:
            The cancelled recording, or None when the id is unknown.

        Raises:
            InvalidTransitionError: The recording already finished.
        """
        now = self._now()
        with self.store.mutate() as store:
            recording = store.get_recording(recording_id)
            if recording is None:
                return None
            was_recording = recording.status == RecordingStatus.RECORDING
            recording.transition(RecordingStatus.CANCELLED)
            if was_recording:
                recording.stopped_at = now

        if was_recording:
            handle = self.supervisor.get_handle(recording_id)
            if handle is not None:
                self.supervisor.stop_async(handle)

        logger.info(f"[SCHEDULER] Cancelled '{recording.title}'")
        self._log_activity(
            "recording", "cancelled", recording.title,
            "Cancelled while recording" if was_recording else "Cancelled before start",
            entity_id=recording.id, user_initiated=True,
        )
        self.notifications.publish(EventType.SCHEDULE_CHANGED, recording=recording)
        return recording

    def update_recording(self, recording: ScheduledRecording) -> ScheduledRecording:
        """
        Replace a scheduled recording with an edited copy.

        Raises:
            KeyError: The recording does not exist.
            InvalidTransitionError: The recording is no longer editable.
            ValidationError: The new window is in the past.
        """
        now = self._now()
        with self.store.mutate() as store:
            existing = store.get_recording(recording.id)
            if existing is None:
                raise KeyError(recording.id)
            if not existing.can_edit:
                raise InvalidTransitionError(
                    f"Recording '{existing.title}' is {existing.status.value} and can no longer be edited"
                )
            self._validate_window(recording, now)
            recording.status = RecordingStatus.SCHEDULED
            recording.created_at = existing.created_at
            recording.series_id = existing.series_id
            recording.is_series_recording = existing.is_series_recording
            if not recording.output_file_path or (
                recording.output_file_path == existing.output_file_path
                and (recording.title, recording.start_time) != (existing.title, existing.start_time)
            ):
                recording.output_file_path = self._output_path_for(recording)
            store.replace_recording(recording)

        logger.info(f"[SCHEDULER] Updated '{recording.title}'")
        self._log_activity(
            "recording", "updated", recording.title,
            f"Rescheduled for {recording.time_range_text}",
            entity_id=recording.id, user_initiated=True,
        )
        self.notifications.publish(EventType.SCHEDULE_CHANGED, recording=recording)
        return recording

    def delete_completed_recordings(self) -> int:
        """Remove completed, failed and cancelled recordings. Returns the count."""
        with self.store.locked() as store:
            ids = [r.id for r in store.list_recordings() if r.status in DELETABLE_STATUSES]
            if not ids:
                return 0
            removed = store.remove_recordings(ids)
            store.save()

        logger.info(f"[SCHEDULER] Deleted {removed} finished recordings")
        self.notifications.publish(EventType.SCHEDULE_CHANGED, message=f"Deleted {removed} recordings")
        return removed

    def get_recordings(self, status: Optional[RecordingStatus] = None) -> list[ScheduledRecording]:
        return sorted(self.store.list_recordings(status), key=lambda r: r.start_time)

    def get_recording(self, recording_id: str) -> Optional[ScheduledRecording]:
        return self.store.get_recording(recording_id)

    def get_upcoming_recordings(self, within_hours: float = 24) -> list[ScheduledRecording]:
        cutoff = self._now() + timedelta(hours=within_hours)
        return sorted(
            (r for r in self.store.list_recordings(RecordingStatus.SCHEDULED) if r.start_time <= cutoff),
            key=lambda r: r.start_time,
        )

    def has_conflicting_recording(
        self,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> bool:
        return has_conflict(self.store.list_recordings(), start, end, exclude_id)

    def get_conflicts(
        self,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> list[ScheduledRecording]:
        return find_conflicts(self.store.list_recordings(), start, end, exclude_id)

    # -------------------------------------------------------------------------
    # Manual recordings
    # -------------------------------------------------------------------------

    async def start_manual_recording(
        self,
        stream_url: str,
        title: str,
        channel_name: str = "",
        output_path: Optional[str] = None,
    ) -> RecorderHandle:
        """
        Start an ad-hoc recording outside the schedule.

        Raises:
            RecordingConflictError: The manual recording slot is taken.
            ConfigurationError: No recorder binary or stream URL.
            ProcessStartError: The recorder could not be launched.
        """
        now = self._now()
        if not output_path:
            name = (
                f"{sanitize_filename(channel_name, fallback='Manual')}_"
                f"{sanitize_filename(title)}_{now.strftime('%Y-%m-%d_%H-%M-%S')}.ts"
            )
            output_path = str(self.settings.get_recording_directory() / name)
        recording_id = f"{MANUAL_ID_PREFIX}{now.strftime('%Y%m%d%H%M%S%f')}"

        handle = await asyncio.to_thread(
            self.supervisor.start, recording_id, stream_url, output_path, title, True,
        )
        self._log_activity("recording", "started", title, f"Manual recording to {output_path}",
                           entity_id=recording_id, user_initiated=True)
        self.notifications.publish(EventType.RECORDING_STARTED, message=f"Manual recording '{title}' started")
        return handle

    async def stop_manual_recording(self) -> int:
        """Stop every manual recording. Returns the number stopped."""
        handles = [h for h in self.supervisor.active_handles() if h.manual]
        for handle in handles:
            await asyncio.to_thread(self.supervisor.stop, handle)
            self._log_activity("recording", "completed", handle.title, f"Manual recording saved to {handle.output_path}",
                               entity_id=handle.recording_id, user_initiated=True)
            self.notifications.publish(EventType.RECORDING_STOPPED, message=f"Manual recording '{handle.title}' stopped")
        return len(handles)

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    async def switch_session(self, session_key: str) -> None:
        """
        Switch to another account or playlist.

        In-progress recordings of the old session are stopped and completed
        before the store loads the new session's view.
        """
        if session_key == self.store.session_key:
            return

        async with self._recording_lock, self._series_lock:
            old_key = self.store.session_key
            for recording in self.store.list_recordings(RecordingStatus.RECORDING):
                handle = self.supervisor.get_handle(recording.id)
                if handle is not None:
                    try:
                        await asyncio.to_thread(self.supervisor.stop, handle)
                    except ProcessStopError as e:
                        logger.error(f"[SCHEDULER] {e}")
                with self.store.mutate():
                    if recording.status == RecordingStatus.RECORDING:
                        recording.transition(RecordingStatus.COMPLETED)
                        recording.stopped_at = self._now()
                self.notifications.publish(EventType.RECORDING_STOPPED, recording=recording)

            self.store.switch_session(session_key)

        logger.info(f"[SCHEDULER] Session switched {old_key} -> {session_key}")
        self._log_activity("session", "switched", session_key, f"Switched from {old_key}", user_initiated=True)
        self.notifications.publish(EventType.SCHEDULE_CHANGED, message=f"Session {session_key}")

    # -------------------------------------------------------------------------
    # Recording tick
    # -------------------------------------------------------------------------

    async def run_recording_tick(self, now: Optional[datetime] = None) -> TickSummary:
        """
        Evaluate every live recording once.

        Per recording at most one transition happens, checked in the order
        missed, start, stop. Process work runs after the store lock is released.
        """
        async with self._recording_lock:
            now = now or self._now()
            summary = TickSummary()
            to_start: list[tuple[ScheduledRecording, bool]] = []
            to_stop: list[tuple[ScheduledRecording, RecorderHandle]] = []
            to_kill: list[tuple[ScheduledRecording, RecorderHandle]] = []
            lost: list[ScheduledRecording] = []

            with self.store.mutate() as store:
                for recording in store.list_recordings():
                    if recording.status == RecordingStatus.SCHEDULED:
                        late_join = self._is_late_join(recording, now)
                        if recording.is_missed(now, self.missed_grace) and not late_join:
                            recording.transition(RecordingStatus.MISSED)
                            summary.missed.append(recording.id)
                        elif late_join or recording.should_start_now(now, self.start_tolerance):
                            recording.transition(RecordingStatus.RECORDING)
                            recording.started_at = now
                            if not recording.output_file_path:
                                recording.output_file_path = self._output_path_for(recording)
                            to_start.append((recording, False))

                    elif recording.status == RecordingStatus.RECORDING:
                        handle = self.supervisor.get_handle(recording.id)
                        if handle is None:
                            if recording.should_stop_now(now):
                                recording.transition(
                                    RecordingStatus.FAILED,
                                    "Recorder process was lost before the scheduled end",
                                )
                                recording.stopped_at = now
                                lost.append(recording)
                            else:
                                # Persisted as recording but nothing runs it (e.g. after a restart)
                                to_start.append((recording, True))
                        elif recording.is_overdue(now, self.overrun_grace):
                            to_kill.append((recording, handle))
                        elif recording.should_stop_now(now):
                            to_stop.append((recording, handle))

            for recording_id in summary.missed:
                self._report_missed(recording_id)
            for recording in lost:
                summary.failed.append(recording.id)
                self.notifications.publish(EventType.RECORDING_FAILED, recording=recording,
                                           message=recording.error_message or "")

            for recording, resumed in to_start:
                await self._launch(recording, resumed, now, summary)
            for recording, handle in to_stop:
                await self._finish(recording, handle, now, summary, kill=False)
            for recording, handle in to_kill:
                await self._finish(recording, handle, now, summary, kill=True)

            return summary

    def _report_missed(self, recording_id: str) -> None:
        recording = self.store.get_recording(recording_id)
        if recording is None:
            return
        logger.warning(f"[SCHEDULER] Missed recording '{recording.title}'")
        self._log_activity("recording", "missed", recording.title,
                           f"Start window passed at {recording.adjusted_start}", entity_id=recording.id)
        self.notifications.publish(EventType.SCHEDULE_CHANGED, recording=recording, message="missed")

    def _start_process(self, recording: ScheduledRecording, resumed: bool) -> RecorderHandle:
        stream_url = recording.stream_url
        if not stream_url and self.stream_resolver is not None:
            stream_url = self.stream_resolver.resolve_stream_url(recording.channel_id) or ""
        if not stream_url:
            raise ConfigurationError(f"No stream URL for channel {recording.channel_id}")

        output_path = recording.output_file_path or self._output_path_for(recording)
        if resumed:
            path = Path(output_path)
            output_path = str(path.with_name(f"{path.stem}{RESUMED_SUFFIX}{path.suffix}"))

        return self.supervisor.start(
            recording.id,
            stream_url,
            output_path,
            recording.title,
            manual=False,
            args_template=recording.recorder_args,
        )

    async def _launch(
        self,
        recording: ScheduledRecording,
        resumed: bool,
        now: datetime,
        summary: TickSummary,
    ) -> None:
        try:
            handle = await asyncio.to_thread(self._start_process, recording, resumed)
        except SchedulerError as e:
            with self.store.mutate():
                if recording.status == RecordingStatus.RECORDING:
                    recording.transition(RecordingStatus.FAILED, str(e))
                    recording.stopped_at = now
            summary.failed.append(recording.id)
            logger.error(f"[SCHEDULER] Failed to start '{recording.title}': {e}")
            self._log_activity("recording", "failed", recording.title, str(e), entity_id=recording.id)
            self.notifications.publish(EventType.RECORDING_FAILED, recording=recording, message=str(e))
            return

        if recording.status != RecordingStatus.RECORDING:
            # Cancelled while the recorder was launching
            self.supervisor.stop_async(handle)
            return

        if resumed:
            summary.resumed.append(recording.id)
            logger.info(f"[SCHEDULER] Resumed '{recording.title}' into {handle.output_path}")
        else:
            summary.started.append(recording.id)
            logger.info(f"[SCHEDULER] Started '{recording.title}' -> {handle.output_path}")
        self._log_activity(
            "recording", "resumed" if resumed else "started", recording.title,
            f"Recording to {handle.output_path}", entity_id=recording.id,
        )
        self.notifications.publish(EventType.RECORDING_STARTED, recording=recording)

    async def _finish(
        self,
        recording: ScheduledRecording,
        handle: RecorderHandle,
        now: datetime,
        summary: TickSummary,
        kill: bool,
    ) -> None:
        try:
            if kill:
                logger.warning(f"[SCHEDULER] '{recording.title}' overran its window, killing recorder")
                await asyncio.to_thread(self.supervisor.kill, handle)
            else:
                await asyncio.to_thread(self.supervisor.stop, handle)
        except ProcessStopError as e:
            with self.store.mutate():
                if recording.status == RecordingStatus.RECORDING:
                    recording.transition(RecordingStatus.FAILED, str(e))
                    recording.stopped_at = now
            summary.failed.append(recording.id)
            logger.error(f"[SCHEDULER] {e}")
            self._log_activity("recording", "failed", recording.title, str(e), entity_id=recording.id)
            self.notifications.publish(EventType.RECORDING_FAILED, recording=recording, message=str(e))
            return

        with self.store.mutate():
            if recording.status != RecordingStatus.RECORDING:
                return
            recording.transition(RecordingStatus.COMPLETED)
            recording.stopped_at = now

        (summary.killed if kill else summary.stopped).append(recording.id)
        logger.info(f"[SCHEDULER] Completed '{recording.title}' -> {handle.output_path}")
        self._log_activity("recording", "completed", recording.title,
                           f"Saved to {handle.output_path}", entity_id=recording.id)
        self.notifications.publish(EventType.RECORDING_STOPPED, recording=recording)

    def _on_recorder_event(self, event: RecorderEvent) -> None:
        """Handle recorders that exit without being asked to."""
        if event.type != "exited":
            return

        recording = self.store.get_recording(event.recording_id)
        if recording is None:
            # Manual recording
            event_type = EventType.RECORDING_FAILED if event.error else EventType.RECORDING_STOPPED
            title = event.handle.title if event.handle else event.recording_id
            self.notifications.publish(event_type, message=event.error or f"'{title}' finished")
            return

        with self.store.mutate():
            changed = recording.status == RecordingStatus.RECORDING
            if changed:
                if event.error:
                    recording.transition(RecordingStatus.FAILED, event.error)
                else:
                    recording.transition(RecordingStatus.COMPLETED)
                recording.stopped_at = self._now()

        # A terminal recording must not keep another recorder alive
        live = self.supervisor.get_handle(recording.id)
        if live is not None and live is not event.handle:
            logger.warning(f"[SCHEDULER] Stopping stray recorder for '{recording.title}' (pid={live.pid})")
            self.supervisor.stop_async(live)

        if not changed:
            return
        if event.error:
            logger.error(f"[SCHEDULER] Recorder for '{recording.title}' failed: {event.error}")
            self._log_activity("recording", "failed", recording.title, event.error, entity_id=recording.id)
            self.notifications.publish(EventType.RECORDING_FAILED, recording=recording, message=event.error)
        else:
            self._log_activity("recording", "completed", recording.title,
                               "Recorder finished before the scheduled end", entity_id=recording.id)
            self.notifications.publish(EventType.RECORDING_STOPPED, recording=recording)

    # -------------------------------------------------------------------------
    # Series API
    # -------------------------------------------------------------------------

    def get_series_recordings(self, active_only: bool = False) -> list[SeriesRecording]:
        return sorted(self.store.list_series(active_only), key=lambda s: s.series_name.casefold())

    def get_series_recording(self, series_id: str) -> Optional[SeriesRecording]:
        return self.store.get_series(series_id)

    def add_series_recording(self, rule: SeriesRecording) -> str:
        """Add a series rule. Episodes are scheduled on the next refresh or EPG ingest."""
        with self.store.mutate() as store:
            store.add_series(rule)

        logger.info(f"[SERIES] Added rule '{rule.series_name}' on {rule.channel_name or rule.channel_id}")
        self._log_activity("series", "added", rule.series_name,
                           f"Match mode {rule.match_mode.value}", entity_id=rule.id, user_initiated=True)
        self.notifications.publish(EventType.SCHEDULE_CHANGED, series=rule)
        return rule.id

    def update_series_recording(self, rule: SeriesRecording) -> SeriesRecording:
        """
        Replace a series rule, keeping its history.

        Raises:
            KeyError: The rule does not exist.
        """
        with self.store.mutate() as store:
            existing = store.get_series(rule.id)
            if existing is None:
                raise KeyError(rule.id)
            rule.created_at = existing.created_at
            # The dedup set only grows
            rule.recorded_episode_titles |= existing.recorded_episode_titles
            rule.last_checked_utc = rule.last_checked_utc or existing.last_checked_utc
            rule.last_recorded_utc = rule.last_recorded_utc or existing.last_recorded_utc
            self.matcher.update_projection(rule, store.children_of(rule.id), self._now())
            store.replace_series(rule)

        logger.info(f"[SERIES] Updated rule '{rule.series_name}'")
        self._log_activity("series", "updated", rule.series_name,
                           f"{rule.status_text}, match mode {rule.match_mode.value}",
                           entity_id=rule.id, user_initiated=True)
        self.notifications.publish(EventType.SCHEDULE_CHANGED, series=rule)
        return rule

    def remove_series_recording(self, series_id: str) -> Optional[int]:
        """
        Remove a series rule and cancel its future scheduled recordings.

        Past and terminal recordings of the rule are left untouched.

        Returns:
            The number of cancelled recordings, or None when the id is unknown.
        """
        now = self._now()
        with self.store.mutate() as store:
            rule = store.remove_series(series_id)
            if rule is None:
                return None
            cancelled = []
            for recording in store.children_of(series_id):
                if recording.status == RecordingStatus.SCHEDULED and recording.start_time > now:
                    recording.transition(RecordingStatus.CANCELLED)
                    cancelled.append(recording)

        logger.info(f"[SERIES] Removed rule '{rule.series_name}', cancelled {len(cancelled)} upcoming recordings")
        self._log_activity("series", "removed", rule.series_name,
                           f"Cancelled {len(cancelled)} upcoming recordings", entity_id=rule.id, user_initiated=True)
        self.notifications.publish(EventType.SCHEDULE_CHANGED, series=rule)
        return len(cancelled)

    def ingest_epg(self, channel_id: str, entries: list[EpgEntry]) -> list[ScheduledRecording]:
        """
        Match fresh EPG entries for a channel against every active rule on it.

        A rule that fails to match is logged and skipped.
        """
        channel_id = str(channel_id)
        now = self._now()
        scheduled = []
        for rule in self.store.list_series(active_only=True):
            if rule.channel_id != channel_id:
                continue
            try:
                scheduled.extend(self._apply_matches(rule.id, entries, now))
            except MatchError as e:
                logger.warning(f"[SERIES] Skipping rule {e.series_id}: {e}")
        return scheduled

    async def refresh_series(self, series_id: str) -> Optional[list[ScheduledRecording]]:
        """
        Fetch EPG for one rule now and schedule matches.

        Returns:
            New recordings, or None when the id is unknown.

        Raises:
            MatchError: Fetching or matching failed.
        """
        rule = self.store.get_series(series_id)
        if rule is None:
            return None
        async with self._series_lock:
            return await self._refresh_rule(rule, self._now())

    async def run_series_tick(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Refresh every active rule.

        Returns:
            Mapping of series id to the number of newly scheduled recordings.
            Rules that failed are absent.
        """
        async with self._series_lock:
            now = now or self._now()
            results = {}
            rules = self.store.list_series(active_only=True)
            logger.debug(f"[SERIES] Refreshing {len(rules)} active rules")
            for rule in rules:
                try:
                    results[rule.id] = len(await self._refresh_rule(rule, now))
                except MatchError as e:
                    logger.warning(f"[SERIES] Skipping rule {e.series_id}: {e}")
            return results

    async def _refresh_rule(self, rule: SeriesRecording, now: datetime) -> list[ScheduledRecording]:
        self.notifications.publish(EventType.EPG_REFRESH_NEEDED, series=rule)
        if self.epg_provider is None:
            # Data arrives later through ingest_epg()
            return []

        try:
            entries = await asyncio.wait_for(
                self.epg_provider.fetch_epg(rule.channel_id),
                timeout=self.settings.epg_fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise MatchError(rule.id, f"EPG fetch for '{rule.series_name}' timed out") from e
        except Exception as e:
            raise MatchError(rule.id, f"EPG fetch for '{rule.series_name}' failed: {e}") from e

        return self._apply_matches(rule.id, entries, now)

    def _apply_matches(
        self,
        series_id: str,
        entries: list[EpgEntry],
        now: datetime,
    ) -> list[ScheduledRecording]:
        with self.store.mutate() as store:
            rule = store.get_series(series_id)
            if rule is None or not rule.is_active:
                return []

            # Match against a copy so a failure leaves the stored rule untouched
            candidate = copy.deepcopy(rule)
            channel_entries = [e for e in entries if str(e.channel_id) == candidate.channel_id]
            added = []
            try:
                result = self.matcher.match(candidate, channel_entries, store.children_of(series_id), now)
                for recording in result.new_recordings:
                    recording.output_file_path = build_output_path(
                        recording,
                        candidate.output_directory or str(self.settings.get_recording_directory()),
                        self.settings.file_name_timezone or None,
                    )
                    store.add_recording(recording)
                    added.append(recording.id)
                self.matcher.update_projection(candidate, store.list_recordings(), now)
            except (SchedulerError, ValueError, TypeError) as e:
                store.remove_recordings(added)
                raise MatchError(series_id, f"Matching '{rule.series_name}' failed: {e}") from e
            store.replace_series(candidate)

        for title, reason in result.skipped:
            logger.debug("[SERIES] '%s' skipped '%s': %s", candidate.series_name, title, reason)
        for recording in result.new_recordings:
            logger.info(
                f"[SERIES] Scheduled '{recording.title}' at {recording.start_time} for "
                f"'{candidate.series_name}' ({result.matched_by.get(recording.id)})"
            )
            self._log_activity("recording", "scheduled", recording.title,
                               f"Series '{candidate.series_name}' episode at {recording.start_time}",
                               entity_id=recording.id)
        if result.new_recordings:
            self.notifications.publish(EventType.SCHEDULE_CHANGED, series=candidate,
                                       message=f"{len(result.new_recordings)} new episodes")
        return result.new_recordings


def _account_of(settings: RecorderSettings) -> tuple:
    return (
        settings.xtream_host,
        settings.xtream_port,
        settings.xtream_username,
        settings.xtream_password,
        settings.xtream_use_ssl,
    )


def _check_timing(settings: RecorderSettings) -> None:
    if settings.start_tolerance_minutes * 60 <= settings.recording_poll_interval_seconds:
        raise ConfigurationError("Start tolerance must be longer than the poll interval")


def build_scheduler(
    settings: RecorderSettings,
    data_dir: Path,
    epg_provider: Optional[EpgProvider] = None,
    stream_resolver: Optional[StreamResolver] = None,
    journal: Optional[Callable[..., Any]] = None,
) -> RecordingScheduler:
    """Wire a scheduler and its collaborators from settings."""
    store = RecordingStore(data_dir, settings.session_key, retention_days=settings.retention_days)
    supervisor = ProcessSupervisor(
        RecorderCommandBuilder(settings.ffmpeg_path, settings.ffmpeg_args_template),
        stop_grace_seconds=settings.stop_grace_seconds,
        max_manual_recordings=settings.max_manual_recordings,
        max_scheduled_recordings=settings.max_scheduled_recordings,
    )
    return RecordingScheduler(
        store,
        supervisor,
        settings,
        epg_provider=epg_provider,
        stream_resolver=stream_resolver,
        journal=journal,
    )
