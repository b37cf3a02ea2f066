"""
Unit tests for the RecordingScheduler.

Recorder processes are FakeProcess instances; ticks are driven with an
explicit ``now`` instead of the background loops.
"""
import signal
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from notifications import EventType
from recorder.entities import RecordingStatus, SeriesMatchMode
from recorder.errors import (
    ConfigurationError,
    InvalidTransitionError,
    MatchError,
    RecordingConflictError,
    ValidationError,
)
from recorder.process_supervisor import RecorderEvent
from recording_scheduler import RESUMED_SUFFIX, RecordingScheduler

from tests.fixtures.factories import (
    FakeEpgProvider,
    FakePopenFactory,
    at_time,
    create_epg_entry,
    create_recording,
    create_series,
)


NOW = datetime.utcnow().replace(microsecond=0)


@pytest.fixture
def popen():
    factory = FakePopenFactory()
    with patch("subprocess.Popen", factory):
        yield factory


def _event_types(events):
    return [e.type for e in events]


def _add(scheduler, recording):
    with scheduler.store.mutate() as store:
        store.add_recording(recording)
    return recording


# -----------------------------------------------------------------------------
# Scheduling API
# -----------------------------------------------------------------------------

class TestScheduleRecording:
    def test_schedules_and_sets_output_path(self, scheduler, events, journal_calls, recorder_settings):
        recording = create_recording(title="Evening News", channel_name="News One")

        recording_id = scheduler.schedule_recording(recording)

        stored = scheduler.get_recording(recording_id)
        assert stored is recording
        assert stored.output_file_path.startswith(recorder_settings.recording_directory)
        assert "News One_Evening News_" in stored.output_file_path
        assert _event_types(events) == [EventType.SCHEDULE_CHANGED]
        assert journal_calls.calls[-1]["action_type"] == "scheduled"
        assert journal_calls.calls[-1]["entity_id"] == recording_id

    def test_past_window_rejected_without_side_effects(self, scheduler, events):
        recording = create_recording(start_time=NOW - timedelta(hours=2), duration_minutes=60)
        with pytest.raises(ValidationError):
            scheduler.schedule_recording(recording)
        assert scheduler.get_recordings() == []
        assert events == []

    def test_manual_recording_starting_in_the_past_rejected(self, scheduler):
        recording = create_recording(start_time=NOW - timedelta(minutes=10), duration_minutes=60)
        with pytest.raises(ValidationError):
            scheduler.schedule_recording(recording)

    def test_epg_recording_for_airing_program_accepted(self, scheduler):
        recording = create_recording(
            start_time=NOW - timedelta(minutes=10), duration_minutes=60, is_epg_based=True,
        )
        assert scheduler.schedule_recording(recording) == recording.id

    def test_must_be_scheduled(self, scheduler):
        recording = create_recording(status=RecordingStatus.COMPLETED)
        with pytest.raises(ValidationError):
            scheduler.schedule_recording(recording)

    def test_overlap_is_allowed_and_reported(self, scheduler):
        first = create_recording(start_time=NOW + timedelta(hours=2), duration_minutes=60)
        second = create_recording(start_time=NOW + timedelta(hours=2, minutes=30), duration_minutes=60)
        scheduler.schedule_recording(first)
        scheduler.schedule_recording(second)

        assert scheduler.has_conflicting_recording(second.start_time, second.end_time, second.id)
        assert scheduler.get_conflicts(second.start_time, second.end_time, second.id) == [first]
        assert len(scheduler.get_recordings()) == 2


class TestCancelAndUpdate:
    def test_cancel_scheduled(self, scheduler, events):
        recording = scheduler.get_recording(scheduler.schedule_recording(create_recording()))
        cancelled = scheduler.cancel_recording(recording.id)
        assert cancelled.status == RecordingStatus.CANCELLED
        assert scheduler.get_upcoming_recordings() == []

    def test_cancel_unknown_returns_none(self, scheduler):
        assert scheduler.cancel_recording("missing") is None

    def test_cancel_finished_rejected(self, scheduler):
        recording = _add(scheduler, create_recording(status=RecordingStatus.COMPLETED))
        with pytest.raises(InvalidTransitionError):
            scheduler.cancel_recording(recording.id)

    async def test_cancel_while_recording_stops_recorder(self, scheduler, popen):
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1)))
        await scheduler.run_recording_tick(NOW)
        handle = scheduler.supervisor.get_handle(recording.id)

        with patch.object(scheduler.supervisor, "stop_async") as stop_async:
            cancelled = scheduler.cancel_recording(recording.id)

        assert cancelled.status == RecordingStatus.CANCELLED
        assert cancelled.stopped_at is not None
        stop_async.assert_called_once_with(handle)

    def test_update_reschedules(self, scheduler):
        original = scheduler.get_recording(scheduler.schedule_recording(create_recording(title="Old")))
        edited = create_recording(title="New", start_time=NOW + timedelta(hours=3), id=original.id,
                                  output_file_path=original.output_file_path)

        updated = scheduler.update_recording(edited)

        assert scheduler.get_recording(original.id).title == "New"
        assert updated.created_at == original.created_at
        assert "_New_" in updated.output_file_path

    def test_update_unknown(self, scheduler):
        with pytest.raises(KeyError):
            scheduler.update_recording(create_recording())

    def test_update_in_progress_rejected(self, scheduler):
        recording = _add(scheduler, create_recording(status=RecordingStatus.RECORDING))
        with pytest.raises(InvalidTransitionError):
            scheduler.update_recording(create_recording(id=recording.id))

    def test_update_into_the_past_rejected(self, scheduler):
        recording = scheduler.get_recording(scheduler.schedule_recording(create_recording(title="Keep")))
        with pytest.raises(ValidationError):
            scheduler.update_recording(create_recording(start_time=NOW - timedelta(hours=3), id=recording.id))
        assert scheduler.get_recording(recording.id).title == "Keep"


class TestQueries:
    def test_delete_completed(self, scheduler):
        for status in (RecordingStatus.COMPLETED, RecordingStatus.FAILED, RecordingStatus.CANCELLED,
                       RecordingStatus.MISSED, RecordingStatus.SCHEDULED):
            _add(scheduler, create_recording(status=status))

        assert scheduler.delete_completed_recordings() == 3
        assert {r.status for r in scheduler.get_recordings()} == {RecordingStatus.MISSED, RecordingStatus.SCHEDULED}
        assert scheduler.delete_completed_recordings() == 0

    def test_upcoming_sorted_within_window(self, scheduler):
        later = _add(scheduler, create_recording(start_time=NOW + timedelta(hours=5)))
        sooner = _add(scheduler, create_recording(start_time=NOW + timedelta(hours=1)))
        _add(scheduler, create_recording(start_time=NOW + timedelta(hours=30)))
        _add(scheduler, create_recording(start_time=NOW + timedelta(hours=2), status=RecordingStatus.CANCELLED))

        assert scheduler.get_upcoming_recordings(24) == [sooner, later]

    def test_filter_by_status(self, scheduler):
        done = _add(scheduler, create_recording(status=RecordingStatus.COMPLETED))
        _add(scheduler, create_recording())
        assert scheduler.get_recordings(RecordingStatus.COMPLETED) == [done]


# -----------------------------------------------------------------------------
# Recording tick
# -----------------------------------------------------------------------------

class TestRecordingTick:
    async def test_start_then_stop(self, scheduler, popen, events):
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1), duration_minutes=30))

        summary = await scheduler.run_recording_tick(NOW)

        assert summary.started == [recording.id]
        assert recording.status == RecordingStatus.RECORDING
        assert recording.started_at == NOW
        assert popen.commands[0][-1] == recording.output_file_path
        assert scheduler.supervisor.get_handle(recording.id) is not None

        summary = await scheduler.run_recording_tick(recording.adjusted_end)

        assert summary.stopped == [recording.id]
        assert recording.status == RecordingStatus.COMPLETED
        assert recording.stopped_at == recording.adjusted_end
        assert scheduler.supervisor.get_handle(recording.id) is None
        assert _event_types(events) == [EventType.RECORDING_STARTED, EventType.RECORDING_STOPPED]

    async def test_not_yet_due(self, scheduler, popen):
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=30)))
        summary = await scheduler.run_recording_tick(NOW)
        assert summary.started == []
        assert recording.status == RecordingStatus.SCHEDULED
        assert popen.processes == []

    async def test_missed_after_grace(self, scheduler, popen, journal_calls):
        recording = _add(scheduler, create_recording(start_time=NOW - timedelta(minutes=10), duration_minutes=60))

        summary = await scheduler.run_recording_tick(NOW)

        assert summary.missed == [recording.id]
        assert recording.status == RecordingStatus.MISSED
        assert popen.processes == []
        assert journal_calls.calls[-1]["action_type"] == "missed"

    async def test_late_join_for_epg_recording(self, scheduler, popen):
        recording = _add(scheduler, create_recording(
            start_time=NOW - timedelta(minutes=10),
            duration_minutes=60,
            is_epg_based=True,
            created_at=NOW - timedelta(minutes=1),
        ))

        summary = await scheduler.run_recording_tick(NOW)

        assert summary.started == [recording.id]
        assert recording.status == RecordingStatus.RECORDING

    async def test_terminal_recordings_untouched(self, scheduler, popen):
        terminal = [
            _add(scheduler, create_recording(start_time=NOW - timedelta(minutes=1), status=status))
            for status in (RecordingStatus.COMPLETED, RecordingStatus.CANCELLED,
                           RecordingStatus.MISSED, RecordingStatus.FAILED)
        ]
        summary = await scheduler.run_recording_tick(NOW)
        assert summary.started == [] and summary.missed == []
        assert [r.status for r in terminal] == [
            RecordingStatus.COMPLETED, RecordingStatus.CANCELLED, RecordingStatus.MISSED, RecordingStatus.FAILED,
        ]

    async def test_overdue_recorder_killed(self, scheduler, popen):
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1)))
        await scheduler.run_recording_tick(NOW)

        late = recording.adjusted_end + scheduler.overrun_grace + timedelta(seconds=1)
        summary = await scheduler.run_recording_tick(late)

        assert summary.killed == [recording.id]
        assert popen.processes[0].killed
        assert recording.status == RecordingStatus.COMPLETED
        assert scheduler.supervisor.active_handles() == []

    async def test_start_failure_marks_failed(self, scheduler, popen, events):
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1), stream_url=""))

        summary = await scheduler.run_recording_tick(NOW)

        assert summary.failed == [recording.id]
        assert recording.status == RecordingStatus.FAILED
        assert "No stream URL" in recording.error_message
        assert events[-1].type == EventType.RECORDING_FAILED

    async def test_stream_url_resolved_from_channel(self, scheduler, popen):
        scheduler.stream_resolver = MagicMock()
        scheduler.stream_resolver.resolve_stream_url.return_value = "http://resolved.example.com/101.ts"
        _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1), stream_url=""))

        await scheduler.run_recording_tick(NOW)

        scheduler.stream_resolver.resolve_stream_url.assert_called_once_with("101")
        assert "http://resolved.example.com/101.ts" in popen.commands[0]

    async def test_concurrency_cap_fails_extra_recording(self, scheduler, popen):
        scheduler.supervisor.max_scheduled_recordings = 1
        first = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1)))
        second = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1)))

        summary = await scheduler.run_recording_tick(NOW)

        assert len(summary.started) == 1
        assert len(summary.failed) == 1
        assert {first.status, second.status} == {RecordingStatus.RECORDING, RecordingStatus.FAILED}

    async def test_orphaned_recording_resumed(self, scheduler, popen, tmp_path):
        recording = create_recording(start_time=NOW - timedelta(minutes=10), duration_minutes=60,
                                     status=RecordingStatus.RECORDING)
        recording.output_file_path = str(tmp_path / "News One_Evening News.ts")
        _add(scheduler, recording)

        summary = await scheduler.run_recording_tick(NOW)

        assert summary.resumed == [recording.id]
        assert popen.commands[0][-1] == str(tmp_path / f"News One_Evening News{RESUMED_SUFFIX}.ts")
        assert recording.status == RecordingStatus.RECORDING

    async def test_lost_recorder_after_end_fails(self, scheduler, popen, events):
        recording = _add(scheduler, create_recording(start_time=NOW - timedelta(hours=2), duration_minutes=30,
                                                     status=RecordingStatus.RECORDING))

        summary = await scheduler.run_recording_tick(NOW)

        assert summary.failed == [recording.id]
        assert recording.status == RecordingStatus.FAILED
        assert popen.processes == []
        assert events[-1].type == EventType.RECORDING_FAILED

    async def test_recorder_dying_marks_failed(self, scheduler, events):
        popen = FakePopenFactory(lines=["Server returned 403 Forbidden\n"])
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1)))
        with patch("subprocess.Popen", popen):
            await scheduler.run_recording_tick(NOW)

        handle = scheduler.supervisor.get_handle(recording.id)
        popen.processes[0].exit(1)
        handle.reader.join(timeout=2)

        assert recording.status == RecordingStatus.FAILED
        assert "403 Forbidden" in recording.error_message
        assert events[-1].type == EventType.RECORDING_FAILED

    async def test_recorder_finishing_early_completes(self, scheduler, popen):
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1)))
        await scheduler.run_recording_tick(NOW)

        handle = scheduler.supervisor.get_handle(recording.id)
        popen.processes[0].exit(0)
        handle.reader.join(timeout=2)

        assert recording.status == RecordingStatus.COMPLETED

    async def test_exit_reported_after_resume_stops_stray_recorder(self, scheduler, popen):
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1)))
        await scheduler.run_recording_tick(NOW)
        first = scheduler.supervisor.get_handle(recording.id)
        first.stop_requested = True
        popen.processes[0].exit(0)
        scheduler.supervisor._release(first)

        summary = await scheduler.run_recording_tick(NOW + timedelta(minutes=2))
        assert summary.resumed == [recording.id]

        scheduler._on_recorder_event(RecorderEvent(type="exited", recording_id=recording.id, handle=first))

        assert recording.status == RecordingStatus.COMPLETED
        assert popen.processes[1].exited.wait(timeout=2)
        assert popen.processes[1].signals == [signal.SIGINT]

    async def test_tick_persists_changes(self, scheduler, popen, store):
        recording = _add(scheduler, create_recording(start_time=NOW - timedelta(minutes=10), duration_minutes=60))
        await scheduler.run_recording_tick(NOW)

        store.reload()
        assert store.get_recording(recording.id).status == RecordingStatus.MISSED


# -----------------------------------------------------------------------------
# Manual recordings
# -----------------------------------------------------------------------------

class TestManualRecording:
    async def test_start_and_stop(self, scheduler, popen, recorder_settings):
        handle = await scheduler.start_manual_recording("http://iptv.example.com/live/1.ts", "Live Match", "Sports")

        assert handle.manual
        assert handle.output_path.startswith(recorder_settings.recording_directory)
        assert "Sports_Live Match_" in handle.output_path
        with pytest.raises(RecordingConflictError):
            await scheduler.start_manual_recording("http://iptv.example.com/live/2.ts", "Other")

        assert await scheduler.stop_manual_recording() == 1
        assert scheduler.supervisor.active_handles() == []

    async def test_manual_does_not_block_scheduled(self, scheduler, popen):
        await scheduler.start_manual_recording("http://iptv.example.com/live/1.ts", "Live Match")
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1)))

        summary = await scheduler.run_recording_tick(NOW)

        assert summary.started == [recording.id]

    async def test_stop_without_manual_recording(self, scheduler):
        assert await scheduler.stop_manual_recording() == 0


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------

class TestSession:
    async def test_switch_stops_running_recordings(self, scheduler, popen, store):
        original_session = store.session_key
        recording = _add(scheduler, create_recording(start_time=NOW + timedelta(minutes=1)))
        await scheduler.run_recording_tick(NOW)

        await scheduler.switch_session("m3u_7")

        assert store.session_key == "m3u_7"
        assert scheduler.get_recordings() == []
        assert scheduler.supervisor.active_handles() == []

        await scheduler.switch_session(original_session)
        assert store.session_key == original_session
        assert scheduler.get_recording(recording.id).status == RecordingStatus.COMPLETED

    async def test_switch_to_same_session_is_noop(self, scheduler, journal_calls):
        await scheduler.switch_session(scheduler.store.session_key)
        assert journal_calls.calls == []


# -----------------------------------------------------------------------------
# Series
# -----------------------------------------------------------------------------

class TestSeries:
    def test_add_and_list(self, scheduler):
        scheduler.add_series_recording(create_series(series_name="b show"))
        scheduler.add_series_recording(create_series(series_name="A Show", is_active=False))
        assert [r.series_name for r in scheduler.get_series_recordings()] == ["A Show", "b show"]
        assert [r.series_name for r in scheduler.get_series_recordings(active_only=True)] == ["b show"]

    def test_ingest_epg_schedules_matches(self, scheduler, journal_calls):
        rule = create_series(series_name="Evening News")
        other_channel = create_series(series_name="Evening News", channel_id="202")
        scheduler.add_series_recording(rule)
        scheduler.add_series_recording(other_channel)
        tomorrow = NOW + timedelta(days=1)

        scheduled = scheduler.ingest_epg("101", [
            create_epg_entry("Evening News", at_time(tomorrow, 18)),
            create_epg_entry("Weather", at_time(tomorrow, 18, 30)),
        ])

        assert [r.title for r in scheduled] == ["Evening News"]
        recording = scheduler.get_recording(scheduled[0].id)
        assert recording.series_id == rule.id
        assert recording.output_file_path.endswith(".ts")
        assert scheduler.store.children_of(other_channel.id) == []
        stored_rule = scheduler.get_series_recording(rule.id)
        assert stored_rule.next_recording_time == at_time(tomorrow, 18)
        assert "Evening News" in stored_rule.recorded_episode_titles
        assert any(c["action_type"] == "scheduled" for c in journal_calls.calls)

    def test_ingest_epg_twice_is_idempotent(self, scheduler):
        scheduler.add_series_recording(create_series())
        entries = [create_epg_entry("Evening News", at_time(NOW + timedelta(days=1), 18))]
        assert len(scheduler.ingest_epg("101", entries)) == 1
        assert scheduler.ingest_epg("101", entries) == []
        assert len(scheduler.get_recordings()) == 1

    def test_ingest_uses_rule_output_directory(self, scheduler, tmp_path):
        scheduler.add_series_recording(create_series(output_directory=str(tmp_path / "news")))
        scheduled = scheduler.ingest_epg("101", [create_epg_entry("Evening News", at_time(NOW + timedelta(days=1), 18))])
        assert scheduled[0].output_file_path.startswith(str(tmp_path / "news"))

    def test_match_failure_leaves_rule_untouched(self, scheduler):
        rule = create_series()
        scheduler.add_series_recording(rule)
        scheduler.matcher.match = MagicMock(side_effect=ValueError("bad entry"))

        assert scheduler.ingest_epg("101", [create_epg_entry()]) == []
        assert scheduler.get_series_recording(rule.id).last_checked_utc is None
        assert scheduler.get_recordings() == []

    def test_paused_rule_ignored(self, scheduler):
        scheduler.add_series_recording(create_series(is_active=False))
        assert scheduler.ingest_epg("101", [create_epg_entry()]) == []

    def test_remove_cascades_to_future_recordings(self, scheduler):
        rule = create_series()
        scheduler.add_series_recording(rule)
        future = _add(scheduler, create_recording(series_id=rule.id, start_time=NOW + timedelta(days=1)))
        past = _add(scheduler, create_recording(series_id=rule.id, start_time=NOW - timedelta(days=1),
                                                status=RecordingStatus.COMPLETED))

        assert scheduler.remove_series_recording(rule.id) == 1

        assert future.status == RecordingStatus.CANCELLED
        assert past.status == RecordingStatus.COMPLETED
        assert scheduler.get_series_recording(rule.id) is None

    def test_remove_unknown(self, scheduler):
        assert scheduler.remove_series_recording("missing") is None

    def test_update_keeps_dedup_titles(self, scheduler):
        rule = create_series()
        scheduler.add_series_recording(rule)
        rule.mark_as_recorded("Episode 1", NOW)

        edited = create_series(series_name="Evening News", id=rule.id, match_mode=SeriesMatchMode.EXACT)
        updated = scheduler.update_series_recording(edited)

        assert updated.recorded_episode_titles == {"Episode 1"}
        assert updated.match_mode == SeriesMatchMode.EXACT
        assert updated.created_at == rule.created_at

    def test_update_unknown(self, scheduler):
        with pytest.raises(KeyError):
            scheduler.update_series_recording(create_series())


class TestSeriesTick:
    async def test_failing_rule_does_not_block_others(self, scheduler):
        good = create_series(series_name="Evening News", channel_id="101")
        broken = create_series(series_name="Late Show", channel_id="202")
        scheduler.add_series_recording(good)
        scheduler.add_series_recording(broken)
        scheduler.epg_provider = FakeEpgProvider(
            entries_by_channel={"101": [create_epg_entry("Evening News", at_time(NOW + timedelta(days=1), 18))]},
            errors={"202": ConnectionError("EPG host unreachable")},
        )

        results = await scheduler.run_series_tick()

        assert results == {good.id: 1}
        assert scheduler.get_series_recording(broken.id).last_checked_utc is None
        assert sorted(scheduler.epg_provider.calls) == ["101", "202"]

    async def test_refresh_announces_epg_need(self, scheduler, events):
        rule = create_series()
        scheduler.add_series_recording(rule)

        assert await scheduler.refresh_series(rule.id) == []
        assert events[-1].type == EventType.EPG_REFRESH_NEEDED
        assert events[-1].series is rule

    async def test_refresh_unknown(self, scheduler):
        assert await scheduler.refresh_series("missing") is None

    async def test_refresh_timeout(self, scheduler):
        scheduler.settings = scheduler.settings.model_copy(update={"epg_fetch_timeout_seconds": 0.05})
        rule = create_series()
        scheduler.add_series_recording(rule)
        scheduler.epg_provider = FakeEpgProvider(delay=1)

        with pytest.raises(MatchError, match="timed out"):
            await scheduler.refresh_series(rule.id)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

class TestConfiguration:
    def test_tolerance_must_exceed_poll_interval(self, store, supervisor, recorder_settings):
        settings = recorder_settings.model_copy(update={"recording_poll_interval_seconds": 300})
        with pytest.raises(ConfigurationError):
            RecordingScheduler(store, supervisor, settings)

    def test_apply_settings_updates_collaborators(self, scheduler, recorder_settings):
        settings = recorder_settings.model_copy(update={
            "stop_grace_seconds": 2.0,
            "max_scheduled_recordings": 3,
            "retention_days": 14,
        })
        scheduler.apply_settings(settings)
        assert scheduler.supervisor.stop_grace_seconds == 2.0
        assert scheduler.supervisor.max_scheduled_recordings == 3
        assert scheduler.store.retention_days == 14

    def test_journal_failure_does_not_break_scheduling(self, store, supervisor, recorder_settings):
        scheduler = RecordingScheduler(store, supervisor, recorder_settings,
                                       journal=MagicMock(side_effect=RuntimeError("db locked")))
        assert scheduler.schedule_recording(create_recording())
