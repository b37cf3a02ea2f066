"""
Recorder process supervision.

Owns the OS-level lifecycle of the external capture processes: launching,
capturing their output, graceful stop with a bounded wait, hard kill, and
reporting exits. One process per recording id.
"""
import logging
import os
import signal
import subprocess
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from recorder.command_builder import RecorderCommandBuilder
from recorder.errors import ProcessStartError, ProcessStopError, RecordingConflictError

logger = logging.getLogger(__name__)

DEFAULT_STOP_GRACE_SECONDS = 5.0
OUTPUT_TAIL_LINES = 200


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class RecorderHandle:
    """A live recorder process. Never persisted."""
    recording_id: str
    title: str
    output_path: str
    command: List[str]
    process: subprocess.Popen
    manual: bool = False
    started_at: datetime = field(default_factory=datetime.utcnow)
    output_lines: deque = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES))
    stop_requested: bool = False
    exit_code: Optional[int] = None
    reader: Optional[threading.Thread] = field(default=None, repr=False)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def is_alive(self) -> bool:
        return self.process.poll() is None

    def output_tail(self, lines: int = 10) -> str:
        return "\n".join(list(self.output_lines)[-lines:])


@dataclass
class RecorderEvent:
    """An event emitted by the supervisor."""
    type: str  # "started", "stopped", "failed", "exited"
    recording_id: str
    handle: Optional[RecorderHandle] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------

class ProcessSupervisor:
    """
    Launches and stops recorder processes.

    Concurrency policy is configurable: ``max_manual_recordings`` caps
    user-started recordings and ``max_scheduled_recordings`` caps scheduler
    recordings. A cap of 0 means unlimited.
    """

    def __init__(
        self,
        builder: RecorderCommandBuilder,
        stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS,
        max_manual_recordings: int = 1,
        max_scheduled_recordings: int = 0,
    ) -> None:
        self.builder = builder
        self.stop_grace_seconds = stop_grace_seconds
        self.max_manual_recordings = max_manual_recordings
        self.max_scheduled_recordings = max_scheduled_recordings
        self._handles: dict[str, RecorderHandle] = {}
        self._lock = threading.RLock()
        self._callbacks: List[Callable[[RecorderEvent], None]] = []
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="recorder-stop")

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on_event(self, callback: Callable[[RecorderEvent], None]) -> None:
        """Register an event listener."""
        self._callbacks.append(callback)

    def _emit(self, event: RecorderEvent) -> None:
        for cb in list(self._callbacks):
            try:
                cb(event)
            except Exception as e:
                # Listener failures must not affect process supervision
                logger.exception(f"[RECORDER] Event listener failed for {event.type}: {e}")

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_handle(self, recording_id: str) -> Optional[RecorderHandle]:
        with self._lock:
            return self._handles.get(recording_id)

    def active_handles(self) -> list[RecorderHandle]:
        with self._lock:
            return list(self._handles.values())

    def manual_recording_active(self) -> bool:
        return any(h.manual for h in self.active_handles())

    def _check_policy(self, manual: bool) -> None:
        handles = self._handles.values()
        if manual:
            running = sum(1 for h in handles if h.manual)
            if self.max_manual_recordings and running >= self.max_manual_recordings:
                raise RecordingConflictError(
                    "A recording is already in progress. Stop it before starting a new one."
                )
        else:
            running = sum(1 for h in handles if not h.manual)
            if self.max_scheduled_recordings and running >= self.max_scheduled_recordings:
                raise RecordingConflictError(
                    f"Maximum of {self.max_scheduled_recordings} concurrent scheduled recordings reached"
                )

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    def start(
        self,
        recording_id: str,
        stream_url: str,
        output_path: str,
        title: str,
        manual: bool = False,
        args_template: Optional[str] = None,
    ) -> RecorderHandle:
        """
        Launch a recorder process.

        Returns:
            The RecorderHandle for the running process.

        Raises:
            ConfigurationError: No stream URL or no recorder binary configured.
            ProcessStartError: The binary is missing or the launch failed.
            RecordingConflictError: The concurrency policy rejected the start.
        """
        try:
            with self._lock:
                if recording_id in self._handles:
                    raise ProcessStartError(f"Recording '{title}' already has a running recorder")
                self._check_policy(manual)

                command = self.builder.build(stream_url, title, output_path, args_template)
                binary = command[0]
                if os.sep in binary and not os.path.exists(binary):
                    raise ProcessStartError(f"Recorder binary not found: {binary}")

                try:
                    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
                    process = subprocess.Popen(
                        command,
                        stdin=subprocess.DEVNULL,
                        stdout=subprocess.PIPE,
                        stderr=subprocess.STDOUT,
                        universal_newlines=True,
                        errors="replace",
                    )
                except (OSError, ValueError) as e:
                    raise ProcessStartError(f"Failed to launch recorder for '{title}': {e}") from e

                handle = RecorderHandle(
                    recording_id=recording_id,
                    title=title,
                    output_path=output_path,
                    command=command,
                    process=process,
                    manual=manual,
                )
                handle.reader = threading.Thread(
                    target=self._pump_output,
                    args=(handle,),
                    name=f"recorder-output-{recording_id[:8]}",
                    daemon=True,
                )
                self._handles[recording_id] = handle
        except Exception as e:
            self._emit(RecorderEvent(type="failed", recording_id=recording_id, error=str(e)))
            raise

        handle.reader.start()
        logger.info(f"[RECORDER] Started '{title}' (pid={handle.pid}) -> {output_path}")
        self._emit(RecorderEvent(type="started", recording_id=recording_id, handle=handle))
        return handle

    def _pump_output(self, handle: RecorderHandle) -> None:
        """Drain recorder output line by line and report unrequested exits."""
        try:
            stream = handle.process.stdout
            if stream is not None:
                for line in stream:
                    line = line.rstrip("\r\n")
                    if line:
                        handle.output_lines.append(line)
                        logger.debug("[RECORDER] %s: %s", handle.title, line)
        except (OSError, ValueError):
            # Pipe closed underneath us by stop()/kill()
            pass

        if handle.stop_requested:
            return

        exit_code = handle.process.wait()
        handle.exit_code = exit_code
        if handle.stop_requested:
            return

        error = None
        if exit_code != 0:
            error = f"Recorder exited with code {exit_code}"
            tail = handle.output_tail(5)
            if tail:
                error = f"{error}: {tail}"
        logger.warning(f"[RECORDER] '{handle.title}' exited on its own with code {exit_code}")
        # Released only after listeners have handled the exit
        try:
            self._emit(RecorderEvent(type="exited", recording_id=handle.recording_id, handle=handle, error=error))
        finally:
            self._release(handle)

    # -------------------------------------------------------------------------
    # Stop
    # -------------------------------------------------------------------------

    def _request_graceful_exit(self, handle: RecorderHandle) -> None:
        if os.name == "nt":
            handle.process.terminate()
        else:
            # ffmpeg finalizes the output container on SIGINT
            handle.process.send_signal(signal.SIGINT)

    def stop(self, handle: RecorderHandle, grace_seconds: Optional[float] = None) -> Optional[int]:
        """
        Stop a recorder: graceful request, bounded wait, then hard kill.

        OS resources are released on every exit route.

        Returns:
            The process exit code.

        Raises:
            ProcessStopError: If signalling or reaping the process fails.
        """
        grace = self.stop_grace_seconds if grace_seconds is None else grace_seconds
        handle.stop_requested = True
        try:
            if handle.process.poll() is None:
                self._request_graceful_exit(handle)
                try:
                    exit_code = handle.process.wait(timeout=grace)
                except subprocess.TimeoutExpired:
                    logger.warning(
                        f"[RECORDER] '{handle.title}' did not exit within {grace}s, killing"
                    )
                    handle.process.kill()
                    exit_code = handle.process.wait(timeout=grace)
            else:
                exit_code = handle.process.returncode
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProcessStopError(f"Failed to stop recorder for '{handle.title}': {e}") from e
        finally:
            self._release(handle)

        handle.exit_code = exit_code
        logger.info(f"[RECORDER] Stopped '{handle.title}' (exit code {exit_code})")
        self._emit(RecorderEvent(type="stopped", recording_id=handle.recording_id, handle=handle))
        return exit_code

    def kill(self, handle: RecorderHandle) -> Optional[int]:
        """Hard-kill a recorder without a graceful request."""
        handle.stop_requested = True
        exit_code = None
        try:
            if handle.process.poll() is None:
                handle.process.kill()
                try:
                    exit_code = handle.process.wait(timeout=self.stop_grace_seconds)
                except subprocess.TimeoutExpired:
                    logger.error(f"[RECORDER] '{handle.title}' survived kill, abandoning pid={handle.pid}")
            else:
                exit_code = handle.process.returncode
        except OSError as e:
            raise ProcessStopError(f"Failed to kill recorder for '{handle.title}': {e}") from e
        finally:
            self._release(handle)

        handle.exit_code = exit_code
        logger.warning(f"[RECORDER] Killed '{handle.title}'")
        self._emit(RecorderEvent(type="stopped", recording_id=handle.recording_id, handle=handle))
        return exit_code

    def stop_async(self, handle: RecorderHandle) -> Future:
        """Dispatch a stop on the worker pool and return immediately."""
        future = self._executor.submit(self.stop, handle)
        future.add_done_callback(self._log_async_failure)
        return future

    @staticmethod
    def _log_async_failure(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"[RECORDER] Background stop failed: {error}")

    def _release(self, handle: RecorderHandle) -> None:
        with self._lock:
            if self._handles.get(handle.recording_id) is handle:
                del self._handles[handle.recording_id]
        stream = getattr(handle.process, "stdout", None)
        if stream is not None:
            try:
                stream.close()
            except OSError:
                pass
        reader = handle.reader
        if reader is not None and reader.is_alive() and reader is not threading.current_thread():
            reader.join(timeout=1.0)

    def shutdown(self) -> None:
        """Stop every running recorder and the worker pool."""
        for handle in self.active_handles():
            try:
                self.stop(handle)
            except ProcessStopError as e:
                logger.error(f"[RECORDER] {e}")
        self._executor.shutdown(wait=True)
