"""Scheduling, admission control and isolated execution of sync runs.

The :class:`Orchestrator` owns:

- one cron :class:`ScheduleEntry` per enabled profile, re-derived by
  :meth:`Orchestrator.reload` whenever the configuration changes;
- the set of profile ids currently executing, backed by a per-profile lock
  file so separate orchestrator processes also exclude each other.  A
  trigger for a busy profile is rejected immediately, never queued;
- a bounded :class:`LogBuffer`.  Workers never touch it directly: they send
  events over a queue and a supervisor thread appends them.

Every admitted trigger runs in its own worker, a separate process by
default or a thread when ``isolation="thread"``, with its own working
directory under ``{data_dir}/work``.  A worker that crashes or hangs
only ever affects its own profile.
"""

from __future__ import annotations

import collections
import copy
import enum
import hashlib
import logging
import multiprocessing
import queue
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from croniter import croniter
from filelock import FileLock, Timeout

from ledger_sync.config import effective_taxonomy
from ledger_sync.executor import run_request
from ledger_sync.models import (
    AppConfig,
    CategoryGroup,
    Command,
    ExecutionRecord,
    ExecutionResult,
    LogEvent,
    LogLevel,
    Trigger,
    WorkerRequest,
)

logger = logging.getLogger(__name__)

SettingsLoader = Callable[[], tuple[AppConfig, list[CategoryGroup]]]
Runner = Callable[[WorkerRequest, Callable[[LogEvent], None]], ExecutionResult]

POLL_INTERVAL = 0.5
MAX_SCHEDULER_SLEEP = 60.0

_EVENT = "event"
_RESULT = "result"


class Admission(str, enum.Enum):
    STARTED = "started"
    BUSY = "busy"
    UNKNOWN_PROFILE = "unknown_profile"
    DISABLED = "disabled"


@dataclass
class ScheduleEntry:
    profile_id: str
    expression: str
    next_fire: datetime


class LogBuffer:
    """Append-only, size-bounded, thread-safe log of events."""

    def __init__(self, max_entries: int = 100) -> None:
        self._entries: collections.deque[LogEvent] = collections.deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def append(self, event: LogEvent) -> None:
        with self._lock:
            self._entries.append(event)

    def entries(self, profile_id: str | None = None) -> list[LogEvent]:
        with self._lock:
            events = list(self._entries)
        if profile_id is None:
            return events
        return [e for e in events if e.profile_id == profile_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def work_dir_for(root: Path, config: AppConfig, profile_id: str) -> Path:
    """Exclusive working directory of *profile_id*.

    The directory name is the id with unsafe characters replaced, plus a
    short hash of the raw id, so distinct ids never share a directory.

    Raises:
        ValueError: If the resulting path would leave ``{data_dir}/work``.
    """
    base = Path(config.data_dir)
    if not base.is_absolute():
        base = root / base
    work_root = base / "work"
    safe_id = re.sub(r"[^A-Za-z0-9_-]", "_", profile_id)
    digest = hashlib.sha1(profile_id.encode("utf-8")).hexdigest()[:8]
    path = work_root / f"{safe_id}-{digest}"
    if path.resolve().parent != work_root.resolve():
        raise ValueError(f"Work directory for profile {profile_id!r} escapes {work_root}")
    return path


def _lock_path(work_dir: Path) -> Path:
    return work_dir.parent / f"{work_dir.name}.lock"


def _worker_main(runner: Runner, request: WorkerRequest, channel) -> None:
    """Body of every worker: run *request*, stream events, send the result."""
    try:
        result = runner(request, lambda event: channel.put((_EVENT, event)))
    except Exception as exc:
        logger.exception("Worker for profile %s crashed", request.profile.id)
        result = ExecutionResult(success=False, message=f"Worker crashed: {exc}")
    channel.put((_RESULT, result))


def _process_main(runner: Runner, request: WorkerRequest, channel) -> None:
    """Entry point of a spawned worker process.

    A spawned interpreter starts without the parent's logging setup, so the
    parent's root level is reapplied before running.
    """
    logging.basicConfig(level=request.log_level, format="%(levelname)s: %(message)s")
    _worker_main(runner, request, channel)


class Orchestrator:
    """Runs sync commands for profiles, on a schedule or on request.

    Args:
        root: Data root; relative ``data_dir`` settings resolve against it.
        loader: Returns a fresh ``(AppConfig, default taxonomy)`` snapshot.
            Called on every trigger.
        runner: Executes one :class:`WorkerRequest`.  Must be a
            module-level function when *isolation* is ``"process"``.
        isolation: ``"process"`` or ``"thread"``.  ``None`` uses the value
            from the configuration at trigger time.
        max_log_entries: Capacity of the log buffer.
        on_event: Optional callback invoked for each event after it has
            been buffered.
        clock: Returns the current time (naive, local).
    """

    def __init__(
        self,
        root: Path,
        loader: SettingsLoader,
        runner: Runner = run_request,
        isolation: str | None = None,
        max_log_entries: int = 100,
        on_event: Callable[[LogEvent], None] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.root = Path(root)
        self.loader = loader
        self.runner = runner
        self.isolation = isolation
        self.logs = LogBuffer(max_log_entries)
        self.on_event = on_event
        self.clock = clock

        self._lock = threading.Lock()
        self._running: dict[str, threading.Event] = {}
        self._file_locks: dict[str, FileLock] = {}
        self._records: dict[str, ExecutionRecord] = {}
        self._schedule: dict[str, ScheduleEntry] = {}
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._scheduler: threading.Thread | None = None

    # -- commands ----------------------------------------------------------

    def request(
        self,
        profile_id: str,
        command: Command = Command.SYNC,
        trigger: Trigger = Trigger.MANUAL,
    ) -> Admission:
        """Start *command* for *profile_id* unless it is already executing.

        Returns immediately; the run continues in the background.  Use
        :meth:`wait` to block until it finishes.
        """
        config, default_taxonomy = self.loader()
        profile = config.get_profile(profile_id)
        if profile is None:
            self._publish(LogEvent.now(f"Unknown profile {profile_id!r}.", LogLevel.ERROR))
            return Admission.UNKNOWN_PROFILE
        if trigger == Trigger.SCHEDULE and not profile.enabled:
            logger.info("Skipping scheduled run of disabled profile %s", profile_id)
            return Admission.DISABLED

        with self._lock:
            if profile_id in self._running:
                busy = True
            else:
                busy = False
                self._running[profile_id] = threading.Event()

        if busy:
            self._publish(
                LogEvent.now(
                    f"{command.value} request for {profile.name!r} ignored: already running.",
                    LogLevel.INFO,
                    profile_id,
                )
            )
            return Admission.BUSY

        try:
            work_dir = work_dir_for(self.root, config, profile_id)
            if not self._acquire_file_lock(profile_id, work_dir):
                self._release(profile_id)
                self._publish(
                    LogEvent.now(
                        f"{command.value} request for {profile.name!r} ignored: "
                        "already running in another process.",
                        LogLevel.INFO,
                        profile_id,
                    )
                )
                return Admission.BUSY

            request = WorkerRequest(
                profile=profile.snapshot(),
                taxonomy=copy.deepcopy(effective_taxonomy(profile, default_taxonomy)),
                command=command,
                trigger=trigger,
                work_dir=work_dir,
                provider_base_url=config.provider_base_url,
                batch_size=config.batch_size,
                lookback_days=config.lookback_days,
                purge_work_dir=config.purge_work_dir,
                log_level=logging.getLogger().getEffectiveLevel(),
            )
            mode = self.isolation or config.isolation
            supervisor = threading.Thread(
                target=self._supervise,
                args=(request, mode),
                name=f"ledger-sync-{profile_id}",
                daemon=True,
            )
            supervisor.start()
        except Exception:
            self._release(profile_id)
            raise

        return Admission.STARTED

    def wait(self, profile_id: str, timeout: float | None = None) -> ExecutionRecord | None:
        """Block until *profile_id* is idle and return its latest record."""
        with self._lock:
            done = self._running.get(profile_id)
        if done is not None and not done.wait(timeout):
            return None
        with self._lock:
            return self._records.get(profile_id)

    def is_running(self, profile_id: str) -> bool:
        with self._lock:
            return profile_id in self._running

    def last_record(self, profile_id: str) -> ExecutionRecord | None:
        with self._lock:
            return self._records.get(profile_id)

    def status(self) -> dict:
        with self._lock:
            return {
                "running": sorted(self._running),
                "next_runs": {pid: e.next_fire for pid, e in self._schedule.items()},
                "last_results": dict(self._records),
            }

    # -- scheduling ------------------------------------------------------

    def reload(self) -> None:
        """Re-derive the schedule from the current configuration."""
        config, _ = self.loader()
        now = self.clock()
        entries: dict[str, ScheduleEntry] = {}

        for profile in config.profiles:
            if not profile.enabled or not profile.schedule:
                continue
            if not croniter.is_valid(profile.schedule):
                self._publish(
                    LogEvent.now(
                        f"Invalid schedule {profile.schedule!r} for {profile.name!r}; not scheduled.",
                        LogLevel.ERROR,
                        profile.id,
                    )
                )
                continue
            next_fire = croniter(profile.schedule, now).get_next(datetime)
            entries[profile.id] = ScheduleEntry(profile.id, profile.schedule, next_fire)
            self._publish(
                LogEvent.now(
                    f"Schedule set for {profile.name!r}: {profile.schedule}", LogLevel.INFO, profile.id
                )
            )

        with self._lock:
            self._schedule = entries
        self._wakeup.set()

    def start(self) -> None:
        """Load the schedule and start the scheduler thread."""
        self.reload()
        self._stopping.clear()
        self._scheduler = threading.Thread(
            target=self._schedule_loop, name="ledger-sync-scheduler", daemon=True
        )
        self._scheduler.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the scheduler.  Running executions are left to finish."""
        self._stopping.set()
        self._wakeup.set()
        if self._scheduler is not None:
            self._scheduler.join(timeout)
            self._scheduler = None

    def fire_due(self) -> list[str]:
        """Trigger every profile whose next fire time has passed.

        Returns:
            The ids of profiles that were due.
        """
        now = self.clock()
        due: list[str] = []
        with self._lock:
            for entry in self._schedule.values():
                if entry.next_fire <= now:
                    due.append(entry.profile_id)
                    entry.next_fire = croniter(entry.expression, now).get_next(datetime)

        for profile_id in due:
            try:
                self.request(profile_id, Command.SYNC, Trigger.SCHEDULE)
            except Exception:
                logger.exception("Scheduled trigger for %s failed", profile_id)
        return due

    def _seconds_until_next(self) -> float:
        with self._lock:
            if not self._schedule:
                return MAX_SCHEDULER_SLEEP
            earliest = min(e.next_fire for e in self._schedule.values())
        delay = (earliest - self.clock()).total_seconds()
        return max(0.0, min(delay, MAX_SCHEDULER_SLEEP))

    def _schedule_loop(self) -> None:
        while not self._stopping.is_set():
            self.fire_due()
            self._wakeup.wait(self._seconds_until_next())
            self._wakeup.clear()

    # -- execution -------------------------------------------------------

    def _supervise(self, request: WorkerRequest, mode: str) -> None:
        profile_id = request.profile.id
        started = datetime.now()
        result = ExecutionResult(success=False, message="Worker did not report a result")
        try:
            if mode == "thread":
                result = self._run_in_thread(request)
            else:
                result = self._run_in_process(request)
        except Exception as exc:
            logger.exception("Supervisor for profile %s failed", profile_id)
            result = ExecutionResult(success=False, message=f"Worker failed: {exc}")
        finally:
            record = ExecutionRecord(
                profile_id=profile_id,
                command=request.command,
                trigger=request.trigger,
                started_at=started,
                finished_at=datetime.now(),
                result=result,
            )
            with self._lock:
                self._records[profile_id] = record
            self._release(profile_id)

    def _run_in_thread(self, request: WorkerRequest) -> ExecutionResult:
        channel: queue.Queue = queue.Queue()
        worker = threading.Thread(
            target=_worker_main,
            args=(self.runner, request, channel),
            name=f"ledger-sync-worker-{request.profile.id}",
            daemon=True,
        )
        worker.start()
        result = self._pump(channel, worker.is_alive)
        worker.join()
        if result is None:
            return ExecutionResult(success=False, message="Worker thread exited without a result")
        return result

    def _run_in_process(self, request: WorkerRequest) -> ExecutionResult:
        ctx = multiprocessing.get_context("spawn")
        channel = ctx.Queue()
        process = ctx.Process(
            target=_process_main,
            args=(self.runner, request, channel),
            name=f"ledger-sync-worker-{request.profile.id}",
            daemon=True,
        )
        process.start()
        try:
            result = self._pump(channel, process.is_alive)
        finally:
            process.join(POLL_INTERVAL * 10)
            channel.close()
        if result is None:
            message = f"Worker process exited unexpectedly (exit code {process.exitcode})"
            self._publish(LogEvent.now(message, LogLevel.ERROR, request.profile.id))
            return ExecutionResult(success=False, message=message)
        return result

    def _pump(self, channel, is_alive: Callable[[], bool]) -> ExecutionResult | None:
        """Forward events from *channel* until the result arrives.

        Returns ``None`` if the worker died without sending a result.
        """
        while True:
            try:
                kind, payload = channel.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if is_alive():
                    continue
                # One last look: the worker may have exited right after
                # sending its final messages.
                try:
                    kind, payload = channel.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    return None
            if kind == _RESULT:
                return payload
            self._publish(payload)

    def _publish(self, event: LogEvent) -> None:
        self.logs.append(event)
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception:
                logger.exception("Log event callback failed")

    def _acquire_file_lock(self, profile_id: str, work_dir: Path) -> bool:
        """Take the cross-process lock guarding *work_dir* without waiting.

        Another orchestrator (a second ``serve`` or a one-shot CLI command)
        holding it means the profile is already executing elsewhere.
        """
        work_dir.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(_lock_path(work_dir), thread_local=False)
        try:
            lock.acquire(timeout=0)
        except Timeout:
            return False
        with self._lock:
            self._file_locks[profile_id] = lock
        return True

    def _release(self, profile_id: str) -> None:
        with self._lock:
            done = self._running.pop(profile_id, None)
            lock = self._file_locks.pop(profile_id, None)
        if lock is not None:
            lock.release()
        if done is not None:
            done.set()
