"""
Scheduled jobs wrapping the backup and restore engines.

A job is polled periodically by the scheduler. Each poll re-reads the plans,
decides whether a run is due and starts at most one run at a time. Every run
is recorded as a JobRun with timestamped logs; listeners receive JobEvents
for run start, progress and completion.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from keepsafe.errors import ConfigurationError, OperationCancelled
from keepsafe.models import find_plan
from .progress import ProgressEvent, Stage
from .restore import effective_target
from .schedule import compute_next_due, is_due


logger = logging.getLogger(__name__)

HISTORY_SIZE = 20


class JobStatus(str, Enum):
    IDLE = 'Idle'
    DISABLED = 'Disabled'
    SCHEDULED = 'Scheduled'
    RUNNING = 'Running'
    SUCCESS = 'Success'
    FAILED = 'Failed'
    CANCELLED = 'Cancelled'
    FINISHED = 'Finished'


class RunStatus(str, Enum):
    RUNNING = 'running'
    SUCCESS = 'success'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass
class JobRun:
    """Execution record of one job run."""
    job_id: str
    kind: str
    started_utc: datetime
    status: RunStatus = RunStatus.RUNNING
    completed_utc: Optional[datetime] = None
    error: Optional[str] = None
    artifact_name: Optional[str] = None
    size_bytes: Optional[int] = None
    files_written: Optional[int] = None
    logs: List[str] = field(default_factory=list)

    def log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[{self.kind} {self.job_id}] {message}")

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.completed_utc:
            return None
        return (self.completed_utc - self.started_utc).total_seconds()


@dataclass(frozen=True)
class JobEvent:
    job_id: str
    kind: str
    run: Optional[JobRun] = None
    progress: Optional[ProgressEvent] = None


@dataclass(frozen=True)
class JobSnapshot:
    job_id: str
    status: JobStatus
    percent: int
    stage: Optional[Stage]
    planned_start_utc: Optional[datetime]
    last_run: Optional[JobRun]


def _local_now() -> datetime:
    return datetime.now().astimezone()


class Job:
    """
    Shared run bookkeeping: in-flight flag, forced runs, cancellation,
    progress and run history.
    """

    kind = 'job'

    def __init__(self, job_id: str, on_event: Optional[Callable[[JobEvent], None]] = None):
        self.job_id = job_id
        self.on_event = on_event

        self.status = JobStatus.IDLE
        self.percent = 0
        self.stage: Optional[Stage] = None
        self.planned_start_utc: Optional[datetime] = None
        self.history = deque(maxlen=HISTORY_SIZE)

        self._lock = threading.Lock()
        self._in_flight = False
        self._force = threading.Event()
        self._cancel = threading.Event()
        self._current: Optional[JobRun] = None

    @property
    def is_running(self) -> bool:
        return self._in_flight

    @property
    def last_run(self) -> Optional[JobRun]:
        return self.history[-1] if self.history else None

    def force_run(self):
        """Run on the next poll regardless of the schedule."""
        self._force.set()

    def cancel(self) -> bool:
        """
        Request cooperative cancellation of the current run.

        Returns:
            True if a run was in flight
        """
        if not self._in_flight:
            return False
        self._cancel.set()
        return True

    def check_cancelled(self):
        if self._cancel.is_set():
            raise OperationCancelled(f"{self.kind.capitalize()} {self.job_id} cancelled")

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.job_id,
            status=self.status,
            percent=self.percent,
            stage=self.stage,
            planned_start_utc=self.planned_start_utc,
            last_run=self._current or self.last_run
        )

    def _emit(self, kind: str, run: Optional[JobRun] = None, progress: Optional[ProgressEvent] = None):
        if not self.on_event:
            return
        try:
            self.on_event(JobEvent(self.job_id, kind, run, progress))
        except Exception as e:
            logger.warning(f"Job event listener failed for {self.job_id}: {e}")

    def _on_progress(self, event: ProgressEvent):
        if event.stage != self.stage and self._current is not None:
            self._current.log(f"Stage: {event.stage.value}")
        self.stage = event.stage
        self.percent = event.percent
        self._emit('progress', self._current, event)

    def _claim(self) -> bool:
        with self._lock:
            if self._in_flight:
                return False
            self._in_flight = True
            self._cancel.clear()
            self._force.clear()
            return True

    def _run(self, work: Callable[[JobRun], None]) -> JobRun:
        """Run work under a new JobRun record; the caller holds the claim."""
        run = JobRun(job_id=self.job_id, kind=self.kind, started_utc=datetime.now(timezone.utc))
        self._current = run
        self.status = JobStatus.RUNNING
        self.percent = 0
        self.stage = None
        self._emit('started', run)

        try:
            work(run)
            run.status = RunStatus.SUCCESS
            self.status = JobStatus.SUCCESS
            run.log(f"{self.kind.capitalize()} completed successfully")
            self._emit('succeeded', run)

        except OperationCancelled as e:
            run.status = RunStatus.CANCELLED
            run.error = str(e)
            self.status = JobStatus.CANCELLED
            run.log(f"{self.kind.capitalize()} cancelled")
            self._emit('cancelled', run)

        except Exception as e:
            run.status = RunStatus.FAILED
            run.error = str(e)
            self.status = JobStatus.FAILED
            run.log(f"{self.kind.capitalize()} failed: {e}")
            logger.exception(f"{self.kind.capitalize()} {self.job_id} failed")
            self._emit('failed', run)

        finally:
            run.completed_utc = datetime.now(timezone.utc)
            self.history.append(run)
            self._current = None
            with self._lock:
                self._in_flight = False
                self._cancel.clear()

        return run


class BackupJob(Job):
    """
    Polled job for one backup plan.

    Args:
        plan_id: Backup plan identifier
        get_plans: Callable returning (backup_plans, restore_plans)
        engine: BackupEngine
        storage_factory: Callable building a BackupStorage from a target
        on_event: Optional JobEvent listener
    """

    kind = 'backup'

    def __init__(self, plan_id: str, get_plans, engine, storage_factory,
                 on_event: Optional[Callable[[JobEvent], None]] = None):
        super().__init__(plan_id, on_event)
        self.get_plans = get_plans
        self.engine = engine
        self.storage_factory = storage_factory
        self._schedule = None

    def _load_plan(self):
        backups, _ = self.get_plans()
        return find_plan(backups, self.job_id)

    def execute(self, now: Optional[datetime] = None) -> Optional[JobRun]:
        """
        Poll the job: run the backup if it is due or forced.

        Disabled plans only run when forced.

        Returns:
            JobRun if a run happened, otherwise None
        """
        plan = self._load_plan()
        if plan is None or (not plan.enabled and not self._force.is_set()):
            if not self._in_flight:
                self.status = JobStatus.DISABLED
                self.planned_start_utc = None
                self._schedule = None
            return None

        now = now or _local_now()

        # Replan when first seen or when the schedule changed
        if self.planned_start_utc is None or plan.schedule != self._schedule:
            self._schedule = plan.schedule
            self.planned_start_utc = compute_next_due(plan.schedule, now)
            if not self._in_flight:
                self.status = JobStatus.SCHEDULED

        if not self._force.is_set() and not is_due(now, self.planned_start_utc):
            return None

        if not self._claim():
            logger.debug(f"Backup {self.job_id} already running, skipping poll")
            return None

        def work(run: JobRun):
            run.log(f"Starting backup: {plan.name or plan.id}")
            with self.storage_factory(plan.target) as storage:
                result = self.engine.create_backup(
                    plan,
                    storage,
                    progress=self._on_progress,
                    cancellation_check=self.check_cancelled
                )
            run.artifact_name = result.artifact_name
            run.size_bytes = result.size_bytes
            run.log(f"Artifact: {result.artifact_name} ({result.size_bytes / 1024 / 1024:.2f} MB)")
            if result.retention is not None and result.retention.failures:
                for failure in result.retention.failures:
                    run.log(f"Warning: {failure}")

        run = self._run(work)

        self.planned_start_utc = compute_next_due(plan.schedule, _local_now())
        return run


class RestoreJob(Job):
    """
    Polled job for one restore plan.

    Run-once plans run on the first poll and then report Finished, calling
    on_run_once_finished(restore_id) whether the run succeeded or not. Other
    plans run only when forced.
    """

    kind = 'restore'

    def __init__(self, restore_id: str, get_plans, engine, storage_factory,
                 on_run_once_finished: Optional[Callable[[str], None]] = None,
                 on_event: Optional[Callable[[JobEvent], None]] = None):
        super().__init__(restore_id, on_event)
        self.get_plans = get_plans
        self.engine = engine
        self.storage_factory = storage_factory
        self.on_run_once_finished = on_run_once_finished
        self.finished = False

    def execute(self, now: Optional[datetime] = None) -> Optional[JobRun]:
        """
        Poll the job: run the restore when enabled and due.

        Returns:
            JobRun if a run happened, otherwise None
        """
        if self.finished:
            return None

        backups, restores = self.get_plans()
        restore_plan = find_plan(restores, self.job_id)
        if restore_plan is None or not restore_plan.enabled:
            if not self._in_flight:
                self.status = JobStatus.DISABLED
            return None

        if not restore_plan.run_once and not self._force.is_set():
            self.status = JobStatus.IDLE
            return None

        if not self._claim():
            return None

        def work(run: JobRun):
            backup_plan = find_plan(backups, restore_plan.backup_plan_id)
            if backup_plan is None:
                raise ConfigurationError(
                    f"Backup plan not found for restore {restore_plan.id}: {restore_plan.backup_plan_id}"
                )

            run.artifact_name = restore_plan.artifact_name
            run.log(f"Restoring {restore_plan.artifact_name} to {restore_plan.restore_to_directory}")
            with self.storage_factory(effective_target(restore_plan, backup_plan)) as storage:
                result = self.engine.restore_chain(
                    restore_plan,
                    backup_plan,
                    storage,
                    progress=self._on_progress,
                    cancellation_check=self.check_cancelled
                )
            run.files_written = result.files_written
            run.log(f"Restored {result.files_written} files from {', '.join(result.artifacts)}")

        run = self._run(work)

        if restore_plan.run_once:
            self.finished = True
            self.status = JobStatus.FINISHED
            if self.on_run_once_finished:
                try:
                    self.on_run_once_finished(self.job_id)
                except Exception as e:
                    logger.warning(f"Run-once callback failed for restore {self.job_id}: {e}")

        return run
