"""
Unit tests for scheduler (keepsafe/scheduler.py).

Tests APScheduler configuration and polling job management.
"""

from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.interval import IntervalTrigger

from keepsafe import scheduler as scheduler_module


def _scheduled(job_id):
    job = MagicMock()
    job.id = job_id
    return job


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Clean up after each test."""
        # Reset global scheduler
        scheduler_module.scheduler = None
        scheduler_module.service_ref = None

    def test_init_scheduler(self, mock_scheduler, service):
        """Test scheduler initialization."""
        result = scheduler_module.init_scheduler(service)

        assert result == mock_scheduler
        assert scheduler_module.scheduler == mock_scheduler
        assert scheduler_module.service_ref == service

        call_kwargs = scheduler_module.BackgroundScheduler.call_args[1]
        assert 'jobstores' in call_kwargs
        assert 'executors' in call_kwargs
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['job_defaults']['coalesce'] is True
        assert call_kwargs['timezone'] == 'UTC'

    def test_init_scheduler_only_once(self, mock_scheduler, service):
        """Test scheduler is only initialized once."""
        result1 = scheduler_module.init_scheduler(service)
        result2 = scheduler_module.init_scheduler(service)

        assert result1 == result2
        scheduler_module.BackgroundScheduler.assert_called_once()


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.state = 0
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.service_ref = None

    def test_start_scheduler(self):
        """Test starting the scheduler."""
        self.mock_scheduler.get_jobs.return_value = []

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_not_initialized(self):
        """Test starting scheduler before initialization raises error."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_already_running(self):
        """Test starting scheduler when already running."""
        self.mock_scheduler.running = True

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self):
        """Test stopping the scheduler resets the globals."""
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once()
        assert scheduler_module.scheduler is None
        assert not scheduler_module.is_scheduler_running()

    def test_stop_scheduler_not_running(self):
        self.mock_scheduler.running = False

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_not_called()


class TestSyncJobs:
    """Test syncing plans with polling jobs."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.get_jobs.return_value = []
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.service_ref = None

    def test_sync_jobs_not_initialized(self, service):
        """Test syncing when scheduler not initialized raises error."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.sync_jobs(service)

    def test_adds_polling_jobs(self, service):
        """Test every backup and restore plan gets an interval polling job."""
        scheduler_module.sync_jobs(service)

        calls = {c[1]['id']: c[1] for c in self.mock_scheduler.add_job.call_args_list}
        assert set(calls) == {'backup_docs', 'restore_restore-docs'}

        backup = calls['backup_docs']
        assert backup['func'] == scheduler_module._poll_backup
        assert backup['args'] == ['docs']
        assert isinstance(backup['trigger'], IntervalTrigger)
        assert backup['trigger'].interval.total_seconds() == 1
        assert backup['replace_existing'] is True
        assert calls['restore_restore-docs']['func'] == scheduler_module._poll_restore

    def test_keeps_existing_and_removes_leftovers(self, service):
        """Test existing jobs are kept and jobs of removed plans dropped."""
        self.mock_scheduler.get_jobs.return_value = [
            _scheduled('backup_docs'),
            _scheduled('backup_old'),
            _scheduled('manual_docs_1700000000'),
        ]

        scheduler_module.sync_jobs(service)

        added = [c[1]['id'] for c in self.mock_scheduler.add_job.call_args_list]
        assert added == ['restore_restore-docs']
        self.mock_scheduler.remove_job.assert_called_once_with('backup_old')

    def test_retired_restore_is_removed(self, service):
        """Test a retired run-once restore loses its polling job."""
        self.mock_scheduler.get_jobs.return_value = [
            _scheduled('backup_docs'),
            _scheduled('restore_restore-docs'),
        ]
        service.retire_restore('restore-docs')

        scheduler_module.sync_jobs(service)

        self.mock_scheduler.add_job.assert_not_called()
        self.mock_scheduler.remove_job.assert_called_once_with('restore_restore-docs')

    def test_uses_service_ref(self, service):
        scheduler_module.service_ref = service

        scheduler_module.sync_jobs()

        assert self.mock_scheduler.add_job.call_count == 2


class TestPolling:
    """Test the polling callbacks run in scheduler threads."""

    def setup_method(self):
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        scheduler_module.scheduler = None
        scheduler_module.service_ref = None

    def test_poll_backup_executes_job(self, service):
        scheduler_module.service_ref = service

        with patch.object(service, 'backup_job') as mock_job:
            scheduler_module._poll_backup('docs')

        mock_job.assert_called_once_with('docs')
        mock_job.return_value.execute.assert_called_once()

    def test_poll_backup_logs_errors(self, service):
        """Test unexpected errors never escape into the scheduler."""
        scheduler_module.service_ref = service

        with patch.object(service, 'backup_job') as mock_job:
            mock_job.return_value.execute.side_effect = RuntimeError("boom")
            scheduler_module._poll_backup('docs')

    def test_poll_restore_removes_finished_job(self, service):
        """Test a finished restore drops its polling job."""
        scheduler_module.service_ref = service

        with patch.object(service, 'restore_job') as mock_job:
            mock_job.return_value.finished = True
            scheduler_module._poll_restore('restore-docs')

        self.mock_scheduler.remove_job.assert_called_once_with('restore_restore-docs')

    def test_poll_restore_keeps_pending_job(self, service):
        scheduler_module.service_ref = service

        with patch.object(service, 'restore_job') as mock_job:
            mock_job.return_value.finished = False
            scheduler_module._poll_restore('restore-docs')

        self.mock_scheduler.remove_job.assert_not_called()


class TestManualTrigger:
    """Test manual backup triggers and cancellation."""

    def setup_method(self):
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        scheduler_module.scheduler = None
        scheduler_module.service_ref = None

    def test_trigger_backup_now(self, service):
        """Test a manual trigger forces the job and schedules a one-off poll."""
        scheduler_module.service_ref = service

        scheduler_module.trigger_backup_now('DOCS')

        kwargs = self.mock_scheduler.add_job.call_args[1]
        assert kwargs['trigger'] == 'date'
        assert kwargs['args'] == ['docs']
        assert kwargs['id'].startswith('manual_docs_')
        assert service.backup_job('docs')._force.is_set()

    def test_trigger_unknown_plan(self, service):
        scheduler_module.service_ref = service

        with pytest.raises(ValueError, match="not found"):
            scheduler_module.trigger_backup_now('missing')

    def test_trigger_not_initialized(self, service):
        scheduler_module.scheduler = None
        scheduler_module.service_ref = service

        with pytest.raises(RuntimeError):
            scheduler_module.trigger_backup_now('docs')

    def test_cancel_idle_backup(self, service):
        scheduler_module.service_ref = service

        assert scheduler_module.cancel_backup('docs') is False

    def test_cancel_without_service(self):
        assert scheduler_module.cancel_backup('docs') is False


class TestScheduledJobsInfo:
    """Test scheduled job listing."""

    def teardown_method(self):
        scheduler_module.scheduler = None

    def test_get_scheduled_jobs(self):
        job = _scheduled('backup_docs')
        job.name = 'Backup: Documents'
        job.next_run_time = None
        scheduler_module.scheduler = MagicMock()
        scheduler_module.scheduler.get_jobs.return_value = [job]

        jobs = scheduler_module.get_scheduled_jobs()

        assert jobs[0]['id'] == 'backup_docs'
        assert jobs[0]['name'] == 'Backup: Documents'
        assert jobs[0]['next_run'] is None

    def test_get_scheduled_jobs_not_initialized(self):
        assert scheduler_module.get_scheduled_jobs() == []
