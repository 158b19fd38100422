"""
Unit tests for configuration and service wiring (keepsafe/config.py, keepsafe/__init__.py).
"""

import logging
from unittest.mock import patch

import pytest

from keepsafe import Service, configure_logging, create_service
from keepsafe.backup.jobs import BackupJob, RestoreJob
from keepsafe.backup.storage import LocalStorage
from keepsafe.config import load_config
from keepsafe.models import LocalTarget


class TestLoadConfig:
    """Test configuration loading."""

    def test_testing_config(self):
        config = load_config('testing')

        assert config['DEBUG'] is True
        assert config['SCHEDULER_POLL_SECONDS'] == 1
        assert config['DEFAULT_KDF_ITERATIONS'] == 1000

    def test_overrides(self):
        config = load_config('production', STAGING_DIR='/tmp/staging')

        assert config['STAGING_DIR'] == '/tmp/staging'
        assert config['DEBUG'] is False

    def test_default_from_environment(self, monkeypatch):
        monkeypatch.setenv('KEEPSAFE_ENV', 'testing')
        assert load_config()['SCHEDULER_POLL_SECONDS'] == 1

    def test_unknown(self):
        with pytest.raises(KeyError):
            load_config('staging')


class TestConfigureLogging:
    """Test logging setup."""

    def test_handlers(self, config):
        with patch('keepsafe.logging.basicConfig') as mock_basic:
            configure_logging(config)

        kwargs = mock_basic.call_args[1]
        assert kwargs['level'] == logging.DEBUG
        assert len(kwargs['handlers']) == 2
        assert kwargs['force'] is True
        for handler in kwargs['handlers']:
            handler.close()


class TestService:
    """Test Service wiring."""

    def test_jobs_are_cached_case_insensitively(self, service):
        job = service.backup_job('docs')

        assert isinstance(job, BackupJob)
        assert service.backup_job('DOCS') is job
        assert isinstance(service.restore_job('restore-docs'), RestoreJob)

    def test_retire_restore(self, service):
        """Test retired restore plans disappear from the plan list."""
        service.retire_restore('RESTORE-DOCS')

        backups, restores = service.get_plans()

        assert [p.id for p in backups] == ['docs']
        assert restores == []

    def test_storage_for_default_local_dir(self, service, config):
        storage = service.storage_for(LocalTarget(''))

        assert isinstance(storage, LocalStorage)
        assert str(storage.directory) == config['LOCAL_BACKUP_DIR']

    def test_default_plans_loader(self, config, tmp_path):
        """Test plans come from the configured plans file."""
        plans_file = tmp_path / 'data' / 'plans.json'
        plans_file.parent.mkdir(parents=True, exist_ok=True)
        plans_file.write_text(
            '{"backups": [{"id": "docs", "source": {"type": "Folder", "path": "/srv"},'
            ' "crypto": {"enabled": true, "passphrase": "p"}}]}'
        )

        backups, restores = Service(config).get_plans()

        assert backups[0].crypto.iterations == 1000
        assert restores == []

    def test_create_service(self, config):
        overrides = {k: v for k, v in config.items() if k.endswith('_DIR') or k == 'PLANS_FILE'}

        with patch('keepsafe.configure_logging') as mock_logging:
            service = create_service('testing', **overrides)

        mock_logging.assert_called_once()
        assert service.config['STAGING_DIR'] == config['STAGING_DIR']
        assert service.get_plans() == ([], [])
