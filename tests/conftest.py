"""
Shared pytest fixtures for keepsafe tests.

This module provides fixtures for:
- Test configuration with temporary directories
- Backup and restore plan fixtures
- Local storage and engines
- Mock fixtures for external services (SSH/SFTP, scheduler)
- Temporary file fixtures
"""

from unittest.mock import MagicMock, patch

import pytest

from keepsafe import Service
from keepsafe.config import load_config
from keepsafe.models import (
    BackupPlan, CryptoConfig, FileSource, FolderSource, LocalTarget,
    RestorePlan, RetentionConfig, ScheduleConfig
)
from keepsafe.backup.executor import BackupEngine
from keepsafe.backup.restore import RestoreEngine
from keepsafe.backup.storage import LocalStorage

# Keeps PBKDF2 fast in tests
TEST_ITERATIONS = 1000
TEST_PASSPHRASE = 'correct horse battery staple'


@pytest.fixture(scope='function')
def config(tmp_path):
    """
    Testing configuration with every directory under tmp_path.
    """
    return load_config(
        'testing',
        DATA_DIR=str(tmp_path / 'data'),
        STAGING_DIR=str(tmp_path / 'data' / 'staging'),
        LOCAL_BACKUP_DIR=str(tmp_path / 'data' / 'local_backups'),
        LOG_DIR=str(tmp_path / 'data' / 'logs'),
        PLANS_FILE=str(tmp_path / 'data' / 'plans.json'),
    )


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a source directory with test files.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    """
    source = tmp_path / 'source'
    source.mkdir()

    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return source


@pytest.fixture
def staging_dir(tmp_path):
    path = tmp_path / 'staging'
    path.mkdir()
    return path


@pytest.fixture
def storage_dir(tmp_path):
    path = tmp_path / 'storage'
    path.mkdir()
    return path


@pytest.fixture
def local_storage(storage_dir):
    """LocalStorage over an empty directory."""
    return LocalStorage(str(storage_dir))


@pytest.fixture
def backup_engine(staging_dir):
    return BackupEngine(str(staging_dir))


@pytest.fixture
def restore_engine(staging_dir):
    return RestoreEngine(str(staging_dir))


@pytest.fixture
def folder_plan(temp_files, storage_dir):
    """
    Backup plan for the temp_files folder, unencrypted, keeping 3 artifacts.
    """
    return BackupPlan(
        id='docs',
        name='Documents',
        source=FolderSource(str(temp_files)),
        target=LocalTarget(str(storage_dir)),
        schedule=ScheduleConfig(time_local='02:00'),
        retention=RetentionConfig(keep_last=3)
    )


@pytest.fixture
def encrypted_plan(folder_plan):
    """The folder plan with encryption enabled."""
    folder_plan.crypto = CryptoConfig(
        enabled=True,
        passphrase=TEST_PASSPHRASE,
        iterations=TEST_ITERATIONS
    )
    return folder_plan


@pytest.fixture
def file_plan(temp_files, storage_dir):
    return BackupPlan(
        id='single',
        name='Single file',
        source=FileSource(str(temp_files / 'test_file1.txt')),
        target=LocalTarget(str(storage_dir))
    )


@pytest.fixture
def restore_plan(tmp_path):
    """
    Restore plan for the 'docs' backup plan; artifact_name is set per test.
    """
    return RestorePlan(
        id='restore-docs',
        backup_plan_id='docs',
        artifact_name='',
        restore_to_directory=str(tmp_path / 'restored')
    )


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP storage testing.

    Yields the mocked SFTP client.
    """
    with patch('keepsafe.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_sftp


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('keepsafe.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


@pytest.fixture
def service(config, folder_plan, restore_plan):
    """
    Service whose plans come from the folder_plan and restore_plan fixtures.
    """
    plans = ([folder_plan], [restore_plan])
    return Service(config, plans_loader=lambda: plans)
