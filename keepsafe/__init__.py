import os
import logging
import threading
from logging.handlers import RotatingFileHandler


logger = logging.getLogger(__name__)


def configure_logging(config):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'keepsafe.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)

    # paramiko logs every channel event at INFO
    logging.getLogger('paramiko').setLevel(logging.WARNING)

    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


class Service:
    """
    Wires configuration, engines and jobs together.

    Plans are re-read from the plans loader on every poll, so edits to the
    plans file take effect without a restart. Run-once restore plans are
    retired in memory once they have run.
    """

    def __init__(self, config, plans_loader=None):
        from keepsafe.backup.executor import BackupEngine
        from keepsafe.backup.restore import RestoreEngine
        from keepsafe.backup.sources import CommandDumpProducer
        from keepsafe.models import DEFAULT_KDF_ITERATIONS, load_plans_file

        self.config = config
        self.backup_engine = BackupEngine(
            config['STAGING_DIR'],
            CommandDumpProducer(config.get('DUMP_COMMAND'))
        )
        self.restore_engine = RestoreEngine(config['STAGING_DIR'])

        self.backup_jobs = {}
        self.restore_jobs = {}
        self.retired_restores = set()
        self._lock = threading.Lock()

        if plans_loader is None:
            def plans_loader():
                return load_plans_file(
                    config['PLANS_FILE'],
                    config.get('DEFAULT_KDF_ITERATIONS') or DEFAULT_KDF_ITERATIONS
                )
        self._plans_loader = plans_loader

    def get_plans(self):
        """
        Load the current plans.

        Returns:
            Tuple of (backup plans, restore plans not yet retired)
        """
        backups, restores = self._plans_loader()
        restores = [r for r in restores if r.id.lower() not in self.retired_restores]
        return backups, restores

    def storage_for(self, target):
        from keepsafe.backup.storage import create_storage
        return create_storage(target, self.config['LOCAL_BACKUP_DIR'])

    def backup_job(self, plan_id):
        """Get or create the job for a backup plan."""
        from keepsafe.backup.jobs import BackupJob

        with self._lock:
            key = plan_id.lower()
            if key not in self.backup_jobs:
                self.backup_jobs[key] = BackupJob(
                    plan_id, self.get_plans, self.backup_engine, self.storage_for
                )
            return self.backup_jobs[key]

    def restore_job(self, restore_id):
        """Get or create the job for a restore plan."""
        from keepsafe.backup.jobs import RestoreJob

        with self._lock:
            key = restore_id.lower()
            if key not in self.restore_jobs:
                self.restore_jobs[key] = RestoreJob(
                    restore_id, self.get_plans, self.restore_engine, self.storage_for,
                    on_run_once_finished=self.retire_restore
                )
            return self.restore_jobs[key]

    def retire_restore(self, restore_id):
        """Stop polling a run-once restore plan after it has run."""
        self.retired_restores.add(restore_id.lower())
        logger.info(f"Restore plan {restore_id} finished and retired")


def create_service(config_name=None, plans_loader=None, **overrides):
    """Service factory"""

    # Load configuration
    from keepsafe.config import load_config
    config = load_config(config_name, **overrides)

    # Configure logging
    configure_logging(config)

    # Ensure required directories exist
    os.makedirs(config['STAGING_DIR'], exist_ok=True)
    os.makedirs(config['LOCAL_BACKUP_DIR'], exist_ok=True)

    service = Service(config, plans_loader)
    logger.info(f"Service created (plans: {config['PLANS_FILE']}, staging: {config['STAGING_DIR']})")
    return service
