import os
import shlex


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_command(name):
    value = os.environ.get(name)
    return shlex.split(value) if value else None


class Config:
    """Base configuration"""

    DEBUG = False

    # Storage locations
    DATA_DIR = os.environ.get('KEEPSAFE_DATA_DIR') or '/data'
    STAGING_DIR = os.environ.get('STAGING_DIR') or os.path.join(DATA_DIR, 'staging')
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or os.path.join(DATA_DIR, 'local_backups')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Plans
    PLANS_FILE = os.environ.get('PLANS_FILE') or os.path.join(DATA_DIR, 'plans.json')

    # Scheduler
    SCHEDULER_POLL_SECONDS = _env_int('SCHEDULER_POLL_SECONDS', 10)
    SCHEDULER_MAX_WORKERS = _env_int('SCHEDULER_MAX_WORKERS', 3)
    SCHEDULER_TIMEZONE = 'UTC'

    # Encryption
    DEFAULT_KDF_ITERATIONS = _env_int('DEFAULT_KDF_ITERATIONS', 200000)

    # Database dumps, argv template with {connection}, {database} and {output}
    DUMP_COMMAND = _env_command('DUMP_COMMAND')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    STAGING_DIR = os.path.join(DATA_DIR, 'staging')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    PLANS_FILE = os.path.join(DATA_DIR, 'plans.json')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration; directories are overridden per test"""
    DEBUG = True
    SCHEDULER_POLL_SECONDS = 1
    DEFAULT_KDF_ITERATIONS = 1000


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def load_config(name=None, **overrides):
    """
    Build a plain settings dict from a configuration class.

    Args:
        name: Key of the config dict (defaults to KEEPSAFE_ENV, then 'default')
        **overrides: Settings replacing the class values

    Returns:
        Dict of the upper-case settings
    """
    if name is None:
        name = os.environ.get('KEEPSAFE_ENV', 'default')
    if name not in config:
        raise KeyError(f"Unknown configuration: {name}")

    cls = config[name]
    settings = {key: getattr(cls, key) for key in dir(cls) if key.isupper()}
    settings.update(overrides)
    return settings
