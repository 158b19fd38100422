"""
Plan models consumed by the engine.

Backup and restore plans are owned by the configuration store; the engine
reads them once per run and never writes them back. Source and target
descriptors are closed unions: each variant carries only its own fields.
"""

import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Union

from keepsafe.errors import ConfigurationError


DEFAULT_KDF_ITERATIONS = 200000


class SourceType(str, Enum):
    FILE = 'File'
    FOLDER = 'Folder'
    DATABASE = 'Database'


class TargetType(str, Enum):
    LOCAL = 'Local'
    SFTP = 'Sftp'


class BackupMode(str, Enum):
    FULL = 'Full'


class Weekday(IntEnum):
    """Days of the week, numbered like datetime.weekday()."""
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @classmethod
    def parse(cls, value) -> 'Weekday':
        if isinstance(value, Weekday):
            return value
        if isinstance(value, str):
            name = value.strip().upper()
            for day in cls:
                if day.name == name or day.name[:3] == name:
                    return day
        raise ConfigurationError(f"Invalid weekday: {value!r}")


def _lower_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Index a dict by lower-cased keys with underscores removed."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected an object, got {type(data).__name__}")
    return {str(k).replace('_', '').lower(): v for k, v in data.items()}


def _enum_value(enum_cls, value, field_name: str):
    for member in enum_cls:
        if str(value).lower() == member.value.lower():
            return member
    raise ConfigurationError(f"Invalid {field_name}: {value!r}")


_TRUE_STRINGS = {'true', 'yes', 'on', '1'}
_FALSE_STRINGS = {'false', 'no', 'off', '0'}


def _bool_value(value, default: bool, field_name: str) -> bool:
    """Coerce a flag; null means unset, strings like "false" are honoured."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ConfigurationError(f"Invalid {field_name}: {value!r}")


def _int_value(value, default: int, field_name: str) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid {field_name}: {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ConfigurationError(f"Invalid {field_name}: {value!r}")
        return int(value)
    try:
        return int(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid {field_name}: {value!r}")


@dataclass
class ScheduleConfig:
    time_local: str = '02:00'
    days: List[Weekday] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleConfig':
        d = _lower_keys(data or {})
        return cls(
            time_local=d.get('timelocal') or d.get('time') or '02:00',
            days=[Weekday.parse(x) for x in d.get('days') or []]
        )


@dataclass
class FileSource:
    path: str
    type = SourceType.FILE


@dataclass
class FolderSource:
    path: str
    type = SourceType.FOLDER


@dataclass
class DatabaseSource:
    connection_string: str
    database: str
    type = SourceType.DATABASE


Source = Union[FileSource, FolderSource, DatabaseSource]


def source_from_dict(data: Dict[str, Any]) -> Source:
    d = _lower_keys(data)
    source_type = _enum_value(SourceType, d.get('type'), 'source type')

    if source_type == SourceType.FILE:
        return FileSource(path=d.get('path') or '')
    elif source_type == SourceType.FOLDER:
        return FolderSource(path=d.get('path') or '')
    else:
        return DatabaseSource(
            connection_string=d.get('connectionstring') or '',
            database=d.get('database') or ''
        )


@dataclass
class LocalTarget:
    directory: str = ''
    type = TargetType.LOCAL


@dataclass
class SftpTarget:
    host: str
    username: str
    password: Optional[str] = None
    private_key: Optional[str] = None
    port: int = 22
    remote_directory: str = '/'
    host_key_fingerprint: Optional[str] = None
    type = TargetType.SFTP


Target = Union[LocalTarget, SftpTarget]


def target_from_dict(data: Dict[str, Any]) -> Target:
    d = _lower_keys(data)
    target_type = _enum_value(TargetType, d.get('type') or 'Local', 'target type')

    if target_type == TargetType.LOCAL:
        return LocalTarget(directory=d.get('directory') or d.get('localdirectory') or '')

    host = d.get('host') or d.get('sftphost')
    username = d.get('username') or d.get('sftpuser')
    if not host or not username:
        raise ConfigurationError("SFTP target requires host and username")

    port = _int_value(d.get('port') or d.get('sftpport'), 22, 'SFTP port')
    return SftpTarget(
        host=host,
        username=username,
        password=d.get('password') or d.get('sftppassword'),
        private_key=d.get('privatekey'),
        port=port if port > 0 else 22,
        remote_directory=d.get('remotedirectory') or d.get('sftpremotedirectory') or '/',
        host_key_fingerprint=d.get('hostkeyfingerprint') or d.get('sftphostkeyfingerprint')
    )


@dataclass
class CryptoConfig:
    enabled: bool = False
    passphrase: str = ''
    iterations: int = DEFAULT_KDF_ITERATIONS

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  default_iterations: int = DEFAULT_KDF_ITERATIONS) -> 'CryptoConfig':
        d = _lower_keys(data or {})
        enabled = d.get('enabled', d.get('encrypt', False))
        iterations = _int_value(d.get('iterations'), default_iterations, 'iteration count')
        if iterations <= 0:
            raise ConfigurationError(f"Invalid iteration count: {iterations}")
        return cls(
            enabled=_bool_value(enabled, False, 'crypto enabled flag'),
            passphrase=d.get('passphrase') or d.get('password') or '',
            iterations=iterations
        )


@dataclass
class RetentionConfig:
    keep_last: int = 7

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RetentionConfig':
        d = _lower_keys(data or {})
        return cls(keep_last=_int_value(d.get('keeplast'), 7, 'keepLast'))


@dataclass
class BackupPlan:
    id: str
    name: str
    source: Source
    target: Target = field(default_factory=LocalTarget)
    enabled: bool = True
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    verify_after_create: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  default_iterations: int = DEFAULT_KDF_ITERATIONS) -> 'BackupPlan':
        d = _lower_keys(data)
        if not d.get('id'):
            raise ConfigurationError("Backup plan requires an id")
        if 'source' not in d:
            raise ConfigurationError(f"Backup plan '{d['id']}' has no source")

        return cls(
            id=str(d['id']),
            name=d.get('name') or str(d['id']),
            enabled=_bool_value(d.get('enabled'), True, 'enabled flag'),
            schedule=ScheduleConfig.from_dict(d.get('schedule')),
            source=source_from_dict(d['source']),
            target=target_from_dict(d.get('target') or {}),
            crypto=CryptoConfig.from_dict(d.get('crypto'), default_iterations),
            retention=RetentionConfig.from_dict(d.get('retention')),
            verify_after_create=_bool_value(d.get('verifyaftercreate'), False, 'verifyAfterCreate')
        )


@dataclass
class RestorePlan:
    id: str
    backup_plan_id: str
    artifact_name: str
    restore_to_directory: str
    name: str = ''
    enabled: bool = True
    overwrite_existing: bool = False
    include_paths: List[str] = field(default_factory=list)
    run_once: bool = True
    # Optional overrides; fall back to the backup plan when unset
    target: Optional[Target] = None
    crypto: Optional[CryptoConfig] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  default_iterations: int = DEFAULT_KDF_ITERATIONS) -> 'RestorePlan':
        d = _lower_keys(data)
        for key in ('id', 'backupplanid', 'artifactname', 'restoretodirectory'):
            if not d.get(key):
                raise ConfigurationError(f"Restore plan is missing '{key}'")

        return cls(
            id=str(d['id']),
            name=d.get('name') or str(d['id']),
            enabled=_bool_value(d.get('enabled'), True, 'enabled flag'),
            backup_plan_id=str(d['backupplanid']),
            artifact_name=d['artifactname'],
            restore_to_directory=d['restoretodirectory'],
            overwrite_existing=_bool_value(d.get('overwriteexisting'), False, 'overwriteExisting'),
            include_paths=list(d.get('includepaths') or []),
            run_once=_bool_value(d.get('runonce'), True, 'runOnce'),
            target=target_from_dict(d['target']) if d.get('target') else None,
            crypto=CryptoConfig.from_dict(d['crypto'], default_iterations) if d.get('crypto') else None
        )


def find_plan(plans, plan_id: str):
    """Case-insensitive lookup of a plan by id."""
    for plan in plans:
        if plan.id.lower() == (plan_id or '').lower():
            return plan
    return None


def load_plans_file(path: str, default_iterations: int = DEFAULT_KDF_ITERATIONS):
    """
    Load backup and restore plans from a JSON file.

    The file holds {"backups": [...], "restores": [...]}. Crypto settings
    without an iteration count get default_iterations.

    Returns:
        Tuple of (backup plans, restore plans)

    Raises:
        ConfigurationError: If the file cannot be read or a plan is invalid
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        return [], []
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Failed to read plans file {path}: {e}")

    d = _lower_keys(data)
    backups = [BackupPlan.from_dict(x, default_iterations) for x in d.get('backups') or []]
    restores = [RestorePlan.from_dict(x, default_iterations) for x in d.get('restores') or []]
    return backups, restores
