"""
Manifest model embedded in every backup archive.

The manifest is always written in a canonical, indented camelCase JSON
form. Parsing is lenient so hand-edited fixtures still load: field names
are matched case-insensitively, and comments and trailing commas are
ignored.
"""

import re
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from keepsafe.models import BackupMode
from keepsafe.errors import ArchiveBuildFailed, ManifestInvalid


MANIFEST_NAME = 'manifest.json'

# Strings are matched first so comment markers inside them are kept
_COMMENT_RE = re.compile(r'"(?:\\.|[^"\\])*"|//[^\n]*|/\*.*?\*/', re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r'"(?:\\.|[^"\\])*"|,(?=\s*[}\]])', re.DOTALL)
_FRACTION_RE = re.compile(r'(\.\d{6})\d+')


def normalize_entry_path(path: str) -> str:
    """Normalize an archive path to forward slashes without a leading slash."""
    return path.replace('\\', '/').lstrip('/')


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def _parse_timestamp(value: Any, field_name: str) -> datetime:
    if not isinstance(value, str) or not value:
        raise ManifestInvalid(f"Invalid {field_name}: {value!r}")

    text = _FRACTION_RE.sub(r'\1', value.strip())
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ManifestInvalid(f"Invalid {field_name}: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _strip_json_extensions(text: str) -> str:
    def keep_strings(match):
        token = match.group(0)
        return token if token.startswith('"') else ''

    text = _COMMENT_RE.sub(keep_strings, text)
    return _TRAILING_COMMA_RE.sub(keep_strings, text)


def _fold_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {str(k).lower(): v for k, v in data.items()}


@dataclass
class ManifestEntry:
    relative_path: str
    size: int
    last_write_utc: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'relativePath': self.relative_path,
            'size': self.size,
            'lastWriteUtc': _format_timestamp(self.last_write_utc),
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'ManifestEntry':
        if not isinstance(data, dict):
            raise ManifestInvalid("Manifest entry must be an object")
        d = _fold_keys(data)

        path = d.get('relativepath')
        if not isinstance(path, str) or not path:
            raise ManifestInvalid("Manifest entry has no relative path")

        size = d.get('size', 0)
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise ManifestInvalid(f"Invalid size for entry {path!r}: {size!r}")

        return cls(
            relative_path=normalize_entry_path(path),
            size=size,
            last_write_utc=_parse_timestamp(d.get('lastwriteutc'), 'lastWriteUtc')
        )


@dataclass
class Manifest:
    plan_id: str
    plan_name: str
    created_utc: datetime
    source_type: str
    source_label: str
    mode: str = BackupMode.FULL.value
    entries: List[ManifestEntry] = field(default_factory=list)
    dump_file_name: Optional[str] = None

    def add_entry(self, relative_path: str, size: int, last_write_utc: datetime) -> ManifestEntry:
        """
        Record one archived file.

        Raises:
            ArchiveBuildFailed: If the normalized path is already present
        """
        path = normalize_entry_path(relative_path)
        if any(e.relative_path == path for e in self.entries):
            raise ArchiveBuildFailed(f"Duplicate archive entry: {path}")

        entry = ManifestEntry(relative_path=path, size=size, last_write_utc=last_write_utc)
        self.entries.append(entry)
        return entry

    @property
    def is_full(self) -> bool:
        return (self.mode or '').lower() == BackupMode.FULL.value.lower()

    @property
    def total_size(self) -> int:
        return sum(e.size for e in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'planId': self.plan_id,
            'planName': self.plan_name,
            'createdUtc': _format_timestamp(self.created_utc),
            'sourceType': self.source_type,
            'sourceLabel': self.source_label,
            'mode': self.mode,
            'entries': [e.to_dict() for e in self.entries],
            'dumpFileName': self.dump_file_name,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any) -> 'Manifest':
        if not isinstance(data, dict):
            raise ManifestInvalid("Manifest must be a JSON object")
        d = _fold_keys(data)

        entries = d.get('entries') or []
        if not isinstance(entries, list):
            raise ManifestInvalid("Manifest entries must be a list")

        # Older artifacts name the dump field after the SQL Server .bak file
        dump_name = d.get('dumpfilename', d.get('sqlbakfilename'))

        return cls(
            plan_id=str(d.get('planid') or ''),
            plan_name=str(d.get('planname') or ''),
            created_utc=_parse_timestamp(d.get('createdutc'), 'createdUtc'),
            source_type=str(d.get('sourcetype') or ''),
            source_label=str(d.get('sourcelabel') or ''),
            mode=str(d.get('mode') or ''),
            entries=[ManifestEntry.from_dict(e) for e in entries],
            dump_file_name=dump_name
        )

    @classmethod
    def from_json(cls, text: str) -> 'Manifest':
        """
        Parse a manifest document.

        Raises:
            ManifestInvalid: If the text is not a valid manifest
        """
        try:
            data = json.loads(_strip_json_extensions(text))
        except ValueError as e:
            raise ManifestInvalid(f"Manifest is not valid JSON: {e}")
        return cls.from_dict(data)
