"""
Archive handling for backup artifacts.

Archives are zip files with one deflated entry per source file and a
manifest written as the final entry. Entries stay individually
extractable, which is what selective restore relies on.
"""

import os
import re
import shutil
import zipfile
import logging
import warnings
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from keepsafe.errors import (
    ArchiveBuildFailed, ArchiveReadFailed, KeepsafeError,
    ManifestMissing, SourceNotFound
)
from .manifest import Manifest, MANIFEST_NAME, normalize_entry_path
from .sources import collect_files


logger = logging.getLogger(__name__)

ARTIFACT_EXTENSION = 'awdb'
ARCHIVE_EXTENSION = 'zip'
TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
COPY_CHUNK_SIZE = 256 * 1024

_INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]+')


def sanitize_plan_id(plan_id: str) -> str:
    """
    Make a plan id safe for use in file names.

    Runs of characters that are invalid in file names become a single
    underscore; an empty result falls back to 'backup'.
    """
    if not plan_id or not plan_id.strip():
        return 'backup'

    parts = [p for p in _INVALID_NAME_CHARS.split(plan_id) if p]
    joined = '_'.join(parts)
    return joined if joined.strip() else 'backup'


def generate_artifact_basename(plan_id: str, created_utc: Optional[datetime] = None) -> str:
    """
    Generate the timestamped artifact base name.

    Format: {sanitized_plan_id}_{YYYYMMDD_HHMMSS}

    The timestamp makes ordinal name order equal to creation order.
    """
    if created_utc is None:
        created_utc = datetime.now(timezone.utc)
    stamp = created_utc.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)
    return f"{sanitize_plan_id(plan_id)}_{stamp}"


def generate_artifact_filename(plan_id: str, created_utc: Optional[datetime] = None) -> str:
    return f"{generate_artifact_basename(plan_id, created_utc)}.{ARTIFACT_EXTENSION}"


def _copy_stream(src, dst, cancellation_check: Optional[Callable[[], None]]):
    while True:
        if cancellation_check:
            cancellation_check()
        chunk = src.read(COPY_CHUNK_SIZE)
        if not chunk:
            break
        dst.write(chunk)


def _add_file(zipf: zipfile.ZipFile, file_path: Path, entry_name: str, manifest: Manifest,
              cancellation_check: Optional[Callable[[], None]]):
    """Stream one file into the archive and record it in the manifest."""
    stat = file_path.stat()
    entry = manifest.add_entry(
        entry_name,
        stat.st_size,
        datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    )

    zinfo = zipfile.ZipInfo.from_file(str(file_path), entry.relative_path, strict_timestamps=False)
    zinfo.compress_type = zipfile.ZIP_DEFLATED

    with open(file_path, 'rb') as src, zipf.open(zinfo, 'w', force_zip64=True) as dst:
        _copy_stream(src, dst, cancellation_check)


def build_archive(
    source,
    archive_path: str,
    manifest: Manifest,
    dump_path: Optional[str] = None,
    progress: Optional[Callable[[int], None]] = None,
    cancellation_check: Optional[Callable[[], None]] = None
) -> Manifest:
    """
    Build a zip archive from a backup source.

    Args:
        source: FileSource, FolderSource or DatabaseSource
        archive_path: Archive file to create (overwritten)
        manifest: Manifest to populate; written as the final entry
        dump_path: Dump file produced beforehand for database sources
        progress: Optional callback receiving 0-100 (files added / files found)
        cancellation_check: Optional callable raising when cancelled

    Returns:
        The populated manifest

    Raises:
        SourceNotFound: If the source file or directory does not exist
        ArchiveBuildFailed: If archive creation fails
    """
    files = collect_files(source, dump_path)
    total = len(files)

    try:
        with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            for index, (file_path, entry_name) in enumerate(files, start=1):
                if cancellation_check:
                    cancellation_check()

                _add_file(zipf, file_path, entry_name, manifest, cancellation_check)

                if progress:
                    progress(index * 100 // total)

            with warnings.catch_warnings():
                # A source file may share the manifest's name; readers take the last entry
                warnings.simplefilter('ignore', UserWarning)
                zipf.writestr(MANIFEST_NAME, manifest.to_json().encode('utf-8'))

        logger.info(f"Archive created: {archive_path} ({total} files)")
        return manifest

    except KeepsafeError:
        _remove_partial(archive_path)
        raise
    except Exception as e:
        # Clean up partial archive on failure
        _remove_partial(archive_path)
        if isinstance(e, FileNotFoundError) and e.filename != archive_path:
            raise SourceNotFound(f"Source file disappeared: {e.filename}")
        raise ArchiveBuildFailed(f"Failed to create archive: {e}")


def _remove_partial(archive_path: str):
    if os.path.exists(archive_path):
        try:
            os.remove(archive_path)
        except OSError as e:
            logger.warning(f"Failed to remove partial archive {archive_path}: {e}")


def _normalize_filter(path: str) -> str:
    return normalize_entry_path(path.strip()).rstrip('/').lower()


def select_entries(names: List[str], include_paths: Optional[List[str]] = None) -> List[str]:
    """
    Filter archive entry names by include paths.

    An entry is selected when its normalized path equals a filter path or
    lies below one treated as a directory. Matching is case-insensitive; an
    empty or missing filter selects everything.

    Args:
        names: Archive entry names
        include_paths: Optional list of paths to include

    Returns:
        Selected names, in archive order
    """
    filters = [_normalize_filter(p) for p in include_paths or [] if p and p.strip()]
    filters = [f for f in filters if f]
    if not filters:
        return list(names)

    selected = []
    for name in names:
        normalized = normalize_entry_path(name).lower()
        if any(normalized == f or normalized.startswith(f + '/') for f in filters):
            selected.append(name)
    return selected


def _open_archive(archive_path: str) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(archive_path, 'r')
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveReadFailed(f"Failed to open archive {archive_path}: {e}")


def list_entries(archive_path: str) -> List[str]:
    """List file entries of an archive, excluding directories and the manifest."""
    with _open_archive(archive_path) as zipf:
        return [info.filename for info in _file_entries(zipf)]


def _manifest_info(zipf: zipfile.ZipFile) -> Optional[zipfile.ZipInfo]:
    """The last entry named manifest.json; earlier ones are source files."""
    for info in reversed(zipf.infolist()):
        if info.filename == MANIFEST_NAME:
            return info
    return None


def _file_entries(zipf: zipfile.ZipFile) -> List[zipfile.ZipInfo]:
    manifest_info = _manifest_info(zipf)
    return [
        info for info in zipf.infolist()
        if info is not manifest_info
        and info.filename.strip()
        and not info.filename.endswith('/')
    ]


def read_manifest(archive_path: str) -> Manifest:
    """
    Read and parse the manifest entry of an archive.

    Raises:
        ArchiveReadFailed: If the archive cannot be opened
        ManifestMissing: If the archive has no manifest entry
        ManifestInvalid: If the manifest cannot be parsed
    """
    with _open_archive(archive_path) as zipf:
        manifest_info = _manifest_info(zipf)
        if manifest_info is None:
            raise ManifestMissing(f"Manifest missing in {os.path.basename(archive_path)}")
        try:
            raw = zipf.read(manifest_info)
        except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
            raise ArchiveReadFailed(f"Failed to read manifest: {e}")

    return Manifest.from_json(raw.decode('utf-8-sig', errors='replace'))


def _destination_for(destination_dir: Path, entry_name: str) -> Path:
    relative = normalize_entry_path(entry_name)
    target = (destination_dir / Path(*relative.split('/'))).resolve()
    if target != destination_dir and destination_dir not in target.parents:
        raise ArchiveReadFailed(f"Archive entry escapes destination: {entry_name}")
    return target


def extract_archive(
    archive_path: str,
    destination_dir: str,
    include_paths: Optional[List[str]] = None,
    overwrite: bool = False,
    progress: Optional[Callable[[int], None]] = None,
    cancellation_check: Optional[Callable[[], None]] = None
) -> int:
    """
    Extract selected entries from an archive.

    Existing files are skipped unless overwrite is set; skipped files still
    count towards progress.

    Args:
        archive_path: Archive to read
        destination_dir: Directory to restore into (created if missing)
        include_paths: Optional include filter, see select_entries
        overwrite: Replace files that already exist
        progress: Optional callback receiving 0-100 (files processed / selected)
        cancellation_check: Optional callable raising when cancelled

    Returns:
        Number of files written

    Raises:
        ArchiveReadFailed: If the archive is unreadable or an entry is unsafe
    """
    destination = Path(destination_dir).resolve()
    destination.mkdir(parents=True, exist_ok=True)

    written = 0

    with _open_archive(archive_path) as zipf:
        infos = _file_entries(zipf)
        wanted = set(select_entries([info.filename for info in infos], include_paths))
        selected = [info for info in infos if info.filename in wanted]
        total = max(1, len(selected))

        for index, info in enumerate(selected, start=1):
            if cancellation_check:
                cancellation_check()

            name = info.filename
            target = _destination_for(destination, name)
            target.parent.mkdir(parents=True, exist_ok=True)

            if target.exists() and not overwrite:
                logger.debug(f"Skipping existing file: {target}")
            else:
                try:
                    with zipf.open(info, 'r') as src, open(target, 'wb') as dst:
                        _copy_stream(src, dst, cancellation_check)
                except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
                    raise ArchiveReadFailed(f"Failed to extract {name}: {e}")
                written += 1

            if progress:
                progress(index * 100 // total)

    logger.info(f"Extracted {written} of {len(selected)} selected files to {destination}")
    return written


def copy_file(source_path: str, dest_path: str):
    """Copy an artifact verbatim (used when encryption is disabled)."""
    shutil.copyfile(source_path, dest_path)


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveReadFailed: If the file cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except OSError as e:
        raise ArchiveReadFailed(f"Failed to get archive size: {e}")
