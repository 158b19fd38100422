"""
Storage handlers for backup artifacts.

Supports:
- LocalStorage: Store artifacts in a local directory
- SftpStorage: Store artifacts on a remote host via SSH/SFTP

Both implement the BackupStorage contract: list returns artifact names only
(no directories), upload and download overwrite existing objects, and every
operation accepts a cancellation check.
"""

import os
import stat
import posixpath
import base64
import hashlib
import logging
from pathlib import Path
from typing import Callable, List, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy, MissingHostKeyPolicy

from keepsafe.errors import (
    ConfigurationError, DeleteFailed, DownloadFailed, KeepsafeError,
    ListFailed, StorageError, UploadFailed
)
from keepsafe.models import LocalTarget, SftpTarget


logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024
PARTIAL_SUFFIX = '.part'


class BackupStorage:
    """
    Abstract storage backend for artifacts.

    Artifact names are flat object names; backends map them to their own
    layout.
    """

    def upload(self, local_file: str, remote_name: str,
               progress: Optional[Callable[[int], None]] = None,
               cancellation_check: Optional[Callable[[], None]] = None):
        raise NotImplementedError

    def download(self, remote_name: str, local_file: str,
                 progress: Optional[Callable[[int], None]] = None,
                 cancellation_check: Optional[Callable[[], None]] = None):
        raise NotImplementedError

    def list_artifacts(self) -> List[str]:
        raise NotImplementedError

    def delete(self, remote_name: str, cancellation_check: Optional[Callable[[], None]] = None):
        raise NotImplementedError

    def close(self):
        """Release any connections held by the backend."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def _check_name(remote_name: str):
    if not remote_name or '/' in remote_name or '\\' in remote_name or remote_name in ('.', '..'):
        raise ConfigurationError(f"Invalid artifact name: {remote_name!r}")


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, done * 100 // total)


class LocalStorage(BackupStorage):
    """
    Handler for storing artifacts in a local directory.

    Writes go to a temporary .part file that replaces the target once
    complete, so readers never see a half-written artifact.
    """

    def __init__(self, directory: str):
        """
        Initialize local storage handler.

        Args:
            directory: Directory holding the artifacts (created if missing)

        Raises:
            StorageError: If the directory cannot be created
        """
        self.directory = Path(directory).expanduser()

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _copy(self, source: Path, destination: Path, progress, cancellation_check):
        total = source.stat().st_size
        done = 0
        partial = destination.with_name(destination.name + PARTIAL_SUFFIX)

        try:
            with open(source, 'rb') as src, open(partial, 'wb') as dst:
                while True:
                    if cancellation_check:
                        cancellation_check()

                    chunk = src.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(chunk)
                    done += len(chunk)

                    if progress:
                        progress(_percent(done, total))

            os.replace(partial, destination)
        except BaseException:
            if partial.exists():
                partial.unlink()
            raise

        if progress:
            progress(100)

    def upload(self, local_file, remote_name, progress=None, cancellation_check=None):
        """
        Copy an artifact into the storage directory.

        Raises:
            UploadFailed: If the copy fails
        """
        _check_name(remote_name)

        try:
            self._copy(Path(local_file), self.directory / remote_name, progress, cancellation_check)
        except KeepsafeError:
            raise
        except OSError as e:
            raise UploadFailed(f"Failed to store {remote_name} locally: {e}")

        logger.info(f"Stored {remote_name} in {self.directory}")

    def download(self, remote_name, local_file, progress=None, cancellation_check=None):
        """
        Copy an artifact out of the storage directory.

        Raises:
            DownloadFailed: If the artifact is missing or the copy fails
        """
        _check_name(remote_name)
        source = self.directory / remote_name

        if not source.is_file():
            raise DownloadFailed(f"Artifact not found: {remote_name}")

        try:
            self._copy(source, Path(local_file), progress, cancellation_check)
        except KeepsafeError:
            raise
        except OSError as e:
            raise DownloadFailed(f"Failed to read {remote_name}: {e}")

    def list_artifacts(self) -> List[str]:
        """
        List artifact names in the storage directory.

        Raises:
            ListFailed: If the directory cannot be read
        """
        try:
            return sorted(
                entry.name for entry in os.scandir(self.directory)
                if entry.is_file() and not entry.name.endswith(PARTIAL_SUFFIX)
            )
        except OSError as e:
            raise ListFailed(f"Failed to list local artifacts: {e}")

    def delete(self, remote_name, cancellation_check=None):
        """
        Delete an artifact; a missing artifact is not an error.

        Raises:
            DeleteFailed: If deletion fails
        """
        _check_name(remote_name)
        if cancellation_check:
            cancellation_check()

        try:
            (self.directory / remote_name).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise DeleteFailed(f"Failed to delete {remote_name}: {e}")


def host_key_fingerprint(key) -> str:
    """Format a host key as an OpenSSH-style SHA256 fingerprint."""
    digest = hashlib.sha256(key.asbytes()).digest()
    return 'SHA256:' + base64.b64encode(digest).decode('ascii').rstrip('=')


def _normalize_fingerprint(value: str) -> str:
    value = value.strip()
    if value.upper().startswith('SHA256:'):
        value = value[len('SHA256:'):]
    return value.rstrip('=')


class _FingerprintPolicy(MissingHostKeyPolicy):
    """Accept only a host key matching the pinned SHA256 fingerprint."""

    def __init__(self, expected: str):
        self.expected = _normalize_fingerprint(expected)

    def missing_host_key(self, client, hostname, key):
        actual = host_key_fingerprint(key)
        if _normalize_fingerprint(actual) != self.expected:
            raise paramiko.SSHException(
                f"Host key fingerprint mismatch for {hostname}: got {actual}"
            )


class SftpStorage(BackupStorage):
    """
    Handler for storing artifacts on a remote host via SFTP.

    The connection is opened lazily on first use and reused until close().
    """

    def __init__(self, target: SftpTarget, timeout: int = 30):
        """
        Initialize SFTP storage handler.

        Args:
            target: SFTP target descriptor
            timeout: Connection timeout in seconds
        """
        self.target = target
        self.timeout = timeout
        self.remote_directory = (target.remote_directory or '/').rstrip('/') or '/'

        self.ssh_client = None
        self.sftp_client = None

    def _remote_path(self, name: str) -> str:
        if self.remote_directory == '/':
            return f"/{name}"
        return f"{self.remote_directory}/{name}"

    def _connect(self, error_cls=StorageError):
        """
        Establish the SSH connection and make sure the remote directory exists.

        Args:
            error_cls: StorageError subclass raised on failure

        Raises:
            StorageError: If connection fails (as error_cls)
        """
        if self.sftp_client is not None:
            return self.sftp_client

        target = self.target
        try:
            self.ssh_client = SSHClient()
            if target.host_key_fingerprint:
                self.ssh_client.set_missing_host_key_policy(
                    _FingerprintPolicy(target.host_key_fingerprint)
                )
            else:
                self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': target.host,
                'port': target.port,
                'username': target.username,
                'timeout': self.timeout
            }

            # Use password or private key
            if target.password:
                connect_kwargs['password'] = target.password
            elif target.private_key:
                key_path = Path(target.private_key).expanduser()
                if not key_path.exists():
                    raise error_cls(f"Private key not found: {target.private_key}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise error_cls("Either password or private_key must be provided")

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
            self._ensure_directory(self.remote_directory)

        except StorageError:
            self.close()
            raise
        except paramiko.AuthenticationException as e:
            self.close()
            raise error_cls(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            self.close()
            raise error_cls(f"SSH connection failed: {e}")
        except Exception as e:
            self.close()
            raise error_cls(f"Failed to connect to {target.host}: {e}")

        return self.sftp_client

    def _ensure_directory(self, path: str):
        if path in ('', '/'):
            return

        current = '/' if path.startswith('/') else ''
        for part in [p for p in path.split('/') if p]:
            current = posixpath.join(current, part)
            try:
                self.sftp_client.stat(current)
            except FileNotFoundError:
                logger.info(f"Creating remote directory {current}")
                self.sftp_client.mkdir(current)

    @staticmethod
    def _callback(progress, cancellation_check):
        def callback(transferred, total):
            if cancellation_check:
                cancellation_check()
            if progress:
                progress(_percent(transferred, total))
        return callback

    def upload(self, local_file, remote_name, progress=None, cancellation_check=None):
        """
        Upload an artifact, replacing any existing object of the same name.

        Raises:
            UploadFailed: If the transfer fails
        """
        _check_name(remote_name)
        if cancellation_check:
            cancellation_check()

        sftp = self._connect(UploadFailed)
        remote_path = self._remote_path(remote_name)
        partial_path = remote_path + PARTIAL_SUFFIX

        try:
            sftp.put(local_file, partial_path, callback=self._callback(progress, cancellation_check))
            self._replace(sftp, partial_path, remote_path)
        except BaseException as e:
            self._remove_partial(partial_path)
            if isinstance(e, (KeepsafeError, KeyboardInterrupt, SystemExit)):
                raise
            raise UploadFailed(f"Failed to upload {remote_name} to {self.target.host}: {e}")

        logger.info(f"Uploaded {remote_name} to {self.target.host}:{remote_path}")

    def _replace(self, sftp, partial_path: str, remote_path: str):
        """
        Move a finished upload over the target name.

        posix-rename replaces the target atomically. Servers without the
        extension answer with an errno-less IOError; only then is the old
        object removed before a plain rename.
        """
        try:
            sftp.posix_rename(partial_path, remote_path)
            return
        except IOError as e:
            if e.errno is not None:
                raise
            logger.debug(f"posix-rename unavailable on {self.target.host}: {e}")

        try:
            sftp.remove(remote_path)
        except FileNotFoundError:
            pass
        sftp.rename(partial_path, remote_path)

    def _remove_partial(self, partial_path: str):
        try:
            self.sftp_client.remove(partial_path)
        except (OSError, paramiko.SSHException):
            logger.debug(f"No partial upload to remove at {partial_path}")

    def download(self, remote_name, local_file, progress=None, cancellation_check=None):
        """
        Download an artifact to a local file.

        Raises:
            DownloadFailed: If the artifact is missing or the transfer fails
        """
        _check_name(remote_name)
        if cancellation_check:
            cancellation_check()

        sftp = self._connect(DownloadFailed)
        try:
            sftp.get(self._remote_path(remote_name), local_file,
                     callback=self._callback(progress, cancellation_check))
        except KeepsafeError:
            raise
        except FileNotFoundError:
            raise DownloadFailed(f"Artifact not found: {remote_name}")
        except Exception as e:
            raise DownloadFailed(f"Failed to download {remote_name}: {e}")

    def list_artifacts(self) -> List[str]:
        """
        List artifact names in the remote directory.

        Raises:
            ListFailed: If listing fails
        """
        try:
            sftp = self._connect(ListFailed)
            return sorted(
                item.filename for item in sftp.listdir_attr(self.remote_directory)
                if item.st_mode is not None and stat.S_ISREG(item.st_mode)
                and not item.filename.endswith(PARTIAL_SUFFIX)
            )
        except ListFailed:
            raise
        except Exception as e:
            raise ListFailed(f"Failed to list remote artifacts: {e}")

    def delete(self, remote_name, cancellation_check=None):
        """
        Delete an artifact; a missing artifact is not an error.

        Raises:
            DeleteFailed: If deletion fails
        """
        _check_name(remote_name)
        if cancellation_check:
            cancellation_check()

        sftp = self._connect(DeleteFailed)
        try:
            sftp.remove(self._remote_path(remote_name))
        except FileNotFoundError:
            pass
        except Exception as e:
            raise DeleteFailed(f"Failed to delete {remote_name}: {e}")

    def close(self):
        """Close SFTP/SSH connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except Exception as e:
                logger.debug(f"Error closing SFTP session: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug(f"Error closing SSH client: {e}")
            self.ssh_client = None


def create_storage(target, default_local_dir: str) -> BackupStorage:
    """
    Create the storage backend for a target descriptor.

    Args:
        target: LocalTarget or SftpTarget
        default_local_dir: Directory used when a local target names none

    Returns:
        BackupStorage instance

    Raises:
        ConfigurationError: If the target type is unknown
    """
    if isinstance(target, LocalTarget):
        return LocalStorage(target.directory or default_local_dir)
    elif isinstance(target, SftpTarget):
        return SftpStorage(target)
    raise ConfigurationError(f"Invalid target type: {type(target).__name__}")
