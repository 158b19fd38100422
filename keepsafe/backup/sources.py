"""
Source handlers for backup operations.

Supports:
- FileSource: a single local file
- FolderSource: a local directory tree
- DatabaseSource: a database dump produced by an external tool before
  archiving starts
"""

import os
import logging
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from keepsafe.errors import ConfigurationError, DumpFailed, SourceNotFound
from keepsafe.models import DatabaseSource, FileSource, FolderSource


logger = logging.getLogger(__name__)

DEFAULT_DUMP_COMMAND = [
    'pg_dump', '--format=custom', '--file', '{output}', '--dbname', '{connection}'
]


def source_label(source) -> str:
    """Human-readable label recorded in the manifest."""
    if isinstance(source, DatabaseSource):
        return source.database
    return source.path


def collect_files(source, dump_path: Optional[str] = None) -> List[Tuple[Path, str]]:
    """
    List the files to archive for a source.

    Args:
        source: FileSource, FolderSource or DatabaseSource
        dump_path: Dump file for database sources

    Returns:
        List of (absolute path, archive entry name) tuples; entry names use
        forward slashes

    Raises:
        SourceNotFound: If the source does not exist
    """
    if isinstance(source, FileSource):
        path = Path(source.path).expanduser()
        if not path.is_file():
            raise SourceNotFound(f"Source file not found: {source.path}")
        return [(path, path.name)]

    elif isinstance(source, FolderSource):
        root = Path(source.path).expanduser()
        if not root.is_dir():
            raise SourceNotFound(f"Source directory not found: {source.path}")

        files = []
        for item in sorted(root.rglob('*')):
            if item.is_file():
                files.append((item, item.relative_to(root).as_posix()))
        return files

    elif isinstance(source, DatabaseSource):
        if not dump_path or not os.path.isfile(dump_path):
            raise SourceNotFound(f"Database dump missing for {source.database}")
        path = Path(dump_path)
        return [(path, path.name)]

    raise ConfigurationError(f"Invalid source type: {type(source).__name__}")


class DumpProducer:
    """
    Produces a database dump file before archiving starts.

    Implementations must either leave a complete dump at output_path or
    raise DumpFailed.
    """

    def produce(self, source: DatabaseSource, output_path: str,
                cancellation_check: Optional[Callable[[], None]] = None) -> str:
        raise NotImplementedError


class CommandDumpProducer(DumpProducer):
    """
    Runs an external dump tool (pg_dump by default).

    The command is an argv template; {connection}, {database} and {output}
    are substituted in each argument.
    """

    def __init__(self, command: Optional[Sequence[str]] = None, poll_interval: float = 0.5):
        self.command = list(command or DEFAULT_DUMP_COMMAND)
        self.poll_interval = poll_interval

    def build_args(self, source: DatabaseSource, output_path: str) -> List[str]:
        values = {
            'connection': source.connection_string,
            'database': source.database,
            'output': output_path,
        }
        return [arg.format(**values) for arg in self.command]

    def produce(self, source: DatabaseSource, output_path: str,
                cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Run the dump tool and wait for it, polling for cancellation.

        Returns:
            output_path

        Raises:
            SourceNotFound: If no connection string is configured
            DumpFailed: If the tool is missing, exits non-zero or writes nothing
        """
        if not source.connection_string:
            raise SourceNotFound(f"No connection configured for database {source.database}")

        args = self.build_args(source, output_path)
        logger.info(f"Running dump tool: {args[0]} (database: {source.database})")

        try:
            proc = subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as e:
            raise DumpFailed(f"Failed to start dump tool {args[0]}: {e}")

        try:
            while True:
                if cancellation_check:
                    cancellation_check()
                try:
                    # stderr is drained while waiting; a full pipe would block the tool
                    _, stderr = proc.communicate(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    continue
        except BaseException:
            proc.kill()
            proc.communicate()
            raise

        if proc.returncode != 0:
            message = (stderr or b'').decode('utf-8', errors='ignore').strip()
            raise DumpFailed(
                f"Dump tool exited with code {proc.returncode}: {message}",
                {'database': source.database}
            )

        if not os.path.isfile(output_path):
            raise DumpFailed(f"Dump tool produced no output at {output_path}")

        return output_path
