"""
Backup engine - orchestrates the complete backup workflow.

Workflow:
1. Prepare a per-run staging directory and the artifact name
2. Produce a database dump (database sources only)
3. Create the archive with its manifest
4. Encrypt (or copy) the archive into the artifact
5. Upload the artifact
6. Apply retention (failures are logged, never fatal)
7. Verify the uploaded artifact (optional, failures are fatal)
8. Cleanup staging files, on every exit path
"""

import os
import shutil
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from keepsafe.errors import ConfigurationError, OperationCancelled
from keepsafe.models import BackupPlan, CryptoConfig, DatabaseSource
from keepsafe.utils.crypto import decrypt_file, encrypt_file
from .compression import (
    ARCHIVE_EXTENSION, ARTIFACT_EXTENSION, build_archive, copy_file,
    generate_artifact_basename, get_archive_size, read_manifest
)
from .manifest import Manifest
from .progress import ProgressReporter, Stage
from .retention import RetentionResult, apply_retention
from .sources import CommandDumpProducer, DumpProducer, source_label


logger = logging.getLogger(__name__)

DUMP_EXTENSION = 'dump'


@dataclass
class BackupResult:
    artifact_name: str
    size_bytes: int
    created_utc: datetime
    manifest: Manifest
    retention: Optional[RetentionResult] = None


def as_reporter(progress) -> ProgressReporter:
    """Accept either a ProgressReporter or a plain event callback."""
    if isinstance(progress, ProgressReporter):
        return progress
    return ProgressReporter(progress)


def require_passphrase(crypto: CryptoConfig) -> str:
    if not crypto.passphrase:
        raise ConfigurationError("Encryption is enabled but no passphrase is configured")
    return crypto.passphrase


def new_run_dir(staging_dir: str, kind: str) -> str:
    """Claim a fresh, randomly named staging directory for one run."""
    Path(staging_dir).mkdir(parents=True, exist_ok=True)
    return tempfile.mkdtemp(prefix=f'keepsafe_{kind}_', dir=staging_dir)


def remove_staging(path: Optional[str]):
    """Remove a staging directory; failures are logged only."""
    if path and os.path.exists(path):
        try:
            shutil.rmtree(path)
            logger.debug(f"Cleaned up staging directory {path}")
        except OSError as e:
            logger.warning(f"Failed to cleanup staging directory {path}: {e}")


class BackupEngine:
    """
    Runs backup plans against a storage backend.

    Every run claims its own staging directory with a random name under
    staging_dir, so concurrent runs of different plans never collide.
    """

    def __init__(self, staging_dir: str, dump_producer: Optional[DumpProducer] = None):
        """
        Initialize the backup engine.

        Args:
            staging_dir: Root directory for temporary files
            dump_producer: Producer for database dumps (pg_dump by default)
        """
        self.staging_dir = staging_dir
        self.dump_producer = dump_producer or CommandDumpProducer()

    def create_backup(
        self,
        plan: BackupPlan,
        storage,
        progress=None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> BackupResult:
        """
        Create, upload and optionally verify one artifact for a plan.

        Args:
            plan: Backup plan
            storage: BackupStorage for the plan's target
            progress: ProgressReporter or callback receiving ProgressEvent
            cancellation_check: Optional callable raising OperationCancelled

        Returns:
            BackupResult

        Raises:
            KeepsafeError: Any failure from dump through upload, or from verify
        """
        reporter = as_reporter(progress)
        run_dir = None

        try:
            # Step 1: Prepare
            reporter.report(Stage.PREPARE, 0)
            created_utc = datetime.now(timezone.utc)
            basename = generate_artifact_basename(plan.id, created_utc)
            artifact_name = f"{basename}.{ARTIFACT_EXTENSION}"

            run_dir = new_run_dir(self.staging_dir, 'backup')
            archive_path = os.path.join(run_dir, f"{basename}.{ARCHIVE_EXTENSION}")
            artifact_path = os.path.join(run_dir, artifact_name)
            dump_path = None

            logger.info(f"Starting backup of plan {plan.id} ({plan.name}) as {artifact_name}")
            reporter.report(Stage.PREPARE, 100)

            # Step 2: Dump
            if isinstance(plan.source, DatabaseSource):
                reporter.report(Stage.DUMP, 0)
                dump_path = os.path.join(run_dir, f"{basename}.{DUMP_EXTENSION}")
                self.dump_producer.produce(plan.source, dump_path, cancellation_check)
                reporter.report(Stage.DUMP, 100)

            # Step 3: Archive
            manifest = Manifest(
                plan_id=plan.id,
                plan_name=plan.name,
                created_utc=created_utc,
                source_type=plan.source.type.value,
                source_label=source_label(plan.source),
                dump_file_name=os.path.basename(dump_path) if dump_path else None
            )
            build_archive(
                plan.source,
                archive_path,
                manifest,
                dump_path=dump_path,
                progress=reporter.for_stage(Stage.ARCHIVE),
                cancellation_check=cancellation_check
            )
            logger.info(f"Archived {len(manifest.entries)} files ({manifest.total_size} bytes)")

            # Step 4: Encrypt or copy
            if plan.crypto.enabled:
                encrypt_file(
                    archive_path,
                    artifact_path,
                    require_passphrase(plan.crypto),
                    plan.crypto.iterations,
                    progress=reporter.for_stage(Stage.ENCRYPT),
                    cancellation_check=cancellation_check
                )
                reporter.report(Stage.ENCRYPT, 100)
            else:
                copy_file(archive_path, artifact_path)
                reporter.report(Stage.COPY, 100)

            size_bytes = get_archive_size(artifact_path)

            # Step 5: Upload
            storage.upload(
                artifact_path,
                artifact_name,
                progress=reporter.for_stage(Stage.UPLOAD),
                cancellation_check=cancellation_check
            )
            reporter.report(Stage.UPLOAD, 100)
            logger.info(f"Uploaded {artifact_name} ({size_bytes / 1024 / 1024:.2f} MB)")

            # Step 6: Retention
            retention = self._apply_retention(plan, storage, cancellation_check)
            reporter.report(Stage.RETENTION, 100)

            # Step 7: Verify
            if plan.verify_after_create:
                self.verify_artifact(
                    plan, storage, artifact_name,
                    progress=reporter.for_stage(Stage.VERIFY),
                    cancellation_check=cancellation_check
                )

            reporter.report(Stage.DONE, 100)
            logger.info(f"Backup of plan {plan.id} completed: {artifact_name}")

            return BackupResult(
                artifact_name=artifact_name,
                size_bytes=size_bytes,
                created_utc=created_utc,
                manifest=manifest,
                retention=retention
            )

        finally:
            remove_staging(run_dir)

    def _apply_retention(self, plan: BackupPlan, storage, cancellation_check) -> Optional[RetentionResult]:
        try:
            return apply_retention(storage, plan.id, plan.retention.keep_last, cancellation_check)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.warning(f"Retention failed for plan {plan.id}: {e}")
            return None

    def verify_artifact(
        self,
        plan: BackupPlan,
        storage,
        artifact_name: str,
        progress: Optional[Callable[[int], None]] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> Manifest:
        """
        Download an artifact and confirm its manifest is present and parseable.

        Args:
            plan: Backup plan the artifact belongs to (for crypto settings)
            storage: BackupStorage holding the artifact
            artifact_name: Artifact to check
            progress: Optional callback receiving 0-100
            cancellation_check: Optional callable raising OperationCancelled

        Returns:
            The artifact's manifest

        Raises:
            KeepsafeError: If download, decryption or manifest parsing fails
        """
        run_dir = new_run_dir(self.staging_dir, 'verify')

        def step(start, end):
            if not progress:
                return None
            return lambda pct: progress(start + (end - start) * pct // 100)

        try:
            downloaded = os.path.join(run_dir, artifact_name)
            storage.download(artifact_name, downloaded, step(0, 60), cancellation_check)

            if plan.crypto.enabled:
                archive_path = os.path.join(run_dir, f"verify.{ARCHIVE_EXTENSION}")
                decrypt_file(downloaded, archive_path, require_passphrase(plan.crypto), cancellation_check)
            else:
                archive_path = downloaded

            manifest = read_manifest(archive_path)
            if progress:
                progress(100)

            logger.info(f"Verified {artifact_name}: {len(manifest.entries)} entries")
            return manifest

        finally:
            remove_staging(run_dir)
