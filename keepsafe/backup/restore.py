"""
Restore engine - brings artifacts back to disk.

Single restore: download -> decrypt (or copy) -> extract.

Chain restore first downloads the manifest of every artifact of the plan,
resolves the contiguous run from the nearest full backup up to the target,
and restores each artifact of that run in order.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from keepsafe.errors import ArtifactNotFound, ConfigurationError, NoFullBackupFound
from keepsafe.models import BackupPlan, RestorePlan
from keepsafe.utils.crypto import decrypt_file
from .compression import ARCHIVE_EXTENSION, extract_archive, read_manifest
from .executor import as_reporter, new_run_dir, remove_staging, require_passphrase
from .manifest import Manifest
from .progress import CHAIN_SCAN_END, ProgressReporter, Stage
from .retention import filter_plan_artifacts


logger = logging.getLogger(__name__)

ChainLink = Tuple[str, Manifest]


@dataclass
class RestoreResult:
    destination: str
    artifacts: List[str] = field(default_factory=list)
    files_written: int = 0


def effective_target(restore_plan: RestorePlan, backup_plan: BackupPlan):
    """Storage target for a restore: the restore plan's own, else the backup plan's."""
    return restore_plan.target or backup_plan.target


def effective_crypto(restore_plan: RestorePlan, backup_plan: BackupPlan):
    return restore_plan.crypto or backup_plan.crypto


def resolve_restore_chain(chain: List[ChainLink], target_name: str) -> List[ChainLink]:
    """
    Resolve the artifacts needed to reconstruct a target.

    Args:
        chain: (artifact name, manifest) pairs in ascending name order
        target_name: Artifact to reconstruct

    Returns:
        The contiguous run from the nearest full backup at or before the
        target, through the target

    Raises:
        ConfigurationError: If two artifacts share a name (case-insensitive)
        ArtifactNotFound: If the target is not in the chain
        NoFullBackupFound: If no full backup precedes the target
    """
    seen = set()
    for name, _ in chain:
        key = name.lower()
        if key in seen:
            raise ConfigurationError(f"Ambiguous artifact name in chain: {name}")
        seen.add(key)

    target_key = (target_name or '').lower()
    index = next((i for i, (name, _) in enumerate(chain) if name.lower() == target_key), None)
    if index is None:
        raise ArtifactNotFound(f"Artifact not found: {target_name}")

    for start in range(index, -1, -1):
        if chain[start][1].is_full:
            return chain[start:index + 1]

    raise NoFullBackupFound(f"No full backup found at or before {target_name}")


class RestoreEngine:
    """Restores artifacts produced by BackupEngine."""

    def __init__(self, staging_dir: str):
        self.staging_dir = staging_dir

    def _fetch_archive(self, storage, artifact_name: str, run_dir: str, crypto,
                       reporter: ProgressReporter, cancellation_check) -> str:
        """Download an artifact and return the path of its plain archive."""
        downloaded = os.path.join(run_dir, os.path.basename(artifact_name))
        storage.download(
            artifact_name, downloaded,
            progress=reporter.for_stage(Stage.DOWNLOAD),
            cancellation_check=cancellation_check
        )
        reporter.report(Stage.DOWNLOAD, 100)

        if crypto is not None and crypto.enabled:
            archive_path = os.path.join(run_dir, f"restore.{ARCHIVE_EXTENSION}")
            decrypt_file(downloaded, archive_path, require_passphrase(crypto), cancellation_check)
            os.remove(downloaded)
        else:
            archive_path = downloaded

        reporter.report(Stage.DECRYPT, 100)
        return archive_path

    def read_artifact_manifest(self, storage, artifact_name: str, crypto,
                               cancellation_check: Optional[Callable[[], None]] = None) -> Manifest:
        """
        Download an artifact and read its manifest.

        Raises:
            KeepsafeError: If download, decryption or parsing fails
        """
        run_dir = new_run_dir(self.staging_dir, 'scan')
        try:
            archive_path = self._fetch_archive(
                storage, artifact_name, run_dir, crypto, ProgressReporter(), cancellation_check
            )
            return read_manifest(archive_path)
        finally:
            remove_staging(run_dir)

    def _restore_artifact(self, restore_plan: RestorePlan, crypto, storage, artifact_name: str,
                          overwrite: bool, reporter: ProgressReporter, cancellation_check) -> int:
        run_dir = new_run_dir(self.staging_dir, 'restore')
        try:
            archive_path = self._fetch_archive(
                storage, artifact_name, run_dir, crypto, reporter, cancellation_check
            )
            written = extract_archive(
                archive_path,
                restore_plan.restore_to_directory,
                include_paths=restore_plan.include_paths,
                overwrite=overwrite,
                progress=reporter.for_stage(Stage.EXTRACT),
                cancellation_check=cancellation_check
            )
            reporter.report(Stage.EXTRACT, 100)
            logger.info(f"Restored {written} files from {artifact_name}")
            return written
        finally:
            remove_staging(run_dir)

    def restore(
        self,
        restore_plan: RestorePlan,
        backup_plan: BackupPlan,
        storage,
        artifact_name: Optional[str] = None,
        progress=None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> RestoreResult:
        """
        Restore a single artifact.

        Args:
            restore_plan: Restore plan (destination, filter, overwrite flag)
            backup_plan: Backup plan the artifact belongs to
            storage: BackupStorage holding the artifact
            artifact_name: Artifact to restore (defaults to the plan's)
            progress: ProgressReporter or callback receiving ProgressEvent
            cancellation_check: Optional callable raising OperationCancelled

        Returns:
            RestoreResult
        """
        reporter = as_reporter(progress)
        name = artifact_name or restore_plan.artifact_name

        logger.info(f"Restoring {name} to {restore_plan.restore_to_directory}")
        written = self._restore_artifact(
            restore_plan,
            effective_crypto(restore_plan, backup_plan),
            storage,
            name,
            restore_plan.overwrite_existing,
            reporter,
            cancellation_check
        )
        reporter.report(Stage.DONE, 100)

        return RestoreResult(
            destination=restore_plan.restore_to_directory,
            artifacts=[name],
            files_written=written
        )

    def restore_chain(
        self,
        restore_plan: RestorePlan,
        backup_plan: BackupPlan,
        storage,
        progress=None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> RestoreResult:
        """
        Resolve and restore the artifacts needed to reconstruct the plan's target.

        Every artifact in the resolved run is extracted with overwrite forced
        on, in ascending order.

        Raises:
            ArtifactNotFound: If the target is not stored for the plan
            NoFullBackupFound: If no full backup precedes the target
        """
        reporter = as_reporter(progress)
        crypto = effective_crypto(restore_plan, backup_plan)

        # Chain scan
        reporter.report(Stage.SCAN, 0)
        names = filter_plan_artifacts(storage.list_artifacts(), backup_plan.id)
        names.sort(key=str.lower)

        if restore_plan.artifact_name.lower() not in (n.lower() for n in names):
            raise ArtifactNotFound(f"Artifact not found: {restore_plan.artifact_name}")

        chain = []
        for index, name in enumerate(names, start=1):
            if cancellation_check:
                cancellation_check()
            chain.append((name, self.read_artifact_manifest(storage, name, crypto, cancellation_check)))
            reporter.report(Stage.SCAN, index * 100 // len(names))

        resolved = resolve_restore_chain(chain, restore_plan.artifact_name)
        logger.info(f"Resolved restore chain: {', '.join(name for name, _ in resolved)}")

        # Restore pipeline, split evenly across the resolved artifacts
        pipeline = reporter.sub_range(CHAIN_SCAN_END, 100)
        result = RestoreResult(destination=restore_plan.restore_to_directory)
        count = len(resolved)

        for index, (name, _) in enumerate(resolved):
            step = pipeline.sub_range(index * 100 // count, (index + 1) * 100 // count)
            result.files_written += self._restore_artifact(
                restore_plan, crypto, storage, name, True, step, cancellation_check
            )
            result.artifacts.append(name)

        reporter.report(Stage.DONE, 100)
        return result
