"""
Retention policy enforcement for backups.

Artifacts are counted per plan by their name prefix, and ordered by name.
The timestamp embedded in every artifact name makes name order equal to
creation order, so the newest artifacts sort first in descending order.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from keepsafe.errors import OperationCancelled, RetentionDeleteFailed
from .compression import sanitize_plan_id


logger = logging.getLogger(__name__)


def artifact_prefix(plan_id: str) -> str:
    """Name prefix shared by every artifact of a plan."""
    return f"{sanitize_plan_id(plan_id)}_"


def filter_plan_artifacts(names: List[str], plan_id: str) -> List[str]:
    """
    Select the artifact names that belong to a plan.

    A name belongs to the plan when it is the plan prefix followed by a
    yyyyMMdd_HHmmss timestamp and an extension. Matching is case-insensitive.
    Artifacts written under an earlier plan id are not matched.

    Args:
        names: Object names returned by the storage backend
        plan_id: Plan identifier

    Returns:
        Matching names, in input order
    """
    pattern = re.compile(re.escape(artifact_prefix(plan_id)) + r'\d{8}_\d{6}\.', re.IGNORECASE)
    return [name for name in names if pattern.match(name)]


@dataclass
class RetentionResult:
    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failures: List[RetentionDeleteFailed] = field(default_factory=list)


def apply_retention(
    storage,
    plan_id: str,
    keep_last: int,
    cancellation_check: Optional[Callable[[], None]] = None
) -> RetentionResult:
    """
    Delete a plan's artifacts beyond the newest keep_last.

    Each deletion is attempted independently: a failure is logged, recorded
    on the result and the remaining deletions still run.

    Args:
        storage: BackupStorage holding the artifacts
        plan_id: Plan identifier
        keep_last: Number of artifacts to keep (at least one is always kept)
        cancellation_check: Optional callable raising when cancelled

    Returns:
        RetentionResult

    Raises:
        ListFailed: If the artifact list cannot be read
    """
    keep = max(1, keep_last or 0)

    names = filter_plan_artifacts(storage.list_artifacts(), plan_id)
    names.sort(key=str.lower, reverse=True)

    result = RetentionResult(kept=names[:keep])

    for name in names[keep:]:
        if cancellation_check:
            cancellation_check()

        try:
            storage.delete(name, cancellation_check)
            result.deleted.append(name)
            logger.info(f"Retention deleted {name}")
        except OperationCancelled:
            raise
        except Exception as e:
            failure = RetentionDeleteFailed(name, e)
            result.failures.append(failure)
            logger.warning(str(failure))

    logger.info(
        f"Retention for {plan_id}: kept {len(result.kept)}, "
        f"deleted {len(result.deleted)}, failed {len(result.failures)}"
    )
    return result
