"""Pass provenance for audit.

One structured record per reconciliation pass answers:
- "What did the operator change in the root zone, and when?"
- "Which accounts were visible, and which failed?"
- "Which version of the operator and of the document was running?"
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class ChangeSummary:
    """Counts of changes planned for the root zone."""

    create_count: int = 0
    upsert_count: int = 0
    delete_count: int = 0
    skipped_count: int = 0
    conflict_count: int = 0


@dataclass
class PassProvenance:
    """Complete provenance record for a reconciliation pass."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    root_domain: str = ""
    operator_version: str = OPERATOR_VERSION
    operator_instance_id: str = ""
    owner_id: str = ""

    # Git source of truth
    git_commit_sha: str = ""
    spec_file_hash: str = ""

    # Azure context
    root_subscription_id: str = ""
    accounts_scanned: list[str] = field(default_factory=list)
    accounts_failed: list[str] = field(default_factory=list)

    # Outcome
    status: str = ""
    dry_run: bool = False
    root_zone_version: str = ""
    changes_applied: int = 0
    concurrency_retries: int = 0
    change_summary: ChangeSummary = field(default_factory=ChangeSummary)

    duration_seconds: float = 0.0

    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def hash_file(path: str) -> str:
    """SHA256 of a file's content, empty if it cannot be read."""
    try:
        with open(path, "rb") as f:
            return hashlib.sha256(f.read()).hexdigest()
    except OSError:
        return ""


class ProvenanceLogger:
    """Emits provenance records through the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(
        self,
        root_domain: str,
        root_subscription_id: str,
        owner_id: str,
        spec_file: str | None = None,
        dry_run: bool = False,
    ) -> PassProvenance:
        return PassProvenance(
            root_domain=root_domain,
            operator_instance_id=self._instance_id,
            owner_id=owner_id,
            git_commit_sha=self._git_commit_sha,
            spec_file_hash=hash_file(spec_file) if spec_file else "",
            root_subscription_id=root_subscription_id,
            dry_run=dry_run,
        )

    def log_provenance(self, provenance: PassProvenance) -> None:
        """Log a completed provenance record.

        Errors log at ERROR, passes with failed accounts or conflicts at
        WARNING, everything else at INFO.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.accounts_failed or provenance.change_summary.conflict_count:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "root_domain": provenance.root_domain,
                "status": provenance.status,
                "changes_applied": provenance.changes_applied,
                "accounts_failed": provenance.accounts_failed,
                "git_commit": provenance.git_commit_sha,
                "operator_version": provenance.operator_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
