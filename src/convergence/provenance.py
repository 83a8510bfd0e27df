"""Run provenance for audit.

Every reconciliation run is stamped with a provenance record answering:
- What template (content hash) and engine version produced this state?
- Which resources were created, updated, deleted, blocked?
- What state serial did the run start from and end at?

Records are emitted as structured log entries, one per run plus one per
resource change.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("ENGINE_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Counts of planned and applied actions."""

    create_count: int = 0
    update_count: int = 0
    delete_count: int = 0
    skip_count: int = 0
    failed_count: int = 0
    blocked_count: int = 0

    @property
    def total_significant(self) -> int:
        return self.create_count + self.update_count + self.delete_count


@dataclass
class RunProvenance:
    """Complete provenance record for one reconciliation run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    deployment_name: str = ""
    engine_version: str = ENGINE_VERSION
    instance_id: str = ""

    # Source of truth
    git_commit_sha: str = ""
    template_path: str = ""
    template_hash: str = ""

    # Target
    subscription_id: str = ""
    resource_group_name: str = ""

    # Outcome
    mode: str = "observe"
    deployment_mode: str = "incremental"
    state_serial_before: int = 0
    state_serial_after: int = 0
    changes_planned: int = 0
    changes_applied: int = 0
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Emits provenance records to the structured log."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(
        self,
        deployment_name: str,
        subscription_id: str,
        resource_group_name: str,
        mode: str,
        deployment_mode: str,
        template_path: str = "",
    ) -> RunProvenance:
        """Start a provenance record for a run."""
        return RunProvenance(
            deployment_name=deployment_name,
            instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
            template_path=template_path,
            subscription_id=subscription_id,
            resource_group_name=resource_group_name,
            mode=mode,
            deployment_mode=deployment_mode,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record."""
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.change_summary.failed_count or provenance.change_summary.blocked_count:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flattened for easier querying
                "deployment": provenance.deployment_name,
                "mode": provenance.mode,
                "changes_planned": provenance.changes_planned,
                "changes_applied": provenance.changes_applied,
                "template_hash": provenance.template_hash,
                "git_commit": provenance.git_commit_sha,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_change_detail(
        self,
        provenance: RunProvenance,
        node_id: str,
        action: str,
        outcome: str,
        remote_id: str | None = None,
    ) -> None:
        """Log one resource change of a run."""
        logger.info(
            "Resource change",
            extra={
                "deployment": provenance.deployment_name,
                "git_commit": provenance.git_commit_sha,
                "node_id": node_id,
                "remote_id": remote_id,
                "action": action,
                "outcome": outcome,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
