"""
Data models for the ARM template backup tool.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .constants import (
    CLOUD_PUBLIC,
    DEFAULT_COMMIT_SHA,
    DEFAULT_TRIGGER,
    METHOD_NONE,
    NO_DEPLOYMENTS_ERROR,
    STATUS_SUCCESS,
)


@dataclass(frozen=True)
class Environment:
    """
    A named backup target: one subscription plus the credentials used to reach it.
    """
    name: str  # e.g. "ALM-TEST"
    subscription_id: str
    cloud: str = CLOUD_PUBLIC

    # Service principal settings. The secret itself is never stored here,
    # only the name of the environment variable holding it.
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret_env: Optional[str] = None

    enabled: bool = True


@dataclass(frozen=True)
class ExportRecord:
    """Outcome of exporting one resource group."""
    resource_group: str
    file_path: str
    success: bool
    method: str = METHOD_NONE  # "primary", "fallback" or "none"
    error: Optional[str] = None
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass(frozen=True)
class ExportErrorDocument:
    """Document written in place of a template when no export method succeeded."""
    resource_group: str
    subscription_id: str
    timestamp: str
    error: str = NO_DEPLOYMENTS_ERROR

    def to_dict(self) -> Dict[str, str]:
        return {
            'error': self.error,
            'resourceGroup': self.resource_group,
            'subscription': self.subscription_id,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class SummaryRecord:
    """Per-environment backup summary."""
    environment: str
    subscription_id: str
    backup_timestamp: str
    backup_date: str
    successful_exports: int = 0
    failed_exports: int = 0
    total_resource_groups: int = 0
    triggered_by: str = DEFAULT_TRIGGER
    commit_sha: str = DEFAULT_COMMIT_SHA

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the on-disk summary layout."""
        return {
            'environment': self.environment,
            'subscription_id': self.subscription_id,
            'backup_timestamp': self.backup_timestamp,
            'backup_date': self.backup_date,
            'summary': {
                'successful_exports': self.successful_exports,
                'failed_exports': self.failed_exports,
                'total_resource_groups': self.total_resource_groups,
            },
            'triggered_by': self.triggered_by,
            'commit_sha': self.commit_sha,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SummaryRecord":
        """Build a record from a summary file's contents."""
        counts = data.get('summary') or {}
        return cls(
            environment=data.get('environment', ''),
            subscription_id=data.get('subscription_id', ''),
            backup_timestamp=data.get('backup_timestamp', ''),
            backup_date=data.get('backup_date', ''),
            successful_exports=int(counts.get('successful_exports', 0)),
            failed_exports=int(counts.get('failed_exports', 0)),
            total_resource_groups=int(counts.get('total_resource_groups', 0)),
            triggered_by=data.get('triggered_by', DEFAULT_TRIGGER),
            commit_sha=data.get('commit_sha', DEFAULT_COMMIT_SHA),
        )


@dataclass
class EnvironmentResult:
    """Terminal state of one environment in a multi-environment run."""
    environment: str
    status: str = STATUS_SUCCESS  # "success", "failure" or "skipped"
    summary: Optional[SummaryRecord] = None
    summary_path: Optional[str] = None
    error: Optional[str] = None
    records: List[ExportRecord] = field(default_factory=list)


def summarize(
    records: Iterable[ExportRecord],
    environment: str,
    subscription_id: str,
    backup_timestamp: str,
    backup_date: str,
    triggered_by: str = DEFAULT_TRIGGER,
    commit_sha: str = DEFAULT_COMMIT_SHA,
) -> SummaryRecord:
    """
    Fold export records into a summary.

    Counts are derived from the records alone so that
    successful + failed always equals the total.
    """
    successful = 0
    failed = 0

    for record in records:
        if record.success:
            successful += 1
        else:
            failed += 1

    return SummaryRecord(
        environment=environment,
        subscription_id=subscription_id,
        backup_timestamp=backup_timestamp,
        backup_date=backup_date,
        successful_exports=successful,
        failed_exports=failed,
        total_resource_groups=successful + failed,
        triggered_by=triggered_by,
        commit_sha=commit_sha,
    )
