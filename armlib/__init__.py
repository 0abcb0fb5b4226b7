"""
ARM template backup shared library.
"""
# Import constants module for easy access
from . import constants
from .config import (
    generate_sample_config,
    load_config,
    load_environments,
)
from .constants import (
    ALL_CLOUDS,
    ALL_POLICIES,
    DEFAULT_PARALLEL_WORKERS,
    DEFAULT_RETRY_ATTEMPTS,
    NO_DEPLOYMENTS_ERROR,
    POLICY_PARALLEL,
    POLICY_SEQUENTIAL,
    STATUS_FAILURE,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
)
from .models import (
    Environment,
    EnvironmentResult,
    ExportErrorDocument,
    ExportRecord,
    SummaryRecord,
    summarize,
)
from .utils import (
    AuthError,
    BackupError,
    ContextMismatchError,
    ProgressTracker,
    get_backup_date,
    get_file_timestamp,
    get_timestamp,
    retry_with_backoff,
    run_tasks,
    setup_logging,
    write_json,
)

__all__ = [
    # Modules
    'constants',
    # Config
    'generate_sample_config',
    'load_config',
    'load_environments',
    # Constants
    'ALL_CLOUDS',
    'ALL_POLICIES',
    'DEFAULT_PARALLEL_WORKERS',
    'DEFAULT_RETRY_ATTEMPTS',
    'NO_DEPLOYMENTS_ERROR',
    'POLICY_PARALLEL',
    'POLICY_SEQUENTIAL',
    'STATUS_FAILURE',
    'STATUS_SKIPPED',
    'STATUS_SUCCESS',
    # Models
    'Environment',
    'EnvironmentResult',
    'ExportErrorDocument',
    'ExportRecord',
    'SummaryRecord',
    'summarize',
    # Utils
    'AuthError',
    'BackupError',
    'ContextMismatchError',
    'ProgressTracker',
    'get_backup_date',
    'get_file_timestamp',
    'get_timestamp',
    'retry_with_backoff',
    'run_tasks',
    'setup_logging',
    'write_json',
]
