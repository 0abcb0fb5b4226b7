"""
Utility functions for the ARM template backup tool.

Logging Level Standards:
------------------------
- ERROR: Failures that abort an entire environment
         "❌ Error: Failed to set Azure subscription context"
- WARNING: Per-resource-group failures that are captured as data
           "⚠ Primary export method failed for resource group: rg-app"
- INFO: Progress messages, resource group counts
        "✓ Found 12 resource group(s) in subscription: ..."
- DEBUG: Per-call details that don't affect the outcome
         "Deployment history for rg-app returned 3 entries"
"""
import json
import logging
import os
import re
import sys
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .constants import (
    AZURE_AUTH_STATUS_CODES,
    BACKUP_DATE_FORMAT,
    FILE_TIMESTAMP_FORMAT,
    ISO_TIMESTAMP_FORMAT,
    STATUS_FAILURE,
    STATUS_SKIPPED,
)

if TYPE_CHECKING:
    from rich.progress import TaskID

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    exceptions: tuple = (Exception,)
) -> Callable[[F], F]:
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts, 1 disables retries (default: 3)
        min_wait: Minimum wait time between retries in seconds (default: 1)
        max_wait: Maximum wait time between retries in seconds (default: 60)
        exceptions: Tuple of exception types to retry on (default: all Exceptions)

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(max_attempts=5, exceptions=(ServiceRequestError,))
        def call_api():
            ...
    """
    def decorator(func: F) -> F:
        return retry(
            stop=stop_after_attempt(max(1, max_attempts)),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)  # type: ignore[return-value]
    return decorator


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress tracker for one environment's export loop with rich display.

    Falls back to simple print statements if stdout is not a TTY
    (e.g., when running inside a CI job). With show_progress=False it only
    counts and prints nothing, so concurrent environments stay quiet.

    Usage:
        with ProgressTracker("ALM-TEST", total_groups=5) as tracker:
            for name in resource_groups:
                tracker.start_group(name)
                record = export_resource_group(...)
                tracker.complete_group(record.success)
    """

    def __init__(self, environment: str, total_groups: int = 0, show_progress: bool = True):
        self.environment = environment
        self.total_groups = total_groups
        self.show_progress = show_progress

        # Counters
        self.completed_groups = 0
        self.successful = 0
        self.failed = 0
        self.current_group = ""

        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._main_task: Optional["TaskID"] = None
        self._use_rich = show_progress and sys.stdout.isatty()

    def __enter__(self):
        if not self.show_progress:
            return self

        if self._use_rich:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._main_task = self._progress.add_task(
                f"{self.environment} Backup", total=self.total_groups or 1
            )
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print(f"{self.environment} Backup Starting")
            print(f"{'='*60}")
            print(f"Resource groups: {self.total_groups}")
            print()

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.show_progress:
            return False
        if self._use_rich:
            assert self._progress is not None
            assert self._console is not None
            self._progress.stop()
            self._console.print()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def start_group(self, resource_group: str):
        """Mark the start of processing a resource group."""
        self.current_group = resource_group
        if not self.show_progress:
            return
        if self._use_rich:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(
                self._main_task,
                description=f"{self.environment} [{resource_group}]"
            )
        else:
            print(f"  [{resource_group}] Exporting...")

    def complete_group(self, success: bool):
        """Mark a resource group as complete."""
        self.completed_groups += 1
        if success:
            self.successful += 1
        else:
            self.failed += 1

        if not self.show_progress:
            return

        if self._use_rich:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(self._main_task, advance=1)
        else:
            status = "OK" if success else "FAILED"
            print(f"  [{self.current_group}] {status} - {self.completed_groups}/{self.total_groups}")

    def _print_summary_rich(self):
        """Print a formatted summary using rich."""
        table = Table(title=f"{self.environment} Backup Summary", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Resource Groups", str(self.total_groups))
        table.add_row("Successfully Exported", str(self.successful))
        table.add_row("Errors Encountered", str(self.failed))

        assert self._console is not None
        self._console.print(Panel(table))

    def _print_summary_plain(self):
        """Print a plain text summary."""
        print(f"\n{'='*60}")
        print(f"{self.environment} Backup Complete")
        print(f"{'='*60}")
        print(f"  Resource Groups:       {self.total_groups}")
        print(f"  Successfully Exported: {self.successful}")
        print(f"  Errors Encountered:    {self.failed}")
        print()


# =============================================================================
# Timestamps
# =============================================================================

def utc_now() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{get_file_timestamp()}-{str(uuid.uuid4())[:8]}"


def get_timestamp(now: Optional[datetime] = None) -> str:
    """Get UTC timestamp in ISO format, to the second."""
    return (now or utc_now()).strftime(ISO_TIMESTAMP_FORMAT)


def get_file_timestamp(now: Optional[datetime] = None) -> str:
    """Get the YYYYMMDD-HHMMSS timestamp used in backup file names."""
    return (now or utc_now()).strftime(FILE_TIMESTAMP_FORMAT)


def get_backup_date(now: Optional[datetime] = None) -> str:
    """Get a human-readable UTC date, e.g. 'Mon Oct 19 08:49:00 UTC 2026'."""
    return (now or utc_now()).strftime(BACKUP_DATE_FORMAT)


def format_file_size(num_bytes: int) -> str:
    """Format a byte count the way `du -h` does (e.g. 4.0K, 1.2M)."""
    size = float(num_bytes)
    for unit in ('B', 'K', 'M', 'G'):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == 'B' else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


# =============================================================================
# Errors
# =============================================================================

class BackupError(Exception):
    """Base class for failures that abort an environment's backup."""


class AuthError(BackupError):
    """Custom exception for authentication/authorization failures.

    Raised when Azure returns an auth error while setting up the subscription
    context. Any later work would run against the wrong (or no) account.
    """
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class ContextMismatchError(BackupError):
    """The resolved subscription does not match the one requested."""
    def __init__(self, expected: str, actual: Optional[str]):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Current subscription ({actual}) does not match expected ({expected})"
        )


def is_auth_error(exc: Exception) -> bool:
    """
    Check if an exception represents an authentication/authorization error.

    Detects:
    - ClientAuthenticationError raised by azure-identity / azure-core
    - HttpResponseError with a 401/403 status
    - CredentialUnavailableError when no credential source is configured

    Args:
        exc: The exception to check

    Returns:
        True if the exception is an authentication/authorization error
    """
    exc_type_name = type(exc).__name__

    if exc_type_name in ('ClientAuthenticationError', 'CredentialUnavailableError'):
        return True

    if exc_type_name == 'HttpResponseError':
        status_code = getattr(exc, 'status_code', None)
        if status_code in AZURE_AUTH_STATUS_CODES:
            return True
        error_msg = str(exc).lower()
        return 'authenticationfailed' in error_msg or 'authorizationfailed' in error_msg

    return False


def check_and_raise_auth_error(exc: Exception, context: str) -> None:
    """
    Check if exception is an auth error and raise AuthError if so.

    Call this in exception handlers before logging and continuing.

    Args:
        exc: The caught exception
        context: Description of what was being attempted (e.g., "set subscription context")

    Raises:
        AuthError: If exc is an authentication/authorization error
    """
    if is_auth_error(exc):
        raise AuthError(
            f"Authentication/authorization error while trying to {context}: {exc}",
            original_error=exc
        ) from exc


# =============================================================================
# Task Execution
# =============================================================================

def run_tasks(
    tasks: List[Tuple[str, Callable, tuple]],
    parallel_workers: int = 1,
    logger: Optional[logging.Logger] = None
) -> Dict[str, Any]:
    """
    Execute named tasks either serially or in parallel.

    Each task is a tuple of (name, function, args). Tasks must not share
    mutable state; results are keyed by task name. A task that raises is
    recorded with its exception as the result so one failure never stops
    the others.

    Args:
        tasks: List of (name, fn, args) tuples
        parallel_workers: Number of threads (1 = serial, >1 = parallel)
        logger: Optional logger for debug/warning messages

    Returns:
        Dict of task name -> return value (or the exception raised)
    """
    results: Dict[str, Any] = {}
    _logger = logger or logging.getLogger(__name__)

    if parallel_workers <= 1:
        for name, fn, args in tasks:
            try:
                results[name] = fn(*args)
            except Exception as e:
                _logger.warning(f"Task {name} failed: {e}")
                results[name] = e
        return results

    _logger.info(f"Running {len(tasks)} task(s) in parallel with {parallel_workers} threads")

    with ThreadPoolExecutor(max_workers=parallel_workers) as executor:
        futures = {
            executor.submit(fn, *args): name
            for name, fn, args in tasks
        }

        for future in as_completed(futures):
            name = futures[future]
            try:
                results[name] = future.result()
                _logger.debug(f"Task {name} finished")
            except Exception as e:
                _logger.warning(f"Task {name} failed: {e}")
                results[name] = e

    return results


# =============================================================================
# Redaction
# =============================================================================

def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """
    Hash a sensitive ID using consistent hashing.

    Uses first 8 chars of SHA256 for uniqueness with minimal collision risk.

    Example: 12345678-1234-1234-1234-123456789012 -> id-a3f8b2c1
    """
    import hashlib
    if not value:
        return value
    hash_val = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{hash_val}" if prefix else hash_val


# Patterns for redacting sensitive data in log messages
_LOG_REDACT_PATTERNS = [
    # Subscription paths - must come before the bare GUID pattern
    (re.compile(r'(/subscriptions/)([0-9a-f-]{36})', re.IGNORECASE),
     lambda m: f"{m.group(1)}{hash_sensitive_id(m.group(2).lower())}"),
    # GUIDs (subscription IDs, tenant IDs, client IDs)
    (re.compile(r'\b([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b', re.IGNORECASE),
     lambda m: f"id-{hash_sensitive_id(m.group(1).lower())}"),
]


def redact_log_message(message: str) -> str:
    """
    Redact subscription, tenant and client IDs from a log message.

    The same ID always produces the same hash, allowing correlation
    between log lines.
    """
    if not message:
        return message

    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)

    return message


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts sensitive IDs from log messages.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact sensitive data from the log record message."""
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(str(arg)) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


# =============================================================================
# Logging & Files
# =============================================================================

def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write logs to a file in this directory

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # The Azure SDK logs every HTTP request at INFO
    logging.getLogger('azure').setLevel(max(numeric_level, logging.WARNING))

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        log_file = os.path.join(output_dir, f"arm_backup_log_{get_file_timestamp()}.log")

        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        # Log files may be committed alongside the backups
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


def write_json(data: Any, filepath: str) -> None:
    """Write data to a JSON file with secure permissions."""
    parent = os.path.dirname(filepath)
    if parent:
        os.makedirs(parent, exist_ok=True)

    # Owner read/write only: templates can carry default parameter values
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        f = os.fdopen(fd, 'w', encoding='utf-8')
    except Exception:
        os.close(fd)
        raise
    with f:
        json.dump(data, f, indent=2, default=str)
    logger.debug(f"Wrote {filepath}")


def load_json_file(filepath: str) -> Optional[Any]:
    """Load a JSON file, returning None on error."""
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
        logger.warning(f"Could not load {filepath}: {e}")
        return None


def print_summary_table(rows: List[Dict]) -> None:
    """Print a per-environment summary table to console."""
    if not rows:
        print("No environments processed.")
        return

    table = Table(title="ARM Template Backup Report")
    table.add_column("Environment", style="cyan")
    table.add_column("Status")
    table.add_column("Successful", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Total", justify="right")

    status_styles = {STATUS_FAILURE: "red", STATUS_SKIPPED: "yellow"}

    for row in rows:
        status = row.get('status', '')
        style = status_styles.get(status, "green")
        table.add_row(
            row.get('environment', ''),
            f"[{style}]{status}[/{style}]",
            str(row.get('successful_exports', 0)),
            str(row.get('failed_exports', 0)),
            str(row.get('total_resource_groups', 0)),
        )

    Console().print(table)
