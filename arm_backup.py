#!/usr/bin/env python3
"""
ARM Template Backup - Single Environment

Exports the ARM template of every resource group in one subscription,
validates the exported JSON and writes a backup summary.

Usage:
    python3 arm_backup.py <ENVIRONMENT_NAME> <SUBSCRIPTION_ID>
    python3 arm_backup.py ALM-TEST 12345678-1234-1234-1234-123456789012
    python3 arm_backup.py ALM-TEST <subscription-id> --cloud AzureUSGovernment --output ./backups

Output layout:
    <output>/<ENVIRONMENT_NAME>/<rg>/<rg>_<YYYYMMDD-HHMMSS>.json
    <output>/<ENVIRONMENT_NAME>/backup_summary_<YYYYMMDD-HHMMSS>.json
"""
import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.subscription import SubscriptionClient

from armlib.config import load_config, load_environments
from armlib.constants import (
    ALL_CLOUDS,
    AUTHORITY_HOSTS,
    CLOUD_PUBLIC,
    DEFAULT_COMMIT_SHA,
    DEFAULT_RETRY_MAX_WAIT,
    DEFAULT_RETRY_MIN_WAIT,
    DEFAULT_TRIGGER,
    ENV_COMMIT_SHA,
    ENV_TRIGGER,
    EXPORT_TEMPLATE_OPTIONS,
    INVALID_JSON_PREVIEW_CHARS,
    LOG_SEPARATOR,
    MANAGEMENT_ENDPOINTS,
    MARK_ERROR,
    MARK_SUCCESS,
    MARK_WARNING,
    METHOD_FALLBACK,
    METHOD_NONE,
    METHOD_PRIMARY,
    STATUS_SUCCESS,
    SUMMARY_FILE_PREFIX,
)
from armlib.models import (
    Environment,
    EnvironmentResult,
    ExportErrorDocument,
    ExportRecord,
    summarize,
)
from armlib.utils import (
    BackupError,
    ContextMismatchError,
    ProgressTracker,
    check_and_raise_auth_error,
    format_file_size,
    get_backup_date,
    get_file_timestamp,
    get_timestamp,
    retry_with_backoff,
    setup_logging,
    utc_now,
    write_json,
)

logger = logging.getLogger(__name__)

# Only network-level failures are retried
TRANSIENT_ERRORS = (ServiceRequestError, ServiceResponseError)


# =============================================================================
# Authentication & Subscription Context
# =============================================================================

def _management_endpoint(cloud: str) -> str:
    return MANAGEMENT_ENDPOINTS.get(cloud, MANAGEMENT_ENDPOINTS[CLOUD_PUBLIC])


def _client_kwargs(cloud: str) -> Dict[str, Any]:
    """Keyword arguments pointing a management client at the right cloud."""
    endpoint = _management_endpoint(cloud)
    return {
        'base_url': endpoint,
        'credential_scopes': [f"{endpoint}/.default"],
    }


def get_credential(environment: Environment):
    """
    Get an Azure credential for an environment.

    Uses a service principal when tenant, client id and the secret variable
    are all available, otherwise DefaultAzureCredential (az login, managed
    identity, workload identity federation).
    """
    authority = AUTHORITY_HOSTS.get(environment.cloud, AUTHORITY_HOSTS[CLOUD_PUBLIC])

    client_secret = None
    if environment.client_secret_env:
        client_secret = os.environ.get(environment.client_secret_env)
        if not client_secret:
            logger.warning(
                f"{MARK_WARNING} {environment.client_secret_env} is not set; "
                f"falling back to DefaultAzureCredential for {environment.name}"
            )

    if environment.tenant_id and environment.client_id and client_secret:
        logger.debug(f"Using service principal credential for {environment.name}")
        return ClientSecretCredential(
            environment.tenant_id,
            environment.client_id,
            client_secret,
            authority=authority,
        )

    return DefaultAzureCredential(authority=authority)


def set_subscription_context(credential, subscription_id: str, cloud: str = CLOUD_PUBLIC) -> str:
    """
    Select a subscription and verify it is the one that was asked for.

    Returns:
        The resolved subscription id

    Raises:
        AuthError: If Azure rejects the credential
        ContextMismatchError: If the resolved subscription differs from the requested one
        BackupError: If the subscription cannot be resolved for any other reason
    """
    logger.info(f"Setting Azure context for subscription: {subscription_id}")

    try:
        subscription_client = SubscriptionClient(credential, **_client_kwargs(cloud))
        subscription = subscription_client.subscriptions.get(subscription_id)
    except Exception as e:
        check_and_raise_auth_error(e, "set subscription context")
        raise BackupError(f"Failed to set Azure subscription context: {e}") from e

    current = getattr(subscription, 'subscription_id', None)
    if not current or current.lower() != subscription_id.lower():
        raise ContextMismatchError(expected=subscription_id, actual=current)

    logger.info(f"{MARK_SUCCESS} Successfully set Azure context for subscription: {subscription_id}")
    return current


def get_resource_client(credential, subscription_id: str, cloud: str = CLOUD_PUBLIC) -> ResourceManagementClient:
    """Create a Resource Manager client bound to one subscription."""
    return ResourceManagementClient(credential, subscription_id, **_client_kwargs(cloud))


# =============================================================================
# Resource Discovery
# =============================================================================

def list_resource_groups(resource_client) -> List[str]:
    """List resource group names, sorted for deterministic processing."""
    try:
        names = [rg.name for rg in resource_client.resource_groups.list() if rg.name]
    except Exception as e:
        check_and_raise_auth_error(e, "list resource groups")
        raise BackupError(f"Failed to list resource groups: {e}") from e

    return sorted(names)


# =============================================================================
# Template Export
# =============================================================================

def export_primary(resource_client, resource_group: str) -> Optional[Any]:
    """
    Export the current template of a resource group.

    Includes default parameter values and skips resource name parameters.
    Returns None when the export produced no template.
    """
    poller = resource_client.resource_groups.begin_export_template(
        resource_group,
        {
            'resources': ['*'],
            'options': EXPORT_TEMPLATE_OPTIONS,
        },
    )
    result = poller.result()

    error = getattr(result, 'error', None)
    if error is not None:
        # Partial exports still carry a template; keep it but surface the problem
        logger.debug(f"Export of {resource_group} reported: {getattr(error, 'message', error)}")

    return getattr(result, 'template', None) or None


def _deployment_timestamp(deployment) -> datetime:
    properties = getattr(deployment, 'properties', None)
    timestamp = getattr(properties, 'timestamp', None)
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            return timestamp.replace(tzinfo=timezone.utc)
        return timestamp
    return datetime.min.replace(tzinfo=timezone.utc)


def export_from_deployment_history(resource_client, resource_group: str) -> Optional[Any]:
    """
    Reconstruct a template from the most recent deployment of a resource group.

    This reflects only what the last deployment deployed, not the group's
    current state. Returns None when the group has no deployments.
    """
    deployments = list(resource_client.deployments.list_by_resource_group(resource_group))
    logger.debug(f"Deployment history for {resource_group} returned {len(deployments)} entries")

    if not deployments:
        return None

    latest = max(deployments, key=_deployment_timestamp)
    result = resource_client.deployments.export_template(resource_group, latest.name)

    return getattr(result, 'template', None) or None


def validate_json_file(file_path: str) -> bool:
    """Check that a file holds well-formed JSON. Never raises."""
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()
    except OSError as e:
        logger.warning(f"{MARK_WARNING} Warning: Could not read {file_path}: {e}")
        return False

    try:
        json.loads(content)
    except ValueError:
        logger.warning(f"{MARK_WARNING} Warning: Invalid JSON content in: {file_path}")
        logger.warning(f"First {INVALID_JSON_PREVIEW_CHARS} characters of file content: "
                       f"{content[:INVALID_JSON_PREVIEW_CHARS]!r}")
        return False

    logger.info(f"{MARK_SUCCESS} Verified valid JSON content in: {file_path}")
    return True


def _attempt(
    method: Callable[[Any, str], Optional[Any]],
    resource_client,
    resource_group: str,
    retry_attempts: int
) -> Optional[Any]:
    """Run one export method, retrying only transient network failures."""
    wrapped = retry_with_backoff(
        max_attempts=retry_attempts,
        min_wait=DEFAULT_RETRY_MIN_WAIT,
        max_wait=DEFAULT_RETRY_MAX_WAIT,
        exceptions=TRANSIENT_ERRORS,
    )(method)
    return wrapped(resource_client, resource_group)


def _write_template(template: Any, file_path: str, resource_group: str, method: str) -> ExportRecord:
    write_json(template, file_path)
    size = format_file_size(os.path.getsize(file_path))
    logger.info(f"{MARK_SUCCESS} Exported ARM template saved to: {file_path} (Size: {size})")

    if validate_json_file(file_path):
        return ExportRecord(
            resource_group=resource_group,
            file_path=file_path,
            success=True,
            method=method,
            timestamp=get_timestamp(),
        )

    return ExportRecord(
        resource_group=resource_group,
        file_path=file_path,
        success=False,
        method=method,
        error="Invalid JSON content",
        timestamp=get_timestamp(),
    )


def export_resource_group(
    resource_client,
    resource_group: str,
    file_path: str,
    subscription_id: str,
    retry_attempts: int = 1
) -> ExportRecord:
    """
    Export one resource group's template to file_path.

    Tries a full resource group export first, then the most recent
    deployment's template. If neither produces a template an error
    document is written instead, so the file always exists.
    """
    logger.info(f"Attempting to export ARM template for resource group: {resource_group}")

    try:
        template = _attempt(export_primary, resource_client, resource_group, retry_attempts)
        if template:
            return _write_template(template, file_path, resource_group, METHOD_PRIMARY)
        logger.warning(f"{MARK_WARNING} Primary export returned no template for resource group: {resource_group}")
    except Exception as e:
        logger.warning(f"{MARK_WARNING} Primary export method failed for resource group: {resource_group}: {e}")

    logger.info("Trying alternative export method...")
    try:
        template = _attempt(export_from_deployment_history, resource_client, resource_group, retry_attempts)
        if template:
            logger.info(f"{MARK_SUCCESS} Alternative export method succeeded")
            return _write_template(template, file_path, resource_group, METHOD_FALLBACK)
    except Exception as e:
        logger.debug(f"Deployment history export failed for {resource_group}: {e}")

    logger.warning(
        f"{MARK_WARNING} Alternative export also failed. "
        f"Resource group may not have deployments to export."
    )
    document = ExportErrorDocument(
        resource_group=resource_group,
        subscription_id=subscription_id,
        timestamp=get_timestamp(),
    )
    write_json(document.to_dict(), file_path)

    return ExportRecord(
        resource_group=resource_group,
        file_path=file_path,
        success=False,
        method=METHOD_NONE,
        error=document.error,
        timestamp=document.timestamp,
    )


# =============================================================================
# Environment Backup
# =============================================================================

def get_trigger_metadata() -> Tuple[str, str]:
    """What started this run and which revision it ran against."""
    return (
        os.environ.get(ENV_TRIGGER) or DEFAULT_TRIGGER,
        os.environ.get(ENV_COMMIT_SHA) or DEFAULT_COMMIT_SHA,
    )


def list_backup_files(folder: str) -> List[str]:
    """Log every JSON file under folder with its size."""
    files = []
    for root, _dirs, names in os.walk(folder):
        for name in names:
            if name.endswith('.json'):
                files.append(os.path.join(root, name))
    files.sort()

    logger.info("Generated backup files:")
    for path in files:
        logger.info(f"  - {path} ({format_file_size(os.path.getsize(path))})")

    return files


def backup_environment(
    environment: Environment,
    output_dir: str = '.',
    credential=None,
    resource_client=None,
    retry_attempts: int = 1,
    now: Optional[datetime] = None,
    show_progress: bool = True
) -> EnvironmentResult:
    """
    Back up every resource group of one environment.

    Args:
        environment: Environment to back up
        output_dir: Directory the environment folder is created in
        credential: Azure credential (default: resolved from the environment)
        resource_client: Pre-built ResourceManagementClient (default: created here)
        retry_attempts: Attempts per export method for transient errors
        now: Run start time, shared by every file name in this run
        show_progress: Show a progress bar when attached to a terminal

    Raises:
        BackupError: If the subscription is missing, the context cannot be
            set or does not match, or resource groups cannot be listed.
            Nothing is written to disk in those cases.
    """
    subscription_id = (environment.subscription_id or '').strip()

    logger.info(LOG_SEPARATOR)
    logger.info("Starting ARM Template Backup Process")
    logger.info(f"Environment: {environment.name}")
    logger.info(f"Subscription ID: {subscription_id}")
    logger.info(LOG_SEPARATOR)

    if not subscription_id:
        raise BackupError("SUBSCRIPTION_ID is not set or empty!")

    if credential is None:
        credential = get_credential(environment)

    set_subscription_context(credential, subscription_id, environment.cloud)

    if resource_client is None:
        resource_client = get_resource_client(credential, subscription_id, environment.cloud)

    now = now or utc_now()
    timestamp = get_file_timestamp(now)
    triggered_by, commit_sha = get_trigger_metadata()

    logger.info("Retrieving resource groups from subscription...")
    resource_groups = list_resource_groups(resource_client)

    environment_folder = os.path.join(output_dir, environment.name)
    logger.info(f"Creating directory: {environment_folder}")
    os.makedirs(environment_folder, exist_ok=True)

    if resource_groups:
        logger.info(f"{MARK_SUCCESS} Found {len(resource_groups)} resource group(s) in subscription: {subscription_id}")
    else:
        logger.warning(f"{MARK_WARNING} No resource groups found in subscription: {subscription_id}")

    records: List[ExportRecord] = []
    with ProgressTracker(environment.name, total_groups=len(resource_groups), show_progress=show_progress) as tracker:
        for resource_group in resource_groups:
            logger.info(LOG_SEPARATOR)
            logger.info(f"Processing resource group: {resource_group}")
            tracker.start_group(resource_group)

            file_path = os.path.join(
                environment_folder, resource_group, f"{resource_group}_{timestamp}.json"
            )
            record = export_resource_group(
                resource_client, resource_group, file_path, subscription_id, retry_attempts
            )
            records.append(record)
            tracker.complete_group(record.success)

            if record.success:
                logger.info(f"{MARK_SUCCESS} Successfully processed resource group: {resource_group}")
            else:
                logger.warning(f"{MARK_ERROR} Failed to process resource group: {resource_group}")

    summary = summarize(
        records,
        environment=environment.name,
        subscription_id=subscription_id,
        backup_timestamp=timestamp,
        backup_date=get_backup_date(now),
        triggered_by=triggered_by,
        commit_sha=commit_sha,
    )
    summary_path = os.path.join(environment_folder, f"{SUMMARY_FILE_PREFIX}{timestamp}.json")
    write_json(summary.to_dict(), summary_path)

    logger.info(LOG_SEPARATOR)
    logger.info("ARM Template Backup Process Completed")
    logger.info(f"Environment: {environment.name}")
    logger.info(f"Total Resource Groups: {summary.total_resource_groups}")
    logger.info(f"Successfully Exported: {summary.successful_exports}")
    logger.info(f"Errors Encountered: {summary.failed_exports}")
    logger.info(LOG_SEPARATOR)

    list_backup_files(environment_folder)

    return EnvironmentResult(
        environment=environment.name,
        status=STATUS_SUCCESS,
        summary=summary,
        summary_path=summary_path,
        records=records,
    )


# =============================================================================
# CLI
# =============================================================================

def _environment_from_args(args, config: Dict[str, Any]) -> Environment:
    """Combine CLI arguments with a matching configured environment, if any."""
    configured = {env.name: env for env in load_environments(config)}
    base = configured.get(args.environment_name)

    return Environment(
        name=args.environment_name,
        subscription_id=args.subscription_id.strip(),
        cloud=args.cloud or (base.cloud if base else config.get('cloud', CLOUD_PUBLIC)),
        tenant_id=args.tenant_id or (base.tenant_id if base else config.get('tenant_id')),
        client_id=args.client_id or (base.client_id if base else None),
        client_secret_env=args.client_secret_env or (base.client_secret_env if base else None),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='ARM Template Backup - export every resource group of one subscription',
        epilog='Example: %(prog)s ALM-TEST 12345678-1234-1234-1234-123456789012'
    )
    parser.add_argument('environment_name', help='Name of the environment (e.g., ALM-TEST, ALM-DEV, ALM-PREPROD, ALM-PROD)')
    parser.add_argument('subscription_id', help='Azure subscription ID')
    parser.add_argument('--output', help='Output directory (default: current directory)')
    parser.add_argument('--config', help='YAML config file')
    parser.add_argument('--cloud', choices=ALL_CLOUDS, help='Azure cloud (default: AzureCloud)')
    parser.add_argument('--tenant-id', help='Entra ID tenant for service principal auth')
    parser.add_argument('--client-id', help='Service principal client ID')
    parser.add_argument(
        '--client-secret-env',
        help='Name of the environment variable holding the client secret'
    )
    parser.add_argument(
        '--retry-attempts',
        type=int,
        help='Attempts per export method for transient network errors (default: 1, no retry)'
    )
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    parser.add_argument('--log-file', action='store_true', help='Also write a redacted log file to the output directory')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.subscription_id.strip():
        setup_logging(args.log_level or 'INFO')
        logger.error(f"{MARK_ERROR} Error: SUBSCRIPTION_ID is not set or empty!")
        return 1

    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        setup_logging(args.log_level or 'INFO')
        logger.error(f"{MARK_ERROR} Error: Invalid configuration: {e}")
        return 1

    setup_logging(args.log_level, output_dir=args.output if args.log_file else None)

    environment = _environment_from_args(args, config)

    try:
        backup_environment(
            environment,
            output_dir=args.output,
            retry_attempts=args.retry_attempts,
            show_progress=not args.no_progress,
        )
    except BackupError as e:
        logger.error(f"{MARK_ERROR} Error: {e}")
        return 1

    logger.info("Script execution completed successfully!")
    return 0


if __name__ == '__main__':
    sys.exit(main())
